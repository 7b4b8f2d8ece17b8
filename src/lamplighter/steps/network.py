from __future__ import annotations

import ipaddress
import logging
import shlex
from typing import List, Tuple

from pydantic import Field, field_validator

from ..context import StepContext
from ..utils.macos import parse_default_interface, parse_dns_servers, parse_service_order
from .base import BaseStep, StepConfig, StepError, step_aliases

logger = logging.getLogger(__name__)


class NetworkConfig(StepConfig):
    """Brief: Typed configuration for DNS rebinding.

    Inputs:
      - dns_servers: Servers the active service should use (default: loopback).
    """

    dns_servers: List[str] = Field(default_factory=lambda: ["127.0.0.1"])

    @field_validator("dns_servers")
    @classmethod
    def _addresses(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("dns_servers must not be empty")
        return [str(ipaddress.ip_address(a)) for a in v]


def rollback_command(service: str, previous: List[str]) -> str:
    """Brief: Command that restores ``previous`` DNS servers on ``service``.

    Example:
      >>> rollback_command("Wi-Fi", [])
      'networksetup -setdnsservers Wi-Fi Empty'
    """
    return shlex.join(["networksetup", "-setdnsservers", service, *(previous or ["Empty"])])


@step_aliases("network", "dns_servers")
class Network(BaseStep):
    """Point the default-route network service's DNS at the local resolver.

    Unlike the other steps this one re-applies whenever the current DNS list
    differs from the target, even if the user changed it on purpose. The old
    value is logged with a ready-to-run rollback command before it is replaced.
    """

    priority = 60

    @classmethod
    def get_config_model(cls):
        return NetworkConfig

    def active_service(self, ctx: StepContext) -> Tuple[str, str]:
        """Brief: Return (device, service name) for the default route."""
        route = ctx.shell.run(["route", "-n", "get", "default"])
        device = parse_default_interface(route.stdout)
        if not device:
            raise StepError("could not determine the default-route interface")
        order = ctx.shell.run(["networksetup", "-listnetworkserviceorder"])
        services = parse_service_order(order.stdout)
        if device not in services:
            raise StepError(f"no network service is bound to interface {device}")
        return device, services[device]

    def current_servers(self, ctx: StepContext, service: str) -> List[str]:
        res = ctx.shell.run(["networksetup", "-getdnsservers", service])
        return parse_dns_servers(res.stdout)

    def is_applied(self, ctx: StepContext) -> bool:
        _, service = self.active_service(ctx)
        return self.current_servers(ctx, service) == self.settings.dns_servers

    def apply(self, ctx: StepContext) -> None:
        device, service = self.active_service(ctx)
        previous = self.current_servers(ctx, service)
        logger.warning(
            "Replacing DNS servers on %s (%s): previous=%s; to restore run: %s",
            service,
            device,
            previous or "none",
            rollback_command(service, previous),
        )
        ctx.shell.run(
            ["networksetup", "-setdnsservers", service, *self.settings.dns_servers],
            sudo=True,
        )
