"""Local recursive resolver (unbound) installation and base configuration.

Brief:
  The base config binds unbound to loopback, drops privileges to the service
  account, restricts clients to private ranges, pulls in every ``*.conf`` from
  the user's override directory and forwards everything else upstream. It is
  only (re)written when it does not already reference the override directory,
  so hand edits elsewhere in the file survive re-runs.

  This module also owns the three commands that reload the resolver; the
  sudoers step delegates exactly these.
"""

from __future__ import annotations

import ipaddress
import logging
from pathlib import Path
from typing import List, Optional

from pydantic import Field, field_validator

from ..context import DEFAULT_RESOLVER_ACCOUNT, StepContext
from ..utils.shell import CommandError
from .base import BaseStep, StepConfig, step_aliases

logger = logging.getLogger(__name__)

PRIVATE_NETWORKS = ["10.0.0.0/8", "127.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16"]

# RFC 1918 and loopback only; entries must fall inside one of these.
_ALLOWED_NETWORKS = [ipaddress.ip_network(n) for n in [*PRIVATE_NETWORKS, "::1/128"]]

DSCACHEUTIL = "/usr/bin/dscacheutil"
KILLALL = "/usr/bin/killall"


class ResolverConfig(StepConfig):
    """Brief: Typed configuration for the unbound install and base config.

    Inputs:
      - interface: Listen address (an IP literal).
      - group: Group owning the config directory.
      - access_control: Client networks allowed to query (RFC 1918 or loopback).
      - forwarders: Upstream resolvers for everything not overridden locally.

    Formula, service account and config path come from StepContext.resolver.
    """

    interface: str = Field(default="127.0.0.1")
    group: str = Field(default="staff")
    access_control: List[str] = Field(default_factory=lambda: list(PRIVATE_NETWORKS))
    forwarders: List[str] = Field(default_factory=lambda: ["1.1.1.1"])

    @field_validator("interface")
    @classmethod
    def _valid_interface(cls, v: str) -> str:
        return str(ipaddress.ip_address(v))

    @field_validator("access_control")
    @classmethod
    def _private_only(cls, v: List[str]) -> List[str]:
        out = []
        for item in v:
            net = ipaddress.ip_network(item, strict=False)
            if not any(
                net.version == allowed.version and net.subnet_of(allowed)
                for allowed in _ALLOWED_NETWORKS
            ):
                raise ValueError(f"access_control entry {item} is not a private range")
            out.append(str(net))
        return out

    @field_validator("forwarders")
    @classmethod
    def _valid_forwarders(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("at least one forwarder is required")
        return [str(ipaddress.ip_address(a)) for a in v]


def render_base_config(
    settings: ResolverConfig, override_dir: Path, account: str = DEFAULT_RESOLVER_ACCOUNT
) -> str:
    """Brief: Render unbound.conf for the given settings.

    The include line sits inside ``server:`` because override files contain
    server-level ``local-zone``/``local-data`` statements.
    """
    lines = [
        "# Managed by lamplighter.",
        f"# Local overrides: {override_dir}/*.conf",
        "server:",
        f"    interface: {settings.interface}",
        f'    username: "{account}"',
        '    chroot: ""',
    ]
    lines += [f"    access-control: {net} allow" for net in settings.access_control]
    lines += [
        f'    include: "{override_dir}/*.conf"',
        "",
        "forward-zone:",
        '    name: "."',
    ]
    lines += [f"    forward-addr: {addr}" for addr in settings.forwarders]
    return "\n".join(lines) + "\n"


def reload_commands(brew: str, formula: str = "unbound") -> List[List[str]]:
    """Brief: The three commands needed after any resolver config change.

    Outputs:
      - [[brew, services, restart, formula], [dscacheutil, -flushcache],
         [killall, -HUP, mDNSResponder]]; each argv starts with an absolute path.
    """
    return [
        [brew, "services", "restart", formula],
        [DSCACHEUTIL, "-flushcache"],
        [KILLALL, "-HUP", "mDNSResponder"],
    ]


def reload_resolver(
    ctx: StepContext, formula: str = "unbound", *, non_interactive: bool = False
) -> None:
    """Brief: Restart unbound, flush the OS DNS cache and poke mDNSResponder.

    Inputs:
      - non_interactive: Use ``sudo -n``; valid once the sudoers drop-in exists.
    """
    for argv in reload_commands(ctx.brew(), formula):
        ctx.shell.run(argv, sudo=True, non_interactive=non_interactive)


def check_config(ctx: StepContext, path: Path) -> None:
    """Brief: Validate unbound config syntax; raises CommandError on failure."""
    ctx.shell.run([ctx.brew_tool("unbound-checkconf"), str(path)])


@step_aliases("resolver", "unbound")
class Resolver(BaseStep):
    """Install unbound and write its base configuration."""

    priority = 40

    @classmethod
    def get_config_model(cls):
        return ResolverConfig

    def _config_current(self, ctx: StepContext) -> bool:
        path = ctx.resolver_conf()
        if not path.exists():
            return False
        return str(ctx.paths.dns_dir) in path.read_text(encoding="utf-8")

    def is_applied(self, ctx: StepContext) -> bool:
        if ctx.find_brew() is None or not ctx.formula_installed(ctx.resolver.formula):
            return False
        return self._config_current(ctx)

    def _restore(self, ctx: StepContext, path: Path, previous: Optional[str]) -> None:
        if previous is None:
            ctx.shell.run(["rm", "-f", str(path)], sudo=True)
            return
        ctx.shell.install_file(
            previous, path, mode=0o644, owner=ctx.resolver.account, group=self.settings.group
        )

    def apply(self, ctx: StepContext) -> None:
        s = self.settings
        res = ctx.resolver
        ctx.ensure_formula(res.formula)
        if self._config_current(ctx):
            logger.info("Resolver config already references %s", ctx.paths.dns_dir)
            return

        path = ctx.resolver_conf()
        override_dir = ctx.paths.dns_dir
        override_dir.mkdir(parents=True, exist_ok=True)
        previous = path.read_text(encoding="utf-8") if path.exists() else None

        # unbound-checkconf runs on the staged copy; a rejected config never lands.
        logger.info("Writing resolver base config %s (sudo)", path)
        ctx.shell.install_file(
            render_base_config(s, override_dir, res.account),
            path,
            mode=0o644,
            owner=res.account,
            group=s.group,
            validate_with=[ctx.brew_tool("unbound-checkconf")],
        )

        conf_dir = str(path.parent)
        try:
            ctx.shell.run(["chown", "-R", f"{res.account}:{s.group}", conf_dir], sudo=True)
            ctx.shell.run(["chmod", "-R", "go-w", conf_dir], sudo=True)
            logger.info("Resolver config valid; restarting %s", res.formula)
            reload_resolver(ctx, res.formula)
        except CommandError:
            logger.error("Resolver reload failed; restoring previous %s", path)
            self._restore(ctx, path, previous)
            raise
