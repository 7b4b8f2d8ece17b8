"""Zone overrides in the resolver's include directory.

Brief:
  An override file redirects a zone and every name below it to one static
  address:

      local-zone: "custom." redirect
      local-data: "custom. IN A 127.0.0.1"

  write_zone_override() is the reusable helper; ZoneOverride is the example
  step that installs ``custom.`` -> 127.0.0.1 for the self-test. A file that
  fails ``unbound-checkconf`` is reverted before the error propagates, so the
  include directory never holds an override the resolver would reject.
"""

from __future__ import annotations

import ipaddress
import logging
from pathlib import Path
from typing import Optional

import dns.exception
import dns.name
from pydantic import Field, field_validator

from ..context import StepContext
from ..utils.shell import CommandError
from .base import BaseStep, StepConfig, step_aliases
from .resolver import check_config, reload_resolver

logger = logging.getLogger(__name__)


def normalize_zone(zone: str) -> str:
    """Brief: Canonical absolute zone name (lower-case, trailing dot).

    Raises:
      - ValueError: Invalid name or the root zone.

    Example:
      >>> normalize_zone("Custom")
      'custom.'
    """
    try:
        name = dns.name.from_text(zone.strip())
    except dns.exception.DNSException as exc:
        raise ValueError(f"invalid zone name {zone!r}: {exc}") from exc
    if name == dns.name.root:
        raise ValueError("refusing to override the root zone")
    return name.to_text().lower()


def render_zone_override(zone: str, address: str) -> str:
    """Brief: unbound local-zone/local-data fragment for ``zone`` -> ``address``.

    Example:
      >>> print(render_zone_override("custom", "127.0.0.1"), end="")
      local-zone: "custom." redirect
      local-data: "custom. IN A 127.0.0.1"
    """
    name = normalize_zone(zone)
    ip = ipaddress.ip_address(address)
    rtype = "A" if ip.version == 4 else "AAAA"
    return f'local-zone: "{name}" redirect\nlocal-data: "{name} IN {rtype} {ip}"\n'


def override_filename(zone: str) -> str:
    return normalize_zone(zone).rstrip(".") + ".conf"


def write_zone_override(
    ctx: StepContext,
    zone: str,
    address: str,
    *,
    resolver_conf: Optional[Path] = None,
    filename: Optional[str] = None,
    formula: Optional[str] = None,
) -> bool:
    """Brief: Install an override file, validate it, and reload the resolver.

    Inputs:
      - ctx: StepContext.
      - zone/address: Redirect target.
      - resolver_conf: Base unbound.conf whose include glob covers dns_dir
        (default: ctx.resolver_conf()).
      - filename: Override file name (default: <zone>.conf).
      - formula: Resolver formula restarted afterwards (default: ctx.resolver.formula).

    Outputs:
      - bool: False when the file already had identical content (nothing done).

    Raises:
      - CommandError: Config check or reload failed. On a check failure the
        previous file content (or absence) is restored first.
    """
    content = render_zone_override(zone, address)
    path = ctx.paths.dns_dir / (filename or override_filename(zone))
    previous = path.read_text(encoding="utf-8") if path.exists() else None
    if previous == content:
        return False

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    try:
        check_config(ctx, resolver_conf or ctx.resolver_conf())
    except CommandError:
        logger.error("Override %s rejected by unbound-checkconf; reverting", path)
        if previous is None:
            path.unlink()
        else:
            path.write_text(previous, encoding="utf-8")
        raise

    logger.info("Override %s -> %s written to %s", normalize_zone(zone), address, path)
    reload_resolver(ctx, formula or ctx.resolver.formula, non_interactive=True)
    return True


class ZoneOverrideConfig(StepConfig):
    """Brief: Typed configuration for the example zone override.

    Inputs:
      - zone: Zone redirected (default: custom.).
      - address: Static answer for the zone and all subdomains.
      - filename: Optional override file name.
    """

    zone: str = Field(default="custom.")
    address: str = Field(default="127.0.0.1")
    filename: Optional[str] = None

    @field_validator("zone")
    @classmethod
    def _zone(cls, v: str) -> str:
        return normalize_zone(v)

    @field_validator("address")
    @classmethod
    def _address(cls, v: str) -> str:
        return str(ipaddress.ip_address(v))

    @field_validator("filename")
    @classmethod
    def _filename(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and (not v.endswith(".conf") or "/" in v):
            raise ValueError("filename must be a bare *.conf name")
        return v


@step_aliases("dns_override", "zone_override")
class ZoneOverride(BaseStep):
    """Example: redirect a custom top-level domain to localhost."""

    priority = 80

    @classmethod
    def get_config_model(cls):
        return ZoneOverrideConfig

    def _path(self, ctx: StepContext) -> Path:
        s = self.settings
        return ctx.paths.dns_dir / (s.filename or override_filename(s.zone))

    def is_applied(self, ctx: StepContext) -> bool:
        path = self._path(ctx)
        if not path.exists():
            return False
        expected = render_zone_override(self.settings.zone, self.settings.address)
        return path.read_text(encoding="utf-8") == expected

    def apply(self, ctx: StepContext) -> None:
        s = self.settings
        write_zone_override(ctx, s.zone, s.address, filename=s.filename)
