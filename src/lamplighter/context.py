"""Shared state handed to every bootstrap step.

Brief:
  StepContext carries the filesystem layout, the Shell used to reach external
  tools, and lazily-resolved Homebrew locations. Steps never hard-code paths;
  they ask the context so a config file (or a test) can relocate everything.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

from .steps.base import StepError
from .utils.shell import Shell

logger = logging.getLogger(__name__)

BREW_SEARCH_DIRS: Tuple[str, ...] = ("/opt/homebrew/bin", "/usr/local/bin")

ROOT_CERT_NAME = "root-ca.pem"
ROOT_KEY_NAME = "root-ca-key.pem"
SIGNING_PROFILE_NAME = "ca-config.json"

DEFAULT_RESOLVER_FORMULA = "unbound"
DEFAULT_RESOLVER_ACCOUNT = "_unbound"


def _expand(p: str | Path) -> Path:
    return Path(p).expanduser()


@dataclass
class Paths:
    """Brief: Filesystem locations owned by the invoking user.

    Inputs:
      - ca_dir: Root CA key/cert and signing profile.
      - dns_dir: Resolver override directory (include glob target).
      - cert_dir: Output directory for issued leaf certificates.
    """

    ca_dir: Path = field(default_factory=lambda: _expand("~/.lamplighter/ca"))
    dns_dir: Path = field(default_factory=lambda: _expand("~/.lamplighter/dns"))
    cert_dir: Path = field(default_factory=lambda: _expand("~/.lamplighter/certs"))

    @classmethod
    def from_config(cls, cfg: Optional[dict]) -> "Paths":
        """Brief: Build Paths from the ``paths`` config section.

        Example:
          >>> Paths.from_config({"ca_dir": "/tmp/ca"}).ca_dir
          PosixPath('/tmp/ca')
        """
        cfg = cfg or {}
        defaults = cls()
        return cls(
            ca_dir=_expand(cfg.get("ca_dir", defaults.ca_dir)),
            dns_dir=_expand(cfg.get("dns_dir", defaults.dns_dir)),
            cert_dir=_expand(cfg.get("cert_dir", defaults.cert_dir)),
        )

    @property
    def root_cert(self) -> Path:
        return self.ca_dir / ROOT_CERT_NAME

    @property
    def root_key(self) -> Path:
        return self.ca_dir / ROOT_KEY_NAME

    @property
    def signing_profile(self) -> Path:
        return self.ca_dir / SIGNING_PROFILE_NAME


@dataclass
class ResolverSettings:
    """Brief: Resolver facts shared by every step that touches unbound.

    Inputs:
      - formula: Homebrew formula providing the resolver.
      - account: Service account unbound drops privileges to.
      - conf: Base config path; None means <brew prefix>/etc/unbound/unbound.conf.
    """

    formula: str = DEFAULT_RESOLVER_FORMULA
    account: str = DEFAULT_RESOLVER_ACCOUNT
    conf: Optional[Path] = None

    @classmethod
    def from_config(cls, cfg: Optional[dict]) -> "ResolverSettings":
        """Brief: Build ResolverSettings from the top-level ``resolver`` section.

        Example:
          >>> ResolverSettings.from_config({"account": "_dns"}).account
          '_dns'
        """
        cfg = cfg or {}
        conf = cfg.get("conf")
        return cls(
            formula=str(cfg.get("formula", DEFAULT_RESOLVER_FORMULA)),
            account=str(cfg.get("account", DEFAULT_RESOLVER_ACCOUNT)),
            conf=_expand(conf) if conf else None,
        )


@dataclass
class StepContext:
    """Brief: Per-run context passed to is_applied()/apply().

    Inputs:
      - paths: Paths for user-owned artifacts.
      - shell: Shell used for every external command.
      - resolver: Formula, service account and base config shared by the
        resolver, service account, sudoers and override steps.
      - brew_search_dirs: Extra directories searched for ``brew`` when it is
        not on PATH (a fresh Homebrew install is not on PATH yet).
    """

    paths: Paths = field(default_factory=Paths)
    shell: Shell = field(default_factory=Shell)
    resolver: ResolverSettings = field(default_factory=ResolverSettings)
    brew_search_dirs: Tuple[str, ...] = BREW_SEARCH_DIRS
    _brew_prefix: Optional[Path] = field(default=None, init=False, repr=False)

    def find_brew(self) -> Optional[str]:
        return self.shell.which("brew", self.brew_search_dirs)

    def brew(self) -> str:
        """Brief: Absolute path to brew; raises StepError when missing."""
        found = self.find_brew()
        if not found:
            raise StepError("Homebrew is not installed (brew not found)")
        return found

    def brew_prefix(self) -> Path:
        """Brief: Cached ``brew --prefix`` (e.g. /opt/homebrew)."""
        if self._brew_prefix is None:
            out = self.shell.run([self.brew(), "--prefix"]).stdout.strip()
            if not out:
                raise StepError("brew --prefix returned nothing")
            self._brew_prefix = Path(out)
        return self._brew_prefix

    def resolver_conf(self) -> Path:
        """Brief: The unbound base config every resolver-related step works on."""
        if self.resolver.conf is not None:
            return self.resolver.conf
        return self.brew_prefix() / "etc" / "unbound" / "unbound.conf"

    def brew_tool(self, name: str) -> str:
        """Brief: Path to an executable installed under the brew prefix.

        Falls back to the bare name so PATH lookup still applies when the
        tool lives elsewhere.
        """
        prefix = self.brew_prefix()
        for sub in ("bin", "sbin"):
            candidate = prefix / sub / name
            if candidate.exists():
                return str(candidate)
        return name

    def formula_installed(self, formula: str) -> bool:
        listed = self.shell.run([self.brew(), "list", "--versions", formula], check=False)
        return listed.ok and bool(listed.stdout.strip())

    def ensure_formula(self, formula: str) -> bool:
        """Brief: Install a Homebrew formula when it is not already present.

        Outputs:
          - bool: True when an install was performed.
        """
        if self.formula_installed(formula):
            logger.debug("formula %s already installed", formula)
            return False
        logger.info("Installing %s via Homebrew", formula)
        self.shell.run([self.brew(), "install", formula], capture=False)
        return True
