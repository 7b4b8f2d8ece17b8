"""Root CA provisioning: key/cert generation and System keychain trust.

Brief:
  RootCA creates the root key pair with cfssl the first time lamplighter runs
  and never touches it again (delete the files to regenerate). RootTrust
  registers that certificate as a trusted root in the System keychain. The
  two have independent checks, so removing only the keychain entry gets it
  re-added on the next run.
"""

from __future__ import annotations

import json
import logging
import os
import re
from typing import List

from pydantic import Field

from ..context import StepContext
from ..utils.certs import (
    CertificateCheckError,
    check_root_certificate,
    load_certificate,
    sha1_fingerprint,
)
from .base import BaseStep, StepConfig, StepError, step_aliases

logger = logging.getLogger(__name__)

SYSTEM_KEYCHAIN = "/Library/Keychains/System.keychain"

_SHA1_LINE = re.compile(r"^SHA-1 hash:\s*([0-9A-Fa-f]{40})\s*$")


class RootCAConfig(StepConfig):
    """Brief: Typed configuration for root CA generation.

    Inputs:
      - common_name: Subject CN of the root certificate.
      - organization: Subject O.
      - key_size: EC curve size (256 or 384).
      - expiry: cfssl duration for the root (default ten years).
    """

    common_name: str = Field(default="Lamplighter Local Development CA")
    organization: str = Field(default="Lamplighter")
    key_size: int = Field(default=256)
    expiry: str = Field(default="87600h")


def build_root_csr(settings: RootCAConfig) -> dict:
    """Brief: cfssl CSR document for ``gencert -initca``.

    Example:
      >>> build_root_csr(RootCAConfig())["key"]
      {'algo': 'ecdsa', 'size': 256}
    """
    return {
        "CN": settings.common_name,
        "key": {"algo": "ecdsa", "size": settings.key_size},
        "names": [{"O": settings.organization}],
        "ca": {"expiry": settings.expiry},
    }


def cfssl_bare(ctx: StepContext, gencert_args: List[str], csr: dict, bare: str) -> None:
    """Brief: Run ``cfssl gencert ... -`` and split its output with cfssljson.

    Inputs:
      - ctx: StepContext (provides the shell and brew-installed tool paths).
      - gencert_args: Arguments after ``cfssl gencert`` (without the trailing ``-``).
      - csr: CSR document fed to cfssl on stdin.
      - bare: Output prefix for ``cfssljson -bare`` (writes <bare>.pem,
        <bare>-key.pem, <bare>.csr).

    Raises:
      - CommandError: When either tool fails; cfssljson never runs if cfssl did.
    """
    cfssl = ctx.brew_tool("cfssl")
    cfssljson = ctx.brew_tool("cfssljson")
    issued = ctx.shell.run([cfssl, "gencert", *gencert_args, "-"], input=json.dumps(csr))
    ctx.shell.run([cfssljson, "-bare", bare], input=issued.stdout)


@step_aliases("root_ca", "ca")
class RootCA(BaseStep):
    """Generate the root key and self-signed certificate if absent."""

    priority = 20

    @classmethod
    def get_config_model(cls):
        return RootCAConfig

    def is_applied(self, ctx: StepContext) -> bool:
        return ctx.paths.root_cert.exists()

    def apply(self, ctx: StepContext) -> None:
        ctx.ensure_formula("cfssl")
        ca_dir = ctx.paths.ca_dir
        ca_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(ca_dir, 0o700)

        bare = str(ca_dir / "root-ca")
        logger.info("Generating root CA %r in %s", self.settings.common_name, ca_dir)
        cfssl_bare(ctx, ["-initca"], build_root_csr(self.settings), bare)
        os.chmod(ctx.paths.root_key, 0o600)

        try:
            check_root_certificate(
                load_certificate(ctx.paths.root_cert), key_size=self.settings.key_size
            )
        except CertificateCheckError as exc:
            raise StepError(f"generated root certificate is unusable: {exc}") from exc
        logger.info("Root CA written to %s", ctx.paths.root_cert)


class RootTrustConfig(StepConfig):
    keychain: str = Field(default=SYSTEM_KEYCHAIN)


def keychain_fingerprints(output: str) -> List[str]:
    """Brief: Extract SHA-1 fingerprints from ``security find-certificate -Z``.

    Example:
      >>> keychain_fingerprints("SHA-1 hash: " + "AB" * 20 + "\\nkeychain: x")
      ['ABABABABABABABABABABABABABABABABABABABAB']
    """
    found = []
    for line in output.splitlines():
        m = _SHA1_LINE.match(line.strip())
        if m:
            found.append(m.group(1).upper())
    return found


@step_aliases("root_trust", "trust")
class RootTrust(BaseStep):
    """Register the root certificate as trusted in the System keychain."""

    priority = 25

    @classmethod
    def get_config_model(cls):
        return RootTrustConfig

    def is_applied(self, ctx: StepContext) -> bool:
        if not ctx.paths.root_cert.exists():
            return False
        fingerprint = sha1_fingerprint(load_certificate(ctx.paths.root_cert))
        # Exit status is non-zero when nothing matches; that just means "not trusted".
        res = ctx.shell.run(
            ["security", "find-certificate", "-a", "-Z", self.settings.keychain],
            check=False,
        )
        return fingerprint in keychain_fingerprints(res.stdout)

    def apply(self, ctx: StepContext) -> None:
        if not ctx.paths.root_cert.exists():
            raise StepError(f"root certificate {ctx.paths.root_cert} does not exist")
        logger.info(
            "Adding %s to %s as a trusted root (sudo)",
            ctx.paths.root_cert,
            self.settings.keychain,
        )
        ctx.shell.run(
            [
                "security",
                "add-trusted-cert",
                "-d",
                "-r",
                "trustRoot",
                "-k",
                self.settings.keychain,
                str(ctx.paths.root_cert),
            ],
            sudo=True,
        )
