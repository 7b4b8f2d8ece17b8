"""Leaf certificate issuance under the local root CA.

Brief:
  issue_certificate() asks cfssl for a fresh EC key and certificate for one
  hostname, checks the result against the root with ``cryptography`` and
  writes a ``<host>-chain.pem`` (leaf then root) for TLS servers. Existing
  leaf material is always replaced; lamplighter does not track leaves.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

import dns.exception
import dns.name
from pydantic import Field, field_validator

from ..context import StepContext
from ..utils.certs import (
    CURVES,
    CertificateCheckError,
    build_chain,
    check_leaf_certificate,
    load_certificate,
)
from .base import BaseStep, StepConfig, StepError, step_aliases
from .root_ca import cfssl_bare

logger = logging.getLogger(__name__)


@dataclass
class IssuedCertificate:
    """Brief: Paths of the artifacts produced for one hostname."""

    hostname: str
    key: Path
    cert: Path
    chain: Path


def normalize_hostname(hostname: str) -> str:
    """Brief: Validate a hostname for issuance (one leading ``*.`` allowed).

    Example:
      >>> normalize_hostname("Example.Custom.")
      'example.custom'
    """
    text = hostname.strip().rstrip(".").lower()
    bare = text[2:] if text.startswith("*.") else text
    try:
        name = dns.name.from_text(bare)
    except dns.exception.DNSException as exc:
        raise ValueError(f"invalid hostname {hostname!r}: {exc}") from exc
    if not bare or name == dns.name.root or "*" in bare or "/" in bare:
        raise ValueError(f"invalid hostname {hostname!r}")
    return text


def artifact_stem(hostname: str) -> str:
    return hostname.replace("*", "wildcard")


def build_leaf_csr(hostname: str, key_size: int = 256) -> dict:
    """Brief: cfssl CSR document for one host.

    Example:
      >>> build_leaf_csr("example.custom")["hosts"]
      ['example.custom']
    """
    return {
        "CN": hostname,
        "hosts": [hostname],
        "key": {"algo": "ecdsa", "size": key_size},
    }


def _root_key_size(ctx: StepContext) -> int:
    """Issue leaves on the same curve as the root."""
    key = load_certificate(ctx.paths.root_cert).public_key()
    size = getattr(getattr(key, "curve", None), "key_size", None)
    return size if size in CURVES else 256


def issue_certificate(
    ctx: StepContext, hostname: str, *, profile: str = "server"
) -> IssuedCertificate:
    """Brief: Issue a key, certificate and chain for ``hostname``.

    Inputs:
      - ctx: StepContext (paths to the root and signing profile, cert_dir).
      - hostname: DNS name placed in CN and SAN.
      - profile: Signing profile name from ca-config.json.

    Outputs:
      - IssuedCertificate with key, cert and chain paths.

    Raises:
      - StepError: Root CA or profile missing, or the issued leaf fails checks.
      - CommandError: cfssl/cfssljson failed.
    """
    host = normalize_hostname(hostname)
    paths = ctx.paths
    for required in (paths.root_cert, paths.root_key, paths.signing_profile):
        if not required.exists():
            raise StepError(f"{required} is missing; run the CA steps first")
    profiles = json.loads(paths.signing_profile.read_text(encoding="utf-8"))
    if profile not in profiles.get("signing", {}).get("profiles", {}):
        raise StepError(f"signing profile {profile!r} not defined in {paths.signing_profile}")

    paths.cert_dir.mkdir(parents=True, exist_ok=True)
    stem = paths.cert_dir / artifact_stem(host)
    logger.info("Issuing certificate for %s (profile=%s)", host, profile)
    cfssl_bare(
        ctx,
        [
            "-ca",
            str(paths.root_cert),
            "-ca-key",
            str(paths.root_key),
            "-config",
            str(paths.signing_profile),
            "-profile",
            profile,
        ],
        build_leaf_csr(host, _root_key_size(ctx)),
        str(stem),
    )

    issued = IssuedCertificate(
        hostname=host,
        key=Path(f"{stem}-key.pem"),
        cert=Path(f"{stem}.pem"),
        chain=Path(f"{stem}-chain.pem"),
    )
    os.chmod(issued.key, 0o600)
    try:
        check_leaf_certificate(
            load_certificate(issued.cert), load_certificate(paths.root_cert), host
        )
    except CertificateCheckError as exc:
        raise StepError(str(exc)) from exc

    issued.chain.write_text(build_chain(issued.cert, paths.root_cert), encoding="ascii")
    logger.info("Wrote %s, %s and %s", issued.key, issued.cert, issued.chain)
    return issued


class CertificateConfig(StepConfig):
    """Brief: Typed configuration for the example issuance.

    Inputs:
      - hostname: Host to issue for (default: example.custom).
      - profile: Signing profile name.
    """

    hostname: str = Field(default="example.custom")
    profile: str = Field(default="server")

    @field_validator("hostname")
    @classmethod
    def _hostname(cls, v: str) -> str:
        return normalize_hostname(v)


@step_aliases("certificate", "example_certificate")
class Certificate(BaseStep):
    """Example: issue a fresh leaf certificate and chain for a demo host."""

    priority = 90
    always_run = True

    @classmethod
    def get_config_model(cls):
        return CertificateConfig

    def is_applied(self, ctx: StepContext) -> bool:
        return False

    def apply(self, ctx: StepContext) -> None:
        issue_certificate(ctx, self.settings.hostname, profile=self.settings.profile)
