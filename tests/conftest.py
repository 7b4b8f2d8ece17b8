"""
Brief: Global pytest configuration: src on sys.path, a per-test 10s timeout,
a recording FakeShell and in-test certificate factories.

Inputs:
  - None

Outputs:
  - None
"""

from __future__ import annotations

import datetime
import os
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import pytest

# Ensure 'src' is on sys.path so 'lamplighter' package is importable in tests
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
SRC_DIR = os.path.join(ROOT, "src")
if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)

from cryptography import x509  # noqa: E402
from cryptography.hazmat.primitives import hashes, serialization  # noqa: E402
from cryptography.hazmat.primitives.asymmetric import ec  # noqa: E402
from cryptography.x509.oid import NameOID  # noqa: E402

from lamplighter.context import Paths, StepContext  # noqa: E402
from lamplighter.utils.shell import CommandError, CommandResult, Shell  # noqa: E402

BREW = "/opt/homebrew/bin/brew"


def _alarm_handler(signum, frame):
    """
    Brief: Signal handler that raises TimeoutError when alarm triggers.

    Inputs:
      - signum: signal number (int)
      - frame: current frame (ignored)

    Outputs:
      - None: Raises TimeoutError to fail the test
    """
    raise TimeoutError("Test exceeded 10 seconds")


if hasattr(signal, "SIGALRM"):
    signal.signal(signal.SIGALRM, _alarm_handler)


@pytest.fixture(autouse=True)
def enforce_test_timeout():
    """
    Brief: Enforce a hard 10-second timeout for each test.

    Inputs:
      - None

    Outputs:
      - None: Cancels alarm after test
    """
    if hasattr(signal, "SIGALRM"):
        signal.alarm(10)
        try:
            yield
        finally:
            signal.alarm(0)
    else:
        yield


@dataclass
class Call:
    argv: List[str]
    sudo: bool = False
    non_interactive: bool = False
    input: Optional[str] = None


@dataclass
class _Rule:
    prefix: Tuple[str, ...]
    returncode: int = 0
    stdout: str = ""
    stderr: str = ""
    effect: Optional[Callable[[List[str], Optional[str]], None]] = None


@dataclass
class Installed:
    dest: str
    content: str
    mode: int
    owner: Optional[str]
    group: Optional[str]
    validate_with: Optional[Sequence[str]]


class FakeShell(Shell):
    """
    Brief: Shell double that records every command and returns scripted results.

    Inputs:
      - tools: Mapping of executable name -> path returned by which().
      - root: Directory under which install_file() really writes content;
        destinations outside it are only recorded.

    Outputs:
      - FakeShell; inspect ``calls``, ``installed`` and ``spawned``.

    Rules added with on() match by argv prefix; the most recent match wins.
    Unmatched commands succeed with empty output.
    """

    def __init__(self, tools: Optional[Dict[str, str]] = None, root: Optional[Path] = None):
        super().__init__()
        self.tools = dict(tools or {})
        self.root = root
        self.calls: List[Call] = []
        self.installed: List[Installed] = []
        self.spawned: List[List[str]] = []
        self._rules: List[_Rule] = []

    def on(self, *prefix, returncode=0, stdout="", stderr="", effect=None) -> "FakeShell":
        self._rules.append(_Rule(tuple(str(p) for p in prefix), returncode, stdout, stderr, effect))
        return self

    def run(
        self,
        args,
        *,
        input=None,
        sudo=False,
        non_interactive=False,
        check=True,
        capture=True,
        cwd=None,
    ):
        argv = [str(a) for a in args]
        self.calls.append(Call(argv, sudo, non_interactive, input))
        result = CommandResult(argv, 0)
        for rule in reversed(self._rules):
            if tuple(argv[: len(rule.prefix)]) == rule.prefix:
                if rule.effect is not None:
                    rule.effect(argv, input)
                result = CommandResult(argv, rule.returncode, rule.stdout, rule.stderr)
                break
        if check and not result.ok:
            raise CommandError(result)
        return result

    def spawn(self, args):
        argv = [str(a) for a in args]
        self.spawned.append(argv)
        raise AssertionError(f"unexpected spawn: {argv}")

    def which(self, name, extra_dirs=()):
        return self.tools.get(name)

    def install_file(
        self, content, dest, *, mode, owner=None, group=None, sudo=True, validate_with=None
    ):
        self.installed.append(Installed(str(dest), content, mode, owner, group, validate_with))
        if validate_with:
            self.run([*validate_with, str(dest)])
        self.run(["install", "-m", format(mode, "04o"), str(dest)], sudo=sudo)
        path = Path(dest)
        if self.root is not None and Path(self.root) in path.parents:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")

    # Convenience views for assertions.
    def argvs(self) -> List[List[str]]:
        return [c.argv for c in self.calls]

    def sudo_calls(self) -> List[Call]:
        return [c for c in self.calls if c.sudo]


@pytest.fixture
def paths(tmp_path) -> Paths:
    """
    Brief: Paths rooted in a temporary home.

    Inputs:
      - tmp_path: pytest temporary directory

    Outputs:
      - Paths with ca/dns/certs under tmp_path/home/.lamplighter
    """
    base = tmp_path / "home" / ".lamplighter"
    return Paths(ca_dir=base / "ca", dns_dir=base / "dns", cert_dir=base / "certs")


@pytest.fixture
def shell(tmp_path) -> FakeShell:
    """Brief: FakeShell with brew on PATH and `brew --prefix` under tmp_path."""
    prefix = tmp_path / "brew"
    sh = FakeShell(tools={"brew": BREW}, root=tmp_path)
    sh.on(BREW, "--prefix", stdout=f"{prefix}\n")
    return sh


@pytest.fixture
def ctx(paths, shell) -> StepContext:
    """Brief: StepContext wired to the temporary Paths and the FakeShell."""
    return StepContext(paths=paths, shell=shell)


def _name(cn: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])


def _validity(builder: x509.CertificateBuilder) -> x509.CertificateBuilder:
    now = datetime.datetime.now(datetime.timezone.utc)
    return builder.not_valid_before(now - datetime.timedelta(minutes=5)).not_valid_after(
        now + datetime.timedelta(days=30)
    )


def _pem_key(key) -> bytes:
    return key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )


@pytest.fixture
def make_root():
    """
    Brief: Factory writing a self-signed EC root CA as cfssl would.

    Inputs (factory):
      - bare: Output prefix; writes <bare>.pem and <bare>-key.pem.
      - curve: EC curve instance (default P-256).
      - ca: BasicConstraints ca flag.

    Outputs:
      - (private_key, certificate)
    """

    def _make(bare, *, curve=None, ca=True, cn="Test Root"):
        key = ec.generate_private_key(curve or ec.SECP256R1())
        builder = _validity(
            x509.CertificateBuilder()
            .subject_name(_name(cn))
            .issuer_name(_name(cn))
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
        )
        builder = (
            builder.add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=ca,
                    crl_sign=ca,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False
            )
        )
        cert = builder.sign(key, hashes.SHA256())
        Path(f"{bare}.pem").write_bytes(cert.public_bytes(serialization.Encoding.PEM))
        Path(f"{bare}-key.pem").write_bytes(_pem_key(key))
        return key, cert

    return _make


@pytest.fixture
def make_leaf():
    """
    Brief: Factory writing a leaf certificate signed by a given root.

    Inputs (factory):
      - bare: Output prefix; writes <bare>.pem and <bare>-key.pem.
      - hostname: DNS name placed in CN and SAN.
      - issuer_key/issuer_cert: Signing root.
      - san: Optional explicit SAN list (defaults to [hostname]).

    Outputs:
      - (private_key, certificate)
    """

    def _make(bare, hostname, issuer_key, issuer_cert, *, san=None, curve=None):
        key = ec.generate_private_key(curve or ec.SECP256R1())
        names = san if san is not None else [hostname]
        builder = _validity(
            x509.CertificateBuilder()
            .subject_name(_name(hostname))
            .issuer_name(issuer_cert.subject)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
        ).add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_key.public_key()),
            critical=False,
        )
        if names:
            builder = builder.add_extension(
                x509.SubjectAlternativeName([x509.DNSName(n) for n in names]),
                critical=False,
            )
        cert = builder.sign(issuer_key, hashes.SHA256())
        Path(f"{bare}.pem").write_bytes(cert.public_bytes(serialization.Encoding.PEM))
        Path(f"{bare}-key.pem").write_bytes(_pem_key(key))
        return key, cert

    return _make
