"""Certificate inspection helpers built on ``cryptography``.

Brief:
  Issuance is delegated to cfssl; these helpers only read what cfssl wrote so
  the bootstrap can verify it before anything depends on it:
    - SHA-1 fingerprints for matching against the System keychain,
    - "is a self-signed EC CA" checks for the root,
    - "directly issued by the root, SAN covers the host" checks for leaves,
    - chain assembly (leaf followed by root).
"""

from __future__ import annotations

from pathlib import Path
from typing import List, Union

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

PathLike = Union[str, Path]

CURVES = {
    256: ec.SECP256R1,
    384: ec.SECP384R1,
    521: ec.SECP521R1,
}


class CertificateCheckError(ValueError):
    """Brief: A certificate on disk does not have the expected properties."""


def load_certificate(path: PathLike) -> x509.Certificate:
    """Brief: Load the first PEM certificate found in ``path``."""
    return x509.load_pem_x509_certificate(Path(path).read_bytes())


def sha1_fingerprint(cert: x509.Certificate) -> str:
    """Brief: Upper-case hex SHA-1 fingerprint, as printed by ``security -Z``.

    Example:
      >>> len(sha1_fingerprint(cert))  # doctest: +SKIP
      40
    """
    return cert.fingerprint(hashes.SHA1()).hex().upper()


def common_name(cert: x509.Certificate) -> str:
    attrs = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    return str(attrs[0].value) if attrs else ""


def _check_ec_key(cert: x509.Certificate, key_size: int, label: str) -> None:
    key = cert.public_key()
    if not isinstance(key, ec.EllipticCurvePublicKey):
        raise CertificateCheckError(f"{label} does not carry an EC public key")
    expected = CURVES.get(key_size)
    if expected is None:
        raise CertificateCheckError(f"unsupported EC key size {key_size}")
    if not isinstance(key.curve, expected):
        raise CertificateCheckError(
            f"{label} uses curve {key.curve.name}, expected {expected.name}"
        )


def check_root_certificate(cert: x509.Certificate, *, key_size: int = 256) -> None:
    """Brief: Verify ``cert`` is a self-signed CA certificate with an EC key.

    Inputs:
      - cert: Root certificate produced by ``cfssl gencert -initca``.
      - key_size: Expected curve size (256 -> P-256).

    Raises:
      - CertificateCheckError: On any mismatch.
    """
    _check_ec_key(cert, key_size, "root certificate")
    try:
        bc = cert.extensions.get_extension_for_class(x509.BasicConstraints).value
    except x509.ExtensionNotFound as exc:
        raise CertificateCheckError("root certificate has no BasicConstraints") from exc
    if not bc.ca:
        raise CertificateCheckError("root certificate is not a CA")
    try:
        cert.verify_directly_issued_by(cert)
    except (ValueError, TypeError, InvalidSignature) as exc:
        raise CertificateCheckError("root certificate is not self-signed") from exc


def check_leaf_certificate(
    leaf: x509.Certificate, root: x509.Certificate, hostname: str
) -> None:
    """Brief: Verify ``leaf`` chains directly to ``root`` and covers ``hostname``.

    Inputs:
      - leaf: Issued leaf certificate.
      - root: Root CA certificate that should have signed it.
      - hostname: DNS name that must appear in the SubjectAlternativeName.

    Raises:
      - CertificateCheckError: When the signature, SAN or key type is wrong.
    """
    try:
        leaf.verify_directly_issued_by(root)
    except (ValueError, TypeError, InvalidSignature) as exc:
        raise CertificateCheckError(
            f"certificate for {hostname} is not issued by {common_name(root)!r}"
        ) from exc

    try:
        san = leaf.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound as exc:
        raise CertificateCheckError(
            f"certificate for {hostname} has no SubjectAlternativeName"
        ) from exc
    names = [n.lower() for n in san.get_values_for_type(x509.DNSName)]
    if hostname.lower() not in names:
        raise CertificateCheckError(
            f"certificate SAN {names} does not include {hostname}"
        )

    root_key = root.public_key()
    if isinstance(root_key, ec.EllipticCurvePublicKey):
        _check_ec_key(leaf, root_key.curve.key_size, f"certificate for {hostname}")


def build_chain(leaf_path: PathLike, root_path: PathLike) -> str:
    """Brief: Return the PEM text of leaf followed by root.

    Both inputs are re-serialized so stray whitespace or trailing text in the
    source files cannot leak into the chain.
    """
    parts: List[bytes] = [
        load_certificate(p).public_bytes(serialization.Encoding.PEM)
        for p in (leaf_path, root_path)
    ]
    return b"".join(parts).decode("ascii")
