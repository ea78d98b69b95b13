"""Keys and X.509 certificates.

SAML trust is anchored in metadata rather than a CA chain, so the SP signs
and decrypts with self-signed certificates. This module generates them with
the right KeyUsage for each role, reads and writes PEM files, and applies
the policy a certificate must meet before it is used for an operation.
"""

from __future__ import annotations

import base64
import os
import textwrap
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from authflow.core.errors import AuthFlowError, ErrorKind

DEFAULT_CERT_DIR = Path.home() / ".authflow" / "certs"
ENV_CERT_DIR = "AUTHFLOW_CERT_DIR"

MIN_RSA_KEY_SIZE = 2048
MIN_EC_KEY_SIZE = 256

_PEM_HEADER = "-----BEGIN CERTIFICATE-----"
_PEM_FOOTER = "-----END CERTIFICATE-----"


class CertificateError(AuthFlowError):
    """A key or certificate could not be used."""

    kind = ErrorKind.CRYPTO_FAILURE


class CertificateLoadError(CertificateError):
    """A certificate file or blob could not be parsed."""


class KeyLoadError(CertificateError):
    """A private key file could not be read."""


class CertificateUsage(StrEnum):
    """Operation a certificate is used for."""

    SIGNING = "signing"
    ENCRYPTION = "encryption"
    TLS = "tls"


# KeyUsage bits each role needs: (digitalSignature, keyEncipherment)
_USAGE_BITS = {
    CertificateUsage.SIGNING: (True, False),
    CertificateUsage.ENCRYPTION: (False, True),
    CertificateUsage.TLS: (True, True),
}


@dataclass
class CertificateInfo:
    """Human-facing summary of a certificate."""

    subject: str
    issuer: str
    serial_number: str
    not_before: datetime
    not_after: datetime
    fingerprint_sha256: str
    is_self_signed: bool
    key_type: str
    key_size: int


@dataclass
class CertificateCheckResult:
    """Outcome of checking a certificate against usage policy."""

    usage: CertificateUsage
    problems: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.problems


@dataclass
class TLSConfig:
    """Certificate and key the HTTPS listener uses."""

    cert_path: Path
    key_path: Path
    enabled: bool = True
    auto_generated: bool = False

    @property
    def exists(self) -> bool:
        return self.cert_path.exists() and self.key_path.exists()


def get_cert_dir() -> Path:
    """``AUTHFLOW_CERT_DIR`` if set, else ``~/.authflow/certs``."""
    configured = os.environ.get(ENV_CERT_DIR)
    return Path(configured) if configured else DEFAULT_CERT_DIR


def generate_private_key(key_size: int = 2048) -> rsa.RSAPrivateKey:
    """New RSA key with the standard public exponent."""
    return rsa.generate_private_key(public_exponent=65537, key_size=key_size)


def _key_usage_for(usage: CertificateUsage) -> x509.KeyUsage:
    signs, enciphers = _USAGE_BITS[usage]
    return x509.KeyUsage(
        digital_signature=signs,
        key_encipherment=enciphers,
        content_commitment=False,
        data_encipherment=False,
        key_agreement=False,
        key_cert_sign=False,
        crl_sign=False,
        encipher_only=False,
        decipher_only=False,
    )


def generate_self_signed_certificate(
    private_key: rsa.RSAPrivateKey,
    common_name: str = "localhost",
    organization: str = "AuthFlow",
    days_valid: int = 365,
    usage: CertificateUsage = CertificateUsage.SIGNING,
    not_before: datetime | None = None,
) -> x509.Certificate:
    """Issue a self-signed certificate for ``private_key``.

    The KeyUsage extension is critical and grants only what ``usage``
    needs, so a signing certificate cannot be mistaken for an encryption
    one. TLS certificates also get a SAN for ``common_name`` and the
    serverAuth extended usage.

    Args:
        private_key: Key to certify and sign with.
        common_name: Subject CN.
        organization: Subject O.
        days_valid: Length of the validity window.
        usage: Role of the key pair.
        not_before: Start of the validity window. Defaults to now.
    """
    name = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, organization),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])
    valid_from = not_before or datetime.now(UTC)

    extensions: list[tuple[x509.ExtensionType, bool]] = [
        (x509.BasicConstraints(ca=False, path_length=None), True),
        (_key_usage_for(usage), True),
    ]
    if usage == CertificateUsage.TLS:
        extensions += [
            (x509.SubjectAlternativeName([x509.DNSName(common_name)]), False),
            (x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), False),
        ]

    builder = x509.CertificateBuilder(
        subject_name=name,
        issuer_name=name,
        public_key=private_key.public_key(),
        serial_number=x509.random_serial_number(),
        not_valid_before=valid_from,
        not_valid_after=valid_from + timedelta(days=days_valid),
    )
    for extension, critical in extensions:
        builder = builder.add_extension(extension, critical=critical)
    return builder.sign(private_key, hashes.SHA256())


def get_private_key_pem(private_key: rsa.RSAPrivateKey, password: bytes | None = None) -> str:
    """PKCS#8 PEM, encrypted when ``password`` is given."""
    encryption: serialization.KeySerializationEncryption = serialization.NoEncryption()
    if password:
        encryption = serialization.BestAvailableEncryption(password)
    return private_key.private_bytes(
        serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, encryption
    ).decode("ascii")


def get_certificate_pem(cert: x509.Certificate) -> str:
    return cert.public_bytes(serialization.Encoding.PEM).decode("ascii")


def save_private_key(private_key: rsa.RSAPrivateKey, path: Path, password: bytes | None = None) -> None:
    """Write ``private_key`` as PEM, readable by the owner only."""
    path.parent.mkdir(parents=True, exist_ok=True)
    # Create with 0600 before any key material is written.
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as handle:
        handle.write(get_private_key_pem(private_key, password))
    os.chmod(path, 0o600)


def save_certificate(cert: x509.Certificate, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(get_certificate_pem(cert))


def load_private_key(path: Path, password: bytes | None = None) -> rsa.RSAPrivateKey:
    """Read an RSA private key from a PEM file.

    Raises:
        KeyLoadError: The file is missing, unreadable or not an RSA key.
    """
    try:
        key = serialization.load_pem_private_key(path.read_bytes(), password=password)
    except FileNotFoundError:
        raise KeyLoadError(f"Private key file not found: {path}") from None
    except (OSError, ValueError, TypeError) as e:
        raise KeyLoadError(f"Cannot read private key {path}: {e}") from e

    if not isinstance(key, rsa.RSAPrivateKey):
        raise KeyLoadError(f"{path} holds a {type(key).__name__}; an RSA key is required")
    return key


def load_certificate(path: Path) -> x509.Certificate:
    """Read a certificate from a PEM file.

    Raises:
        CertificateLoadError: The file is missing or not a certificate.
    """
    try:
        data = path.read_text()
    except FileNotFoundError:
        raise CertificateLoadError(f"Certificate file not found: {path}") from None
    except (OSError, UnicodeDecodeError) as e:
        raise CertificateLoadError(f"Cannot read certificate {path}: {e}") from e
    return load_certificate_pem(data)


def normalize_certificate_pem(cert_data: str) -> str:
    """Wrap bare base64 DER, as found in metadata and KeyInfo, in PEM armour."""
    stripped = cert_data.strip()
    if stripped.startswith("-----BEGIN"):
        return stripped + "\n"
    body = "\n".join(textwrap.wrap("".join(stripped.split()), 64))
    return f"{_PEM_HEADER}\n{body}\n{_PEM_FOOTER}\n"


def load_certificate_pem(cert_data: str) -> x509.Certificate:
    """Parse a PEM or bare base64 certificate.

    Raises:
        CertificateLoadError: The data is not a certificate.
    """
    try:
        return x509.load_pem_x509_certificate(normalize_certificate_pem(cert_data).encode("ascii"))
    except (ValueError, UnicodeEncodeError) as e:
        raise CertificateLoadError(f"Failed to parse certificate: {e}") from e


def certificate_base64(cert: x509.Certificate) -> str:
    """DER certificate as a single base64 line, as embedded in metadata."""
    return base64.b64encode(cert.public_bytes(serialization.Encoding.DER)).decode("ascii")


def certificate_thumbprint(cert: x509.Certificate) -> str:
    """Hex SHA-256 over the DER encoding; used as the key-rotation identifier."""
    return cert.fingerprint(hashes.SHA256()).hex()


def _describe_key(cert: x509.Certificate) -> tuple[str, int]:
    public_key = cert.public_key()
    if isinstance(public_key, rsa.RSAPublicKey):
        return "RSA", public_key.key_size
    if isinstance(public_key, ec.EllipticCurvePublicKey):
        return "EC", public_key.curve.key_size
    return type(public_key).__name__, 0


def get_certificate_info(cert: x509.Certificate) -> CertificateInfo:
    key_type, key_size = _describe_key(cert)
    return CertificateInfo(
        subject=cert.subject.rfc4514_string(),
        issuer=cert.issuer.rfc4514_string(),
        serial_number=f"{cert.serial_number:x}",
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        fingerprint_sha256=certificate_thumbprint(cert),
        is_self_signed=cert.subject == cert.issuer,
        key_type=key_type,
        key_size=key_size,
    )


def is_certificate_valid(cert: x509.Certificate, now: datetime | None = None) -> bool:
    """Whether ``now`` falls inside the certificate's validity window."""
    at = now or datetime.now(UTC)
    return cert.not_valid_before_utc <= at <= cert.not_valid_after_utc


def validate_certificate(
    cert: x509.Certificate,
    usage: CertificateUsage,
    now: datetime | None = None,
    min_rsa_key_size: int = MIN_RSA_KEY_SIZE,
) -> CertificateCheckResult:
    """Check a certificate against the policy for ``usage``.

    Every problem is reported, not just the first: the validity window,
    the KeyUsage bit the operation needs (only when the extension is
    present) and the key strength.
    """
    result = CertificateCheckResult(usage=usage)
    at = now or datetime.now(UTC)

    if at < cert.not_valid_before_utc:
        result.problems.append(f"Certificate not valid before {cert.not_valid_before_utc.isoformat()}")
    if at > cert.not_valid_after_utc:
        result.problems.append(f"Certificate expired at {cert.not_valid_after_utc.isoformat()}")

    try:
        key_usage: x509.KeyUsage | None = cert.extensions.get_extension_for_class(x509.KeyUsage).value
    except x509.ExtensionNotFound:
        key_usage = None
    if key_usage is not None:
        if usage == CertificateUsage.SIGNING and not key_usage.digital_signature:
            result.problems.append("KeyUsage does not permit digitalSignature")
        elif usage == CertificateUsage.ENCRYPTION and not key_usage.key_encipherment:
            result.problems.append("KeyUsage does not permit keyEncipherment")

    key_type, key_size = _describe_key(cert)
    minimum = {"RSA": min_rsa_key_size, "EC": MIN_EC_KEY_SIZE}.get(key_type)
    if minimum is None:
        result.problems.append(f"Unsupported key type: {key_type}")
    elif key_size < minimum:
        result.problems.append(f"{key_type} key too weak: {key_size} < {minimum} bits")

    return result


def ensure_tls_certificate(
    cert_path: Path | None = None,
    key_path: Path | None = None,
    common_name: str = "localhost",
    days_valid: int = 365,
) -> TLSConfig:
    """Return the listener's TLS files, generating a self-signed pair when needed.

    A missing, unreadable or expired certificate is replaced. Paths default
    to ``server.crt``/``server.key`` in get_cert_dir().
    """
    config = TLSConfig(
        cert_path=cert_path or get_cert_dir() / "server.crt",
        key_path=key_path or get_cert_dir() / "server.key",
    )

    usable = config.exists
    if usable:
        try:
            usable = is_certificate_valid(load_certificate(config.cert_path))
        except CertificateLoadError:
            usable = False

    if not usable:
        private_key = generate_private_key()
        cert = generate_self_signed_certificate(
            private_key, common_name=common_name, days_valid=days_valid, usage=CertificateUsage.TLS
        )
        save_private_key(private_key, config.key_path)
        save_certificate(cert, config.cert_path)
        config.auto_generated = True

    return config
