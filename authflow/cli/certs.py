"""Certificate management CLI commands."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

import click

if TYPE_CHECKING:
    from cryptography import x509

_USAGES = click.Choice(["signing", "encryption", "tls"])
_FILE_STEMS = {"signing": "signing", "encryption": "encryption", "tls": "server"}
_TIME_FORMAT = "%Y-%m-%d %H:%M:%S UTC"


def _load(cert_path: Path) -> x509.Certificate:
    from authflow.core.crypto.certs import CertificateError, load_certificate

    try:
        return load_certificate(cert_path)
    except CertificateError as e:
        raise click.ClickException(str(e)) from None


@click.group()
def certs() -> None:
    """Manage signing, encryption and TLS certificates.

    SAML trust is anchored in metadata, so self-signed certificates are
    the norm for the SP's signing and encryption keys.
    """


@certs.command("generate")
@click.option("--type", "cert_type", type=_USAGES, default="signing", help="What the key pair will be used for")
@click.option("--common-name", "-cn", default="localhost", help="Subject CN")
@click.option("--days", "-d", type=int, default=365, help="Validity period in days")
@click.option("--key-size", type=click.Choice(["2048", "3072", "4096"]), default="2048", help="RSA modulus size")
@click.option("--output", "-o", type=click.Path(file_okay=False, path_type=Path), help="Target directory")
@click.option("--force", "-f", is_flag=True, help="Replace existing files")
def certs_generate(
    cert_type: str, common_name: str, days: int, key_size: str, output: Path | None, force: bool
) -> None:
    """Generate a self-signed key pair whose KeyUsage matches --type.

    Files are named signing.*, encryption.* or server.* (for tls).

    Examples:

        authflow certs generate

        authflow certs generate --type encryption --output ./keys

        authflow certs generate --type tls --common-name sp.example.com
    """
    from authflow.core.crypto.certs import (
        CertificateUsage,
        certificate_thumbprint,
        generate_private_key,
        generate_self_signed_certificate,
        get_cert_dir,
        save_certificate,
        save_private_key,
    )

    directory = output or get_cert_dir()
    stem = _FILE_STEMS[cert_type]
    cert_path, key_path = directory / f"{stem}.crt", directory / f"{stem}.key"
    if not force and (cert_path.exists() or key_path.exists()):
        raise click.ClickException(f"{stem}.crt or {stem}.key already exists in {directory}. Use --force to replace.")

    private_key = generate_private_key(int(key_size))
    cert = generate_self_signed_certificate(
        private_key, common_name=common_name, days_valid=days, usage=CertificateUsage(cert_type)
    )
    save_private_key(private_key, key_path)
    save_certificate(cert, cert_path)

    click.echo(f"Generated {cert_type} key pair for CN={common_name} ({key_size} bits, {days} days)")
    click.echo(f"  Certificate: {cert_path}")
    click.echo(f"  Private key: {key_path}")
    click.echo(f"  Thumbprint:  {certificate_thumbprint(cert)}")


@certs.command("info")
@click.argument("cert_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def certs_info(cert_path: Path) -> None:
    """Show a certificate's subject, validity, key and fingerprint."""
    from authflow.core.crypto.certs import get_certificate_info, is_certificate_valid

    cert = _load(cert_path)
    info = get_certificate_info(cert)
    valid = is_certificate_valid(cert)

    rows = [
        ("Subject", info.subject),
        ("Issuer", info.issuer + (" (self-signed)" if info.is_self_signed else "")),
        ("Serial", info.serial_number),
        ("Not before", info.not_before.strftime(_TIME_FORMAT)),
        ("Not after", info.not_after.strftime(_TIME_FORMAT)),
        ("Key", f"{info.key_type}, {info.key_size} bits"),
        ("SHA-256", info.fingerprint_sha256),
    ]
    click.echo(f"Certificate: {cert_path}")
    width = max(len(label) for label, _ in rows)
    for label, value in rows:
        click.echo(f"  {label.ljust(width)}  {value}")
    click.secho(f"  {'Status'.ljust(width)}  {'VALID' if valid else 'EXPIRED'}", fg="green" if valid else "red")


@certs.command("check")
@click.argument("cert_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--usage", type=_USAGES, default="signing", help="Operation the certificate will be used for")
@click.option("--min-key-size", type=int, default=2048, help="Smallest acceptable RSA key, in bits")
def certs_check(cert_path: Path, usage: str, min_key_size: int) -> None:
    """Check a certificate against the policy for one operation.

    Fails when the certificate is outside its validity window, lacks the
    KeyUsage bit for the operation or carries a weak key.
    """
    from authflow.core.crypto.certs import CertificateUsage, validate_certificate

    result = validate_certificate(_load(cert_path), CertificateUsage(usage), min_rsa_key_size=min_key_size)
    if result.is_valid:
        click.secho(f"{cert_path}: OK for {usage}", fg="green")
        return

    for problem in result.problems:
        click.secho(f"  - {problem}", fg="red")
    raise click.ClickException(f"{cert_path} is not acceptable for {usage}")
