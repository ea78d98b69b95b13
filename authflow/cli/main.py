"""CLI entry point for AuthFlow."""

from pathlib import Path

import click

from authflow import __version__
from authflow.cli import certs as certs_commands
from authflow.cli import config as config_commands
from authflow.cli import db as db_commands
from authflow.cli import metadata as metadata_commands
from authflow.cli import serve as serve_commands


@click.group()
@click.version_option(version=__version__, prog_name="authflow")
@click.pass_context
def cli(ctx: click.Context) -> None:
    """AuthFlow - SAML 2.0 Service Provider and SSO flow engine."""
    ctx.ensure_object(dict)


@cli.command()
@click.option(
    "--force",
    is_flag=True,
    help="Overwrite existing configuration and key files.",
)
@click.option(
    "--config-dir",
    type=click.Path(path_type=Path),  # type: ignore[type-var]
    help="Directory for config.yaml and keys. Defaults to ~/.authflow",
)
def init(force: bool, config_dir: Path | None) -> None:
    """Initialize AuthFlow configuration and SP signing keys.

    Writes a default config.yaml and generates a self-signed SP signing
    key pair referenced from it.
    """
    from authflow.core.config import DEFAULT_CONFIG_DIR, AppConfig
    from authflow.core.crypto.certs import (
        CertificateUsage,
        generate_private_key,
        generate_self_signed_certificate,
        save_certificate,
        save_private_key,
    )

    base_dir = config_dir or DEFAULT_CONFIG_DIR
    config_path = base_dir / "config.yaml"
    key_path = base_dir / "keys" / "sp-signing.key"
    cert_path = base_dir / "keys" / "sp-signing.crt"

    if config_path.exists() and not force:
        click.echo("AuthFlow is already initialized.")
        click.echo(f"  Config: {config_path}")
        click.echo("")
        click.echo("Use --force to reinitialize (WARNING: this replaces the signing key)")
        return

    app_config = AppConfig()
    click.echo("Generating SP signing key pair...")
    private_key = generate_private_key()
    cert = generate_self_signed_certificate(
        private_key,
        common_name=app_config.sp.entity_id,
        days_valid=730,
        usage=CertificateUsage.SIGNING,
    )
    save_private_key(private_key, key_path)
    save_certificate(cert, cert_path)

    app_config.keys.signing_key_path = key_path
    app_config.keys.signing_cert_path = cert_path
    app_config.save(config_path)

    click.echo(f"Configuration written to: {config_path}")
    click.echo(f"Signing certificate: {cert_path}")
    click.echo("")
    click.echo("AuthFlow initialized successfully!")
    click.echo("")
    click.echo("Next steps:")
    click.echo("  1. Add your IdP under trust.sources and set sp.idp_entity_id in config.yaml")
    click.echo("  2. Run 'authflow metadata generate' and register the SP with your IdP")
    click.echo("  3. Run 'authflow serve'")


cli.add_command(certs_commands.certs)
cli.add_command(config_commands.config)
cli.add_command(db_commands.db)
cli.add_command(metadata_commands.metadata)
cli.add_command(serve_commands.serve)
