"""SAML metadata CLI commands."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import click


@click.group()
def metadata() -> None:
    """Generate our SP metadata and inspect partner metadata."""
    pass


@metadata.command("generate")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),  # type: ignore[type-var]
    help="Path to config.yaml",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),  # type: ignore[type-var]
    help="Write metadata to this file instead of stdout",
)
def metadata_generate(config_path: Path | None, output: Path | None) -> None:
    """Generate the SP metadata document.

    Publishes the ACS and SLO endpoints and the signing certificate from
    the configured key pair. Register this document with your IdP.
    """
    from authflow.app import build_service_provider
    from authflow.core.config import load_config
    from authflow.core.errors import AuthFlowError
    from authflow.core.saml.replay import InMemoryReplayGuard
    from authflow.core.saml.trust import TrustStore

    app_config = load_config(config_path)
    try:
        provider = build_service_provider(app_config, TrustStore(), InMemoryReplayGuard())
        document = provider.metadata()
    except AuthFlowError as e:
        raise click.ClickException(str(e)) from None

    if output:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(document)
        click.echo(f"Metadata written to: {output}")
    else:
        click.echo(document.decode("utf-8"))


def _describe(entity: Any) -> dict[str, Any]:
    return {
        "entity_id": entity.entity_id,
        "role": entity.role.value,
        "valid_until": entity.valid_until.isoformat() if entity.valid_until else None,
        "want_authn_requests_signed": entity.want_authn_requests_signed,
        "endpoints": [
            {
                "purpose": e.purpose.value,
                "binding": e.binding,
                "location": e.location,
                "index": e.index,
                "default": e.is_default,
            }
            for e in entity.endpoints
        ],
        "signing_certificates": [c.thumbprint for c in entity.signing_certificates],
        "encryption_certificates": [c.thumbprint for c in entity.encryption_certificates],
        "name_id_formats": list(entity.name_id_formats),
    }


@metadata.command("inspect")
@click.argument("metadata_path", type=click.Path(exists=True, path_type=Path))  # type: ignore[type-var]
@click.option(
    "--entity-id",
    help="Entity to select from an aggregate document",
)
@click.option(
    "--json",
    "output_json",
    is_flag=True,
    help="Output results as JSON for scripting",
)
def metadata_inspect(metadata_path: Path, entity_id: str | None, output_json: bool) -> None:
    """Parse a metadata document and show its endpoints and certificates."""
    from authflow.core.errors import MetadataError
    from authflow.core.saml.metadata import parse_metadata

    try:
        entity = parse_metadata(metadata_path.read_bytes(), entity_id=entity_id)
    except MetadataError as e:
        raise click.ClickException(f"Invalid metadata: {e}") from None

    info = _describe(entity)
    if output_json:
        click.echo(json.dumps(info, indent=2))
        return

    click.echo(f"Entity: {info['entity_id']}")
    click.echo(f"  Role: {info['role'].upper()}")
    if info["valid_until"]:
        click.echo(f"  Valid until: {info['valid_until']}")
    click.echo(f"  Wants signed AuthnRequests: {info['want_authn_requests_signed']}")
    click.echo("")
    click.echo("Endpoints:")
    for endpoint in info["endpoints"]:
        click.echo(f"  {endpoint['purpose']:<9} {endpoint['binding']}")
        click.echo(f"            {endpoint['location']}")
    click.echo("")
    click.echo("Signing certificates (SHA-256):")
    for thumbprint in info["signing_certificates"]:
        click.echo(f"  {thumbprint}")
    if info["encryption_certificates"]:
        click.echo("Encryption certificates (SHA-256):")
        for thumbprint in info["encryption_certificates"]:
            click.echo(f"  {thumbprint}")
