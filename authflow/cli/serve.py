"""Server CLI commands."""

from pathlib import Path

import click

_EXISTING_FILE = click.Path(exists=True, dir_okay=False, path_type=Path)  # type: ignore[type-var]


@click.command()
@click.option("--host", "-h", default=None, help="Bind address (default: server.host)")
@click.option("--port", "-p", type=int, default=None, help="Bind port (default: server.port)")
@click.option("--config", "config_path", type=_EXISTING_FILE, help="Path to config.yaml")
@click.option("--cert", type=_EXISTING_FILE, help="TLS certificate for the listener (PEM)")
@click.option("--key", type=_EXISTING_FILE, help="TLS private key for the listener (PEM)")
@click.option("--no-tls", is_flag=True, help="Serve plain HTTP, e.g. behind a terminating proxy")
@click.option(
    "--storage",
    type=click.Choice(["memory", "sql"]),
    default=None,
    help="Where sessions, pending requests and consumed IDs are kept",
)
@click.option("--database-url", default=None, help="SQLAlchemy URL used with --storage sql")
@click.option("--idp", "idp_entity_id", default=None, help="Entity ID of the IdP used for login")
@click.option("--trace", is_flag=True, help="Log full protocol messages (redacted)")
@click.option("--debug", is_flag=True, help="Enable Flask debug mode")
def serve(
    host: str | None,
    port: int | None,
    config_path: Path | None,
    cert: Path | None,
    key: Path | None,
    no_tls: bool,
    storage: str | None,
    database_url: str | None,
    idp_entity_id: str | None,
    trace: bool,
    debug: bool,
) -> None:
    """Run the service provider.

    Command-line options win over config.yaml and AUTHFLOW_* variables.
    Without --cert/--key the listener uses a self-signed certificate.

    Examples:

        authflow serve --idp https://idp.example.com/metadata

        authflow serve --storage sql --database-url postgresql://localhost/authflow
    """
    from authflow.app import run_server
    from authflow.core.config import load_config
    from authflow.core.errors import AuthFlowError

    if bool(cert) != bool(key):
        missing = "--key" if cert else "--cert"
        raise click.ClickException(f"{missing} is required when {'--cert' if cert else '--key'} is provided")

    config = load_config(config_path)
    tls = config.server.tls
    if no_tls:
        tls.enabled = False
    if cert and key:
        tls.cert_path, tls.key_path = cert, key
    if storage:
        config.storage.backend = storage
    if database_url:
        config.storage.database_url = database_url
    if idp_entity_id:
        config.sp.idp_entity_id = idp_entity_id
    if trace:
        config.logging.level = "TRACE"
        config.logging.trace_enabled = True
    config.server.debug = config.server.debug or debug

    try:
        run_server(app_config=config, host=host, port=port)
    except AuthFlowError as e:
        raise click.ClickException(str(e)) from None
