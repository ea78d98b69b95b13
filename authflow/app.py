"""Flask application factory and component wiring."""

from __future__ import annotations

import logging
import os
import secrets
import ssl
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any

import click
from flask import Flask

from authflow.core.config import AppConfig, KeySettings, load_config
from authflow.core.crypto.certs import load_certificate, load_private_key
from authflow.core.crypto.service import CryptoService
from authflow.core.errors import ConfigurationError
from authflow.core.flows import FlowOrchestrator
from authflow.core.saml.attributes import AttributeMapper
from authflow.core.saml.builder import SigningCredentials
from authflow.core.saml.replay import InMemoryReplayGuard, ReplayGuard
from authflow.core.saml.sp import SAMLServiceProvider
from authflow.core.saml.trust import TrustStore
from authflow.core.sessions import (
    MemoryPendingRequestStore,
    MemorySessionStore,
    PendingRequestStore,
    SessionManager,
    SessionStore,
)

logger = logging.getLogger(__name__)

EXTENSION_KEY = "authflow"
SECRET_KEY_FILE = Path.home() / ".authflow" / "flask_secret.key"


def load_signing_credentials(keys: KeySettings) -> SigningCredentials | None:
    """Load the SP signing key pair, if one is configured.

    Raises:
        ConfigurationError: If only half of the pair is configured.
        CertificateError: If the files cannot be read.
    """
    if not keys.signing_key_path and not keys.signing_cert_path:
        return None
    if not keys.signing_key_path or not keys.signing_cert_path:
        raise ConfigurationError("Both signing_key_path and signing_cert_path must be set")
    return SigningCredentials(
        key=load_private_key(keys.signing_key_path),
        certificate=load_certificate(keys.signing_cert_path),
    )


def build_service_provider(
    app_config: AppConfig,
    trust_store: TrustStore,
    replay_guard: ReplayGuard,
    crypto: CryptoService | None = None,
    clock: Callable[[], datetime] | None = None,
) -> SAMLServiceProvider:
    """Create the SAML service provider from configuration."""
    keys = app_config.keys
    signing = load_signing_credentials(keys)
    encryption_key = load_private_key(keys.encryption_key_path) if keys.encryption_key_path else None
    encryption_certificate = load_certificate(keys.encryption_cert_path) if keys.encryption_cert_path else None

    return SAMLServiceProvider(
        app_config.sp,
        trust_store,
        crypto or CryptoService(min_rsa_key_size=keys.min_rsa_key_size, clock=clock),
        replay_guard,
        signing=signing,
        encryption_key=encryption_key,
        encryption_certificate=encryption_certificate,
        clock=clock,
    )


def _build_stores(
    app_config: AppConfig,
    clock: Callable[[], datetime] | None,
) -> tuple[SessionStore, PendingRequestStore, ReplayGuard]:
    backend = app_config.storage.backend
    if backend == "memory":
        return MemorySessionStore(), MemoryPendingRequestStore(), InMemoryReplayGuard(clock=clock)
    if backend == "sql":
        from authflow.storage import Database, SQLPendingRequestStore, SQLReplayGuard, SQLSessionStore

        database = Database(app_config.storage.database_url)
        database.init_db()
        logger.info(f"Using SQL storage at {database.url.split('@')[-1]}")
        return SQLSessionStore(database), SQLPendingRequestStore(database), SQLReplayGuard(database, clock=clock)
    raise ConfigurationError(f"Unknown storage backend: {backend}")


def build_orchestrator(
    app_config: AppConfig | None = None,
    clock: Callable[[], datetime] | None = None,
    trust_store: TrustStore | None = None,
) -> FlowOrchestrator:
    """Wire the trust store, stores, SP and session manager together.

    Args:
        app_config: Application configuration. Loads from file/env if not provided.
        clock: Returns the current time. Shared by every component.
        trust_store: Pre-populated trust store. Built from configuration and
            initialized when not provided.

    Returns:
        Ready-to-use flow orchestrator.
    """
    if app_config is None:
        app_config = load_config()

    crypto = CryptoService(min_rsa_key_size=app_config.keys.min_rsa_key_size, clock=clock)
    if trust_store is None:
        trust_store = TrustStore.from_settings(app_config.trust, crypto=crypto, clock=clock)
        trust_store.init()

    session_store, pending_store, replay_guard = _build_stores(app_config, clock)
    protocol = build_service_provider(app_config, trust_store, replay_guard, crypto=crypto, clock=clock)
    sessions = SessionManager.from_settings(app_config.sessions, session_store, clock=clock)

    return FlowOrchestrator(
        protocol,
        sessions,
        pending_store,
        pending_request_ttl_seconds=app_config.sessions.pending_request_ttl_seconds,
        allow_unsolicited=app_config.sp.allow_unsolicited,
        default_landing_url=app_config.sp.default_landing_url,
        attribute_mapper=AttributeMapper(),
        clock=clock,
    )


def _secret_key() -> str:
    secret_key = os.environ.get("AUTHFLOW_SECRET_KEY")
    if secret_key:
        return secret_key
    # Persist the key so sessions survive restarts
    if SECRET_KEY_FILE.exists():
        return SECRET_KEY_FILE.read_text().strip()
    secret_key = secrets.token_hex(32)
    SECRET_KEY_FILE.parent.mkdir(parents=True, exist_ok=True)
    SECRET_KEY_FILE.write_text(secret_key)
    SECRET_KEY_FILE.chmod(0o600)
    return secret_key


def create_app(
    app_config: AppConfig | None = None,
    orchestrator: FlowOrchestrator | None = None,
    config: dict[str, Any] | None = None,
) -> Flask:
    """Create and configure the Flask application.

    Args:
        app_config: Application configuration. Loads from file/env if not provided.
        orchestrator: Flow orchestrator to serve. Built from ``app_config``
            if not provided.
        config: Optional Flask configuration overrides.

    Returns:
        Configured Flask application instance.
    """
    app = Flask(__name__)

    if app_config is None:
        app_config = load_config()

    app.config.from_mapping(
        AUTHFLOW_COOKIE_NAME="authflow_session",
        AUTHFLOW_COOKIE_SECURE=app_config.server.tls.enabled,
    )
    if config:
        app.config.from_mapping(config)
    if not app.config.get("SECRET_KEY"):
        app.config["SECRET_KEY"] = _secret_key()

    if orchestrator is None:
        orchestrator = build_orchestrator(app_config)
    app.extensions[EXTENSION_KEY] = orchestrator

    from authflow.web import routes

    routes.init_app(app)

    return app


def create_ssl_context(cert_path: Path, key_path: Path) -> ssl.SSLContext:
    """Server-side TLS context; TLS 1.2 is the floor."""
    context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    context.load_cert_chain(certfile=cert_path, keyfile=key_path)
    return context


def _listener_tls(app_config: AppConfig) -> ssl.SSLContext | None:
    from authflow.core.crypto.certs import ensure_tls_certificate

    settings = app_config.server.tls
    if not settings.enabled:
        click.secho("TLS is disabled: only run this way behind a proxy that terminates HTTPS.", fg="yellow")
        return None

    files = ensure_tls_certificate(
        cert_path=settings.cert_path,
        key_path=settings.key_path,
        common_name=settings.common_name,
        days_valid=settings.days_valid,
    )
    if files.auto_generated:
        click.echo(f"Generated a self-signed listener certificate at {files.cert_path}")
    return create_ssl_context(files.cert_path, files.key_path)


def run_server(app_config: AppConfig | None = None, host: str | None = None, port: int | None = None) -> None:
    """Serve the SP with Flask's built-in server.

    Args:
        app_config: Settings; read from config.yaml and the environment when omitted.
        host: Bind address, overriding ``server.host``.
        port: Bind port, overriding ``server.port``.
    """
    from authflow.core.logging import configure_logging

    app_config = app_config or load_config()
    log_settings = app_config.logging
    configure_logging(
        level=log_settings.level,
        trace_enabled=log_settings.trace_enabled,
        log_file=log_settings.log_file,
        audit_file=log_settings.audit_file,
    )

    app = create_app(app_config)
    app.debug = app_config.server.debug
    ssl_context = _listener_tls(app_config)

    bind_host = host or app_config.server.host
    bind_port = port or app_config.server.port
    scheme = "https" if ssl_context else "http"
    click.echo(f"AuthFlow SP {app_config.sp.entity_id}")
    click.echo(f"  Listening on {scheme}://{bind_host}:{bind_port}")
    click.echo(f"  Metadata at  {app_config.sp.base_url.rstrip('/')}/saml/metadata")
    click.echo(f"  Storage      {app_config.storage.backend}")

    app.run(host=bind_host, port=bind_port, ssl_context=ssl_context)
