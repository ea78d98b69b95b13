"""Pytest configuration and fixtures.

The fixtures build a small federation in memory: one identity provider and
one service provider, each with its own keys, trusting each other's
metadata and sharing a clock that only moves when a test advances it.
"""

from __future__ import annotations

import pytest
from click.testing import CliRunner
from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import rsa
from flask import Flask
from flask.testing import FlaskClient

from authflow.app import create_app
from authflow.core.audit import AuditLogger
from authflow.core.config import AppConfig, SPSettings
from authflow.core.crypto.certs import CertificateUsage, generate_private_key
from authflow.core.crypto.service import CryptoService
from authflow.core.flows import FlowOrchestrator
from authflow.core.saml.builder import SigningCredentials
from authflow.core.saml.idp import IdentityProvider
from authflow.core.saml.replay import InMemoryReplayGuard
from authflow.core.saml.sp import SAMLServiceProvider
from authflow.core.saml.trust import TrustStore
from authflow.core.sessions import MemoryPendingRequestStore, MemorySessionStore, SessionManager
from tests.federation import (
    IDP_ENTITY_ID,
    IDP_SLO_URL,
    IDP_SSO_URL,
    SP_BASE_URL,
    SP_ENTITY_ID,
    Federation,
    FrozenClock,
    make_certificate,
)


@pytest.fixture
def clock() -> FrozenClock:
    """Frozen clock shared by every component of a test."""
    return FrozenClock()


@pytest.fixture(scope="session")
def idp_key() -> rsa.RSAPrivateKey:
    return generate_private_key()


@pytest.fixture(scope="session")
def idp_cert(idp_key: rsa.RSAPrivateKey) -> x509.Certificate:
    return make_certificate(idp_key, "idp.example.com")


@pytest.fixture(scope="session")
def sp_key() -> rsa.RSAPrivateKey:
    return generate_private_key()


@pytest.fixture(scope="session")
def sp_cert(sp_key: rsa.RSAPrivateKey) -> x509.Certificate:
    return make_certificate(sp_key, "sp.example.com")


@pytest.fixture(scope="session")
def sp_encryption_key() -> rsa.RSAPrivateKey:
    return generate_private_key()


@pytest.fixture(scope="session")
def sp_encryption_cert(sp_encryption_key: rsa.RSAPrivateKey) -> x509.Certificate:
    return make_certificate(sp_encryption_key, "sp.example.com", usage=CertificateUsage.ENCRYPTION)


@pytest.fixture(scope="session")
def other_key() -> rsa.RSAPrivateKey:
    """A key nobody in the federation trusts."""
    return generate_private_key()


@pytest.fixture(scope="session")
def other_cert(other_key: rsa.RSAPrivateKey) -> x509.Certificate:
    return make_certificate(other_key, "attacker.example.com")


@pytest.fixture
def crypto(clock: FrozenClock) -> CryptoService:
    return CryptoService(clock=clock)


@pytest.fixture
def trust_store(crypto: CryptoService, clock: FrozenClock) -> TrustStore:
    """Trust store shared by both providers."""
    return TrustStore(crypto=crypto, clock=clock, sleep=lambda seconds: None)


@pytest.fixture
def idp(
    trust_store: TrustStore,
    crypto: CryptoService,
    clock: FrozenClock,
    idp_key: rsa.RSAPrivateKey,
    idp_cert: x509.Certificate,
) -> IdentityProvider:
    """Identity provider whose metadata is trusted."""
    provider = IdentityProvider(
        IDP_ENTITY_ID,
        IDP_SSO_URL,
        IDP_SLO_URL,
        trust_store,
        crypto,
        InMemoryReplayGuard(clock=clock),
        SigningCredentials(idp_key, idp_cert),
        clock=clock,
    )
    trust_store.register(provider.metadata())
    return provider


@pytest.fixture
def sp_settings() -> SPSettings:
    return SPSettings(entity_id=SP_ENTITY_ID, base_url=SP_BASE_URL, idp_entity_id=IDP_ENTITY_ID)


@pytest.fixture
def sp(
    sp_settings: SPSettings,
    idp: IdentityProvider,
    trust_store: TrustStore,
    crypto: CryptoService,
    clock: FrozenClock,
    sp_key: rsa.RSAPrivateKey,
    sp_cert: x509.Certificate,
    sp_encryption_key: rsa.RSAPrivateKey,
    sp_encryption_cert: x509.Certificate,
) -> SAMLServiceProvider:
    """Service provider trusting ``idp`` and trusted by it."""
    provider = SAMLServiceProvider(
        sp_settings,
        trust_store,
        crypto,
        InMemoryReplayGuard(clock=clock),
        signing=SigningCredentials(sp_key, sp_cert),
        encryption_key=sp_encryption_key,
        encryption_certificate=sp_encryption_cert,
        clock=clock,
    )
    trust_store.register(provider.metadata())
    return provider


@pytest.fixture
def federation(idp: IdentityProvider, sp: SAMLServiceProvider, clock: FrozenClock) -> Federation:
    return Federation(idp, clock)


@pytest.fixture
def audit() -> AuditLogger:
    """Audit logger private to one test."""
    return AuditLogger()


@pytest.fixture
def orchestrator(sp: SAMLServiceProvider, audit: AuditLogger, clock: FrozenClock) -> FlowOrchestrator:
    return FlowOrchestrator(
        sp,
        SessionManager(MemorySessionStore(), clock=clock),
        MemoryPendingRequestStore(),
        audit=audit,
        clock=clock,
    )


@pytest.fixture
def app(orchestrator: FlowOrchestrator) -> Flask:
    """Create application for testing."""
    app = create_app(
        AppConfig(),
        orchestrator,
        {
            "TESTING": True,
            "SECRET_KEY": "test-secret-key",
            "AUTHFLOW_COOKIE_SECURE": False,
        },
    )
    return app


@pytest.fixture
def client(app: Flask) -> FlaskClient:
    """Create test client."""
    return app.test_client()


@pytest.fixture
def runner() -> CliRunner:
    """Create CLI test runner."""
    return CliRunner()
