"""SAML 2.0 messages, bindings, trust, validation and both protocol roles."""

from authflow.core.saml.bindings import (
    RedirectMessage,
    build_redirect_url,
    decode_post,
    decode_redirect,
    render_post_form,
)
from authflow.core.saml.builder import AssertionSpec, BuiltMessage, MessageBuilder, SigningCredentials
from authflow.core.saml.constants import Binding, NameIDFormat, StatusCode
from authflow.core.saml.idp import IdentityProvider, LogoutCoordinator, Principal
from authflow.core.saml.messages import (
    Assertion,
    AuthnRequest,
    LogoutRequest,
    LogoutResponse,
    SAMLResponse,
)
from authflow.core.saml.metadata import Endpoint, EndpointPurpose, Entity, EntityRole, parse_metadata
from authflow.core.saml.replay import InMemoryReplayGuard, ReplayGuard
from authflow.core.saml.sp import SAMLServiceProvider
from authflow.core.saml.trust import MetadataFetcher, TrustStore
from authflow.core.saml.validation import MessageValidator, ValidationResult

__all__ = [
    # Bindings
    "RedirectMessage",
    "build_redirect_url",
    "decode_post",
    "decode_redirect",
    "render_post_form",
    # Builder
    "AssertionSpec",
    "BuiltMessage",
    "MessageBuilder",
    "SigningCredentials",
    # Constants
    "Binding",
    "NameIDFormat",
    "StatusCode",
    # Messages
    "Assertion",
    "AuthnRequest",
    "LogoutRequest",
    "LogoutResponse",
    "SAMLResponse",
    # Metadata and trust
    "Endpoint",
    "EndpointPurpose",
    "Entity",
    "EntityRole",
    "MetadataFetcher",
    "TrustStore",
    "parse_metadata",
    # Replay
    "InMemoryReplayGuard",
    "ReplayGuard",
    # Validation
    "MessageValidator",
    "ValidationResult",
    # Roles
    "IdentityProvider",
    "LogoutCoordinator",
    "Principal",
    "SAMLServiceProvider",
]
