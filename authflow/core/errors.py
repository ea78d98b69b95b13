"""Error kinds and exception hierarchy.

Components raise the exceptions defined here. At the validator boundary they
are converted into ``ValidationError`` records so that callers always receive
a structured result instead of a raw exception.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class ErrorKind(StrEnum):
    """Category of an authentication failure."""

    MALFORMED_MESSAGE = "MalformedMessage"
    SIGNATURE_INVALID = "SignatureInvalid"
    UNTRUSTED_ISSUER = "UntrustedIssuer"
    TIMESTAMP_OUT_OF_RANGE = "TimestampOutOfRange"
    AUDIENCE_MISMATCH = "AudienceMismatch"
    REPLAY_DETECTED = "ReplayDetected"
    UNKNOWN_REQUEST_ID = "UnknownRequestId"
    SESSION_EXPIRED = "SessionExpired"
    SESSION_BINDING_MISMATCH = "SessionBindingMismatch"
    METADATA_UNAVAILABLE = "MetadataUnavailable"
    CRYPTO_FAILURE = "CryptoFailure"


# Kinds that raise a dedicated security audit event
SECURITY_KINDS: frozenset[ErrorKind] = frozenset({
    ErrorKind.REPLAY_DETECTED,
    ErrorKind.SIGNATURE_INVALID,
    ErrorKind.SESSION_BINDING_MISMATCH,
})

# Message shown to end users regardless of the underlying kind
GENERIC_FAILURE_MESSAGE = "Authentication failed, please retry."


class ValidationCategory(StrEnum):
    """Validation stages, in the order they run."""

    SCHEMA = "schema"
    SIGNATURE = "signature"
    TIMESTAMP = "timestamp"
    AUDIENCE = "audience"
    REPLAY = "replay"
    SUBJECT = "subject"
    FLOW = "flow"


@dataclass(frozen=True)
class ValidationError:
    """A single validation failure."""

    kind: ErrorKind
    category: ValidationCategory
    message: str

    @property
    def is_security_relevant(self) -> bool:
        """Whether this failure should raise a security audit event."""
        return self.kind in SECURITY_KINDS

    def to_dict(self) -> dict[str, str]:
        """Convert to dictionary for logging/serialization."""
        return {
            "kind": self.kind.value,
            "category": self.category.value,
            "message": self.message,
        }


class AuthFlowError(Exception):
    """Base exception for all AuthFlow errors."""

    kind: ErrorKind = ErrorKind.MALFORMED_MESSAGE


class MessageError(AuthFlowError):
    """Raised when a SAML message cannot be decoded or parsed."""


class BindingError(MessageError):
    """Raised when a transport encoding cannot be decoded."""


class CryptoError(AuthFlowError):
    """Raised when signing, encryption or decryption fails."""

    kind = ErrorKind.CRYPTO_FAILURE


class MetadataError(AuthFlowError):
    """Raised when a metadata document is rejected."""

    kind = ErrorKind.UNTRUSTED_ISSUER


class MetadataUnavailableError(AuthFlowError):
    """Raised when trust data for an entity cannot be obtained."""

    kind = ErrorKind.METADATA_UNAVAILABLE

    def __init__(self, entity_id: str, reason: str) -> None:
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Metadata unavailable for {entity_id}: {reason}")


class UnknownEntityError(MetadataUnavailableError):
    """Raised when an entity is neither cached nor has a metadata source."""

    kind = ErrorKind.UNTRUSTED_ISSUER

    def __init__(self, entity_id: str) -> None:
        super().__init__(entity_id, "unknown entity")


class ConfigurationError(AuthFlowError):
    """Raised when configuration is missing or invalid."""


class StorageError(AuthFlowError):
    """Raised when a backing store operation fails."""


class FlowError(AuthFlowError):
    """Raised when a flow operation is invoked in the wrong state."""

    def __init__(self, kind: ErrorKind, message: str) -> None:
        self.kind = kind
        super().__init__(message)
