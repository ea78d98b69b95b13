"""Core SSO engine: protocol, sessions, flows and ambient services."""

from authflow.core.errors import (
    GENERIC_FAILURE_MESSAGE,
    AuthFlowError,
    ErrorKind,
    ValidationCategory,
    ValidationError,
)
from authflow.core.logging import (
    HTTPExchange,
    LoggingClient,
    LogLevel,
    ProtocolLog,
    ProtocolLogger,
    configure_logging,
    get_protocol_logger,
    redact_sensitive,
    set_protocol_logger,
)

__all__ = [
    # Errors
    "GENERIC_FAILURE_MESSAGE",
    "AuthFlowError",
    "ErrorKind",
    "ValidationCategory",
    "ValidationError",
    # Logging
    "HTTPExchange",
    "LoggingClient",
    "LogLevel",
    "ProtocolLog",
    "ProtocolLogger",
    "configure_logging",
    "get_protocol_logger",
    "redact_sensitive",
    "set_protocol_logger",
]
