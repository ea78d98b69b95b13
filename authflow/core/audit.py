"""Audit trail for authentication events.

Operators need the specific failure kind even though end users only ever see
a generic message. Every flow outcome is written to the ``authflow.audit``
logger as a structured record; security-relevant failures additionally get a
``SECURITY_ALERT`` record at WARNING level.
"""

from __future__ import annotations

import logging
import secrets
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from authflow.core.errors import SECURITY_KINDS, ErrorKind, ValidationError

logger = logging.getLogger("authflow.audit")


class AuditEventType(StrEnum):
    """Types of audit events."""

    LOGIN_INITIATED = "LOGIN_INITIATED"
    LOGIN_SUCCEEDED = "LOGIN_SUCCEEDED"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT_INITIATED = "LOGOUT_INITIATED"
    LOGOUT_SUCCEEDED = "LOGOUT_SUCCEEDED"
    LOGOUT_FAILED = "LOGOUT_FAILED"
    SESSION_REJECTED = "SESSION_REJECTED"
    ASSERTION_ISSUED = "ASSERTION_ISSUED"
    METADATA_REFRESHED = "METADATA_REFRESHED"
    METADATA_FAILED = "METADATA_FAILED"
    SECURITY_ALERT = "SECURITY_ALERT"


@dataclass
class AuditEvent:
    """A structured audit record."""

    event_type: AuditEventType
    outcome: str
    kind: ErrorKind | None = None
    entity_id: str | None = None
    user_id: str | None = None
    message_id: str | None = None
    detail: str | None = None
    correlation_id: str = field(default_factory=lambda: secrets.token_hex(8))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        data: dict[str, Any] = {
            "event_type": self.event_type.value,
            "outcome": self.outcome,
            "kind": self.kind.value if self.kind else None,
            "entity_id": self.entity_id,
            "user_id": self.user_id,
            "message_id": self.message_id,
            "detail": self.detail,
            "correlation_id": self.correlation_id,
            "timestamp": self.timestamp.isoformat(),
        }
        data.update(self.extra)
        return data

    def format(self) -> str:
        """Render as a single pipe-separated log line."""
        parts = [f"AUDIT [{self.event_type.value}]"]
        for key, value in self.to_dict().items():
            if key in ("event_type", "timestamp") or value is None:
                continue
            parts.append(f"{key}={value}")
        return " | ".join(parts)


class AuditLogger:
    """Writes audit events and keeps the most recent ones for inspection."""

    def __init__(self, history_size: int = 1000) -> None:
        self._history: list[AuditEvent] = []
        self._history_size = history_size
        self._lock = threading.Lock()

    @property
    def events(self) -> list[AuditEvent]:
        """Recently recorded events, oldest first."""
        with self._lock:
            return list(self._history)

    def record(self, event: AuditEvent) -> AuditEvent:
        """Record an audit event."""
        with self._lock:
            self._history.append(event)
            if len(self._history) > self._history_size:
                del self._history[: len(self._history) - self._history_size]

        if event.event_type == AuditEventType.SECURITY_ALERT or event.outcome == "failure":
            logger.warning(event.format())
        else:
            logger.info(event.format())
        return event

    def record_failure(
        self,
        event_type: AuditEventType,
        errors: list[ValidationError],
        entity_id: str | None = None,
        user_id: str | None = None,
        message_id: str | None = None,
    ) -> AuditEvent:
        """Record a failed operation, plus a security alert when warranted.

        Args:
            event_type: The failed operation.
            errors: Validation errors that caused the failure.
            entity_id: Remote entity involved, if known.
            user_id: Affected user, if known.
            message_id: SAML message ID, if known.

        Returns:
            The failure event.
        """
        primary = errors[0] if errors else None
        event = self.record(
            AuditEvent(
                event_type=event_type,
                outcome="failure",
                kind=primary.kind if primary else None,
                entity_id=entity_id,
                user_id=user_id,
                message_id=message_id,
                detail="; ".join(e.message for e in errors) or None,
            )
        )

        security_kinds = sorted({e.kind for e in errors if e.kind in SECURITY_KINDS})
        for kind in security_kinds:
            self.record(
                AuditEvent(
                    event_type=AuditEventType.SECURITY_ALERT,
                    outcome="failure",
                    kind=kind,
                    entity_id=entity_id,
                    user_id=user_id,
                    message_id=message_id,
                    correlation_id=event.correlation_id,
                )
            )
        return event


# Global audit logger instance
_audit_logger: AuditLogger | None = None


def get_audit_logger() -> AuditLogger:
    """Get the global audit logger instance."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger
