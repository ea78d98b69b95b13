"""SQLAlchemy 2.x ORM models for persisted engine state.

Timestamps are stored as naive UTC so that expiry comparisons behave the
same on every backend.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    type_annotation_map = {
        dict[str, Any]: JSON,
    }


class SessionRecord(Base):
    """An authenticated user session."""

    __tablename__ = "sessions"

    session_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(500), nullable=False, index=True)
    attributes: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    last_accessed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    # IdP session binding, used for IdP-initiated logout
    idp_entity_id: Mapped[str | None] = mapped_column(String(500))
    idp_session_index: Mapped[str | None] = mapped_column(String(255))
    name_id_format: Mapped[str | None] = mapped_column(String(255))
    idp_not_on_or_after: Mapped[datetime | None] = mapped_column(DateTime)

    # Client binding
    bound_ip: Mapped[str | None] = mapped_column(String(64))
    bound_user_agent: Mapped[str | None] = mapped_column(Text)
    csrf_token: Mapped[str] = mapped_column(String(128), nullable=False)

    __table_args__ = (Index("ix_sessions_idp_user", "idp_entity_id", "user_id"),)

    def __repr__(self) -> str:
        return f"<SessionRecord(user='{self.user_id}', expires='{self.expires_at}')>"


class PendingRequestRecord(Base):
    """A request sent to an IdP that awaits its response."""

    __tablename__ = "pending_requests"

    request_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    idp_entity_id: Mapped[str] = mapped_column(String(500), nullable=False)
    relay_state: Mapped[str | None] = mapped_column(String(255))
    return_to: Mapped[str | None] = mapped_column(Text)
    session_id: Mapped[str | None] = mapped_column(String(128))
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<PendingRequestRecord(id='{self.request_id}', kind='{self.kind}')>"


class ConsumedMessageRecord(Base):
    """A consumed Response, Assertion or logout message ID.

    The primary key makes check-and-insert atomic across processes.
    """

    __tablename__ = "consumed_messages"

    message_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)

    def __repr__(self) -> str:
        return f"<ConsumedMessageRecord(id='{self.message_id}')>"
