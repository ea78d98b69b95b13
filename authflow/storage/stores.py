"""SQL implementations of the session, pending request and replay stores."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from authflow.core.saml.replay import ReplayGuard
from authflow.core.sessions import (
    PendingKind,
    PendingRequest,
    PendingRequestStore,
    Session,
    SessionStore,
)
from authflow.storage.database import Database
from authflow.storage.models import ConsumedMessageRecord, PendingRequestRecord, SessionRecord

logger = logging.getLogger(__name__)


def _to_db(value: datetime) -> datetime:
    """Aware datetime to naive UTC."""
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _from_db(value: datetime) -> datetime:
    """Naive UTC from the database to aware UTC."""
    return value.replace(tzinfo=UTC) if value.tzinfo is None else value


def _to_session(record: SessionRecord) -> Session:
    return Session(
        session_id=record.session_id,
        user_id=record.user_id,
        created_at=_from_db(record.created_at),
        expires_at=_from_db(record.expires_at),
        last_accessed_at=_from_db(record.last_accessed_at),
        attributes=dict(record.attributes or {}),
        idp_entity_id=record.idp_entity_id,
        idp_session_index=record.idp_session_index,
        name_id_format=record.name_id_format,
        idp_not_on_or_after=_from_db(record.idp_not_on_or_after) if record.idp_not_on_or_after else None,
        bound_ip=record.bound_ip,
        bound_user_agent=record.bound_user_agent,
        csrf_token=record.csrf_token,
    )


def _to_pending(record: PendingRequestRecord) -> PendingRequest:
    return PendingRequest(
        request_id=record.request_id,
        kind=PendingKind(record.kind),
        idp_entity_id=record.idp_entity_id,
        created_at=_from_db(record.created_at),
        expires_at=_from_db(record.expires_at),
        relay_state=record.relay_state,
        return_to=record.return_to,
        session_id=record.session_id,
    )


class SQLSessionStore(SessionStore):
    """Session store backed by the ``sessions`` table."""

    def __init__(self, database: Database) -> None:
        self._db = database

    @staticmethod
    def _columns(session: Session) -> dict[str, Any]:
        return {
            "user_id": session.user_id,
            "attributes": session.attributes,
            "created_at": _to_db(session.created_at),
            "expires_at": _to_db(session.expires_at),
            "last_accessed_at": _to_db(session.last_accessed_at),
            "idp_entity_id": session.idp_entity_id,
            "idp_session_index": session.idp_session_index,
            "name_id_format": session.name_id_format,
            "idp_not_on_or_after": _to_db(session.idp_not_on_or_after) if session.idp_not_on_or_after else None,
            "bound_ip": session.bound_ip,
            "bound_user_agent": session.bound_user_agent,
            "csrf_token": session.csrf_token,
        }

    def save(self, session: Session) -> None:
        with self._db.transaction("save session") as db:
            db.merge(SessionRecord(session_id=session.session_id, **self._columns(session)))

    def update(self, session: Session) -> bool:
        statement = (
            update(SessionRecord)
            .where(SessionRecord.session_id == session.session_id)
            .values(**self._columns(session))
        )
        with self._db.transaction("update session") as db:
            return db.execute(statement).rowcount > 0

    def get(self, session_id: str) -> Session | None:
        with self._db.transaction("load session") as db:
            record = db.get(SessionRecord, session_id)
            return _to_session(record) if record is not None else None

    def delete(self, session_id: str) -> bool:
        with self._db.transaction("delete session") as db:
            return db.execute(delete(SessionRecord).where(SessionRecord.session_id == session_id)).rowcount > 0

    def delete_by_user(self, user_id: str) -> int:
        with self._db.transaction("delete sessions") as db:
            return db.execute(delete(SessionRecord).where(SessionRecord.user_id == user_id)).rowcount

    def find(self, idp_entity_id: str, user_id: str) -> list[Session]:
        query = select(SessionRecord).where(
            SessionRecord.idp_entity_id == idp_entity_id,
            SessionRecord.user_id == user_id,
        )
        with self._db.transaction("query sessions") as db:
            return [_to_session(r) for r in db.scalars(query)]

    def purge_expired(self, now: datetime) -> int:
        with self._db.transaction("purge sessions") as db:
            return db.execute(delete(SessionRecord).where(SessionRecord.expires_at <= _to_db(now))).rowcount


class SQLPendingRequestStore(PendingRequestStore):
    """Pending request store backed by the ``pending_requests`` table."""

    def __init__(self, database: Database) -> None:
        self._db = database

    def put(self, pending: PendingRequest) -> None:
        with self._db.transaction("store pending request") as db:
            db.merge(PendingRequestRecord(
                request_id=pending.request_id,
                kind=pending.kind.value,
                idp_entity_id=pending.idp_entity_id,
                relay_state=pending.relay_state,
                return_to=pending.return_to,
                session_id=pending.session_id,
                created_at=_to_db(pending.created_at),
                expires_at=_to_db(pending.expires_at),
            ))

    def consume(self, request_id: str) -> PendingRequest | None:
        """Remove and return a pending request.

        Only the caller whose DELETE removed the row gets the request, so
        concurrent consumers across processes see it at most once.
        """
        with self._db.transaction("consume pending request") as db:
            record = db.get(PendingRequestRecord, request_id)
            if record is None:
                return None
            pending = _to_pending(record)
            removed = db.execute(
                delete(PendingRequestRecord).where(PendingRequestRecord.request_id == request_id)
            ).rowcount
        return pending if removed == 1 else None

    def purge_expired(self, now: datetime) -> int:
        with self._db.transaction("purge pending requests") as db:
            return db.execute(
                delete(PendingRequestRecord).where(PendingRequestRecord.expires_at <= _to_db(now))
            ).rowcount


class SQLReplayGuard(ReplayGuard):
    """Replay guard backed by the ``consumed_messages`` table.

    The insert of the primary key is the atomic step: a concurrent insert of
    the same ID fails with an integrity error and counts as a replay.
    """

    def __init__(self, database: Database, clock: Callable[[], datetime] | None = None) -> None:
        self._db = database
        self._clock = clock or (lambda: datetime.now(UTC))

    def check_and_mark(self, message_id: str, expires_at: datetime) -> bool:
        now = self._clock()
        with self._db.transaction("record message ID") as db:
            existing = db.get(ConsumedMessageRecord, message_id)
            if existing is not None and now <= _from_db(existing.expires_at):
                logger.warning(f"Replay detected for message {message_id}")
                return False
            if existing is not None:
                db.delete(existing)
                db.flush()
            db.add(ConsumedMessageRecord(message_id=message_id, expires_at=_to_db(expires_at)))
            try:
                db.flush()
            except IntegrityError:
                db.rollback()
                logger.warning(f"Replay detected for message {message_id}")
                return False
        return True

    def purge(self) -> int:
        cutoff = _to_db(self._clock())
        with self._db.transaction("purge consumed IDs") as db:
            return db.execute(delete(ConsumedMessageRecord).where(ConsumedMessageRecord.expires_at < cutoff)).rowcount
