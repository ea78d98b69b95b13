"""Authenticated sessions and pending protocol requests.

Sessions are created from validated assertions and bound, optionally, to the
client's IP address and User-Agent. Pending requests remember what was sent
to an IdP until the matching response arrives; consuming one is an atomic
pop so each request can be answered at most once.
"""

from __future__ import annotations

import logging
import secrets
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from authflow.core.config import SessionSettings
from authflow.core.errors import ErrorKind

if TYPE_CHECKING:
    from authflow.core.saml.messages import Assertion

logger = logging.getLogger(__name__)

# Session token settings
SESSION_TOKEN_BYTES = 32  # 256-bit tokens


def _utc(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


@dataclass
class Session:
    """An authenticated user session."""

    session_id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    last_accessed_at: datetime
    attributes: dict[str, list[str]] = field(default_factory=dict)
    idp_entity_id: str | None = None
    idp_session_index: str | None = None
    idp_not_on_or_after: datetime | None = None
    name_id_format: str | None = None
    bound_ip: str | None = None
    bound_user_agent: str | None = None
    csrf_token: str = field(default_factory=lambda: secrets.token_urlsafe(32))

    def is_expired(self, now: datetime) -> bool:
        """Whether the session has expired at the given time."""
        return now >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "last_accessed_at": self.last_accessed_at.isoformat(),
            "attributes": self.attributes,
            "idp_entity_id": self.idp_entity_id,
            "idp_session_index": self.idp_session_index,
            "name_id_format": self.name_id_format,
            "idp_not_on_or_after": self.idp_not_on_or_after.isoformat() if self.idp_not_on_or_after else None,
            "bound_ip": self.bound_ip,
            "bound_user_agent": self.bound_user_agent,
            "csrf_token": self.csrf_token,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        """Reconstruct from dictionary."""
        cap = data.get("idp_not_on_or_after")
        return cls(
            session_id=data["session_id"],
            user_id=data["user_id"],
            created_at=_utc(datetime.fromisoformat(data["created_at"])),
            expires_at=_utc(datetime.fromisoformat(data["expires_at"])),
            last_accessed_at=_utc(datetime.fromisoformat(data["last_accessed_at"])),
            attributes=data.get("attributes", {}),
            idp_entity_id=data.get("idp_entity_id"),
            idp_session_index=data.get("idp_session_index"),
            name_id_format=data.get("name_id_format"),
            idp_not_on_or_after=_utc(datetime.fromisoformat(cap)) if cap else None,
            bound_ip=data.get("bound_ip"),
            bound_user_agent=data.get("bound_user_agent"),
            csrf_token=data.get("csrf_token") or secrets.token_urlsafe(32),
        )


class PendingKind(StrEnum):
    """What a pending request is waiting for."""

    AUTHN = "authn"
    LOGOUT = "logout"


@dataclass
class PendingRequest:
    """A request sent to an IdP that awaits its response."""

    request_id: str
    kind: PendingKind
    idp_entity_id: str
    created_at: datetime
    expires_at: datetime
    relay_state: str | None = None
    return_to: str | None = None
    session_id: str | None = None

    def is_expired(self, now: datetime) -> bool:
        """Whether the request has expired at the given time."""
        return now >= self.expires_at


class SessionStore(ABC):
    """Persistence for sessions."""

    @abstractmethod
    def save(self, session: Session) -> None:
        """Insert or replace a session."""

    @abstractmethod
    def get(self, session_id: str) -> Session | None:
        """Load a session by ID."""

    @abstractmethod
    def update(self, session: Session) -> bool:
        """Replace a session only if it is still stored. Returns whether it was."""

    @abstractmethod
    def delete(self, session_id: str) -> bool:
        """Delete a session. Returns whether it existed."""

    @abstractmethod
    def delete_by_user(self, user_id: str) -> int:
        """Delete every session of a user. Returns the number deleted."""

    @abstractmethod
    def find(self, idp_entity_id: str, user_id: str) -> list[Session]:
        """Sessions of a user established through an IdP."""

    @abstractmethod
    def purge_expired(self, now: datetime) -> int:
        """Delete expired sessions. Returns the number deleted."""


class PendingRequestStore(ABC):
    """Persistence for pending requests."""

    @abstractmethod
    def put(self, pending: PendingRequest) -> None:
        """Store a pending request."""

    @abstractmethod
    def consume(self, request_id: str) -> PendingRequest | None:
        """Atomically remove and return a pending request."""

    @abstractmethod
    def purge_expired(self, now: datetime) -> int:
        """Delete expired requests. Returns the number deleted."""


class MemorySessionStore(SessionStore):
    """In-process session store."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def save(self, session: Session) -> None:
        with self._lock:
            self._sessions[session.session_id] = session

    def get(self, session_id: str) -> Session | None:
        with self._lock:
            return self._sessions.get(session_id)

    def update(self, session: Session) -> bool:
        with self._lock:
            if session.session_id not in self._sessions:
                return False
            self._sessions[session.session_id] = session
            return True

    def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def delete_by_user(self, user_id: str) -> int:
        with self._lock:
            doomed = [sid for sid, s in self._sessions.items() if s.user_id == user_id]
            for sid in doomed:
                del self._sessions[sid]
            return len(doomed)

    def find(self, idp_entity_id: str, user_id: str) -> list[Session]:
        with self._lock:
            return [
                s for s in self._sessions.values()
                if s.idp_entity_id == idp_entity_id and s.user_id == user_id
            ]

    def purge_expired(self, now: datetime) -> int:
        with self._lock:
            doomed = [sid for sid, s in self._sessions.items() if s.is_expired(now)]
            for sid in doomed:
                del self._sessions[sid]
            return len(doomed)


class MemoryPendingRequestStore(PendingRequestStore):
    """In-process pending request store."""

    def __init__(self) -> None:
        self._requests: dict[str, PendingRequest] = {}
        self._lock = threading.Lock()

    def put(self, pending: PendingRequest) -> None:
        with self._lock:
            self._requests[pending.request_id] = pending

    def consume(self, request_id: str) -> PendingRequest | None:
        with self._lock:
            return self._requests.pop(request_id, None)

    def purge_expired(self, now: datetime) -> int:
        with self._lock:
            doomed = [rid for rid, p in self._requests.items() if p.is_expired(now)]
            for rid in doomed:
                del self._requests[rid]
            return len(doomed)


@dataclass
class SessionLookup:
    """Result of looking up a session."""

    session: Session | None = None
    error: ErrorKind | None = None


class SessionManager:
    """Creates, checks and ends user sessions."""

    def __init__(
        self,
        store: SessionStore,
        ttl_seconds: int = 3600,
        sliding_expiry: bool = True,
        max_lifetime_seconds: int = 8 * 3600,
        bind_ip: bool = False,
        bind_user_agent: bool = True,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the session manager.

        Args:
            store: Session persistence.
            ttl_seconds: Default idle lifetime of a session.
            sliding_expiry: Extend the expiry on each access.
            max_lifetime_seconds: Absolute cap on a session's lifetime.
            bind_ip: Reject a session used from a different IP address.
            bind_user_agent: Reject a session used from a different User-Agent.
            clock: Returns the current time.
        """
        self._store = store
        self._ttl = timedelta(seconds=ttl_seconds)
        self._sliding = sliding_expiry
        self._max_lifetime = timedelta(seconds=max_lifetime_seconds)
        self._bind_ip = bind_ip
        self._bind_user_agent = bind_user_agent
        self._clock = clock or (lambda: datetime.now(UTC))

    @classmethod
    def from_settings(
        cls,
        settings: SessionSettings,
        store: SessionStore,
        clock: Callable[[], datetime] | None = None,
    ) -> SessionManager:
        """Create a session manager from configuration."""
        return cls(
            store=store,
            ttl_seconds=settings.ttl_seconds,
            sliding_expiry=settings.sliding_expiry,
            max_lifetime_seconds=settings.max_lifetime_seconds,
            bind_ip=settings.bind_ip,
            bind_user_agent=settings.bind_user_agent,
            clock=clock,
        )

    @property
    def store(self) -> SessionStore:
        """The backing store."""
        return self._store

    def create(
        self,
        assertion: Assertion,
        ttl: timedelta | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
        attributes: dict[str, list[str]] | None = None,
    ) -> str:
        """Create a session from a validated assertion.

        The expiry never exceeds the IdP's SessionNotOnOrAfter.

        Args:
            assertion: The validated assertion.
            ttl: Session lifetime. Uses the configured TTL if not given.
            ip: Client IP address to bind to.
            user_agent: Client User-Agent to bind to.
            attributes: Mapped attributes. Defaults to the assertion's.

        Returns:
            The new session ID.
        """
        now = self._clock()
        expires_at = now + min(ttl or self._ttl, self._max_lifetime)
        statement = assertion.authn_statement
        idp_cap = statement.session_not_on_or_after if statement else None
        if idp_cap:
            expires_at = min(expires_at, idp_cap)
        expires_at = max(expires_at, now)

        name_id = assertion.subject.name_id if assertion.subject else None
        session = Session(
            session_id=secrets.token_urlsafe(SESSION_TOKEN_BYTES),
            user_id=assertion.name_id or "",
            created_at=now,
            expires_at=expires_at,
            last_accessed_at=now,
            attributes=attributes if attributes is not None else assertion.attribute_values(),
            idp_entity_id=assertion.issuer,
            idp_session_index=assertion.session_index,
            name_id_format=name_id.format if name_id else None,
            idp_not_on_or_after=idp_cap,
            bound_ip=ip if self._bind_ip else None,
            bound_user_agent=user_agent if self._bind_user_agent else None,
        )
        self._store.save(session)
        logger.info(f"Session created for {session.user_id} via {session.idp_entity_id}")
        return session.session_id

    def lookup(
        self,
        session_id: str | None,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> SessionLookup:
        """Look up a session, checking expiry and client binding.

        An expired session is deleted. A binding mismatch invalidates the
        session, since the identifier may have been stolen.
        """
        if not session_id:
            return SessionLookup()
        session = self._store.get(session_id)
        if session is None:
            return SessionLookup()

        now = self._clock()
        if session.is_expired(now):
            self._store.delete(session_id)
            logger.info(f"Session for {session.user_id} expired")
            return SessionLookup(error=ErrorKind.SESSION_EXPIRED)

        ip_changed = session.bound_ip is not None and ip != session.bound_ip
        agent_changed = session.bound_user_agent is not None and user_agent != session.bound_user_agent
        mismatch = (self._bind_ip and ip_changed) or (self._bind_user_agent and agent_changed)
        if mismatch:
            self._store.delete(session_id)
            logger.warning(f"Session binding mismatch for {session.user_id}; session invalidated")
            return SessionLookup(error=ErrorKind.SESSION_BINDING_MISMATCH)

        if self._sliding:
            extended = self._extend(session, now)
            if extended is None:
                return SessionLookup()
            session = extended
        return SessionLookup(session=session)

    def get(
        self,
        session_id: str | None,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> Session | None:
        """Get a valid session, or None."""
        return self.lookup(session_id, ip, user_agent).session

    def peek(self, session_id: str) -> Session | None:
        """Get an unexpired session without binding checks or extension."""
        session = self._store.get(session_id)
        if session is None or session.is_expired(self._clock()):
            return None
        return session

    def touch(self, session_id: str) -> Session | None:
        """Record activity on a session, extending it when sliding expiry is on."""
        session = self.peek(session_id)
        if session is None:
            return None
        now = self._clock()
        if self._sliding:
            return self._extend(session, now)
        session.last_accessed_at = now
        return session if self._store.update(session) else None

    def _extend(self, session: Session, now: datetime) -> Session | None:
        session.last_accessed_at = now
        candidate = min(now + self._ttl, session.created_at + self._max_lifetime)
        if session.idp_not_on_or_after:
            candidate = min(candidate, session.idp_not_on_or_after)
        session.expires_at = max(session.expires_at, candidate)
        # A session ended concurrently stays ended
        return session if self._store.update(session) else None

    def invalidate(self, session_id: str) -> bool:
        """End a session. Returns whether it existed."""
        removed = self._store.delete(session_id)
        if removed:
            logger.info("Session invalidated")
        return removed

    def invalidate_all(self, user_id: str) -> int:
        """End every session of a user. Returns the number ended."""
        count = self._store.delete_by_user(user_id)
        logger.info(f"Invalidated {count} session(s) for {user_id}")
        return count

    def find_by_idp_session(
        self,
        idp_entity_id: str,
        name_id: str,
        session_indexes: list[str] | None = None,
    ) -> list[Session]:
        """Sessions matching an IdP-initiated logout.

        With no session indexes, every session of the principal at that IdP
        matches.
        """
        sessions = self._store.find(idp_entity_id, name_id)
        if session_indexes:
            sessions = [s for s in sessions if s.idp_session_index in session_indexes]
        return sessions

    def purge_expired(self) -> int:
        """Delete expired sessions."""
        count = self._store.purge_expired(self._clock())
        if count:
            logger.info(f"Purged {count} expired session(s)")
        return count
