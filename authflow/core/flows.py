"""Authentication flow orchestration.

Drives SP-initiated login, IdP-initiated logout and single logout on top of
an :class:`~authflow.core.protocol.AuthenticationProtocol`. The orchestrator
never touches protocol messages directly.

A flow moves through these states::

    UNAUTHENTICATED -> AWAITING_IDP_RESPONSE -> AUTHENTICATED
    AUTHENTICATED -> AWAITING_LOGOUT_CONFIRMATION -> LOGGED_OUT

End users only ever see a generic failure message. The specific error kind
goes to the log and the audit trail.
"""

from __future__ import annotations

import logging
import secrets
import threading
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from authflow.core.audit import AuditEvent, AuditEventType, AuditLogger, get_audit_logger
from authflow.core.errors import (
    GENERIC_FAILURE_MESSAGE,
    AuthFlowError,
    ErrorKind,
    ValidationCategory,
    ValidationError,
)
from authflow.core.protocol import AuthenticationProtocol, InboundMessage, OutboundMessage
from authflow.core.saml.attributes import AttributeMapper
from authflow.core.saml.constants import Binding
from authflow.core.sessions import (
    PendingKind,
    PendingRequest,
    PendingRequestStore,
    Session,
    SessionManager,
)

logger = logging.getLogger(__name__)

RELAY_STATE_BYTES = 16


class FlowState(StrEnum):
    """State of an authentication flow."""

    UNAUTHENTICATED = "unauthenticated"
    AWAITING_IDP_RESPONSE = "awaiting_idp_response"
    AUTHENTICATED = "authenticated"
    AWAITING_LOGOUT_CONFIRMATION = "awaiting_logout_confirmation"
    LOGGED_OUT = "logged_out"


@dataclass
class LoginRedirect:
    """Instruction to send the user agent to the IdP."""

    request_id: str
    relay_state: str
    message: OutboundMessage

    @property
    def url(self) -> str:
        """Redirect URL, or the form action for HTTP-POST."""
        return self.message.url

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "request_id": self.request_id,
            "relay_state": self.relay_state,
            "binding": self.message.binding,
            "url": self.message.url,
        }


@dataclass
class SessionCheck:
    """Outcome of :meth:`FlowOrchestrator.require_session`."""

    session: Session | None = None
    login: LoginRedirect | None = None
    error_kind: ErrorKind | None = None

    @property
    def is_authenticated(self) -> bool:
        """Whether a valid session was found."""
        return self.session is not None


@dataclass
class CallbackResult:
    """Outcome of processing an authentication response."""

    success: bool
    state: FlowState
    session_id: str | None = None
    user_id: str | None = None
    return_to: str | None = None
    error_kind: ErrorKind | None = None
    errors: list[ValidationError] = field(default_factory=list)

    @property
    def user_message(self) -> str | None:
        """Message safe to show to the end user."""
        return None if self.success else GENERIC_FAILURE_MESSAGE

    @classmethod
    def failed(cls, errors: list[ValidationError]) -> CallbackResult:
        """A failed result carrying the errors."""
        return cls(
            success=False,
            state=FlowState.UNAUTHENTICATED,
            error_kind=errors[0].kind if errors else None,
            errors=errors,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "success": self.success,
            "state": self.state.value,
            "user_id": self.user_id,
            "return_to": self.return_to,
            "error_kind": self.error_kind.value if self.error_kind else None,
        }


@dataclass
class LogoutRedirect:
    """Instruction to send the user agent to the IdP's SLO endpoint."""

    request_id: str
    message: OutboundMessage
    state: FlowState = FlowState.AWAITING_LOGOUT_CONFIRMATION

    @property
    def url(self) -> str:
        """Redirect URL, or the form action for HTTP-POST."""
        return self.message.url


@dataclass
class LogoutConfirmation:
    """Logout completed without a round trip to the IdP."""

    return_to: str | None = None
    local_only: bool = True
    state: FlowState = FlowState.LOGGED_OUT


@dataclass
class LogoutResult:
    """Outcome of processing a LogoutResponse or LogoutRequest."""

    success: bool
    state: FlowState
    return_to: str | None = None
    error_kind: ErrorKind | None = None
    status_code: str | None = None
    sessions_ended: int = 0
    response: OutboundMessage | None = None

    @property
    def user_message(self) -> str | None:
        """Message safe to show to the end user."""
        return None if self.success else GENERIC_FAILURE_MESSAGE


class _FlowTracker:
    """Bounded map of flow keys to their latest state."""

    def __init__(self, max_entries: int = 10000) -> None:
        self._states: OrderedDict[str, FlowState] = OrderedDict()
        self._max_entries = max_entries
        self._lock = threading.Lock()

    def set(self, key: str, state: FlowState) -> None:
        with self._lock:
            self._states[key] = state
            self._states.move_to_end(key)
            while len(self._states) > self._max_entries:
                self._states.popitem(last=False)

    def get(self, key: str) -> FlowState | None:
        with self._lock:
            return self._states.get(key)

    def discard(self, key: str) -> None:
        with self._lock:
            self._states.pop(key, None)


def _safe_return_to(value: str | None) -> str | None:
    """Accept only local paths as post-login destinations."""
    if value and value.startswith("/") and not value.startswith("//") and "\\" not in value:
        return value
    return None


class FlowOrchestrator:
    """Coordinates sessions, pending requests and protocol messages."""

    def __init__(
        self,
        protocol: AuthenticationProtocol,
        sessions: SessionManager,
        pending: PendingRequestStore,
        pending_request_ttl_seconds: int = 300,
        allow_unsolicited: bool = False,
        default_landing_url: str = "/",
        attribute_mapper: AttributeMapper | None = None,
        audit: AuditLogger | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            protocol: Federation protocol implementation.
            sessions: Session manager.
            pending: Store of requests awaiting a response.
            pending_request_ttl_seconds: How long a request may stay unanswered.
            allow_unsolicited: Accept responses that answer no request.
            default_landing_url: Where to go after login without a return URL.
            attribute_mapper: Maps assertion attributes to session attributes.
            audit: Audit logger. Defaults to the global one.
            clock: Returns the current time.
        """
        self.protocol = protocol
        self.sessions = sessions
        self.pending = pending
        self.pending_ttl = timedelta(seconds=pending_request_ttl_seconds)
        self.allow_unsolicited = allow_unsolicited
        self.default_landing_url = default_landing_url
        self.attribute_mapper = attribute_mapper or AttributeMapper()
        self._audit = audit or get_audit_logger()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._flows = _FlowTracker()

    def _flow_error(self, kind: ErrorKind, message: str) -> list[ValidationError]:
        return [ValidationError(kind, ValidationCategory.FLOW, message)]

    def require_session(
        self,
        session_id: str | None,
        resource_url: str | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> SessionCheck:
        """Return the valid session, or a login redirect back to the resource."""
        lookup = self.sessions.lookup(session_id, ip, user_agent)
        if lookup.session is not None:
            return SessionCheck(session=lookup.session)

        if lookup.error is not None:
            self._audit.record_failure(
                AuditEventType.SESSION_REJECTED,
                self._flow_error(lookup.error, "Session rejected"),
            )
        return SessionCheck(login=self.initiate_login(resource_url), error_kind=lookup.error)

    def initiate_login(
        self,
        resource_url: str | None = None,
        idp_entity_id: str | None = None,
        force_authn: bool = False,
    ) -> LoginRedirect:
        """Start SP-initiated login.

        Args:
            resource_url: Local path to return to after login.
            idp_entity_id: IdP to use. Defaults to the configured one.
            force_authn: Ask the IdP to re-authenticate the user.

        Raises:
            AuthFlowError: If no request can be built for the IdP.
        """
        relay_state = secrets.token_urlsafe(RELAY_STATE_BYTES)
        try:
            message = self.protocol.build_request(
                relay_state=relay_state, idp_entity_id=idp_entity_id, force_authn=force_authn
            )
        except AuthFlowError as e:
            self._audit.record_failure(
                AuditEventType.LOGIN_FAILED, self._flow_error(e.kind, str(e)), entity_id=idp_entity_id
            )
            raise

        now = self._clock()
        self.pending.put(PendingRequest(
            request_id=message.message_id,
            kind=PendingKind.AUTHN,
            idp_entity_id=message.entity_id,
            created_at=now,
            expires_at=now + self.pending_ttl,
            relay_state=relay_state,
            return_to=_safe_return_to(resource_url),
        ))
        self._flows.set(relay_state, FlowState.AWAITING_IDP_RESPONSE)
        self._audit.record(AuditEvent(
            event_type=AuditEventType.LOGIN_INITIATED,
            outcome="success",
            entity_id=message.entity_id,
            message_id=message.message_id,
        ))
        return LoginRedirect(request_id=message.message_id, relay_state=relay_state, message=message)

    def handle_provider_callback(
        self,
        inbound: InboundMessage,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> CallbackResult:
        """Process an authentication response and establish a session.

        The response must answer a pending request issued to the same IdP,
        unless unsolicited responses are allowed. Each pending request can
        be answered once.
        """
        result = self.protocol.validate_response(inbound)
        entity_id = result.issuer_entity.entity_id if result.issuer_entity else None
        if not result.is_valid:
            self._audit.record_failure(AuditEventType.LOGIN_FAILED, result.errors, entity_id=entity_id)
            return CallbackResult.failed(result.errors)

        response = result.message
        assert response is not None
        assertion = response.assertion
        relay_state = result.relay_state

        if response.in_response_to:
            pending = self.pending.consume(response.in_response_to)
            problem = None
            if pending is None or pending.kind != PendingKind.AUTHN:
                problem = f"No pending request {response.in_response_to}"
            elif pending.is_expired(self._clock()):
                problem = f"Request {response.in_response_to} has expired"
            elif pending.idp_entity_id != response.issuer:
                problem = f"Request {response.in_response_to} was issued to {pending.idp_entity_id}"
            elif pending.relay_state and pending.relay_state != relay_state:
                problem = "RelayState does not match the pending request"
            if problem:
                errors = self._flow_error(ErrorKind.UNKNOWN_REQUEST_ID, problem)
                self._audit.record_failure(
                    AuditEventType.LOGIN_FAILED, errors, entity_id=entity_id, message_id=response.id
                )
                return CallbackResult.failed(errors)
            return_to = pending.return_to
        elif self.allow_unsolicited:
            logger.info(f"Accepting unsolicited response {response.id} from {response.issuer}")
            return_to = _safe_return_to(relay_state)
        else:
            errors = self._flow_error(ErrorKind.UNKNOWN_REQUEST_ID, "Unsolicited responses are not accepted")
            self._audit.record_failure(
                AuditEventType.LOGIN_FAILED, errors, entity_id=entity_id, message_id=response.id
            )
            return CallbackResult.failed(errors)

        attributes = self.attribute_mapper.map(assertion.attribute_values())
        session_id = self.sessions.create(assertion, ip=ip, user_agent=user_agent, attributes=attributes)
        if relay_state:
            self._flows.set(relay_state, FlowState.AUTHENTICATED)
        self._audit.record(AuditEvent(
            event_type=AuditEventType.LOGIN_SUCCEEDED,
            outcome="success",
            entity_id=entity_id,
            user_id=assertion.name_id,
            message_id=response.id,
        ))
        return CallbackResult(
            success=True,
            state=FlowState.AUTHENTICATED,
            session_id=session_id,
            user_id=assertion.name_id,
            return_to=return_to or self.default_landing_url,
        )

    def initiate_logout(
        self,
        session_id: str,
        return_to: str | None = None,
    ) -> LogoutRedirect | LogoutConfirmation:
        """Start SP-initiated single logout.

        When the IdP offers no logout endpoint, or its metadata cannot be
        obtained, the session is ended locally.
        """
        session = self.sessions.peek(session_id)
        if session is None:
            self._flows.set(session_id, FlowState.LOGGED_OUT)
            return LogoutConfirmation(return_to=_safe_return_to(return_to))

        relay_state = secrets.token_urlsafe(RELAY_STATE_BYTES)
        try:
            message = self.protocol.build_logout(session, relay_state=relay_state)
        except AuthFlowError as e:
            logger.warning(f"Cannot build logout request for {session.idp_entity_id}: {e}")
            message = None

        if message is None:
            self.sessions.invalidate(session_id)
            self._flows.set(session_id, FlowState.LOGGED_OUT)
            self._audit.record(AuditEvent(
                event_type=AuditEventType.LOGOUT_SUCCEEDED,
                outcome="success",
                entity_id=session.idp_entity_id,
                user_id=session.user_id,
                detail="local logout",
            ))
            return LogoutConfirmation(return_to=_safe_return_to(return_to))

        now = self._clock()
        self.pending.put(PendingRequest(
            request_id=message.message_id,
            kind=PendingKind.LOGOUT,
            idp_entity_id=message.entity_id,
            created_at=now,
            expires_at=now + self.pending_ttl,
            relay_state=relay_state,
            return_to=_safe_return_to(return_to),
            session_id=session_id,
        ))
        self._flows.set(session_id, FlowState.AWAITING_LOGOUT_CONFIRMATION)
        self._audit.record(AuditEvent(
            event_type=AuditEventType.LOGOUT_INITIATED,
            outcome="success",
            entity_id=message.entity_id,
            user_id=session.user_id,
            message_id=message.message_id,
        ))
        return LogoutRedirect(request_id=message.message_id, message=message)

    def handle_logout_response(self, inbound: InboundMessage) -> LogoutResult:
        """Process the IdP's answer to our LogoutRequest.

        Only a Success status ends the session. Any other outcome leaves it
        authenticated and reports a failure.
        """
        result = self.protocol.validate_logout_response(inbound)
        entity_id = result.issuer_entity.entity_id if result.issuer_entity else None
        if not result.is_valid:
            self._audit.record_failure(AuditEventType.LOGOUT_FAILED, result.errors, entity_id=entity_id)
            return LogoutResult(success=False, state=FlowState.AUTHENTICATED, error_kind=result.kind)

        response = result.message
        assert response is not None
        pending = self.pending.consume(response.in_response_to) if response.in_response_to else None
        if (
            pending is None
            or pending.kind != PendingKind.LOGOUT
            or pending.idp_entity_id != response.issuer
            or pending.is_expired(self._clock())
        ):
            errors = self._flow_error(
                ErrorKind.UNKNOWN_REQUEST_ID, f"No pending logout request {response.in_response_to}"
            )
            self._audit.record_failure(
                AuditEventType.LOGOUT_FAILED, errors, entity_id=entity_id, message_id=response.id
            )
            return LogoutResult(success=False, state=FlowState.AUTHENTICATED, error_kind=ErrorKind.UNKNOWN_REQUEST_ID)

        session_id = pending.session_id or ""
        if not response.status.is_success:
            self._flows.discard(session_id)
            self._audit.record(AuditEvent(
                event_type=AuditEventType.LOGOUT_FAILED,
                outcome="failure",
                entity_id=entity_id,
                message_id=response.id,
                detail=f"IdP returned {response.status.sub_code or response.status.code}",
            ))
            return LogoutResult(
                success=False,
                state=FlowState.AUTHENTICATED,
                return_to=pending.return_to,
                status_code=response.status.sub_code or response.status.code,
            )

        ended = 1 if self.sessions.invalidate(session_id) else 0
        self._flows.set(session_id, FlowState.LOGGED_OUT)
        self._audit.record(AuditEvent(
            event_type=AuditEventType.LOGOUT_SUCCEEDED,
            outcome="success",
            entity_id=entity_id,
            message_id=response.id,
        ))
        return LogoutResult(
            success=True,
            state=FlowState.LOGGED_OUT,
            return_to=pending.return_to or self.default_landing_url,
            status_code=response.status.code,
            sessions_ended=ended,
        )

    def handle_logout_request(self, inbound: InboundMessage) -> LogoutResult:
        """Process an IdP-initiated LogoutRequest.

        Ends every matching session and answers the IdP with a
        LogoutResponse.
        """
        result = self.protocol.validate_logout_request(inbound)
        entity_id = result.issuer_entity.entity_id if result.issuer_entity else None
        if not result.is_valid:
            self._audit.record_failure(AuditEventType.LOGOUT_FAILED, result.errors, entity_id=entity_id)
            return LogoutResult(success=False, state=FlowState.AUTHENTICATED, error_kind=result.kind)

        request = result.message
        assert request is not None
        sessions = self.sessions.find_by_idp_session(
            request.issuer, request.name_id.value, request.session_indexes
        )
        ended = 0
        for session in sessions:
            if self.sessions.invalidate(session.session_id):
                ended += 1
            self._flows.set(session.session_id, FlowState.LOGGED_OUT)

        try:
            response = self.protocol.build_logout_response(
                request,
                relay_state=result.relay_state,
                binding=Binding.SOAP if inbound.binding == Binding.SOAP else None,
            )
        except AuthFlowError as e:
            self._audit.record_failure(
                AuditEventType.LOGOUT_FAILED, self._flow_error(e.kind, str(e)), entity_id=entity_id
            )
            return LogoutResult(
                success=False, state=FlowState.LOGGED_OUT, error_kind=e.kind, sessions_ended=ended
            )

        self._audit.record(AuditEvent(
            event_type=AuditEventType.LOGOUT_SUCCEEDED,
            outcome="success",
            entity_id=entity_id,
            user_id=request.name_id.value,
            message_id=request.id,
            extra={"sessions_ended": ended},
        ))
        return LogoutResult(
            success=True,
            state=FlowState.LOGGED_OUT,
            sessions_ended=ended,
            response=response,
        )

    def get_metadata(self) -> bytes:
        """Our metadata document."""
        return self.protocol.metadata()

    def flow_state(self, key: str | None) -> FlowState:
        """Current state of a flow.

        Args:
            key: A session ID, or the RelayState of a login in progress.
        """
        if not key:
            return FlowState.UNAUTHENTICATED
        tracked = self._flows.get(key)
        if self.sessions.peek(key) is not None:
            if tracked == FlowState.AWAITING_LOGOUT_CONFIRMATION:
                return tracked
            return FlowState.AUTHENTICATED
        # Session IDs are only tracked while logging out; RelayState keys for the whole login
        if tracked in (FlowState.AWAITING_IDP_RESPONSE, FlowState.AUTHENTICATED, FlowState.LOGGED_OUT):
            return tracked
        return FlowState.UNAUTHENTICATED

    def purge_expired(self) -> tuple[int, int]:
        """Delete expired sessions and pending requests.

        Returns:
            Number of sessions and pending requests removed.
        """
        return self.sessions.purge_expired(), self.pending.purge_expired(self._clock())
