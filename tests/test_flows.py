"""Tests for login and logout flow orchestration."""

from __future__ import annotations

from datetime import timedelta

from authflow.core.audit import AuditEventType
from authflow.core.errors import ErrorKind, ValidationCategory
from authflow.core.flows import FlowOrchestrator, FlowState, LogoutConfirmation, LogoutRedirect
from authflow.core.protocol import InboundMessage
from authflow.core.saml.bindings import unwrap_soap, wrap_soap
from authflow.core.saml.constants import Binding, StatusCode
from authflow.core.saml.idp import LogoutCoordinator
from authflow.core.saml.messages import NameID, Status, serialize
from authflow.core.saml.metadata import Endpoint, EndpointPurpose
from authflow.core.saml.sp import deliver
from authflow.core.sessions import MemoryPendingRequestStore, MemorySessionStore, Session, SessionManager
from tests.federation import (
    ALICE,
    FROZEN_NOW,
    IDP_SLO_URL,
    IDP_SSO_URL,
    SP_ENTITY_ID,
    SP_SLO_URL,
    posted,
    redirected,
)


def _orchestrator(sp, audit, clock, **kwargs) -> FlowOrchestrator:
    return FlowOrchestrator(
        sp,
        SessionManager(MemorySessionStore(), clock=clock),
        MemoryPendingRequestStore(),
        audit=audit,
        clock=clock,
        **kwargs,
    )


def _event_types(audit) -> list[AuditEventType]:
    return [event.event_type for event in audit.events]


class TestLogin:
    """Tests for SP-initiated login."""

    def test_initiate_login(self, orchestrator, federation):
        """Test login starts with a signed redirect to the IdP."""
        login = orchestrator.initiate_login("/dashboard")

        assert login.url.startswith(f"{IDP_SSO_URL}?SAMLRequest=")
        assert "Signature=" in login.url
        assert orchestrator.flow_state(login.relay_state) == FlowState.AWAITING_IDP_RESPONSE
        assert login.to_dict()["binding"] == Binding.HTTP_REDIRECT

    def test_full_login(self, orchestrator, federation, audit):
        """Test a complete login establishes a session."""
        login = orchestrator.initiate_login("/dashboard")
        issued = federation.answer(login)
        result = orchestrator.handle_provider_callback(posted(issued.form_html))

        assert result.success, result.errors
        assert result.state == FlowState.AUTHENTICATED
        assert result.user_id == "alice@example.com"
        assert result.return_to == "/dashboard"
        assert result.user_message is None
        assert orchestrator.flow_state(login.relay_state) == FlowState.AUTHENTICATED
        assert orchestrator.flow_state(result.session_id) == FlowState.AUTHENTICATED

        session = orchestrator.sessions.peek(result.session_id)
        assert session.attributes["mail"] == ["alice@example.com"]
        assert session.idp_session_index == issued.session_index
        assert AuditEventType.LOGIN_SUCCEEDED in _event_types(audit)

    def test_default_landing_url(self, orchestrator, federation):
        """Test login without a return URL lands on the default page."""
        assert federation.login(orchestrator).return_to == "/"

    def test_external_return_url_ignored(self, orchestrator, federation):
        """Test only local paths are used as return URLs."""
        result = federation.login(orchestrator, resource_url="https://evil.example.com/")
        assert result.return_to == "/"

        result = federation.login(orchestrator, resource_url="//evil.example.com/")
        assert result.return_to == "/"

    def test_replayed_response(self, orchestrator, federation, audit):
        """Test posting the same response twice fails the second time."""
        login = orchestrator.initiate_login()
        inbound = posted(federation.answer(login).form_html)
        assert orchestrator.handle_provider_callback(inbound).success

        result = orchestrator.handle_provider_callback(inbound)
        assert not result.success
        assert result.error_kind == ErrorKind.REPLAY_DETECTED
        assert result.user_message == "Authentication failed, please retry."
        assert AuditEventType.SECURITY_ALERT in _event_types(audit)

    def test_unsolicited_response_rejected(self, orchestrator, idp):
        """Test responses answering no request are refused by default."""
        issued = idp.issue_response(ALICE, SP_ENTITY_ID)
        result = orchestrator.handle_provider_callback(posted(issued.form_html))

        assert not result.success
        assert result.error_kind == ErrorKind.UNKNOWN_REQUEST_ID
        assert result.errors[0].category == ValidationCategory.FLOW

    def test_unsolicited_response_allowed(self, sp, idp, audit, clock):
        """Test unsolicited responses when explicitly allowed."""
        orchestrator = _orchestrator(sp, audit, clock, allow_unsolicited=True)
        issued = idp.issue_response(ALICE, SP_ENTITY_ID, relay_state="/reports")
        result = orchestrator.handle_provider_callback(posted(issued.form_html))

        assert result.success, result.errors
        assert result.return_to == "/reports"

    def test_relay_state_mismatch(self, orchestrator, federation):
        """Test the RelayState must come back unchanged."""
        login = orchestrator.initiate_login()
        inbound = posted(federation.answer(login).form_html)
        result = orchestrator.handle_provider_callback(InboundMessage.post(inbound.data, "forged"))

        assert not result.success
        assert result.error_kind == ErrorKind.UNKNOWN_REQUEST_ID

    def test_pending_request_expired(self, sp, federation, audit, clock):
        """Test a response to a request that has timed out is refused."""
        orchestrator = _orchestrator(sp, audit, clock, pending_request_ttl_seconds=60)
        login = orchestrator.initiate_login()
        clock.advance(61)
        result = orchestrator.handle_provider_callback(posted(federation.answer(login).form_html))

        assert not result.success
        assert result.error_kind == ErrorKind.UNKNOWN_REQUEST_ID
        assert "expired" in result.errors[0].message

    def test_invalid_response(self, orchestrator, federation, audit):
        """Test validation failures are reported without a session."""
        result = orchestrator.handle_provider_callback(InboundMessage.post("bm90IHhtbA=="))

        assert not result.success
        assert result.session_id is None
        assert result.error_kind == ErrorKind.MALFORMED_MESSAGE
        assert audit.events[-1].event_type == AuditEventType.LOGIN_FAILED


class TestSessions:
    """Tests for session checks during flows."""

    def test_require_session_without_cookie(self, orchestrator, federation):
        """Test an anonymous request is sent to log in."""
        check = orchestrator.require_session(None, "/private")

        assert not check.is_authenticated
        assert check.error_kind is None
        assert check.login.url.startswith(IDP_SSO_URL)

    def test_require_session(self, orchestrator, federation):
        """Test a valid session is returned."""
        result = federation.login(orchestrator)
        check = orchestrator.require_session(result.session_id)

        assert check.is_authenticated
        assert check.session.user_id == "alice@example.com"

    def test_user_agent_binding(self, orchestrator, federation, audit):
        """Test a session used from another browser is rejected."""
        login = orchestrator.initiate_login()
        issued = federation.answer(login)
        result = orchestrator.handle_provider_callback(posted(issued.form_html), user_agent="Firefox/130")

        check = orchestrator.require_session(result.session_id, user_agent="curl/8.0")
        assert not check.is_authenticated
        assert check.error_kind == ErrorKind.SESSION_BINDING_MISMATCH
        assert AuditEventType.SECURITY_ALERT in _event_types(audit)
        assert orchestrator.sessions.peek(result.session_id) is None

    def test_expired_session(self, orchestrator, federation, clock):
        """Test an expired session leads back to login."""
        result = federation.login(orchestrator)
        clock.advance(3601)
        check = orchestrator.require_session(result.session_id)

        assert check.error_kind == ErrorKind.SESSION_EXPIRED
        assert check.login is not None

    def test_purge_expired(self, orchestrator, federation, clock):
        """Test expired sessions and pending requests are purged."""
        federation.login(orchestrator)
        orchestrator.initiate_login()
        clock.advance(3601)
        assert orchestrator.purge_expired() == (1, 1)


class TestSPInitiatedLogout:
    """Tests for logout started at the SP."""

    def test_full_single_logout(self, orchestrator, federation, idp):
        """Test the session ends once the IdP confirms the logout."""
        result = federation.login(orchestrator)
        redirect = orchestrator.initiate_logout(result.session_id, return_to="/goodbye")

        assert isinstance(redirect, LogoutRedirect)
        assert redirect.url.startswith(f"{IDP_SLO_URL}?SAMLRequest=")
        assert orchestrator.flow_state(result.session_id) == FlowState.AWAITING_LOGOUT_CONFIRMATION

        outcome = LogoutCoordinator(idp).handle_logout_request(redirected(redirect.url))
        assert outcome.success, outcome.errors
        assert idp.session("alice@example.com") is None
        assert outcome.response.url.startswith(SP_SLO_URL)

        logout = orchestrator.handle_logout_response(redirected(outcome.response.url))
        assert logout.success
        assert logout.state == FlowState.LOGGED_OUT
        assert logout.sessions_ended == 1
        assert logout.return_to == "/goodbye"
        assert orchestrator.sessions.peek(result.session_id) is None
        assert orchestrator.flow_state(result.session_id) == FlowState.LOGGED_OUT

    def test_partial_logout_keeps_session(self, orchestrator, federation, idp):
        """Test a non-success LogoutResponse leaves the session in place."""
        result = federation.login(orchestrator)
        redirect = orchestrator.initiate_logout(result.session_id)

        built = idp.builder.build_logout_response(
            SP_SLO_URL,
            redirect.request_id,
            status=Status(StatusCode.RESPONDER, StatusCode.PARTIAL_LOGOUT),
            sign=False,
            binding=Binding.HTTP_REDIRECT,
        )
        outbound = deliver(idp.builder, built, "SAMLResponse", SP_ENTITY_ID, None, sign_query=True)
        logout = orchestrator.handle_logout_response(redirected(outbound.url))

        assert not logout.success
        assert logout.state == FlowState.AUTHENTICATED
        assert logout.status_code == StatusCode.PARTIAL_LOGOUT
        assert orchestrator.sessions.peek(result.session_id) is not None
        assert orchestrator.flow_state(result.session_id) == FlowState.AUTHENTICATED

    def test_logout_response_for_unknown_request(self, orchestrator, federation, idp):
        """Test a LogoutResponse answering nothing we sent is refused."""
        result = federation.login(orchestrator)
        built = idp.builder.build_logout_response(SP_SLO_URL, "_never_sent", sign=False, binding=Binding.HTTP_REDIRECT)
        outbound = deliver(idp.builder, built, "SAMLResponse", SP_ENTITY_ID, None, sign_query=True)
        logout = orchestrator.handle_logout_response(redirected(outbound.url))

        assert not logout.success
        assert logout.error_kind == ErrorKind.UNKNOWN_REQUEST_ID
        assert orchestrator.sessions.peek(result.session_id) is not None

    def test_unknown_session_logs_out_locally(self, orchestrator):
        """Test logging out without a session needs no IdP round trip."""
        confirmation = orchestrator.initiate_logout("no-such-session", return_to="/bye")

        assert isinstance(confirmation, LogoutConfirmation)
        assert confirmation.state == FlowState.LOGGED_OUT
        assert confirmation.return_to == "/bye"

    def test_local_logout_without_idp(self, orchestrator, clock):
        """Test a session without an IdP ends locally."""
        session = Session(
            session_id="local-session",
            user_id="bob",
            created_at=FROZEN_NOW,
            expires_at=FROZEN_NOW + timedelta(hours=1),
            last_accessed_at=FROZEN_NOW,
        )
        orchestrator.sessions.store.save(session)
        confirmation = orchestrator.initiate_logout("local-session")

        assert isinstance(confirmation, LogoutConfirmation)
        assert orchestrator.sessions.peek("local-session") is None

    def test_local_logout_when_metadata_unavailable(self, orchestrator, federation, trust_store):
        """Test the session ends locally when the IdP cannot be reached."""
        result = federation.login(orchestrator)
        trust_store.shutdown()
        confirmation = orchestrator.initiate_logout(result.session_id)

        assert isinstance(confirmation, LogoutConfirmation)
        assert confirmation.local_only
        assert orchestrator.sessions.peek(result.session_id) is None


class TestIdPInitiatedLogout:
    """Tests for logout started at the IdP."""

    def test_redirect_logout_request(self, orchestrator, federation, idp):
        """Test an IdP LogoutRequest ends the matching session."""
        login = orchestrator.initiate_login()
        issued = federation.answer(login)
        result = orchestrator.handle_provider_callback(posted(issued.form_html))

        built = idp.builder.build_logout_request(
            Endpoint(Binding.HTTP_REDIRECT, SP_SLO_URL, EndpointPurpose.SLO),
            NameID("alice@example.com"),
            session_indexes=[issued.session_index],
            sign=False,
        )
        outbound = deliver(idp.builder, built, "SAMLRequest", SP_ENTITY_ID, "idp-state", sign_query=True)
        logout = orchestrator.handle_logout_request(redirected(outbound.url))

        assert logout.success
        assert logout.sessions_ended == 1
        assert orchestrator.sessions.peek(result.session_id) is None
        assert logout.response.is_redirect
        assert logout.response.url.startswith(f"{IDP_SLO_URL}?SAMLResponse=")

        xml, redirect = idp.decode(redirected(logout.response.url))
        answer = idp.validator.validate_logout_response(xml, IDP_SLO_URL, redirect)
        assert answer.is_valid, answer.errors
        assert answer.message.in_response_to == built.message.id
        assert answer.relay_state == "idp-state"

    def test_other_session_index_untouched(self, orchestrator, federation, idp):
        """Test sessions from another IdP session survive."""
        result = federation.login(orchestrator)
        built = idp.builder.build_logout_request(
            Endpoint(Binding.HTTP_REDIRECT, SP_SLO_URL, EndpointPurpose.SLO),
            NameID("alice@example.com"),
            session_indexes=["_another_index"],
            sign=False,
        )
        outbound = deliver(idp.builder, built, "SAMLRequest", SP_ENTITY_ID, None, sign_query=True)
        logout = orchestrator.handle_logout_request(redirected(outbound.url))

        assert logout.success
        assert logout.sessions_ended == 0
        assert orchestrator.sessions.peek(result.session_id) is not None

    def test_soap_logout_request(self, orchestrator, federation, idp):
        """Test a back-channel LogoutRequest is answered in a signed SOAP envelope."""
        result = federation.login(orchestrator)
        built = idp.builder.build_logout_request(
            Endpoint(Binding.SOAP, SP_SLO_URL, EndpointPurpose.SLO),
            NameID("alice@example.com"),
        )
        logout = orchestrator.handle_logout_request(InboundMessage.soap(wrap_soap(built.element)))

        assert logout.success
        assert logout.sessions_ended == 1
        assert orchestrator.sessions.peek(result.session_id) is None
        assert logout.response.binding == Binding.SOAP

        answer = idp.validator.validate_logout_response(serialize(unwrap_soap(logout.response.body)))
        assert answer.is_valid, answer.errors
        assert answer.message.status.is_success

    def test_unsigned_logout_request_rejected(self, orchestrator, federation, idp, audit):
        """Test an unsigned back-channel LogoutRequest changes nothing."""
        result = federation.login(orchestrator)
        built = idp.builder.build_logout_request(
            Endpoint(Binding.SOAP, SP_SLO_URL, EndpointPurpose.SLO),
            NameID("alice@example.com"),
            sign=False,
        )
        logout = orchestrator.handle_logout_request(InboundMessage.soap(wrap_soap(built.element)))

        assert not logout.success
        assert logout.error_kind == ErrorKind.SIGNATURE_INVALID
        assert orchestrator.sessions.peek(result.session_id) is not None
        assert AuditEventType.LOGOUT_FAILED in _event_types(audit)


def test_metadata(orchestrator):
    """Test the orchestrator publishes the SP metadata."""
    assert SP_ENTITY_ID.encode() in orchestrator.get_metadata()
