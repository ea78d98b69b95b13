"""Tests for the identity provider and single logout propagation."""

from __future__ import annotations

import httpx
import pytest

from authflow.core.audit import AuditEventType, get_audit_logger
from authflow.core.config import SPSettings
from authflow.core.errors import ErrorKind, UnknownEntityError
from authflow.core.flows import FlowOrchestrator
from authflow.core.protocol import InboundMessage
from authflow.core.saml.builder import MessageBuilder, SigningCredentials
from authflow.core.saml.constants import Binding, StatusCode
from authflow.core.saml.idp import SOAP_ACTION, LogoutCoordinator
from authflow.core.saml.messages import NameID, serialize
from authflow.core.saml.metadata import Endpoint, EndpointPurpose, EntityRole
from authflow.core.saml.replay import InMemoryReplayGuard
from authflow.core.saml.sp import SAMLServiceProvider, deliver
from authflow.core.sessions import MemoryPendingRequestStore, MemorySessionStore, SessionManager
from tests.federation import (
    ALICE,
    IDP_ENTITY_ID,
    IDP_SLO_URL,
    IDP_SSO_URL,
    SP_ACS_URL,
    SP_ENTITY_ID,
    posted,
    posted_xml,
    redirected,
)

APP2_ENTITY_ID = "https://app2.example.com/saml/metadata"
APP2_SLO_URL = "https://app2.example.com/saml/slo"

_SSO_REDIRECT = Endpoint(Binding.HTTP_REDIRECT, IDP_SSO_URL, EndpointPurpose.SSO)


class TestAuthnRequests:
    """Tests for AuthnRequest handling at the IdP."""

    def test_redirect_request(self, idp, sp, sp_settings):
        """Test a query-signed request resolves to the SP's ACS."""
        outbound = sp.build_request(relay_state="state-1")
        result = idp.parse_authn_request(redirected(outbound.url))

        assert result.is_valid, result.errors
        assert result.message.acs_url == SP_ACS_URL
        assert result.message.relay_state == "state-1"
        assert result.message.sp.entity_id == SP_ENTITY_ID
        assert result.message.request.id == outbound.message_id

    def test_post_request(self, idp, sp, sp_settings):
        """Test an enveloped-signature request sent over HTTP-POST."""
        endpoint = Endpoint(Binding.HTTP_POST, IDP_SSO_URL, EndpointPurpose.SSO)
        built = sp.builder.build_authn_request(sp_settings, endpoint)
        assert built.signed

        outbound = deliver(sp.builder, built, "SAMLRequest", IDP_ENTITY_ID, "state-2", sign_query=False)
        result = idp.parse_authn_request(posted(outbound.form_html))

        assert result.is_valid, result.errors
        assert result.relay_state == "state-2"

    def test_unsigned_request_refused(self, idp, sp, sp_settings):
        """Test an SP that promises signed requests must sign them."""
        built = sp.builder.build_authn_request(sp_settings, _SSO_REDIRECT)
        outbound = deliver(sp.builder, built, "SAMLRequest", IDP_ENTITY_ID, None, sign_query=False)
        result = idp.parse_authn_request(redirected(outbound.url))

        assert result.kind == ErrorKind.SIGNATURE_INVALID

    def test_unregistered_acs_refused(self, idp, sp):
        """Test responses are never sent to an ACS missing from metadata."""
        settings = SPSettings(entity_id=SP_ENTITY_ID, base_url="https://evil.example.com")
        built = sp.builder.build_authn_request(settings, _SSO_REDIRECT)
        outbound = deliver(sp.builder, built, "SAMLRequest", IDP_ENTITY_ID, None, sign_query=True)
        result = idp.parse_authn_request(redirected(outbound.url))

        assert result.kind == ErrorKind.AUDIENCE_MISMATCH
        assert "is not registered" in result.errors[0].message

    def test_unknown_sp_refused(self, idp, sp, crypto, clock, other_key, other_cert):
        """Test requests from SPs without metadata are refused."""
        builder = MessageBuilder(
            "https://unknown-sp.example.com/metadata",
            crypto,
            signing=SigningCredentials(other_key, other_cert),
            clock=clock,
        )
        settings = SPSettings(
            entity_id="https://unknown-sp.example.com/metadata", base_url="https://unknown-sp.example.com"
        )
        built = builder.build_authn_request(settings, _SSO_REDIRECT)
        outbound = deliver(builder, built, "SAMLRequest", IDP_ENTITY_ID, None, sign_query=True)
        result = idp.parse_authn_request(redirected(outbound.url))

        assert result.kind == ErrorKind.UNTRUSTED_ISSUER

    def test_replayed_request(self, idp, sp):
        """Test an AuthnRequest is accepted once."""
        inbound = redirected(sp.build_request().url)
        assert idp.parse_authn_request(inbound).is_valid
        assert idp.parse_authn_request(inbound).kind == ErrorKind.REPLAY_DETECTED

    def test_garbage_request(self, idp):
        """Test undecodable input is reported as malformed."""
        result = idp.parse_authn_request(InboundMessage.redirect("SAMLRequest=%%%"))
        assert result.kind == ErrorKind.MALFORMED_MESSAGE


class TestIssuingAssertions:
    """Tests for issuing responses."""

    def test_issue_response(self, idp, sp):
        """Test the response form posts a signed assertion to the ACS."""
        issued = idp.issue_response(ALICE, SP_ENTITY_ID, in_response_to="_req1", relay_state="rs")

        assert issued.destination == SP_ACS_URL
        assert f'action="{SP_ACS_URL}"' in issued.form_html
        assert posted(issued.form_html).relay_state == "rs"
        xml = posted_xml(issued.form_html)
        assert b'InResponseTo="_req1"' in xml
        assert issued.assertion_id.encode() in xml

    def test_audit_event(self, idp, sp):
        """Test issuing an assertion is audited."""
        issued = idp.issue_response(ALICE, SP_ENTITY_ID)
        event = get_audit_logger().events[-1]

        assert event.event_type == AuditEventType.ASSERTION_ISSUED
        assert event.message_id == issued.assertion_id
        assert event.user_id == "alice@example.com"

    def test_session_shared_across_responses(self, idp, sp, clock):
        """Test one IdP session covers several responses until it expires."""
        first = idp.issue_response(ALICE, SP_ENTITY_ID)
        second = idp.issue_response(ALICE, SP_ENTITY_ID)
        assert first.session_index == second.session_index

        clock.advance(8 * 3600)
        third = idp.issue_response(ALICE, SP_ENTITY_ID)
        assert third.session_index != first.session_index

    def test_unknown_sp(self, idp):
        """Test assertions are only issued to trusted SPs."""
        with pytest.raises(UnknownEntityError):
            idp.issue_response(ALICE, "https://unknown-sp.example.com/metadata")

    def test_end_session(self, idp, sp):
        """Test ending the IdP session forgets its participants."""
        idp.issue_response(ALICE, SP_ENTITY_ID)
        assert SP_ENTITY_ID in idp.session("alice@example.com").participants

        assert idp.end_session("alice@example.com") is not None
        assert idp.session("alice@example.com") is None


class SecondApp:
    """Another SP of the federation, reachable over a mock SOAP back-channel."""

    def __init__(self, trust_store, crypto, clock, key, cert, audit) -> None:
        settings = SPSettings(
            entity_id=APP2_ENTITY_ID,
            base_url="https://app2.example.com",
            idp_entity_id=IDP_ENTITY_ID,
        )
        self.sp = SAMLServiceProvider(
            settings,
            trust_store,
            crypto,
            InMemoryReplayGuard(clock=clock),
            signing=SigningCredentials(key, cert),
            clock=clock,
        )
        trust_store.register(self.sp.metadata())
        self.orchestrator = FlowOrchestrator(
            self.sp,
            SessionManager(MemorySessionStore(), clock=clock),
            MemoryPendingRequestStore(),
            audit=audit,
            clock=clock,
        )
        self.requests: list[httpx.Request] = []
        self.status_code = 200

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.status_code != 200:
            return httpx.Response(self.status_code)
        result = self.orchestrator.handle_logout_request(InboundMessage.soap(request.content))
        return httpx.Response(200, content=result.response.body, headers={"Content-Type": "text/xml"})

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def app2(trust_store, crypto, clock, sp_key, sp_cert, audit, idp) -> SecondApp:
    return SecondApp(trust_store, crypto, clock, sp_key, sp_cert, audit)


class TestLogoutPropagation:
    """Tests for single logout across several SPs."""

    def test_logout_reaches_every_sp(self, orchestrator, federation, idp, app2):
        """Test logging out of one SP ends the session at the others."""
        first = federation.login(orchestrator)
        second = federation.login(app2.orchestrator)
        assert second.success, second.errors

        redirect = orchestrator.initiate_logout(first.session_id)
        coordinator = LogoutCoordinator(idp, transport=app2.transport)
        outcome = coordinator.handle_logout_request(redirected(redirect.url))

        assert outcome.success
        assert not outcome.is_partial
        assert len(app2.requests) == 1
        assert str(app2.requests[0].url) == APP2_SLO_URL
        assert app2.requests[0].headers["SOAPAction"] == SOAP_ACTION
        assert app2.orchestrator.sessions.peek(second.session_id) is None

        result = orchestrator.handle_logout_response(redirected(outcome.response.url))
        assert result.success
        assert orchestrator.sessions.peek(first.session_id) is None

    def test_failed_participant_means_partial_logout(self, orchestrator, federation, idp, app2):
        """Test an SP answering with an error makes the logout partial."""
        first = federation.login(orchestrator)
        second = federation.login(app2.orchestrator)
        app2.status_code = 500

        redirect = orchestrator.initiate_logout(first.session_id)
        outcome = LogoutCoordinator(idp, transport=app2.transport).handle_logout_request(redirected(redirect.url))

        assert not outcome.success
        assert outcome.failed_participants == [APP2_ENTITY_ID]
        assert outcome.status.sub_code == StatusCode.PARTIAL_LOGOUT
        assert app2.orchestrator.sessions.peek(second.session_id) is not None

        result = orchestrator.handle_logout_response(redirected(outcome.response.url))
        assert not result.success
        assert result.status_code == StatusCode.PARTIAL_LOGOUT
        assert orchestrator.sessions.peek(first.session_id) is not None

    def test_timeout_counts_as_failure(self, orchestrator, federation, idp, app2):
        """Test an SP that does not answer in time is reported as failed."""
        federation.login(orchestrator)
        federation.login(app2.orchestrator)

        def slow(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        coordinator = LogoutCoordinator(idp, timeout=0.1, transport=httpx.MockTransport(slow))
        assert not coordinator.propagate(
            APP2_ENTITY_ID, NameID("alice@example.com"), idp.session("alice@example.com").session_index
        )

    def test_invalid_logout_request(self, idp):
        """Test an undecodable LogoutRequest is refused."""
        outcome = LogoutCoordinator(idp).handle_logout_request(InboundMessage.post("!!!"))

        assert not outcome.success
        assert outcome.errors[0].kind == ErrorKind.MALFORMED_MESSAGE

    def test_initiator_without_slo_endpoint(self, idp, crypto, clock, sp_key, sp_cert, trust_store):
        """Test logout still ends the IdP session when the initiator cannot be answered."""
        entity_id = "https://app3.example.com/saml/metadata"
        builder = MessageBuilder(entity_id, crypto, SigningCredentials(sp_key, sp_cert), clock=clock)
        acs = Endpoint(Binding.HTTP_POST, "https://app3.example.com/saml/acs", EndpointPurpose.ACS, index=0)
        trust_store.register(serialize(builder.build_metadata(role=EntityRole.SP, endpoints=[acs])))
        idp.issue_response(ALICE, entity_id)

        slo = Endpoint(Binding.HTTP_POST, IDP_SLO_URL, EndpointPurpose.SLO)
        built = builder.build_logout_request(slo, NameID("alice@example.com"))
        outbound = deliver(builder, built, "SAMLRequest", IDP_ENTITY_ID, None, sign_query=False)
        outcome = LogoutCoordinator(idp).handle_logout_request(posted(outbound.form_html))

        assert not outcome.success
        assert outcome.response is None
        assert outcome.errors[0].kind == ErrorKind.METADATA_UNAVAILABLE
        assert "no SLO endpoint" in outcome.errors[0].message
        assert idp.session("alice@example.com") is None
        assert get_audit_logger().events[-1].event_type == AuditEventType.LOGOUT_FAILED
