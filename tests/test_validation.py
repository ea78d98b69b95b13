"""Tests for validation of incoming SAML messages."""

from __future__ import annotations

from datetime import timedelta

from lxml import etree

from authflow.core.config import SPSettings
from authflow.core.errors import ErrorKind, ValidationCategory
from authflow.core.protocol import InboundMessage
from authflow.core.saml.bindings import encode_post
from authflow.core.saml.builder import AssertionSpec, MessageBuilder, SigningCredentials
from authflow.core.saml.constants import Binding, StatusCode
from authflow.core.saml.idp import IdentityProvider
from authflow.core.saml.messages import NameID, Status
from authflow.core.saml.metadata import Endpoint, EndpointPurpose
from authflow.core.saml.replay import InMemoryReplayGuard
from authflow.core.saml.sp import deliver
from authflow.core.saml.trust import TrustStore
from authflow.core.saml.validation import MessageValidator
from tests.federation import (
    ALICE,
    IDP_ENTITY_ID,
    IDP_SLO_URL,
    IDP_SSO_URL,
    MAIL_OID,
    SP_ACS_URL,
    SP_ENTITY_ID,
    SP_SLO_URL,
    posted_xml,
    redirected,
)


def _response(idp: IdentityProvider, **kwargs) -> bytes:
    return posted_xml(idp.issue_response(ALICE, SP_ENTITY_ID, **kwargs).form_html)


def _timed_response(idp: IdentityProvider, lifetime_seconds: int, not_before_offset: int = 0) -> bytes:
    """A signed response whose assertion is valid for a fixed window."""
    assertion = idp.builder.build_assertion(AssertionSpec(
        name_id="alice@example.com",
        audience=SP_ENTITY_ID,
        recipient=SP_ACS_URL,
        lifetime=timedelta(seconds=lifetime_seconds),
    ))
    assertion.conditions.not_before += timedelta(seconds=not_before_offset)
    return idp.builder.build_response(assertion, SP_ACS_URL).xml


def _other_idp(trust_store, crypto, clock, key, cert, **kwargs) -> IdentityProvider:
    """An IdP using the trusted entity ID, not registered in the trust store."""
    return IdentityProvider(
        IDP_ENTITY_ID,
        IDP_SSO_URL,
        IDP_SLO_URL,
        trust_store,
        crypto,
        InMemoryReplayGuard(clock=clock),
        SigningCredentials(key, cert),
        clock=clock,
        **kwargs,
    )


class TestResponseValidation:
    """Tests for Response validation stages."""

    def test_valid_response(self, sp, idp):
        """Test a fresh signed response is accepted."""
        result = sp.validator.validate_response(_response(idp))

        assert result.is_valid, result.errors
        assert result.issuer_entity.entity_id == IDP_ENTITY_ID
        assertion = result.message.assertion
        assert assertion.name_id == "alice@example.com"
        assert assertion.signed
        assert assertion.attribute_values()[MAIL_OID] == ["alice@example.com"]
        assert assertion.session_index == idp.session("alice@example.com").session_index

    def test_tampered_assertion(self, sp, idp):
        """Test editing signed content is detected."""
        xml = _response(idp).replace(b"alice@example.com", b"mallory@example.com")
        result = sp.validator.validate_response(xml)

        assert result.kind == ErrorKind.SIGNATURE_INVALID
        assert result.category == ValidationCategory.SIGNATURE

    def test_unsigned_assertion(self, sp, idp):
        """Test an assertion signed by nobody is rejected."""
        assertion = idp.builder.build_assertion(
            AssertionSpec(name_id="alice@example.com", audience=SP_ENTITY_ID, recipient=SP_ACS_URL)
        )
        built = idp.builder.build_response(assertion, SP_ACS_URL, sign_assertion=False)
        result = sp.validator.validate_response(built.xml)

        assert result.kind == ErrorKind.SIGNATURE_INVALID
        assert "neither is the Response" in result.errors[0].message

    def test_signed_response_with_unsigned_assertion(self, sp, idp):
        """Test assertions must carry their own signature when required."""
        assertion = idp.builder.build_assertion(
            AssertionSpec(name_id="alice@example.com", audience=SP_ENTITY_ID, recipient=SP_ACS_URL)
        )
        built = idp.builder.build_response(assertion, SP_ACS_URL, sign_assertion=False, sign_response=True)
        result = sp.validator.validate_response(built.xml)

        assert result.kind == ErrorKind.SIGNATURE_INVALID
        assert result.errors[0].message.endswith("is not signed")

    def test_signed_response_and_assertion(self, sp, trust_store, crypto, clock, idp, idp_key, idp_cert):
        """Test a response signed at both levels is accepted."""
        signing_idp = _other_idp(trust_store, crypto, clock, idp_key, idp_cert, sign_response=True)
        result = sp.validator.validate_response(_response(signing_idp))

        assert result.is_valid, result.errors
        assert result.message.signed

    def test_signed_by_untrusted_key(self, sp, trust_store, crypto, clock, other_key, other_cert):
        """Test a signature by a key absent from metadata is rejected."""
        rogue = _other_idp(trust_store, crypto, clock, other_key, other_cert)
        result = sp.validator.validate_response(_response(rogue))

        assert result.kind == ErrorKind.SIGNATURE_INVALID

    def test_untrusted_issuer(self, sp, idp, crypto, clock):
        """Test a response from an entity without metadata is rejected."""
        store = TrustStore(crypto=crypto, clock=clock)
        store.register(sp.metadata())
        validator = MessageValidator(
            SP_ENTITY_ID, SP_ACS_URL, store, crypto, InMemoryReplayGuard(clock=clock), clock=clock
        )
        result = validator.validate_response(_response(idp))

        assert result.kind == ErrorKind.UNTRUSTED_ISSUER
        assert result.category == ValidationCategory.SIGNATURE

    def test_expired_response(self, sp, idp, clock):
        """Test a response presented after its lifetime is rejected."""
        xml = _response(idp)
        clock.advance(601)
        result = sp.validator.validate_response(xml)

        assert result.kind == ErrorKind.TIMESTAMP_OUT_OF_RANGE
        assert result.category == ValidationCategory.TIMESTAMP

    def test_issue_instant_within_clock_skew(self, sp, idp, clock):
        """Test an IssueInstant slightly ahead of the local clock is tolerated."""
        xml = _timed_response(idp, lifetime_seconds=300, not_before_offset=-300)
        clock.advance(-120)
        assert sp.validator.validate_response(xml).is_valid

    def test_assertion_expired_just_before_now(self, sp, idp, clock):
        """Test clock skew does not extend an assertion past NotOnOrAfter."""
        xml = _timed_response(idp, lifetime_seconds=60)
        clock.advance(61)
        result = sp.validator.validate_response(xml)

        assert result.kind == ErrorKind.TIMESTAMP_OUT_OF_RANGE
        assert any("has expired" in e.message for e in result.errors)

    def test_not_on_or_after_is_exclusive(self, sp, idp, clock):
        """Test an assertion is invalid at the instant of NotOnOrAfter."""
        xml = _timed_response(idp, lifetime_seconds=60)
        clock.advance(60)
        assert sp.validator.validate_response(xml).kind == ErrorKind.TIMESTAMP_OUT_OF_RANGE

    def test_not_before_is_inclusive(self, sp, idp):
        """Test an assertion is valid at the instant of NotBefore."""
        result = sp.validator.validate_response(_timed_response(idp, lifetime_seconds=60))
        assert result.is_valid, result.errors

    def test_not_before_in_future(self, sp, idp):
        """Test clock skew does not admit an assertion before NotBefore."""
        xml = _timed_response(idp, lifetime_seconds=300, not_before_offset=30)
        result = sp.validator.validate_response(xml)

        assert result.kind == ErrorKind.TIMESTAMP_OUT_OF_RANGE
        assert any("not yet valid" in e.message for e in result.errors)

    def test_response_from_the_future(self, sp, idp, clock):
        """Test an IssueInstant beyond the clock skew is rejected."""
        xml = _response(idp)
        clock.advance(-700)
        result = sp.validator.validate_response(xml)

        assert result.kind == ErrorKind.TIMESTAMP_OUT_OF_RANGE
        assert any("future" in e.message for e in result.errors)

    def test_signature_checked_before_timestamps(self, sp, idp, clock):
        """Test only the first failing stage is reported."""
        xml = _response(idp).replace(b"alice@example.com", b"mallory@example.com")
        clock.advance(3600)
        result = sp.validator.validate_response(xml)

        assert result.errors
        assert {e.category for e in result.errors} == {ValidationCategory.SIGNATURE}

    def test_wrong_destination(self, sp, idp):
        """Test a response for another ACS is rejected."""
        result = sp.validator.validate_response(_response(idp), expected_destination="https://sp.example.com/other")

        assert result.kind == ErrorKind.AUDIENCE_MISMATCH
        assert result.category == ValidationCategory.AUDIENCE

    def test_wrong_audience(self, sp, idp, trust_store, crypto, clock):
        """Test an assertion addressed to another SP is rejected."""
        validator = MessageValidator(
            "https://other-sp.example.com/metadata",
            SP_ACS_URL,
            trust_store,
            crypto,
            InMemoryReplayGuard(clock=clock),
            clock=clock,
        )
        result = validator.validate_response(_response(idp))

        assert result.kind == ErrorKind.AUDIENCE_MISMATCH
        assert any("is not addressed to" in e.message for e in result.errors)

    def test_replayed_response(self, sp, idp):
        """Test a response can be consumed only once."""
        xml = _response(idp)
        assert sp.validator.validate_response(xml).is_valid

        result = sp.validator.validate_response(xml)
        assert result.kind == ErrorKind.REPLAY_DETECTED
        assert result.category == ValidationCategory.REPLAY

    def test_in_response_to_mismatch(self, sp, idp):
        """Test the assertion must answer the same request as the response."""
        assertion = idp.builder.build_assertion(AssertionSpec(
            name_id="alice@example.com",
            audience=SP_ENTITY_ID,
            recipient=SP_ACS_URL,
            in_response_to="_request_one",
        ))
        built = idp.builder.build_response(assertion, SP_ACS_URL, in_response_to="_request_two")
        result = sp.validator.validate_response(built.xml)

        assert result.kind == ErrorKind.UNKNOWN_REQUEST_ID
        assert result.category == ValidationCategory.SUBJECT

    def test_malformed_xml(self, sp):
        """Test unparseable input is reported as malformed."""
        result = sp.validator.validate_response(b"<samlp:Response")

        assert result.kind == ErrorKind.MALFORMED_MESSAGE
        assert result.category == ValidationCategory.SCHEMA

    def test_dtd_rejected(self, sp):
        """Test documents declaring a DTD are refused."""
        xml = b'<?xml version="1.0"?><!DOCTYPE r [<!ENTITY e "x">]><r>&e;</r>'
        result = sp.validator.validate_response(xml)

        assert result.kind == ErrorKind.MALFORMED_MESSAGE

    def test_wrong_root_element(self, sp):
        """Test a non-Response document is refused."""
        xml = b'<samlp:LogoutResponse xmlns:samlp="urn:oasis:names:tc:SAML:2.0:protocol" ID="_1" Version="2.0"/>'
        result = sp.validator.validate_response(xml)

        assert result.kind == ErrorKind.MALFORMED_MESSAGE
        assert "Expected samlp:Response" in result.errors[0].message

    def test_error_status(self, sp, idp):
        """Test a failure status from the IdP is reported."""
        built = idp.builder.build_error_response(
            SP_ACS_URL, None, Status(StatusCode.RESPONDER, StatusCode.AUTHN_FAILED, "Wrong password")
        )
        result = sp.validator.validate_response(built.xml)

        assert result.kind == ErrorKind.MALFORMED_MESSAGE
        assert "AuthnFailed" in result.errors[0].message

    def test_encrypted_assertion(self, sp, trust_store, crypto, clock, idp, idp_key, idp_cert):
        """Test an encrypted assertion is decrypted and validated."""
        encrypting_idp = _other_idp(trust_store, crypto, clock, idp_key, idp_cert, encrypt_assertions=True)
        xml = _response(encrypting_idp)
        assert b"EncryptedAssertion" in xml
        assert b"alice@example.com" not in xml

        result = sp.validator.validate_response(xml)
        assert result.is_valid, result.errors
        assert result.message.assertion.name_id == "alice@example.com"

    def test_plaintext_rejected_when_encryption_required(self, sp, idp, trust_store, crypto, clock):
        """Test plaintext assertions are refused when encryption is required."""
        settings = SPSettings(
            entity_id=SP_ENTITY_ID,
            base_url="https://sp.example.com",
            idp_entity_id=IDP_ENTITY_ID,
            want_assertions_encrypted=True,
        )
        validator = MessageValidator.from_settings(
            settings, trust_store, crypto, InMemoryReplayGuard(clock=clock), clock=clock
        )
        result = validator.validate_response(_response(idp))

        assert result.kind == ErrorKind.CRYPTO_FAILURE

    def test_result_to_dict(self, sp):
        """Test results serialize for logging."""
        data = sp.validator.validate_response(b"garbage").to_dict()
        assert data["is_valid"] is False
        assert data["errors"][0]["kind"] == "MalformedMessage"


class TestLogoutMessageValidation:
    """Tests for LogoutRequest and LogoutResponse validation."""

    def _logout_request(self, idp, sign: bool):
        endpoint = Endpoint(Binding.HTTP_POST, SP_SLO_URL, EndpointPurpose.SLO)
        return idp.builder.build_logout_request(endpoint, NameID("alice@example.com"), sign=sign)

    def test_signed_logout_request(self, sp, idp):
        """Test a signed LogoutRequest is accepted."""
        built = self._logout_request(idp, sign=True)
        result = sp.validator.validate_logout_request(built.xml, SP_SLO_URL)

        assert result.is_valid, result.errors
        assert result.message.name_id.value == "alice@example.com"

    def test_unsigned_logout_request(self, sp, idp):
        """Test logout messages must be signed."""
        built = self._logout_request(idp, sign=False)
        result = sp.validator.validate_logout_request(built.xml, SP_SLO_URL)

        assert result.kind == ErrorKind.SIGNATURE_INVALID

    def test_replayed_logout_request(self, sp, idp):
        """Test a LogoutRequest is accepted once."""
        built = self._logout_request(idp, sign=True)
        assert sp.validator.validate_logout_request(built.xml, SP_SLO_URL).is_valid
        assert sp.validator.validate_logout_request(built.xml, SP_SLO_URL).kind == ErrorKind.REPLAY_DETECTED

    def test_expired_logout_request(self, sp, idp, clock):
        """Test a LogoutRequest past NotOnOrAfter is rejected."""
        built = self._logout_request(idp, sign=True)
        clock.advance(601)
        assert sp.validator.validate_logout_request(built.xml, SP_SLO_URL).kind == ErrorKind.TIMESTAMP_OUT_OF_RANGE

    def test_logout_request_wrong_destination(self, sp, idp):
        """Test a LogoutRequest for another endpoint is rejected."""
        built = self._logout_request(idp, sign=True)
        result = sp.validator.validate_logout_request(built.xml, "https://sp.example.com/elsewhere")

        assert result.kind == ErrorKind.AUDIENCE_MISMATCH

    def test_query_signed_logout_response(self, sp, idp):
        """Test an HTTP-Redirect LogoutResponse signed on the query string."""
        built = idp.builder.build_logout_response(SP_SLO_URL, "_req", sign=False, binding=Binding.HTTP_REDIRECT)
        outbound = deliver(idp.builder, built, "SAMLResponse", SP_ENTITY_ID, "rs", sign_query=True)

        result = sp.validate_logout_response(redirected(outbound.url))
        assert result.is_valid, result.errors
        assert result.relay_state == "rs"
        assert result.message.in_response_to == "_req"

    def test_query_signature_covers_relay_state(self, sp, idp):
        """Test changing RelayState breaks the query-string signature."""
        built = idp.builder.build_logout_response(SP_SLO_URL, "_req", sign=False, binding=Binding.HTTP_REDIRECT)
        outbound = deliver(idp.builder, built, "SAMLResponse", SP_ENTITY_ID, "rs", sign_query=True)

        result = sp.validate_logout_response(redirected(outbound.url.replace("RelayState=rs", "RelayState=xx")))
        assert result.kind == ErrorKind.SIGNATURE_INVALID

    def test_logout_request_from_service_provider_rejected(self, sp, idp, sp_key, sp_cert, crypto, clock):
        """Test an SP cannot ask another SP to log a user out."""
        builder = MessageBuilder(SP_ENTITY_ID, crypto, signing=SigningCredentials(sp_key, sp_cert), clock=clock)
        built = builder.build_logout_request(
            Endpoint(Binding.HTTP_POST, SP_SLO_URL, EndpointPurpose.SLO), NameID("alice@example.com")
        )
        result = sp.validate_logout_request(InboundMessage.post(encode_post(built.xml)))
        assert result.kind == ErrorKind.UNTRUSTED_ISSUER


def test_response_signature_moves_with_issuer(sp, idp):
    """Test the assertion signature sits right after its Issuer."""
    root = etree.fromstring(_response(idp))
    assertion = root.find("{urn:oasis:names:tc:SAML:2.0:assertion}Assertion")
    children = [etree.QName(child).localname for child in assertion]
    assert children[:2] == ["Issuer", "Signature"]
