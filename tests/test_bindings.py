"""Tests for SAML bindings and message parsing."""

from __future__ import annotations

import base64
import zlib
from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qs, urlencode, urlsplit

import pytest
from lxml import etree

from authflow.core.errors import BindingError, MessageError
from authflow.core.saml.bindings import (
    REDIRECT_SIG_ALG,
    build_redirect_url,
    decode_and_inflate,
    decode_post,
    decode_redirect,
    deflate_and_encode,
    encode_post,
    render_post_form,
    unwrap_soap,
    wrap_soap,
)
from authflow.core.saml.constants import SOAP_ENV_NS, NameIDFormat, StatusCode
from authflow.core.saml.messages import (
    AuthnRequest,
    LogoutRequest,
    LogoutResponse,
    NameID,
    Status,
    format_instant,
    generate_id,
    parse_instant,
    parse_xml,
    serialize,
)
from tests.federation import FROZEN_NOW, IDP_SSO_URL, SP_ACS_URL, SP_ENTITY_ID, form_fields


def _authn_request(**kwargs) -> AuthnRequest:
    defaults = {
        "id": "_a1b2c3",
        "issue_instant": FROZEN_NOW,
        "issuer": SP_ENTITY_ID,
        "destination": IDP_SSO_URL,
        "acs_url": SP_ACS_URL,
    }
    defaults.update(kwargs)
    return AuthnRequest(**defaults)


class TestRedirectBinding:
    """Tests for the HTTP-Redirect binding."""

    def test_deflate_round_trip(self):
        """Test deflated messages inflate back unchanged."""
        xml = serialize(_authn_request().to_element())
        assert decode_and_inflate(deflate_and_encode(xml)) == xml

    def test_raw_deflate_without_zlib_header(self):
        """Test the encoding is raw DEFLATE, not zlib framed."""
        raw = base64.b64decode(deflate_and_encode(b"<x/>"))
        assert zlib.decompress(raw, -15) == b"<x/>"

    def test_inflate_size_limit(self):
        """Test oversized messages are rejected while inflating."""
        encoded = deflate_and_encode(b"<x>" + b"a" * 10000 + b"</x>")
        with pytest.raises(BindingError, match="exceeds"):
            decode_and_inflate(encoded, max_bytes=1000)

    def test_inflate_rejects_bad_input(self):
        """Test invalid base64 and invalid DEFLATE data are rejected."""
        with pytest.raises(BindingError):
            decode_and_inflate("not base64!!")
        with pytest.raises(BindingError):
            decode_and_inflate(base64.b64encode(b"\xff\xfe\xfd").decode())

    def test_unsigned_url(self):
        """Test an unsigned redirect URL decodes to the message and RelayState."""
        xml = serialize(_authn_request().to_element())
        url = build_redirect_url(IDP_SSO_URL, "SAMLRequest", xml, relay_state="state 1/2")

        params = parse_qs(urlsplit(url).query)
        assert set(params) == {"SAMLRequest", "RelayState"}

        message = decode_redirect(urlsplit(url).query)
        assert message.parameter == "SAMLRequest"
        assert message.xml == xml
        assert message.relay_state == "state 1/2"
        assert not message.is_signed

    def test_signed_url(self, crypto, sp_key, sp_cert):
        """Test the query-string signature covers the encoded parameters."""
        xml = serialize(_authn_request().to_element())
        url = build_redirect_url(IDP_SSO_URL, "SAMLRequest", xml, "abc", signing_key=sp_key, crypto=crypto)

        message = decode_redirect(urlsplit(url).query)
        assert message.is_signed
        assert message.sig_alg == REDIRECT_SIG_ALG
        assert message.signed_data.startswith(b"SAMLRequest=")
        assert b"&RelayState=abc&SigAlg=" in message.signed_data
        assert crypto.verify_bytes(message.signed_data, message.signature, [sp_cert]) is not None

    def test_signed_url_detects_tampering(self, crypto, sp_key, sp_cert):
        """Test a changed RelayState invalidates the query-string signature."""
        xml = serialize(_authn_request().to_element())
        url = build_redirect_url(IDP_SSO_URL, "SAMLRequest", xml, "abc", signing_key=sp_key, crypto=crypto)

        message = decode_redirect(urlsplit(url).query.replace("RelayState=abc", "RelayState=abd"))
        assert crypto.verify_bytes(message.signed_data, message.signature, [sp_cert]) is None

    def test_existing_query_string_preserved(self):
        """Test locations that already carry a query string are extended."""
        url = build_redirect_url("https://idp.example.com/sso?tenant=1", "SAMLRequest", b"<x/>")
        assert url.startswith("https://idp.example.com/sso?tenant=1&SAMLRequest=")

    def test_missing_parameter(self):
        """Test a query string without a SAML message is rejected."""
        with pytest.raises(BindingError, match="neither"):
            decode_redirect("RelayState=abc")

    def test_signature_without_sigalg(self):
        """Test a Signature parameter requires SigAlg."""
        query = urlencode({"SAMLRequest": deflate_and_encode(b"<x/>"), "Signature": "AAAA"})
        with pytest.raises(BindingError, match="SigAlg"):
            decode_redirect(query)


class TestPostBinding:
    """Tests for the HTTP-POST binding."""

    def test_encode_and_decode(self):
        """Test base64 encoding of posted messages."""
        assert decode_post(encode_post(b"<samlp:Response/>")) == b"<samlp:Response/>"

    def test_decode_ignores_line_breaks(self):
        """Test base64 split over several lines is accepted."""
        encoded = encode_post(b"<samlp:Response ID='_1'/>")
        wrapped = encoded[:10] + "\r\n" + encoded[10:]
        assert decode_post(wrapped) == b"<samlp:Response ID='_1'/>"

    def test_decode_size_limit(self):
        """Test oversized posted messages are rejected."""
        with pytest.raises(BindingError, match="exceeds"):
            decode_post(encode_post(b"a" * 2000), max_bytes=1000)

    def test_decode_rejects_bad_base64(self):
        """Test invalid base64 is rejected."""
        with pytest.raises(BindingError):
            decode_post("@@@")

    def test_form_carries_message_and_relay_state(self):
        """Test the auto-submitting form posts the message to the endpoint."""
        html = render_post_form(SP_ACS_URL, "SAMLResponse", b"<x/>", relay_state="abc")
        assert f'action="{SP_ACS_URL}"' in html
        assert "document.forms[0].submit()" in html
        fields = form_fields(html)
        assert decode_post(fields["SAMLResponse"]) == b"<x/>"
        assert fields["RelayState"] == "abc"

    def test_form_escapes_relay_state(self):
        """Test RelayState cannot inject markup into the form."""
        html = render_post_form(SP_ACS_URL, "SAMLResponse", b"<x/>", relay_state='"><script>alert(1)</script>')
        assert "<script>" not in html
        assert form_fields(html)["RelayState"] == '"><script>alert(1)</script>'

    def test_form_without_relay_state(self):
        """Test RelayState is omitted when not given."""
        html = render_post_form(SP_ACS_URL, "SAMLRequest", b"<x/>")
        assert "RelayState" not in html


class TestSOAPBinding:
    """Tests for the SOAP back-channel binding."""

    def test_wrap_and_unwrap(self):
        """Test a message survives a SOAP envelope."""
        envelope = wrap_soap(_authn_request().to_element())
        assert SOAP_ENV_NS.encode() in envelope
        message = unwrap_soap(envelope)
        assert AuthnRequest.from_element(message).id == "_a1b2c3"

    def test_not_an_envelope(self):
        """Test a bare message is not accepted as SOAP."""
        with pytest.raises(BindingError):
            unwrap_soap(serialize(_authn_request().to_element()))

    def test_empty_body(self):
        """Test a body without a message is rejected."""
        envelope = f'<soap:Envelope xmlns:soap="{SOAP_ENV_NS}"><soap:Body/></soap:Envelope>'
        with pytest.raises(BindingError, match="exactly one"):
            unwrap_soap(envelope.encode())

    def test_fault(self):
        """Test a SOAP fault is reported as a binding error."""
        envelope = (
            f'<soap:Envelope xmlns:soap="{SOAP_ENV_NS}"><soap:Body>'
            "<soap:Fault><faultcode>soap:Server</faultcode><faultstring>boom</faultstring></soap:Fault>"
            "</soap:Body></soap:Envelope>"
        )
        with pytest.raises(BindingError, match="boom"):
            unwrap_soap(envelope.encode())


class TestXMLParsing:
    """Tests for hardened XML parsing."""

    def test_doctype_rejected(self):
        """Test documents declaring a DTD are refused."""
        with pytest.raises(MessageError, match="DTD"):
            parse_xml(b'<!DOCTYPE x [<!ENTITY e "boom">]><x>&e;</x>')

    def test_malformed_rejected(self):
        """Test malformed XML raises MessageError."""
        with pytest.raises(MessageError, match="Malformed"):
            parse_xml(b"<samlp:Response")

    def test_size_limit(self):
        """Test documents over the limit are refused before parsing."""
        with pytest.raises(MessageError, match="exceeds"):
            parse_xml(b"<x>" + b"a" * 100 + b"</x>", max_bytes=50)


class TestInstants:
    """Tests for SAML dateTime handling."""

    def test_format(self):
        """Test instants are formatted in UTC with a Z suffix."""
        value = datetime(2024, 5, 1, 12, 30, 15, 999, tzinfo=UTC)
        assert format_instant(value) == "2024-05-01T12:30:15Z"

    def test_parse_variants(self):
        """Test Z, offsets, fractions and naive values all parse to UTC."""
        expected = datetime(2024, 5, 1, 12, 30, 15, tzinfo=UTC)
        assert parse_instant("2024-05-01T12:30:15Z") == expected
        assert parse_instant("2024-05-01T14:30:15+02:00") == expected
        assert parse_instant("2024-05-01T12:30:15") == expected
        assert parse_instant("2024-05-01T12:30:15.123456789Z") == expected + timedelta(microseconds=123456)

    def test_parse_invalid(self):
        """Test garbage timestamps raise MessageError."""
        with pytest.raises(MessageError):
            parse_instant("yesterday")

    def test_generate_id(self):
        """Test IDs start with a letter-safe prefix and are unique."""
        first, second = generate_id(), generate_id()
        assert first.startswith("_")
        assert len(first) == 41
        assert first != second


class TestProtocolMessages:
    """Tests for protocol message elements."""

    def test_authn_request_round_trip(self):
        """Test AuthnRequest options survive serialization."""
        request = _authn_request(
            force_authn=True,
            is_passive=True,
            name_id_format=NameIDFormat.EMAIL,
            requested_authn_context=["urn:oasis:names:tc:SAML:2.0:ac:classes:Password"],
        )
        parsed = AuthnRequest.from_element(parse_xml(serialize(request.to_element())))
        assert parsed == request

    def test_wrong_element(self):
        """Test parsing the wrong message type fails."""
        with pytest.raises(MessageError, match="Expected samlp:LogoutRequest"):
            LogoutRequest.from_element(_authn_request().to_element())

    def test_wrong_version(self):
        """Test only SAML 2.0 is accepted."""
        element = _authn_request().to_element()
        element.set("Version", "1.1")
        with pytest.raises(MessageError, match="version"):
            AuthnRequest.from_element(element)

    def test_logout_request(self):
        """Test LogoutRequest with NameID and session indexes."""
        request = LogoutRequest(
            id="_l1",
            issue_instant=FROZEN_NOW,
            issuer=SP_ENTITY_ID,
            name_id=NameID("alice@example.com", NameIDFormat.EMAIL),
            destination="https://idp.example.com/slo",
            session_indexes=["_s1", "_s2"],
            not_on_or_after=FROZEN_NOW + timedelta(minutes=5),
        )
        parsed = LogoutRequest.from_element(parse_xml(serialize(request.to_element())))
        assert parsed == request

    def test_logout_request_requires_name_id(self):
        """Test a LogoutRequest without NameID is malformed."""
        element = LogoutRequest(
            id="_l1", issue_instant=FROZEN_NOW, issuer=SP_ENTITY_ID, name_id=NameID("x")
        ).to_element()
        for child in element.findall("{urn:oasis:names:tc:SAML:2.0:assertion}NameID"):
            element.remove(child)
        with pytest.raises(MessageError, match="NameID"):
            LogoutRequest.from_element(element)

    def test_status_with_sub_code(self):
        """Test nested status codes and messages are kept."""
        response = LogoutResponse(
            id="_r1",
            issue_instant=FROZEN_NOW,
            issuer=SP_ENTITY_ID,
            status=Status(StatusCode.RESPONDER, StatusCode.PARTIAL_LOGOUT, "partial"),
            in_response_to="_l1",
        )
        parsed = LogoutResponse.from_element(response.to_element())
        assert parsed.status == Status(StatusCode.RESPONDER, StatusCode.PARTIAL_LOGOUT, "partial")
        assert not parsed.status.is_success

    def test_missing_status(self):
        """Test a response without Status is malformed."""
        element = LogoutResponse(id="_r1", issue_instant=FROZEN_NOW, issuer=SP_ENTITY_ID).to_element()
        element.remove(element.find("{urn:oasis:names:tc:SAML:2.0:protocol}Status"))
        with pytest.raises(MessageError, match="Status"):
            LogoutResponse.from_element(element)

    def test_missing_id(self):
        """Test a message without an ID is malformed."""
        element = _authn_request().to_element()
        del element.attrib["ID"]
        with pytest.raises(MessageError, match="ID"):
            AuthnRequest.from_element(element)

    def test_issuer_is_stripped(self):
        """Test whitespace around the Issuer is ignored."""
        element = _authn_request().to_element()
        element.find("{urn:oasis:names:tc:SAML:2.0:assertion}Issuer").text = f"\n  {SP_ENTITY_ID}\n"
        assert AuthnRequest.from_element(etree.fromstring(serialize(element))).issuer == SP_ENTITY_ID
