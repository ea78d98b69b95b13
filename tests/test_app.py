"""Tests for the Flask application."""

from __future__ import annotations

from urllib.parse import urlsplit

import pytest
from flask.testing import FlaskClient

from authflow.core.saml.bindings import wrap_soap
from authflow.core.saml.constants import Binding
from authflow.core.saml.idp import LogoutCoordinator
from authflow.core.saml.messages import NameID
from authflow.core.saml.metadata import Endpoint, EndpointPurpose
from tests.federation import (
    ALICE,
    IDP_SLO_URL,
    IDP_SSO_URL,
    SP_ENTITY_ID,
    SP_SLO_URL,
    form_fields,
    redirected,
)


def _local(url: str) -> str:
    """Path and query of an absolute URL aimed at the SP."""
    parts = urlsplit(url)
    return f"{parts.path}?{parts.query}"


@pytest.fixture
def logged_in(client: FlaskClient, idp):
    """Log the test client in through the IdP and return its form fields."""
    location = client.get("/saml/login?next=/reports").headers["Location"]
    parsed = idp.parse_authn_request(redirected(location))
    issued = idp.issue_response(
        ALICE,
        SP_ENTITY_ID,
        in_response_to=parsed.message.request.id,
        acs_url=parsed.message.acs_url,
        relay_state=parsed.message.relay_state,
    )
    fields = form_fields(issued.form_html)
    response = client.post("/saml/acs", data=fields)
    assert response.status_code == 302, response.data
    return fields


def test_health_endpoint(client: FlaskClient) -> None:
    """Test the health check endpoint."""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json == {"status": "healthy"}


def test_metadata_endpoint(client: FlaskClient) -> None:
    """Test the SP metadata is served as XML."""
    response = client.get("/saml/metadata")
    assert response.status_code == 200
    assert response.headers["Content-Type"] == "application/xml"
    assert SP_ENTITY_ID.encode() in response.data


class TestLogin:
    """Tests for the login endpoints."""

    def test_index_requires_login(self, client):
        """Test an anonymous visitor is sent to the IdP."""
        response = client.get("/")
        assert response.status_code == 302
        assert response.headers["Location"].startswith(f"{IDP_SSO_URL}?SAMLRequest=")

    def test_login_redirects_to_idp(self, client):
        """Test /saml/login starts an SP-initiated login."""
        response = client.get("/saml/login")
        assert response.status_code == 302
        query = urlsplit(response.headers["Location"]).query
        assert "RelayState=" in query
        assert "Signature=" in query

    def test_full_login(self, client, idp):
        """Test a complete login sets the session cookie and lands on the requested page."""
        location = client.get("/saml/login?next=/reports").headers["Location"]
        parsed = idp.parse_authn_request(redirected(location))
        assert parsed.is_valid, parsed.errors
        issued = idp.issue_response(
            ALICE,
            SP_ENTITY_ID,
            in_response_to=parsed.message.request.id,
            acs_url=parsed.message.acs_url,
            relay_state=parsed.message.relay_state,
        )

        response = client.post("/saml/acs", data=form_fields(issued.form_html))
        assert response.status_code == 302
        assert response.headers["Location"].endswith("/reports")
        cookie = response.headers["Set-Cookie"]
        assert cookie.startswith("authflow_session=")
        assert "HttpOnly" in cookie
        assert "SameSite=Lax" in cookie

        page = client.get("/")
        assert page.status_code == 200
        assert page.json["user_id"] == "alice@example.com"
        assert page.json["idp_entity_id"] == idp.entity_id

    def test_acs_without_response(self, client):
        """Test a POST without SAMLResponse is a bad request."""
        assert client.post("/saml/acs", data={}).status_code == 400

    def test_acs_garbage(self, client):
        """Test an undecodable SAMLResponse is a bad request."""
        response = client.post("/saml/acs", data={"SAMLResponse": "bm90IHhtbA=="})
        assert response.status_code == 400
        assert b"Authentication failed" in response.data

    def test_acs_replay(self, client, logged_in):
        """Test posting the same response twice is refused."""
        assert client.post("/saml/acs", data=logged_in).status_code == 403


class TestLogout:
    """Tests for the logout endpoints."""

    def test_logout_requires_csrf_token(self, client, logged_in):
        """Test logout without the session's CSRF token is refused."""
        response = client.post("/saml/logout", data={"csrf_token": "forged"})
        assert response.status_code == 403
        assert client.get("/").status_code == 200

    def test_single_logout(self, client, logged_in, idp):
        """Test logout goes through the IdP and clears the cookie."""
        token = client.get("/").json["csrf_token"]
        response = client.post("/saml/logout", data={"csrf_token": token})
        assert response.status_code == 302
        assert response.headers["Location"].startswith(f"{IDP_SLO_URL}?SAMLRequest=")

        outcome = LogoutCoordinator(idp).handle_logout_request(redirected(response.headers["Location"]))
        assert outcome.success
        assert outcome.response.url.startswith(SP_SLO_URL)

        done = client.get(_local(outcome.response.url))
        assert done.status_code == 302
        assert "authflow_session=;" in done.headers["Set-Cookie"]
        assert client.get("/").status_code == 302

    def test_logout_without_session(self, client):
        """Test logging out anonymously just returns home."""
        response = client.post("/saml/logout")
        assert response.status_code == 302
        assert urlsplit(response.headers["Location"]).path == "/"

    def test_soap_logout(self, client, logged_in, idp):
        """Test a back-channel LogoutRequest from the IdP ends the session."""
        built = idp.builder.build_logout_request(
            Endpoint(Binding.SOAP, SP_SLO_URL, EndpointPurpose.SLO),
            NameID("alice@example.com"),
        )
        response = client.post("/saml/slo", data=wrap_soap(built.element), content_type="text/xml")

        assert response.status_code == 200
        assert response.headers["Content-Type"].startswith("text/xml")
        assert b"LogoutResponse" in response.data
        assert client.get("/").status_code == 302

    def test_slo_without_message(self, client):
        """Test the SLO endpoint needs a SAML message."""
        assert client.get("/saml/slo").status_code == 400


def test_listener_ssl_context(tmp_path) -> None:
    """Test the HTTPS listener gets a generated certificate and a TLS 1.2 floor."""
    import ssl

    from authflow.app import create_ssl_context
    from authflow.core.crypto.certs import ensure_tls_certificate

    files = ensure_tls_certificate(tmp_path / "server.crt", tmp_path / "server.key")
    context = create_ssl_context(files.cert_path, files.key_path)
    assert context.minimum_version == ssl.TLSVersion.TLSv1_2
