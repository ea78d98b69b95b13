"""SAML endpoints: login, ACS, single logout and metadata."""

from __future__ import annotations

import hmac
import logging
from typing import TYPE_CHECKING

from flask import Blueprint, Response, current_app, redirect, request

from authflow.core.errors import GENERIC_FAILURE_MESSAGE, AuthFlowError, ErrorKind
from authflow.core.flows import LogoutConfirmation
from authflow.core.protocol import InboundMessage
from authflow.web.routes import get_orchestrator, send_message, session_cookie

if TYPE_CHECKING:
    from werkzeug.wrappers import Response as WerkzeugResponse

logger = logging.getLogger(__name__)

saml_bp = Blueprint(
    "saml",
    __name__,
    url_prefix="/saml",
)

SOAP_CONTENT_TYPES = ("text/xml", "application/soap+xml")

# Failures caused by an unreadable message rather than a rejected one
_BAD_REQUEST_KINDS = (ErrorKind.MALFORMED_MESSAGE,)


def _set_session_cookie(response: WerkzeugResponse, session_id: str) -> None:
    response.set_cookie(
        current_app.config["AUTHFLOW_COOKIE_NAME"],
        session_id,
        httponly=True,
        secure=current_app.config["AUTHFLOW_COOKIE_SECURE"],
        samesite="Lax",
        path="/",
    )


def _clear_session_cookie(response: WerkzeugResponse) -> None:
    response.delete_cookie(current_app.config["AUTHFLOW_COOKIE_NAME"], path="/")


def _failure(kind: ErrorKind | None) -> tuple[str, int]:
    return GENERIC_FAILURE_MESSAGE, 400 if kind in _BAD_REQUEST_KINDS else 403


@saml_bp.route("/login")
def login() -> WerkzeugResponse | tuple[str, int]:
    """Start SP-initiated login.

    Query parameters:
        next: Local path to return to after login.
        idp: Entity ID of the IdP to use instead of the configured one.
        force_authn: Ask the IdP to re-authenticate the user.
    """
    try:
        result = get_orchestrator().initiate_login(
            resource_url=request.args.get("next"),
            idp_entity_id=request.args.get("idp"),
            force_authn=request.args.get("force_authn", "").lower() in ("1", "true", "yes"),
        )
    except AuthFlowError as e:
        logger.error(f"Cannot start login: {e}")
        return GENERIC_FAILURE_MESSAGE, 503
    return send_message(result.message)


@saml_bp.route("/acs", methods=["POST"])
def acs() -> WerkzeugResponse | tuple[str, int]:
    """Assertion Consumer Service: handles the IdP's Response."""
    saml_response = request.form.get("SAMLResponse")
    if not saml_response:
        return GENERIC_FAILURE_MESSAGE, 400

    result = get_orchestrator().handle_provider_callback(
        InboundMessage.post(saml_response, request.form.get("RelayState")),
        ip=request.remote_addr,
        user_agent=request.headers.get("User-Agent"),
    )
    if not result.success or not result.session_id:
        return _failure(result.error_kind)

    response = redirect(result.return_to or "/")
    _set_session_cookie(response, result.session_id)
    return response


@saml_bp.route("/slo", methods=["GET", "POST"])
def slo() -> WerkzeugResponse | tuple[str, int]:
    """Single Logout Service.

    Accepts IdP-initiated LogoutRequests over HTTP-Redirect, HTTP-POST and
    SOAP, and LogoutResponses answering our own requests.
    """
    orchestrator = get_orchestrator()

    if request.method == "POST" and request.mimetype in SOAP_CONTENT_TYPES:
        outcome = orchestrator.handle_logout_request(InboundMessage.soap(request.get_data()))
        if outcome.response is None or outcome.response.body is None:
            return _failure(outcome.error_kind)
        return Response(outcome.response.body, status=200, content_type="text/xml; charset=utf-8")

    params = request.args if request.method == "GET" else request.form
    if request.method == "GET":
        # The redirect signature covers the raw query string
        inbound = InboundMessage.redirect(request.query_string.decode("utf-8"))
    elif "SAMLRequest" in params:
        inbound = InboundMessage.post(params["SAMLRequest"], params.get("RelayState"))
    else:
        inbound = InboundMessage.post(params.get("SAMLResponse", ""), params.get("RelayState"))

    if "SAMLRequest" in params:
        outcome = orchestrator.handle_logout_request(inbound)
        if outcome.response is None:
            return _failure(outcome.error_kind)
        response = send_message(outcome.response)
        _clear_session_cookie(response)
        return response

    if "SAMLResponse" not in params:
        return GENERIC_FAILURE_MESSAGE, 400

    outcome = orchestrator.handle_logout_response(inbound)
    if outcome.error_kind is not None:
        return _failure(outcome.error_kind)
    response = redirect(outcome.return_to or "/")
    if outcome.success:
        _clear_session_cookie(response)
    return response


@saml_bp.route("/logout", methods=["POST"])
def logout() -> WerkzeugResponse | tuple[str, int]:
    """Start SP-initiated single logout for the current session.

    The form must carry the session's ``csrf_token``.
    """
    orchestrator = get_orchestrator()
    session_id = session_cookie()
    session = orchestrator.sessions.peek(session_id) if session_id else None
    if session is not None:
        submitted = request.form.get("csrf_token", "")
        if not hmac.compare_digest(submitted, session.csrf_token):
            logger.warning("Logout rejected: CSRF token mismatch")
            return GENERIC_FAILURE_MESSAGE, 403

    outcome = orchestrator.initiate_logout(session_id or "", return_to=request.form.get("next"))
    if isinstance(outcome, LogoutConfirmation):
        response = redirect(outcome.return_to or "/")
        _clear_session_cookie(response)
        return response
    return send_message(outcome.message)


@saml_bp.route("/metadata")
def metadata() -> Response:
    """Serve our SP metadata."""
    response: Response = current_app.make_response(get_orchestrator().get_metadata())
    response.headers["Content-Type"] = "application/xml"
    return response
