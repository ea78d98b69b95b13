"""Web routes for AuthFlow."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from flask import Blueprint, Flask, current_app, redirect, request

from authflow.core.errors import GENERIC_FAILURE_MESSAGE, AuthFlowError
from authflow.core.flows import FlowOrchestrator
from authflow.core.protocol import OutboundMessage

if TYPE_CHECKING:
    from werkzeug.wrappers import Response as WerkzeugResponse

main_bp = Blueprint("main", __name__)


def get_orchestrator() -> FlowOrchestrator:
    """The orchestrator attached to the current app."""
    return current_app.extensions["authflow"]


def session_cookie() -> str | None:
    """The session ID presented by the client."""
    return request.cookies.get(current_app.config["AUTHFLOW_COOKIE_NAME"])


def send_message(message: OutboundMessage) -> WerkzeugResponse:
    """Deliver an outbound message as a redirect or an auto-submitting form."""
    if message.form_html is not None:
        return current_app.make_response(message.form_html)
    return redirect(message.url)


@main_bp.route("/")
def index() -> WerkzeugResponse | tuple[Any, int] | dict[str, Any]:
    """Protected landing page: the current session, or a login redirect."""
    try:
        check = get_orchestrator().require_session(
            session_cookie(),
            resource_url=request.full_path.rstrip("?"),
            ip=request.remote_addr,
            user_agent=request.headers.get("User-Agent"),
        )
    except AuthFlowError:
        return GENERIC_FAILURE_MESSAGE, 503

    if check.login is not None:
        return send_message(check.login.message)

    session = check.session
    assert session is not None
    return {
        "user_id": session.user_id,
        "idp_entity_id": session.idp_entity_id,
        "attributes": session.attributes,
        "expires_at": session.expires_at.isoformat(),
        "csrf_token": session.csrf_token,
    }


@main_bp.route("/health")
def health() -> dict[str, str]:
    """Health check endpoint (unauthenticated)."""
    return {"status": "healthy"}


def init_app(app: Flask) -> None:
    """Register blueprints with the Flask app."""
    from authflow.web.routes.saml import saml_bp

    app.register_blueprint(main_bp)
    app.register_blueprint(saml_bp)
