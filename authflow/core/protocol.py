"""Authentication protocol abstraction.

The flow orchestrator talks to identity providers only through this
interface. SAML is the one implementation; other federation protocols would
plug in here.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from authflow.core.saml.validation import ValidationResult
    from authflow.core.sessions import Session


class Binding(StrEnum):
    """Transport mappings for protocol messages, named by their SAML URNs."""

    HTTP_REDIRECT = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-Redirect"
    HTTP_POST = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-POST"
    HTTP_ARTIFACT = "urn:oasis:names:tc:SAML:2.0:bindings:HTTP-Artifact"
    SOAP = "urn:oasis:names:tc:SAML:2.0:bindings:SOAP"


@dataclass
class InboundMessage:
    """A protocol message as it arrived from the user agent or a peer."""

    binding: str
    data: str
    relay_state: str | None = None

    @classmethod
    def post(cls, value: str, relay_state: str | None = None) -> InboundMessage:
        """A message posted as a base64 form field."""
        return cls(binding=Binding.HTTP_POST, data=value, relay_state=relay_state)

    @classmethod
    def redirect(cls, query_string: str) -> InboundMessage:
        """A message carried in a raw (still URL-encoded) query string."""
        return cls(binding=Binding.HTTP_REDIRECT, data=query_string)

    @classmethod
    def soap(cls, body: bytes | str) -> InboundMessage:
        """A message in a SOAP envelope received on the back-channel."""
        data = body.decode("utf-8") if isinstance(body, bytes) else body
        return cls(binding=Binding.SOAP, data=data)


@dataclass
class OutboundMessage:
    """A protocol message ready to hand to the user agent.

    Redirect messages carry the full ``url``; POST messages carry the
    auto-submitting ``form_html`` whose action is ``url``. SOAP answers carry
    the envelope in ``body``, returned synchronously to the caller.
    """

    message_id: str
    binding: str
    url: str
    entity_id: str
    form_html: str | None = None
    body: bytes | None = None

    @property
    def is_redirect(self) -> bool:
        """Whether the message is delivered with an HTTP redirect."""
        return self.binding == Binding.HTTP_REDIRECT


class AuthenticationProtocol(ABC):
    """Capability set a federation protocol offers to the flow orchestrator."""

    name: str = "abstract"

    @abstractmethod
    def build_request(
        self,
        relay_state: str | None = None,
        idp_entity_id: str | None = None,
        force_authn: bool = False,
        is_passive: bool = False,
    ) -> OutboundMessage:
        """Build an authentication request for an identity provider."""

    @abstractmethod
    def validate_response(self, inbound: InboundMessage) -> ValidationResult[Any]:
        """Validate an authentication response."""

    @abstractmethod
    def build_logout(self, session: Session, relay_state: str | None = None) -> OutboundMessage | None:
        """Build a logout request for a session's IdP.

        Returns:
            The message, or None when the IdP offers no logout endpoint.
        """

    @abstractmethod
    def validate_logout_response(self, inbound: InboundMessage) -> ValidationResult[Any]:
        """Validate the IdP's answer to our logout request."""

    @abstractmethod
    def validate_logout_request(self, inbound: InboundMessage) -> ValidationResult[Any]:
        """Validate an IdP-initiated logout request."""

    @abstractmethod
    def build_logout_response(
        self,
        request: Any,
        relay_state: str | None = None,
        success: bool = True,
        binding: str | None = None,
    ) -> OutboundMessage:
        """Answer a logout request, over ``binding`` when given."""

    @abstractmethod
    def metadata(self) -> bytes:
        """Our own metadata document."""
