"""SAML 2.0 Service Provider.

Implements :class:`~authflow.core.protocol.AuthenticationProtocol` on top of
the message builder, the transport bindings and the validator.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import rsa

from authflow.core.config import SPSettings
from authflow.core.crypto.service import CryptoService
from authflow.core.errors import BindingError, ConfigurationError, ErrorKind, MetadataError, ValidationCategory
from authflow.core.protocol import AuthenticationProtocol, InboundMessage, OutboundMessage
from authflow.core.saml.bindings import (
    RedirectMessage,
    build_redirect_url,
    decode_post,
    decode_redirect,
    render_post_form,
    unwrap_soap,
    wrap_soap,
)
from authflow.core.saml.builder import BuiltMessage, MessageBuilder, SigningCredentials
from authflow.core.saml.constants import LOGOUT_REASON_USER, Binding, StatusCode
from authflow.core.saml.messages import LogoutRequest, LogoutResponse, NameID, SAMLResponse, Status, serialize
from authflow.core.saml.metadata import Endpoint, EndpointPurpose, Entity, EntityRole
from authflow.core.saml.replay import ReplayGuard
from authflow.core.saml.trust import TrustStore
from authflow.core.saml.validation import MessageValidator, ValidationResult
from authflow.core.sessions import Session

logger = logging.getLogger(__name__)


def deliver(
    builder: MessageBuilder,
    built: BuiltMessage,
    parameter: str,
    entity_id: str,
    relay_state: str | None,
    sign_query: bool,
) -> OutboundMessage:
    """Package a built message for its binding.

    HTTP-POST messages become an auto-submitting form. HTTP-Redirect messages
    become a URL, with a query-string signature when ``sign_query`` is set.

    Raises:
        ConfigurationError: If a signature is required but the builder has no key.
    """
    message_id = built.element.get("ID", "")
    destination = built.destination or ""
    if built.binding == Binding.HTTP_POST:
        return OutboundMessage(
            message_id=message_id,
            binding=Binding.HTTP_POST,
            url=destination,
            entity_id=entity_id,
            form_html=render_post_form(destination, parameter, built.xml, relay_state),
        )

    signing_key = None
    if sign_query:
        if builder.signing is None:
            raise ConfigurationError("Signing requested but no signing key is configured")
        signing_key = builder.signing.key
    url = build_redirect_url(destination, parameter, built.xml, relay_state, signing_key, builder.crypto)
    return OutboundMessage(message_id=message_id, binding=Binding.HTTP_REDIRECT, url=url, entity_id=entity_id)


class SAMLServiceProvider(AuthenticationProtocol):
    """The SAML SP side of web browser SSO and single logout."""

    name = "saml"

    def __init__(
        self,
        settings: SPSettings,
        trust_store: TrustStore,
        crypto: CryptoService,
        replay_guard: ReplayGuard,
        signing: SigningCredentials | None = None,
        encryption_key: rsa.RSAPrivateKey | None = None,
        encryption_certificate: x509.Certificate | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the service provider.

        Args:
            settings: SP configuration.
            trust_store: Trusted IdP metadata.
            crypto: Crypto service.
            replay_guard: Consumed message IDs.
            signing: Our signing key and certificate.
            encryption_key: Key for decrypting assertions. Defaults to the
                signing key.
            encryption_certificate: Certificate published for encryption.
            clock: Returns the current time.
        """
        self.settings = settings
        self._trust = trust_store
        self._clock = clock or (lambda: datetime.now(UTC))
        self.builder = MessageBuilder(settings.entity_id, crypto, signing=signing, clock=self._clock)
        self._encryption_certificate = encryption_certificate
        decryption_key = encryption_key or (signing.key if signing else None)
        self.validator = MessageValidator.from_settings(
            settings, trust_store, crypto, replay_guard, decryption_key=decryption_key, clock=self._clock
        )

    @property
    def entity_id(self) -> str:
        """Our entity ID."""
        return self.settings.entity_id

    def _idp(self, idp_entity_id: str | None) -> Entity:
        entity_id = idp_entity_id or self.settings.idp_entity_id
        if not entity_id:
            raise ConfigurationError("No identity provider configured")
        entity = self._trust.get_entity(entity_id)
        if entity.role != EntityRole.IDP:
            raise MetadataError(f"{entity_id} is not an identity provider")
        return entity

    def _decode(self, inbound: InboundMessage) -> tuple[bytes, RedirectMessage | None]:
        limit = self.settings.max_message_bytes
        if inbound.binding == Binding.HTTP_REDIRECT:
            redirect = decode_redirect(inbound.data, limit)
            return redirect.xml, redirect
        if inbound.binding == Binding.SOAP:
            return serialize(unwrap_soap(inbound.data.encode("utf-8"), limit)), None
        return decode_post(inbound.data, limit), None

    @staticmethod
    def _binding_failure(e: BindingError) -> ValidationResult:
        logger.warning(f"Could not decode inbound message: {e}")
        return ValidationResult.failure(ErrorKind.MALFORMED_MESSAGE, ValidationCategory.SCHEMA, str(e))

    def build_request(
        self,
        relay_state: str | None = None,
        idp_entity_id: str | None = None,
        force_authn: bool = False,
        is_passive: bool = False,
    ) -> OutboundMessage:
        """Build an AuthnRequest for the IdP's SSO endpoint.

        Raises:
            MetadataUnavailableError: If the IdP's metadata cannot be obtained.
            MetadataError: If the IdP publishes no usable SSO endpoint.
        """
        idp = self._idp(idp_entity_id)
        endpoint = idp.endpoint(EndpointPurpose.SSO)
        if endpoint is None:
            raise MetadataError(f"{idp.entity_id} publishes no SSO endpoint")
        built = self.builder.build_authn_request(
            self.settings, endpoint, force_authn=force_authn, is_passive=is_passive
        )
        sign_query = self.settings.sign_authn_requests or idp.want_authn_requests_signed
        logger.info(f"AuthnRequest {built.message.id} for {idp.entity_id} via {endpoint.binding}")
        return deliver(self.builder, built, "SAMLRequest", idp.entity_id, relay_state, sign_query)

    def validate_response(self, inbound: InboundMessage) -> ValidationResult[SAMLResponse]:
        """Decode and validate a Response posted to our ACS."""
        try:
            xml, redirect = self._decode(inbound)
        except BindingError as e:
            return self._binding_failure(e)
        result = self.validator.validate_response(xml, expected_destination=self.settings.acs_url)
        result.relay_state = inbound.relay_state if redirect is None else redirect.relay_state
        return result

    def build_logout(self, session: Session, relay_state: str | None = None) -> OutboundMessage | None:
        """Build a LogoutRequest for the IdP that authenticated a session.

        Returns:
            The message, or None when the IdP publishes no SLO endpoint.
        """
        if not session.idp_entity_id:
            return None
        idp = self._idp(session.idp_entity_id)
        endpoint = idp.endpoint(EndpointPurpose.SLO)
        if endpoint is None:
            logger.info(f"{idp.entity_id} has no SLO endpoint; logging out locally")
            return None
        built = self.builder.build_logout_request(
            endpoint,
            NameID(value=session.user_id, format=session.name_id_format),
            session_indexes=[session.idp_session_index] if session.idp_session_index else None,
            reason=LOGOUT_REASON_USER,
            sign=endpoint.binding == Binding.HTTP_POST,
        )
        return deliver(self.builder, built, "SAMLRequest", idp.entity_id, relay_state, sign_query=True)

    def validate_logout_response(self, inbound: InboundMessage) -> ValidationResult[LogoutResponse]:
        """Decode and validate a LogoutResponse sent to our SLO endpoint."""
        try:
            xml, redirect = self._decode(inbound)
        except BindingError as e:
            return self._binding_failure(e)
        result = self.validator.validate_logout_response(xml, self.settings.slo_url, redirect)
        result.relay_state = inbound.relay_state if redirect is None else redirect.relay_state
        return result

    def validate_logout_request(self, inbound: InboundMessage) -> ValidationResult[LogoutRequest]:
        """Decode and validate an IdP-initiated LogoutRequest."""
        try:
            xml, redirect = self._decode(inbound)
        except BindingError as e:
            return self._binding_failure(e)
        result = self.validator.validate_logout_request(xml, self.settings.slo_url, redirect)
        if result.is_valid and result.issuer_entity and result.issuer_entity.role != EntityRole.IDP:
            return ValidationResult.failure(
                ErrorKind.UNTRUSTED_ISSUER,
                ValidationCategory.SIGNATURE,
                f"{result.issuer_entity.entity_id} is not an identity provider",
            )
        result.relay_state = inbound.relay_state if redirect is None else redirect.relay_state
        return result

    def build_logout_response(
        self,
        request: LogoutRequest,
        relay_state: str | None = None,
        success: bool = True,
        binding: str | None = None,
    ) -> OutboundMessage:
        """Answer a LogoutRequest at the issuer's SLO endpoint.

        A request received over SOAP is answered in a signed SOAP envelope.

        Raises:
            MetadataError: If the issuer publishes no SLO endpoint.
        """
        idp = self._idp(request.issuer)
        status = Status(StatusCode.SUCCESS) if success else Status(
            StatusCode.RESPONDER, StatusCode.PARTIAL_LOGOUT, "Not every session could be ended"
        )
        if binding == Binding.SOAP:
            built = self.builder.build_logout_response(None, request.id, status=status, binding=Binding.SOAP)
            return OutboundMessage(
                message_id=built.message.id,
                binding=Binding.SOAP,
                url="",
                entity_id=idp.entity_id,
                body=wrap_soap(built.element),
            )
        endpoint: Endpoint | None = idp.endpoint(EndpointPurpose.SLO)
        if endpoint is None:
            raise MetadataError(f"{idp.entity_id} publishes no SLO endpoint")
        built = self.builder.build_logout_response(
            endpoint.response_location or endpoint.location,
            request.id,
            status=status,
            sign=endpoint.binding == Binding.HTTP_POST,
            binding=endpoint.binding,
        )
        return deliver(self.builder, built, "SAMLResponse", idp.entity_id, relay_state, sign_query=True)

    def metadata(self) -> bytes:
        """Our SP metadata document."""
        endpoints = [
            Endpoint(Binding.HTTP_POST, self.settings.acs_url, EndpointPurpose.ACS, index=0, is_default=True),
            Endpoint(Binding.HTTP_REDIRECT, self.settings.slo_url, EndpointPurpose.SLO),
            Endpoint(Binding.HTTP_POST, self.settings.slo_url, EndpointPurpose.SLO),
            Endpoint(Binding.SOAP, self.settings.slo_url, EndpointPurpose.SLO),
        ]
        element = self.builder.build_metadata(
            role=EntityRole.SP,
            endpoints=endpoints,
            encryption_certificate=self._encryption_certificate,
            name_id_formats=[self.settings.name_id_format],
            want_signed=self.settings.want_assertions_signed,
            authn_requests_signed=self.settings.sign_authn_requests,
        )
        return serialize(element)
