"""SAML 2.0 Identity Provider.

Accepts AuthnRequests from trusted SPs, issues signed (and optionally
encrypted) assertions over HTTP-POST, tracks which SPs each principal has
signed in to, and coordinates single logout across them over the SOAP
back-channel.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import httpx

from authflow.core.audit import AuditEvent, AuditEventType, get_audit_logger
from authflow.core.crypto.service import CryptoService
from authflow.core.errors import (
    AuthFlowError,
    BindingError,
    ErrorKind,
    MetadataError,
    MetadataUnavailableError,
    ValidationCategory,
    ValidationError,
)
from authflow.core.logging import LoggingClient, get_protocol_logger
from authflow.core.protocol import InboundMessage, OutboundMessage
from authflow.core.saml.bindings import (
    RedirectMessage,
    decode_post,
    decode_redirect,
    render_post_form,
    unwrap_soap,
    wrap_soap,
)
from authflow.core.saml.builder import AssertionSpec, MessageBuilder, SigningCredentials
from authflow.core.saml.constants import (
    LOGOUT_REASON_USER,
    NS,
    AuthnContextClass,
    Binding,
    NameIDFormat,
    StatusCode,
)
from authflow.core.saml.messages import AuthnRequest, LogoutRequest, NameID, Status, generate_id, parse_xml, serialize
from authflow.core.saml.metadata import Endpoint, EndpointPurpose, Entity, EntityRole
from authflow.core.saml.replay import ReplayGuard
from authflow.core.saml.sp import deliver
from authflow.core.saml.trust import TrustStore
from authflow.core.saml.validation import MessageValidator, ValidationResult

logger = logging.getLogger(__name__)

SOAP_ACTION = "http://www.oasis-open.org/committees/security"


@dataclass
class Principal:
    """An authenticated user the IdP vouches for."""

    name_id: str
    name_id_format: str = NameIDFormat.UNSPECIFIED
    attributes: dict[str, list[str]] = field(default_factory=dict)
    authn_context: str = AuthnContextClass.PASSWORD_PROTECTED_TRANSPORT


@dataclass
class ParsedAuthnRequest:
    """A trusted AuthnRequest with its resolved ACS URL."""

    request: AuthnRequest
    sp: Entity
    acs_url: str
    relay_state: str | None = None


@dataclass
class IssuedResponse:
    """A Response ready to be posted to an SP."""

    response_id: str
    assertion_id: str
    destination: str
    session_index: str
    form_html: str


@dataclass
class IdPSession:
    """A principal's session at the IdP and the SPs it has signed in to."""

    name_id: str
    session_index: str
    created_at: datetime
    participants: dict[str, NameID] = field(default_factory=dict)


class IdentityProvider:
    """Issues assertions for trusted service providers."""

    def __init__(
        self,
        entity_id: str,
        sso_url: str,
        slo_url: str,
        trust_store: TrustStore,
        crypto: CryptoService,
        replay_guard: ReplayGuard,
        signing: SigningCredentials,
        want_authn_requests_signed: bool = False,
        sign_response: bool = False,
        encrypt_assertions: bool = False,
        assertion_lifetime_seconds: int = 300,
        session_lifetime_seconds: int = 8 * 3600,
        clock_skew_seconds: int = 300,
        max_message_bytes: int = 256 * 1024,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the identity provider.

        Args:
            entity_id: Our entity ID.
            sso_url: Our SingleSignOnService location.
            slo_url: Our SingleLogoutService location.
            trust_store: Trusted SP metadata.
            crypto: Crypto service.
            replay_guard: Consumed message IDs.
            signing: Our signing key and certificate.
            want_authn_requests_signed: Require every AuthnRequest to be signed.
            sign_response: Sign the Response in addition to the assertion.
            encrypt_assertions: Encrypt assertions for the SP.
            assertion_lifetime_seconds: Validity of issued assertions.
            session_lifetime_seconds: SessionNotOnOrAfter of issued assertions.
            clock_skew_seconds: Tolerated clock difference.
            max_message_bytes: Largest accepted message.
            clock: Returns the current time.
        """
        self.entity_id = entity_id
        self.sso_url = sso_url
        self.slo_url = slo_url
        self._trust = trust_store
        self._clock = clock or (lambda: datetime.now(UTC))
        self.builder = MessageBuilder(entity_id, crypto, signing=signing, clock=self._clock)
        self.validator = MessageValidator(
            entity_id=entity_id,
            acs_url=sso_url,
            trust_store=trust_store,
            crypto=crypto,
            replay_guard=replay_guard,
            clock_skew_seconds=clock_skew_seconds,
            max_message_bytes=max_message_bytes,
            clock=self._clock,
        )
        self.want_authn_requests_signed = want_authn_requests_signed
        self.sign_response = sign_response
        self.encrypt_assertions = encrypt_assertions
        self.assertion_lifetime = timedelta(seconds=assertion_lifetime_seconds)
        self.session_lifetime = timedelta(seconds=session_lifetime_seconds)
        self.max_message_bytes = max_message_bytes
        self._sessions: dict[str, IdPSession] = {}
        self._lock = threading.Lock()

    @property
    def trust_store(self) -> TrustStore:
        """Trusted SP metadata."""
        return self._trust

    def decode(self, inbound: InboundMessage) -> tuple[bytes, RedirectMessage | None]:
        """Decode an inbound message from its binding.

        Raises:
            BindingError: If the message cannot be decoded.
        """
        if inbound.binding == Binding.HTTP_REDIRECT:
            redirect = decode_redirect(inbound.data, self.max_message_bytes)
            return redirect.xml, redirect
        return decode_post(inbound.data, self.max_message_bytes), None

    def _sp(self, sp_entity_id: str) -> Entity:
        entity = self._trust.get_entity(sp_entity_id)
        if entity.role != EntityRole.SP:
            raise MetadataError(f"{sp_entity_id} is not a service provider")
        return entity

    def _requires_signature(self, xml: bytes) -> bool:
        if self.want_authn_requests_signed:
            return True
        try:
            issuer = (parse_xml(xml, self.max_message_bytes).findtext("saml:Issuer", namespaces=NS) or "").strip()
            return bool(issuer) and self._trust.get_entity(issuer).want_authn_requests_signed
        except AuthFlowError:
            # The validator reports the underlying problem
            return False

    def parse_authn_request(self, inbound: InboundMessage) -> ValidationResult[ParsedAuthnRequest]:
        """Validate an AuthnRequest and resolve where to send the answer.

        The requested AssertionConsumerServiceURL must be published in the
        SP's metadata; without one, the SP's default HTTP-POST ACS is used.
        """
        try:
            xml, redirect = self.decode(inbound)
        except BindingError as e:
            return ValidationResult.failure(ErrorKind.MALFORMED_MESSAGE, ValidationCategory.SCHEMA, str(e))

        result = self.validator.validate_authn_request(
            xml,
            expected_destination=self.sso_url,
            redirect=redirect,
            require_signature=self._requires_signature(xml),
        )
        relay_state = redirect.relay_state if redirect else inbound.relay_state
        if not result.is_valid:
            return ValidationResult(errors=result.errors, issuer_entity=result.issuer_entity)

        request = result.message
        sp = result.issuer_entity
        assert request is not None and sp is not None
        if request.acs_url:
            if request.acs_url not in sp.endpoint_locations(EndpointPurpose.ACS):
                return ValidationResult(
                    errors=[ValidationError(
                        ErrorKind.AUDIENCE_MISMATCH,
                        ValidationCategory.AUDIENCE,
                        f"ACS URL {request.acs_url} is not registered for {sp.entity_id}",
                    )],
                    issuer_entity=sp,
                )
            acs_url = request.acs_url
        else:
            endpoint = sp.endpoint(EndpointPurpose.ACS, bindings=(Binding.HTTP_POST,))
            if endpoint is None:
                return ValidationResult(
                    errors=[ValidationError(
                        ErrorKind.AUDIENCE_MISMATCH,
                        ValidationCategory.AUDIENCE,
                        f"{sp.entity_id} publishes no HTTP-POST ACS endpoint",
                    )],
                    issuer_entity=sp,
                )
            acs_url = endpoint.location

        parsed = ParsedAuthnRequest(request=request, sp=sp, acs_url=acs_url, relay_state=relay_state)
        return ValidationResult(message=parsed, issuer_entity=sp, relay_state=relay_state)

    def issue_response(
        self,
        principal: Principal,
        sp_entity_id: str,
        in_response_to: str | None = None,
        acs_url: str | None = None,
        relay_state: str | None = None,
    ) -> IssuedResponse:
        """Issue an assertion about a principal to an SP.

        Args:
            principal: The authenticated user.
            sp_entity_id: Relying party.
            in_response_to: ID of the AuthnRequest being answered, if any.
            acs_url: Destination. Defaults to the SP's HTTP-POST ACS.
            relay_state: RelayState to return to the SP.

        Returns:
            The Response packaged as an auto-submitting form.

        Raises:
            MetadataUnavailableError: If the SP's metadata cannot be obtained.
            MetadataError: If the SP is not usable as a relying party.
        """
        sp = self._sp(sp_entity_id)
        if acs_url is None:
            endpoint = sp.endpoint(EndpointPurpose.ACS, bindings=(Binding.HTTP_POST,))
            if endpoint is None:
                raise MetadataError(f"{sp_entity_id} publishes no HTTP-POST ACS endpoint")
            acs_url = endpoint.location

        now = self._clock()
        encrypt_for = None
        if self.encrypt_assertions:
            encrypt_for = sp.encryption_certificate(now)
            if encrypt_for is None:
                raise MetadataError(f"{sp_entity_id} publishes no valid encryption certificate")

        session = self._session_for(principal.name_id, now)
        assertion = self.builder.build_assertion(AssertionSpec(
            name_id=principal.name_id,
            name_id_format=principal.name_id_format,
            audience=sp_entity_id,
            recipient=acs_url,
            in_response_to=in_response_to,
            attributes=principal.attributes,
            session_index=session.session_index,
            authn_context=principal.authn_context,
            authn_instant=session.created_at,
            lifetime=self.assertion_lifetime,
            session_not_on_or_after=session.created_at + self.session_lifetime,
        ))
        built = self.builder.build_response(
            assertion,
            acs_url,
            in_response_to=in_response_to,
            sign_assertion=True,
            sign_response=self.sign_response,
            encrypt_for=encrypt_for,
        )
        with self._lock:
            session.participants[sp_entity_id] = NameID(value=principal.name_id, format=principal.name_id_format)

        get_audit_logger().record(AuditEvent(
            event_type=AuditEventType.ASSERTION_ISSUED,
            outcome="success",
            entity_id=sp_entity_id,
            user_id=principal.name_id,
            message_id=assertion.id,
        ))
        logger.info(f"Issued assertion {assertion.id} for {principal.name_id} to {sp_entity_id}")
        return IssuedResponse(
            response_id=built.message.id,
            assertion_id=assertion.id,
            destination=acs_url,
            session_index=session.session_index,
            form_html=render_post_form(acs_url, "SAMLResponse", built.xml, relay_state),
        )

    def _session_for(self, name_id: str, now: datetime) -> IdPSession:
        with self._lock:
            session = self._sessions.get(name_id)
            if session is None or now >= session.created_at + self.session_lifetime:
                session = IdPSession(name_id=name_id, session_index=generate_id(), created_at=now)
                self._sessions[name_id] = session
            return session

    def session(self, name_id: str) -> IdPSession | None:
        """The principal's IdP session, if any."""
        with self._lock:
            return self._sessions.get(name_id)

    def end_session(self, name_id: str) -> IdPSession | None:
        """Remove and return the principal's IdP session."""
        with self._lock:
            return self._sessions.pop(name_id, None)

    def metadata(self) -> bytes:
        """Our IdP metadata document."""
        endpoints = [
            Endpoint(Binding.HTTP_REDIRECT, self.sso_url, EndpointPurpose.SSO),
            Endpoint(Binding.HTTP_POST, self.sso_url, EndpointPurpose.SSO),
            Endpoint(Binding.HTTP_REDIRECT, self.slo_url, EndpointPurpose.SLO),
            Endpoint(Binding.SOAP, self.slo_url, EndpointPurpose.SLO),
        ]
        element = self.builder.build_metadata(
            role=EntityRole.IDP,
            endpoints=endpoints,
            name_id_formats=[NameIDFormat.PERSISTENT, NameIDFormat.EMAIL, NameIDFormat.UNSPECIFIED],
            want_signed=self.want_authn_requests_signed,
        )
        return serialize(element)


@dataclass
class LogoutOutcome:
    """Result of coordinating a single logout."""

    success: bool
    status: Status | None = None
    response: OutboundMessage | None = None
    failed_participants: list[str] = field(default_factory=list)
    errors: list[ValidationError] = field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        """Whether some participants could not be logged out."""
        return bool(self.failed_participants)


class LogoutCoordinator:
    """Propagates single logout from the IdP to every participating SP."""

    def __init__(
        self,
        idp: IdentityProvider,
        timeout: float = 5.0,
        verify_tls: bool = True,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            idp: The identity provider whose sessions are ended.
            timeout: Back-channel timeout in seconds. A timeout counts as failure.
            verify_tls: Whether to verify TLS certificates.
            transport: Optional httpx transport (used by tests).
        """
        self.idp = idp
        self._timeout = timeout
        self._verify_tls = verify_tls
        self._transport = transport

    def handle_logout_request(self, inbound: InboundMessage) -> LogoutOutcome:
        """Process a LogoutRequest from an SP and log out every other SP.

        The initiator receives Success when every participant confirmed, and
        PartialLogout otherwise.
        """
        try:
            xml, redirect = self.idp.decode(inbound)
        except BindingError as e:
            error = ValidationError(ErrorKind.MALFORMED_MESSAGE, ValidationCategory.SCHEMA, str(e))
            return LogoutOutcome(success=False, errors=[error])

        result = self.idp.validator.validate_logout_request(xml, self.idp.slo_url, redirect)
        if not result.is_valid:
            get_audit_logger().record_failure(
                AuditEventType.LOGOUT_FAILED,
                result.errors,
                entity_id=result.issuer_entity.entity_id if result.issuer_entity else None,
            )
            return LogoutOutcome(success=False, errors=result.errors)

        request = result.message
        assert request is not None
        relay_state = redirect.relay_state if redirect else inbound.relay_state
        session = self.idp.end_session(request.name_id.value)
        failed = []
        if session is not None:
            for sp_entity_id, name_id in session.participants.items():
                if sp_entity_id == request.issuer:
                    continue
                if not self.propagate(sp_entity_id, name_id, session.session_index):
                    failed.append(sp_entity_id)

        if failed:
            status = Status(StatusCode.RESPONDER, StatusCode.PARTIAL_LOGOUT, "Not every session could be ended")
        else:
            status = Status(StatusCode.SUCCESS)
        try:
            response = self._respond(request, status, relay_state)
        except (MetadataError, MetadataUnavailableError) as e:
            logger.warning(f"Cannot answer logout request from {request.issuer}: {e}")
            error = ValidationError(ErrorKind.METADATA_UNAVAILABLE, ValidationCategory.FLOW, str(e))
            get_audit_logger().record_failure(
                AuditEventType.LOGOUT_FAILED,
                [error],
                entity_id=request.issuer,
                user_id=request.name_id.value,
                message_id=request.id,
            )
            return LogoutOutcome(success=False, status=status, failed_participants=failed, errors=[error])

        get_audit_logger().record(AuditEvent(
            event_type=AuditEventType.LOGOUT_SUCCEEDED if not failed else AuditEventType.LOGOUT_FAILED,
            outcome="success" if not failed else "failure",
            entity_id=request.issuer,
            user_id=request.name_id.value,
            message_id=request.id,
            detail=f"partial logout: {', '.join(failed)}" if failed else None,
        ))
        return LogoutOutcome(success=not failed, status=status, response=response, failed_participants=failed)

    def _respond(self, request: LogoutRequest, status: Status, relay_state: str | None) -> OutboundMessage:
        initiator = self.idp.trust_store.get_entity(request.issuer)
        endpoint = initiator.endpoint(EndpointPurpose.SLO)
        if endpoint is None:
            raise MetadataError(f"{request.issuer} publishes no SLO endpoint")
        built = self.idp.builder.build_logout_response(
            endpoint.response_location or endpoint.location,
            request.id,
            status=status,
            sign=endpoint.binding == Binding.HTTP_POST,
            binding=endpoint.binding,
        )
        return deliver(self.idp.builder, built, "SAMLResponse", request.issuer, relay_state, sign_query=True)

    def propagate(self, sp_entity_id: str, name_id: NameID, session_index: str | None) -> bool:
        """Send a LogoutRequest to one SP over SOAP.

        Returns:
            True if the SP confirmed the logout with a valid, successful
            LogoutResponse.
        """
        try:
            sp = self.idp.trust_store.get_entity(sp_entity_id)
        except AuthFlowError as e:
            logger.warning(f"Cannot propagate logout to {sp_entity_id}: {e}")
            return False
        endpoint = sp.endpoint(EndpointPurpose.SLO, bindings=(Binding.SOAP,))
        if endpoint is None:
            logger.warning(f"{sp_entity_id} has no SOAP SLO endpoint")
            return False

        built = self.idp.builder.build_logout_request(
            endpoint,
            name_id,
            session_indexes=[session_index] if session_index else None,
            reason=LOGOUT_REASON_USER,
        )
        protocol_logger = get_protocol_logger()
        try:
            with protocol_logger.flow(f"saml_slo_{built.message.id}", "saml_backchannel_logout"), LoggingClient(
                protocol_logger=protocol_logger,
                timeout=self._timeout,
                verify=self._verify_tls,
                transport=self._transport,
            ) as client:
                response = client.post(
                    endpoint.location,
                    content=wrap_soap(built.element),
                    headers={"Content-Type": "text/xml; charset=utf-8", "SOAPAction": SOAP_ACTION},
                )
        except httpx.TimeoutException:
            logger.warning(f"Logout propagation to {sp_entity_id} timed out")
            return False
        except httpx.HTTPError as e:
            logger.warning(f"Logout propagation to {sp_entity_id} failed: {e}")
            return False

        if response.status_code != 200:
            logger.warning(f"{sp_entity_id} answered logout with HTTP {response.status_code}")
            return False
        try:
            answer = unwrap_soap(response.content, self.idp.max_message_bytes)
        except AuthFlowError as e:
            logger.warning(f"Invalid SOAP answer from {sp_entity_id}: {e}")
            return False

        result = self.idp.validator.validate_logout_response(serialize(answer))
        if not result.is_valid:
            return False
        logout_response = result.message
        assert logout_response is not None
        if logout_response.issuer != sp_entity_id or logout_response.in_response_to != built.message.id:
            logger.warning(f"LogoutResponse from {sp_entity_id} does not answer {built.message.id}")
            return False
        return logout_response.status.is_success
