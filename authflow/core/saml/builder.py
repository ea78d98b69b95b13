"""Construction of outgoing SAML messages."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Generic, TypeVar

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import rsa
from lxml import etree

from authflow.core.config import SPSettings
from authflow.core.crypto.service import CryptoService
from authflow.core.errors import ConfigurationError
from authflow.core.logging import get_protocol_logger
from authflow.core.saml.constants import (
    SAML_NS,
    AuthnContextClass,
    Binding,
    StatusCode,
)
from authflow.core.saml.messages import (
    Assertion,
    AttributeValue,
    AuthnRequest,
    AuthnStatement,
    Conditions,
    LogoutRequest,
    LogoutResponse,
    NameID,
    SAMLResponse,
    Status,
    Subject,
    SubjectConfirmation,
    generate_id,
    serialize,
)
from authflow.core.saml.metadata import Endpoint, EntityRole, build_metadata

logger = logging.getLogger(__name__)

M = TypeVar("M")

DEFAULT_ASSERTION_LIFETIME = timedelta(minutes=5)


@dataclass(frozen=True)
class SigningCredentials:
    """A private key with its certificate."""

    key: rsa.RSAPrivateKey
    certificate: x509.Certificate


@dataclass
class BuiltMessage(Generic[M]):
    """An outgoing message with its XML element."""

    message: M
    element: etree._Element
    destination: str | None = None
    binding: str | None = None
    signed: bool = False

    @property
    def xml(self) -> bytes:
        """Serialized message."""
        return serialize(self.element)


@dataclass
class AssertionSpec:
    """Inputs for a new assertion."""

    name_id: str
    audience: str
    recipient: str
    name_id_format: str | None = None
    in_response_to: str | None = None
    attributes: dict[str, list[str]] = field(default_factory=dict)
    session_index: str | None = None
    authn_context: str = AuthnContextClass.PASSWORD_PROTECTED_TRANSPORT
    authn_instant: datetime | None = None
    lifetime: timedelta = DEFAULT_ASSERTION_LIFETIME
    session_not_on_or_after: datetime | None = None


class MessageBuilder:
    """Builds and optionally signs or encrypts SAML messages for one entity."""

    def __init__(
        self,
        entity_id: str,
        crypto: CryptoService,
        signing: SigningCredentials | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the builder.

        Args:
            entity_id: Our entity ID, used as Issuer.
            crypto: Signing and encryption service.
            signing: Our signing key and certificate.
            clock: Returns the current time.
        """
        self.entity_id = entity_id
        self._crypto = crypto
        self._signing = signing
        self._clock = clock or (lambda: datetime.now(UTC))

    @property
    def can_sign(self) -> bool:
        """Whether signing credentials are configured."""
        return self._signing is not None

    @property
    def signing(self) -> SigningCredentials | None:
        """Configured signing credentials."""
        return self._signing

    @property
    def crypto(self) -> CryptoService:
        """Crypto service used for signing and encryption."""
        return self._crypto

    def _sign(self, element: etree._Element) -> etree._Element:
        if self._signing is None:
            raise ConfigurationError("Signing requested but no signing key is configured")
        return self._crypto.sign(element, self._signing.key, self._signing.certificate)

    def _finish(
        self,
        message: M,
        element: etree._Element,
        destination: str | None,
        binding: str | None,
        sign: bool,
    ) -> BuiltMessage[M]:
        if sign:
            element = self._sign(element)
        built = BuiltMessage(message=message, element=element, destination=destination, binding=binding, signed=sign)
        get_protocol_logger().log_message(
            "sent", etree.QName(element).localname, element.get("ID", ""), built.xml.decode("utf-8")
        )
        return built

    def build_authn_request(
        self,
        sp_config: SPSettings,
        idp_sso_endpoint: Endpoint,
        force_authn: bool = False,
        is_passive: bool = False,
        requested_authn_context: list[str] | None = None,
    ) -> BuiltMessage[AuthnRequest]:
        """Build an AuthnRequest for an IdP's SSO endpoint.

        Requests sent over HTTP-POST carry an enveloped signature when
        ``sign_authn_requests`` is set; HTTP-Redirect requests are signed on
        the query string instead.
        """
        request = AuthnRequest(
            id=generate_id(),
            issue_instant=self._clock(),
            issuer=self.entity_id,
            destination=idp_sso_endpoint.location,
            acs_url=sp_config.acs_url,
            protocol_binding=Binding.HTTP_POST,
            name_id_format=sp_config.name_id_format,
            force_authn=force_authn,
            is_passive=is_passive,
            requested_authn_context=requested_authn_context or [],
        )
        sign = sp_config.sign_authn_requests and idp_sso_endpoint.binding == Binding.HTTP_POST
        return self._finish(request, request.to_element(), request.destination, idp_sso_endpoint.binding, sign)

    def build_assertion(self, details: AssertionSpec) -> Assertion:
        """Build an assertion about a principal for a relying party."""
        now = self._clock()
        expires = now + details.lifetime
        return Assertion(
            id=generate_id(),
            issue_instant=now,
            issuer=self.entity_id,
            subject=Subject(
                name_id=NameID(value=details.name_id, format=details.name_id_format),
                confirmations=[
                    SubjectConfirmation(
                        not_on_or_after=expires,
                        recipient=details.recipient,
                        in_response_to=details.in_response_to,
                    )
                ],
            ),
            conditions=Conditions(not_before=now, not_on_or_after=expires, audiences=[details.audience]),
            authn_statement=AuthnStatement(
                authn_instant=details.authn_instant or now,
                context_class_ref=details.authn_context,
                session_index=details.session_index,
                session_not_on_or_after=details.session_not_on_or_after,
            ),
            attributes={
                name: [AttributeValue(value) for value in values]
                for name, values in details.attributes.items()
            },
        )

    def build_response(
        self,
        assertion: Assertion,
        destination: str,
        in_response_to: str | None = None,
        sign_assertion: bool = True,
        sign_response: bool = False,
        encrypt_for: x509.Certificate | None = None,
    ) -> BuiltMessage[SAMLResponse]:
        """Wrap an assertion in a Response.

        The assertion is signed before it is encrypted.

        Args:
            assertion: Assertion to deliver.
            destination: Recipient's ACS URL.
            in_response_to: ID of the AuthnRequest being answered.
            sign_assertion: Sign the assertion.
            sign_response: Sign the Response.
            encrypt_for: Encrypt the assertion for this certificate.
        """
        assertion_elem = assertion.to_element()
        if sign_assertion:
            assertion_elem = self._sign(assertion_elem)
            assertion.signed = True
        if encrypt_for is not None:
            wrapper = etree.Element(f"{{{SAML_NS}}}EncryptedAssertion", nsmap={"saml": SAML_NS})
            wrapper.append(self._crypto.encrypt(assertion_elem, encrypt_for))
            assertion_elem = wrapper

        response = SAMLResponse(
            id=generate_id(),
            issue_instant=self._clock(),
            issuer=self.entity_id,
            destination=destination,
            in_response_to=in_response_to,
            assertions=[assertion],
        )
        element = response.to_element(assertion_elements=[assertion_elem])
        return self._finish(response, element, destination, Binding.HTTP_POST, sign_response)

    def build_error_response(
        self,
        destination: str,
        in_response_to: str | None,
        status: Status,
        sign: bool = False,
    ) -> BuiltMessage[SAMLResponse]:
        """Build a Response without assertions, carrying a failure status."""
        response = SAMLResponse(
            id=generate_id(),
            issue_instant=self._clock(),
            issuer=self.entity_id,
            status=status,
            destination=destination,
            in_response_to=in_response_to,
        )
        return self._finish(response, response.to_element(), destination, Binding.HTTP_POST, sign)

    def build_logout_request(
        self,
        endpoint: Endpoint,
        name_id: NameID,
        session_indexes: list[str] | None = None,
        reason: str | None = None,
        sign: bool = True,
        lifetime: timedelta = DEFAULT_ASSERTION_LIFETIME,
    ) -> BuiltMessage[LogoutRequest]:
        """Build a LogoutRequest for a peer's SLO endpoint.

        ``sign`` applies an enveloped signature; pass False for the
        HTTP-Redirect binding, which is signed on the query string.
        """
        now = self._clock()
        request = LogoutRequest(
            id=generate_id(),
            issue_instant=now,
            issuer=self.entity_id,
            name_id=name_id,
            destination=endpoint.location,
            session_indexes=list(session_indexes or []),
            reason=reason,
            not_on_or_after=now + lifetime,
        )
        return self._finish(request, request.to_element(), endpoint.location, endpoint.binding, sign)

    def build_logout_response(
        self,
        destination: str | None,
        in_response_to: str | None,
        status: Status | None = None,
        sign: bool = True,
        binding: str | None = None,
    ) -> BuiltMessage[LogoutResponse]:
        """Build a LogoutResponse."""
        response = LogoutResponse(
            id=generate_id(),
            issue_instant=self._clock(),
            issuer=self.entity_id,
            status=status or Status(StatusCode.SUCCESS),
            destination=destination,
            in_response_to=in_response_to,
        )
        return self._finish(response, response.to_element(), destination, binding, sign)

    def build_metadata(
        self,
        role: EntityRole,
        endpoints: list[Endpoint],
        encryption_certificate: x509.Certificate | None = None,
        name_id_formats: list[str] | None = None,
        want_signed: bool = True,
        authn_requests_signed: bool = True,
        valid_until: datetime | None = None,
        sign: bool = False,
    ) -> etree._Element:
        """Build our own metadata document.

        Args:
            role: Our role (SP or IdP).
            endpoints: Endpoints to publish.
            encryption_certificate: Certificate peers should encrypt to.
            name_id_formats: Supported NameID formats.
            want_signed: WantAssertionsSigned (SP) or WantAuthnRequestsSigned (IdP).
            authn_requests_signed: AuthnRequestsSigned (SP only).
            valid_until: Optional validUntil.
            sign: Sign the document with our signing key.

        Returns:
            The EntityDescriptor element.
        """
        element = build_metadata(
            entity_id=self.entity_id,
            role=role,
            endpoints=endpoints,
            signing_certificates=[self._signing.certificate] if self._signing else [],
            encryption_certificates=[encryption_certificate] if encryption_certificate else [],
            name_id_formats=name_id_formats,
            want_signed=want_signed,
            authn_requests_signed=authn_requests_signed,
            valid_until=valid_until,
            element_id=generate_id() if sign else None,
        )
        return self._sign(element) if sign else element
