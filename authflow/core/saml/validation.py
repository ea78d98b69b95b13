"""Validation of incoming SAML messages.

Checks run in a fixed order of categories: schema, signature, timestamp,
audience, replay and subject. The first category that reports errors stops
validation; every error within that category is reported. Exceptions raised
by lower layers are turned into ``ValidationError`` records here and never
escape to the caller.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any, Generic, TypeVar

from cryptography.hazmat.primitives.asymmetric import rsa
from lxml import etree

from authflow.core.config import SPSettings
from authflow.core.crypto.service import REDIRECT_SIG_ALG, CryptoService
from authflow.core.errors import (
    AuthFlowError,
    CryptoError,
    ErrorKind,
    MessageError,
    MetadataUnavailableError,
    ValidationCategory,
    ValidationError,
)
from authflow.core.logging import get_protocol_logger
from authflow.core.saml.bindings import RedirectMessage
from authflow.core.saml.constants import DS_NS, NS, SAML_NS, SAML_VERSION, SAMLP_NS, get_status_description
from authflow.core.saml.messages import (
    Assertion,
    AuthnRequest,
    LogoutRequest,
    LogoutResponse,
    SAMLResponse,
    Status,
    parse_instant,
    parse_xml,
)
from authflow.core.saml.metadata import Entity, EntityRole
from authflow.core.saml.replay import ReplayGuard
from authflow.core.saml.trust import TrustStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

Cat = ValidationCategory


@dataclass
class ValidationResult(Generic[T]):
    """Outcome of validating one message.

    Holds either the parsed, trusted message or the errors of the first
    failing category.
    """

    message: T | None = None
    errors: list[ValidationError] = field(default_factory=list)
    issuer_entity: Entity | None = None
    relay_state: str | None = None

    @property
    def is_valid(self) -> bool:
        """Whether validation succeeded."""
        return self.message is not None and not self.errors

    @property
    def kind(self) -> ErrorKind | None:
        """Kind of the first error, if any."""
        return self.errors[0].kind if self.errors else None

    @property
    def category(self) -> ValidationCategory | None:
        """Category that failed, if any."""
        return self.errors[0].category if self.errors else None

    @classmethod
    def failure(cls, kind: ErrorKind, category: ValidationCategory, message: str) -> ValidationResult[Any]:
        """Build a result holding a single error."""
        return cls(errors=[ValidationError(kind, category, message)])

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "is_valid": self.is_valid,
            "errors": [e.to_dict() for e in self.errors],
            "issuer": self.issuer_entity.entity_id if self.issuer_entity else None,
        }


@dataclass
class _Context:
    """State carried between validation stages."""

    raw: bytes
    expected_destination: str | None
    redirect: RedirectMessage | None = None
    root: etree._Element | None = None
    issuer: str = ""
    entity: Entity | None = None
    assertion_elements: list[etree._Element] = field(default_factory=list)
    message: Any = None


class MessageValidator:
    """Validates Responses, logout messages and AuthnRequests."""

    def __init__(
        self,
        entity_id: str,
        acs_url: str,
        trust_store: TrustStore,
        crypto: CryptoService,
        replay_guard: ReplayGuard,
        decryption_key: rsa.RSAPrivateKey | None = None,
        want_assertions_signed: bool = True,
        want_response_signed: bool = False,
        want_assertions_encrypted: bool = False,
        clock_skew_seconds: int = 300,
        max_message_bytes: int = 256 * 1024,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the validator.

        Args:
            entity_id: Our own entity ID; assertions must name it as audience.
            acs_url: Our Assertion Consumer Service URL.
            trust_store: Source of issuer metadata and certificates.
            crypto: Signature verification and decryption.
            replay_guard: Records consumed message IDs.
            decryption_key: Private key for EncryptedAssertion.
            want_assertions_signed: Require each assertion to be signed.
            want_response_signed: Require the Response itself to be signed.
            want_assertions_encrypted: Reject plaintext assertions.
            clock_skew_seconds: Tolerated clock difference.
            max_message_bytes: Largest accepted message.
            clock: Returns the current time.
        """
        self.entity_id = entity_id
        self.acs_url = acs_url
        self._trust = trust_store
        self._crypto = crypto
        self._replay = replay_guard
        self._decryption_key = decryption_key
        self.want_assertions_signed = want_assertions_signed
        self.want_response_signed = want_response_signed
        self.want_assertions_encrypted = want_assertions_encrypted
        self.skew = timedelta(seconds=clock_skew_seconds)
        self.max_message_bytes = max_message_bytes
        self._clock = clock or (lambda: datetime.now(UTC))

    @classmethod
    def from_settings(
        cls,
        settings: SPSettings,
        trust_store: TrustStore,
        crypto: CryptoService,
        replay_guard: ReplayGuard,
        decryption_key: rsa.RSAPrivateKey | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> MessageValidator:
        """Create a validator from SP settings."""
        return cls(
            entity_id=settings.entity_id,
            acs_url=settings.acs_url,
            trust_store=trust_store,
            crypto=crypto,
            replay_guard=replay_guard,
            decryption_key=decryption_key,
            want_assertions_signed=settings.want_assertions_signed,
            want_response_signed=settings.want_response_signed,
            want_assertions_encrypted=settings.want_assertions_encrypted,
            clock_skew_seconds=settings.clock_skew_seconds,
            max_message_bytes=settings.max_message_bytes,
            clock=clock,
        )

    def validate_response(
        self,
        raw: bytes | str,
        expected_destination: str | None = None,
    ) -> ValidationResult[SAMLResponse]:
        """Validate a SAML Response carrying assertions.

        Args:
            raw: Response XML, already decoded from its binding.
            expected_destination: Our ACS URL. Defaults to the configured one.

        Returns:
            ValidationResult with the trusted SAMLResponse or the errors.
        """
        ctx = _Context(raw=self._as_bytes(raw), expected_destination=expected_destination or self.acs_url)
        return self._run(ctx, "Response", [
            (Cat.SCHEMA, self._response_schema),
            (Cat.SIGNATURE, self._response_signature),
            (Cat.TIMESTAMP, self._response_timestamps),
            (Cat.AUDIENCE, self._response_audience),
            (Cat.REPLAY, self._response_replay),
            (Cat.SUBJECT, self._response_subject),
        ])

    def validate_logout_request(
        self,
        raw: bytes | str,
        expected_destination: str | None = None,
        redirect: RedirectMessage | None = None,
    ) -> ValidationResult[LogoutRequest]:
        """Validate a LogoutRequest (signature required)."""
        return self._validate_protocol_message(
            raw, "LogoutRequest", LogoutRequest.from_element, expected_destination, redirect, True
        )

    def validate_logout_response(
        self,
        raw: bytes | str,
        expected_destination: str | None = None,
        redirect: RedirectMessage | None = None,
    ) -> ValidationResult[LogoutResponse]:
        """Validate a LogoutResponse (signature required)."""
        return self._validate_protocol_message(
            raw, "LogoutResponse", LogoutResponse.from_element, expected_destination, redirect, True
        )

    def validate_authn_request(
        self,
        raw: bytes | str,
        expected_destination: str | None = None,
        redirect: RedirectMessage | None = None,
        require_signature: bool = False,
    ) -> ValidationResult[AuthnRequest]:
        """Validate an AuthnRequest received by an identity provider."""
        return self._validate_protocol_message(
            raw, "AuthnRequest", AuthnRequest.from_element, expected_destination, redirect, require_signature
        )

    def _run(
        self,
        ctx: _Context,
        message_type: str,
        stages: list[tuple[ValidationCategory, Callable[[_Context], list[ValidationError]]]],
    ) -> ValidationResult[Any]:
        for category, stage in stages:
            try:
                errors = stage(ctx)
            except AuthFlowError as e:
                errors = [ValidationError(e.kind, category, str(e))]
            except Exception as e:
                logger.exception(f"Unexpected error during {category} validation of {message_type}")
                errors = [ValidationError(ErrorKind.MALFORMED_MESSAGE, category, f"{type(e).__name__}: {e}")]

            if errors:
                logger.warning(
                    f"{message_type} rejected at {category} stage: "
                    + "; ".join(f"{e.kind}: {e.message}" for e in errors)
                )
                return ValidationResult(errors=errors, issuer_entity=ctx.entity)

        message_id = ctx.root.get("ID", "") if ctx.root is not None else ""
        get_protocol_logger().log_message("received", message_type, message_id, ctx.raw.decode("utf-8", "replace"))
        return ValidationResult(
            message=ctx.message,
            issuer_entity=ctx.entity,
            relay_state=ctx.redirect.relay_state if ctx.redirect else None,
        )

    @staticmethod
    def _as_bytes(raw: bytes | str) -> bytes:
        return raw.encode("utf-8") if isinstance(raw, str) else raw

    def _envelope_errors(self, root: etree._Element, expected_tag: str) -> list[ValidationError]:
        errors = []

        def fail(message: str) -> None:
            errors.append(ValidationError(ErrorKind.MALFORMED_MESSAGE, Cat.SCHEMA, message))

        if root.tag != f"{{{SAMLP_NS}}}{expected_tag}":
            fail(f"Expected samlp:{expected_tag}, got {root.tag}")
            return errors
        if root.get("Version") != SAML_VERSION:
            fail(f"Unsupported SAML version: {root.get('Version')!r}")
        if not root.get("ID"):
            fail("Missing ID attribute")
        if not root.get("IssueInstant"):
            fail("Missing IssueInstant attribute")
        else:
            try:
                parse_instant(root.get("IssueInstant", ""))
            except MessageError as e:
                fail(str(e))
        issuer = root.findtext("saml:Issuer", namespaces=NS)
        if not issuer or not issuer.strip():
            fail("Missing Issuer")
        return errors

    def _lookup_issuer(self, ctx: _Context, role: EntityRole) -> list[ValidationError]:
        try:
            entity = self._trust.get_entity(ctx.issuer)
        except MetadataUnavailableError as e:
            return [ValidationError(e.kind, Cat.SIGNATURE, str(e))]
        if entity.role != role:
            return [ValidationError(
                ErrorKind.UNTRUSTED_ISSUER,
                Cat.SIGNATURE,
                f"{ctx.issuer} is not a trusted {role.value.upper()}",
            )]
        ctx.entity = entity
        return []

    def _instant_errors(self, label: str, instant: datetime, now: datetime) -> list[ValidationError]:
        if instant > now + self.skew:
            return [ValidationError(
                ErrorKind.TIMESTAMP_OUT_OF_RANGE, Cat.TIMESTAMP, f"{label} IssueInstant is in the future"
            )]
        if instant < now - self.skew:
            return [ValidationError(
                ErrorKind.TIMESTAMP_OUT_OF_RANGE, Cat.TIMESTAMP, f"{label} IssueInstant is too old"
            )]
        return []

    def _mark(self, message_id: str, expires_at: datetime, label: str) -> list[ValidationError]:
        if self._replay.check_and_mark(message_id, expires_at):
            return []
        return [ValidationError(ErrorKind.REPLAY_DETECTED, Cat.REPLAY, f"{label} {message_id} was already consumed")]

    def _collect_assertions(self, root: etree._Element) -> list[etree._Element]:
        """Plain assertions plus decrypted EncryptedAssertions, in document order."""
        assertions = []
        for child in root:
            if child.tag == f"{{{SAML_NS}}}Assertion":
                if self.want_assertions_encrypted:
                    raise CryptoError("Plaintext assertion rejected: encryption is required")
                assertions.append(child)
            elif child.tag == f"{{{SAML_NS}}}EncryptedAssertion":
                if self._decryption_key is None:
                    raise CryptoError("Received EncryptedAssertion but no decryption key is configured")
                encrypted = child.find("xenc:EncryptedData", NS)
                if encrypted is None:
                    raise CryptoError("EncryptedAssertion has no EncryptedData")
                plaintext = self._crypto.decrypt(encrypted, self._decryption_key)
                try:
                    decrypted = parse_xml(plaintext, max_bytes=self.max_message_bytes)
                except MessageError as e:
                    raise CryptoError(f"Decrypted assertion is not well-formed: {e}") from e
                if decrypted.tag != f"{{{SAML_NS}}}Assertion":
                    raise CryptoError(f"EncryptedAssertion decrypted to {decrypted.tag}")
                assertions.append(decrypted)
        return assertions

    def _response_schema(self, ctx: _Context) -> list[ValidationError]:
        ctx.root = parse_xml(ctx.raw, max_bytes=self.max_message_bytes)
        errors = self._envelope_errors(ctx.root, "Response")
        if errors:
            return errors

        ctx.issuer = (ctx.root.findtext("saml:Issuer", namespaces=NS) or "").strip()
        status = Status.from_element(ctx.root.find("samlp:Status", NS))
        if not status.is_success:
            detail = get_status_description(status.sub_code or status.code)
            return [ValidationError(
                ErrorKind.MALFORMED_MESSAGE,
                Cat.SCHEMA,
                f"IdP returned status {status.code}"
                + (f" / {status.sub_code}" if status.sub_code else "")
                + f": {status.message or detail}",
            )]

        try:
            ctx.assertion_elements = self._collect_assertions(ctx.root)
        except CryptoError as e:
            return [ValidationError(ErrorKind.CRYPTO_FAILURE, Cat.SCHEMA, str(e))]
        if not ctx.assertion_elements:
            return [ValidationError(ErrorKind.MALFORMED_MESSAGE, Cat.SCHEMA, "Response carries no assertion")]

        for elem in ctx.assertion_elements:
            label = f"Assertion {elem.get('ID') or '(no ID)'}"
            if elem.get("Version") != SAML_VERSION:
                errors.append(ValidationError(ErrorKind.MALFORMED_MESSAGE, Cat.SCHEMA, f"{label} has bad Version"))
            for attr in ("ID", "IssueInstant"):
                if not elem.get(attr):
                    errors.append(ValidationError(ErrorKind.MALFORMED_MESSAGE, Cat.SCHEMA, f"{label} missing {attr}"))
            if not (elem.findtext("saml:Issuer", namespaces=NS) or "").strip():
                errors.append(ValidationError(ErrorKind.MALFORMED_MESSAGE, Cat.SCHEMA, f"{label} missing Issuer"))
        return errors

    def _response_signature(self, ctx: _Context) -> list[ValidationError]:
        errors = self._lookup_issuer(ctx, EntityRole.IDP)
        if errors:
            return errors
        assert ctx.entity is not None and ctx.root is not None
        certificates = ctx.entity.valid_signing_certificates(self._clock())

        trusted_root = ctx.root
        response_signed = False
        if ctx.root.find(f"{{{DS_NS}}}Signature") is not None:
            verified = self._crypto.verify_any(ctx.root, certificates)
            if verified is None:
                return [ValidationError(ErrorKind.SIGNATURE_INVALID, Cat.SIGNATURE, "Response signature is invalid")]
            trusted_root = verified.signed_element
            response_signed = True
            # Only content covered by the signature is used from here on
            try:
                ctx.assertion_elements = self._collect_assertions(trusted_root)
            except CryptoError as e:
                return [ValidationError(ErrorKind.CRYPTO_FAILURE, Cat.SIGNATURE, str(e))]
        elif self.want_response_signed:
            errors.append(ValidationError(ErrorKind.SIGNATURE_INVALID, Cat.SIGNATURE, "Response is not signed"))

        assertions: list[Assertion] = []
        for elem in ctx.assertion_elements:
            label = f"Assertion {elem.get('ID')}"
            if elem.find(f"{{{DS_NS}}}Signature") is not None:
                verified = self._crypto.verify_any(elem, certificates)
                if verified is None:
                    errors.append(ValidationError(
                        ErrorKind.SIGNATURE_INVALID, Cat.SIGNATURE, f"{label} signature is invalid"
                    ))
                    continue
                assertions.append(Assertion.from_element(verified.signed_element, signed=True))
            elif not response_signed:
                errors.append(ValidationError(
                    ErrorKind.SIGNATURE_INVALID, Cat.SIGNATURE, f"{label} is not signed and neither is the Response"
                ))
            elif self.want_assertions_signed:
                errors.append(ValidationError(ErrorKind.SIGNATURE_INVALID, Cat.SIGNATURE, f"{label} is not signed"))
            else:
                assertions.append(Assertion.from_element(elem))

        if errors:
            return errors
        ctx.message = SAMLResponse.from_element(trusted_root, assertions=assertions, signed=response_signed)
        return []

    def _response_timestamps(self, ctx: _Context) -> list[ValidationError]:
        response: SAMLResponse = ctx.message
        now = self._clock()
        errors = self._instant_errors("Response", response.issue_instant, now)

        for assertion in response.assertions:
            label = f"Assertion {assertion.id}"
            errors.extend(self._instant_errors(label, assertion.issue_instant, now))
            conditions = assertion.conditions
            if conditions is not None:
                if conditions.not_before and now < conditions.not_before:
                    errors.append(ValidationError(
                        ErrorKind.TIMESTAMP_OUT_OF_RANGE, Cat.TIMESTAMP, f"{label} is not yet valid"
                    ))
                if conditions.not_on_or_after and now >= conditions.not_on_or_after:
                    errors.append(ValidationError(
                        ErrorKind.TIMESTAMP_OUT_OF_RANGE, Cat.TIMESTAMP, f"{label} has expired"
                    ))
            if assertion.subject is not None:
                for confirmation in assertion.subject.bearer_confirmations:
                    if confirmation.not_on_or_after and now >= confirmation.not_on_or_after:
                        errors.append(ValidationError(
                            ErrorKind.TIMESTAMP_OUT_OF_RANGE,
                            Cat.TIMESTAMP,
                            f"{label} subject confirmation has expired",
                        ))
                    if confirmation.not_before and now < confirmation.not_before:
                        errors.append(ValidationError(
                            ErrorKind.TIMESTAMP_OUT_OF_RANGE,
                            Cat.TIMESTAMP,
                            f"{label} subject confirmation is not yet valid",
                        ))
        return errors

    def _response_audience(self, ctx: _Context) -> list[ValidationError]:
        response: SAMLResponse = ctx.message
        errors = []
        if response.destination and response.destination != ctx.expected_destination:
            errors.append(ValidationError(
                ErrorKind.AUDIENCE_MISMATCH,
                Cat.AUDIENCE,
                f"Response Destination {response.destination} is not {ctx.expected_destination}",
            ))

        for assertion in response.assertions:
            label = f"Assertion {assertion.id}"
            for confirmation in assertion.subject.bearer_confirmations if assertion.subject else []:
                if confirmation.recipient != ctx.expected_destination:
                    errors.append(ValidationError(
                        ErrorKind.AUDIENCE_MISMATCH,
                        Cat.AUDIENCE,
                        f"{label} Recipient {confirmation.recipient} is not {ctx.expected_destination}",
                    ))
            audiences = assertion.conditions.audiences if assertion.conditions else []
            if self.entity_id not in audiences:
                errors.append(ValidationError(
                    ErrorKind.AUDIENCE_MISMATCH,
                    Cat.AUDIENCE,
                    f"{label} is not addressed to {self.entity_id}",
                ))
        return errors

    def _response_replay(self, ctx: _Context) -> list[ValidationError]:
        response: SAMLResponse = ctx.message
        expiries = [response.issue_instant + self.skew]
        for assertion in response.assertions:
            if assertion.conditions and assertion.conditions.not_on_or_after:
                expiries.append(assertion.conditions.not_on_or_after)
            for confirmation in assertion.subject.bearer_confirmations if assertion.subject else []:
                if confirmation.not_on_or_after:
                    expiries.append(confirmation.not_on_or_after)
        expires_at = max(expiries) + self.skew

        errors = self._mark(response.id, expires_at, "Response")
        for assertion in response.assertions:
            errors.extend(self._mark(assertion.id, expires_at, "Assertion"))
        return errors

    def _response_subject(self, ctx: _Context) -> list[ValidationError]:
        response: SAMLResponse = ctx.message
        errors = []

        def fail(kind: ErrorKind, message: str) -> None:
            errors.append(ValidationError(kind, Cat.SUBJECT, message))

        for assertion in response.assertions:
            label = f"Assertion {assertion.id}"
            if not assertion.name_id:
                fail(ErrorKind.MALFORMED_MESSAGE, f"{label} has no NameID")
            bearer = assertion.subject.bearer_confirmations if assertion.subject else []
            if not bearer:
                fail(ErrorKind.MALFORMED_MESSAGE, f"{label} has no bearer SubjectConfirmation")
            for confirmation in bearer:
                if confirmation.in_response_to != response.in_response_to:
                    fail(
                        ErrorKind.UNKNOWN_REQUEST_ID,
                        f"{label} InResponseTo {confirmation.in_response_to} "
                        f"does not match Response InResponseTo {response.in_response_to}",
                    )
            if assertion.issuer != response.issuer:
                fail(ErrorKind.UNTRUSTED_ISSUER, f"{label} issuer {assertion.issuer} differs from Response issuer")
            if any(not name.strip() for name in assertion.attributes):
                fail(ErrorKind.MALFORMED_MESSAGE, f"{label} has an attribute without a name")
        return errors

    def _validate_protocol_message(
        self,
        raw: bytes | str,
        tag: str,
        parser: Callable[[etree._Element], Any],
        expected_destination: str | None,
        redirect: RedirectMessage | None,
        require_signature: bool,
    ) -> ValidationResult[Any]:
        ctx = _Context(raw=self._as_bytes(raw), expected_destination=expected_destination, redirect=redirect)
        role = EntityRole.SP if tag == "AuthnRequest" else None

        def schema(ctx: _Context) -> list[ValidationError]:
            ctx.root = parse_xml(ctx.raw, max_bytes=self.max_message_bytes)
            errors = self._envelope_errors(ctx.root, tag)
            if errors:
                return errors
            ctx.issuer = (ctx.root.findtext("saml:Issuer", namespaces=NS) or "").strip()
            ctx.message = parser(ctx.root)
            return []

        def signature(ctx: _Context) -> list[ValidationError]:
            try:
                ctx.entity = self._trust.get_entity(ctx.issuer)
            except MetadataUnavailableError as e:
                return [ValidationError(e.kind, Cat.SIGNATURE, str(e))]
            if role is not None and ctx.entity.role != role:
                return [ValidationError(
                    ErrorKind.UNTRUSTED_ISSUER, Cat.SIGNATURE, f"{ctx.issuer} is not a trusted SP"
                )]
            certificates = ctx.entity.valid_signing_certificates(self._clock())

            if ctx.redirect is not None and ctx.redirect.is_signed:
                if ctx.redirect.sig_alg != REDIRECT_SIG_ALG:
                    return [ValidationError(
                        ErrorKind.SIGNATURE_INVALID, Cat.SIGNATURE, f"Unsupported SigAlg {ctx.redirect.sig_alg}"
                    )]
                assert ctx.redirect.signature is not None and ctx.redirect.signed_data is not None
                if self._crypto.verify_bytes(ctx.redirect.signed_data, ctx.redirect.signature, certificates) is None:
                    return [ValidationError(
                        ErrorKind.SIGNATURE_INVALID, Cat.SIGNATURE, f"{tag} query-string signature is invalid"
                    )]
                return []

            assert ctx.root is not None
            if ctx.root.find(f"{{{DS_NS}}}Signature") is not None:
                verified = self._crypto.verify_any(ctx.root, certificates)
                if verified is None:
                    return [ValidationError(ErrorKind.SIGNATURE_INVALID, Cat.SIGNATURE, f"{tag} signature is invalid")]
                ctx.message = parser(verified.signed_element)
                return []

            if require_signature:
                return [ValidationError(ErrorKind.SIGNATURE_INVALID, Cat.SIGNATURE, f"{tag} is not signed")]
            return []

        def timestamps(ctx: _Context) -> list[ValidationError]:
            now = self._clock()
            errors = self._instant_errors(tag, ctx.message.issue_instant, now)
            not_on_or_after = getattr(ctx.message, "not_on_or_after", None)
            if not_on_or_after and now >= not_on_or_after:
                errors.append(ValidationError(ErrorKind.TIMESTAMP_OUT_OF_RANGE, Cat.TIMESTAMP, f"{tag} has expired"))
            return errors

        def audience(ctx: _Context) -> list[ValidationError]:
            destination = ctx.message.destination
            if ctx.expected_destination and destination and destination != ctx.expected_destination:
                return [ValidationError(
                    ErrorKind.AUDIENCE_MISMATCH,
                    Cat.AUDIENCE,
                    f"{tag} Destination {destination} is not {ctx.expected_destination}",
                )]
            return []

        def replay(ctx: _Context) -> list[ValidationError]:
            return self._mark(ctx.message.id, ctx.message.issue_instant + 2 * self.skew, tag)

        def subject(ctx: _Context) -> list[ValidationError]:
            if isinstance(ctx.message, LogoutRequest) and not ctx.message.name_id.value:
                return [ValidationError(ErrorKind.MALFORMED_MESSAGE, Cat.SUBJECT, "LogoutRequest has an empty NameID")]
            return []

        return self._run(ctx, tag, [
            (Cat.SCHEMA, schema),
            (Cat.SIGNATURE, signature),
            (Cat.TIMESTAMP, timestamps),
            (Cat.AUDIENCE, audience),
            (Cat.REPLAY, replay),
            (Cat.SUBJECT, subject),
        ])
