"""SAML 2.0 protocol message model.

Dataclasses for AuthnRequest, Assertion, Response, LogoutRequest and
LogoutResponse, each convertible to and from lxml elements. Parsing goes
through a hardened parser that refuses DTDs, entity expansion and network
access.
"""

from __future__ import annotations

import re
import secrets
from dataclasses import dataclass, field
from datetime import UTC, datetime

from lxml import etree

from authflow.core.errors import MessageError
from authflow.core.saml.constants import (
    NS,
    SAML_NS,
    SAML_VERSION,
    SAMLP_NS,
    SUBJECT_CONFIRMATION_BEARER,
    XS_NS,
    XSI_NS,
    Binding,
    NameIDFormat,
    StatusCode,
)

_FRACTION = re.compile(r"\.(\d+)")

_PROTOCOL_NSMAP = {"samlp": SAMLP_NS, "saml": SAML_NS}
_ASSERTION_NSMAP = {"saml": SAML_NS, "xs": XS_NS, "xsi": XSI_NS}


def _parser() -> etree.XMLParser:
    # A fresh parser per call: lxml parsers are not thread safe
    return etree.XMLParser(
        resolve_entities=False,
        no_network=True,
        load_dtd=False,
        dtd_validation=False,
        huge_tree=False,
        remove_comments=True,
        remove_pis=True,
    )


def parse_xml(data: bytes | str, max_bytes: int | None = None) -> etree._Element:
    """Parse untrusted XML.

    Args:
        data: Raw XML document.
        max_bytes: Reject documents larger than this.

    Returns:
        The root element.

    Raises:
        MessageError: If the document is too large, malformed or declares a DTD.
    """
    raw = data.encode("utf-8") if isinstance(data, str) else data
    if max_bytes is not None and len(raw) > max_bytes:
        raise MessageError(f"Message exceeds {max_bytes} bytes")
    if b"<!DOCTYPE" in raw or b"<!ENTITY" in raw:
        raise MessageError("DTDs are not allowed in SAML messages")

    try:
        root = etree.fromstring(raw, _parser())
    except etree.XMLSyntaxError as e:
        raise MessageError(f"Malformed XML: {e}") from e

    if root.getroottree().docinfo.doctype:
        raise MessageError("DTDs are not allowed in SAML messages")
    return root


def serialize(element: etree._Element) -> bytes:
    """Serialize an element to UTF-8 XML bytes."""
    return etree.tostring(element, encoding="utf-8")


def generate_id() -> str:
    """Generate a SAML ID: underscore plus 160 random bits as hex."""
    return "_" + secrets.token_hex(20)


def format_instant(value: datetime) -> str:
    """Format a datetime as a SAML dateTime in UTC."""
    return value.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_instant(value: str) -> datetime:
    """Parse a SAML dateTime. Naive values are taken as UTC.

    Raises:
        MessageError: If the value is not an ISO 8601 timestamp.
    """
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    # Clamp fractional seconds to microseconds
    text = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise MessageError(f"Invalid timestamp: {value!r}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _optional_instant(value: str | None) -> datetime | None:
    return parse_instant(value) if value else None


def _required(elem: etree._Element, attr: str) -> str:
    value = elem.get(attr)
    if not value:
        raise MessageError(f"{etree.QName(elem).localname} is missing {attr}")
    return value


def _bool_attr(value: str | None) -> bool:
    return value in ("true", "1")


def _issuer_of(elem: etree._Element) -> str:
    text = elem.findtext("saml:Issuer", namespaces=NS)
    return text.strip() if text else ""


def _add_issuer(parent: etree._Element, issuer: str, entity_format: bool = False) -> None:
    issuer_elem = etree.SubElement(parent, f"{{{SAML_NS}}}Issuer")
    if entity_format:
        issuer_elem.set("Format", NameIDFormat.ENTITY)
    issuer_elem.text = issuer


def local_name(element: etree._Element) -> str:
    """Local name of an element, without namespace."""
    return etree.QName(element).localname


@dataclass
class NameID:
    """A SAML NameID."""

    value: str
    format: str | None = None
    name_qualifier: str | None = None
    sp_name_qualifier: str | None = None

    def to_element(self, parent: etree._Element) -> etree._Element:
        """Append this NameID to a parent element."""
        elem = etree.SubElement(parent, f"{{{SAML_NS}}}NameID")
        if self.format:
            elem.set("Format", self.format)
        if self.name_qualifier:
            elem.set("NameQualifier", self.name_qualifier)
        if self.sp_name_qualifier:
            elem.set("SPNameQualifier", self.sp_name_qualifier)
        elem.text = self.value
        return elem

    @classmethod
    def from_element(cls, elem: etree._Element) -> NameID:
        """Parse a NameID element."""
        return cls(
            value=(elem.text or "").strip(),
            format=elem.get("Format"),
            name_qualifier=elem.get("NameQualifier"),
            sp_name_qualifier=elem.get("SPNameQualifier"),
        )


@dataclass
class SubjectConfirmation:
    """SubjectConfirmation with its SubjectConfirmationData."""

    method: str = SUBJECT_CONFIRMATION_BEARER
    not_before: datetime | None = None
    not_on_or_after: datetime | None = None
    recipient: str | None = None
    in_response_to: str | None = None


@dataclass
class Subject:
    """Assertion subject."""

    name_id: NameID | None = None
    confirmations: list[SubjectConfirmation] = field(default_factory=list)

    @property
    def bearer_confirmations(self) -> list[SubjectConfirmation]:
        """Confirmations using the bearer method."""
        return [c for c in self.confirmations if c.method == SUBJECT_CONFIRMATION_BEARER]


@dataclass
class Conditions:
    """Assertion validity conditions."""

    not_before: datetime | None = None
    not_on_or_after: datetime | None = None
    audiences: list[str] = field(default_factory=list)


@dataclass
class AuthnStatement:
    """Authentication statement."""

    authn_instant: datetime
    context_class_ref: str | None = None
    session_index: str | None = None
    session_not_on_or_after: datetime | None = None


@dataclass
class AttributeValue:
    """A typed attribute value."""

    value: str
    type: str = "xs:string"

    def __str__(self) -> str:
        return self.value


@dataclass
class Assertion:
    """A SAML Assertion."""

    id: str
    issue_instant: datetime
    issuer: str
    subject: Subject | None = None
    conditions: Conditions | None = None
    authn_statement: AuthnStatement | None = None
    attributes: dict[str, list[AttributeValue]] = field(default_factory=dict)
    signed: bool = False

    @property
    def name_id(self) -> str | None:
        """The subject NameID value, if present."""
        if self.subject and self.subject.name_id:
            return self.subject.name_id.value
        return None

    @property
    def session_index(self) -> str | None:
        """The IdP session index, if present."""
        return self.authn_statement.session_index if self.authn_statement else None

    def attribute_values(self) -> dict[str, list[str]]:
        """Attributes as plain strings."""
        return {name: [v.value for v in values] for name, values in self.attributes.items()}

    def to_element(self) -> etree._Element:
        """Build the Assertion element."""
        root = etree.Element(f"{{{SAML_NS}}}Assertion", nsmap=_ASSERTION_NSMAP)
        root.set("ID", self.id)
        root.set("Version", SAML_VERSION)
        root.set("IssueInstant", format_instant(self.issue_instant))
        _add_issuer(root, self.issuer)

        if self.subject is not None:
            subject = etree.SubElement(root, f"{{{SAML_NS}}}Subject")
            if self.subject.name_id is not None:
                self.subject.name_id.to_element(subject)
            for conf in self.subject.confirmations:
                conf_elem = etree.SubElement(subject, f"{{{SAML_NS}}}SubjectConfirmation")
                conf_elem.set("Method", conf.method)
                data = etree.SubElement(conf_elem, f"{{{SAML_NS}}}SubjectConfirmationData")
                if conf.not_before:
                    data.set("NotBefore", format_instant(conf.not_before))
                if conf.not_on_or_after:
                    data.set("NotOnOrAfter", format_instant(conf.not_on_or_after))
                if conf.recipient:
                    data.set("Recipient", conf.recipient)
                if conf.in_response_to:
                    data.set("InResponseTo", conf.in_response_to)

        if self.conditions is not None:
            cond = etree.SubElement(root, f"{{{SAML_NS}}}Conditions")
            if self.conditions.not_before:
                cond.set("NotBefore", format_instant(self.conditions.not_before))
            if self.conditions.not_on_or_after:
                cond.set("NotOnOrAfter", format_instant(self.conditions.not_on_or_after))
            if self.conditions.audiences:
                restriction = etree.SubElement(cond, f"{{{SAML_NS}}}AudienceRestriction")
                for audience in self.conditions.audiences:
                    etree.SubElement(restriction, f"{{{SAML_NS}}}Audience").text = audience

        if self.authn_statement is not None:
            stmt = etree.SubElement(root, f"{{{SAML_NS}}}AuthnStatement")
            stmt.set("AuthnInstant", format_instant(self.authn_statement.authn_instant))
            if self.authn_statement.session_index:
                stmt.set("SessionIndex", self.authn_statement.session_index)
            if self.authn_statement.session_not_on_or_after:
                stmt.set(
                    "SessionNotOnOrAfter",
                    format_instant(self.authn_statement.session_not_on_or_after),
                )
            context = etree.SubElement(stmt, f"{{{SAML_NS}}}AuthnContext")
            etree.SubElement(context, f"{{{SAML_NS}}}AuthnContextClassRef").text = (
                self.authn_statement.context_class_ref or "urn:oasis:names:tc:SAML:2.0:ac:classes:unspecified"
            )

        if self.attributes:
            attr_stmt = etree.SubElement(root, f"{{{SAML_NS}}}AttributeStatement")
            for name, values in self.attributes.items():
                attr = etree.SubElement(attr_stmt, f"{{{SAML_NS}}}Attribute")
                attr.set("Name", name)
                for value in values:
                    value_elem = etree.SubElement(attr, f"{{{SAML_NS}}}AttributeValue")
                    value_elem.set(f"{{{XSI_NS}}}type", value.type)
                    value_elem.text = value.value

        return root

    @classmethod
    def from_element(cls, elem: etree._Element, signed: bool = False) -> Assertion:
        """Parse an Assertion element.

        Raises:
            MessageError: If required attributes are missing or malformed.
        """
        if local_name(elem) != "Assertion" or etree.QName(elem).namespace != SAML_NS:
            raise MessageError(f"Expected saml:Assertion, got {elem.tag}")

        subject = None
        subject_elem = elem.find("saml:Subject", NS)
        if subject_elem is not None:
            name_id_elem = subject_elem.find("saml:NameID", NS)
            confirmations = []
            for conf_elem in subject_elem.findall("saml:SubjectConfirmation", NS):
                data = conf_elem.find("saml:SubjectConfirmationData", NS)
                confirmations.append(
                    SubjectConfirmation(
                        method=conf_elem.get("Method", ""),
                        not_before=_optional_instant(data.get("NotBefore")) if data is not None else None,
                        not_on_or_after=(
                            _optional_instant(data.get("NotOnOrAfter")) if data is not None else None
                        ),
                        recipient=data.get("Recipient") if data is not None else None,
                        in_response_to=data.get("InResponseTo") if data is not None else None,
                    )
                )
            subject = Subject(
                name_id=NameID.from_element(name_id_elem) if name_id_elem is not None else None,
                confirmations=confirmations,
            )

        conditions = None
        cond_elem = elem.find("saml:Conditions", NS)
        if cond_elem is not None:
            conditions = Conditions(
                not_before=_optional_instant(cond_elem.get("NotBefore")),
                not_on_or_after=_optional_instant(cond_elem.get("NotOnOrAfter")),
                audiences=[
                    (a.text or "").strip()
                    for a in cond_elem.findall("saml:AudienceRestriction/saml:Audience", NS)
                ],
            )

        authn_statement = None
        stmt_elem = elem.find("saml:AuthnStatement", NS)
        if stmt_elem is not None:
            authn_statement = AuthnStatement(
                authn_instant=parse_instant(_required(stmt_elem, "AuthnInstant")),
                context_class_ref=stmt_elem.findtext(
                    "saml:AuthnContext/saml:AuthnContextClassRef", namespaces=NS
                ),
                session_index=stmt_elem.get("SessionIndex"),
                session_not_on_or_after=_optional_instant(stmt_elem.get("SessionNotOnOrAfter")),
            )

        attributes: dict[str, list[AttributeValue]] = {}
        for attr_elem in elem.findall("saml:AttributeStatement/saml:Attribute", NS):
            name = attr_elem.get("Name", "")
            values = attributes.setdefault(name, [])
            for value_elem in attr_elem.findall("saml:AttributeValue", NS):
                values.append(
                    AttributeValue(
                        value=(value_elem.text or "").strip(),
                        type=value_elem.get(f"{{{XSI_NS}}}type", "xs:string"),
                    )
                )

        return cls(
            id=_required(elem, "ID"),
            issue_instant=parse_instant(_required(elem, "IssueInstant")),
            issuer=_issuer_of(elem),
            subject=subject,
            conditions=conditions,
            authn_statement=authn_statement,
            attributes=attributes,
            signed=signed,
        )


@dataclass
class Status:
    """Protocol response status."""

    code: str = StatusCode.SUCCESS
    sub_code: str | None = None
    message: str | None = None

    @property
    def is_success(self) -> bool:
        """Whether the top-level code is Success."""
        return self.code == StatusCode.SUCCESS

    def to_element(self, parent: etree._Element) -> etree._Element:
        """Append a samlp:Status element to a parent."""
        status = etree.SubElement(parent, f"{{{SAMLP_NS}}}Status")
        code = etree.SubElement(status, f"{{{SAMLP_NS}}}StatusCode")
        code.set("Value", self.code)
        if self.sub_code:
            etree.SubElement(code, f"{{{SAMLP_NS}}}StatusCode").set("Value", self.sub_code)
        if self.message:
            etree.SubElement(status, f"{{{SAMLP_NS}}}StatusMessage").text = self.message
        return status

    @classmethod
    def from_element(cls, elem: etree._Element | None) -> Status:
        """Parse a samlp:Status element.

        Raises:
            MessageError: If the element or its StatusCode is missing.
        """
        if elem is None:
            raise MessageError("Status is missing")
        code = elem.find("samlp:StatusCode", NS)
        if code is None or not code.get("Value"):
            raise MessageError("StatusCode is missing")
        sub = code.find("samlp:StatusCode", NS)
        return cls(
            code=code.get("Value", ""),
            sub_code=sub.get("Value") if sub is not None else None,
            message=elem.findtext("samlp:StatusMessage", namespaces=NS),
        )


def _protocol_root(tag: str, message_id: str, issue_instant: datetime, destination: str | None) -> etree._Element:
    root = etree.Element(f"{{{SAMLP_NS}}}{tag}", nsmap=_PROTOCOL_NSMAP)
    root.set("ID", message_id)
    root.set("Version", SAML_VERSION)
    root.set("IssueInstant", format_instant(issue_instant))
    if destination:
        root.set("Destination", destination)
    return root


def _expect(elem: etree._Element, tag: str) -> None:
    if local_name(elem) != tag or etree.QName(elem).namespace != SAMLP_NS:
        raise MessageError(f"Expected samlp:{tag}, got {elem.tag}")
    if elem.get("Version") != SAML_VERSION:
        raise MessageError(f"Unsupported SAML version: {elem.get('Version')!r}")


@dataclass
class AuthnRequest:
    """A SAML AuthnRequest."""

    id: str
    issue_instant: datetime
    issuer: str
    destination: str | None = None
    acs_url: str | None = None
    protocol_binding: str = Binding.HTTP_POST
    name_id_format: str | None = NameIDFormat.UNSPECIFIED
    allow_create: bool = True
    force_authn: bool = False
    is_passive: bool = False
    requested_authn_context: list[str] = field(default_factory=list)

    def to_element(self) -> etree._Element:
        """Build the AuthnRequest element."""
        root = _protocol_root("AuthnRequest", self.id, self.issue_instant, self.destination)
        if self.acs_url:
            root.set("AssertionConsumerServiceURL", self.acs_url)
        root.set("ProtocolBinding", self.protocol_binding)
        if self.force_authn:
            root.set("ForceAuthn", "true")
        if self.is_passive:
            root.set("IsPassive", "true")
        _add_issuer(root, self.issuer)
        if self.name_id_format:
            policy = etree.SubElement(root, f"{{{SAMLP_NS}}}NameIDPolicy")
            policy.set("Format", self.name_id_format)
            policy.set("AllowCreate", "true" if self.allow_create else "false")
        if self.requested_authn_context:
            context = etree.SubElement(root, f"{{{SAMLP_NS}}}RequestedAuthnContext")
            context.set("Comparison", "exact")
            for ref in self.requested_authn_context:
                etree.SubElement(context, f"{{{SAML_NS}}}AuthnContextClassRef").text = ref
        return root

    @classmethod
    def from_element(cls, elem: etree._Element) -> AuthnRequest:
        """Parse an AuthnRequest element."""
        _expect(elem, "AuthnRequest")
        policy = elem.find("samlp:NameIDPolicy", NS)
        return cls(
            id=_required(elem, "ID"),
            issue_instant=parse_instant(_required(elem, "IssueInstant")),
            issuer=_issuer_of(elem),
            destination=elem.get("Destination"),
            acs_url=elem.get("AssertionConsumerServiceURL"),
            protocol_binding=elem.get("ProtocolBinding", Binding.HTTP_POST),
            name_id_format=policy.get("Format") if policy is not None else None,
            allow_create=_bool_attr(policy.get("AllowCreate")) if policy is not None else False,
            force_authn=_bool_attr(elem.get("ForceAuthn")),
            is_passive=_bool_attr(elem.get("IsPassive")),
            requested_authn_context=[
                (ref.text or "").strip()
                for ref in elem.findall("samlp:RequestedAuthnContext/saml:AuthnContextClassRef", NS)
            ],
        )


@dataclass
class SAMLResponse:
    """A SAML Response carrying assertions."""

    id: str
    issue_instant: datetime
    issuer: str
    status: Status = field(default_factory=Status)
    destination: str | None = None
    in_response_to: str | None = None
    assertions: list[Assertion] = field(default_factory=list)
    signed: bool = False

    @property
    def assertion(self) -> Assertion | None:
        """The first assertion, if any."""
        return self.assertions[0] if self.assertions else None

    def to_element(self, assertion_elements: list[etree._Element] | None = None) -> etree._Element:
        """Build the Response element.

        Args:
            assertion_elements: Pre-built (signed or encrypted) assertion
                elements. When omitted, ``assertions`` are rendered unsigned.
        """
        root = _protocol_root("Response", self.id, self.issue_instant, self.destination)
        if self.in_response_to:
            root.set("InResponseTo", self.in_response_to)
        _add_issuer(root, self.issuer, entity_format=True)
        self.status.to_element(root)
        if assertion_elements is None:
            assertion_elements = [a.to_element() for a in self.assertions]
        for elem in assertion_elements:
            root.append(elem)
        return root

    @classmethod
    def from_element(
        cls,
        elem: etree._Element,
        assertions: list[Assertion] | None = None,
        signed: bool = False,
    ) -> SAMLResponse:
        """Parse a Response element.

        Args:
            elem: The samlp:Response element.
            assertions: Already-parsed assertions. When omitted, plain
                ``saml:Assertion`` children are parsed.
            signed: Whether the response signature was verified.
        """
        _expect(elem, "Response")
        if assertions is None:
            assertions = [Assertion.from_element(a) for a in elem.findall("saml:Assertion", NS)]
        return cls(
            id=_required(elem, "ID"),
            issue_instant=parse_instant(_required(elem, "IssueInstant")),
            issuer=_issuer_of(elem),
            status=Status.from_element(elem.find("samlp:Status", NS)),
            destination=elem.get("Destination"),
            in_response_to=elem.get("InResponseTo"),
            assertions=assertions,
            signed=signed,
        )


@dataclass
class LogoutRequest:
    """A SAML LogoutRequest."""

    id: str
    issue_instant: datetime
    issuer: str
    name_id: NameID
    destination: str | None = None
    session_indexes: list[str] = field(default_factory=list)
    reason: str | None = None
    not_on_or_after: datetime | None = None

    def to_element(self) -> etree._Element:
        """Build the LogoutRequest element."""
        root = _protocol_root("LogoutRequest", self.id, self.issue_instant, self.destination)
        if self.reason:
            root.set("Reason", self.reason)
        if self.not_on_or_after:
            root.set("NotOnOrAfter", format_instant(self.not_on_or_after))
        _add_issuer(root, self.issuer)
        self.name_id.to_element(root)
        for index in self.session_indexes:
            etree.SubElement(root, f"{{{SAMLP_NS}}}SessionIndex").text = index
        return root

    @classmethod
    def from_element(cls, elem: etree._Element) -> LogoutRequest:
        """Parse a LogoutRequest element."""
        _expect(elem, "LogoutRequest")
        name_id_elem = elem.find("saml:NameID", NS)
        if name_id_elem is None:
            raise MessageError("LogoutRequest is missing NameID")
        return cls(
            id=_required(elem, "ID"),
            issue_instant=parse_instant(_required(elem, "IssueInstant")),
            issuer=_issuer_of(elem),
            name_id=NameID.from_element(name_id_elem),
            destination=elem.get("Destination"),
            session_indexes=[(s.text or "").strip() for s in elem.findall("samlp:SessionIndex", NS)],
            reason=elem.get("Reason"),
            not_on_or_after=_optional_instant(elem.get("NotOnOrAfter")),
        )


@dataclass
class LogoutResponse:
    """A SAML LogoutResponse."""

    id: str
    issue_instant: datetime
    issuer: str
    status: Status = field(default_factory=Status)
    destination: str | None = None
    in_response_to: str | None = None

    def to_element(self) -> etree._Element:
        """Build the LogoutResponse element."""
        root = _protocol_root("LogoutResponse", self.id, self.issue_instant, self.destination)
        if self.in_response_to:
            root.set("InResponseTo", self.in_response_to)
        _add_issuer(root, self.issuer)
        self.status.to_element(root)
        return root

    @classmethod
    def from_element(cls, elem: etree._Element) -> LogoutResponse:
        """Parse a LogoutResponse element."""
        _expect(elem, "LogoutResponse")
        return cls(
            id=_required(elem, "ID"),
            issue_instant=parse_instant(_required(elem, "IssueInstant")),
            issuer=_issuer_of(elem),
            status=Status.from_element(elem.find("samlp:Status", NS)),
            destination=elem.get("Destination"),
            in_response_to=elem.get("InResponseTo"),
        )
