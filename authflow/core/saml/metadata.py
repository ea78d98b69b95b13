"""SAML metadata model, parsing and generation."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum

from cryptography import x509
from lxml import etree

from authflow.core.crypto.certs import (
    CertificateError,
    CertificateUsage,
    certificate_base64,
    certificate_thumbprint,
    is_certificate_valid,
    load_certificate_pem,
)
from authflow.core.errors import MessageError, MetadataError
from authflow.core.saml.constants import DS_NS, MD_NS, NS, Binding
from authflow.core.saml.messages import format_instant, local_name, parse_instant, parse_xml

_DURATION = re.compile(
    r"^(?P<sign>-)?P(?:(?P<years>\d+)Y)?(?:(?P<months>\d+)M)?(?:(?P<days>\d+)D)?"
    r"(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+(?:\.\d+)?)S)?)?$"
)


class EntityRole(StrEnum):
    """Role an entity plays in the federation."""

    IDP = "idp"
    SP = "sp"


class EndpointPurpose(StrEnum):
    """What an endpoint is used for."""

    SSO = "sso"
    SLO = "slo"
    ACS = "acs"
    ARTIFACT = "artifact"


_ENDPOINT_ELEMENTS = {
    "SingleSignOnService": EndpointPurpose.SSO,
    "SingleLogoutService": EndpointPurpose.SLO,
    "AssertionConsumerService": EndpointPurpose.ACS,
    "ArtifactResolutionService": EndpointPurpose.ARTIFACT,
}


@dataclass(frozen=True)
class Endpoint:
    """A protocol endpoint published in metadata."""

    binding: str
    location: str
    purpose: EndpointPurpose
    index: int | None = None
    is_default: bool = False
    response_location: str | None = None


@dataclass(frozen=True)
class CertificateEntry:
    """A certificate published for an entity, keyed by thumbprint."""

    thumbprint: str
    certificate: x509.Certificate
    usage: CertificateUsage


@dataclass(frozen=True)
class Entity:
    """A trusted SAML entity, as described by its metadata.

    Instances are immutable; a refresh replaces the whole object.
    For an SP, ``want_authn_requests_signed`` carries its AuthnRequestsSigned
    flag.
    """

    entity_id: str
    role: EntityRole
    endpoints: tuple[Endpoint, ...] = ()
    signing_certificates: tuple[CertificateEntry, ...] = ()
    encryption_certificates: tuple[CertificateEntry, ...] = ()
    valid_until: datetime | None = None
    cache_duration: timedelta | None = None
    want_authn_requests_signed: bool = False
    want_assertions_signed: bool = False
    name_id_formats: tuple[str, ...] = ()
    metadata_xml: str = ""
    loaded_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def endpoint(
        self,
        purpose: EndpointPurpose,
        bindings: tuple[str, ...] = (Binding.HTTP_REDIRECT, Binding.HTTP_POST),
    ) -> Endpoint | None:
        """Find an endpoint by purpose, preferring bindings in the given order."""
        candidates = [e for e in self.endpoints if e.purpose == purpose]
        for binding in bindings:
            matching = [e for e in candidates if e.binding == binding]
            if matching:
                return next((e for e in matching if e.is_default), matching[0])
        return None

    def endpoint_locations(self, purpose: EndpointPurpose) -> list[str]:
        """All locations published for a purpose."""
        return [e.location for e in self.endpoints if e.purpose == purpose]

    def valid_signing_certificates(self, now: datetime | None = None) -> list[x509.Certificate]:
        """Signing certificates currently inside their validity window."""
        return [
            entry.certificate
            for entry in self.signing_certificates
            if is_certificate_valid(entry.certificate, now)
        ]

    def encryption_certificate(self, now: datetime | None = None) -> x509.Certificate | None:
        """First currently valid encryption certificate, if any."""
        for entry in self.encryption_certificates:
            if is_certificate_valid(entry.certificate, now):
                return entry.certificate
        return None

    def expires_at(self, ttl: timedelta) -> datetime:
        """When a cached copy of this entity must be refreshed.

        The configured TTL is shortened by the document's cacheDuration and
        validUntil, whichever comes first.
        """
        expiry = self.loaded_at + ttl
        if self.cache_duration is not None:
            expiry = min(expiry, self.loaded_at + self.cache_duration)
        if self.valid_until is not None:
            expiry = min(expiry, self.valid_until)
        return expiry


def parse_duration(value: str) -> timedelta:
    """Parse an xs:duration (months count as 30 days, years as 365).

    Raises:
        MetadataError: If the value is not a duration.
    """
    match = _DURATION.match(value.strip())
    if not match or value.strip() in ("P", "PT"):
        raise MetadataError(f"Invalid duration: {value!r}")
    parts = {k: float(v) for k, v in match.groupdict().items() if v and k != "sign"}
    delta = timedelta(
        days=parts.get("years", 0) * 365 + parts.get("months", 0) * 30 + parts.get("days", 0),
        hours=parts.get("hours", 0),
        minutes=parts.get("minutes", 0),
        seconds=parts.get("seconds", 0),
    )
    return -delta if match.group("sign") else delta


def _certificates(descriptor: etree._Element, use: str) -> tuple[CertificateEntry, ...]:
    usage = CertificateUsage.SIGNING if use == "signing" else CertificateUsage.ENCRYPTION
    entries: dict[str, CertificateEntry] = {}
    for key_descriptor in descriptor.findall("md:KeyDescriptor", NS):
        key_use = key_descriptor.get("use")
        if key_use and key_use != use:
            continue
        for cert_elem in key_descriptor.findall("ds:KeyInfo/ds:X509Data/ds:X509Certificate", NS):
            if not cert_elem.text:
                continue
            try:
                cert = load_certificate_pem(cert_elem.text)
            except CertificateError as e:
                raise MetadataError(f"Unreadable certificate in metadata: {e}") from e
            thumbprint = certificate_thumbprint(cert)
            entries.setdefault(thumbprint, CertificateEntry(thumbprint, cert, usage))
    return tuple(entries.values())


def _endpoints(descriptor: etree._Element) -> tuple[Endpoint, ...]:
    endpoints = []
    for child in descriptor:
        if not isinstance(child.tag, str):
            continue
        purpose = _ENDPOINT_ELEMENTS.get(local_name(child))
        if purpose is None or not child.get("Location"):
            continue
        index = child.get("index")
        endpoints.append(
            Endpoint(
                binding=child.get("Binding", ""),
                location=child.get("Location", ""),
                purpose=purpose,
                index=int(index) if index and index.isdigit() else None,
                is_default=child.get("isDefault") == "true",
                response_location=child.get("ResponseLocation"),
            )
        )
    return tuple(endpoints)


def find_entity_descriptor(root: etree._Element, entity_id: str | None = None) -> etree._Element:
    """Locate an EntityDescriptor, possibly inside an EntitiesDescriptor.

    Raises:
        MetadataError: If no (matching) EntityDescriptor exists.
    """
    if root.tag == f"{{{MD_NS}}}EntityDescriptor":
        return root
    for descriptor in root.iter(f"{{{MD_NS}}}EntityDescriptor"):
        if entity_id is None or descriptor.get("entityID") == entity_id:
            return descriptor
    raise MetadataError("No EntityDescriptor found in metadata")


def parse_metadata(
    document: bytes | str | etree._Element,
    entity_id: str | None = None,
    now: datetime | None = None,
) -> Entity:
    """Parse a metadata document into an Entity.

    Args:
        document: Metadata XML, or an already verified element.
        entity_id: Entity to select from an aggregate.
        now: Reference time for the validUntil check.

    Returns:
        The parsed Entity.

    Raises:
        MetadataError: If the document has no entity id, no role descriptor,
            no signing certificate or an expired validUntil.
    """
    now = now or datetime.now(UTC)
    if isinstance(document, etree._Element):
        root = document
    else:
        try:
            root = parse_xml(document)
        except MessageError as e:
            raise MetadataError(f"Invalid metadata XML: {e}") from e

    descriptor = find_entity_descriptor(root, entity_id)
    found_id = descriptor.get("entityID")
    if not found_id:
        raise MetadataError("EntityDescriptor has no entityID")

    role_descriptor = descriptor.find("md:IDPSSODescriptor", NS)
    role = EntityRole.IDP
    if role_descriptor is None:
        role_descriptor = descriptor.find("md:SPSSODescriptor", NS)
        role = EntityRole.SP
    if role_descriptor is None:
        raise MetadataError(f"{found_id} has no IDPSSODescriptor or SPSSODescriptor")

    try:
        valid_until = None
        for elem in (root, descriptor):
            if elem.get("validUntil"):
                candidate = parse_instant(elem.get("validUntil", ""))
                valid_until = candidate if valid_until is None else min(valid_until, candidate)
    except MessageError as e:
        raise MetadataError(str(e)) from e
    if valid_until is not None and valid_until <= now:
        raise MetadataError(f"Metadata for {found_id} expired at {valid_until.isoformat()}")

    cache_duration = None
    raw_duration = descriptor.get("cacheDuration") or root.get("cacheDuration")
    if raw_duration:
        cache_duration = parse_duration(raw_duration)

    signing = _certificates(role_descriptor, "signing")
    if not signing:
        raise MetadataError(f"{found_id} publishes no signing certificate")

    return Entity(
        entity_id=found_id,
        role=role,
        endpoints=_endpoints(role_descriptor),
        signing_certificates=signing,
        encryption_certificates=_certificates(role_descriptor, "encryption"),
        valid_until=valid_until,
        cache_duration=cache_duration,
        want_authn_requests_signed=role_descriptor.get(
            "WantAuthnRequestsSigned" if role == EntityRole.IDP else "AuthnRequestsSigned"
        ) == "true",
        want_assertions_signed=role_descriptor.get("WantAssertionsSigned") == "true",
        name_id_formats=tuple(
            (f.text or "").strip() for f in role_descriptor.findall("md:NameIDFormat", NS) if f.text
        ),
        metadata_xml=etree.tostring(descriptor, encoding="unicode"),
        loaded_at=now,
    )


def _key_descriptor(parent: etree._Element, cert: x509.Certificate, use: str) -> None:
    key_descriptor = etree.SubElement(parent, f"{{{MD_NS}}}KeyDescriptor")
    key_descriptor.set("use", use)
    key_info = etree.SubElement(key_descriptor, f"{{{DS_NS}}}KeyInfo")
    x509_data = etree.SubElement(key_info, f"{{{DS_NS}}}X509Data")
    etree.SubElement(x509_data, f"{{{DS_NS}}}X509Certificate").text = certificate_base64(cert)


def build_metadata(
    entity_id: str,
    role: EntityRole,
    endpoints: list[Endpoint],
    signing_certificates: list[x509.Certificate],
    encryption_certificates: list[x509.Certificate] | None = None,
    name_id_formats: list[str] | None = None,
    want_signed: bool = True,
    authn_requests_signed: bool = True,
    valid_until: datetime | None = None,
    cache_duration: str | None = "PT1H",
    element_id: str | None = None,
) -> etree._Element:
    """Build an EntityDescriptor element.

    Args:
        entity_id: The entity's ID.
        role: IdP or SP.
        endpoints: Endpoints to publish (SSO/SLO for an IdP, ACS/SLO for an SP).
        signing_certificates: Certificates published with use="signing".
        encryption_certificates: Certificates published with use="encryption".
        name_id_formats: Supported NameID formats.
        want_signed: WantAuthnRequestsSigned (IdP) or WantAssertionsSigned (SP).
        authn_requests_signed: AuthnRequestsSigned flag (SP only).
        valid_until: Optional validUntil.
        cache_duration: Optional cacheDuration (xs:duration).
        element_id: ID attribute, required if the document will be signed.

    Returns:
        The EntityDescriptor element.
    """
    root = etree.Element(f"{{{MD_NS}}}EntityDescriptor", nsmap={"md": MD_NS, "ds": DS_NS})
    root.set("entityID", entity_id)
    if element_id:
        root.set("ID", element_id)
    if valid_until:
        root.set("validUntil", format_instant(valid_until))
    if cache_duration:
        root.set("cacheDuration", cache_duration)

    if role == EntityRole.IDP:
        descriptor = etree.SubElement(root, f"{{{MD_NS}}}IDPSSODescriptor")
        descriptor.set("WantAuthnRequestsSigned", "true" if want_signed else "false")
    else:
        descriptor = etree.SubElement(root, f"{{{MD_NS}}}SPSSODescriptor")
        descriptor.set("AuthnRequestsSigned", "true" if authn_requests_signed else "false")
        descriptor.set("WantAssertionsSigned", "true" if want_signed else "false")
    descriptor.set("protocolSupportEnumeration", "urn:oasis:names:tc:SAML:2.0:protocol")

    for cert in signing_certificates:
        _key_descriptor(descriptor, cert, "signing")
    for cert in encryption_certificates or []:
        _key_descriptor(descriptor, cert, "encryption")

    # Schema order: SLO before NameIDFormat before SSO/ACS
    for endpoint in endpoints:
        if endpoint.purpose in (EndpointPurpose.ARTIFACT, EndpointPurpose.SLO):
            _endpoint_element(descriptor, endpoint)
    for fmt in name_id_formats or []:
        etree.SubElement(descriptor, f"{{{MD_NS}}}NameIDFormat").text = fmt
    for endpoint in endpoints:
        if endpoint.purpose in (EndpointPurpose.SSO, EndpointPurpose.ACS):
            _endpoint_element(descriptor, endpoint)

    return root


def _endpoint_element(descriptor: etree._Element, endpoint: Endpoint) -> None:
    tag = next(name for name, purpose in _ENDPOINT_ELEMENTS.items() if purpose == endpoint.purpose)
    elem = etree.SubElement(descriptor, f"{{{MD_NS}}}{tag}")
    elem.set("Binding", endpoint.binding)
    elem.set("Location", endpoint.location)
    if endpoint.index is not None:
        elem.set("index", str(endpoint.index))
    if endpoint.is_default:
        elem.set("isDefault", "true")
    if endpoint.response_location:
        elem.set("ResponseLocation", endpoint.response_location)
