"""SAML 2.0 namespaces, bindings and well-known URIs."""

from __future__ import annotations

from enum import StrEnum

from authflow.core.crypto.service import DS_NS, XENC_NS
from authflow.core.protocol import Binding

SAMLP_NS = "urn:oasis:names:tc:SAML:2.0:protocol"
SAML_NS = "urn:oasis:names:tc:SAML:2.0:assertion"
MD_NS = "urn:oasis:names:tc:SAML:2.0:metadata"
XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"
XS_NS = "http://www.w3.org/2001/XMLSchema"
SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"

# Prefix map used for ElementPath lookups
NS = {
    "samlp": SAMLP_NS,
    "saml": SAML_NS,
    "md": MD_NS,
    "ds": DS_NS,
    "xenc": XENC_NS,
    "xsi": XSI_NS,
    "soap": SOAP_ENV_NS,
}

SAML_VERSION = "2.0"

SUBJECT_CONFIRMATION_BEARER = "urn:oasis:names:tc:SAML:2.0:cm:bearer"
ATTRNAME_FORMAT_URI = "urn:oasis:names:tc:SAML:2.0:attrname-format:uri"
ATTRNAME_FORMAT_BASIC = "urn:oasis:names:tc:SAML:2.0:attrname-format:basic"

LOGOUT_REASON_USER = "urn:oasis:names:tc:SAML:2.0:logout:user"
LOGOUT_REASON_ADMIN = "urn:oasis:names:tc:SAML:2.0:logout:admin"


class StatusCode(StrEnum):
    """Top-level and common second-level SAML status codes."""

    SUCCESS = "urn:oasis:names:tc:SAML:2.0:status:Success"
    REQUESTER = "urn:oasis:names:tc:SAML:2.0:status:Requester"
    RESPONDER = "urn:oasis:names:tc:SAML:2.0:status:Responder"
    VERSION_MISMATCH = "urn:oasis:names:tc:SAML:2.0:status:VersionMismatch"
    AUTHN_FAILED = "urn:oasis:names:tc:SAML:2.0:status:AuthnFailed"
    NO_PASSIVE = "urn:oasis:names:tc:SAML:2.0:status:NoPassive"
    REQUEST_DENIED = "urn:oasis:names:tc:SAML:2.0:status:RequestDenied"
    PARTIAL_LOGOUT = "urn:oasis:names:tc:SAML:2.0:status:PartialLogout"
    UNKNOWN_PRINCIPAL = "urn:oasis:names:tc:SAML:2.0:status:UnknownPrincipal"


class NameIDFormat(StrEnum):
    """Common NameID formats."""

    UNSPECIFIED = "urn:oasis:names:tc:SAML:1.1:nameid-format:unspecified"
    EMAIL = "urn:oasis:names:tc:SAML:1.1:nameid-format:emailAddress"
    PERSISTENT = "urn:oasis:names:tc:SAML:2.0:nameid-format:persistent"
    TRANSIENT = "urn:oasis:names:tc:SAML:2.0:nameid-format:transient"
    ENTITY = "urn:oasis:names:tc:SAML:2.0:nameid-format:entity"


class AuthnContextClass(StrEnum):
    """Common authentication context classes."""

    UNSPECIFIED = "urn:oasis:names:tc:SAML:2.0:ac:classes:unspecified"
    PASSWORD = "urn:oasis:names:tc:SAML:2.0:ac:classes:Password"
    PASSWORD_PROTECTED_TRANSPORT = "urn:oasis:names:tc:SAML:2.0:ac:classes:PasswordProtectedTransport"
    X509 = "urn:oasis:names:tc:SAML:2.0:ac:classes:X509"


STATUS_DESCRIPTIONS = {
    StatusCode.SUCCESS: "The request was processed successfully",
    StatusCode.REQUESTER: "The request was invalid or could not be processed",
    StatusCode.RESPONDER: "The responder encountered an error processing the request",
    StatusCode.VERSION_MISMATCH: "The SAML version is not supported",
    StatusCode.AUTHN_FAILED: "The identity provider could not authenticate the principal",
    StatusCode.NO_PASSIVE: "Passive authentication was requested but is not possible",
    StatusCode.REQUEST_DENIED: "The responder refused to process the request",
    StatusCode.PARTIAL_LOGOUT: "The principal was logged out from some but not all sessions",
    StatusCode.UNKNOWN_PRINCIPAL: "The principal specified in the request was not recognized",
}


def get_status_description(status_code: str) -> str:
    """Get a human-readable description for a status code."""
    for status in StatusCode:
        if status.value == status_code:
            return STATUS_DESCRIPTIONS[status]
    return status_code
