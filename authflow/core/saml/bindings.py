"""SAML transport bindings.

HTTP-Redirect (raw DEFLATE, base64 and URL encoding, optionally with a
query-string signature), HTTP-POST (base64 in an auto-submitting form) and
SOAP 1.1 envelopes for back-channel logout.
"""

from __future__ import annotations

import base64
import binascii
import zlib
from dataclasses import dataclass
from urllib.parse import unquote_plus, urlencode

from cryptography.hazmat.primitives.asymmetric import rsa
from lxml import etree
from markupsafe import escape

from authflow.core.crypto.service import REDIRECT_SIG_ALG, CryptoService
from authflow.core.errors import BindingError
from authflow.core.saml.constants import NS, SOAP_ENV_NS
from authflow.core.saml.messages import parse_xml, serialize

DEFAULT_MAX_BYTES = 256 * 1024


@dataclass
class RedirectMessage:
    """A message decoded from an HTTP-Redirect query string."""

    parameter: str
    xml: bytes
    relay_state: str | None = None
    sig_alg: str | None = None
    signature: bytes | None = None
    signed_data: bytes | None = None

    @property
    def is_signed(self) -> bool:
        """Whether the query string carried a signature."""
        return self.signature is not None


def deflate_and_encode(xml: bytes) -> str:
    """Raw DEFLATE then base64, as the Redirect binding requires."""
    # zlib.compress adds a 2-byte header and 4-byte checksum; strip both
    compressed = zlib.compress(xml)[2:-4]
    return base64.b64encode(compressed).decode("ascii")


def _b64decode(value: str) -> bytes:
    try:
        return base64.b64decode("".join(value.split()), validate=True)
    except (binascii.Error, ValueError) as e:
        raise BindingError(f"Invalid base64 encoding: {e}") from e


def decode_and_inflate(value: str, max_bytes: int = DEFAULT_MAX_BYTES) -> bytes:
    """Reverse of :func:`deflate_and_encode`, with bounded output.

    Raises:
        BindingError: On bad encoding, bad compression or when the inflated
            size exceeds ``max_bytes``.
    """
    raw = _b64decode(value)
    inflater = zlib.decompressobj(-15)
    try:
        xml = inflater.decompress(raw, max_bytes + 1)
    except zlib.error as e:
        raise BindingError(f"Invalid DEFLATE data: {e}") from e
    if len(xml) > max_bytes or inflater.unconsumed_tail:
        raise BindingError(f"Inflated message exceeds {max_bytes} bytes")
    return xml


def build_redirect_url(
    location: str,
    parameter: str,
    xml: bytes,
    relay_state: str | None = None,
    signing_key: rsa.RSAPrivateKey | None = None,
    crypto: CryptoService | None = None,
) -> str:
    """Build an HTTP-Redirect binding URL.

    Args:
        location: Endpoint URL.
        parameter: ``SAMLRequest`` or ``SAMLResponse``.
        xml: Serialized message. Must not carry an enveloped signature.
        relay_state: Opaque RelayState value.
        signing_key: When given, a query-string signature is added.
        crypto: Crypto service used for the query-string signature.

    Returns:
        Full redirect URL.
    """
    params = [(parameter, deflate_and_encode(xml))]
    if relay_state:
        params.append(("RelayState", relay_state))
    if signing_key is not None:
        params.append(("SigAlg", REDIRECT_SIG_ALG))
        signed_data = urlencode(params).encode("ascii")
        signature = (crypto or CryptoService()).sign_bytes(signed_data, signing_key)
        params.append(("Signature", base64.b64encode(signature).decode("ascii")))

    separator = "&" if "?" in location else "?"
    return f"{location}{separator}{urlencode(params)}"


def decode_redirect(query_string: str, max_bytes: int = DEFAULT_MAX_BYTES) -> RedirectMessage:
    """Decode an HTTP-Redirect query string.

    The raw query string is required because a query-string signature covers
    the parameters exactly as they were URL-encoded by the sender.

    Raises:
        BindingError: If no SAML parameter is present or decoding fails.
    """
    raw: dict[str, str] = {}
    for part in query_string.split("&"):
        if not part:
            continue
        name, _, value = part.partition("=")
        raw.setdefault(unquote_plus(name), value)

    parameter = "SAMLRequest" if "SAMLRequest" in raw else "SAMLResponse" if "SAMLResponse" in raw else None
    if parameter is None:
        raise BindingError("Query string carries neither SAMLRequest nor SAMLResponse")

    message = RedirectMessage(
        parameter=parameter,
        xml=decode_and_inflate(unquote_plus(raw[parameter]), max_bytes),
        relay_state=unquote_plus(raw["RelayState"]) if "RelayState" in raw else None,
    )

    if "Signature" in raw:
        if "SigAlg" not in raw:
            raise BindingError("Signature present without SigAlg")
        message.sig_alg = unquote_plus(raw["SigAlg"])
        message.signature = _b64decode(unquote_plus(raw["Signature"]))
        signed_parts = [f"{parameter}={raw[parameter]}"]
        if "RelayState" in raw:
            signed_parts.append(f"RelayState={raw['RelayState']}")
        signed_parts.append(f"SigAlg={raw['SigAlg']}")
        message.signed_data = "&".join(signed_parts).encode("ascii")

    return message


def encode_post(xml: bytes) -> str:
    """Base64-encode a message for the HTTP-POST binding."""
    return base64.b64encode(xml).decode("ascii")


def decode_post(value: str, max_bytes: int = DEFAULT_MAX_BYTES) -> bytes:
    """Decode an HTTP-POST binding parameter.

    Raises:
        BindingError: On bad encoding or an oversized message.
    """
    # base64 inflates by 4/3; reject before decoding
    if len(value) > (max_bytes * 4) // 3 + 4:
        raise BindingError(f"Message exceeds {max_bytes} bytes")
    xml = _b64decode(value)
    if len(xml) > max_bytes:
        raise BindingError(f"Message exceeds {max_bytes} bytes")
    return xml


def render_post_form(
    action: str,
    parameter: str,
    xml: bytes,
    relay_state: str | None = None,
) -> str:
    """Render an auto-submitting HTML form for the HTTP-POST binding."""
    relay_input = ""
    if relay_state:
        relay_input = f'\n        <input type="hidden" name="RelayState" value="{escape(relay_state)}"/>'

    return f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Continue</title></head>
<body onload="document.forms[0].submit()">
    <form method="post" action="{escape(action)}">
        <input type="hidden" name="{escape(parameter)}" value="{escape(encode_post(xml))}"/>{relay_input}
        <noscript><button type="submit">Continue</button></noscript>
    </form>
</body>
</html>"""


def wrap_soap(element: etree._Element) -> bytes:
    """Wrap a SAML message in a SOAP 1.1 envelope."""
    envelope = etree.Element(f"{{{SOAP_ENV_NS}}}Envelope", nsmap={"soap": SOAP_ENV_NS})
    body = etree.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Body")
    body.append(element)
    return serialize(envelope)


def unwrap_soap(data: bytes, max_bytes: int = DEFAULT_MAX_BYTES) -> etree._Element:
    """Extract the SAML message from a SOAP 1.1 envelope.

    Raises:
        BindingError: If the envelope has no body or the body is empty.
    """
    envelope = parse_xml(data, max_bytes=max_bytes)
    body = envelope.find("soap:Body", NS)
    if etree.QName(envelope).localname != "Envelope" or body is None:
        raise BindingError("Not a SOAP envelope")
    children = [child for child in body if isinstance(child.tag, str)]
    if len(children) != 1:
        raise BindingError("SOAP body must carry exactly one message")
    if etree.QName(children[0]).localname == "Fault":
        raise BindingError(f"SOAP fault: {children[0].findtext('faultstring') or 'unknown'}")
    return children[0]
