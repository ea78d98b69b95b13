"""XML signature and encryption service.

Wraps signxml for enveloped XML-DSig and the cryptography package for
XML Encryption of assertions (AES-256-GCM content key transported with
RSA-OAEP) and for HTTP-Redirect query-string signatures.

The service holds no mutable state after construction, so one instance is
shared by every request worker.
"""

from __future__ import annotations

import base64
import logging
import os
from collections.abc import Callable, Iterable
from copy import deepcopy
from dataclasses import dataclass
from datetime import UTC, datetime

from cryptography import x509
from cryptography.exceptions import InvalidSignature, InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from lxml import etree
from signxml import DigestAlgorithm, SignatureMethod, XMLSigner, XMLVerifier

from authflow.core.crypto.certs import (
    MIN_RSA_KEY_SIZE,
    CertificateUsage,
    certificate_base64,
    certificate_thumbprint,
    get_certificate_pem,
    get_private_key_pem,
    validate_certificate,
)
from authflow.core.errors import CryptoError

logger = logging.getLogger(__name__)

DS_NS = "http://www.w3.org/2000/09/xmldsig#"
XENC_NS = "http://www.w3.org/2001/04/xmlenc#"
XENC11_NS = "http://www.w3.org/2009/xmlenc11#"

EXC_C14N = "http://www.w3.org/2001/10/xml-exc-c14n#"
AES256_GCM = f"{XENC11_NS}aes256-gcm"
RSA_OAEP = f"{XENC11_NS}rsa-oaep"
MGF1_SHA256 = f"{XENC11_NS}mgf1sha256"
SHA256_DIGEST = f"{XENC_NS}sha256"
ELEMENT_TYPE = f"{XENC_NS}Element"

# Query-string signature algorithm for the HTTP-Redirect binding
REDIRECT_SIG_ALG = "http://www.w3.org/2001/04/xmldsig-more#rsa-sha256"

GCM_IV_BYTES = 12
AES_KEY_BYTES = 32


@dataclass(frozen=True)
class VerifiedSignature:
    """A signature that verified against a trusted certificate.

    Only ``signed_element`` may be read by callers: it is the subtree the
    signature actually covers, re-parsed by the verifier.
    """

    signed_element: etree._Element
    thumbprint: str


def _oaep() -> padding.OAEP:
    return padding.OAEP(
        mgf=padding.MGF1(algorithm=hashes.SHA256()),
        algorithm=hashes.SHA256(),
        label=None,
    )


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


class CryptoService:
    """Signs, verifies, encrypts and decrypts SAML XML."""

    def __init__(
        self,
        min_rsa_key_size: int = MIN_RSA_KEY_SIZE,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            min_rsa_key_size: Weakest RSA key accepted for verification.
            clock: Returns the current time; used for certificate validity.
        """
        self._min_rsa_key_size = min_rsa_key_size
        self._clock = clock or (lambda: datetime.now(UTC))

    def sign(
        self,
        element: etree._Element,
        key: rsa.RSAPrivateKey,
        cert: x509.Certificate,
    ) -> etree._Element:
        """Apply an enveloped signature to a SAML element.

        The signature is placed immediately after the element's ``Issuer``
        child, as the SAML schema requires, and references the element's
        ``ID`` attribute.

        Args:
            element: Element to sign. Must carry an ``ID`` attribute.
            key: Private signing key.
            cert: Certificate embedded in KeyInfo.

        Returns:
            The signed element (a new tree).

        Raises:
            CryptoError: If signing fails.
        """
        element_id = element.get("ID")
        if not element_id:
            raise CryptoError("Cannot sign an element without an ID attribute")

        target = deepcopy(element)
        placeholder = etree.Element(f"{{{DS_NS}}}Signature", nsmap={"ds": DS_NS})
        placeholder.set("Id", "placeholder")
        issuer = next((c for c in target if etree.QName(c).localname == "Issuer"), None)
        if issuer is not None:
            issuer.addnext(placeholder)
        else:
            target.insert(0, placeholder)

        # XMLSigner keeps per-call state, so build one per signature
        signer = XMLSigner(
            signature_algorithm=SignatureMethod.RSA_SHA256,
            digest_algorithm=DigestAlgorithm.SHA256,
            c14n_algorithm=EXC_C14N,
        )
        try:
            signed = signer.sign(
                target,
                key=get_private_key_pem(key).encode("ascii"),
                cert=get_certificate_pem(cert),
                reference_uri=f"#{element_id}",
            )
        except Exception as e:
            raise CryptoError(f"Signing failed: {e}") from e

        logger.debug(f"Signed {etree.QName(element).localname} {element_id}")
        return signed

    def verify(self, element: etree._Element, cert: x509.Certificate) -> bool:
        """Check an enveloped signature against one certificate.

        Fails closed: any error yields ``False``.
        """
        return self._verify_with(element, cert) is not None

    def verify_any(
        self,
        element: etree._Element,
        certificates: Iterable[x509.Certificate],
    ) -> VerifiedSignature | None:
        """Check an enveloped signature against every usable certificate.

        Certificates outside their validity window, or too weak, are skipped.
        The first certificate that verifies wins, which lets an entity rotate
        keys by publishing old and new certificates side by side.

        Args:
            element: Signed element. Its direct ``ds:Signature`` child is used.
            certificates: Candidate signing certificates.

        Returns:
            VerifiedSignature, or None if no certificate verifies.
        """
        if element.find(f"{{{DS_NS}}}Signature") is None:
            return None

        now = self._clock()
        for cert in certificates:
            check = validate_certificate(
                cert,
                CertificateUsage.SIGNING,
                now=now,
                min_rsa_key_size=self._min_rsa_key_size,
            )
            if not check.is_valid:
                logger.debug(f"Skipping certificate {certificate_thumbprint(cert)[:16]}: {check.problems}")
                continue
            signed = self._verify_with(element, cert)
            if signed is not None:
                return VerifiedSignature(signed_element=signed, thumbprint=certificate_thumbprint(cert))
        return None

    def _verify_with(self, element: etree._Element, cert: x509.Certificate) -> etree._Element | None:
        if element.find(f"{{{DS_NS}}}Signature") is None:
            return None
        element_id = element.get("ID")
        try:
            result = XMLVerifier().verify(
                deepcopy(element),
                x509_cert=get_certificate_pem(cert),
                expect_references=1,
            )
        except Exception as e:
            logger.debug(f"Signature verification failed: {type(e).__name__}: {e}")
            return None

        signed = result.signed_xml
        # The reference must point at the element that carries the signature
        if signed is None or signed.tag != element.tag or signed.get("ID") != element_id:
            logger.debug("Signature reference does not cover the enclosing element")
            return None
        return signed

    def encrypt(self, element: etree._Element, recipient_cert: x509.Certificate) -> etree._Element:
        """Encrypt an element for a recipient.

        A fresh AES-256-GCM key and 96-bit IV are generated per call; the key
        is wrapped with RSA-OAEP (SHA-256, MGF1-SHA-256) under the
        recipient's public key.

        Args:
            element: Element to encrypt (typically an Assertion).
            recipient_cert: Recipient's encryption certificate.

        Returns:
            An ``xenc:EncryptedData`` element with an embedded EncryptedKey.

        Raises:
            CryptoError: If the certificate is unusable for encryption.
        """
        check = validate_certificate(
            recipient_cert,
            CertificateUsage.ENCRYPTION,
            now=self._clock(),
            min_rsa_key_size=self._min_rsa_key_size,
        )
        if not check.is_valid:
            raise CryptoError(f"Encryption certificate rejected: {'; '.join(check.problems)}")

        public_key = recipient_cert.public_key()
        if not isinstance(public_key, rsa.RSAPublicKey):
            raise CryptoError("Encryption certificate must carry an RSA key")

        content_key = AESGCM.generate_key(bit_length=AES_KEY_BYTES * 8)
        iv = os.urandom(GCM_IV_BYTES)
        plaintext = etree.tostring(element, encoding="utf-8")
        ciphertext = iv + AESGCM(content_key).encrypt(iv, plaintext, None)
        wrapped_key = public_key.encrypt(content_key, _oaep())

        nsmap = {"xenc": XENC_NS, "ds": DS_NS}
        enc_data = etree.Element(f"{{{XENC_NS}}}EncryptedData", nsmap=nsmap)
        enc_data.set("Type", ELEMENT_TYPE)
        method = etree.SubElement(enc_data, f"{{{XENC_NS}}}EncryptionMethod")
        method.set("Algorithm", AES256_GCM)

        key_info = etree.SubElement(enc_data, f"{{{DS_NS}}}KeyInfo")
        enc_key = etree.SubElement(key_info, f"{{{XENC_NS}}}EncryptedKey")
        key_method = etree.SubElement(enc_key, f"{{{XENC_NS}}}EncryptionMethod")
        key_method.set("Algorithm", RSA_OAEP)
        digest = etree.SubElement(key_method, f"{{{DS_NS}}}DigestMethod")
        digest.set("Algorithm", SHA256_DIGEST)
        mgf = etree.SubElement(key_method, f"{{{XENC11_NS}}}MGF", nsmap={"xenc11": XENC11_NS})
        mgf.set("Algorithm", MGF1_SHA256)
        cert_info = etree.SubElement(enc_key, f"{{{DS_NS}}}KeyInfo")
        x509_data = etree.SubElement(cert_info, f"{{{DS_NS}}}X509Data")
        etree.SubElement(x509_data, f"{{{DS_NS}}}X509Certificate").text = certificate_base64(recipient_cert)
        key_cipher = etree.SubElement(enc_key, f"{{{XENC_NS}}}CipherData")
        etree.SubElement(key_cipher, f"{{{XENC_NS}}}CipherValue").text = _b64(wrapped_key)

        cipher_data = etree.SubElement(enc_data, f"{{{XENC_NS}}}CipherData")
        etree.SubElement(cipher_data, f"{{{XENC_NS}}}CipherValue").text = _b64(ciphertext)
        return enc_data

    def decrypt(self, encrypted_data: etree._Element, private_key: rsa.RSAPrivateKey) -> bytes:
        """Decrypt an ``xenc:EncryptedData`` element.

        Args:
            encrypted_data: The EncryptedData element.
            private_key: Recipient's private key.

        Returns:
            The decrypted XML bytes.

        Raises:
            CryptoError: On unsupported algorithms, missing parts, a wrong key
                or tampered ciphertext.
        """
        ns = {"xenc": XENC_NS, "ds": DS_NS}
        method = encrypted_data.find("xenc:EncryptionMethod", ns)
        if method is None or method.get("Algorithm") != AES256_GCM:
            raise CryptoError("Unsupported or missing content encryption algorithm")

        enc_key = encrypted_data.find("ds:KeyInfo/xenc:EncryptedKey", ns)
        if enc_key is None:
            # EncryptedKey may also be a sibling inside EncryptedAssertion
            parent = encrypted_data.getparent()
            enc_key = parent.find("xenc:EncryptedKey", ns) if parent is not None else None
        if enc_key is None:
            raise CryptoError("EncryptedKey not found")

        key_method = enc_key.find("xenc:EncryptionMethod", ns)
        if key_method is None or key_method.get("Algorithm") != RSA_OAEP:
            raise CryptoError("Unsupported or missing key transport algorithm")

        key_value = enc_key.findtext("xenc:CipherData/xenc:CipherValue", namespaces=ns)
        data_value = encrypted_data.findtext("xenc:CipherData/xenc:CipherValue", namespaces=ns)
        if not key_value or not data_value:
            raise CryptoError("CipherValue missing")

        try:
            content_key = private_key.decrypt(base64.b64decode(key_value), _oaep())
            blob = base64.b64decode(data_value)
            if len(content_key) != AES_KEY_BYTES or len(blob) <= GCM_IV_BYTES:
                raise CryptoError("Malformed encrypted content")
            return AESGCM(content_key).decrypt(blob[:GCM_IV_BYTES], blob[GCM_IV_BYTES:], None)
        except CryptoError:
            raise
        except (InvalidTag, ValueError, TypeError) as e:
            raise CryptoError(f"Decryption failed: {type(e).__name__}") from e

    def sign_bytes(self, data: bytes, key: rsa.RSAPrivateKey) -> bytes:
        """RSA-SHA256 signature over raw bytes (HTTP-Redirect binding)."""
        return key.sign(data, padding.PKCS1v15(), hashes.SHA256())

    def verify_bytes(
        self,
        data: bytes,
        signature: bytes,
        certificates: Iterable[x509.Certificate],
    ) -> str | None:
        """Verify an RSA-SHA256 signature over raw bytes.

        Returns:
            Thumbprint of the certificate that verified, or None.
        """
        now = self._clock()
        for cert in certificates:
            if not validate_certificate(
                cert, CertificateUsage.SIGNING, now=now, min_rsa_key_size=self._min_rsa_key_size
            ).is_valid:
                continue
            public_key = cert.public_key()
            if not isinstance(public_key, rsa.RSAPublicKey):
                continue
            try:
                public_key.verify(signature, data, padding.PKCS1v15(), hashes.SHA256())
            except InvalidSignature:
                continue
            return certificate_thumbprint(cert)
        return None
