"""Cryptographic primitives: certificates, XML signatures and encryption."""

from authflow.core.crypto.certs import (
    CertificateError,
    CertificateUsage,
    certificate_thumbprint,
    load_certificate,
    load_private_key,
    validate_certificate,
)
from authflow.core.crypto.service import CryptoService, VerifiedSignature

__all__ = [
    "CertificateError",
    "CertificateUsage",
    "CryptoService",
    "VerifiedSignature",
    "certificate_thumbprint",
    "load_certificate",
    "load_private_key",
    "validate_certificate",
]
