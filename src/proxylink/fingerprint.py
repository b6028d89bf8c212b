"""
Certificate fingerprinting.

A fingerprint identifies a certificate by its public key only: the SHA-256
digest of the DER encoded SubjectPublicKeyInfo, encoded as standard base64
with padding and no line breaks. A renewed certificate that keeps its key
keeps its fingerprint.
"""

import base64
import binascii
import hashlib
import hmac
from typing import Union

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization

from .errors import InvalidCertificate

CertificateInput = Union[x509.Certificate, bytes, str]

FINGERPRINT_DIGEST_SIZE = hashlib.sha256().digest_size
PEM_MARKER = b"-----BEGIN CERTIFICATE-----"


def load_certificate(data: CertificateInput) -> x509.Certificate:
    """
    Parse a certificate from PEM or DER.

    Args:
        data: A parsed certificate, PEM text, or PEM/DER bytes

    Returns:
        The parsed X.509 certificate

    Raises:
        InvalidCertificate: If the data is not a certificate
    """
    if isinstance(data, x509.Certificate):
        return data
    if isinstance(data, str):
        data = data.encode('utf-8')
    if not isinstance(data, bytes):
        raise InvalidCertificate(f"Unsupported certificate input: {type(data).__name__}")

    try:
        if PEM_MARKER in data:
            return x509.load_pem_x509_certificate(data)
        return x509.load_der_x509_certificate(data)
    except ValueError as e:
        raise InvalidCertificate(f"Could not parse certificate: {e}") from e


def fingerprint(certificate: CertificateInput) -> str:
    """
    Compute the public key fingerprint of a certificate.

    Args:
        certificate: A parsed certificate, or PEM/DER data

    Returns:
        Base64 encoded SHA-256 of the DER encoded public key

    Raises:
        InvalidCertificate: If the certificate cannot be parsed
    """
    cert = load_certificate(certificate)
    try:
        public_key = cert.public_key()
    except (ValueError, UnsupportedAlgorithm) as e:
        raise InvalidCertificate(f"Unsupported certificate public key: {e}") from e

    der = public_key.public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return base64.b64encode(hashlib.sha256(der).digest()).decode('ascii')


def is_valid_fingerprint(value: str) -> bool:
    """Check a string is a canonically encoded SHA-256 fingerprint."""
    if not isinstance(value, str) or not value:
        return False
    try:
        digest = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return False
    return len(digest) == FINGERPRINT_DIGEST_SIZE


def fingerprints_match(expected: str, actual: str) -> bool:
    """Compare two fingerprints in constant time."""
    return hmac.compare_digest(expected.encode('ascii', 'replace'), actual.encode('ascii', 'replace'))
