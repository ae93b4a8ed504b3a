"""Self-signed certificate generation for data plane client authentication."""

import base64
import datetime
import logging
from typing import Any, Dict, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

logger = logging.getLogger(__name__)

DEFAULT_VALIDITY_DAYS = 365


def generate_self_signed(common_name: str, validity_days: int = DEFAULT_VALIDITY_DAYS) -> Tuple[bytes, bytes]:
    """Generate an ECDSA P-256 key and a self-signed client certificate.

    Returns (certificate PEM, private key PEM).
    """
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name[:64])])
    now = datetime.datetime.now(datetime.timezone.utc)

    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(minutes=5))
        .not_valid_after(now + datetime.timedelta(days=validity_days))
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=False,
                key_encipherment=False,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CLIENT_AUTH]), critical=False)
        .sign(key, hashes.SHA256())
    )

    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    logger.debug(f"Generated self-signed certificate for {common_name}")
    return cert_pem, key_pem


def load_certificate(cert_pem: bytes) -> Optional[x509.Certificate]:
    """Parse a PEM certificate, returning None if it is not one."""
    try:
        return x509.load_pem_x509_certificate(cert_pem)
    except ValueError:
        return None


def is_expired(cert_pem: bytes) -> bool:
    cert = load_certificate(cert_pem)
    if cert is None:
        return True
    return cert.not_valid_after_utc <= datetime.datetime.now(datetime.timezone.utc)


def decode_tls_secret(secret: Dict[str, Any]) -> Tuple[Optional[bytes], Optional[bytes]]:
    """Return the (certificate, key) PEM bytes stored in a TLS Secret."""
    data = secret.get("data") or {}
    cert = data.get("tls.crt")
    key = data.get("tls.key")
    return (
        base64.b64decode(cert) if cert else None,
        base64.b64decode(key) if key else None,
    )
