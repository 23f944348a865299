"""
Key, CSR and certificate helpers.

Generates account and domain keys, builds CSRs, and extracts validity
information from issued certificates.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, Literal, Optional

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import ExtensionOID, NameOID

from .errors import CertificateParseError


logger = logging.getLogger(__name__)


@dataclass
class CertificateInfo:
    """Information extracted from a certificate."""

    subject: str
    issuer: str
    serial_number: str
    not_before: datetime
    not_after: datetime
    domains: list[str] = field(default_factory=list)

    def days_until_expiry(self, now: Optional[datetime] = None) -> int:
        """Get days until certificate expires."""
        delta = self.not_after - (now or datetime.now(timezone.utc))
        return max(0, delta.days)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(timezone.utc)) > self.not_after

    def will_expire_soon(self, threshold_days: int, now: Optional[datetime] = None) -> bool:
        """Check if the certificate expires within threshold_days of now."""
        now = now or datetime.now(timezone.utc)
        return now > self.not_after - timedelta(days=threshold_days)


def _private_bytes(key) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def create_account_key(key_size: int = 4096) -> bytes:
    """Generate a new RSA account key, PEM encoded."""
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=key_size,
    )
    return _private_bytes(private_key)


def load_account_key(account_key_pem: bytes) -> rsa.RSAPrivateKey:
    """
    Load a PEM-encoded ACME account key.

    Raises:
        ValueError: if the data is not a PEM private key or the key is not RSA
    """
    try:
        private_key = serialization.load_pem_private_key(account_key_pem, password=None)
    except (TypeError, UnsupportedAlgorithm) as e:
        raise ValueError(f"Cannot load account key: {e}") from e
    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise ValueError("ACME account key must be an RSA key")
    return private_key


def create_private_key(key_type: Literal["rsa", "ec"] = "ec"):
    """Generate a domain key object."""
    if key_type == "ec":
        return ec.generate_private_key(ec.SECP256R1())
    if key_type == "rsa":
        return rsa.generate_private_key(
            public_exponent=65537,
            key_size=2048,
        )
    raise ValueError(f"Unsupported key type: {key_type}")


def create_csr(
    common_name: str,
    alt_names: Optional[Iterable[str]] = None,
    key_type: Literal["rsa", "ec"] = "ec",
) -> tuple[bytes, bytes]:
    """
    Generate a fresh domain key and a CSR for it.

    Args:
        common_name: Subject CN, also included as the first SAN
        alt_names: Additional DNS names
        key_type: Type of key to generate (RSA or EC)

    Returns:
        Tuple of (key_pem, csr_pem)
    """
    cert_key = create_private_key(key_type)

    domains = [common_name]
    for name in alt_names or ():
        if name not in domains:
            domains.append(name)

    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(
            x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
        )
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]),
            critical=False,
        )
        .sign(cert_key, hashes.SHA256())
    )

    return _private_bytes(cert_key), csr.public_bytes(serialization.Encoding.PEM)


def _common_name(name: x509.Name) -> str:
    cn_attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    if cn_attrs:
        return str(cn_attrs[0].value)
    return ""


def _dns_names(subject_cn: str, extensions: x509.Extensions) -> list[str]:
    domains = []
    if subject_cn:
        domains.append(subject_cn)
    try:
        san_ext = extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
    except x509.ExtensionNotFound:
        return domains
    for name in san_ext.value.get_values_for_type(x509.DNSName):
        if name not in domains:
            domains.append(name)
    return domains


def csr_domains(csr_pem: bytes) -> list[str]:
    """Get the DNS names a CSR asks for (subject CN first, then SANs)."""
    csr = x509.load_pem_x509_csr(csr_pem)
    return _dns_names(_common_name(csr.subject), csr.extensions)


def csr_der(csr_pem: bytes) -> bytes:
    return x509.load_pem_x509_csr(csr_pem).public_bytes(serialization.Encoding.DER)


def read_certificate_info(cert_pem: bytes) -> CertificateInfo:
    """
    Parse the leaf certificate of a PEM chain.

    Raises:
        CertificateParseError: if the bytes are not a PEM certificate
    """
    try:
        cert = x509.load_pem_x509_certificate(cert_pem)
    except ValueError as e:
        raise CertificateParseError(f"Cannot parse certificate: {e}") from e

    subject_cn = _common_name(cert.subject)
    return CertificateInfo(
        subject=subject_cn,
        issuer=_common_name(cert.issuer),
        serial_number=format(cert.serial_number, "x"),
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        domains=_dns_names(subject_cn, cert.extensions),
    )


def key_matches_certificate(key_pem: bytes, cert_pem: bytes) -> bool:
    """
    Check that a private key belongs to the certificate's public key.

    An unloadable key counts as a mismatch. An unparsable certificate raises
    CertificateParseError.
    """
    try:
        cert = x509.load_pem_x509_certificate(cert_pem)
    except ValueError as e:
        raise CertificateParseError(f"Cannot parse certificate: {e}") from e

    try:
        key = serialization.load_pem_private_key(key_pem, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        logger.warning("[AUTOCERT] Cannot load stored private key: %s", e)
        return False

    public_format = serialization.PublicFormat.SubjectPublicKeyInfo
    return (
        cert.public_key().public_bytes(serialization.Encoding.DER, public_format)
        == key.public_key().public_bytes(serialization.Encoding.DER, public_format)
    )
