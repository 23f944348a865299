"""
Shared fixtures: throwaway CA, certificate factories and account keys.
"""
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from autocert.crypto import create_account_key


def _private_pem(key) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


@pytest.fixture(scope="session")
def ca_key():
    """Signing key of the test CA."""
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def account_key_pem() -> bytes:
    """A small RSA account key, generated once per session."""
    return create_account_key(key_size=2048)


@pytest.fixture
def issue_certificate(ca_key):
    """Factory signing a certificate for a public key with the test CA."""

    def _issue(public_key, common_name="example.test", days=90, not_after=None) -> bytes:
        now = datetime.now(timezone.utc)
        not_after = not_after or now + timedelta(days=days)
        cert = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
            .issuer_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Test CA")]))
            .public_key(public_key)
            .serial_number(x509.random_serial_number())
            .not_valid_before(min(now, not_after) - timedelta(days=1))
            .not_valid_after(not_after)
            .add_extension(
                x509.SubjectAlternativeName([x509.DNSName(common_name)]),
                critical=False,
            )
            .sign(ca_key, hashes.SHA256())
        )
        return cert.public_bytes(serialization.Encoding.PEM)

    return _issue


@pytest.fixture
def make_pair(issue_certificate):
    """Factory returning (key_pem, cert_pem) for a fresh EC key."""

    def _make(common_name="example.test", days=90, not_after=None) -> tuple[bytes, bytes]:
        key = ec.generate_private_key(ec.SECP256R1())
        cert_pem = issue_certificate(key.public_key(), common_name, days, not_after)
        return _private_pem(key), cert_pem

    return _make


@pytest.fixture
def data_dir(tmp_path):
    """Path of a data directory that does not exist yet."""
    return tmp_path / "autocert"
