"""
Automatic TLS certificate management for a single domain.

Provides:
- Reuse of a stored certificate while it is valid
- Let's Encrypt (or any ACME CA) issuance via HTTP-01 challenges
- Owner-only storage of account key, private key and certificate
"""

from .acme_client import DIRECTORY, ACMEClient, AcmeError, resolve_directory_url
from .challenges import HTTPChallengeServer
from .errors import (
    AutocertError,
    BindError,
    CertificateParseError,
    ShutdownError,
    StorageError,
    UnsupportedChallengeTypeError,
)
from .manager import CertificatePair, ensure_certificate
from .renewal import Decision
from .settings import AutocertSettings, load_settings

__version__ = "0.1.0"

__all__ = [
    "ACMEClient",
    "AcmeError",
    "AutocertError",
    "AutocertSettings",
    "BindError",
    "CertificatePair",
    "CertificateParseError",
    "DIRECTORY",
    "Decision",
    "HTTPChallengeServer",
    "ShutdownError",
    "StorageError",
    "UnsupportedChallengeTypeError",
    "ensure_certificate",
    "load_settings",
    "resolve_directory_url",
]
