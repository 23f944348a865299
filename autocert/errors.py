"""
Error types raised by the certificate lifecycle manager.

"Already exists" on directory creation and "not found" on file reads are
normal control flow and never surface as errors. Everything else is fatal
for the current ensure_certificate() call.
"""
from pathlib import Path
from typing import Optional, Union


class AutocertError(Exception):
    """Base class for certificate lifecycle errors."""

    pass


class StorageError(AutocertError):
    """Directory or file access failed."""

    def __init__(self, path: Union[str, Path], reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Storage error for '{path}': {reason}")


class CertificateParseError(AutocertError):
    """Stored certificate bytes could not be parsed."""

    pass


class UnsupportedChallengeTypeError(AutocertError):
    """The CA offered a challenge type other than http-01."""

    def __init__(self, challenge_type: str):
        self.challenge_type = challenge_type
        super().__init__(f"Unsupported ACME challenge type {challenge_type}")


class BindError(AutocertError):
    """The challenge server could not listen on the requested address."""

    def __init__(self, host: str, port: int, reason: str):
        self.host = host
        self.port = port
        self.reason = reason
        super().__init__(f"Cannot listen on {host}:{port}: {reason}")


class ShutdownError(AutocertError):
    """The challenge server could not be closed."""

    def __init__(self, reason: str, host: Optional[str] = None, port: Optional[int] = None):
        self.reason = reason
        self.host = host
        self.port = port
        super().__init__(f"Failed to stop challenge server: {reason}")
