"""
Credential storage.

Keeps the ACME account key, the domain private key and the certificate chain
as opaque PEM blobs in one owner-only directory.
"""
import enum
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from .errors import StorageError


logger = logging.getLogger(__name__)

ACCOUNT_KEY_FILE = "account.pem"
PRIVATE_KEY_FILE = "key.pem"
CERTIFICATE_FILE = "cert.pem"

DIRECTORY_MODE = 0o700
OWNER_ONLY_MODE = 0o600
SHARED_READ_MODE = 0o644


class ReadStatus(enum.Enum):
    FOUND = "found"
    ABSENT = "absent"
    FAILED = "failed"


@dataclass(frozen=True)
class ReadResult:
    """Outcome of reading one stored file."""

    status: ReadStatus
    data: Optional[bytes] = None
    error: Optional[OSError] = None

    @property
    def found(self) -> bool:
        return self.status is ReadStatus.FOUND


def ensure_directory(path: Union[str, Path]) -> None:
    """
    Create the data directory with owner-only permissions if it is missing.

    Raises:
        StorageError: on any error other than the directory already existing
    """
    path = Path(path)
    try:
        path.mkdir(mode=DIRECTORY_MODE, parents=True)
        logger.info("[AUTOCERT-STORAGE] Created data directory %s", path)
    except FileExistsError:
        pass
    except OSError as e:
        raise StorageError(path, f"cannot create directory: {e}") from e


def read_file(path: Union[str, Path]) -> ReadResult:
    """Read a file, reporting absence separately from failure."""
    try:
        return ReadResult(ReadStatus.FOUND, data=Path(path).read_bytes())
    except FileNotFoundError:
        return ReadResult(ReadStatus.ABSENT)
    except OSError as e:
        return ReadResult(ReadStatus.FAILED, error=e)


def read_if_present(path: Union[str, Path]) -> Optional[bytes]:
    """
    Read a file if it exists.

    Returns:
        The file contents, or None if the file does not exist

    Raises:
        StorageError: if the file exists but cannot be read
    """
    result = read_file(path)
    if result.status is ReadStatus.FAILED:
        raise StorageError(path, f"cannot read file: {result.error}") from result.error
    return result.data


def _stage(path: Path, data: bytes, mode: int) -> Path:
    """Write data to a temporary file next to path and return its location."""
    try:
        fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    except OSError as e:
        raise StorageError(path, f"cannot create temporary file: {e}") from e

    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(temp_path, mode)
    except OSError as e:
        _discard(temp_path)
        raise StorageError(path, f"cannot write file: {e}") from e
    return temp_path


def _commit(temp_path: Path, path: Path) -> None:
    try:
        os.replace(temp_path, path)
    except OSError as e:
        _discard(temp_path)
        raise StorageError(path, f"cannot replace file: {e}") from e


def _discard(temp_path: Path) -> None:
    try:
        temp_path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("[AUTOCERT-STORAGE] Could not remove temporary file %s: %s", temp_path, e)


def write_file(path: Union[str, Path], data: bytes, owner_only: bool = True) -> None:
    """
    Write a file through a temporary file and an atomic rename.

    Args:
        path: Destination path
        data: File contents
        owner_only: Restrict the file to the owning user (0600)

    Raises:
        StorageError: on any I/O failure
    """
    path = Path(path)
    mode = OWNER_ONLY_MODE if owner_only else SHARED_READ_MODE
    _commit(_stage(path, data, mode), path)


class CredentialStore:
    """The account key, private key and certificate of one domain."""

    def __init__(self, data_dir: Union[str, Path]):
        self.data_dir = Path(data_dir)
        self.account_key_path = self.data_dir / ACCOUNT_KEY_FILE
        self.key_path = self.data_dir / PRIVATE_KEY_FILE
        self.cert_path = self.data_dir / CERTIFICATE_FILE

    def ensure_directory(self) -> None:
        ensure_directory(self.data_dir)

    def load_pair(self) -> tuple[Optional[bytes], Optional[bytes]]:
        """
        Load the private key and certificate.

        Returns:
            Tuple of (key_pem, cert_pem); either may be None if absent
        """
        key_pem = read_if_present(self.key_path)
        cert_pem = read_if_present(self.cert_path)
        if key_pem is not None and cert_pem is not None:
            logger.debug(
                "[AUTOCERT-STORAGE] Read private key from '%s' and certificate from '%s'",
                self.key_path, self.cert_path,
            )
        return key_pem, cert_pem

    def save_pair(self, key_pem: bytes, cert_pem: bytes) -> None:
        """
        Persist a new private key and certificate.

        Both files are staged before either is renamed into place, so a
        failure while writing leaves the previous pair untouched.
        """
        staged_key = _stage(self.key_path, key_pem, OWNER_ONLY_MODE)
        try:
            staged_cert = _stage(self.cert_path, cert_pem, OWNER_ONLY_MODE)
        except StorageError:
            _discard(staged_key)
            raise

        try:
            _commit(staged_key, self.key_path)
        except StorageError:
            _discard(staged_cert)
            raise
        _commit(staged_cert, self.cert_path)
        logger.info(
            "[AUTOCERT-STORAGE] Saved private key to '%s' and certificate to '%s'",
            self.key_path, self.cert_path,
        )

    def load_account_key(self) -> Optional[bytes]:
        account_key = read_if_present(self.account_key_path)
        if account_key is not None:
            logger.debug("[AUTOCERT-STORAGE] Read account key from '%s'", self.account_key_path)
        return account_key

    def save_account_key(self, account_key: bytes) -> None:
        write_file(self.account_key_path, account_key)
        logger.info("[AUTOCERT-STORAGE] Saved account key to '%s'", self.account_key_path)
