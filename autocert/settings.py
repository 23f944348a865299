"""
Certificate lifecycle configuration.

Holds the options of one ensure_certificate() call and loads them from a
JSON file.
"""
import json
import logging
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, Field, field_validator

from .errors import StorageError
from .renewal import DEFAULT_RENEW_THRESHOLD_DAYS


logger = logging.getLogger(__name__)

DEFAULT_SERVER_PORT = 80


class AutocertSettings(BaseModel):
    """Configuration for one domain's certificate."""

    # Persistence root for account.pem, key.pem and cert.pem
    data_dir: Path

    # Domain name for the certificate (e.g., www.example.com)
    common_name: str

    # Contact email for ACME account
    email: str

    # Where the HTTP-01 challenge server listens (host defaults to common_name)
    server_host: Optional[str] = None
    server_port: int = Field(default=DEFAULT_SERVER_PORT, ge=0, le=65535)

    # Use Let's Encrypt production instead of staging
    production: bool = False

    # Renew when fewer than this many days are left
    renew_threshold_days: int = Field(default=DEFAULT_RENEW_THRESHOLD_DAYS, ge=0)

    # Explicit ACME directory, overrides production/staging
    directory_url: Optional[str] = None

    @field_validator("common_name")
    @classmethod
    def validate_common_name(cls, v: str) -> str:
        """Normalise the domain name."""
        v = v.strip().lower()
        # Remove protocol if accidentally included
        if v.startswith("http://"):
            v = v[7:]
        elif v.startswith("https://"):
            v = v[8:]
        v = v.rstrip("/")
        if not v:
            raise ValueError("common_name must not be empty")
        return v

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        v = v.strip().lower()
        if not v:
            raise ValueError("email must not be empty")
        return v

    @field_validator("server_host", "directory_url")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            v = v.strip()
        return v or None

    @property
    def bind_host(self) -> str:
        """Host the challenge server binds to."""
        return self.server_host or self.common_name


def load_settings(path: Union[str, Path], **overrides) -> AutocertSettings:
    """
    Load settings from a JSON file.

    Args:
        path: JSON file holding an object of settings
        **overrides: Values replacing those from the file (None is ignored)

    Raises:
        StorageError: if the file cannot be read or is not a JSON object
        pydantic.ValidationError: if the settings are invalid
    """
    path = Path(path)
    logger.info("[AUTOCERT-SETTINGS] Loading settings from %s", path)
    try:
        data = json.loads(path.read_text())
    except OSError as e:
        raise StorageError(path, f"cannot read settings: {e}") from e
    except ValueError as e:
        raise StorageError(path, f"invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise StorageError(path, "settings must be a JSON object")

    data.update({k: v for k, v in overrides.items() if v is not None})
    return AutocertSettings(**data)
