"""
Certificate lifecycle orchestration.

ensure_certificate() returns a usable (key, certificate) pair for one domain,
reusing the stored pair while it is valid and issuing a new one through ACME
HTTP-01 validation when it is missing or about to expire.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .acme_client import HTTP_01, ACMEClient, resolve_directory_url
from .challenges import HTTP01ChallengeHooks, HTTPChallengeServer
from .crypto import create_account_key, create_csr, load_account_key
from .errors import StorageError
from .renewal import Decision, evaluate
from .settings import AutocertSettings
from .storage import CredentialStore


logger = logging.getLogger(__name__)


@dataclass
class CertificatePair:
    """A private key and the certificate chain issued for it."""

    key: bytes
    cert: bytes


def load_or_create_account_key(store: CredentialStore) -> bytes:
    """
    Load the ACME account key, generating and saving one if absent.

    Raises:
        StorageError: if the stored account key is unreadable or not an RSA key
    """
    account_key = store.load_account_key()
    if account_key is not None:
        try:
            load_account_key(account_key)
        except ValueError as e:
            raise StorageError(store.account_key_path, f"invalid account key: {e}") from e
        return account_key

    account_key = create_account_key()
    store.save_account_key(account_key)
    logger.info("[AUTOCERT] Generated and saved account key at '%s'", store.account_key_path)
    return account_key


async def obtain_certificate(
    account_key: bytes,
    settings: AutocertSettings,
    directory_url: str,
) -> CertificatePair:
    """
    Issue a new certificate for settings.common_name.

    The challenge server listens for the whole ACME exchange and is stopped
    whether issuance succeeds or fails.

    Args:
        account_key: PEM-encoded ACME account key
        settings: Domain, contact and challenge server options
        directory_url: ACME directory to issue from

    Returns:
        CertificatePair with a fresh private key and its certificate chain
    """
    server = HTTPChallengeServer(settings.bind_host, settings.server_port, tokens={})
    client = ACMEClient(directory_url, account_key)
    key, csr = create_csr(settings.common_name)

    async with server.serving():
        logger.info("[AUTOCERT] Performing certificate request for %s", settings.common_name)
        cert = await client.auto(
            csr=csr,
            email=settings.email,
            terms_of_service_agreed=True,
            handler=HTTP01ChallengeHooks(server),
            challenge_priority=[HTTP_01],
        )

    return CertificatePair(key=key, cert=cert)


async def ensure_certificate(
    settings: AutocertSettings,
    now: Optional[datetime] = None,
) -> CertificatePair:
    """
    Return a valid private key and certificate for settings.common_name.

    Reuses the stored pair unless it is missing, inconsistent or expires
    within settings.renew_threshold_days; otherwise issues a new certificate
    and overwrites the stored pair.

    Args:
        settings: Operation configuration
        now: Current time for the renewal decision (defaults to now)

    Returns:
        CertificatePair

    Raises:
        StorageError: if the data directory or its files are not accessible
        CertificateParseError: if the stored certificate cannot be parsed
        BindError: if the challenge server cannot listen
        ShutdownError: if the challenge server cannot be closed
        UnsupportedChallengeTypeError: if a non-HTTP-01 challenge is offered
        AcmeError: if issuance fails
    """
    store = CredentialStore(settings.data_dir)
    store.ensure_directory()

    existing_key, existing_cert = store.load_pair()
    decision = evaluate(existing_key, existing_cert, settings.renew_threshold_days, now)
    if decision is Decision.REUSE:
        logger.info("[AUTOCERT] Reusing stored certificate for %s", settings.common_name)
        return CertificatePair(key=existing_key, cert=existing_cert)

    account_key = load_or_create_account_key(store)
    directory_url = resolve_directory_url(settings.production, settings.directory_url)
    logger.info("[AUTOCERT] Using ACME directory %s", directory_url)

    pair = await obtain_certificate(account_key, settings, directory_url)
    store.save_pair(pair.key, pair.cert)
    return pair
