"""
Renewal decision for a stored certificate.

Decides whether the stored key and certificate can be reused or whether a
new certificate has to be issued.
"""
import enum
import logging
from datetime import datetime, timezone
from typing import Optional

from .crypto import key_matches_certificate, read_certificate_info


logger = logging.getLogger(__name__)

DEFAULT_RENEW_THRESHOLD_DAYS = 14


class Decision(enum.Enum):
    REUSE = "reuse"
    RENEW = "renew"


def evaluate(
    key_pem: Optional[bytes],
    cert_pem: Optional[bytes],
    threshold_days: int = DEFAULT_RENEW_THRESHOLD_DAYS,
    now: Optional[datetime] = None,
) -> Decision:
    """
    Decide between reusing the stored pair and renewing it.

    Args:
        key_pem: Stored private key, or None if absent
        cert_pem: Stored certificate chain, or None if absent
        threshold_days: Renew when fewer than this many days remain
        now: Current time, defaults to now in UTC (naive values are taken as UTC)

    Returns:
        Decision.REUSE if the certificate is valid for at least
        threshold_days more, Decision.RENEW otherwise

    Raises:
        CertificateParseError: if the stored certificate cannot be parsed
    """
    if key_pem is None or cert_pem is None:
        logger.info("[AUTOCERT-RENEWAL] No stored certificate, issuing a new one")
        return Decision.RENEW

    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    info = read_certificate_info(cert_pem)
    logger.debug(
        "[AUTOCERT-RENEWAL] Certificate valid from %s to %s",
        info.not_before.isoformat(), info.not_after.isoformat(),
    )

    if not key_matches_certificate(key_pem, cert_pem):
        logger.warning("[AUTOCERT-RENEWAL] Stored private key does not match certificate, renewing")
        return Decision.RENEW

    if info.will_expire_soon(threshold_days, now):
        logger.info(
            "[AUTOCERT-RENEWAL] Certificate expires sooner than %s days (%s days left), renewing",
            threshold_days, info.days_until_expiry(now),
        )
        return Decision.RENEW

    logger.debug(
        "[AUTOCERT-RENEWAL] Certificate renewal not needed yet (%s days left, threshold is %s)",
        info.days_until_expiry(now), threshold_days,
    )
    return Decision.REUSE
