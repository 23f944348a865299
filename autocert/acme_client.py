"""
ACME client for automated certificate issuance.

Implements the parts of the ACME protocol (RFC 8555) needed to obtain a
certificate for a CSR: account registration, order creation, challenge
validation through caller-supplied hooks, finalization and download.
"""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional, Sequence

import httpx
import josepy as jose
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding

from .crypto import csr_der, csr_domains, load_account_key


logger = logging.getLogger(__name__)


# ACME directory URLs
LETSENCRYPT_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"
LETSENCRYPT_PRODUCTION = "https://acme-v02.api.letsencrypt.org/directory"

DIRECTORY = {
    "letsencrypt": {
        "staging": LETSENCRYPT_STAGING,
        "production": LETSENCRYPT_PRODUCTION,
    },
}

HTTP_01 = "http-01"

BAD_NONCE = "urn:ietf:params:acme:error:badNonce"

# Upper bound on a Retry-After wait, in seconds
MAX_RETRY_AFTER = 300.0


def resolve_directory_url(production: bool = False, directory_url: Optional[str] = None) -> str:
    """
    Pick the ACME directory to talk to.

    An explicit directory_url wins; otherwise the Let's Encrypt production or
    staging endpoint is selected. Staging is the default.
    """
    if directory_url:
        return directory_url
    return LETSENCRYPT_PRODUCTION if production else LETSENCRYPT_STAGING


class AcmeError(Exception):
    """An ACME request failed or the CA rejected the order."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        problem: Optional[dict] = None,
    ):
        self.status_code = status_code
        self.problem = problem or {}
        super().__init__(message)

    @property
    def problem_type(self) -> Optional[str]:
        return self.problem.get("type")


def _parse_json(resp: httpx.Response, url: str) -> dict:
    """Decode an ACME response body that must be a JSON object."""
    try:
        body = resp.json()
    except ValueError as e:
        raise AcmeError(
            f"Invalid response from {url}: body is not JSON",
            status_code=resp.status_code,
        ) from e
    if not isinstance(body, dict):
        raise AcmeError(
            f"Invalid response from {url}: expected a JSON object",
            status_code=resp.status_code,
        )
    return body


def _require(body: dict, key: str, what: str):
    try:
        return body[key]
    except KeyError:
        raise AcmeError(f"{what} response is missing '{key}'") from None


@dataclass
class Challenge:
    """A challenge offered inside an authorization."""

    type: str
    url: str
    token: str
    status: str = "pending"
    error: Optional[dict] = None

    @classmethod
    def from_json(cls, data: dict) -> "Challenge":
        return cls(
            type=data["type"],
            url=data["url"],
            token=data.get("token", ""),
            status=data.get("status", "pending"),
            error=data.get("error"),
        )


@dataclass
class Authorization:
    """An authorization for one identifier of an order."""

    url: str
    identifier: str
    status: str
    challenges: list[Challenge] = field(default_factory=list)
    wildcard: bool = False

    @classmethod
    def from_json(cls, url: str, data: dict) -> "Authorization":
        return cls(
            url=url,
            identifier=data.get("identifier", {}).get("value", ""),
            status=data["status"],
            challenges=[Challenge.from_json(c) for c in data.get("challenges", [])],
            wildcard=data.get("wildcard", False),
        )


class ChallengeHandler(ABC):
    """
    Receives challenges while an order is being validated.

    on_challenge_offered() is awaited before the CA is asked to validate the
    challenge; on_challenge_withdrawn() is awaited after validation finished,
    whether it succeeded or not.
    """

    @abstractmethod
    async def on_challenge_offered(
        self,
        authz: Authorization,
        challenge: Challenge,
        key_authorization: str,
    ) -> None:
        pass

    @abstractmethod
    async def on_challenge_withdrawn(
        self,
        authz: Authorization,
        challenge: Challenge,
        key_authorization: str,
    ) -> None:
        pass


class ACMEClient:
    """
    ACME client bound to one directory and one account key.

    Only RSA account keys are supported (requests are signed with RS256).
    """

    def __init__(
        self,
        directory_url: str,
        account_key: bytes,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
        poll_interval: float = 2.0,
        max_polls: int = 30,
    ):
        """
        Initialize ACME client.

        Args:
            directory_url: ACME directory URL
            account_key: PEM-encoded RSA account key
            transport: Optional httpx transport (used by tests)
            timeout: Per-request timeout in seconds
            poll_interval: Seconds between status polls
            max_polls: Maximum number of status polls per object
        """
        private_key = load_account_key(account_key)

        self.directory_url = directory_url
        self.account_key = jose.JWKRSA(key=private_key)
        self.poll_interval = poll_interval
        self.max_polls = max_polls

        self._private_key = private_key
        self._transport = transport
        self._timeout = timeout
        self._http: Optional[httpx.AsyncClient] = None

        self.directory: dict = {}
        self.account_url: Optional[str] = None
        self.nonce: Optional[str] = None

    @property
    def thumbprint(self) -> str:
        """Account key thumbprint (RFC 7638) used in key authorizations."""
        return jose.json_util.encode_b64jose(self.account_key.thumbprint())

    def key_authorization(self, token: str) -> str:
        return f"{token}.{self.thumbprint}"

    async def auto(
        self,
        csr: bytes,
        email: str,
        terms_of_service_agreed: bool,
        handler: ChallengeHandler,
        challenge_priority: Sequence[str] = (HTTP_01,),
    ) -> bytes:
        """
        Run the whole issuance flow for a CSR.

        Args:
            csr: PEM-encoded certificate signing request
            email: Contact email for the ACME account
            terms_of_service_agreed: Agree to the CA's terms of service
            handler: Receives challenge offer/withdraw notifications
            challenge_priority: Acceptable challenge types, most preferred first

        Returns:
            PEM-encoded certificate chain

        Raises:
            AcmeError: if the CA rejects a request or validation fails
        """
        async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as http:
            self._http = http
            try:
                await self._fetch_directory()
                await self._register_account(email, terms_of_service_agreed)

                domains = csr_domains(csr)
                logger.info("[AUTOCERT-ACME] Creating certificate order for %s", ", ".join(domains))
                order, order_url = await self._create_order(domains)

                for auth_url in _require(order, "authorizations", "Order"):
                    await self._authorize(auth_url, handler, challenge_priority)

                order = await self._poll(order_url, ("ready", "valid"), "Order")
                if order["status"] == "ready":
                    logger.info("[AUTOCERT-ACME] Finalizing certificate order")
                    finalize_payload = {"csr": jose.json_util.encode_b64jose(csr_der(csr))}
                    await self._post(_require(order, "finalize", "Order"), finalize_payload)
                    order = await self._poll(order_url, ("valid",), "Order")

                cert = await self._download_certificate(_require(order, "certificate", "Order"))
                logger.info("[AUTOCERT-ACME] Certificate issued for %s", ", ".join(domains))
                return cert
            finally:
                self._http = None

    async def _fetch_directory(self) -> None:
        resp = await self._http.get(self.directory_url)
        if resp.status_code >= 400:
            raise AcmeError(
                f"Failed to fetch ACME directory {self.directory_url}: {resp.status_code}",
                status_code=resp.status_code,
            )
        directory = _parse_json(resp, self.directory_url)
        missing = [k for k in ("newNonce", "newAccount", "newOrder") if k not in directory]
        if missing:
            raise AcmeError(
                f"ACME directory {self.directory_url} is missing {', '.join(missing)}",
                status_code=resp.status_code,
            )
        self.directory = directory
        logger.debug("[AUTOCERT-ACME] Fetched ACME directory from %s", self.directory_url)

    async def _get_nonce(self) -> str:
        """Get a fresh nonce from the ACME server."""
        resp = await self._http.head(self.directory["newNonce"])
        try:
            return resp.headers["Replay-Nonce"]
        except KeyError:
            raise AcmeError("ACME server did not return a nonce", status_code=resp.status_code)

    def _sign_request(
        self,
        url: str,
        payload: Optional[dict],
        use_jwk: bool = False,
    ) -> dict:
        """
        Sign a request with the account key.

        Args:
            url: The URL being requested
            payload: The payload to sign (or None for POST-as-GET)
            use_jwk: Include full JWK instead of kid (for registration)
        """
        if payload is None:
            payload_b64 = ""
        else:
            payload_b64 = jose.json_util.encode_b64jose(
                json.dumps(payload).encode("utf-8")
            )

        protected = {
            "alg": "RS256",
            "nonce": self.nonce,
            "url": url,
        }

        if use_jwk:
            protected["jwk"] = self.account_key.public_key().to_partial_json()
        else:
            protected["kid"] = self.account_url

        protected_b64 = jose.json_util.encode_b64jose(
            json.dumps(protected).encode("utf-8")
        )

        signature_input = f"{protected_b64}.{payload_b64}".encode("utf-8")
        signature = self._private_key.sign(
            signature_input,
            padding.PKCS1v15(),
            hashes.SHA256(),
        )

        return {
            "protected": protected_b64,
            "payload": payload_b64,
            "signature": jose.json_util.encode_b64jose(signature),
        }

    async def _post(
        self,
        url: str,
        payload: Optional[dict] = None,
        use_jwk: bool = False,
        accept: Optional[str] = None,
        retry_bad_nonce: bool = True,
    ) -> httpx.Response:
        """Make a signed ACME request and return the raw response."""
        if self.nonce is None:
            self.nonce = await self._get_nonce()

        headers = {"Content-Type": "application/jose+json"}
        if accept:
            headers["Accept"] = accept

        resp = await self._http.post(
            url,
            content=json.dumps(self._sign_request(url, payload, use_jwk)),
            headers=headers,
        )
        self.nonce = resp.headers.get("Replay-Nonce")

        if resp.status_code >= 400:
            problem = {}
            if resp.content:
                try:
                    problem = resp.json()
                except ValueError:
                    problem = {"detail": resp.text}
            if problem.get("type") == BAD_NONCE and retry_bad_nonce:
                logger.debug("[AUTOCERT-ACME] Nonce rejected, retrying %s", url)
                return await self._post(url, payload, use_jwk, accept, retry_bad_nonce=False)
            raise AcmeError(
                f"ACME request to {url} failed: {resp.status_code} - {problem.get('detail', problem)}",
                status_code=resp.status_code,
                problem=problem,
            )
        return resp

    async def _request(self, url: str, payload: Optional[dict] = None) -> dict:
        resp = await self._post(url, payload)
        return _parse_json(resp, url) if resp.content else {}

    async def _register_account(self, email: str, terms_of_service_agreed: bool) -> None:
        """Register or fetch existing ACME account."""
        payload = {
            "termsOfServiceAgreed": terms_of_service_agreed,
            "contact": [f"mailto:{email}"],
        }
        resp = await self._post(self.directory["newAccount"], payload, use_jwk=True)
        self.account_url = resp.headers.get("Location")
        logger.info("[AUTOCERT-ACME] ACME account registered/retrieved: %s", self.account_url)

    async def _create_order(self, domains: list[str]) -> tuple[dict, str]:
        order_payload = {
            "identifiers": [{"type": "dns", "value": d} for d in domains],
        }
        resp = await self._post(self.directory["newOrder"], order_payload)
        order_url = resp.headers.get("Location")
        if not order_url:
            raise AcmeError("ACME server did not return an order URL", status_code=resp.status_code)
        return _parse_json(resp, url=self.directory["newOrder"]), order_url

    def _select_challenge(
        self,
        authz: Authorization,
        challenge_priority: Sequence[str],
    ) -> Challenge:
        for challenge_type in challenge_priority:
            for challenge in authz.challenges:
                if challenge.type == challenge_type:
                    return challenge
        offered = [c.type for c in authz.challenges]
        raise AcmeError(
            f"None of the challenge types {list(challenge_priority)} offered for "
            f"{authz.identifier} (offered: {offered})"
        )

    async def _authorize(
        self,
        auth_url: str,
        handler: ChallengeHandler,
        challenge_priority: Sequence[str],
    ) -> None:
        try:
            authz = Authorization.from_json(auth_url, await self._request(auth_url))
        except (KeyError, TypeError, AttributeError) as e:
            raise AcmeError(f"Malformed authorization {auth_url}: {e!r}") from e
        if authz.status == "valid":
            logger.debug("[AUTOCERT-ACME] Authorization already valid for %s", authz.identifier)
            return

        challenge = self._select_challenge(authz, challenge_priority)
        key_authorization = self.key_authorization(challenge.token)

        await handler.on_challenge_offered(authz, challenge, key_authorization)
        try:
            logger.info(
                "[AUTOCERT-ACME] Responding to %s challenge for %s",
                challenge.type, authz.identifier,
            )
            await self._request(challenge.url, {})
            result = await self._poll(auth_url, ("valid", "invalid"), "Authorization")
        finally:
            await handler.on_challenge_withdrawn(authz, challenge, key_authorization)

        if result["status"] == "invalid":
            detail = "Unknown error"
            for ch in result.get("challenges", []):
                if ch.get("type") == challenge.type and ch.get("error"):
                    detail = ch["error"].get("detail", detail)
            raise AcmeError(f"Challenge failed for {authz.identifier}: {detail}")
        logger.info("[AUTOCERT-ACME] Authorization valid for %s", authz.identifier)

    async def _poll(self, url: str, done: Sequence[str], what: str) -> dict:
        """
        Poll an order or authorization until it reaches one of the done states.

        Waits as long as the CA's Retry-After header asks between polls,
        poll_interval otherwise.
        """
        for _ in range(self.max_polls):
            resp = await self._post(url)
            body = _parse_json(resp, url) if resp.content else {}
            status = body.get("status")
            if status in done:
                return body
            if status == "invalid":
                raise AcmeError(f"{what} invalid: {body.get('error', {}).get('detail', url)}")
            await asyncio.sleep(self._retry_after(resp))
        raise AcmeError(f"{what} timeout")

    def _retry_after(self, resp: httpx.Response) -> float:
        """Seconds to wait before the next poll."""
        value = resp.headers.get("Retry-After")
        if value is None:
            return self.poll_interval
        value = value.strip()
        if value.isdigit():
            return min(float(value), MAX_RETRY_AFTER)
        try:
            retry_at = parsedate_to_datetime(value)
        except (TypeError, ValueError):
            logger.debug("[AUTOCERT-ACME] Ignoring malformed Retry-After header: %s", value)
            return self.poll_interval
        if retry_at.tzinfo is None:
            retry_at = retry_at.replace(tzinfo=timezone.utc)
        delay = (retry_at - datetime.now(timezone.utc)).total_seconds()
        return min(max(delay, 0.0), MAX_RETRY_AFTER)

    async def _download_certificate(self, url: str) -> bytes:
        resp = await self._post(url, None, accept="application/pem-certificate-chain")
        return resp.content
