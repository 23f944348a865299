"""
HTTP-01 challenge responder.

A short-lived aiohttp server that answers ACME HTTP-01 validation requests
from a token map owned by the server instance. It lives only for the
duration of one issuance attempt.
"""
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from aiohttp import web

from .acme_client import HTTP_01, Authorization, Challenge, ChallengeHandler
from .errors import BindError, ShutdownError, UnsupportedChallengeTypeError


logger = logging.getLogger(__name__)

WELL_KNOWN_PATH = "/.well-known/acme-challenge/"


class HTTPChallengeServer:
    """
    Standalone HTTP server for ACME HTTP-01 challenges.

    Inbound traffic for the domain on port 80 has to reach host:port.
    """

    def __init__(self, host: str, port: int = 80, tokens: Optional[dict[str, str]] = None):
        """
        Initialize the challenge server.

        Args:
            host: Host to bind to
            port: Port to bind to (usually 80 for HTTP-01, 0 for any free port)
            tokens: Token -> key authorization map served by this instance
        """
        self.host = host
        self.port = port
        self.tokens: dict[str, str] = tokens if tokens is not None else {}
        self._runner: Optional[web.AppRunner] = None

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    def register_token(self, token: str, key_authorization: str) -> None:
        """Serve key_authorization for token until it is unregistered."""
        self.tokens[token] = key_authorization
        logger.info("[AUTOCERT-CHALLENGE] Registered HTTP-01 challenge: %s", token)

    def unregister_token(self, token: str) -> None:
        if self.tokens.pop(token, None) is not None:
            logger.info("[AUTOCERT-CHALLENGE] Cleared HTTP-01 challenge: %s", token)

    async def start(self) -> None:
        """
        Start listening.

        Raises:
            BindError: if the address cannot be bound
        """
        if self._runner is not None:
            raise BindError(self.host, self.port, "challenge server already running")

        app = web.Application()
        app.router.add_route("*", "/{path:.*}", self._handle_request)

        runner = web.AppRunner(app, access_log=None)
        await runner.setup()

        site = web.TCPSite(runner, self.host, self.port)
        try:
            await site.start()
        except OSError as e:
            await runner.cleanup()
            raise BindError(self.host, self.port, str(e)) from e

        if self.port == 0 and runner.addresses:
            self.port = runner.addresses[0][1]
        self._runner = runner
        logger.info(
            "[AUTOCERT-CHALLENGE] ACME challenge server running at http://%s:%s/",
            self.host, self.port,
        )

    async def stop(self) -> None:
        """
        Close the listener and forget all tokens.

        Raises:
            ShutdownError: if the server is not running or fails to close
        """
        runner = self._runner
        if runner is None:
            raise ShutdownError("challenge server is not running", self.host, self.port)

        self._runner = None
        self.tokens.clear()
        try:
            await runner.cleanup()
        except Exception as e:
            raise ShutdownError(str(e), self.host, self.port) from e
        logger.info("[AUTOCERT-CHALLENGE] HTTP challenge server stopped")

    @asynccontextmanager
    async def serving(self) -> AsyncIterator["HTTPChallengeServer"]:
        """
        Run the server for the duration of a block.

        The server is always stopped on exit. A shutdown failure after the
        block raised is logged and the block's error propagates; otherwise
        the shutdown failure propagates.
        """
        await self.start()
        try:
            yield self
        except BaseException:
            try:
                await self.stop()
            except ShutdownError as e:
                logger.error("[AUTOCERT-CHALLENGE] %s", e)
            raise
        await self.stop()

    async def _handle_request(self, request: web.Request) -> web.Response:
        """Handle any request; only known challenge tokens get a 200."""
        logger.debug("[AUTOCERT-CHALLENGE] HTTP request received: %s %s", request.method, request.path_qs)

        if request.method == "GET" and request.path.startswith(WELL_KNOWN_PATH):
            token = request.path[len(WELL_KNOWN_PATH):]
            key_authorization = self.tokens.get(token)
            if key_authorization is not None:
                logger.info("[AUTOCERT-CHALLENGE] Serving challenge response for token: %s", token)
                return web.Response(
                    body=key_authorization.encode("utf-8"),
                    content_type="application/octet-stream",
                )
            logger.warning("[AUTOCERT-CHALLENGE] Challenge not found for token: %s", token)

        return web.Response(status=404)


class HTTP01ChallengeHooks(ChallengeHandler):
    """Publishes offered http-01 challenges on an HTTPChallengeServer."""

    def __init__(self, server: HTTPChallengeServer):
        self.server = server

    async def on_challenge_offered(
        self,
        authz: Authorization,
        challenge: Challenge,
        key_authorization: str,
    ) -> None:
        if challenge.type != HTTP_01:
            raise UnsupportedChallengeTypeError(challenge.type)
        self.server.register_token(challenge.token, key_authorization)

    async def on_challenge_withdrawn(
        self,
        authz: Authorization,
        challenge: Challenge,
        key_authorization: str,
    ) -> None:
        if challenge.type != HTTP_01:
            raise UnsupportedChallengeTypeError(challenge.type)
        self.server.unregister_token(challenge.token)
