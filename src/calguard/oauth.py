"""Interactive Google OAuth consent flow and the startup authenticator.

The authenticator either reuses a saved token set or runs a one-time
browser consent exchange:

  1. Build the Google authorization URL (fixed scopes, offline access,
     loopback redirect ``http://localhost:3000/callback``).
  2. Bind a one-shot HTTP listener on the loopback port.
  3. Try to open the URL in the default browser.  If that fails the URL is
     logged so the user can open it by hand.
  4. Wait for exactly one request on ``/callback``:
       - no ``code``: respond 400 and fail with
         :class:`MissingAuthorizationCodeError` (no token exchange happens);
       - ``code`` present: exchange it at the token endpoint, respond 200 and
         resolve with the :class:`TokenSet`;
       - exchange fails: respond 500 and fail with the exchange error.
  5. Close the listener (always, exactly once) and persist the token set.

The listener is held by an async context manager so every exit path
(success, rejection, timeout, cancellation) releases the port.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import socket
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Protocol
from urllib.parse import urlencode

import httpx
import uvicorn
from fastapi import FastAPI, Query
from fastapi.responses import HTMLResponse, PlainTextResponse, Response
from pydantic import ValidationError

from calguard.browser import BrowserLauncher, default_browser_launcher
from calguard.calendar import GoogleCalendarClient
from calguard.google_credentials import (
    ClientCredentials,
    TokenSet,
    load_client_credentials,
    load_token_set,
    save_token_set,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Google OAuth constants
# ---------------------------------------------------------------------------

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"

SCOPES: tuple[str, ...] = (
    "https://www.googleapis.com/auth/calendar.readonly",
    "https://www.googleapis.com/auth/calendar.events",
)

CALLBACK_HOSTS: tuple[str, ...] = ("127.0.0.1", "::1")
CALLBACK_PORT = 3000
CALLBACK_PATH = "/callback"

_SUCCESS_PAGE = (
    "<!doctype html><html><head><meta charset='utf-8'><title>Authorized</title></head>"
    "<body><h1>Authorization complete. You can close this tab.</h1></body></html>"
)

TokenExchanger = Callable[[str], Awaitable[TokenSet]]


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class AuthorizationError(Exception):
    """Base error for the interactive consent flow."""


class MissingAuthorizationCodeError(AuthorizationError):
    """The callback request carried no authorization code."""


class TokenExchangeError(AuthorizationError):
    """The authorization code could not be exchanged for tokens."""


class AuthorizationTimeoutError(AuthorizationError):
    """No callback arrived before the configured timeout."""


# ---------------------------------------------------------------------------
# URL + token exchange
# ---------------------------------------------------------------------------


def build_authorization_url(
    credentials: ClientCredentials,
    scopes: Sequence[str] = SCOPES,
) -> str:
    """Return the Google consent URL for *credentials*."""
    params = {
        "client_id": credentials.client_id,
        "redirect_uri": credentials.redirect_uri,
        "response_type": "code",
        "scope": " ".join(scopes),
        "access_type": "offline",
    }
    return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"


async def exchange_code_for_tokens(
    code: str,
    credentials: ClientCredentials,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> TokenSet:
    """Exchange an authorization code for a :class:`TokenSet`.

    Raises
    ------
    TokenExchangeError
        On network failure, a non-200 response, or an unusable payload.
        The raw response body is never included (it may carry secrets).
    """
    payload = {
        "code": code,
        "client_id": credentials.client_id,
        "client_secret": credentials.client_secret,
        "redirect_uri": credentials.redirect_uri,
        "grant_type": "authorization_code",
    }

    try:
        if http_client is not None:
            response = await http_client.post(GOOGLE_TOKEN_URL, data=payload)
        else:
            async with httpx.AsyncClient(timeout=15.0) as client:
                response = await client.post(GOOGLE_TOKEN_URL, data=payload)
    except httpx.TransportError as exc:
        raise TokenExchangeError(f"Network error during token exchange: {exc}") from exc

    if response.status_code != 200:
        raise TokenExchangeError(f"Token endpoint returned HTTP {response.status_code}")

    try:
        token_data = response.json()
    except ValueError as exc:
        raise TokenExchangeError("Token endpoint returned invalid JSON") from exc

    if not isinstance(token_data, dict):
        raise TokenExchangeError("Token endpoint returned an unexpected JSON payload shape")

    try:
        tokens = TokenSet.from_token_response(token_data)
    except ValidationError as exc:
        raise TokenExchangeError("Token response is missing a non-empty access_token") from exc

    if tokens.refresh_token is None:
        logger.warning("Token response did not include a refresh token; re-consent may be needed")
    return tokens


# ---------------------------------------------------------------------------
# Callback receiver (single fulfilment)
# ---------------------------------------------------------------------------


class CallbackReceiver:
    """Resolves exactly once with the outcome of the first callback request.

    Later requests get HTTP 409 and do not affect the outcome.
    """

    def __init__(self, exchange: TokenExchanger, *, path: str = CALLBACK_PATH) -> None:
        self._exchange = exchange
        self._result: asyncio.Future[TokenSet] = asyncio.get_running_loop().create_future()
        self._claimed = False
        self.app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)
        self.app.add_api_route(path, self._handle_callback, methods=["GET"])

    @property
    def done(self) -> bool:
        return self._result.done()

    def abort(self, exc: BaseException) -> None:
        """Fail the pending wait unless an outcome was already recorded."""
        self._claimed = True
        if not self._result.done():
            self._result.set_exception(exc)

    async def wait(self, timeout: float | None = None) -> TokenSet:
        try:
            return await asyncio.wait_for(self._result, timeout)
        except TimeoutError:
            raise AuthorizationTimeoutError(
                f"No authorization callback received within {timeout:g} seconds"
            ) from None

    async def _handle_callback(
        self,
        code: str | None = Query(default=None),
        error: str | None = Query(default=None),
    ) -> Response:
        if self._claimed:
            return PlainTextResponse("Authorization already handled.", status_code=409)
        self._claimed = True

        if not code:
            if error:
                logger.warning("Authorization callback reported provider error: %s", error)
            if not self._result.done():
                self._result.set_exception(
                    MissingAuthorizationCodeError("No authorization code received")
                )
            return PlainTextResponse("No code received", status_code=400)

        try:
            tokens = await self._exchange(code)
        except Exception as exc:
            logger.warning("Token exchange failed: %s", exc)
            if not self._result.done():
                self._result.set_exception(exc)
            return PlainTextResponse("Token exchange failed", status_code=500)

        if not self._result.done():
            self._result.set_result(tokens)
        return HTMLResponse(_SUCCESS_PAGE)


# ---------------------------------------------------------------------------
# Loopback listener
# ---------------------------------------------------------------------------


class CallbackListener(Protocol):
    async def start(self) -> None: ...

    async def close(self) -> None: ...


ListenerFactory = Callable[[CallbackReceiver], CallbackListener]


_NO_LOOPBACK_ERRNOS = frozenset({errno.EADDRNOTAVAIL, errno.EAFNOSUPPORT})


def _bind_loopback(host: str, port: int, *, required: bool) -> socket.socket | None:
    """Bind a listening socket on *host*; None when an optional family is missing."""
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    try:
        sock = socket.socket(family, socket.SOCK_STREAM)
    except OSError as exc:
        if required or exc.errno not in _NO_LOOPBACK_ERRNOS:
            raise
        logger.debug("No %s socket support; skipping", host)
        return None

    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if family == socket.AF_INET6:
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
        sock.bind((host, port))
        sock.listen()
        sock.setblocking(False)
    except OSError as exc:
        sock.close()
        if required or exc.errno not in _NO_LOOPBACK_ERRNOS:
            raise
        logger.debug("Loopback address %s unavailable; skipping", host)
        return None
    return sock


class LoopbackServer:
    """uvicorn server on pre-bound loopback sockets.

    The redirect URI names ``localhost``, which may resolve to either
    ``127.0.0.1`` or ``::1``, so the port is bound on both loopback families.
    IPv4 is required; IPv6 is skipped when the host has no IPv6 loopback.

    Binding happens in :meth:`start`, so a busy port surfaces as ``OSError``
    in the caller.  If the server stops before the receiver has an outcome,
    the receiver is aborted so the waiting flow does not hang.
    """

    def __init__(
        self,
        receiver: CallbackReceiver,
        *,
        hosts: Sequence[str] = CALLBACK_HOSTS,
        port: int = CALLBACK_PORT,
    ) -> None:
        if not hosts:
            raise ValueError("hosts must not be empty")
        self._receiver = receiver
        self._hosts = tuple(hosts)
        self._port = port
        self._sockets: list[socket.socket] = []
        self._server = uvicorn.Server(
            uvicorn.Config(
                receiver.app,
                host=self._hosts[0],
                port=port,
                lifespan="off",
                log_config=None,
                access_log=False,
                log_level="warning",
                timeout_graceful_shutdown=5,
            )
        )
        self._task: asyncio.Task[None] | None = None

    @property
    def port(self) -> int:
        """Bound port (useful when constructed with ``port=0``)."""
        if not self._sockets:
            return self._port
        return self._sockets[0].getsockname()[1]

    @property
    def bound_hosts(self) -> tuple[str, ...]:
        return tuple(sock.getsockname()[0] for sock in self._sockets)

    async def start(self) -> None:
        try:
            for index, host in enumerate(self._hosts):
                # Later families reuse the port picked for the first one.
                port = self._port if index == 0 else self.port
                sock = _bind_loopback(host, port, required=index == 0)
                if sock is not None:
                    self._sockets.append(sock)
        except OSError:
            self._close_sockets()
            raise

        self._task = asyncio.create_task(self._server.serve(sockets=list(self._sockets)))
        self._task.add_done_callback(self._on_serve_done)
        while not self._server.started:
            if self._task.done():
                break
            await asyncio.sleep(0.01)
        logger.debug("Callback listener bound on %s port %d", self.bound_hosts, self.port)

    async def close(self) -> None:
        self._server.should_exit = True
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        self._close_sockets()
        logger.debug("Callback listener closed")

    def _close_sockets(self) -> None:
        for sock in self._sockets:
            sock.close()
        self._sockets = []

    def _on_serve_done(self, task: asyncio.Task[None]) -> None:
        if self._receiver.done:
            return
        if not task.cancelled() and task.exception() is not None:
            cause: BaseException = task.exception()  # type: ignore[assignment]
            self._receiver.abort(
                AuthorizationError(f"Callback listener failed: {cause}")
            )
        else:
            self._receiver.abort(
                AuthorizationError("Callback listener stopped before authorization completed")
            )


@asynccontextmanager
async def listening(listener: CallbackListener) -> AsyncIterator[CallbackListener]:
    """Hold *listener* open for the duration of the block; close it once on exit."""
    await listener.start()
    try:
        yield listener
    finally:
        await listener.close()


# ---------------------------------------------------------------------------
# Consent flow + authenticator
# ---------------------------------------------------------------------------


async def _open_browser(launcher: BrowserLauncher, auth_url: str) -> None:
    if not await launcher.open(auth_url):
        logger.warning("Could not open a browser. Open this URL manually:\n%s", auth_url)


async def run_consent_flow(
    credentials: ClientCredentials,
    *,
    exchange: TokenExchanger | None = None,
    launcher: BrowserLauncher | None = None,
    listener_factory: ListenerFactory | None = None,
    timeout: float | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> TokenSet:
    """Run the browser consent exchange and return the obtained token set.

    Parameters
    ----------
    exchange:
        Code-to-token exchange; defaults to :func:`exchange_code_for_tokens`.
    launcher:
        Browser launcher; defaults to the one for the current platform.
    listener_factory:
        Builds the callback listener for a receiver; defaults to
        :class:`LoopbackServer` on loopback port 3000.
    timeout:
        Seconds to wait for the callback; ``None`` waits indefinitely.
    """
    async def _default_exchange(code: str) -> TokenSet:
        return await exchange_code_for_tokens(code, credentials, http_client=http_client)

    exchange = exchange or _default_exchange
    launcher = launcher or default_browser_launcher()
    listener_factory = listener_factory or LoopbackServer
    auth_url = build_authorization_url(credentials)

    receiver = CallbackReceiver(exchange)
    async with listening(listener_factory(receiver)):
        logger.warning("Authorization required; opening the browser for consent")
        launch = asyncio.create_task(_open_browser(launcher, auth_url))
        try:
            tokens = await receiver.wait(timeout)
        finally:
            # The callback outcome never waits on the launcher.
            if not launch.done():
                launch.cancel()
            await asyncio.gather(launch, return_exceptions=True)

    logger.info("Authorization complete (scope=%s)", tokens.scope)
    return tokens


async def authorize(
    credentials_path: str | Path,
    token_store_path: str | Path,
    *,
    http_client: httpx.AsyncClient | None = None,
    launcher: BrowserLauncher | None = None,
    listener_factory: ListenerFactory | None = None,
    timeout: float | None = None,
) -> GoogleCalendarClient:
    """Return an authenticated calendar client, running consent if needed.

    Raises
    ------
    CredentialsFileError
        If the client credentials file is missing or malformed.
    AuthorizationError
        If the interactive flow fails.
    """
    credentials = load_client_credentials(credentials_path)

    tokens = load_token_set(token_store_path)
    if tokens is not None:
        logger.info("Using saved token set from %s", token_store_path)
    else:
        tokens = await run_consent_flow(
            credentials,
            launcher=launcher,
            listener_factory=listener_factory,
            timeout=timeout,
            http_client=http_client,
        )
        save_token_set(token_store_path, tokens)

    return GoogleCalendarClient(credentials, tokens, http_client=http_client)
