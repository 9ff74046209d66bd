"""Redirect receivers.

A receiver brings the authorization code back from the user's browser,
either through a one-shot HTTP server on localhost or by asking the user
to paste the code into the terminal.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
import socket
import threading
import webbrowser
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ClassVar
from urllib.parse import parse_qs, urlparse

import typer
import uvicorn
from starlette.applications import Starlette
from starlette.responses import HTMLResponse
from starlette.routing import Route

from lms_cli.exceptions import AuthError, ReceiverBindError, UserCancelledError
from lms_cli.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping
    from types import TracebackType

    from starlette.requests import Request

logger = get_logger(__name__)

DEFAULT_CALLBACK_HOST = "127.0.0.1"
CALLBACK_PATH = "/oauth/callback"
OOB_REDIRECT_URI = "urn:ietf:wg:oauth:2.0:oob"

LISTEN_BACKLOG = 8

# Seconds uvicorn may spend closing browser keep-alive connections
SHUTDOWN_GRACE = 1

OOB_PROMPT = "Paste the authorization code here: "

SUCCESS_PAGE = """<!DOCTYPE html>
<html>
  <head><title>Authentication complete</title></head>
  <body>
    <h1>Authentication complete</h1>
    <p>You can close this window and return to the terminal.</p>
  </body>
</html>
"""

FAILURE_PAGE = """<!DOCTYPE html>
<html>
  <head><title>Authentication failed</title></head>
  <body>
    <h1>Authentication failed</h1>
    <p>The authorization server returned an error. Check the terminal for details.</p>
  </body>
</html>
"""

INVALID_PAGE = """<!DOCTYPE html>
<html>
  <head><title>Invalid request</title></head>
  <body><h1>Missing authorization code</h1></body>
</html>
"""


def _echo_stderr(message: str) -> None:
    typer.echo(message, err=True)


def open_in_browser(url: str) -> bool:
    """Try to open a URL in the default browser. Best effort."""
    try:
        return webbrowser.open(url)
    except webbrowser.Error as e:
        logger.debug("Could not open browser: %s", e)
        return False


@dataclass(frozen=True)
class RedirectResult:
    """What came back from the authorization server."""

    code: str | None
    state: str | None
    error: str | None = None
    error_description: str | None = None

    @classmethod
    def from_params(cls, params: Mapping[str, str]) -> RedirectResult:
        return cls(
            code=params.get("code") or None,
            state=params.get("state") or None,
            error=params.get("error") or None,
            error_description=params.get("error_description") or None,
        )


def parse_pasted_code(text: str) -> RedirectResult:
    """Interpret what the user pasted in out-of-band mode.

    Accepts a bare authorization code, a query string, or a full
    redirect URL.

    Raises:
        UserCancelledError: If nothing was entered
    """
    value = text.strip()
    if not value:
        raise UserCancelledError("No authorization code entered")

    if "code=" in value or "error=" in value:
        query = urlparse(value).query or value
        params = {key: values[0] for key, values in parse_qs(query).items()}
        return RedirectResult.from_params(params)

    return RedirectResult(code=value, state=None)


class RedirectReceiver(ABC):
    """Obtains the authorization code for one login attempt.

    Receivers are async context managers: entering prepares them to
    receive, leaving releases every resource they hold.
    """

    # Whether the channel carries the state parameter back
    delivers_state: ClassVar[bool] = True

    @property
    @abstractmethod
    def redirect_uri(self) -> str:
        """Redirect URI to put in the authorization request."""

    @abstractmethod
    async def wait_for_redirect(
        self,
        authorization_url: str,
        timeout: float | None = None,
    ) -> RedirectResult:
        """Show the authorization URL to the user and wait for the result.

        Args:
            authorization_url: Fully built authorization URL
            timeout: Seconds to wait, None to wait until cancelled

        Raises:
            UserCancelledError: On timeout or when the user aborts
        """

    async def start(self) -> None:
        """Prepare to receive a redirect."""

    async def close(self) -> None:
        """Release resources held by the receiver."""

    async def __aenter__(self) -> RedirectReceiver:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()


class LocalCallbackReceiver(RedirectReceiver):
    """Receives the redirect on a short-lived HTTP server on localhost.

    The port is bound by ``bind()`` before the authorization URL is
    built, because the redirect URI has to name it. The server accepts
    exactly one redirect: later requests get the same page back and
    never produce a second result.
    """

    delivers_state = True

    def __init__(
        self,
        host: str = DEFAULT_CALLBACK_HOST,
        port: int = 0,
        path: str = CALLBACK_PATH,
        open_browser: bool = True,
        browser: Callable[[str], Any] = open_in_browser,
        echo: Callable[[str], None] = _echo_stderr,
    ) -> None:
        """Initialize the receiver.

        Args:
            host: Loopback address to bind
            port: Port to bind, 0 for an ephemeral port
            path: Callback path
            open_browser: Whether to open the authorization URL automatically
            browser: Callable that opens a URL
            echo: Callable used to print instructions
        """
        self._host = host
        self._port = port
        self._path = path
        self._open_browser = open_browser
        self._browser = browser
        self._echo = echo
        self._socket: socket.socket | None = None
        self._server: uvicorn.Server | None = None
        self._serve_task: asyncio.Task[None] | None = None
        self._result: asyncio.Future[RedirectResult] | None = None
        self.app = Starlette(
            routes=[Route(path, self._handle_callback, methods=["GET"])],
        )

    @property
    def port(self) -> int:
        """Port the receiver is bound to."""
        if self._socket is None:
            msg = "callback receiver is not bound"
            raise RuntimeError(msg)
        return int(self._socket.getsockname()[1])

    @property
    def redirect_uri(self) -> str:
        return f"http://{self._host}:{self.port}{self._path}"

    def bind(self) -> None:
        """Bind the listening socket.

        Raises:
            ReceiverBindError: If the address cannot be bound
        """
        if self._socket is not None:
            return

        sock: socket.socket | None = None
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            if os.name != "nt":
                # Lets the next login rebind a port still in TIME_WAIT
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self._host, self._port))
            sock.listen(LISTEN_BACKLOG)
        except OSError as e:
            if sock is not None:
                sock.close()
            msg = f"Cannot bind callback server on {self._host}:{self._port}: {e}"
            raise ReceiverBindError(msg) from e

        sock.setblocking(False)
        self._socket = sock
        logger.debug("Callback server bound to %s", self.redirect_uri)

    async def start(self) -> None:
        """Bind if needed and start serving in a background task."""
        self.bind()
        if self._serve_task is not None:
            return

        self._result = asyncio.get_running_loop().create_future()
        config = uvicorn.Config(
            self.app,
            lifespan="off",
            access_log=False,
            log_config=None,
            log_level="warning",
            timeout_graceful_shutdown=SHUTDOWN_GRACE,
        )
        self._server = uvicorn.Server(config)
        self._serve_task = asyncio.create_task(
            self._server.serve(sockets=[self._socket]),
            name="oauth-callback-server",
        )

    async def _handle_callback(self, request: Request) -> HTMLResponse:
        result = RedirectResult.from_params(request.query_params)
        if not result.code and not result.error:
            return HTMLResponse(INVALID_PAGE, status_code=400)

        if self._result is not None and not self._result.done():
            self._result.set_result(result)
            logger.debug("Received OAuth redirect on %s", self._path)
        else:
            logger.debug("Ignoring repeated OAuth redirect on %s", self._path)

        return HTMLResponse(FAILURE_PAGE if result.error else SUCCESS_PAGE)

    async def wait_for_redirect(
        self,
        authorization_url: str,
        timeout: float | None = None,
    ) -> RedirectResult:
        if self._result is None or self._serve_task is None:
            msg = "callback receiver is not started"
            raise RuntimeError(msg)

        self._echo("Opening browser for authentication...")
        self._echo(f"If your browser doesn't open automatically, visit:\n\n{authorization_url}\n")
        if self._open_browser:
            await asyncio.to_thread(self._browser, authorization_url)

        done, _ = await asyncio.wait(
            {self._result, self._serve_task},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if self._result in done:
            return self._result.result()
        if self._serve_task in done:
            raise AuthError("Callback server stopped before a redirect arrived")
        raise UserCancelledError(f"No redirect received within {timeout:g} seconds")

    async def close(self) -> None:
        """Stop the server and release the port."""
        task, self._serve_task = self._serve_task, None
        try:
            if task is not None:
                if self._server is not None:
                    self._server.should_exit = True
                if not task.done():
                    await task
                elif not task.cancelled() and task.exception() is not None:
                    logger.debug("Callback server exited with %r", task.exception())
        finally:
            if self._result is not None and not self._result.done():
                self._result.cancel()
            if self._socket is not None:
                self._socket.close()
                self._socket = None
            self._server = None
            logger.debug("Callback server on %s:%d closed", self._host, self._port)


class OutOfBandReceiver(RedirectReceiver):
    """Asks the user to paste the authorization code.

    Used on headless hosts where no local port can be bound. The
    terminal read runs on a daemon thread so an abandoned prompt never
    keeps the process alive.
    """

    delivers_state = False

    def __init__(
        self,
        prompt: Callable[[str], str] = input,
        echo: Callable[[str], None] = _echo_stderr,
    ) -> None:
        """Initialize the receiver.

        Args:
            prompt: Callable that shows a prompt and returns a line of input
            echo: Callable used to print instructions
        """
        self._prompt = prompt
        self._echo = echo

    @property
    def redirect_uri(self) -> str:
        return OOB_REDIRECT_URI

    async def wait_for_redirect(
        self,
        authorization_url: str,
        timeout: float | None = None,
    ) -> RedirectResult:
        self._echo("OAuth authentication (out-of-band mode)\n")
        self._echo(f"1. Visit this URL in your browser:\n\n{authorization_url}\n")
        self._echo("2. Authorize the application")
        self._echo("3. Copy the authorization code shown on the page")

        loop = asyncio.get_running_loop()
        pasted: asyncio.Future[str] = loop.create_future()

        def deliver(value: str | BaseException) -> None:
            if pasted.done():
                return
            if isinstance(value, BaseException):
                pasted.set_exception(value)
            else:
                pasted.set_result(value)

        def read() -> None:
            value: str | BaseException
            try:
                value = self._prompt(OOB_PROMPT)
            except EOFError:
                value = UserCancelledError("Input closed before an authorization code was entered")
            except Exception as e:  # noqa: BLE001
                value = e
            # The loop is gone if the flow already ended; nobody is waiting then
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(deliver, value)

        threading.Thread(target=read, name="oob-code-reader", daemon=True).start()

        try:
            text = await asyncio.wait_for(pasted, timeout)
        except TimeoutError:
            raise UserCancelledError(
                f"No authorization code entered within {timeout:g} seconds"
            ) from None

        return parse_pasted_code(text)
