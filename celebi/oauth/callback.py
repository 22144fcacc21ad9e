"""Landing URL handling and the loopback callback listener.

When the instance redirects back, the authorization code arrives in the
landing URL's query string. This module parses that URL, and provides a
small HTTP server bound to the configured loopback redirect URI so that
`celebi login` can catch the redirect itself.
"""

import asyncio
import html
import logging
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any
from urllib.parse import parse_qs, urlsplit, urlunsplit

logger = logging.getLogger(__name__)

# Default timeout for waiting for callback
DEFAULT_TIMEOUT = 120  # seconds

LOOPBACK_HOSTS = {"127.0.0.1", "localhost", "::1"}


class CallbackError(Exception):
    """Error during OAuth callback handling."""

    pass


class CallbackTimeoutError(CallbackError):
    """Timeout waiting for OAuth callback."""

    pass


@dataclass
class CallbackResult:
    """Parameters the instance put on the landing URL.

    Attributes:
        code: The authorization code, if authorization succeeded
        state: The state parameter, if any
        error: Error code if authorization failed
        error_description: Human-readable error description
        url: The landing URL the parameters came from
    """

    code: str | None = None
    state: str | None = None
    error: str | None = None
    error_description: str | None = None
    url: str = ""

    def is_success(self) -> bool:
        """Check if callback was successful."""
        return self.code is not None and self.error is None


LANDING_PAGE = """<!DOCTYPE html>
<html lang="en">
<meta charset="utf-8">
<title>Celebi - {title}</title>
<style>
  body {{ font: 16px system-ui, sans-serif; background: #191b22; color: #d9e1e8;
         display: grid; place-items: center; min-height: 100vh; margin: 0; }}
  main {{ background: #282c37; border-radius: 8px; padding: 2rem 3rem; max-width: 28rem; }}
  h1 {{ font-size: 1.25rem; margin: 0 0 .5rem; }}
  code {{ color: #ff8a80; }}
</style>
<main>
  <h1>{title}</h1>
  <p>{message}</p>
</main>
</html>"""


def render_landing_page(result: CallbackResult) -> str:
    """Page shown in the browser once the redirect has been caught."""
    if result.is_success():
        return LANDING_PAGE.format(
            title="Authorization received",
            message="You can close this tab and return to the terminal.",
        )
    return LANDING_PAGE.format(
        title="Authorization failed",
        message=(
            f"<code>{html.escape(result.error or 'unknown_error')}</code> "
            f"{html.escape(result.error_description or 'No description provided')}"
        ),
    )


def parse_callback_url(url: str) -> CallbackResult:
    """Parse the OAuth parameters from a landing URL.

    Args:
        url: Absolute landing URL, or a request path with query string

    Returns:
        CallbackResult with parsed parameters
    """
    params = parse_qs(urlsplit(url).query)

    def get_param(name: str) -> str | None:
        values = params.get(name, [])
        return values[0] if values else None

    return CallbackResult(
        code=get_param("code"),
        state=get_param("state"),
        error=get_param("error"),
        error_description=get_param("error_description"),
        url=url,
    )


def strip_query(url: str) -> str:
    """Return the URL without its query string and fragment.

    This is what stays visible after the authorization code is consumed.
    """
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, "", ""))


class LocalhostCallbackServer:
    """Ephemeral HTTP server that catches the redirect back from the instance.

    Binds exactly the host, port and path of the configured redirect URI,
    since the instance only redirects to the URI that was registered.

    Usage:
        async with LocalhostCallbackServer(config.redirect_uri) as server:
            # Open browser with the authorization URL
            result = await server.wait_for_callback()
    """

    def __init__(self, redirect_uri: str, timeout: int = DEFAULT_TIMEOUT):
        """Initialize callback server.

        Args:
            redirect_uri: Loopback redirect URI, e.g. http://127.0.0.1:8765/callback
            timeout: Timeout in seconds to wait for callback

        Raises:
            CallbackError: If the redirect URI is not a loopback http URI
        """
        parts = urlsplit(redirect_uri)
        if parts.scheme != "http" or parts.hostname not in LOOPBACK_HOSTS:
            raise CallbackError(
                f"Cannot listen on {redirect_uri}: only http loopback redirect URIs "
                f"can be served locally. Use 'celebi login --no-listen' and 'celebi callback URL'."
            )

        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self.host = parts.hostname
        self.port: int = parts.port if parts.port is not None else 80
        self.path = parts.path or "/"

        self._server: asyncio.Server | None = None
        self._result: CallbackResult | None = None
        self._result_event: asyncio.Event | None = None

    async def start(self) -> None:
        """Start listening on the redirect URI's host and port."""
        self._result_event = asyncio.Event()

        try:
            self._server = await asyncio.start_server(
                self._handle_connection, self.host, self.port
            )
        except OSError as e:
            raise CallbackError(
                f"Could not listen on {self.host}:{self.port}: {e}"
            ) from e

        # Port 0 lets the OS pick one; load_config never passes it
        sockets = self._server.sockets
        if sockets:
            self.port = sockets[0].getsockname()[1]

        logger.debug(f"Callback server listening for {self.redirect_uri}")

    async def stop(self) -> None:
        """Stop the callback server."""
        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            logger.debug("Callback server stopped")

    async def wait_for_callback(self) -> CallbackResult:
        """Wait for the browser to land on the redirect URI.

        Returns:
            CallbackResult whose url is the full landing URL

        Raises:
            CallbackTimeoutError: If timeout is reached
        """
        if self._result_event is None:
            raise CallbackError("Server not started")

        try:
            await asyncio.wait_for(self._result_event.wait(), timeout=self.timeout)
        except asyncio.TimeoutError:
            raise CallbackTimeoutError(
                f"Timeout waiting for OAuth callback after {self.timeout} seconds"
            ) from None

        if self._result is None:
            raise CallbackError("No callback result received")

        return self._result

    def _landing_url(self, request_target: str) -> str:
        parts = urlsplit(self.redirect_uri)
        return f"{parts.scheme}://{parts.netloc}{request_target}"

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        """Handle one HTTP request from the browser."""
        try:
            request_line = await reader.readline()
            parts = request_line.decode("utf-8", errors="replace").strip().split(" ")
            if len(parts) < 2:
                await self._send_response(writer, HTTPStatus.BAD_REQUEST, "Invalid request")
                return

            method, target = parts[0], parts[1]

            # Consume headers
            while True:
                header_line = await reader.readline()
                if header_line in (b"\r\n", b"\n", b""):
                    break

            if method != "GET":
                await self._send_response(
                    writer, HTTPStatus.METHOD_NOT_ALLOWED, "Method not allowed"
                )
                return

            if urlsplit(target).path != self.path:
                await self._send_response(writer, HTTPStatus.NOT_FOUND, "Not found")
                return

            result = parse_callback_url(self._landing_url(target))

            if result.code is None and result.error is None:
                # Prefetch or a stray reload without parameters
                await self._send_response(writer, HTTPStatus.BAD_REQUEST, "Missing code")
                return

            self._result = result
            await self._send_html_response(
                writer, HTTPStatus.OK, render_landing_page(result)
            )

            if self._result_event:
                self._result_event.set()

        except (OSError, asyncio.IncompleteReadError, UnicodeError) as e:
            logger.warning(f"Error handling callback request: {e}")

        finally:
            try:
                writer.close()
                await writer.wait_closed()
            except OSError:
                pass

    async def _send_response(
        self,
        writer: asyncio.StreamWriter,
        status: HTTPStatus,
        body: str,
    ) -> None:
        """Send a plain text HTTP response."""
        response = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: text/plain\r\n"
            f"Content-Length: {len(body)}\r\n"
            f"Connection: close\r\n"
            f"\r\n"
            f"{body}"
        )
        writer.write(response.encode("utf-8"))
        await writer.drain()

    async def _send_html_response(
        self,
        writer: asyncio.StreamWriter,
        status: HTTPStatus,
        html_content: str,
    ) -> None:
        """Send an HTML HTTP response with security headers."""
        body = html_content.encode("utf-8")
        headers = (
            f"HTTP/1.1 {status.value} {status.phrase}\r\n"
            f"Content-Type: text/html; charset=utf-8\r\n"
            f"Content-Length: {len(body)}\r\n"
            f"X-Content-Type-Options: nosniff\r\n"
            f"X-Frame-Options: DENY\r\n"
            f"Content-Security-Policy: default-src 'none'; style-src 'unsafe-inline'\r\n"
            f"Referrer-Policy: no-referrer\r\n"
            f"Connection: close\r\n"
            f"\r\n"
        )
        writer.write(headers.encode("utf-8") + body)
        await writer.drain()

    async def __aenter__(self) -> "LocalhostCallbackServer":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()
