"""HTTP callback server for OAuth redirect handling."""

import logging
import threading
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Optional
from urllib.parse import parse_qs, urlparse

from shopify_errors import (
    CallbackServerError,
    CallbackTimeoutError,
    CsrfError,
    MalformedCallbackError,
    OAuthError,
)

logger = logging.getLogger(__name__)

CALLBACK_HOST = "localhost"
CALLBACK_PORT = 3456
CALLBACK_PATH = "/callback"
CALLBACK_TIMEOUT = 300.0

SUCCESS_PAGE = """<!DOCTYPE html>
<html>
<head>
  <title>Authorization Successful</title>
  <style>
    body { font-family: system-ui, sans-serif; max-width: 600px; margin: 100px auto; text-align: center; }
    h1 { color: #008060; }
    p { color: #637381; }
  </style>
</head>
<body>
  <h1>Authorization Successful!</h1>
  <p>You can close this window and return to your terminal.</p>
  <p>The Shopify MCP server is now connected to your store.</p>
</body>
</html>
"""


@dataclass(frozen=True)
class CallbackResult:
    """Parameters delivered by a successful authorization redirect."""

    code: str
    shop: str


class _CallbackHTTPServer(HTTPServer):
    """HTTPServer carrying the state of a single authorization attempt."""

    def __init__(self, server_address, owner: "OAuthCallbackServer"):
        self.owner = owner
        super().__init__(server_address, CallbackHandler)


class CallbackHandler(BaseHTTPRequestHandler):
    """HTTP request handler for OAuth callbacks."""

    server: _CallbackHTTPServer

    def log_message(self, format, *args):
        logger.debug("callback server: " + format, *args)

    def _respond(self, status: int, body: str, content_type: str = "text/plain") -> None:
        payload = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", f"{content_type}; charset=utf-8")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def do_GET(self):
        """Handle GET request (OAuth callback)."""
        owner = self.server.owner
        parsed_url = urlparse(self.path)

        if parsed_url.path != owner.path:
            self._respond(404, "Not found")
            return

        if owner.is_resolved:
            self._respond(400, "Authorization callback was already received.")
            return

        query_params = parse_qs(parsed_url.query)
        code = query_params.get("code", [None])[0]
        state = query_params.get("state", [None])[0]
        shop = query_params.get("shop", [None])[0]
        error = query_params.get("error", [None])[0]

        if state != owner.expected_state:
            self._respond(400, "Invalid state parameter. Possible CSRF attack.")
            owner.reject(CsrfError("Invalid state parameter in OAuth callback"))
            return

        if error:
            self._respond(400, f"Authorization failed: {error}")
            owner.reject(OAuthError(f"Authorization failed: {error}"))
            return

        if not code or not shop:
            self._respond(400, "Missing code or shop parameter")
            owner.reject(MalformedCallbackError("Missing code or shop parameter in OAuth callback"))
            return

        self._respond(200, SUCCESS_PAGE, content_type="text/html")
        owner.resolve(CallbackResult(code=code, shop=shop))


class OAuthCallbackServer:
    """
    One-shot local HTTP listener that waits for a single OAuth redirect.

    Use as a context manager so the port is released on every exit path:

        with OAuthCallbackServer(expected_state=state) as server:
            result = server.wait_for_callback()
    """

    def __init__(
        self,
        expected_state: str,
        host: str = CALLBACK_HOST,
        port: int = CALLBACK_PORT,
        path: str = CALLBACK_PATH,
    ):
        """
        Initialize callback server.

        Args:
            expected_state: The anti-CSRF nonce the redirect must carry
            host: Host to bind to
            port: Port to listen on (0 picks a free port)
            path: Callback path
        """
        self.expected_state = expected_state
        self.host = host
        self.port = port
        self.path = path
        self.server: Optional[_CallbackHTTPServer] = None
        self.server_thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._result: Optional[CallbackResult] = None
        self._error: Optional[OAuthError] = None
        self.callback_received = threading.Event()

    @property
    def is_resolved(self) -> bool:
        return self.callback_received.is_set()

    def resolve(self, result: CallbackResult) -> None:
        with self._lock:
            if self.callback_received.is_set():
                return
            self._result = result
            self.callback_received.set()

    def reject(self, error: OAuthError) -> None:
        with self._lock:
            if self.callback_received.is_set():
                return
            self._error = error
            self.callback_received.set()

    def start(self) -> None:
        """Start the callback server in a background thread."""
        try:
            self.server = _CallbackHTTPServer((self.host, self.port), self)
        except OSError as e:
            raise CallbackServerError(
                f"Failed to start callback server on {self.host}:{self.port}: {e}"
            ) from e

        self.port = self.server.server_address[1]
        self.server_thread = threading.Thread(
            target=self.server.serve_forever, name="oauth-callback", daemon=True
        )
        self.server_thread.start()
        logger.info("Callback server listening on port %s", self.port)

    def wait_for_callback(self, timeout: float = CALLBACK_TIMEOUT) -> CallbackResult:
        """
        Block until the callback is received.

        Args:
            timeout: Timeout in seconds (default 5 minutes)

        Returns:
            The authorization code and shop

        Raises:
            CallbackTimeoutError: If no callback arrives within the timeout
            CsrfError: If the state parameter does not match
            MalformedCallbackError: If code or shop is missing
        """
        if not self.callback_received.wait(timeout):
            raise CallbackTimeoutError(
                f"Authorization timed out after {timeout:g} seconds"
            )
        if self._error is not None:
            raise self._error
        return self._result

    def stop(self) -> None:
        """Stop the callback server and release the port."""
        if self.server:
            if self.server_thread and self.server_thread.is_alive():
                self.server.shutdown()
            self.server.server_close()
            self.server = None
        if self.server_thread:
            self.server_thread.join(timeout=5)
            self.server_thread = None

    def __enter__(self) -> "OAuthCallbackServer":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.stop()
