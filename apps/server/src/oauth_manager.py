"""OAuth authorization-code flow for Shopify Admin API access tokens.

The flow is interactive and one-shot: a browser is sent to the shop's
authorization page, a local listener catches the redirect, and the code is
exchanged for an offline access token that is then saved to the token store.
"""

import logging
import secrets
import sys
import webbrowser
from datetime import datetime, timezone
from typing import Callable, Dict, Optional
from urllib.parse import urlencode

import httpx

from callback_server import (
    CALLBACK_HOST,
    CALLBACK_PATH,
    CALLBACK_PORT,
    CALLBACK_TIMEOUT,
    OAuthCallbackServer,
)
from shopify_errors import ConfigurationError, OAuthError, TokenExchangeError
from token_store import TokenRecord, TokenStore

logger = logging.getLogger(__name__)

DEFAULT_SCOPES = ",".join([
    "read_products",
    "write_products",
    "read_customers",
    "write_customers",
    "read_orders",
    "write_orders",
    "read_inventory",
    "write_inventory",
    "read_locations",
    "read_content",
    "write_content",
])


def _echo(message: str = "") -> None:
    # stdout is reserved for the MCP stdio transport
    print(message, file=sys.stderr)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


class OAuthManager:
    """Manages the OAuth authorization-code flow for one shop."""

    AUTHORIZE_PATH = "/admin/oauth/authorize"
    TOKEN_PATH = "/admin/oauth/access_token"

    def __init__(
        self,
        domain: str,
        client_id: str,
        client_secret: str,
        scopes: Optional[str] = None,
        callback_port: int = CALLBACK_PORT,
        token_store: Optional[TokenStore] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        """
        Initialize OAuth manager.

        Args:
            domain: Shop domain (e.g., 'my-store.myshopify.com')
            client_id: App client ID
            client_secret: App client secret
            scopes: Comma-separated scope override. Defaults to DEFAULT_SCOPES
            callback_port: Local port for the redirect listener
            token_store: Where the obtained token is saved
            http_client: Optional pre-configured client for the token exchange
        """
        for name, value in (("domain", domain), ("clientId", client_id), ("clientSecret", client_secret)):
            if not value:
                raise ConfigurationError(f"{name} is required for the OAuth flow.")

        self.domain = domain
        self.client_id = client_id
        self.client_secret = client_secret
        self.scopes = scopes or DEFAULT_SCOPES
        self.callback_port = callback_port
        self.redirect_uri = f"http://{CALLBACK_HOST}:{callback_port}{CALLBACK_PATH}"
        self.token_store = token_store or TokenStore()
        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.Client(timeout=30.0)

    @staticmethod
    def generate_state() -> str:
        """Generate a random anti-CSRF nonce."""
        return secrets.token_hex(16)

    def get_authorization_url(self, state: Optional[str] = None) -> Dict[str, str]:
        """
        Generate the authorization URL for the OAuth flow.

        Args:
            state: Nonce to embed. A fresh one is generated if omitted.

        Returns:
            Dictionary containing:
            - url: The authorization URL to send the user to
            - state: State parameter for CSRF protection
        """
        state = state or self.generate_state()
        params = {
            "client_id": self.client_id,
            "scope": self.scopes,
            "redirect_uri": self.redirect_uri,
            "state": state,
        }
        url = f"https://{self.domain}{self.AUTHORIZE_PATH}?{urlencode(params)}"
        return {"url": url, "state": state}

    def exchange_code_for_token(self, code: str) -> TokenRecord:
        """
        Exchange authorization code for access token.

        Args:
            code: Authorization code from callback

        Returns:
            The new token record

        Raises:
            TokenExchangeError: If the token endpoint returns a non-success response
        """
        url = f"https://{self.domain}{self.TOKEN_PATH}"
        try:
            response = self.http_client.post(
                url,
                json={
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "code": code,
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            raise OAuthError(f"Token exchange request failed: {e}") from e

        if not response.is_success:
            raise TokenExchangeError(response.status_code, response.text)

        try:
            data = response.json()
            access_token = data["access_token"]
        except (ValueError, KeyError):
            raise TokenExchangeError(response.status_code, response.text)

        return TokenRecord(
            access_token=access_token,
            scope=data.get("scope", ""),
            obtained_at=_utc_now(),
        )

    def run_oauth_flow(
        self,
        open_browser: Callable[[str], bool] = webbrowser.open,
        timeout: float = CALLBACK_TIMEOUT,
    ) -> TokenRecord:
        """
        Run the full flow: authorize, wait for the redirect, exchange, persist.

        Args:
            open_browser: Function that opens a URL in the user's browser
            timeout: Seconds to wait for the redirect

        Returns:
            The persisted token record

        Raises:
            OAuthError: Any stage failure; nothing is persisted in that case
        """
        try:
            return self._authorize_and_persist(open_browser, timeout)
        finally:
            self.close()

    def close(self) -> None:
        """Close the token exchange client if this manager created it."""
        if self._owns_http_client:
            self.http_client.close()

    def _authorize_and_persist(
        self, open_browser: Callable[[str], bool], timeout: float
    ) -> TokenRecord:
        auth_data = self.get_authorization_url()

        _echo(f"\n{'='*60}")
        _echo("SHOPIFY AUTHORIZATION REQUIRED")
        _echo(f"{'='*60}")
        _echo(f"Store:  {self.domain}")
        _echo(f"Scopes: {self.scopes}")

        # Listener must be up before the browser can redirect to it
        with OAuthCallbackServer(
            expected_state=auth_data["state"], port=self.callback_port
        ) as callback_server:
            _echo("\nOpening browser for authorization...")
            try:
                open_browser(auth_data["url"])
            except webbrowser.Error as e:
                logger.warning("Could not open browser: %s", e)
            _echo(f"If browser doesn't open, visit this URL:\n{auth_data['url']}\n")
            _echo(f"Waiting for authorization (timeout: {timeout:g} seconds)...")

            callback = callback_server.wait_for_callback(timeout=timeout)

        _echo(f"Authorization received from {callback.shop}")
        if callback.shop != self.domain:
            logger.warning(
                "Callback shop %s differs from configured domain %s", callback.shop, self.domain
            )

        _echo("Exchanging authorization code for access token...")
        record = self.exchange_code_for_token(callback.code)
        self.token_store.save(self.domain, record)

        _echo(f"\n{'='*60}")
        _echo("AUTHORIZATION SUCCESSFUL!")
        _echo(f"{'='*60}")
        _echo(f"Access token obtained with scopes: {record.scope}")
        _echo(f"Token saved to {self.token_store.token_file}")
        _echo("Run the server without --oauth to start using it.\n")

        return record
