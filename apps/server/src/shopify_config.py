"""Startup configuration, resolved once from CLI arguments, saved tokens and the environment."""

import logging
import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from shopify_client import DEFAULT_API_VERSION
from shopify_errors import ConfigurationError
from token_store import TokenStore

logger = logging.getLogger(__name__)

TOKEN_SOURCE_ARGUMENT = "argument"
TOKEN_SOURCE_STORE = "token_store"
TOKEN_SOURCE_ENVIRONMENT = "environment"


@dataclass(frozen=True)
class ServerConfig:
    """Immutable settings threaded through the server."""

    domain: Optional[str] = None
    access_token: Optional[str] = None
    token_source: Optional[str] = None
    token_obtained_at: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    scopes: Optional[str] = None
    api_version: str = DEFAULT_API_VERSION


def _first(*values: Optional[str]) -> Optional[str]:
    for value in values:
        if value:
            return value
    return None


def resolve_config(
    args: Any,
    environ: Optional[Mapping[str, str]] = None,
    token_store: Optional[TokenStore] = None,
) -> ServerConfig:
    """
    Build the server configuration.

    Each setting comes from the first source that provides it. For the access
    token the order is: --accessToken, the saved token for the domain, then
    SHOPIFY_ACCESS_TOKEN. Other settings use the argument, then the environment.

    Args:
        args: Parsed CLI arguments (argparse.Namespace)
        environ: Environment mapping. Defaults to os.environ
        token_store: Saved-token store. Defaults to ~/.shopify-mcp

    Returns:
        The resolved, immutable configuration
    """
    environ = os.environ if environ is None else environ
    token_store = token_store or TokenStore()

    domain = _first(getattr(args, "domain", None), environ.get("MYSHOPIFY_DOMAIN"))

    access_token = getattr(args, "access_token", None)
    token_source = TOKEN_SOURCE_ARGUMENT if access_token else None
    obtained_at = None

    if not access_token and domain:
        saved = token_store.load(domain)
        if saved:
            access_token = saved.access_token
            token_source = TOKEN_SOURCE_STORE
            obtained_at = saved.obtained_at
            logger.info("Using saved token for %s (obtained: %s)", domain, saved.obtained_at)

    if not access_token and environ.get("SHOPIFY_ACCESS_TOKEN"):
        access_token = environ["SHOPIFY_ACCESS_TOKEN"]
        token_source = TOKEN_SOURCE_ENVIRONMENT

    return ServerConfig(
        domain=domain,
        access_token=access_token,
        token_source=token_source,
        token_obtained_at=obtained_at,
        client_id=_first(getattr(args, "client_id", None), environ.get("SHOPIFY_CLIENT_ID")),
        client_secret=_first(
            getattr(args, "client_secret", None), environ.get("SHOPIFY_CLIENT_SECRET")
        ),
        scopes=_first(getattr(args, "scopes", None), environ.get("SHOPIFY_SCOPES")),
        api_version=_first(
            getattr(args, "api_version", None),
            environ.get("SHOPIFY_API_VERSION"),
            DEFAULT_API_VERSION,
        ),
    )


def require_oauth_settings(config: ServerConfig) -> None:
    """Raise ConfigurationError unless domain and client credentials are set."""
    if not config.domain:
        raise ConfigurationError(
            "--domain is required for OAuth flow.\n"
            "  Example: --domain=your-store.myshopify.com"
        )
    if not config.client_id:
        raise ConfigurationError("--clientId or SHOPIFY_CLIENT_ID is required for OAuth flow.")
    if not config.client_secret:
        raise ConfigurationError(
            "--clientSecret or SHOPIFY_CLIENT_SECRET is required for OAuth flow."
        )


def require_server_settings(config: ServerConfig) -> None:
    """Raise ConfigurationError unless an access token and domain are available."""
    if not config.access_token:
        if config.client_id and config.client_secret:
            raise ConfigurationError(
                "No access token found.\n"
                "Run with --oauth to authorize and obtain an access token:\n"
                f"  shopify-mcp --oauth --domain={config.domain or 'your-store.myshopify.com'}"
            )
        raise ConfigurationError(
            "SHOPIFY_ACCESS_TOKEN is required.\n"
            "Please provide it via command line argument, .env file, or run OAuth flow.\n"
            "  Command line: --accessToken=your_token\n"
            "  OAuth flow:   --oauth --domain=your-store.myshopify.com --clientId=xxx --clientSecret=xxx"
        )
    if not config.domain:
        raise ConfigurationError(
            "MYSHOPIFY_DOMAIN is required.\n"
            "Please provide it via command line argument or .env file.\n"
            "  Command line: --domain=your-store.myshopify.com"
        )
