"""Shopify Admin GraphQL client wrapper for making authenticated requests."""

import logging
import re
from typing import Any, Dict, List, Optional

import httpx

from shopify_errors import ShopifyAPIError, UpstreamRejectedError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "2023-07"

_GID_RE = re.compile(r"^gid://shopify/(?P<resource>[A-Za-z]+)/(?P<id>\d+)$")


def to_gid(resource: str, value: str) -> str:
    """
    Normalize a numeric ID or full GID into a GID for the given resource.

    Args:
        resource: Resource type name (e.g., 'BulkOperation', 'Product')
        value: Numeric ID ("123") or full GID ("gid://shopify/Product/123")

    Returns:
        The GID string.

    Raises:
        ValidationError: If the value is empty, malformed, or a GID of another type.
    """
    value = (value or "").strip()
    if not value:
        raise ValidationError(f"{resource} ID is required")

    match = _GID_RE.match(value)
    if match:
        if match.group("resource") != resource:
            raise ValidationError(
                f"Expected a {resource} ID, got a {match.group('resource')} ID: {value}"
            )
        return value

    if value.isdigit():
        return f"gid://shopify/{resource}/{value}"

    raise ValidationError(f"Invalid {resource} ID: {value}")


def check_user_errors(payload: Dict[str, Any], action: str) -> None:
    """
    Raise if a mutation payload carries userErrors.

    Args:
        payload: The mutation's result object (e.g., data["productUpdate"])
        action: Short description used as the message prefix

    Raises:
        UpstreamRejectedError: With every field/message pair joined together.
    """
    user_errors: List[Dict[str, Any]] = payload.get("userErrors") or []
    if not user_errors:
        return

    parts = []
    for error in user_errors:
        field = error.get("field")
        message = error.get("message", "Unknown error")
        if field:
            if isinstance(field, list):
                field = ".".join(str(f) for f in field)
            parts.append(f"{field}: {message}")
        else:
            parts.append(message)

    raise UpstreamRejectedError(f"{action}: {'; '.join(parts)}", user_errors=user_errors)


class ShopifyClient:
    """Client for the Shopify Admin GraphQL API."""

    def __init__(
        self,
        domain: str,
        access_token: str,
        api_version: str = DEFAULT_API_VERSION,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the Shopify GraphQL client.

        Args:
            domain: Shop domain (e.g., 'my-store.myshopify.com').
            access_token: Admin API access token.
            api_version: Admin API version used in the endpoint path.
            http_client: Optional pre-configured async client (used by tests).

        Raises:
            ValueError: If credentials are not provided.
        """
        if not domain:
            raise ValueError("Shop domain is required.")
        if not access_token:
            raise ValueError("Access token is required.")

        self.domain = domain.replace("https://", "").replace("http://", "").rstrip("/")
        self.access_token = access_token
        self.api_version = api_version
        self.endpoint = f"https://{self.domain}/admin/api/{self.api_version}/graphql.json"
        self.async_client = http_client or httpx.AsyncClient(timeout=30.0)

    def _get_headers(self) -> Dict[str, str]:
        """Get the authentication headers for API requests."""
        return {
            "X-Shopify-Access-Token": self.access_token,
            "Content-Type": "application/json",
        }

    async def request(
        self, query: str, variables: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Execute a GraphQL query or mutation.

        Args:
            query: GraphQL document.
            variables: Optional variables for the document.

        Returns:
            The response's `data` object.

        Raises:
            ShopifyAPIError: On a non-2xx response or top-level GraphQL errors.
        """
        body: Dict[str, Any] = {"query": query}
        if variables:
            body["variables"] = variables

        try:
            response = await self.async_client.post(
                self.endpoint, headers=self._get_headers(), json=body
            )
        except httpx.HTTPError as e:
            raise ShopifyAPIError(f"Request to {self.endpoint} failed: {e}") from e

        if response.is_error:
            raise ShopifyAPIError(
                f"Shopify API returned {response.status_code}: {response.text}",
                status_code=response.status_code,
            )

        try:
            result = response.json()
        except ValueError as e:
            raise ShopifyAPIError(
                f"Shopify API returned a non-JSON response ({response.status_code}): {e}",
                status_code=response.status_code,
            ) from e

        errors = result.get("errors")
        if errors:
            messages = "; ".join(e.get("message", str(e)) for e in errors)
            raise ShopifyAPIError(f"GraphQL errors: {messages}", status_code=response.status_code)

        logger.debug("GraphQL request to %s succeeded", self.endpoint)
        return result.get("data") or {}

    async def get_shop_status(self) -> Dict[str, Any]:
        """
        Get shop details and the access scopes granted to this token.

        Returns:
            Dictionary with `shop` and `scopes` keys.
        """
        query = """
        query GetShopStatus {
          shop {
            name
            url
            myshopifyDomain
            currencyCode
            plan {
              displayName
            }
          }
          app {
            installation {
              accessScopes {
                handle
              }
            }
          }
        }
        """
        data = await self.request(query)
        installation = (data.get("app") or {}).get("installation") or {}
        scopes = [s["handle"] for s in installation.get("accessScopes") or []]
        return {"shop": data.get("shop"), "scopes": scopes}

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self.async_client.aclose()
