"""Shopify Admin MCP Server - Main entry point."""

import argparse
import logging
import sys
import time
from typing import Any, Awaitable, Dict, List, Literal, Optional

import httpx
from dotenv import load_dotenv
from fastmcp import FastMCP

from bulk_export import DEFAULT_SAMPLE_SIZE, BulkExportManager
from oauth_manager import OAuthManager
from shopify_client import ShopifyClient
from shopify_config import (
    ServerConfig,
    require_oauth_settings,
    require_server_settings,
    resolve_config,
)
from shopify_errors import ShopifyMCPError
from token_store import TokenStore

logger = logging.getLogger(__name__)

SERVER_NAME = "Shopify Admin MCP"


async def _run_tool(action: str, call: Awaitable[Dict[str, Any]]) -> Dict[str, Any]:
    """Await a tool call, rendering failures as error dictionaries."""
    try:
        return await call
    except ShopifyMCPError as e:
        logger.warning("%s failed: %s", action, e)
        return e.to_dict()
    except httpx.HTTPError as e:
        logger.warning("%s failed: %s", action, e)
        return {"success": False, "error": f"{action} failed: {e}"}


def create_server(
    config: ServerConfig,
    client: Optional[ShopifyClient] = None,
    bulk_manager: Optional[BulkExportManager] = None,
) -> FastMCP:
    """
    Build the MCP server with its tools bound to one shop.

    Args:
        config: Resolved configuration (must carry domain and access token)
        client: GraphQL client. Built from config if omitted
        bulk_manager: Bulk export manager. Built around client if omitted

    Returns:
        The configured FastMCP server
    """
    client = client or ShopifyClient(
        config.domain, config.access_token, api_version=config.api_version
    )
    bulk_manager = bulk_manager or BulkExportManager(client)

    mcp = FastMCP(SERVER_NAME)

    @mcp.tool(name="start-bulk-export")
    async def start_bulk_export(
        type: Literal["products", "orders", "customers", "inventory", "custom"],
        query: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        custom_query: Optional[str] = None,
        include_metafields: bool = False,
    ) -> dict:
        """
        Start an async bulk export operation. Returns immediately with the operation ID.
        Use get-bulk-operation-status to check progress.

        Args:
            type: Type of export to run: 'products', 'orders', 'customers', 'inventory', or 'custom'
            query: Filter query (e.g., 'status:active' for products)
            date_from: Start date for orders (ISO 8601)
            date_to: End date for orders (ISO 8601)
            custom_query: Custom GraphQL bulk query (required if type='custom')
            include_metafields: Include metafields in products, orders, or customers exports

        Returns:
            Dictionary containing:
            - success: Whether the export was submitted
            - operationId: ID of the new bulk operation
            - status: Initial status (usually CREATED)
            - createdAt: Creation time
        """
        return await _run_tool(
            "start-bulk-export",
            bulk_manager.start_export(
                type,
                query=query,
                date_from=date_from,
                date_to=date_to,
                custom_query=custom_query,
                include_metafields=include_metafields,
            ),
        )

    @mcp.tool(name="get-bulk-operation-status")
    async def get_bulk_operation_status(operation_id: Optional[str] = None) -> dict:
        """
        Check the status of a bulk operation. Returns progress info and the download URL when complete.

        Args:
            operation_id: Specific operation ID to check (numeric or full GID).
                          If omitted, checks the current/most recent operation.

        Returns:
            Dictionary containing found, status, objectCount, fileSize, url,
            progress, and isComplete/isFailed/isRunning flags.
        """
        return await _run_tool(
            "get-bulk-operation-status", bulk_manager.get_status(operation_id)
        )

    @mcp.tool(name="get-bulk-operation-results")
    async def get_bulk_operation_results(
        operation_id: Optional[str] = None,
        format: Literal["summary", "sample", "full"] = "summary",
        sample_size: int = DEFAULT_SAMPLE_SIZE,
    ) -> dict:
        """
        Download and parse results from a completed bulk operation.

        Args:
            operation_id: Specific operation ID. If omitted, uses the current/most recent operation.
            format: 'summary' (metadata only), 'sample' (first N objects), or 'full' (up to 1000 objects)
            sample_size: Number of objects to return for 'sample' format (default 10)

        Returns:
            Dictionary with the summary, sample, or data array. 'full' results
            set truncated=true when the export holds more than 1000 objects.
        """
        return await _run_tool(
            "get-bulk-operation-results",
            bulk_manager.get_results(operation_id, format=format, sample_size=sample_size),
        )

    @mcp.tool(name="get-status")
    async def get_status() -> dict:
        """
        Get connection status, store info, and granted scopes.
        Use this to verify the connection is working and see what store is connected.

        Returns:
            Dictionary containing connected, responseTimeMs, store, scopes, and token info
        """
        async def _status() -> Dict[str, Any]:
            start = time.monotonic()
            status = await client.get_shop_status()
            return {
                "success": True,
                "connected": True,
                "responseTimeMs": int((time.monotonic() - start) * 1000),
                "store": status["shop"],
                "scopes": status["scopes"],
                "apiVersion": client.api_version,
                "tokenSource": config.token_source,
                "tokenObtainedAt": config.token_obtained_at,
            }

        result = await _run_tool("get-status", _status())
        if not result.get("success"):
            result["connected"] = False
        return result

    return mcp


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="shopify-mcp",
        description="MCP server for the Shopify Admin GraphQL API.",
    )
    parser.add_argument("--oauth", action="store_true",
                        help="Run the OAuth flow, save the token, and exit")
    parser.add_argument("--domain", help="Shop domain (e.g., your-store.myshopify.com)")
    parser.add_argument("--accessToken", "--access-token", dest="access_token",
                        help="Admin API access token")
    parser.add_argument("--clientId", "--client-id", dest="client_id",
                        help="App client ID (OAuth flow)")
    parser.add_argument("--clientSecret", "--client-secret", dest="client_secret",
                        help="App client secret (OAuth flow)")
    parser.add_argument("--scopes", help="Comma-separated scopes to request (OAuth flow)")
    parser.add_argument("--apiVersion", "--api-version", dest="api_version",
                        help="Admin API version (default 2023-07)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser


def main(argv: Optional[List[str]] = None, token_store: Optional[TokenStore] = None) -> int:
    """
    Run the CLI.

    Returns:
        Process exit code
    """
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        stream=sys.stderr,
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # Load environment variables from .env file
    load_dotenv()

    token_store = token_store or TokenStore()
    config = resolve_config(args, token_store=token_store)

    try:
        if args.oauth:
            require_oauth_settings(config)
            oauth_manager = OAuthManager(
                config.domain,
                config.client_id,
                config.client_secret,
                scopes=config.scopes,
                token_store=token_store,
            )
            oauth_manager.run_oauth_flow()
            return 0

        require_server_settings(config)
    except ShopifyMCPError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    mcp = create_server(config)
    mcp.run()
    return 0


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
