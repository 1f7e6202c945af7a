"""Tests for shopify_server."""

import json
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from fastmcp import Client, FastMCP

import shopify_server
from bulk_export import BulkExportManager
from shopify_config import TOKEN_SOURCE_STORE, ServerConfig
from shopify_errors import CsrfError, NotCompletedError, ShopifyAPIError
from token_store import TokenStore

DOMAIN = "shop.myshopify.com"

ENV_VARS = [
    "MYSHOPIFY_DOMAIN",
    "SHOPIFY_ACCESS_TOKEN",
    "SHOPIFY_CLIENT_ID",
    "SHOPIFY_CLIENT_SECRET",
    "SHOPIFY_SCOPES",
    "SHOPIFY_API_VERSION",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(shopify_server, "load_dotenv", lambda: None)


@pytest.fixture
def store(tmp_path):
    return TokenStore(tmp_path)


def test_oauth_requires_domain(store, capsys):
    assert shopify_server.main(["--oauth"], token_store=store) == 1
    assert "--domain is required" in capsys.readouterr().err


def test_oauth_runs_flow(store, monkeypatch):
    manager_cls = MagicMock()
    monkeypatch.setattr(shopify_server, "OAuthManager", manager_cls)

    code = shopify_server.main(
        ["--oauth", "--domain", DOMAIN, "--clientId", "id", "--clientSecret", "secret", "--scopes", "read_orders"],
        token_store=store,
    )

    assert code == 0
    manager_cls.assert_called_once_with(DOMAIN, "id", "secret", scopes="read_orders", token_store=store)
    manager_cls.return_value.run_oauth_flow.assert_called_once()


def test_oauth_failure_exits_nonzero(store, monkeypatch, capsys):
    manager_cls = MagicMock()
    manager_cls.return_value.run_oauth_flow.side_effect = CsrfError("Invalid state parameter")
    monkeypatch.setattr(shopify_server, "OAuthManager", manager_cls)

    code = shopify_server.main(
        ["--oauth", "--domain", DOMAIN, "--clientId", "id", "--clientSecret", "secret"],
        token_store=store,
    )

    assert code == 1
    assert "Invalid state parameter" in capsys.readouterr().err


def test_server_requires_token(store, capsys):
    assert shopify_server.main(["--domain", DOMAIN], token_store=store) == 1
    assert "SHOPIFY_ACCESS_TOKEN is required" in capsys.readouterr().err


def test_server_runs_with_token(store, monkeypatch):
    create_server = MagicMock()
    monkeypatch.setattr(shopify_server, "create_server", create_server)

    code = shopify_server.main(["--domain", DOMAIN, "--accessToken", "shpat_t"], token_store=store)

    assert code == 0
    config = create_server.call_args[0][0]
    assert config.domain == DOMAIN
    assert config.access_token == "shpat_t"
    create_server.return_value.run.assert_called_once()


def test_create_server_returns_fastmcp():
    config = ServerConfig(domain=DOMAIN, access_token="t")
    mcp = shopify_server.create_server(config, client=MagicMock(), bulk_manager=MagicMock())
    assert isinstance(mcp, FastMCP)


@pytest.mark.asyncio
async def test_run_tool_passes_results_through():
    async def ok():
        return {"success": True}

    assert await shopify_server._run_tool("tool", ok()) == {"success": True}


@pytest.mark.asyncio
async def test_run_tool_renders_domain_errors():
    async def fails():
        raise NotCompletedError("RUNNING", operation_id="gid://shopify/BulkOperation/1")

    result = await shopify_server._run_tool("get-bulk-operation-results", fails())

    assert result == {
        "success": False,
        "error": "Operation is not completed. Current status: RUNNING",
        "operationId": "gid://shopify/BulkOperation/1",
        "status": "RUNNING",
        "errorCode": None,
    }


@pytest.mark.asyncio
async def test_run_tool_renders_http_errors():
    async def fails():
        raise httpx.ConnectError("connection refused")

    result = await shopify_server._run_tool("get-status", fails())

    assert result["success"] is False
    assert "connection refused" in result["error"]


def _mocked_bulk_manager():
    manager = MagicMock()
    manager.start_export = AsyncMock(return_value={"success": True, "operationId": "gid://shopify/BulkOperation/1"})
    manager.get_status = AsyncMock(return_value={"found": True, "status": "RUNNING"})
    manager.get_results = AsyncMock(return_value={"success": True, "format": "sample"})
    return manager


def _mocked_client(**kwargs):
    client = MagicMock(api_version="2023-07")
    client.get_shop_status = AsyncMock(**kwargs)
    return client


def _server(client=None, bulk_manager=None, **config):
    config.setdefault("domain", DOMAIN)
    config.setdefault("access_token", "shpat_t")
    return shopify_server.create_server(
        ServerConfig(**config),
        client=client or _mocked_client(),
        bulk_manager=bulk_manager or _mocked_bulk_manager(),
    )


async def _call(mcp, name, arguments=None):
    async with Client(mcp) as client:
        result = await client.call_tool(name, arguments or {})
    # Older clients return the content list directly
    content = getattr(result, "content", result)
    return json.loads(content[0].text)


@pytest.mark.asyncio
async def test_lists_tools_with_parameter_names():
    async with Client(_server()) as client:
        tools = {tool.name: tool for tool in await client.list_tools()}

    assert set(tools) == {
        "start-bulk-export",
        "get-bulk-operation-status",
        "get-bulk-operation-results",
        "get-status",
    }
    assert set(tools["start-bulk-export"].inputSchema["properties"]) == {
        "type", "query", "date_from", "date_to", "custom_query", "include_metafields",
    }
    assert set(tools["get-bulk-operation-results"].inputSchema["properties"]) == {
        "operation_id", "format", "sample_size",
    }
    assert set(tools["get-bulk-operation-status"].inputSchema["properties"]) == {"operation_id"}


@pytest.mark.asyncio
async def test_start_bulk_export_passes_arguments():
    bulk_manager = _mocked_bulk_manager()
    mcp = _server(bulk_manager=bulk_manager)

    result = await _call(mcp, "start-bulk-export", {
        "type": "custom",
        "custom_query": "{ products { edges { node { id } } } }",
        "include_metafields": True,
    })

    assert result["operationId"] == "gid://shopify/BulkOperation/1"
    bulk_manager.start_export.assert_awaited_once_with(
        "custom",
        query=None,
        date_from=None,
        date_to=None,
        custom_query="{ products { edges { node { id } } } }",
        include_metafields=True,
    )


@pytest.mark.asyncio
async def test_start_bulk_export_custom_without_query_reports_error():
    graphql = MagicMock()
    graphql.request = AsyncMock()
    mcp = _server(bulk_manager=BulkExportManager(graphql))

    result = await _call(mcp, "start-bulk-export", {"type": "custom"})

    assert result["success"] is False
    assert "custom_query is required" in result["error"]
    graphql.request.assert_not_called()


@pytest.mark.asyncio
async def test_get_bulk_operation_status_passes_operation_id():
    bulk_manager = _mocked_bulk_manager()

    result = await _call(_server(bulk_manager=bulk_manager), "get-bulk-operation-status", {"operation_id": "123"})

    assert result == {"found": True, "status": "RUNNING"}
    bulk_manager.get_status.assert_awaited_once_with("123")


@pytest.mark.asyncio
async def test_get_bulk_operation_results_passes_format_and_sample_size():
    bulk_manager = _mocked_bulk_manager()
    mcp = _server(bulk_manager=bulk_manager)

    result = await _call(mcp, "get-bulk-operation-results", {
        "operation_id": "123",
        "format": "sample",
        "sample_size": 25,
    })

    assert result["success"] is True
    bulk_manager.get_results.assert_awaited_once_with("123", format="sample", sample_size=25)


@pytest.mark.asyncio
async def test_get_bulk_operation_results_defaults_to_summary():
    bulk_manager = _mocked_bulk_manager()

    await _call(_server(bulk_manager=bulk_manager), "get-bulk-operation-results")

    bulk_manager.get_results.assert_awaited_once_with(None, format="summary", sample_size=10)


@pytest.mark.asyncio
async def test_get_status_reports_connection():
    client = _mocked_client(return_value={
        "shop": {"name": "Test Shop"},
        "scopes": ["read_products", "read_orders"],
    })
    mcp = _server(
        client=client,
        token_source=TOKEN_SOURCE_STORE,
        token_obtained_at="2024-01-01T00:00:00Z",
    )

    result = await _call(mcp, "get-status")

    assert result["success"] is True
    assert result["connected"] is True
    assert isinstance(result["responseTimeMs"], int)
    assert result["responseTimeMs"] >= 0
    assert result["store"] == {"name": "Test Shop"}
    assert result["scopes"] == ["read_products", "read_orders"]
    assert result["apiVersion"] == "2023-07"
    assert result["tokenSource"] == "token_store"
    assert result["tokenObtainedAt"] == "2024-01-01T00:00:00Z"


@pytest.mark.asyncio
async def test_get_status_reports_disconnected_on_failure():
    client = _mocked_client(side_effect=ShopifyAPIError("Shopify API returned 401: Unauthorized", status_code=401))

    result = await _call(_server(client=client), "get-status")

    assert result["success"] is False
    assert result["connected"] is False
    assert "401" in result["error"]


@pytest.mark.asyncio
async def test_run_tool_renders_non_json_response():
    async def fails():
        raise ShopifyAPIError("Shopify API returned a non-JSON response (200): Expecting value", status_code=200)

    result = await shopify_server._run_tool("get-status", fails())

    assert result == {
        "success": False,
        "error": "Shopify API returned a non-JSON response (200): Expecting value",
    }
