"""Bulk export pipeline: submit bulk operations, poll them, and read their JSONL results.

Shopify runs at most one bulk query per shop at a time. Submitting while one is
running surfaces as a userError on the mutation, so no client-side locking is
done here. Every call re-queries upstream; nothing about an operation is cached.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

import httpx

from shopify_client import ShopifyClient, check_user_errors, to_gid
from shopify_errors import (
    DownloadError,
    NotCompletedError,
    NotFoundError,
    ResultsExpiredError,
    UpstreamRejectedError,
    ValidationError,
)

logger = logging.getLogger(__name__)

EXPORT_TYPES = ("products", "orders", "customers", "inventory", "custom")
RESULT_FORMATS = ("summary", "sample", "full")
MAX_FULL_OBJECTS = 1000
DEFAULT_SAMPLE_SIZE = 10
RESULT_RETENTION = timedelta(days=7)

KB = 1024
MB = 1024 * 1024

BULK_OPERATION_FIELDS = """
    id
    status
    type
    createdAt
    completedAt
    objectCount
    fileSize
    url
    partialDataUrl
    errorCode
    query
"""

RUN_QUERY_MUTATION = """
mutation BulkOperationRunQuery($query: String!) {
  bulkOperationRunQuery(query: $query) {
    bulkOperation {
      id
      status
      createdAt
    }
    userErrors {
      field
      message
    }
  }
}
"""

GET_OPERATION_QUERY = f"""
query GetBulkOperation($id: ID!) {{
  node(id: $id) {{
    ... on BulkOperation {{{BULK_OPERATION_FIELDS}    }}
  }}
}}
"""

CURRENT_OPERATION_QUERY = f"""
query CurrentBulkOperation {{
  currentBulkOperation {{{BULK_OPERATION_FIELDS}  }}
}}
"""

METAFIELDS_FRAGMENT = "metafields { edges { node { namespace key value type } } }"


def format_file_size(size: Optional[int]) -> Optional[str]:
    """Render a byte count using binary thresholds, e.g. 2048 -> '2.00 KB'."""
    if size is None:
        return None
    if size < KB:
        return f"{size} bytes"
    if size < MB:
        return f"{size / KB:.2f} KB"
    return f"{size / MB:.2f} MB"


def _parse_timestamp(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def compute_expiry(completed_at: Optional[str]) -> Optional[str]:
    """Return when a result file expires (completion + 7 days, UTC), if completed."""
    if not completed_at:
        return None
    expires = _parse_timestamp(completed_at) + RESULT_RETENTION
    return expires.strftime("%Y-%m-%dT%H:%M:%SZ")


def _to_int(value: Any) -> Optional[int]:
    # objectCount and fileSize arrive as strings of digits
    if value is None or value == "":
        return None
    return int(value)


def parse_jsonl(lines: Iterable[str], limit: int) -> List[Any]:
    """
    Parse up to `limit` non-blank JSONL lines.

    Malformed lines count toward the limit and are skipped with a warning.
    """
    objects: List[Any] = []
    read = 0
    for line in lines:
        line = line.strip()
        if not line:
            continue
        if read >= limit:
            break
        read += 1
        try:
            objects.append(json.loads(line))
        except ValueError:
            logger.warning("Skipping malformed JSONL line %d", read)
    return objects


@dataclass(frozen=True)
class BulkOperation:
    """Point-in-time snapshot of an upstream bulk operation."""

    id: str
    status: str
    type: Optional[str] = None
    created_at: Optional[str] = None
    completed_at: Optional[str] = None
    object_count: int = 0
    file_size: Optional[int] = None
    url: Optional[str] = None
    partial_data_url: Optional[str] = None
    error_code: Optional[str] = None
    query: Optional[str] = None

    @classmethod
    def from_node(cls, node: Dict[str, Any]) -> "BulkOperation":
        return cls(
            id=node["id"],
            status=node["status"],
            type=node.get("type"),
            created_at=node.get("createdAt"),
            completed_at=node.get("completedAt"),
            object_count=_to_int(node.get("objectCount")) or 0,
            file_size=_to_int(node.get("fileSize")),
            url=node.get("url"),
            partial_data_url=node.get("partialDataUrl"),
            error_code=node.get("errorCode"),
            query=node.get("query"),
        )

    @property
    def expires_at(self) -> Optional[str]:
        return compute_expiry(self.completed_at)

    @property
    def progress(self) -> str:
        if self.status == "CREATED":
            return "Operation created, waiting to start..."
        if self.status == "RUNNING":
            return f"Processing {self.object_count} objects..."
        if self.status == "COMPLETED":
            return f"Completed! {self.object_count} objects exported."
        if self.status == "FAILED":
            return f"Failed with error: {self.error_code or 'Unknown error'}"
        if self.status == "CANCELED":
            return "Operation was canceled."
        return f"Status: {self.status}"


def _query_argument(conditions: List[str]) -> str:
    if not conditions:
        return ""
    # json.dumps yields a quoted, escaped GraphQL string literal
    return f"(query: {json.dumps(' AND '.join(conditions))})"


def _check_date(name: str, value: Optional[str]) -> None:
    if value is None:
        return
    try:
        _parse_timestamp(value)
    except ValueError:
        raise ValidationError(f"{name} must be an ISO 8601 date, got: {value}")


def build_products_query(filter_query: Optional[str] = None, include_metafields: bool = False) -> str:
    metafields = METAFIELDS_FRAGMENT if include_metafields else ""
    query_arg = _query_argument([filter_query] if filter_query else [])
    return f"""{{
  products{query_arg} {{
    edges {{
      node {{
        id
        title
        handle
        status
        vendor
        productType
        tags
        createdAt
        updatedAt
        variants {{
          edges {{
            node {{
              id
              title
              sku
              price
              compareAtPrice
              inventoryQuantity
              barcode
            }}
          }}
        }}
        images {{
          edges {{
            node {{
              url
              altText
            }}
          }}
        }}
        {metafields}
      }}
    }}
  }}
}}"""


def build_orders_query(
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    filter_query: Optional[str] = None,
    include_metafields: bool = False,
) -> str:
    conditions = []
    if date_from:
        conditions.append(f"created_at:>={date_from}")
    if date_to:
        conditions.append(f"created_at:<={date_to}")
    if filter_query:
        conditions.append(filter_query)
    metafields = METAFIELDS_FRAGMENT if include_metafields else ""
    return f"""{{
  orders{_query_argument(conditions)} {{
    edges {{
      node {{
        id
        name
        createdAt
        updatedAt
        displayFinancialStatus
        displayFulfillmentStatus
        totalPriceSet {{
          shopMoney {{
            amount
            currencyCode
          }}
        }}
        customer {{
          id
          email
          firstName
          lastName
        }}
        shippingAddress {{
          address1
          city
          province
          country
          zip
        }}
        lineItems {{
          edges {{
            node {{
              title
              quantity
              sku
              originalUnitPriceSet {{
                shopMoney {{
                  amount
                }}
              }}
            }}
          }}
        }}
        {metafields}
      }}
    }}
  }}
}}"""


def build_customers_query(filter_query: Optional[str] = None, include_metafields: bool = False) -> str:
    metafields = METAFIELDS_FRAGMENT if include_metafields else ""
    query_arg = _query_argument([filter_query] if filter_query else [])
    return f"""{{
  customers{query_arg} {{
    edges {{
      node {{
        id
        email
        firstName
        lastName
        phone
        createdAt
        updatedAt
        ordersCount
        totalSpentV2 {{
          amount
          currencyCode
        }}
        defaultAddress {{
          address1
          city
          province
          country
          zip
        }}
        tags
        {metafields}
      }}
    }}
  }}
}}"""


def build_inventory_query() -> str:
    return """{
  inventoryItems {
    edges {
      node {
        id
        sku
        tracked
        inventoryLevels {
          edges {
            node {
              id
              available
              location {
                id
                name
              }
            }
          }
        }
        variant {
          id
          title
          product {
            id
            title
          }
        }
      }
    }
  }
}"""


class BulkExportManager:
    """Starts bulk exports and reads their status and results."""

    def __init__(self, client: ShopifyClient, http_client: Optional[httpx.AsyncClient] = None):
        """
        Args:
            client: GraphQL client for the shop
            http_client: Client for downloading result files. These are signed
                URLs, so it must not carry the shop's access token.
        """
        self.client = client
        self.http_client = http_client or httpx.AsyncClient(timeout=60.0, follow_redirects=True)

    def build_query(
        self,
        export_type: str,
        query: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        custom_query: Optional[str] = None,
        include_metafields: bool = False,
    ) -> str:
        """Build the bulk query document for an export type."""
        if export_type == "products":
            return build_products_query(query, include_metafields)
        if export_type == "orders":
            _check_date("date_from", date_from)
            _check_date("date_to", date_to)
            return build_orders_query(date_from, date_to, query, include_metafields)
        if export_type == "customers":
            return build_customers_query(query, include_metafields)
        if export_type == "inventory":
            return build_inventory_query()
        if export_type == "custom":
            if not custom_query or not custom_query.strip():
                raise ValidationError("custom_query is required when type is 'custom'")
            return custom_query
        raise ValidationError(
            f"Unknown export type: {export_type}. Use one of: {', '.join(EXPORT_TYPES)}"
        )

    async def start_export(
        self,
        export_type: str,
        query: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        custom_query: Optional[str] = None,
        include_metafields: bool = False,
    ) -> Dict[str, Any]:
        """
        Submit a bulk query. Returns immediately; poll with get_status.

        Raises:
            ValidationError: Unknown type or missing custom query
            UpstreamRejectedError: Shopify refused the submission
        """
        bulk_query = self.build_query(
            export_type,
            query=query,
            date_from=date_from,
            date_to=date_to,
            custom_query=custom_query,
            include_metafields=include_metafields,
        )

        data = await self.client.request(RUN_QUERY_MUTATION, {"query": bulk_query})
        payload = data.get("bulkOperationRunQuery") or {}
        check_user_errors(payload, "Failed to start bulk export")

        operation = payload.get("bulkOperation")
        if not operation:
            raise UpstreamRejectedError("Failed to start bulk export: bulk operation was not created")

        logger.info("Started %s bulk export %s", export_type, operation["id"])
        return {
            "success": True,
            "operationId": operation["id"],
            "status": operation["status"],
            "createdAt": operation.get("createdAt"),
            "exportType": export_type,
            "message": (
                "Bulk export started. Use get-bulk-operation-status to check progress, "
                "then get-bulk-operation-results when complete."
            ),
        }

    async def fetch_operation(self, operation_id: Optional[str] = None) -> BulkOperation:
        """
        Fetch an operation by ID, or the shop's current one.

        Raises:
            NotFoundError: No such operation, or no current operation
        """
        if operation_id:
            data = await self.client.request(
                GET_OPERATION_QUERY, {"id": to_gid("BulkOperation", operation_id)}
            )
            node = data.get("node")
        else:
            data = await self.client.request(CURRENT_OPERATION_QUERY)
            node = data.get("currentBulkOperation")

        # node() returns an empty object for IDs of other types
        if not node or "id" not in node:
            raise NotFoundError(
                f"No bulk operation found with ID: {operation_id}"
                if operation_id
                else "No bulk operation currently running or recently completed."
            )
        return BulkOperation.from_node(node)

    async def get_status(self, operation_id: Optional[str] = None) -> Dict[str, Any]:
        """One point-in-time observation of an operation. The caller does the polling."""
        try:
            operation = await self.fetch_operation(operation_id)
        except NotFoundError as e:
            return {"found": False, "message": str(e)}

        return {
            "found": True,
            "id": operation.id,
            "status": operation.status,
            "type": operation.type,
            "createdAt": operation.created_at,
            "completedAt": operation.completed_at,
            "objectCount": operation.object_count,
            "fileSize": format_file_size(operation.file_size),
            "fileSizeBytes": operation.file_size,
            "url": operation.url,
            "partialDataUrl": operation.partial_data_url,
            "errorCode": operation.error_code,
            "progress": operation.progress,
            "isComplete": operation.status == "COMPLETED",
            "isFailed": operation.status == "FAILED",
            "isRunning": operation.status in ("CREATED", "RUNNING"),
        }

    async def _download_lines(self, operation: BulkOperation, limit: int) -> List[str]:
        """Stream the result file, keeping at most `limit` non-blank lines."""
        lines: List[str] = []
        try:
            async with self.http_client.stream("GET", operation.url) as response:
                if response.is_error:
                    raise DownloadError(
                        f"Failed to download results: {response.status_code} {response.reason_phrase}",
                        status_code=response.status_code,
                        operation_id=operation.id,
                    )
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    lines.append(line)
                    if len(lines) >= limit:
                        break
        except httpx.HTTPError as e:
            raise DownloadError(
                f"Failed to download results: {e}", operation_id=operation.id
            ) from e
        return lines

    async def get_results(
        self,
        operation_id: Optional[str] = None,
        format: str = "summary",
        sample_size: int = DEFAULT_SAMPLE_SIZE,
    ) -> Dict[str, Any]:
        """
        Read a completed operation's results.

        Args:
            operation_id: Operation ID; the current operation if omitted
            format: 'summary' (metadata only), 'sample' (first sample_size
                objects) or 'full' (up to 1000 objects)
            sample_size: Number of objects for the 'sample' format

        Raises:
            NotCompletedError: The operation has not completed
            ResultsExpiredError: The result file is no longer available
            DownloadError: The result file could not be fetched
        """
        if format not in RESULT_FORMATS:
            raise ValidationError(f"Invalid format: {format}. Use one of: {', '.join(RESULT_FORMATS)}")
        if format == "sample" and sample_size < 1:
            raise ValidationError("sample_size must be at least 1")

        try:
            operation = await self.fetch_operation(operation_id)
        except NotFoundError as e:
            return e.to_dict()

        if operation.status != "COMPLETED":
            raise NotCompletedError(
                operation.status, operation_id=operation.id, error_code=operation.error_code
            )

        if not operation.url:
            raise ResultsExpiredError(
                "Operation completed but no download URL available. "
                "The results may have expired (7 day limit).",
                operation_id=operation.id,
            )

        expires_at = operation.expires_at
        total_objects = operation.object_count

        if format == "summary":
            return {
                "success": True,
                "format": "summary",
                "operationId": operation.id,
                "summary": {
                    "totalObjects": total_objects,
                    "fileSize": format_file_size(operation.file_size),
                    "fileSizeBytes": operation.file_size,
                    "downloadUrl": operation.url,
                    "completedAt": operation.completed_at,
                    "expiresAt": expires_at,
                },
            }

        limit = sample_size if format == "sample" else MAX_FULL_OBJECTS
        lines = await self._download_lines(operation, limit)
        objects = parse_jsonl(lines, limit)

        if format == "sample":
            return {
                "success": True,
                "format": "sample",
                "operationId": operation.id,
                "sampleSize": len(objects),
                "totalObjects": total_objects,
                "sample": objects,
                "downloadUrl": operation.url,
                "expiresAt": expires_at,
            }

        truncated = total_objects > MAX_FULL_OBJECTS
        result = {
            "success": True,
            "format": "full",
            "operationId": operation.id,
            "objectCount": len(objects),
            "totalObjects": total_objects,
            "truncated": truncated,
            "data": objects,
            "downloadUrl": operation.url,
            "expiresAt": expires_at,
        }
        if truncated:
            result["note"] = (
                f"Results truncated to {MAX_FULL_OBJECTS} objects. "
                "Download the full JSONL file for complete data."
            )
        return result

    async def aclose(self) -> None:
        await self.http_client.aclose()
