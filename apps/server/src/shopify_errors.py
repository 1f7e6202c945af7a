"""Error types raised by the Shopify MCP server components."""

from typing import Any, Dict, List, Optional


class ShopifyMCPError(Exception):
    """Base class for all errors surfaced to tool callers."""

    def to_dict(self) -> Dict[str, Any]:
        """Render the error as a tool response."""
        return {"success": False, "error": str(self)}


class ConfigurationError(ShopifyMCPError):
    """A required setting is missing."""


class ValidationError(ShopifyMCPError):
    """Tool input failed validation before any upstream call."""


class OAuthError(ShopifyMCPError):
    """Base class for failures of the OAuth authorization flow."""


class CsrfError(OAuthError):
    """The callback's state parameter did not match the expected nonce."""


class MalformedCallbackError(OAuthError):
    """The callback was missing the code or shop parameter."""


class CallbackTimeoutError(OAuthError, TimeoutError):
    """No callback arrived within the wait window."""


class CallbackServerError(OAuthError):
    """The local callback listener could not be started."""


class TokenExchangeError(OAuthError):
    """The token endpoint rejected the authorization code."""

    def __init__(self, status_code: int, body: str):
        super().__init__(f"Failed to exchange code for token: {status_code} {body}")
        self.status_code = status_code
        self.body = body


class ShopifyAPIError(ShopifyMCPError):
    """The GraphQL endpoint returned an HTTP or top-level GraphQL error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class UpstreamRejectedError(ShopifyMCPError):
    """A mutation returned userErrors."""

    def __init__(self, message: str, user_errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.user_errors = user_errors or []

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["userErrors"] = self.user_errors
        return result


class NotFoundError(ShopifyMCPError):
    """The requested resource does not exist upstream."""

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["found"] = False
        return result


class BulkOperationError(ShopifyMCPError):
    """Base class for bulk operation result failures."""

    def __init__(self, message: str, operation_id: Optional[str] = None):
        super().__init__(message)
        self.operation_id = operation_id

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        if self.operation_id:
            result["operationId"] = self.operation_id
        return result


class NotCompletedError(BulkOperationError):
    """Results were requested before the operation completed."""

    def __init__(
        self,
        status: str,
        operation_id: Optional[str] = None,
        error_code: Optional[str] = None,
    ):
        super().__init__(
            f"Operation is not completed. Current status: {status}",
            operation_id=operation_id,
        )
        self.status = status
        self.error_code = error_code

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["status"] = self.status
        result["errorCode"] = self.error_code
        return result


class ResultsExpiredError(BulkOperationError):
    """The operation completed but its result file is no longer available."""

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["status"] = "COMPLETED"
        return result


class DownloadError(BulkOperationError):
    """Fetching the result file failed."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        operation_id: Optional[str] = None,
    ):
        super().__init__(message, operation_id=operation_id)
        self.status_code = status_code
