"""Error handling with RFC 7807 Problem Details support."""

from enum import Enum
from typing import Any, Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse


REQUIRES_AUTHENTICATION_MESSAGE = "Requires Authentication"


class ErrorCode(str, Enum):
    """Standardized error codes for the application."""

    VALIDATION_ERROR = "validation_error"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    INTERNAL_ERROR = "internal_error"
    DATABASE_ERROR = "database_error"
    STORAGE_ERROR = "storage_error"
    # OAuth flow
    INVALID_STATE = "invalid_state"
    PROVIDER_NOT_CONFIGURED = "provider_not_configured"
    OAUTH_EXCHANGE_FAILED = "oauth_exchange_failed"
    OAUTH_REFRESH_FAILED = "oauth_refresh_failed"
    # Sync
    NOT_CONFIGURED = "not_configured"
    REQUIRES_AUTHENTICATION = "requires_authentication"
    INVALID_LOCATOR = "invalid_locator"
    PROVIDER_LIST_FAILED = "provider_list_failed"
    DOCUMENT_SYNC_FAILED = "document_sync_failed"
    DATA_SOURCE_NOT_FOUND = "data_source_not_found"
    # Knowledge base
    KNOWLEDGE_BASE_ERROR = "knowledge_base_error"


class AppError(Exception):
    """
    Structured application error following RFC 7807 Problem Details.

    Attributes:
        code: Error code from ErrorCode enum
        message: Human-readable error message
        status: HTTP status code
        details: Additional error context
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status: int = 500,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        self.code = code
        self.message = message
        self.status = status
        self.details = details or {}
        super().__init__(message)

    def to_problem_detail(self, instance: str) -> dict[str, Any]:
        """
        Convert error to RFC 7807 Problem Details format.

        Args:
            instance: The request path where the error occurred

        Returns:
            Dictionary in RFC 7807 format
        """
        problem = {
            "type": f"https://api.example.com/errors/{self.code.value.replace('_', '-')}",
            "title": self.code.value.replace("_", " ").title(),
            "status": self.status,
            "detail": self.message,
            "instance": instance,
        }
        if self.details:
            problem["errors"] = self.details
        return problem


class ValidationError(AppError):
    """Validation error for request data."""

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        super().__init__(
            code=ErrorCode.VALIDATION_ERROR,
            message=message,
            status=400,
            details=details,
        )


class DatabaseError(AppError):
    """Database operation error."""

    def __init__(self, operation: str, reason: str) -> None:
        super().__init__(
            code=ErrorCode.DATABASE_ERROR,
            message=f"Database error during {operation}: {reason}",
            status=500,
        )


class StorageError(AppError):
    """Error during object store operations."""

    def __init__(self, operation: str, reason: str, key: Optional[str] = None) -> None:
        super().__init__(
            code=ErrorCode.STORAGE_ERROR,
            message=f"Storage error during {operation}: {reason}",
            status=500,
            details={"key": key} if key else None,
        )


# OAuth flow errors


class InvalidStateError(AppError):
    """The OAuth state parameter could not be decoded."""

    def __init__(self, reason: str = "Invalid state parameter") -> None:
        super().__init__(
            code=ErrorCode.INVALID_STATE,
            message=reason,
            status=400,
        )


class ProviderNotConfiguredError(AppError):
    """The server has no OAuth app registration for a provider."""

    def __init__(self, provider_name: str) -> None:
        super().__init__(
            code=ErrorCode.PROVIDER_NOT_CONFIGURED,
            message=f"Server not configured for {provider_name} OAuth",
            status=500,
            details={"provider": provider_name},
        )


class OAuthExchangeFailedError(AppError):
    """The provider token endpoint rejected an authorization code."""

    def __init__(self, provider: str, reason: str) -> None:
        super().__init__(
            code=ErrorCode.OAUTH_EXCHANGE_FAILED,
            message=f"{provider} token exchange failed: {reason}",
            status=502,
            details={"provider": provider},
        )


class OAuthRefreshFailedError(AppError):
    """The provider token endpoint rejected a refresh token."""

    def __init__(self, provider: str, reason: str) -> None:
        super().__init__(
            code=ErrorCode.OAUTH_REFRESH_FAILED,
            message=f"{provider} token refresh failed: {reason}",
            status=502,
            details={"provider": provider},
        )


# Sync errors


class NotConfiguredError(AppError):
    """Connection or required auth fields are absent."""

    def __init__(self, provider: str, reason: str) -> None:
        super().__init__(
            code=ErrorCode.NOT_CONFIGURED,
            message=f"{provider} data source not configured: {reason}",
            status=404,
            details={"provider": provider},
        )


class RequiresAuthenticationError(AppError):
    """Credentials expired and could not be refreshed; the user must re-run OAuth."""

    def __init__(self, provider: str, start_endpoint: str) -> None:
        super().__init__(
            code=ErrorCode.REQUIRES_AUTHENTICATION,
            message=REQUIRES_AUTHENTICATION_MESSAGE,
            status=401,
            details={
                "provider": provider,
                "reauth": True,
                "startEndpoint": start_endpoint,
            },
        )


class InvalidLocatorError(AppError):
    """A root-location URL did not parse into a provider locator."""

    def __init__(self, provider: str, url: str) -> None:
        super().__init__(
            code=ErrorCode.INVALID_LOCATOR,
            message=f"Invalid {provider} URL: {url}",
            status=400,
            details={"provider": provider, "url": url},
        )


class ProviderListFailedError(AppError):
    """The provider listing endpoint answered with a non-2xx status."""

    def __init__(self, provider: str, reason: str, status_code: Optional[int] = None) -> None:
        details: dict[str, Any] = {"provider": provider}
        if status_code is not None:
            details["status_code"] = status_code
        super().__init__(
            code=ErrorCode.PROVIDER_LIST_FAILED,
            message=f"{provider} listing failed: {reason}",
            status=502,
            details=details,
        )
        self.status_code = status_code


class ProviderAuthError(ProviderListFailedError):
    """Listing was rejected because the access token is no longer valid."""


class DocumentSyncFailedError(AppError):
    """Fetching or uploading a single document failed."""

    def __init__(self, provider: str, document_id: str, reason: str) -> None:
        super().__init__(
            code=ErrorCode.DOCUMENT_SYNC_FAILED,
            message=f"Failed to sync {provider} document {document_id}: {reason}",
            status=500,
            details={"provider": provider, "document_id": document_id},
        )


class DataSourceNotFoundError(AppError):
    """A connection record does not exist."""

    def __init__(self, data_source_id: str) -> None:
        super().__init__(
            code=ErrorCode.DATA_SOURCE_NOT_FOUND,
            message="Data source not found",
            status=404,
            details={"data_source_id": data_source_id},
        )


class ForbiddenError(AppError):
    """The caller does not own the requested resource."""

    def __init__(self, message: str) -> None:
        super().__init__(
            code=ErrorCode.FORBIDDEN,
            message=message,
            status=403,
        )


class SlackSignatureError(AppError):
    """A Slack request failed signature verification."""

    def __init__(self, reason: str) -> None:
        super().__init__(
            code=ErrorCode.UNAUTHORIZED,
            message=reason,
            status=401,
        )


class KnowledgeBaseError(AppError):
    """The retrieval-and-generation service call failed."""

    def __init__(self, reason: str) -> None:
        super().__init__(
            code=ErrorCode.KNOWLEDGE_BASE_ERROR,
            message=f"Failed to retrieve knowledge base answer: {reason}",
            status=500,
        )


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """
    FastAPI exception handler for AppError.

    Converts AppError to RFC 7807 Problem Details JSON response.

    Args:
        request: The FastAPI request object
        exc: The AppError exception

    Returns:
        JSONResponse with Problem Details format
    """
    return JSONResponse(
        status_code=exc.status,
        content=exc.to_problem_detail(str(request.url.path)),
    )


_HTTP_STATUS_CODES = {
    401: ErrorCode.UNAUTHORIZED,
    403: ErrorCode.FORBIDDEN,
    404: ErrorCode.NOT_FOUND,
}


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Render HTTPException with the same envelope shape as AppError."""
    code = _HTTP_STATUS_CODES.get(exc.status_code)
    if code is None:
        code = ErrorCode.INTERNAL_ERROR if exc.status_code >= 500 else ErrorCode.VALIDATION_ERROR
    problem = {
        "type": f"https://api.example.com/errors/{code.value.replace('_', '-')}",
        "title": code.value.replace("_", " ").title(),
        "status": exc.status_code,
        "detail": exc.detail,
        "instance": str(request.url.path),
    }
    return JSONResponse(
        status_code=exc.status_code,
        content=problem,
        headers=getattr(exc, "headers", None),
    )
