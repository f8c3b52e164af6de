"""
Error hierarchy for the moral graph services.

Every error carries a code, a category, an HTTP status and whether the task
runner should retry it. Work loops catch these per item (cluster, context,
hypothesis) so one bad item never aborts a batch.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(str, Enum):
    """High-level error categories for routing and handling."""
    EXTERNAL_API = "external_api"
    DATA_QUALITY = "data_quality"
    INVARIANT = "invariant"
    RESOURCE_NOT_FOUND = "resource_not_found"


class MoralGraphError(Exception):
    """Base exception for all moral graph errors."""

    retryable = False

    def __init__(
        self,
        message: str,
        code: str,
        category: ErrorCategory,
        http_status: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.category = category
        self.http_status = http_status
        self.details = details or {}

    def to_response(self) -> Dict[str, Any]:
        """Convert to a plain error envelope for the HTTP layer."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "category": self.category.value,
                "retryable": self.retryable,
            }
        }


class TransientProviderError(MoralGraphError):
    """Embedding or LLM provider timed out, was rate limited, or returned a 5xx."""

    retryable = True

    def __init__(self, provider: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            f"{provider} call failed: {message}",
            "TRANSIENT_PROVIDER_ERROR", ErrorCategory.EXTERNAL_API, 503, details,
        )
        self.provider = provider


class ProviderRequestError(MoralGraphError):
    """Provider rejected the request itself (oversized prompt, bad input); resending it will not help."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        super().__init__(
            f"{provider} rejected request: {message}",
            "PROVIDER_REQUEST_REJECTED", ErrorCategory.EXTERNAL_API, 502,
            {"provider": provider, "status_code": status_code},
        )
        self.provider = provider
        self.status_code = status_code


class SchemaViolation(MoralGraphError):
    """LLM output did not match the expected structure or referenced unknown ids."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message, "SCHEMA_VIOLATION", ErrorCategory.DATA_QUALITY, 502, details,
        )


class InvariantViolation(MoralGraphError):
    """A unit of work would break a data-model invariant; it is aborted, never coerced."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(
            message, "INVARIANT_VIOLATION", ErrorCategory.INVARIANT, 422, details,
        )


class NotFoundError(MoralGraphError):
    """Referenced value, context or hypothesis does not exist."""

    def __init__(self, resource_type: str, resource_id: Any):
        super().__init__(
            f"{resource_type} '{resource_id}' not found",
            "RESOURCE_NOT_FOUND", ErrorCategory.RESOURCE_NOT_FOUND, 404,
            {"resource_type": resource_type, "resource_id": str(resource_id)},
        )
        self.resource_type = resource_type
        self.resource_id = resource_id
