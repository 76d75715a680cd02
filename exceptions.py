"""
Custom Exception Hierarchy - Domain-specific error types

Provides typed exceptions for the failure modes of the ingestion pipeline.
All custom exceptions inherit from DietwatchError for easy catching.

Design Philosophy:
- Exceptions are data: Include context for debugging
- Fail explicitly: Better to raise specific exception than generic
- Catch specifically: Handler can distinguish error types
- Log contextually: Exception attributes enable rich logging

Not everything is an exception here. Expected outcomes are plain return values:
- Duplicate task creation -> create_task() returns False
- Update on a missing task -> returns None
- Schema drift in upstream payloads -> reported through the notifier, never raised
"""

from typing import Optional, Dict, Any


class DietwatchError(Exception):
    """Base exception for all dietwatch errors

    Subclasses mark transient failures by overriding _retryable or is_retryable.
    """

    _retryable: bool = False

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.context = context or {}
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """Check if this error represents a transient failure that should be retried.

        Returns:
            True for transient failures (network, rate limits, timeouts)
            False for permanent failures (validation, missing data, bad config)
        """
        return self._retryable

    def __str__(self):
        base_msg = super().__str__()
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{base_msg} (context: {context_str})"
        return base_msg


# ========== Upstream Errors ==========


class UpstreamError(DietwatchError):
    """Meetings API failures

    Includes the upstream name and, when known, the date window being fetched.
    """

    def __init__(
        self,
        message: str,
        upstream: str = "ndl",
        window: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.upstream = upstream
        self.window = window
        self.original_error = original_error

        context: Dict[str, Any] = {"upstream": upstream}
        if window:
            context["window"] = window
        if original_error:
            context["original_error"] = str(original_error)

        super().__init__(message, context)


class UpstreamHTTPError(UpstreamError):
    """HTTP request to the meetings API failed

    Retryable for 5xx, timeouts and connection errors.
    Not retryable for 4xx.
    """

    def __init__(
        self,
        message: str,
        upstream: str = "ndl",
        status_code: Optional[int] = None,
        url: Optional[str] = None,
    ):
        self.status_code = status_code
        self.url = url
        super().__init__(message, upstream=upstream)
        if status_code:
            self.context["status_code"] = status_code
        if url:
            self.context["url"] = url

    @property
    def is_retryable(self) -> bool:
        """5xx errors and timeouts are retryable, 4xx are not"""
        if self.status_code is None:
            return True
        return self.status_code >= 500


class RangeFetchError(UpstreamError):
    """Every sub-window of a run range failed to fetch"""

    def __init__(self, message: str, failed_windows: Optional[list] = None):
        self.failed_windows = failed_windows or []
        super().__init__(message)
        self.context["failed_windows"] = len(self.failed_windows)


# ========== Storage Errors ==========


class StorageError(DietwatchError):
    """Object storage read/write failures"""

    def __init__(self, message: str, key: Optional[str] = None, original_error: Optional[Exception] = None):
        self.key = key
        self.original_error = original_error
        context: Dict[str, Any] = {}
        if key:
            context["key"] = key
        if original_error:
            context["original_error"] = str(original_error)
        super().__init__(message, context)


# ========== Database Errors ==========


class DatabaseError(DietwatchError):
    """Database operation failures"""
    pass


class DatabaseConnectionError(DatabaseError):
    """Failed to establish or maintain database connection"""
    _retryable = True


class TaskStoreError(DatabaseError):
    """Task table read/write failures (other than duplicates and missing keys)"""

    def __init__(self, message: str, pk: Optional[str] = None, operation: Optional[str] = None):
        self.pk = pk
        self.operation = operation
        context: Dict[str, Any] = {}
        if pk:
            context["pk"] = pk
        if operation:
            context["operation"] = operation
        super().__init__(message, context)


# ========== LLM Errors ==========


class LLMError(DietwatchError):
    """LLM API failures (token counting)"""

    def __init__(
        self,
        message: str,
        model: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        self.model = model
        self.original_error = original_error
        context: Dict[str, Any] = {}
        if model:
            context["model"] = model
        if original_error:
            context["original_error"] = str(original_error)
        super().__init__(message, context)


# ========== Configuration Errors ==========


class ConfigurationError(DietwatchError):
    """Configuration or environment errors

    Examples:
    - Missing required setting
    - Invalid configuration value
    - Prompt template larger than the model's input budget
    """

    def __init__(self, message: str, config_key: Optional[str] = None):
        self.config_key = config_key
        context = {}
        if config_key:
            context["config_key"] = config_key
        super().__init__(message, context)


# ========== Validation Errors ==========


class ValidationError(DietwatchError):
    """Data validation failures

    Examples:
    - Non-finite or non-positive packing budget
    - Date range with from > until
    - Malformed YYYY-MM-DD input
    """

    def __init__(self, message: str, field: Optional[str] = None, value: Optional[Any] = None):
        self.field = field
        self.value = value

        context = {}
        if field:
            context["field"] = field
        if value is not None:
            context["value"] = str(value)

        super().__init__(message, context)
