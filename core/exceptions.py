"""
Custom exceptions for the refresh pipeline with structured error context.

Every failure carries a machine-readable ``code`` and ``category`` (used in
audit rows and in HTTP error bodies) plus the HTTP status the trigger
endpoint should answer with.

Exception Hierarchy:
    SyncException (base)
    ├── SourceError
    │   ├── SourceTransientError
    │   │   └── SourceRateLimitError
    │   ├── SourceAuthError
    │   └── SourceQueryError
    ├── TargetError
    │   ├── TargetTransientError
    │   └── UpsertError
    ├── CheckpointError
    │   ├── CheckpointConflictError
    │   └── RefreshInProgressError   (409)
    ├── RefreshConfigError
    │   ├── UnknownTableError        (404)
    │   ├── TableDisabledError       (400)
    │   ├── RefreshThrottledError    (429)
    │   ├── InvalidTriggerError      (400)
    │   └── InvalidConfigError       (400)
    ├── RefreshError
    ├── WebhookDeliveryError
    ├── WebhookConfigError
    │   ├── WebhookNotFoundError     (404)
    │   └── DeliveryNotFoundError    (404)
    └── RetryableError / NonRetryableError (mixins)
"""

from typing import Optional, Dict, Any
from datetime import datetime


class SyncException(Exception):
    """
    Base exception for all refresh-related errors.
    
    Attributes:
        message: Human-readable error message
        context: Additional context information (table, offset, url, etc.)
        original_exception: The original exception that was caught (if any)
        code: Machine-readable error code
        category: Error family (source, target, checkpoint, config, webhook, internal)
        http_status: Status returned when the error reaches the trigger endpoint
    """
    
    code = "sync_error"
    category = "internal"
    http_status = 500
    
    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None
    ):
        self.message = message
        self.context = context or {}
        self.original_exception = original_exception
        self.timestamp = datetime.utcnow()
        
        self.context["error_timestamp"] = self.timestamp.isoformat()
        
        super().__init__(message)
        if original_exception:
            self.__cause__ = original_exception
    
    @property
    def retryable(self) -> bool:
        return isinstance(self, RetryableError)
    
    def __str__(self) -> str:
        """Format error message with context."""
        base_msg = f"{self.__class__.__name__}: {self.message}"
        
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            base_msg += f" | Context: {context_str}"
        
        if self.original_exception:
            base_msg += f" | Caused by: {type(self.original_exception).__name__}: {str(self.original_exception)}"
        
        return base_msg
    
    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/storage."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "category": self.category,
            "message": self.message,
            "retryable": self.retryable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "original_error": str(self.original_exception) if self.original_exception else None
        }


# ============================================================================
# Retry Strategy Mixins
# ============================================================================

class RetryableError(SyncException):
    """
    Mixin for errors that should trigger retry logic.
    
    Use this for transient errors like:
    - Warehouse timeouts or 5xx responses
    - Rate limiting (HTTP 429)
    - Dropped connections to the target store
    
    The checkpoint is left untouched so the next invocation retries
    from the same cursor.
    """
    
    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0
    ):
        super().__init__(message, context, original_exception)
        self.max_retries = max_retries
        self.retry_delay = retry_delay


class NonRetryableError(SyncException):
    """
    Mixin for errors that should NOT trigger retry logic.
    
    Use this for permanent errors like:
    - Authentication failures (HTTP 401, 403)
    - Invalid queries against the warehouse
    - Unknown or disabled tables, malformed trigger payloads
    """
    pass


# ============================================================================
# Source (warehouse) Errors
# ============================================================================

class SourceError(SyncException):
    """
    Base exception for warehouse fetch failures.
    
    Context should include:
        - table_name: Target table being refreshed
        - offset: Cursor offset of the failed batch
        - status_code: HTTP status code (if applicable)
    """
    code = "source_error"
    category = "source"
    http_status = 500


class SourceTransientError(RetryableError, SourceError):
    """Timeouts and temporary unavailability from the warehouse."""
    code = "source_transient"


class SourceRateLimitError(SourceTransientError):
    """Warehouse rate limiting (HTTP 429)."""
    
    code = "source_rate_limited"
    
    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        retry_after: Optional[int] = None
    ):
        super().__init__(message, context, original_exception)
        self.retry_after = retry_after
        if retry_after:
            self.context["retry_after"] = retry_after


class SourceAuthError(NonRetryableError, SourceError):
    """Authentication failures (HTTP 401, 403) against the warehouse."""
    code = "source_auth_failed"


class SourceQueryError(NonRetryableError, SourceError):
    """The warehouse rejected the query or returned an unusable result."""
    code = "source_query_failed"


# ============================================================================
# Target (transactional store) Errors
# ============================================================================

class TargetError(SyncException):
    """
    Base exception for target store failures.
    
    Context should include:
        - table_name: Name of the target table
        - operation: Type of database operation (UPSERT, UPDATE)
        - batch_size: Number of rows in the failed batch
    """
    code = "target_error"
    category = "target"
    http_status = 500


class TargetTransientError(RetryableError, TargetError):
    """Connection drops and timeouts against the target store."""
    code = "target_transient"


class UpsertError(RetryableError, TargetError):
    """
    Exception raised when a batch upsert fails.
    
    Context should include:
        - table_name: Target table
        - conflict_fields: Composite conflict key
        - batch_size: Rows in the batch
    """
    code = "upsert_failed"


# ============================================================================
# Checkpoint Errors
# ============================================================================

class CheckpointError(SyncException):
    """
    Exception raised when checkpoint management fails.
    
    Context should include:
        - function_name: Worker function owning the checkpoint
        - table_name: Target table
        - checkpoint_id: Row id (if known)
        - operation: Operation that failed (acquire, advance, complete)
    """
    code = "checkpoint_error"
    category = "checkpoint"
    http_status = 500


class CheckpointConflictError(CheckpointError):
    """Another holder advanced or released the checkpoint first."""
    code = "checkpoint_conflict"
    http_status = 409


class RefreshInProgressError(CheckpointError):
    """Another attempt holds an unexpired lease on the table."""
    code = "refresh_in_progress"
    http_status = 409


# ============================================================================
# Config / Trigger Errors
# ============================================================================

class RefreshConfigError(NonRetryableError):
    """Base exception for permanent configuration problems."""
    code = "config_error"
    category = "config"
    http_status = 400


class UnknownTableError(RefreshConfigError):
    """No refresh_config row exists for the requested table."""
    code = "table_not_found"
    http_status = 404


class TableDisabledError(RefreshConfigError):
    """The table exists but refreshing is disabled."""
    code = "table_disabled"
    http_status = 400


class InvalidTriggerError(RefreshConfigError):
    """Malformed trigger payload."""
    code = "invalid_request"
    http_status = 400


class InvalidConfigError(RefreshConfigError):
    """A stored refresh_config row holds values the worker cannot use."""
    code = "invalid_config"
    http_status = 400


class RefreshThrottledError(RefreshConfigError):
    """The table was refreshed too recently and force was not given."""
    
    code = "throttled"
    http_status = 429
    
    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_exception: Optional[Exception] = None,
        wait_minutes: int = 0
    ):
        super().__init__(message, context, original_exception)
        self.wait_minutes = wait_minutes
        self.context["wait_minutes"] = wait_minutes


# ============================================================================
# Other Errors
# ============================================================================

class RefreshError(SyncException):
    """Unexpected failure inside a worker run, wrapping the original error."""
    code = "refresh_failed"
    category = "internal"


class WebhookDeliveryError(SyncException):
    """
    A webhook POST failed (non-2xx, timeout, connection error).
    
    Context should include:
        - delivery_id: Delivery row id
        - url: Subscriber endpoint
        - status_code: Response status (if any)
    """
    code = "webhook_delivery_failed"
    category = "webhook"
    http_status = 500


class WebhookConfigError(NonRetryableError):
    """Webhook management request that cannot be carried out (disabled, not subscribed)."""
    code = "webhook_config_error"
    category = "webhook"
    http_status = 400


class WebhookNotFoundError(WebhookConfigError):
    """No webhook_configs row with the requested id."""
    code = "webhook_not_found"
    http_status = 404


class DeliveryNotFoundError(WebhookConfigError):
    """None of the requested deliveries can be retried."""
    code = "delivery_not_found"
    http_status = 404
