# src/sender_aggregator/exceptions.py

"""
Shared custom exceptions for the Sender Aggregator service.

Centralizing exception definitions in a separate module prevents circular
import errors between other modules that need to raise or catch them.

Exception Hierarchy:
- SenderAggregatorError (base)
  - RetryableError (the next scheduled invocation retries from the last checkpoint)
    - SourceFetchError
    - SourceThrottlingError
    - SourceTimeoutError
    - StoreReadError
    - StoreWriteError
    - StoreThrottlingError
    - CheckpointCommitError
  - NonRetryableError (should not be retried without intervention)
    - SourceAuthError
    - ScanInProgressError
    - ValidationError
      - InvalidScanEventError
      - InvalidOwnerIdError
    - ConfigurationError
"""

from typing import Any, Dict, Optional


class SenderAggregatorError(Exception):
    """Base exception for all Sender Aggregator service errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.context = dict(context) if context else {}  # Copy context to prevent mutation
        self.correlation_id = correlation_id

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "context": self.context,
            "correlation_id": self.correlation_id,
            "retryable": isinstance(self, RetryableError)
        }


class RetryableError(SenderAggregatorError):
    """Base class for errors that can be retried."""
    pass


class NonRetryableError(SenderAggregatorError):
    """Base class for errors that should not be retried."""
    pass


# === Source (Gmail) Errors ===

class SourceError(SenderAggregatorError):
    """Base class for message source errors."""
    pass


class SourceFetchError(SourceError, RetryableError):
    """Raised when a page or a batch of threads could not be fetched."""

    def __init__(self, operation: str, reason: str, **kwargs):
        message = f"Source operation failed: {operation}: {reason}"
        context = {}
        if 'context' in kwargs:
            context.update(kwargs.pop('context'))
        context.update({"operation": operation, "reason": reason})
        kwargs.setdefault("error_code", "SOURCE_FETCH_FAILED")
        super().__init__(message, context=context, **kwargs)


class SourceThrottlingError(SourceError, RetryableError):
    """Raised when the source rejects calls because of rate limits."""

    def __init__(self, operation: str, **kwargs):
        message = f"Source operation throttled: {operation}"
        context = {}
        if 'context' in kwargs:
            context.update(kwargs.pop('context'))
        context.update({"operation": operation})
        super().__init__(message, error_code="SOURCE_THROTTLING", context=context, **kwargs)


class SourceTimeoutError(SourceError, RetryableError):
    """Raised when a source call exceeds its per-call timeout."""

    def __init__(self, operation: str, timeout_seconds: float, **kwargs):
        message = f"Source operation timed out after {timeout_seconds}s: {operation}"
        context = {}
        if 'context' in kwargs:
            context.update(kwargs.pop('context'))
        context.update({"operation": operation, "timeout_seconds": timeout_seconds})
        super().__init__(message, error_code="SOURCE_TIMEOUT", context=context, **kwargs)


class SourceAuthError(SourceError, NonRetryableError):
    """Raised when the source rejects the owner's credentials."""

    def __init__(self, operation: str, **kwargs):
        message = f"Source rejected credentials during: {operation}"
        context = {}
        if 'context' in kwargs:
            context.update(kwargs.pop('context'))
        context.update({"operation": operation})
        super().__init__(message, error_code="SOURCE_AUTH_FAILED", context=context, **kwargs)


# === Store (DynamoDB) Errors ===

class StoreError(SenderAggregatorError):
    """Base class for persistent store errors."""
    pass


class StoreReadError(StoreError, RetryableError):
    """Raised when reading records, index entries or state fails."""

    def __init__(self, operation: str, **kwargs):
        message = f"Store read failed: {operation}"
        context = {}
        if 'context' in kwargs:
            context.update(kwargs.pop('context'))
        context.update({"operation": operation})
        super().__init__(message, error_code="STORE_READ_FAILED", context=context, **kwargs)


class StoreWriteError(StoreError, RetryableError):
    """Raised when writing records, index entries or state fails."""

    def __init__(self, operation: str, **kwargs):
        message = f"Store write failed: {operation}"
        context = {}
        if 'context' in kwargs:
            context.update(kwargs.pop('context'))
        context.update({"operation": operation})
        super().__init__(message, error_code="STORE_WRITE_FAILED", context=context, **kwargs)


class StoreThrottlingError(StoreError, RetryableError):
    """Raised when the store throttles requests."""

    def __init__(self, operation: str, **kwargs):
        message = f"Store operation throttled: {operation}"
        context = {}
        if 'context' in kwargs:
            context.update(kwargs.pop('context'))
        context.update({"operation": operation})
        super().__init__(message, error_code="STORE_THROTTLING", context=context, **kwargs)


# === Processing Errors ===

class ProcessingError(SenderAggregatorError):
    """Base class for scan processing errors."""
    pass


class CheckpointCommitError(ProcessingError, RetryableError):
    """Raised when a checkpoint could not be durably committed."""

    def __init__(self, committed_cursor: int, target_cursor: int, reason: str, **kwargs):
        message = (
            f"Checkpoint commit failed at cursor {target_cursor} "
            f"(last committed {committed_cursor}): {reason}"
        )
        context = {}
        if 'context' in kwargs:
            context.update(kwargs.pop('context'))
        context.update({
            "committed_cursor": committed_cursor,
            "target_cursor": target_cursor,
            "reason": reason,
        })
        super().__init__(message, error_code="CHECKPOINT_COMMIT_FAILED", context=context, **kwargs)


class ScanInProgressError(ProcessingError, NonRetryableError):
    """Raised when another invocation holds the scan lease for the owner."""

    def __init__(self, owner_id: str, holder: Optional[str] = None, **kwargs):
        message = f"A scan is already in progress for owner {owner_id}"
        context = {"owner_id": owner_id, "holder": holder}
        super().__init__(message, error_code="SCAN_IN_PROGRESS", context=context, **kwargs)


# === Validation Errors ===

class ValidationError(NonRetryableError):
    """Base class for validation errors."""
    pass


class InvalidScanEventError(ValidationError):
    """Raised when the invocation event structure is invalid."""

    def __init__(self, message: str, **kwargs):
        if 'error_code' not in kwargs:
            kwargs['error_code'] = "INVALID_SCAN_EVENT"
        super().__init__(message, **kwargs)


class InvalidOwnerIdError(ValidationError):
    """Raised when an owner id cannot be used as a storage key."""

    def __init__(self, message: str, **kwargs):
        if 'error_code' not in kwargs:
            kwargs['error_code'] = "INVALID_OWNER_ID"
        super().__init__(message, **kwargs)


# === Configuration Errors ===

class ConfigurationError(NonRetryableError):
    """Raised when there's an error in the application configuration."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, error_code="CONFIGURATION_ERROR", **kwargs)


# === Utility Functions ===

def is_retryable_error(error: Exception) -> bool:
    """Check if an error is retryable."""
    return isinstance(error, RetryableError)


def get_error_context(error: Exception) -> Dict[str, Any]:
    """Extract error context for logging."""
    if isinstance(error, SenderAggregatorError):
        return error.to_dict()
    else:
        return {
            "error_type": error.__class__.__name__,
            "message": str(error),
            "retryable": False  # Unknown errors default to non-retryable
        }
