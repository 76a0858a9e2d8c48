# tests/unit/test_exceptions.py

import json

import pytest

from sender_aggregator.exceptions import (
    CheckpointCommitError,
    ConfigurationError,
    InvalidOwnerIdError,
    InvalidScanEventError,
    NonRetryableError,
    RetryableError,
    ScanInProgressError,
    SenderAggregatorError,
    SourceAuthError,
    SourceError,
    SourceFetchError,
    SourceThrottlingError,
    SourceTimeoutError,
    StoreError,
    StoreReadError,
    StoreThrottlingError,
    StoreWriteError,
    ValidationError,
    get_error_context,
    is_retryable_error,
)


class TestSenderAggregatorError:
    """Test the base SenderAggregatorError class."""

    def test_basic_initialization(self):
        """Test basic error initialization."""
        error = SenderAggregatorError("Test message")
        assert str(error) == "Test message"
        assert error.message == "Test message"
        assert error.error_code == "SenderAggregatorError"
        assert error.context == {}
        assert error.correlation_id is None

    def test_context_is_copied(self):
        """The caller's context dict is not shared with the exception."""
        context = {"key": "value"}
        error = SenderAggregatorError("Test", context=context)
        context["key"] = "changed"
        assert error.context == {"key": "value"}

    def test_to_dict_is_json_serializable(self):
        """to_dict produces a structured, serializable payload."""
        error = SenderAggregatorError(
            "Test", error_code="CODE", context={"cursor": 5}, correlation_id="req-1"
        )
        data = error.to_dict()

        assert data == {
            "error_type": "SenderAggregatorError",
            "error_code": "CODE",
            "message": "Test",
            "context": {"cursor": 5},
            "correlation_id": "req-1",
            "retryable": False,
        }
        json.dumps(data)


class TestSourceErrors:
    """Test the Gmail source error family."""

    def test_fetch_error(self):
        error = SourceFetchError("threads.list", "backend error", context={"listed": 10})

        assert isinstance(error, SourceError)
        assert isinstance(error, RetryableError)
        assert error.error_code == "SOURCE_FETCH_FAILED"
        assert error.context == {"listed": 10, "operation": "threads.list", "reason": "backend error"}
        assert "threads.list" in error.message

    def test_fetch_error_code_can_be_overridden(self):
        error = SourceFetchError("threads.get", "gone", error_code="CUSTOM")
        assert error.error_code == "CUSTOM"

    def test_throttling_and_timeout_are_retryable(self):
        assert is_retryable_error(SourceThrottlingError("threads.list"))
        timeout = SourceTimeoutError("threads.get", 30)
        assert is_retryable_error(timeout)
        assert timeout.context["timeout_seconds"] == 30
        assert timeout.error_code == "SOURCE_TIMEOUT"

    def test_auth_error_is_not_retryable(self):
        error = SourceAuthError("threads.list")
        assert isinstance(error, NonRetryableError)
        assert not is_retryable_error(error)
        assert error.error_code == "SOURCE_AUTH_FAILED"


class TestStoreErrors:
    """Test the store error family."""

    @pytest.mark.parametrize(
        "error_class, code",
        [
            (StoreReadError, "STORE_READ_FAILED"),
            (StoreWriteError, "STORE_WRITE_FAILED"),
            (StoreThrottlingError, "STORE_THROTTLING"),
        ],
    )
    def test_store_errors_are_retryable(self, error_class, code):
        error = error_class("save_state", context={"aws_error_code": "X"})

        assert isinstance(error, StoreError)
        assert is_retryable_error(error)
        assert error.error_code == code
        assert error.context == {"aws_error_code": "X", "operation": "save_state"}


class TestProcessingErrors:
    """Test checkpoint and lease errors."""

    def test_checkpoint_commit_error(self):
        error = CheckpointCommitError(50, 100, "Store write failed", context={"operation": "save_state"})

        assert is_retryable_error(error)
        assert error.error_code == "CHECKPOINT_COMMIT_FAILED"
        assert error.context["committed_cursor"] == 50
        assert error.context["target_cursor"] == 100
        assert error.context["operation"] == "save_state"

    def test_scan_in_progress_error(self):
        error = ScanInProgressError("owner@example.com", holder="req-1")

        assert not is_retryable_error(error)
        assert error.error_code == "SCAN_IN_PROGRESS"
        assert error.context == {"owner_id": "owner@example.com", "holder": "req-1"}


class TestValidationAndConfigurationErrors:
    """Test validation and configuration errors."""

    def test_validation_errors(self):
        event_error = InvalidScanEventError("bad event")
        owner_error = InvalidOwnerIdError("bad owner")

        assert isinstance(event_error, ValidationError)
        assert event_error.error_code == "INVALID_SCAN_EVENT"
        assert owner_error.error_code == "INVALID_OWNER_ID"
        assert not is_retryable_error(owner_error)

    def test_configuration_error(self):
        error = ConfigurationError("missing", context={"name": "X"})

        assert error.error_code == "CONFIGURATION_ERROR"
        assert error.context == {"name": "X"}
        assert not is_retryable_error(error)


class TestUtilityFunctions:
    """Test the module helpers."""

    def test_get_error_context_for_service_error(self):
        error = StoreWriteError("put_record")
        assert get_error_context(error) == error.to_dict()

    def test_get_error_context_for_unknown_error(self):
        assert get_error_context(KeyError("x")) == {
            "error_type": "KeyError",
            "message": "'x'",
            "retryable": False,
        }

    def test_is_retryable_error_for_unknown_error(self):
        assert is_retryable_error(RuntimeError("boom")) is False
