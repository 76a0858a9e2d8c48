# tests/unit/fakes.py

"""
In-memory stand-ins for the message source and the sender store.
"""

from __future__ import annotations

import itertools
from dataclasses import replace

from sender_aggregator.config import AppConfig
from sender_aggregator.exceptions import StoreWriteError
from sender_aggregator.schemas import ResumptionState, ScanCompletion, StoreRecord

_message_ids = itertools.count(1)

# 2023-11-14T22:13:20+00:00
BASE_INTERNAL_DATE = 1_700_000_000_000


def make_message(
    sender: str,
    subject: str = "Hello",
    labels: tuple[str, ...] = ("INBOX",),
    internal_date: int | None = BASE_INTERNAL_DATE,
    unsubscribe: str | None = None,
) -> dict:
    """Builds a Gmail message resource as returned by threads.get(format=metadata)."""
    number = next(_message_ids)
    headers = [
        {"name": "From", "value": sender},
        {"name": "Subject", "value": subject},
    ]
    if unsubscribe:
        headers.append({"name": "List-Unsubscribe", "value": unsubscribe})
    message = {
        "id": f"m{number}",
        "threadId": f"t{number}",
        "labelIds": list(labels),
        "payload": {"headers": headers},
    }
    if internal_date is not None:
        message["internalDate"] = str(internal_date)
    return message


def make_threads(count: int, senders: list[str]) -> list[list[dict]]:
    """One single-message thread per position, senders assigned round-robin."""
    return [
        [make_message(senders[i % len(senders)], subject=f"Subject {i}")]
        for i in range(count)
    ]


_BASE_CONFIG = AppConfig(
    service_name="sender-aggregator-test",
    environment="test",
    sender_table="senders",
    source_query="in:inbox",
    required_label="INBOX",
    page_size=25,
    source_timeout_seconds=30,
    source_max_retries=3,
    gmail_secret_prefix="sender-aggregator/gmail",
    checkpoint_threads=50,
    checkpoint_interval_seconds=60,
    runtime_hard_limit_seconds=300,
    timeout_guard_threshold_seconds=10,
    lease_ttl_seconds=360,
    report_bucket=None,
    report_kms_key_id=None,
    log_level="INFO",
)


def make_config(**overrides) -> AppConfig:
    return replace(_BASE_CONFIG, **overrides)


class FakeSource:
    """Offset-addressable threads held in a list; thread ids encode positions."""

    def __init__(self, threads: list[list[dict]]):
        self.threads = list(threads)
        self.search_calls: list[tuple[str, int, int]] = []
        self.fetch_calls: list[list[str]] = []
        self.fetch_error: Exception | None = None

    def search(self, query: str, offset: int, limit: int) -> list[str]:
        self.search_calls.append((query, offset, limit))
        end = min(offset + limit, len(self.threads))
        return [f"thread-{position}" for position in range(offset, end)]

    def get_messages_for_threads(self, thread_ids: list[str]) -> list[list[dict]]:
        self.fetch_calls.append(list(thread_ids))
        if self.fetch_error is not None:
            error, self.fetch_error = self.fetch_error, None
            raise error
        return [self.threads[int(thread_id.split("-")[1])] for thread_id in thread_ids]


class InMemorySenderStore:
    """
    A SenderStore kept in dictionaries. ``fail_on_call`` injects a store
    failure into the n-th call of an operation.
    """

    def __init__(self, owner_id: str = "owner@example.com"):
        self.owner_id = owner_id
        self.rows: dict[int, StoreRecord] = {}
        self.index: dict[str, int] = {}
        self.state: ResumptionState | None = None
        self.completion: ScanCompletion | None = None
        self.lease_holder: str | None = None
        self.call_counts: dict[str, int] = {}
        self._failures: dict[tuple[str, int], Exception] = {}

    def fail_on_call(self, operation: str, call_number: int, error: Exception | None = None):
        self._failures[(operation, call_number)] = error or StoreWriteError(operation)

    def _record_call(self, operation: str) -> None:
        count = self.call_counts.get(operation, 0) + 1
        self.call_counts[operation] = count
        error = self._failures.pop((operation, count), None)
        if error is not None:
            raise error

    # --- Index ---

    def load_index(self) -> dict[str, int]:
        self._record_call("load_index")
        return dict(self.index)

    def append_index(self, entries: list[tuple[str, int]]) -> None:
        self._record_call("append_index")
        for key, row in entries:
            self.index[key] = row

    # --- Records ---

    def has_data(self) -> bool:
        self._record_call("has_data")
        return bool(self.rows or self.index)

    def append_records(self, records: list[StoreRecord]) -> None:
        self._record_call("append_records")
        for record in records:
            self.rows[record.row] = record.model_copy(deep=True)

    def get_record(self, row: int) -> StoreRecord | None:
        self._record_call("get_record")
        record = self.rows.get(row)
        return record.model_copy(deep=True) if record else None

    def put_record(self, record: StoreRecord) -> None:
        self._record_call("put_record")
        self.rows[record.row] = record.model_copy(deep=True)

    def read_records(self) -> list[StoreRecord]:
        self._record_call("read_records")
        return [self.rows[row].model_copy(deep=True) for row in sorted(self.rows)]

    # --- Resumption State ---

    def load_state(self) -> ResumptionState:
        self._record_call("load_state")
        return self.state.model_copy() if self.state else ResumptionState()

    def save_state(self, state: ResumptionState) -> None:
        self._record_call("save_state")
        self.state = state.model_copy()

    def clear_state(self) -> None:
        self._record_call("clear_state")
        self.state = None

    # --- Completion Marker ---

    def load_completion(self) -> ScanCompletion | None:
        self._record_call("load_completion")
        return self.completion.model_copy() if self.completion else None

    def mark_complete(self, completion: ScanCompletion) -> None:
        self._record_call("mark_complete")
        self.completion = completion.model_copy()

    def clear_completion(self) -> None:
        self._record_call("clear_completion")
        self.completion = None

    # --- Full Reset ---

    def reset(self) -> int:
        self._record_call("reset")
        deleted = len(self.rows) + len(self.index)
        deleted += int(self.state is not None) + int(self.completion is not None)
        self.rows.clear()
        self.index.clear()
        self.state = None
        self.completion = None
        return deleted

    # --- Scan Lease ---

    def acquire_lease(self, holder: str, ttl_seconds: int) -> bool:
        if self.lease_holder not in (None, holder):
            return False
        self.lease_holder = holder
        return True

    def release_lease(self, holder: str) -> None:
        if self.lease_holder == holder:
            self.lease_holder = None

    # --- Test helpers ---

    def counts_by_address(self) -> dict[str, int]:
        return {
            record.address: record.count
            for record in self.rows.values()
            if self.index.get(record.address) == record.row
        }
