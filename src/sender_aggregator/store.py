# src/sender_aggregator/store.py

"""
DynamoDB-backed persistent store, index, resumption state and scan lease.

Everything for one owner lives in a single partition (``owner_id``) of one
table, distinguished by the sort key ``sk``:

    ROW#0000000042   one store record, at a stable row location
    IDX#<sender>     index entry: sender key -> row location (append-only)
    STATE            resumption state (cursor, totals, scan id)
    COMPLETE         marker of the last finished scan
    LEASE            mutual-exclusion token around a scan cycle

Reads use ``ConsistentRead`` so a merge always sees the previous checkpoint.
"""

import logging
import time
from contextlib import contextmanager
from typing import Any, Iterator, Protocol

from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from .exceptions import (
    ScanInProgressError,
    StoreReadError,
    StoreThrottlingError,
    StoreWriteError,
)
from .schemas import PendingMerge, ResumptionState, ScanCompletion, StoreRecord

logger = logging.getLogger(__name__)

PARTITION_KEY = "owner_id"
SORT_KEY = "sk"

ROW_PREFIX = "ROW#"
INDEX_PREFIX = "IDX#"
STATE_SORT_KEY = "STATE"
COMPLETE_SORT_KEY = "COMPLETE"
LEASE_SORT_KEY = "LEASE"

_THROTTLING_CODES = {
    "ProvisionedThroughputExceededException",
    "ThrottlingException",
    "RequestLimitExceeded",
}


def row_sort_key(row: int) -> str:
    return f"{ROW_PREFIX}{row:010d}"


class SenderStore(Protocol):
    """The storage operations the merger and the scan driver rely on."""

    owner_id: str

    def load_index(self) -> dict[str, int]: ...

    def has_data(self) -> bool: ...

    def append_records(self, records: list[StoreRecord]) -> None: ...

    def append_index(self, entries: list[tuple[str, int]]) -> None: ...

    def get_record(self, row: int) -> StoreRecord | None: ...

    def put_record(self, record: StoreRecord) -> None: ...

    def read_records(self) -> list[StoreRecord]: ...

    def load_state(self) -> ResumptionState: ...

    def save_state(self, state: ResumptionState) -> None: ...

    def clear_state(self) -> None: ...

    def load_completion(self) -> ScanCompletion | None: ...

    def mark_complete(self, completion: ScanCompletion) -> None: ...

    def clear_completion(self) -> None: ...

    def reset(self) -> int: ...

    def acquire_lease(self, holder: str, ttl_seconds: int) -> bool: ...

    def release_lease(self, holder: str) -> None: ...


def _translate_client_error(e: ClientError, operation: str, *, write: bool):
    """Maps a boto3 ClientError onto the store exception taxonomy."""
    error_code = e.response.get("Error", {}).get("Code", "Unknown")
    error_message = e.response.get("Error", {}).get("Message", str(e))
    context = {"aws_error_code": error_code, "aws_error_message": error_message}

    if error_code in _THROTTLING_CODES:
        return StoreThrottlingError(operation, context=context)
    if write:
        return StoreWriteError(operation, context=context)
    return StoreReadError(operation, context=context)


def _record_to_item(owner_id: str, record: StoreRecord) -> dict[str, Any]:
    item: dict[str, Any] = {
        PARTITION_KEY: owner_id,
        SORT_KEY: row_sort_key(record.row),
        "row": record.row,
        "act_flag": record.act_flag,
        "address": record.address,
        "name": record.name,
        "count": record.count,
        "sample_subject": record.sample_subject,
        "last_seen": record.last_seen,
        "unsubscribe_url": record.unsubscribe_url,
        "unsubscribe_mailto": record.unsubscribe_mailto,
        "notes": record.notes,
        "processed_at": record.processed_at,
    }
    if record.pending is not None:
        item["pending"] = record.pending.model_dump()
    return item


def _item_to_record(item: dict[str, Any]) -> StoreRecord:
    pending = item.get("pending")
    return StoreRecord(
        row=int(item["row"]),
        act_flag=bool(item.get("act_flag", False)),
        address=str(item.get("address", "")),
        name=str(item.get("name", "")),
        count=int(item.get("count", 0)),
        sample_subject=str(item.get("sample_subject", "")),
        last_seen=str(item.get("last_seen", "")),
        unsubscribe_url=str(item.get("unsubscribe_url", "")),
        unsubscribe_mailto=str(item.get("unsubscribe_mailto", "")),
        notes=str(item.get("notes", "")),
        processed_at=str(item.get("processed_at", "")),
        pending=(
            PendingMerge(
                scan_id=str(pending["scan_id"]),
                through_cursor=int(pending["through_cursor"]),
                count=int(pending["count"]),
            )
            if pending
            else None
        ),
    )


def _as_int(value: Any, default: int = 0) -> int:
    # The boto3 resource layer returns numbers as Decimal.
    if value is None:
        return default
    return int(value)


class DynamoSenderStore:
    """
    A ``SenderStore`` over a boto3 DynamoDB ``Table`` resource.
    """

    def __init__(self, table: Any, owner_id: str, clock=time.time):
        """
        Args:
            table: A boto3 ``dynamodb.Table`` resource.
            owner_id: The (sanitized) owner whose partition this store reads.
            clock: Wall-clock source for lease expiry, in epoch seconds.
        """
        self._table = table
        self.owner_id = owner_id
        self._clock = clock

    def _key(self, sort_key: str) -> dict[str, str]:
        return {PARTITION_KEY: self.owner_id, SORT_KEY: sort_key}

    def _query(
        self,
        operation: str,
        prefix: str | None = None,
        limit: int | None = None,
        projection: str | None = None,
    ) -> Iterator[dict[str, Any]]:
        condition = Key(PARTITION_KEY).eq(self.owner_id)
        if prefix:
            condition = condition & Key(SORT_KEY).begins_with(prefix)
        kwargs: dict[str, Any] = {
            "KeyConditionExpression": condition,
            "ConsistentRead": True,
        }
        if limit:
            kwargs["Limit"] = limit
        if projection:
            kwargs["ProjectionExpression"] = projection

        while True:
            try:
                response = self._table.query(**kwargs)
            except ClientError as e:
                raise _translate_client_error(e, operation, write=False) from e
            yield from response.get("Items", [])
            last_key = response.get("LastEvaluatedKey")
            if not last_key or limit:
                return
            kwargs["ExclusiveStartKey"] = last_key

    # --- Index ---

    def load_index(self) -> dict[str, int]:
        index: dict[str, int] = {}
        for item in self._query("load_index", prefix=INDEX_PREFIX):
            key = str(item[SORT_KEY])[len(INDEX_PREFIX):].strip().lower()
            row = _as_int(item.get("row"))
            if key and row >= 1:
                index[key] = row
        return index

    def append_index(self, entries: list[tuple[str, int]]) -> None:
        if not entries:
            return
        try:
            with self._table.batch_writer() as batch:
                for key, row in entries:
                    batch.put_item(
                        Item={
                            PARTITION_KEY: self.owner_id,
                            SORT_KEY: f"{INDEX_PREFIX}{key}",
                            "row": row,
                        }
                    )
        except ClientError as e:
            raise _translate_client_error(e, "append_index", write=True) from e
        logger.debug("Appended index entries.", extra={"entries": len(entries)})

    # --- Records ---

    def has_data(self) -> bool:
        for prefix in (ROW_PREFIX, INDEX_PREFIX):
            if any(True for _ in self._query("has_data", prefix=prefix, limit=1)):
                return True
        return False

    def append_records(self, records: list[StoreRecord]) -> None:
        if not records:
            return
        try:
            with self._table.batch_writer() as batch:
                for record in records:
                    batch.put_item(Item=_record_to_item(self.owner_id, record))
        except ClientError as e:
            raise _translate_client_error(e, "append_records", write=True) from e
        logger.debug("Appended store records.", extra={"records": len(records)})

    def get_record(self, row: int) -> StoreRecord | None:
        try:
            response = self._table.get_item(
                Key=self._key(row_sort_key(row)), ConsistentRead=True
            )
        except ClientError as e:
            raise _translate_client_error(e, "get_record", write=False) from e
        item = response.get("Item")
        return _item_to_record(item) if item else None

    def put_record(self, record: StoreRecord) -> None:
        try:
            self._table.put_item(Item=_record_to_item(self.owner_id, record))
        except ClientError as e:
            raise _translate_client_error(e, "put_record", write=True) from e

    def read_records(self) -> list[StoreRecord]:
        return [_item_to_record(item) for item in self._query("read_records", prefix=ROW_PREFIX)]

    # --- Resumption State ---

    def load_state(self) -> ResumptionState:
        try:
            response = self._table.get_item(
                Key=self._key(STATE_SORT_KEY), ConsistentRead=True
            )
        except ClientError as e:
            raise _translate_client_error(e, "load_state", write=False) from e
        item = response.get("Item")
        if not item:
            return ResumptionState()
        return ResumptionState(
            cursor=_as_int(item.get("cursor")),
            total_processed=_as_int(item.get("total_processed")),
            initialized=bool(item.get("initialized", False)),
            scan_id=item.get("scan_id"),
        )

    def save_state(self, state: ResumptionState) -> None:
        item = {
            PARTITION_KEY: self.owner_id,
            SORT_KEY: STATE_SORT_KEY,
            "cursor": state.cursor,
            "total_processed": state.total_processed,
            "initialized": state.initialized,
        }
        if state.scan_id:
            item["scan_id"] = state.scan_id
        try:
            self._table.put_item(Item=item)
        except ClientError as e:
            raise _translate_client_error(e, "save_state", write=True) from e

    def clear_state(self) -> None:
        try:
            self._table.delete_item(Key=self._key(STATE_SORT_KEY))
        except ClientError as e:
            raise _translate_client_error(e, "clear_state", write=True) from e

    # --- Completion Marker ---

    def load_completion(self) -> ScanCompletion | None:
        try:
            response = self._table.get_item(
                Key=self._key(COMPLETE_SORT_KEY), ConsistentRead=True
            )
        except ClientError as e:
            raise _translate_client_error(e, "load_completion", write=False) from e
        item = response.get("Item")
        if not item:
            return None
        return ScanCompletion(
            scan_id=str(item.get("scan_id", "")),
            cursor=_as_int(item.get("cursor")),
            total_processed=_as_int(item.get("total_processed")),
            completed_at=str(item.get("completed_at", "")),
        )

    def mark_complete(self, completion: ScanCompletion) -> None:
        try:
            self._table.put_item(
                Item={
                    PARTITION_KEY: self.owner_id,
                    SORT_KEY: COMPLETE_SORT_KEY,
                    **completion.model_dump(),
                }
            )
        except ClientError as e:
            raise _translate_client_error(e, "mark_complete", write=True) from e

    def clear_completion(self) -> None:
        try:
            self._table.delete_item(Key=self._key(COMPLETE_SORT_KEY))
        except ClientError as e:
            raise _translate_client_error(e, "clear_completion", write=True) from e

    # --- Full Reset ---

    def reset(self) -> int:
        """
        Deletes every record, index entry, state and completion item of the
        owner. The lease item is kept; callers reset while holding it.
        """
        keys = [
            {PARTITION_KEY: item[PARTITION_KEY], SORT_KEY: item[SORT_KEY]}
            for item in self._query("reset", projection=f"{PARTITION_KEY}, {SORT_KEY}")
            if item[SORT_KEY] != LEASE_SORT_KEY
        ]
        try:
            with self._table.batch_writer() as batch:
                for key in keys:
                    batch.delete_item(Key=key)
        except ClientError as e:
            raise _translate_client_error(e, "reset", write=True) from e
        logger.info("Store reset.", extra={"owner_id": self.owner_id, "deleted_items": len(keys)})
        return len(keys)

    # --- Scan Lease ---

    def acquire_lease(self, holder: str, ttl_seconds: int) -> bool:
        now = int(self._clock())
        try:
            self._table.put_item(
                Item={
                    PARTITION_KEY: self.owner_id,
                    SORT_KEY: LEASE_SORT_KEY,
                    "holder": holder,
                    "expires_at": now + ttl_seconds,
                },
                ConditionExpression=(
                    Attr(SORT_KEY).not_exists()
                    | Attr("expires_at").lt(now)
                    | Attr("holder").eq(holder)
                ),
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                return False
            raise _translate_client_error(e, "acquire_lease", write=True) from e
        return True

    def release_lease(self, holder: str) -> None:
        try:
            self._table.delete_item(
                Key=self._key(LEASE_SORT_KEY),
                ConditionExpression=Attr("holder").eq(holder),
            )
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException":
                logger.warning(
                    "Scan lease was taken over before release.",
                    extra={"owner_id": self.owner_id, "holder": holder},
                )
                return
            raise _translate_client_error(e, "release_lease", write=True) from e


@contextmanager
def held_lease(store: SenderStore, holder: str, ttl_seconds: int) -> Iterator[None]:
    """Holds the owner's scan lease for the duration of the block."""
    if not store.acquire_lease(holder, ttl_seconds):
        raise ScanInProgressError(store.owner_id)
    try:
        yield
    finally:
        store.release_lease(holder)
