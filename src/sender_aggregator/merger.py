# src/sender_aggregator/merger.py

"""
Checkpoint merging: folds a drained ``RunAggregator`` into the persistent
store through the index, then advances the resumption cursor.

Commit order is fixed: new records, then their index entries, then in-place
updates of existing records, and only then the resumption state. A crash
anywhere before the state write leaves the cursor at the previous checkpoint,
and the pending markers written here let the replay converge to the same
counts an uninterrupted run would produce.
"""

import logging
from dataclasses import dataclass

from .aggregator import Bucket
from .exceptions import CheckpointCommitError, StoreError
from .schemas import PendingMerge, ResumptionState, StoreRecord
from .store import SenderStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class MergeResult:
    inserted: int = 0
    updated: int = 0


def _is_unsettled(pending: PendingMerge | None, scan_id: str, committed_cursor: int) -> bool:
    """
    True when *pending* came from a checkpoint of this scan whose cursor
    write never landed; its count is about to be replayed.
    """
    return (
        pending is not None
        and pending.scan_id == scan_id
        and pending.through_cursor > committed_cursor
    )


def build_record_from_bucket(
    bucket: Bucket, row: int, scan_id: str, through_cursor: int
) -> StoreRecord:
    return StoreRecord(
        row=row,
        act_flag=False,
        address=bucket.address,
        name=bucket.name or "",
        count=bucket.count,
        sample_subject=bucket.sample_subject or "",
        last_seen=bucket.last_seen or "",
        unsubscribe_url=bucket.unsubscribe_url or "",
        unsubscribe_mailto=bucket.unsubscribe_mailto or "",
        notes="",
        processed_at="",
        pending=PendingMerge(
            scan_id=scan_id, through_cursor=through_cursor, count=bucket.count
        ),
    )


def merge_bucket_into_record(
    record: StoreRecord,
    bucket: Bucket,
    scan_id: str,
    through_cursor: int,
    committed_cursor: int,
) -> StoreRecord:
    """
    Applies the merge-field policy of an existing record and an incoming bucket.

    Counts add; stored subject, name and unsubscribe fields win over incoming
    ones; ``last_seen`` keeps the later timestamp. ``act_flag``, ``notes``
    and ``processed_at`` belong to the action executor and are copied as-is.
    """
    base_count = record.count
    if _is_unsettled(record.pending, scan_id, committed_cursor):
        base_count = max(0, base_count - record.pending.count)
        logger.info(
            "Rolling back unsettled checkpoint contribution.",
            extra={
                "row": record.row,
                "pending_count": record.pending.count,
                "pending_through": record.pending.through_cursor,
                "committed_cursor": committed_cursor,
            },
        )

    last_seen = record.last_seen
    if bucket.last_seen and bucket.last_seen > last_seen:
        last_seen = bucket.last_seen

    return record.model_copy(
        update={
            "address": record.address or bucket.address,
            "name": record.name or bucket.name or "",
            "count": base_count + bucket.count,
            "sample_subject": record.sample_subject or bucket.sample_subject or "",
            "last_seen": last_seen,
            "unsubscribe_url": record.unsubscribe_url or bucket.unsubscribe_url or "",
            "unsubscribe_mailto": record.unsubscribe_mailto or bucket.unsubscribe_mailto or "",
            "pending": PendingMerge(
                scan_id=scan_id, through_cursor=through_cursor, count=bucket.count
            ),
        }
    )


class CheckpointMerger:
    """Merges buckets into a ``SenderStore`` using its index."""

    def __init__(self, store: SenderStore):
        self._store = store

    def merge(
        self,
        buckets: dict[str, Bucket],
        scan_id: str,
        through_cursor: int,
        committed_cursor: int,
    ) -> MergeResult:
        """
        Partitions *buckets* into new and existing senders and writes them.

        The index is re-read on every call rather than cached, so external
        changes between checkpoints are always observed.
        """
        if not buckets:
            return MergeResult()

        index = self._store.load_index()
        new_keys = [key for key in buckets if key not in index]
        existing = [(key, index[key]) for key in buckets if key in index]

        if new_keys:
            # Rows past the last indexed one may hold orphans of a crashed
            # checkpoint; they are overwritten here.
            first_row = max(index.values(), default=0) + 1
            records = [
                build_record_from_bucket(buckets[key], first_row + offset, scan_id, through_cursor)
                for offset, key in enumerate(new_keys)
            ]
            self._store.append_records(records)
            self._store.append_index(
                [(key, first_row + offset) for offset, key in enumerate(new_keys)]
            )

        for key, row in existing:
            record = self._store.get_record(row)
            if record is None:
                logger.warning(
                    "Index entry points at a missing row. Rebuilding it.",
                    extra={"key": key, "row": row},
                )
                record = StoreRecord(row=row, address=buckets[key].address)
            merged = merge_bucket_into_record(
                record, buckets[key], scan_id, through_cursor, committed_cursor
            )
            self._store.put_record(merged)

        return MergeResult(inserted=len(new_keys), updated=len(existing))

    def commit(
        self,
        buckets: dict[str, Bucket],
        state: ResumptionState,
        committed_cursor: int,
    ) -> MergeResult:
        """
        Merges *buckets* and then persists *state*. The cursor write is
        strictly after the store and index writes.

        Raises:
            CheckpointCommitError: If any store write failed. The persisted
                cursor is still *committed_cursor* in that case.
        """
        if not state.scan_id:
            raise ValueError("Cannot commit a checkpoint without a scan id.")

        try:
            result = self.merge(buckets, state.scan_id, state.cursor, committed_cursor)
        except StoreError as e:
            raise CheckpointCommitError(
                committed_cursor, state.cursor, e.message, context=e.context
            ) from e

        try:
            self._store.save_state(state)
        except StoreError as e:
            raise CheckpointCommitError(
                committed_cursor, state.cursor, e.message, context=e.context
            ) from e

        return result
