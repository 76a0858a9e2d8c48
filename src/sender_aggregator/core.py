# src/sender_aggregator/core.py

"""
Core business logic: the resumable, checkpointed scan cycle.

``ScanDriver.run_cycle`` pages through the message source from the persisted
cursor, aggregates senders in memory, and commits a checkpoint whenever the
thread-count or time trigger fires. It stops gracefully on source exhaustion
or when the hard wall-clock budget (or the Lambda's remaining time) runs out,
always committing the unflushed buckets before it returns. A finished scan
leaves a completion marker; later cycles are no-ops until ``restart``.

The persisted cursor only ever moves to a value whose records are already in
the store, so the host may kill the process at any instruction and the next
invocation resumes from the last checkpoint.
"""

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Callable, Protocol

from aws_lambda_powertools.utilities.typing import LambdaContext

from .aggregator import RunAggregator
from .config import AppConfig
from .exceptions import CheckpointCommitError, StoreError
from .merger import CheckpointMerger
from .normalizer import normalize
from .report import compute_stats, load_visible_records
from .schemas import CycleSummary, ResumptionState, ScanCompletion, ScanStatus
from .store import SenderStore

logger = logging.getLogger(__name__)


class MessageSource(Protocol):
    def search(self, query: str, offset: int, limit: int) -> list[str]: ...

    def get_messages_for_threads(self, thread_ids: list[str]) -> list[list[dict]]: ...


class ScanDriver:
    """Drives one scan cycle for one owner."""

    def __init__(
        self,
        source: MessageSource,
        store: SenderStore,
        config: AppConfig,
        context: LambdaContext | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._source = source
        self._store = store
        self._config = config
        self._context = context
        self._clock = clock
        self._merger = CheckpointMerger(store)

    # --- Helpers ---

    def _elapsed_ms(self, since: float) -> int:
        return int((self._clock() - since) * 1000)

    def _budget_exhausted(self, cycle_start: float) -> bool:
        if self._elapsed_ms(cycle_start) >= self._config.runtime_hard_limit_ms:
            return True
        return (
            self._context is not None
            and self._context.get_remaining_time_in_millis()
            < self._config.timeout_guard_threshold_ms
        )

    def _initialize_state(self) -> ResumptionState:
        """
        Loads the resumption state, starting a new scan when there is none.
        Existing data is never wiped here; only an explicit reset does that.
        """
        state = self._store.load_state()
        if state.initialized and state.scan_id:
            return state

        if self._store.has_data():
            logger.info(
                "Found existing data. Resuming scan from the beginning, not wiping.",
                extra={"owner_id": self._store.owner_id},
            )
        else:
            logger.info("Starting a fresh scan.", extra={"owner_id": self._store.owner_id})

        state = ResumptionState(
            cursor=0, total_processed=0, initialized=True, scan_id=uuid.uuid4().hex
        )
        self._store.save_state(state)
        return state

    def _absorb_page(
        self, thread_messages: list[list[dict]], aggregator: RunAggregator, cycle_start: float
    ) -> int:
        """Absorbs whole threads until the budget runs out; returns threads consumed."""
        required_label = self._config.required_label or None
        consumed = 0
        for messages in thread_messages:
            if self._budget_exhausted(cycle_start):
                break
            for raw_message in messages:
                try:
                    record = normalize(raw_message, required_label)
                except Exception:
                    logger.exception("Unexpected error normalizing message. Skipping.")
                    continue
                if record is not None:
                    aggregator.absorb(record)
            consumed += 1
        return consumed

    # --- Scan Cycle ---

    def restart(self) -> None:
        """
        Forgets the finished (or in-flight) scan so the next cycle starts a new
        one from the first thread. Stored rows are kept.
        """
        self._store.clear_state()
        self._store.clear_completion()
        logger.info("Scan restart requested.", extra={"owner_id": self._store.owner_id})

    def run_cycle(self) -> CycleSummary:
        """
        Runs one budget-bounded scan cycle.

        Raises:
            SourceError: A page could not be fetched. Work up to the last
                checkpoint is kept; the cycle is retried on the next invocation.
            CheckpointCommitError: A checkpoint could not be committed.
        """
        cycle_start = self._clock()
        completion = self._store.load_completion()
        if completion is not None:
            logger.info(
                "Scan already complete. Nothing to do.",
                extra={"scan_id": completion.scan_id, "completed_at": completion.completed_at},
            )
            return CycleSummary(
                done=True,
                records_processed=0,
                cursor=completion.cursor,
                total_processed=completion.total_processed,
                stopped_reason="already_complete",
                elapsed_ms=self._elapsed_ms(cycle_start),
            )

        committed = self._initialize_state()
        scan_id = committed.scan_id
        cursor = committed.cursor
        total_processed = committed.total_processed
        start_cursor = cursor

        aggregator = RunAggregator()
        threads_since_checkpoint = 0
        last_checkpoint_at = cycle_start
        checkpoints = inserted = updated = 0
        stopped_reason = "exhausted"

        logger.info(
            "Starting scan cycle",
            extra={"cursor": cursor, "total_processed": total_processed, "scan_id": scan_id},
        )

        while True:
            if self._budget_exhausted(cycle_start):
                logger.warning("Time budget reached. Forcing final checkpoint.")
                stopped_reason = "budget"
                break

            thread_ids = self._source.search(
                self._config.source_query, cursor, self._config.page_size
            )
            if not thread_ids:
                logger.info("No more threads found.", extra={"cursor": cursor})
                break

            thread_messages = self._source.get_messages_for_threads(thread_ids)
            consumed = self._absorb_page(thread_messages, aggregator, cycle_start)

            cursor += consumed
            total_processed += consumed
            threads_since_checkpoint += consumed

            if consumed < len(thread_ids):
                logger.warning(
                    "Time budget reached mid-page. Forcing final checkpoint.",
                    extra={"consumed": consumed, "page": len(thread_ids)},
                )
                stopped_reason = "budget"
                break

            should_checkpoint = (
                threads_since_checkpoint >= self._config.checkpoint_threads
                or self._elapsed_ms(last_checkpoint_at) >= self._config.checkpoint_interval_ms
            )
            if should_checkpoint and len(aggregator):
                committed, result = self._checkpoint(
                    aggregator, committed, cursor, total_processed
                )
                checkpoints += 1
                inserted += result.inserted
                updated += result.updated
                logger.info(
                    f"Checkpoint #{checkpoints}",
                    extra={
                        "cursor": cursor,
                        "new_senders": result.inserted,
                        "updated_senders": result.updated,
                        "total_processed": total_processed,
                    },
                )
                threads_since_checkpoint = 0
                last_checkpoint_at = self._clock()

        if len(aggregator):
            committed, result = self._checkpoint(aggregator, committed, cursor, total_processed)
            checkpoints += 1
            inserted += result.inserted
            updated += result.updated
            logger.info(
                f"Final checkpoint #{checkpoints}",
                extra={
                    "cursor": cursor,
                    "new_senders": result.inserted,
                    "updated_senders": result.updated,
                    "total_processed": total_processed,
                },
            )

        done = not self._source.search(self._config.source_query, cursor, 1)

        try:
            if done:
                # The marker goes first; a crash before the state delete still
                # leaves the owner complete.
                self._store.mark_complete(
                    ScanCompletion(
                        scan_id=scan_id,
                        cursor=cursor,
                        total_processed=total_processed,
                        completed_at=datetime.now(timezone.utc).isoformat(timespec="seconds"),
                    )
                )
                self._store.clear_state()
            elif committed.cursor != cursor:
                # Trailing threads had nothing to merge; the cursor alone moves.
                committed = committed.model_copy(
                    update={"cursor": cursor, "total_processed": total_processed}
                )
                self._store.save_state(committed)
        except StoreError as e:
            raise CheckpointCommitError(
                committed.cursor, cursor, e.message, context=e.context
            ) from e

        summary = CycleSummary(
            done=done,
            records_processed=cursor - start_cursor,
            messages_absorbed=aggregator.messages_absorbed,
            cursor=cursor,
            total_processed=total_processed,
            checkpoints=checkpoints,
            inserted=inserted,
            updated=updated,
            stopped_reason=stopped_reason,
            elapsed_ms=self._elapsed_ms(cycle_start),
        )
        logger.info("Scan cycle finished", extra=summary.model_dump())
        return summary

    def _checkpoint(
        self,
        aggregator: RunAggregator,
        committed: ResumptionState,
        cursor: int,
        total_processed: int,
    ):
        target = committed.model_copy(
            update={"cursor": cursor, "total_processed": total_processed}
        )
        result = self._merger.commit(aggregator.drain(), target, committed.cursor)
        return target, result


def get_scan_status(store: SenderStore, source: MessageSource | None, query: str) -> ScanStatus:
    """
    Reports scan progress for an owner. A completion marker means
    ``complete``; otherwise ``has_more`` probes the source for one thread at
    the cursor, and only while a scan is initialized.
    """
    stats = compute_stats(load_visible_records(store))

    completion = store.load_completion()
    if completion is not None:
        return ScanStatus(
            status="complete",
            cursor=completion.cursor,
            total_processed=completion.total_processed,
            sender_count=stats.sender_count,
            total_emails=stats.total_emails,
            completed_at=completion.completed_at,
        )

    state = store.load_state()
    has_more = False
    if state.initialized and source is not None:
        has_more = bool(source.search(query, state.cursor, 1))

    if state.initialized:
        status = "in_progress" if has_more else "complete"
    else:
        status = "not_started"

    return ScanStatus(
        status=status,
        cursor=state.cursor,
        total_processed=state.total_processed,
        sender_count=stats.sender_count,
        total_emails=stats.total_emails,
        has_more=has_more,
    )
