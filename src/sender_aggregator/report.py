# src/sender_aggregator/report.py

"""
Read-only display projection of the sender store.

Stored rows keep their physical locations forever; ordering by count is a
concern of this projection only. Rows not referenced by the index (orphans of
a checkpoint that crashed before its index write) are never shown.
"""

import csv
import io
import logging
from dataclasses import dataclass

from .clients import S3Client
from .schemas import StoreRecord
from .security import neutralize_formula
from .store import SenderStore

logger = logging.getLogger(__name__)

REPORT_HEADERS = [
    "Act?",
    "Sender Email",
    "Sender Name",
    "Count",
    "Example Subject",
    "Last Seen (ISO)",
    "Unsubscribe URL",
    "Unsubscribe Mailto",
    "Notes / Status",
    "Processed",
]


@dataclass(frozen=True, slots=True)
class SenderStats:
    sender_count: int = 0
    total_emails: int = 0


def project_visible_records(
    records: list[StoreRecord], index: dict[str, int]
) -> list[StoreRecord]:
    """Indexed records only, by count descending then address."""
    indexed_rows = set(index.values())
    visible = [
        record
        for record in records
        if record.row in indexed_rows and index.get(record.address.lower()) == record.row
    ]
    return sorted(visible, key=lambda record: (-record.count, record.address))


def compute_stats(records: list[StoreRecord]) -> SenderStats:
    """Counts senders with at least one message and their messages."""
    counted = [record.count for record in records if record.count > 0]
    return SenderStats(sender_count=len(counted), total_emails=sum(counted))


def load_visible_records(store: SenderStore) -> list[StoreRecord]:
    return project_visible_records(store.read_records(), store.load_index())


def render_csv(records: list[StoreRecord]) -> bytes:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(REPORT_HEADERS)
    for record in records:
        writer.writerow(
            [
                "TRUE" if record.act_flag else "FALSE",
                neutralize_formula(record.address),
                neutralize_formula(record.name),
                record.count,
                neutralize_formula(record.sample_subject),
                record.last_seen,
                neutralize_formula(record.unsubscribe_url),
                neutralize_formula(record.unsubscribe_mailto),
                neutralize_formula(record.notes),
                record.processed_at,
            ]
        )
    return buffer.getvalue().encode("utf-8")


def report_key(owner_id: str) -> str:
    return f"reports/{owner_id}/senders.csv"


def publish_report(store: SenderStore, s3_client: S3Client, bucket: str) -> SenderStats:
    """Renders the sorted projection of *store* and uploads it to *bucket*."""
    records = load_visible_records(store)
    key = report_key(store.owner_id)
    content_hash = s3_client.upload_report(bucket=bucket, key=key, body=render_csv(records))
    stats = compute_stats(records)
    logger.info(
        "Published sender report",
        extra={
            "key": key,
            "hash": content_hash,
            "sender_count": stats.sender_count,
            "total_emails": stats.total_emails,
        },
    )
    return stats
