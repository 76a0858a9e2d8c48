# src/sender_aggregator/aggregator.py

"""
In-memory, cycle-scoped aggregation of normalized records by sender key.
"""

from dataclasses import dataclass

from .normalizer import NormalizedRecord


@dataclass(slots=True)
class Bucket:
    """Accumulated fields for one sender within one checkpoint range."""

    key: str
    address: str
    name: str | None = None
    count: int = 0
    sample_subject: str | None = None
    last_seen: str | None = None
    unsubscribe_url: str | None = None
    unsubscribe_mailto: str | None = None

    def absorb(self, record: NormalizedRecord) -> None:
        self.count += 1
        if not self.name and record.name:
            self.name = record.name
        if not self.sample_subject and record.subject:
            self.sample_subject = record.subject
        # ISO-8601 strings with one shared offset order correctly as text.
        if record.timestamp and (not self.last_seen or record.timestamp > self.last_seen):
            self.last_seen = record.timestamp
        if not self.unsubscribe_url and record.unsubscribe_url:
            self.unsubscribe_url = record.unsubscribe_url
        if not self.unsubscribe_mailto and record.unsubscribe_mailto:
            self.unsubscribe_mailto = record.unsubscribe_mailto


class RunAggregator:
    """Maps sender key to ``Bucket`` until the next checkpoint drains it."""

    def __init__(self) -> None:
        self._buckets: dict[str, Bucket] = {}
        self.messages_absorbed = 0

    def absorb(self, record: NormalizedRecord) -> Bucket:
        bucket = self._buckets.get(record.key)
        if bucket is None:
            bucket = Bucket(key=record.key, address=record.address)
            self._buckets[record.key] = bucket
        bucket.absorb(record)
        self.messages_absorbed += 1
        return bucket

    def drain(self) -> dict[str, Bucket]:
        """Returns the current buckets and starts an empty range."""
        buckets = self._buckets
        self._buckets = {}
        return buckets

    def __len__(self) -> int:
        return len(self._buckets)
