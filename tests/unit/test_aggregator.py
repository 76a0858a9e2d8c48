# tests/unit/test_aggregator.py

from sender_aggregator.aggregator import RunAggregator
from sender_aggregator.normalizer import NormalizedRecord


def make_record(address="a@x.com", **fields) -> NormalizedRecord:
    defaults = {"name": None, "subject": "", "timestamp": None}
    defaults.update(fields)
    return NormalizedRecord(key=address, address=address, **defaults)


def test_absorb_groups_by_key_and_counts():
    """Each absorbed record adds one to its sender's bucket."""
    # ARRANGE
    aggregator = RunAggregator()

    # ACT
    aggregator.absorb(make_record("a@x.com"))
    aggregator.absorb(make_record("b@x.com"))
    aggregator.absorb(make_record("a@x.com"))

    # ASSERT
    assert len(aggregator) == 2
    assert aggregator.messages_absorbed == 3
    assert aggregator.drain()["a@x.com"].count == 2


def test_absorb_first_non_empty_fields_win():
    """Name, subject and unsubscribe fields keep their first non-empty value."""
    aggregator = RunAggregator()

    aggregator.absorb(make_record(subject=""))
    aggregator.absorb(make_record(name="First", subject="One", unsubscribe_url="https://x/1"))
    bucket = aggregator.absorb(
        make_record(
            name="Second",
            subject="Two",
            unsubscribe_url="https://x/2",
            unsubscribe_mailto="mailto:u@x.com",
        )
    )

    assert bucket.name == "First"
    assert bucket.sample_subject == "One"
    assert bucket.unsubscribe_url == "https://x/1"
    assert bucket.unsubscribe_mailto == "mailto:u@x.com"


def test_absorb_keeps_latest_timestamp():
    """last_seen is the maximum timestamp regardless of arrival order."""
    aggregator = RunAggregator()

    for timestamp in ("2024-01-02T00:00:00+00:00", None, "2024-03-01T00:00:00+00:00", "2023-12-31T00:00:00+00:00"):
        aggregator.absorb(make_record(timestamp=timestamp))

    assert aggregator.drain()["a@x.com"].last_seen == "2024-03-01T00:00:00+00:00"


def test_drain_returns_buckets_and_starts_empty_range():
    """drain hands over the buckets and resets them for the next range."""
    # ARRANGE
    aggregator = RunAggregator()
    aggregator.absorb(make_record())

    # ACT
    drained = aggregator.drain()

    # ASSERT
    assert list(drained) == ["a@x.com"]
    assert len(aggregator) == 0
    assert aggregator.messages_absorbed == 1
