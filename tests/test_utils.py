"""
Tests for clock, id generation and timing helpers.
"""

from datetime import datetime, timezone

from dispute_ledger.utils import (
    SystemClock,
    UUIDIdGenerator,
    apply_jitter,
    ensure_utc,
)


def test_system_clock_is_aware_utc():
    now = SystemClock().now()
    assert now.tzinfo is not None
    assert now.utcoffset().total_seconds() == 0


def test_uuid_ids_are_prefixed_and_unique():
    generator = UUIDIdGenerator()
    ids = {generator.new_id("DC") for _ in range(1000)}
    assert len(ids) == 1000
    assert all(i.startswith("DC-") and len(i) == 35 for i in ids)


def test_apply_jitter_bounds():
    for _ in range(100):
        value = apply_jitter(100.0, 10.0)
        assert 90.0 <= value <= 110.0
    assert apply_jitter(0.0, 50.0) == 0.0


def test_ensure_utc():
    naive = datetime(2025, 1, 1, 12, 0)
    assert ensure_utc(naive).tzinfo == timezone.utc

    aware = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert ensure_utc(aware) is aware
