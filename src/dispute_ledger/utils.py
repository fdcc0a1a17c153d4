"""
Injected collaborators and small helpers.

Clock and id generation are passed into constructors rather than read
globally, so lifecycle behaviour can be driven by a fixed clock in tests.
"""

import random
import uuid
from datetime import datetime, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    """Wall clock in aware UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class IdGenerator(Protocol):
    def new_id(self, prefix: str) -> str:
        ...


class UUIDIdGenerator:
    """
    Random ids of the form "<prefix>-<uuid4 hex>".

    122 random bits per id; concurrent creation for the same subject in
    the same instant does not collide.
    """

    def new_id(self, prefix: str) -> str:
        return f"{prefix}-{uuid.uuid4().hex}"


def calculate_backoff(attempt: int, base: float, max_delay: float) -> float:
    """
    Exponential backoff delay for a 1-based attempt number.

    attempt=1 -> base, attempt=2 -> 2*base, ... capped at max_delay.
    """
    if attempt < 1:
        return 0.0
    return min(base * (2 ** (attempt - 1)), max_delay)


def apply_jitter(value: float, jitter_pct: float = 10.0) -> float:
    """
    Apply random jitter to a value.

    Args:
        value: Base value
        jitter_pct: Jitter percentage (+/- this amount)

    Returns:
        Value with jitter applied, never negative
    """
    jitter = value * (jitter_pct / 100.0)
    return max(0.0, value + random.uniform(-jitter, jitter))


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
