"""
Shared fakes for the dispute ledger tests.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from dispute_ledger.anchoring import AnchorGateway, InMemoryAnchorGateway
from dispute_ledger.config import LedgerConfig
from dispute_ledger.exceptions import ExternalDependencyFailure
from dispute_ledger.service import build_service
from dispute_ledger.storage import MemoryKeyValueStore


T0 = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    """Clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def set(self, value: datetime):
        self.current = value

    def advance(self, **kwargs):
        self.current = self.current + timedelta(**kwargs)


class SequentialIdGenerator:
    """Predictable ids; `repeat` hands out the previous id again to force a collision."""

    def __init__(self):
        self.counter = 0
        self.repeat = False

    def new_id(self, prefix: str) -> str:
        if not self.repeat:
            self.counter += 1
        return f"{prefix}-{self.counter:04d}"


class FlakyAnchorGateway(AnchorGateway):
    """
    Fails the first `failures` stores, then delegates to an in-memory gateway.

    hang=True makes failing calls sleep instead of raising, to exercise timeouts.
    """

    def __init__(self, failures: int = 1, retryable: bool = True, hang: bool = False):
        self.failures = failures
        self.retryable = retryable
        self.hang = hang
        self.calls = 0
        self.backend = InMemoryAnchorGateway()
        self.stored: List[Dict[str, str]] = []

    async def store(self, data: bytes, tags: Dict[str, str]) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            if self.hang:
                await asyncio.sleep(10)
            raise ExternalDependencyFailure("gateway unavailable", retryable=self.retryable)
        self.stored.append(dict(tags))
        return await self.backend.store(data, tags)

    async def get(self, ref: str) -> bytes:
        return await self.backend.get(ref)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def id_generator():
    return SequentialIdGenerator()


@pytest.fixture
def store():
    return MemoryKeyValueStore()


@pytest.fixture
def config(tmp_path):
    return LedgerConfig(
        storage_backend="memory",
        state_dir=tmp_path,
        anchor_timeout_seconds=0.5,
        anchor_retry_base_seconds=0,
        anchor_retry_max_seconds=0,
    )


def make_service(config, store, clock, id_generator, gateway: Optional[AnchorGateway] = None):
    return build_service(
        config,
        clock=clock,
        id_generator=id_generator,
        gateway=gateway,
        store=store,
    )


@pytest.fixture
def service(config, store, clock, id_generator):
    """Service without anchoring."""
    return make_service(config, store, clock, id_generator)


def submit_evidence(service, subject_id: str = "lease-42", count: int = 3, actor: str = "0xtenant"):
    """Submit `count` evidence records and return their ids."""
    ids = []
    for i in range(count):
        record = service.add_evidence(
            subject_id,
            "payment",
            f"ar://content-{subject_id}-{i}",
            f"{i:02x}" * 32,
            actor,
        )
        ids.append(record.id)
    return ids
