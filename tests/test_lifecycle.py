"""
Tests for the expiry sweep and the background sweep task.
"""

import asyncio
from datetime import timedelta

import pytest

from dispute_ledger.cases import case_key, claim_key
from dispute_ledger.exceptions import AnchoringFailed, ConflictError
from dispute_ledger.lifecycle import LifecycleManager, SweepTask
from dispute_ledger.models import CaseStatus

from conftest import T0, FlakyAnchorGateway, make_service, submit_evidence


async def create_case(service, subject_id="lease-42"):
    ids = submit_evidence(service, subject_id=subject_id)
    return await service.create_case(subject_id, ids, "0xtenant")


@pytest.mark.asyncio
async def test_case_expires_after_ttl(service):
    case = await create_case(service)

    assert service.sweep_expired(T0 + timedelta(days=29)) == 0
    assert service.get_case(case.id).status == CaseStatus.PENDING

    assert service.sweep_expired(T0 + timedelta(days=31)) == 1
    expired = service.get_case(case.id)
    assert expired.status == CaseStatus.EXPIRED
    assert expired.expired_at == T0 + timedelta(days=31)
    assert expired.resolution is None


@pytest.mark.asyncio
async def test_expiry_boundary_is_inclusive(service):
    case = await create_case(service)
    assert service.sweep_expired(case.expires_at) == 1


@pytest.mark.asyncio
async def test_sweep_uses_clock_by_default(service, clock):
    case = await create_case(service)

    clock.advance(days=30, seconds=1)
    assert service.sweep_expired() == 1
    assert service.get_case(case.id).expired_at == clock.now()


@pytest.mark.asyncio
async def test_resolved_case_never_expires(service):
    case = await create_case(service)
    await service.resolve_case(case.id, "settled", "arbiter")

    assert service.sweep_expired(T0 + timedelta(days=400)) == 0
    assert service.get_case(case.id).status == CaseStatus.RESOLVED


@pytest.mark.asyncio
async def test_sweep_is_idempotent(service):
    await create_case(service)
    now = T0 + timedelta(days=31)

    assert service.sweep_expired(now) == 1
    snapshot = service.list_cases_for_subject("lease-42")
    assert service.sweep_expired(now) == 0
    assert service.sweep_expired(now + timedelta(days=1)) == 0
    assert service.list_cases_for_subject("lease-42") == snapshot


@pytest.mark.asyncio
async def test_expired_case_cannot_be_resolved(service):
    case = await create_case(service)
    service.sweep_expired(T0 + timedelta(days=31))

    with pytest.raises(ConflictError) as exc_info:
        await service.resolve_case(case.id, "too late", "arbiter")
    assert exc_info.value.details["status"] == "expired"


@pytest.mark.asyncio
async def test_expiry_releases_claim(service, store):
    case = await create_case(service)
    service.sweep_expired(T0 + timedelta(days=31))

    assert store.get(claim_key("lease-42", case.merkle_root)) is None
    again = await service.create_case("lease-42", case.evidence_ids, "0xtenant")
    assert again.is_pending


@pytest.mark.asyncio
async def test_sweep_between_read_and_resolve_write(service, store, clock):
    """Sweep lands after resolve_case read the case but before its compare-and-set."""
    case = await create_case(service)
    clock.advance(days=31)
    key = case_key(case.id)
    original_cas = store.compare_and_set
    interleaved = []

    def racing_cas(k, expected, new):
        if k == key and not interleaved:
            interleaved.append(True)
            assert service.registry.expire_case(case.id, clock.now()) is not None
        return original_cas(k, expected, new)

    store.compare_and_set = racing_cas
    with pytest.raises(ConflictError) as exc_info:
        await service.resolve_case(case.id, "settled", "arbiter")

    assert interleaved
    assert exc_info.value.details["status"] == "expired"
    final = service.get_case(case.id)
    assert final.status == CaseStatus.EXPIRED
    assert final.resolution is None
    assert final.resolved_by is None
    assert service.sweep_expired() == 0


@pytest.mark.asyncio
async def test_resolve_between_read_and_sweep_write(service, store, clock):
    case = await create_case(service)
    clock.advance(days=31)
    key = case_key(case.id)
    original_cas = store.compare_and_set
    interleaved = []

    def racing_cas(k, expected, new):
        if k == key and not interleaved:
            interleaved.append(True)
            resolved = service.get_case(case.id).model_copy(update={
                "status": CaseStatus.RESOLVED,
                "resolution": "settled",
                "resolved_by": "arbiter",
                "resolved_at": clock.now(),
            })
            assert original_cas(k, expected, resolved.model_dump_json())
        return original_cas(k, expected, new)

    store.compare_and_set = racing_cas
    assert service.sweep_expired() == 0

    final = service.get_case(case.id)
    assert final.status == CaseStatus.RESOLVED
    assert final.resolution == "settled"
    assert final.expired_at is None


@pytest.mark.asyncio
async def test_transition_retries_after_concurrent_field_write(service, store):
    """A lost compare caused by a non-status write is retried, not dropped."""
    case = await create_case(service)
    registry = service.registry
    key = case_key(case.id)
    original_cas = store.compare_and_set
    interfered = []

    def racing_cas(k, expected, new):
        if k == key and not interfered:
            interfered.append(True)
            bumped = registry.find_case(case.id).model_copy(update={"anchor_attempts": 5})
            original_cas(k, expected, bumped.model_dump_json())
        return original_cas(k, expected, new)

    store.compare_and_set = racing_cas
    resolved = await service.resolve_case(case.id, "settled", "arbiter")

    assert resolved.status == CaseStatus.RESOLVED
    assert resolved.anchor_attempts == 5
    assert service.get_case(case.id).anchor_attempts == 5


@pytest.mark.asyncio
async def test_sweep_isolates_bad_records(service, store):
    good = await create_case(service)
    store.put_if_absent(case_key("DC-corrupt"), "{not json")
    store.put_if_absent("pending:DC-corrupt", "")

    assert service.sweep_expired(T0 + timedelta(days=31)) == 1
    assert service.get_case(good.id).status == CaseStatus.EXPIRED
    errors = service.lifecycle.last_sweep_errors
    assert [e["case_id"] for e in errors] == ["DC-corrupt"]


@pytest.mark.asyncio
async def test_retry_anchors(config, store, clock, id_generator):
    gateway = FlakyAnchorGateway(failures=2)
    service = make_service(config, store, clock, id_generator, gateway=gateway)

    with pytest.raises(AnchoringFailed):
        await create_case(service)

    assert await service.lifecycle.retry_anchors() == 1
    assert service.registry.list_unanchored() == []
    assert await service.lifecycle.retry_anchors() == 0


@pytest.mark.asyncio
async def test_terminal_anchor_failure_not_rescheduled(config, store, clock, id_generator):
    gateway = FlakyAnchorGateway(failures=100, retryable=False)
    service = make_service(config, store, clock, id_generator, gateway=gateway)

    with pytest.raises(AnchoringFailed) as exc_info:
        await create_case(service)
    case_id = exc_info.value.case.id

    for _ in range(5):
        assert await service.lifecycle.retry_anchors() == 0
    assert gateway.calls == 1

    case = service.get_case(case_id)
    assert case.anchor_attempts == 1
    assert case.anchor_error_retryable is False
    assert service.registry.list_unanchored() == []
    assert store.keys("unanchored:") == []


@pytest.mark.asyncio
async def test_scheduled_anchoring_gives_up_after_total_attempts(config, store, clock, id_generator):
    config.anchor_max_total_attempts = 2
    gateway = FlakyAnchorGateway(failures=100)
    service = make_service(config, store, clock, id_generator, gateway=gateway)

    with pytest.raises(AnchoringFailed):
        await create_case(service)
    assert gateway.calls == 1

    assert await service.lifecycle.retry_anchors() == 0
    assert gateway.calls == 1 + config.anchor_max_retries
    assert service.registry.list_unanchored() == []

    assert await service.lifecycle.retry_anchors() == 0
    assert gateway.calls == 1 + config.anchor_max_retries

    case = service.list_cases_for_subject("lease-42")[0]
    assert case.anchor_attempts == 2
    assert case.anchor_error_retryable is True


@pytest.mark.asyncio
async def test_explicit_anchor_after_scheduling_gave_up(config, store, clock, id_generator):
    gateway = FlakyAnchorGateway(failures=1, retryable=False)
    service = make_service(config, store, clock, id_generator, gateway=gateway)

    with pytest.raises(AnchoringFailed) as exc_info:
        await create_case(service)
    case_id = exc_info.value.case.id
    assert await service.lifecycle.retry_anchors() == 0

    anchored = await service.registry.anchor_case(case_id)
    assert anchored.anchor_ref is not None
    assert anchored.anchor_attempts == 2
    assert anchored.anchor_error_retryable is None


@pytest.mark.asyncio
async def test_sweep_visits_only_pending_cases(service, store):
    first = await create_case(service, subject_id="lease-1")
    second = await create_case(service, subject_id="lease-2")
    third = await create_case(service, subject_id="lease-3")
    assert len(store.keys("pending:")) == 3

    await service.resolve_case(first.id, "settled", "arbiter")
    assert store.keys("pending:") == sorted(["pending:" + second.id, "pending:" + third.id])

    visited = []
    original_expire = service.registry.expire_case

    def tracking_expire(case_id, now):
        visited.append(case_id)
        return original_expire(case_id, now)

    service.registry.expire_case = tracking_expire
    assert service.sweep_expired(T0 + timedelta(days=31)) == 2
    assert first.id not in visited
    assert store.keys("pending:") == []

    visited.clear()
    assert service.sweep_expired(T0 + timedelta(days=400)) == 0
    assert visited == []


@pytest.mark.asyncio
async def test_retry_anchors_without_gateway(service):
    await create_case(service)
    assert await service.lifecycle.retry_anchors() == 0


@pytest.mark.asyncio
async def test_sweep_task_run_once(service, clock):
    await create_case(service)
    clock.advance(days=31)

    task = service.sweep_task(interval_seconds=3600)
    result = await task.run_once()

    assert result == {"expired": 1, "anchored": 0, "errors": 0}
    assert task.last_run == clock.now()
    assert task.runs == 1
    assert task.last_result == result


@pytest.mark.asyncio
async def test_sweep_task_start_stop(service, clock):
    await create_case(service)
    clock.advance(days=31)

    task = SweepTask(service.lifecycle, interval_seconds=3600)
    await task.start()
    assert task.running

    for _ in range(50):
        if task.runs:
            break
        await asyncio.sleep(0.01)

    await task.stop()
    assert not task.running
    assert task.runs == 1
    assert task.last_result["expired"] == 1
    assert service.list_cases_for_subject("lease-42")[0].status == CaseStatus.EXPIRED


@pytest.mark.asyncio
async def test_sweep_task_survives_iteration_failure(service):
    class FailingManager(LifecycleManager):
        def sweep_expired(self, now=None):
            raise RuntimeError("storage offline")

    manager = FailingManager(service.registry)
    task = SweepTask(manager, interval_seconds=0.01)
    await task.start()
    await asyncio.sleep(0.05)
    await task.stop()

    assert task.runs == 0
    assert not task.running


@pytest.mark.asyncio
async def test_sweep_task_double_start(service):
    task = service.sweep_task(interval_seconds=3600)
    await task.start()
    first = task._task
    await task.start()
    assert task._task is first
    await task.stop()
    await task.stop()
