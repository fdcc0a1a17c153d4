"""
Tests for anchoring gateways and retry policy.
"""

import asyncio
import hashlib

import pytest
from aiohttp import test_utils, web

from dispute_ledger.anchoring import (
    HttpAnchorGateway,
    InMemoryAnchorGateway,
    anchor_once,
    anchor_with_retry,
    build_anchor_tags,
)
from dispute_ledger.exceptions import ExternalDependencyFailure, NotFoundError
from dispute_ledger.models import CasePackage, CaseStatus, DisputeCase, EvidenceKind, EvidenceRecord
from dispute_ledger.utils import calculate_backoff

from conftest import T0, FlakyAnchorGateway


# ============================================================================
# In-memory gateway
# ============================================================================


@pytest.mark.asyncio
async def test_in_memory_store_and_get():
    gateway = InMemoryAnchorGateway()
    ref = await gateway.store(b"package", {"Case-ID": "DC-1"})

    assert ref == hashlib.sha256(b"package").hexdigest()
    assert await gateway.get(ref) == b"package"
    assert gateway.tags_for(ref) == {"Case-ID": "DC-1"}


@pytest.mark.asyncio
async def test_in_memory_store_is_idempotent():
    gateway = InMemoryAnchorGateway()
    first = await gateway.store(b"package", {})
    second = await gateway.store(b"package", {})
    assert first == second
    assert len(gateway) == 1


@pytest.mark.asyncio
async def test_in_memory_get_unknown():
    with pytest.raises(NotFoundError):
        await InMemoryAnchorGateway().get("missing")


# ============================================================================
# Retry policy
# ============================================================================


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


@pytest.mark.asyncio
async def test_anchor_with_retry_backs_off():
    gateway = FlakyAnchorGateway(failures=2)
    sleep = RecordingSleep()

    ref = await anchor_with_retry(
        gateway, b"data", {}, max_attempts=3, base_delay=5, max_delay=300, sleep=sleep
    )

    assert ref == hashlib.sha256(b"data").hexdigest()
    assert gateway.calls == 3
    assert sleep.delays == [5, 10]


@pytest.mark.asyncio
async def test_anchor_with_retry_gives_up():
    gateway = FlakyAnchorGateway(failures=10)
    sleep = RecordingSleep()

    with pytest.raises(ExternalDependencyFailure) as exc_info:
        await anchor_with_retry(gateway, b"data", {}, max_attempts=3, base_delay=1, sleep=sleep)

    assert exc_info.value.retryable is True
    assert gateway.calls == 3
    assert sleep.delays == [1, 2]


@pytest.mark.asyncio
async def test_anchor_with_retry_stops_on_terminal():
    gateway = FlakyAnchorGateway(failures=10, retryable=False)
    sleep = RecordingSleep()

    with pytest.raises(ExternalDependencyFailure) as exc_info:
        await anchor_with_retry(gateway, b"data", {}, max_attempts=5, sleep=sleep)

    assert exc_info.value.retryable is False
    assert gateway.calls == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_anchor_once_timeout_is_retryable():
    gateway = FlakyAnchorGateway(failures=1, hang=True)

    with pytest.raises(ExternalDependencyFailure) as exc_info:
        await anchor_once(gateway, b"data", {}, timeout=0.05)
    assert exc_info.value.retryable is True


def test_backoff_is_capped():
    assert calculate_backoff(1, 5, 300) == 5
    assert calculate_backoff(3, 5, 300) == 20
    assert calculate_backoff(10, 5, 300) == 300
    assert calculate_backoff(0, 5, 300) == 0


# ============================================================================
# Tags
# ============================================================================


def test_build_anchor_tags():
    record = EvidenceRecord(
        id="EV-1",
        subject_id="lease-42",
        kind=EvidenceKind.LEASE,
        content_ref="ar://lease",
        content_hash="ab" * 32,
        submitted_by="0xa",
        submitted_at=T0,
    )
    case = DisputeCase(
        id="DC-1",
        subject_id="lease-42",
        evidence_ids=["EV-1"],
        merkle_root="cd" * 32,
        created_by="0xa",
        created_at=T0,
        expires_at=T0.replace(year=2026),
    )
    package = CasePackage.from_case(case, [record], ["EV-1"])

    tags = build_anchor_tags(package, "Dispute-Ledger", "1.2.3")
    assert tags["Content-Type"] == "application/json"
    assert tags["App-Version"] == "1.2.3"
    assert tags["Data-Type"] == "dispute-package"
    assert tags["Subject-ID"] == "lease-42"
    assert tags["Evidence-Count"] == "1"
    assert tags["Status"] == CaseStatus.PENDING.value


# ============================================================================
# HTTP gateway
# ============================================================================


def make_app(state):
    async def store(request):
        state["requests"].append({
            "headers": request.headers.copy(),
            "body": await request.read(),
        })
        if state["store_status"] in (200, 201):
            return web.json_response(state["store_reply"], status=state["store_status"])
        return web.Response(status=state["store_status"], text="gateway says no")

    async def get(request):
        ref = request.match_info["ref"]
        if ref not in state["objects"]:
            return web.Response(status=404)
        return web.Response(body=state["objects"][ref])

    async def slow(request):
        await asyncio.sleep(1)
        return web.json_response({"ref": "late"})

    app = web.Application()
    app.router.add_post("/anchors", store)
    app.router.add_get("/anchors/{ref}", get)
    app.router.add_post("/slow/anchors", slow)
    return app


@pytest.fixture
def http_state():
    return {
        "requests": [],
        "store_status": 201,
        "store_reply": {"ref": "ar-tx-1"},
        "objects": {"ar-tx-1": b"stored-package"},
    }


async def run_against_server(state, scenario, path="", **gateway_kwargs):
    async with test_utils.TestServer(make_app(state)) as server:
        gateway = HttpAnchorGateway(str(server.make_url(path)), **gateway_kwargs)
        try:
            return await scenario(gateway)
        finally:
            await gateway.close()


@pytest.mark.asyncio
async def test_http_store_sends_tags_and_auth(http_state):
    async def scenario(gateway):
        return await gateway.store(b'{"case":1}', {"Case-ID": "DC-1", "Content-Type": "application/json"})

    ref = await run_against_server(http_state, scenario, api_key="secret", user_agent="ledger/9")

    assert ref == "ar-tx-1"
    sent = http_state["requests"][0]
    assert sent["body"] == b'{"case":1}'
    assert sent["headers"]["Authorization"] == "Bearer secret"
    assert sent["headers"]["X-Tag-Case-ID"] == "DC-1"
    assert sent["headers"]["Content-Type"] == "application/json"
    assert sent["headers"]["User-Agent"] == "ledger/9"
    assert sent["headers"]["X-Content-Hash"] == "sha256:" + hashlib.sha256(b'{"case":1}').hexdigest()


@pytest.mark.asyncio
async def test_http_get(http_state):
    async def scenario(gateway):
        return await gateway.get("ar-tx-1")

    assert await run_against_server(http_state, scenario) == b"stored-package"


@pytest.mark.asyncio
async def test_http_get_unknown(http_state):
    async def scenario(gateway):
        await gateway.get("missing")

    with pytest.raises(NotFoundError):
        await run_against_server(http_state, scenario)


@pytest.mark.asyncio
@pytest.mark.parametrize("status,retryable", [(500, True), (503, True), (429, True), (400, False), (401, False)])
async def test_http_store_error_classification(http_state, status, retryable):
    http_state["store_status"] = status

    async def scenario(gateway):
        await gateway.store(b"data", {})

    with pytest.raises(ExternalDependencyFailure) as exc_info:
        await run_against_server(http_state, scenario)
    assert exc_info.value.retryable is retryable
    assert exc_info.value.details["status"] == status


@pytest.mark.asyncio
@pytest.mark.parametrize("reply", [{"id": "wrong-key"}, {"ref": ""}, ["not", "an", "object"]])
async def test_http_store_malformed_reply_is_terminal(http_state, reply):
    http_state["store_reply"] = reply

    async def scenario(gateway):
        await gateway.store(b"data", {})

    with pytest.raises(ExternalDependencyFailure) as exc_info:
        await run_against_server(http_state, scenario)
    assert exc_info.value.retryable is False


@pytest.mark.asyncio
async def test_http_store_timeout_is_retryable(http_state):
    async def scenario(gateway):
        await gateway.store(b"data", {})

    with pytest.raises(ExternalDependencyFailure) as exc_info:
        await run_against_server(http_state, scenario, path="/slow", timeout_seconds=0.1)
    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_http_connection_refused_is_retryable():
    gateway = HttpAnchorGateway("http://127.0.0.1:1", timeout_seconds=2)
    try:
        with pytest.raises(ExternalDependencyFailure) as exc_info:
            await gateway.store(b"data", {})
    finally:
        await gateway.close()
    assert exc_info.value.retryable is True
