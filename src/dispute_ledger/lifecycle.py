"""
Case lifecycle: expiry sweep and out-of-band anchoring retries.

The sweep runs as a repeatable background task on a fixed interval,
independent of any request. Only cases still carrying a pending marker are
visited, so resolved history is never re-read. Each case is expired through the registry's
compare-and-set, so a sweep racing resolve_case can never overwrite a
resolution; failures are isolated per case.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from .cases import CaseRegistry
from .exceptions import ExternalDependencyFailure
from .utils import Clock, SystemClock, apply_jitter, ensure_utc

logger = logging.getLogger(__name__)


class LifecycleManager:
    """Expire timed-out pending cases and retry unanchored ones."""

    def __init__(self, registry: CaseRegistry, clock: Optional[Clock] = None):
        self.registry = registry
        self.clock = clock or registry.clock or SystemClock()
        self.last_sweep_errors: List[Dict[str, str]] = []

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """
        Expire every pending case with expires_at <= now.

        Resolved and expired cases are never touched. Repeated calls with
        a non-decreasing `now` change nothing further.

        Returns:
            Number of cases transitioned to expired by this call
        """
        now = ensure_utc(now) if now is not None else self.clock.now()
        expired = 0
        errors: List[Dict[str, str]] = []

        for case_id in self.registry.pending_case_ids():
            try:
                if self.registry.expire_case(case_id, now) is not None:
                    expired += 1
            except Exception as e:
                logger.error(f"Failed to expire case {case_id}: {e}")
                errors.append({"case_id": case_id, "error": str(e)})

        self.last_sweep_errors = errors
        logger.info(
            f"Expiry sweep at {now.isoformat()}: {expired} expired, {len(errors)} errors"
        )
        return expired

    async def retry_anchors(self) -> int:
        """
        Retry anchoring for cases still scheduled for it.

        Cases whose last failure was permanent, or which used up
        anchor_max_total_attempts, are left for an explicit anchor_case.

        Returns:
            Number of cases anchored by this call
        """
        if self.registry.gateway is None:
            return 0

        anchored = 0
        for case in self.registry.list_unanchored():
            try:
                await self.registry.anchor_case(case.id, retry=True)
                anchored += 1
            except ExternalDependencyFailure as e:
                logger.warning(f"Anchor retry failed for case {case.id}: {e.message}")
            except Exception as e:
                logger.error(f"Unexpected anchor retry error for case {case.id}: {e}")

        if anchored:
            logger.info(f"Anchored {anchored} previously unanchored cases")
        return anchored


class SweepTask:
    """
    Repeatable background task driving the LifecycleManager.

    Usage:
        task = SweepTask(manager, interval_seconds=86400)
        await task.start()
        ...
        await task.stop()
    """

    def __init__(
        self,
        manager: LifecycleManager,
        interval_seconds: float = 86400,
        clock: Optional[Clock] = None,
        jitter_pct: float = 0.0
    ):
        self.manager = manager
        self.interval_seconds = interval_seconds
        self.clock = clock or manager.clock
        self.jitter_pct = jitter_pct

        self.last_run: Optional[datetime] = None
        self.next_run: Optional[datetime] = None
        self.last_result: Optional[Dict[str, Any]] = None
        self.runs = 0

        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> Dict[str, Any]:
        """One iteration: expiry sweep, then anchoring retries."""
        started = self.clock.now()
        # Storage calls are blocking
        expired = await asyncio.to_thread(self.manager.sweep_expired, started)
        anchored = await self.manager.retry_anchors()

        self.last_run = started
        self.runs += 1
        self.last_result = {
            "expired": expired,
            "anchored": anchored,
            "errors": len(self.manager.last_sweep_errors),
        }
        return self.last_result

    async def start(self):
        """Start the background loop."""
        if self.running:
            logger.warning("Sweep task already running")
            return

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Sweep task started (interval: {self.interval_seconds}s)")

    async def stop(self):
        """Stop the loop and wait for it to exit."""
        if not self.running:
            return

        self._stop_event.set()
        try:
            await self._task
        finally:
            self._task = None
            self.next_run = None
            logger.info("Sweep task stopped")

    async def _loop(self):
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Sweep iteration failed: {e}", exc_info=True)

            wait_time = self.interval_seconds
            if self.jitter_pct:
                wait_time = apply_jitter(wait_time, self.jitter_pct)
            self.next_run = self.clock.now() + timedelta(seconds=wait_time)

            # Wait with stop event check
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=wait_time)
                break
            except asyncio.TimeoutError:
                continue
