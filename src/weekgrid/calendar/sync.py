"""Sync orchestration: when to talk to the remote calendar, gated by backoff.

Syncs run on a fixed timer while the orchestrator is started, immediately
after plan-block commits that affect the remote, and on explicit request.
A failed attempt is recorded in the backoff store; attempts during the
backoff window are skipped without touching the remote or the record.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum

from weekgrid.calendar.backoff import BackoffState, BackoffStore, now_ms
from weekgrid.calendar.errors import RemoteCalendarError
from weekgrid.calendar.remote import RemoteCalendar
from weekgrid.core.telemetry import traced_span

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 600

RefreshCallback = Callable[[], Awaitable[None]]


class SyncResult(StrEnum):
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class SyncOutcome:
    """Result of one sync attempt."""

    result: SyncResult
    reason: str
    detail: str | None = None
    backoff: BackoffState | None = None

    @property
    def succeeded(self) -> bool:
        return self.result is SyncResult.SUCCEEDED


class SyncOrchestrator:
    """Decides when a remote sync runs and records its outcome."""

    def __init__(
        self,
        remote: RemoteCalendar,
        backoff: BackoffStore,
        *,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._remote = remote
        self._backoff = backoff
        self._interval_seconds = interval_seconds
        self._clock = clock
        self._refresh_callbacks: list[RefreshCallback] = []
        self._sync_lock = asyncio.Lock()
        self._force_sync_event = asyncio.Event()
        self._poller_task: asyncio.Task[None] | None = None

    @property
    def remote(self) -> RemoteCalendar:
        return self._remote

    @property
    def running(self) -> bool:
        return self._poller_task is not None and not self._poller_task.done()

    def add_refresh_callback(self, callback: RefreshCallback) -> None:
        """Register a coroutine function to run after every successful sync."""
        self._refresh_callbacks.append(callback)

    def remove_refresh_callback(self, callback: RefreshCallback) -> None:
        if callback in self._refresh_callbacks:
            self._refresh_callbacks.remove(callback)

    async def is_connected(self) -> bool:
        status = await self._remote.get_sync_status()
        return status.connected

    async def sync_now(self, reason: str = "manual") -> SyncOutcome:
        """Attempt one sync.  Errors from the remote are recorded as failures, never raised."""
        async with self._sync_lock:
            with traced_span("weekgrid.sync", reason=reason) as span:
                outcome = await self._attempt(reason)
                span.set_attribute("weekgrid.sync.outcome", outcome.result.value)
                if outcome.backoff is not None:
                    span.set_attribute("weekgrid.sync.failure_count", outcome.backoff.failure_count)
        if outcome.succeeded:
            await self._run_refresh_callbacks()
        return outcome

    async def sync_if_connected(self, reason: str) -> SyncOutcome | None:
        """Sync immediately when the remote reports connected; otherwise do nothing."""
        if not await self.is_connected():
            logger.debug("Remote not connected; skipping %s sync", reason)
            return None
        return await self.sync_now(reason)

    async def _attempt(self, reason: str) -> SyncOutcome:
        state = await self._backoff.state(self._clock())
        if state.should_skip:
            logger.info(
                "Sync skipped during backoff (reason=%s, failures=%d, retry_at=%s)",
                reason,
                state.failure_count,
                state.retry_at,
            )
            return SyncOutcome(SyncResult.SKIPPED, reason, "backoff", backoff=state)

        if not await self.is_connected():
            return SyncOutcome(SyncResult.SKIPPED, reason, "not connected", backoff=state)

        try:
            ok = await self._remote.sync_now()
        except RemoteCalendarError as exc:
            failed = await self._backoff.record_failure(self._clock())
            logger.warning("Sync failed (reason=%s): %s", reason, exc)
            return SyncOutcome(SyncResult.FAILED, reason, str(exc), backoff=failed)
        except Exception as exc:
            failed = await self._backoff.record_failure(self._clock())
            logger.error("Sync raised unexpectedly (reason=%s): %s", reason, exc, exc_info=True)
            return SyncOutcome(
                SyncResult.FAILED, reason, f"unexpected error: {exc!r}", backoff=failed
            )

        if not ok:
            failed = await self._backoff.record_failure(self._clock())
            logger.warning("Sync reported failure (reason=%s)", reason)
            return SyncOutcome(SyncResult.FAILED, reason, "remote reported failure", backoff=failed)

        await self._backoff.record_success()
        logger.info("Sync succeeded (reason=%s)", reason)
        return SyncOutcome(SyncResult.SUCCEEDED, reason)

    async def _run_refresh_callbacks(self) -> None:
        for callback in list(self._refresh_callbacks):
            try:
                await callback()
            except Exception as exc:
                logger.error("Post-sync refresh callback failed: %s", exc, exc_info=True)

    # ------------------------------------------------------------------
    # Background poller
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self.running:
            return
        self._force_sync_event.clear()
        self._poller_task = asyncio.create_task(
            self._run_sync_poller(), name="weekgrid-sync-poller"
        )
        logger.info("Sync poller started (interval=%ss)", self._interval_seconds)

    async def stop(self) -> None:
        if self._poller_task is not None and not self._poller_task.done():
            self._poller_task.cancel()
            try:
                await self._poller_task
            except asyncio.CancelledError:
                pass
        self._poller_task = None

    def request_immediate(self) -> None:
        """Wake the poller so it syncs without waiting for the timer."""
        self._force_sync_event.set()

    async def _run_sync_poller(self) -> None:
        """Background task: sync at the configured interval or when woken."""
        reason = "timer"
        while True:
            # Wait for the interval OR an immediate-sync request.
            try:
                await asyncio.wait_for(
                    self._force_sync_event.wait(),
                    timeout=self._interval_seconds,
                )
                self._force_sync_event.clear()
                reason = "requested"
            except TimeoutError:
                reason = "timer"

            try:
                await self.sync_now(reason)
            except Exception as exc:
                logger.error("Sync poller error: %s", exc, exc_info=True)
