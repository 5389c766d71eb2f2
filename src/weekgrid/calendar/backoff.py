"""Exponential backoff for remote sync attempts.

The persisted record is a single ``{failure_count, last_failure_at}`` value
(``last_failure_at`` in epoch milliseconds) stored under one key and updated
with compare-and-swap, so the two fields can never be observed half-written.
"""

from __future__ import annotations

import abc
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

import asyncpg
from pydantic import BaseModel, Field

from weekgrid.core.state import (
    CASConflictError,
    state_compare_and_set,
    state_get_versioned,
)

logger = logging.getLogger(__name__)

BACKOFF_STATE_KEY = "weekgrid::sync::backoff"
DEFAULT_BASE_MS = 30_000
DEFAULT_CAP_MS = 600_000
DEFAULT_CAS_RETRIES = 5


def now_ms() -> int:
    return int(time.time() * 1000)


class BackoffRecord(BaseModel):
    """Persisted failure bookkeeping."""

    failure_count: int = Field(default=0, ge=0)
    last_failure_at: int = Field(default=0, ge=0)

    def after_failure(self, at_ms: int) -> BackoffRecord:
        return BackoffRecord(failure_count=self.failure_count + 1, last_failure_at=at_ms)

    @classmethod
    def cleared(cls) -> BackoffRecord:
        return cls()


@dataclass(frozen=True)
class BackoffState:
    """Backoff decision derived from a record at a point in time."""

    failure_count: int
    last_failure_at: int
    backoff_ms: int
    should_skip: bool

    @property
    def retry_at(self) -> int | None:
        if not self.should_skip:
            return None
        return self.last_failure_at + self.backoff_ms


@dataclass(frozen=True)
class BackoffPolicy:
    base_ms: int = DEFAULT_BASE_MS
    cap_ms: int = DEFAULT_CAP_MS

    def __post_init__(self) -> None:
        if self.base_ms <= 0:
            raise ValueError("base_ms must be positive")
        if self.cap_ms < self.base_ms:
            raise ValueError("cap_ms must be at least base_ms")

    def backoff_ms(self, failure_count: int) -> int:
        if failure_count <= 0:
            return 0
        # Past the cap the exponent no longer matters; avoid huge integers.
        if failure_count > 64:
            return self.cap_ms
        return min(self.base_ms * 2 ** (failure_count - 1), self.cap_ms)

    def evaluate(self, record: BackoffRecord, at_ms: int) -> BackoffState:
        delay = self.backoff_ms(record.failure_count)
        return BackoffState(
            failure_count=record.failure_count,
            last_failure_at=record.last_failure_at,
            backoff_ms=delay,
            should_skip=delay > 0 and at_ms - record.last_failure_at < delay,
        )


class BackoffStore(abc.ABC):
    """Versioned persistence for the backoff record.

    Subclasses provide :meth:`load` and :meth:`compare_and_set`; the
    read-modify-write cycles with bounded conflict retries live here.
    """

    def __init__(
        self,
        policy: BackoffPolicy | None = None,
        *,
        max_retries: int = DEFAULT_CAS_RETRIES,
    ) -> None:
        self.policy = policy or BackoffPolicy()
        self._max_retries = max_retries

    @abc.abstractmethod
    async def load(self) -> tuple[BackoffRecord, int]:
        """Return the current record and its version."""
        ...

    @abc.abstractmethod
    async def compare_and_set(self, record: BackoffRecord, expected_version: int) -> int:
        """Persist *record* if the stored version equals *expected_version*.

        Raises :exc:`CASConflictError` otherwise.
        """
        ...

    async def state(self, at_ms: int | None = None) -> BackoffState:
        record, _version = await self.load()
        return self.policy.evaluate(record, now_ms() if at_ms is None else at_ms)

    async def record_failure(self, at_ms: int | None = None) -> BackoffState:
        stamp = now_ms() if at_ms is None else at_ms
        record = await self._update(lambda current: current.after_failure(stamp))
        state = self.policy.evaluate(record, stamp)
        logger.info(
            "Sync failure recorded (failures=%d, backoff=%dms)",
            state.failure_count,
            state.backoff_ms,
        )
        return state

    async def record_success(self) -> None:
        await self._update(lambda current: BackoffRecord.cleared())

    async def _update(
        self, change: Callable[[BackoffRecord], BackoffRecord]
    ) -> BackoffRecord:
        attempt = 0
        while True:
            current, version = await self.load()
            updated = change(current)
            if updated == current:
                return current
            try:
                await self.compare_and_set(updated, version)
                return updated
            except CASConflictError:
                attempt += 1
                if attempt > self._max_retries:
                    raise
                logger.debug(
                    "Backoff record changed concurrently, retrying (attempt %d/%d)",
                    attempt,
                    self._max_retries,
                )


class StateBackoffStore(BackoffStore):
    """Backoff record kept in the PostgreSQL ``state`` table."""

    def __init__(
        self,
        pool: asyncpg.Pool,
        policy: BackoffPolicy | None = None,
        *,
        key: str = BACKOFF_STATE_KEY,
        max_retries: int = DEFAULT_CAS_RETRIES,
    ) -> None:
        super().__init__(policy, max_retries=max_retries)
        self._pool = pool
        self._key = key

    async def load(self) -> tuple[BackoffRecord, int]:
        raw, version = await state_get_versioned(self._pool, self._key)
        if not isinstance(raw, dict):
            return BackoffRecord(), version
        return BackoffRecord(**raw), version

    async def compare_and_set(self, record: BackoffRecord, expected_version: int) -> int:
        return await state_compare_and_set(
            self._pool, self._key, expected_version, record.model_dump()
        )
