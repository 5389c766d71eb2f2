"""Plan-block lifecycle: generation, transitions, rescheduling and deletion.

States move forward only::

    suggested -> accepted -> locked
    suggested -> locked

Delete is legal from every state.  Legality is enforced by the store so a
concurrent writer cannot slip a block past a transition check.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import date

from weekgrid.calendar.errors import PlanBlockValidationError
from weekgrid.calendar.models import (
    PUSHABLE_STATUSES,
    PlanBlock,
    PlanBlockInput,
    PlanBlockStatus,
    plan_block_item_id,
    week_start,
)
from weekgrid.calendar.slots import PlanningWindow, build_suggested_blocks
from weekgrid.calendar.store import PlanStore
from weekgrid.calendar.sync import SyncOrchestrator, SyncOutcome

logger = logging.getLogger(__name__)


class PlanBlockLifecycle:
    """Applies plan-block mutations and triggers remote pushes where needed."""

    def __init__(
        self,
        store: PlanStore,
        sync: SyncOrchestrator | None = None,
        *,
        window: PlanningWindow | None = None,
    ) -> None:
        self._store = store
        self._sync = sync
        self._window = window or PlanningWindow()
        self.selected_item_id: str | None = None

    @property
    def window(self) -> PlanningWindow:
        return self._window

    def select(self, item_id: str | None) -> None:
        self.selected_item_id = item_id

    async def generate(self, days: Sequence[date]) -> list[PlanBlock]:
        """Replace the week's suggestions with one focus block per free day.

        Running it twice for the same week yields the same suggestions.
        """
        if not days:
            return []
        ordered = sorted(days)
        monday = week_start(ordered[0])
        cleared = await self._store.clear_suggested_blocks(monday)
        items = await self._store.get_calendar_items(ordered[0], ordered[-1])
        proposals = build_suggested_blocks(ordered, items, monday, window=self._window)
        created = await self._store.bulk_create_plan_blocks(proposals)
        logger.info(
            "Generated plan for week of %s (cleared=%d, created=%d)",
            monday.isoformat(),
            cleared,
            len(created),
        )
        return created

    async def accept(self, block_id: int) -> PlanBlock:
        block = await self._store.accept_plan_block(block_id)
        await self._push(block, "accept")
        return block

    async def lock(self, block_id: int) -> PlanBlock:
        block = await self._store.lock_plan_block(block_id)
        await self._push(block, "lock")
        return block

    async def delete(self, block_id: int) -> None:
        await self._store.delete_plan_block(block_id)
        if self.selected_item_id == plan_block_item_id(block_id):
            self.selected_item_id = None

    async def reschedule(self, block_id: int, payload: PlanBlockInput) -> PlanBlock:
        """Rewrite a block's time fields; its status is preserved."""
        block = await self._store.update_plan_block(block_id, payload)
        logger.info("Rescheduled plan block %d to %s-%s", block_id, block.start_at, block.end_at)
        return block

    async def create(self, payload: PlanBlockInput) -> PlanBlock:
        if payload.status is PlanBlockStatus.LOCKED:
            raise PlanBlockValidationError("Plan blocks cannot be created locked")
        block = await self._store.create_plan_block(payload)
        await self._push(block, "create")
        return block

    async def push_if_connected(self, block: PlanBlock, reason: str) -> SyncOutcome | None:
        """Trigger an immediate sync for a block the remote should mirror."""
        if self._sync is None or block.status not in PUSHABLE_STATUSES:
            return None
        return await self._sync.sync_if_connected(reason)

    async def _push(self, block: PlanBlock, reason: str) -> None:
        outcome = await self.push_if_connected(block, reason)
        if outcome is not None and not outcome.succeeded:
            logger.info(
                "Push after %s of block %d did not complete: %s",
                reason,
                block.id,
                outcome.detail,
            )
