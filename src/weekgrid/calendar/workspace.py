"""Headless calendar view controller.

Owns the visible range (week or day), the latest aggregated view and the
selection, and wires user actions to the lifecycle controller, the drag
rescheduler and the sync orchestrator.  Every action awaits its mutation and
then refetches the view.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta
from enum import StrEnum

from weekgrid.calendar.aggregator import AggregatedView, ItemBox, aggregate, busy_layout
from weekgrid.calendar.drag import POINTER_MOVE, POINTER_UP, DragRescheduler, PointerEvent
from weekgrid.calendar.errors import PlanBlockValidationError
from weekgrid.calendar.lifecycle import PlanBlockLifecycle
from weekgrid.calendar.models import (
    CalendarItem,
    PlanBlock,
    SyncStatus,
    format_local_datetime,
    parse_plan_block_id,
    week_days,
)
from weekgrid.calendar.store import PlanStore
from weekgrid.calendar.sync import SyncOrchestrator, SyncOutcome

logger = logging.getLogger(__name__)


class ViewMode(StrEnum):
    WEEK = "week"
    DAY = "day"


def visible_days(view: ViewMode, anchor: date) -> list[date]:
    if view is ViewMode.DAY:
        return [anchor]
    return week_days(anchor)


class CalendarWorkspace:
    """State and action handlers behind one calendar screen."""

    def __init__(
        self,
        store: PlanStore,
        lifecycle: PlanBlockLifecycle,
        sync: SyncOrchestrator,
        drag: DragRescheduler | None = None,
        *,
        anchor: date | None = None,
        view: ViewMode = ViewMode.WEEK,
        include_assignments: bool = True,
        include_exams: bool = True,
    ) -> None:
        self._store = store
        self._lifecycle = lifecycle
        self._sync = sync
        self.drag = drag or DragRescheduler(lifecycle)
        self.view = view
        self.anchor_date = anchor or datetime.now().date()
        self.include_assignments = include_assignments
        self.include_exams = include_exams
        self.items: list[CalendarItem] = []
        self.aggregated = aggregate(self.days, [])
        self.sync_status = SyncStatus()
        self._mounted = False

    # -- derived state -------------------------------------------------------

    @property
    def days(self) -> list[date]:
        return visible_days(self.view, self.anchor_date)

    @property
    def selected_item(self) -> CalendarItem | None:
        selected = self._lifecycle.selected_item_id
        if selected is None:
            return None
        return self.aggregated.find(selected)

    def layout(self) -> dict[str, list[ItemBox]]:
        """Timed boxes per day, with the dragged block at its preview position."""
        boxes = busy_layout(self.items, hour_height=self.drag.geometry.hour_height)
        state = self.drag.state
        preview = self.drag.preview
        if state is None or preview is None:
            return boxes
        for day_boxes in boxes.values():
            day_boxes[:] = [box for box in day_boxes if box.item_id != state.item.id]
        dragged = state.item.model_copy(
            update={
                "start_at": format_local_datetime(preview.start),
                "end_at": format_local_datetime(preview.end),
            }
        )
        moved = busy_layout([dragged], hour_height=self.drag.geometry.hour_height)
        for key, day_boxes in moved.items():
            boxes.setdefault(key, []).extend(day_boxes)
        return boxes

    # -- lifecycle -------------------------------------------------------------

    async def mount(self) -> None:
        if self._mounted:
            return
        self._sync.add_refresh_callback(self.refresh)
        await self._sync.start()
        self._mounted = True
        await self.refresh()

    async def unmount(self) -> None:
        if not self._mounted:
            return
        self.drag.cancel()
        self._sync.remove_refresh_callback(self.refresh)
        await self._sync.stop()
        self._mounted = False

    async def refresh(self) -> AggregatedView:
        days = self.days
        self.items = await self._store.get_calendar_items(
            days[0],
            days[-1],
            include_assignments=self.include_assignments,
            include_exams=self.include_exams,
        )
        self.aggregated = aggregate(days, self.items)
        self.sync_status = await self._sync.remote.get_sync_status()
        return self.aggregated

    # -- navigation ------------------------------------------------------------

    async def set_view(self, view: ViewMode) -> None:
        self.view = view
        await self.refresh()

    async def go_to(self, anchor: date) -> None:
        self.anchor_date = anchor
        await self.refresh()

    async def prev(self) -> None:
        await self.go_to(self.anchor_date - self._step())

    async def next(self) -> None:
        await self.go_to(self.anchor_date + self._step())

    async def today(self) -> None:
        await self.go_to(datetime.now().date())

    def _step(self) -> timedelta:
        return timedelta(days=1 if self.view is ViewMode.DAY else 7)

    # -- actions ---------------------------------------------------------------

    def select(self, item_id: str | None) -> None:
        self._lifecycle.select(item_id)

    async def generate(self) -> list[PlanBlock]:
        created = await self._lifecycle.generate(self.days)
        await self.refresh()
        return created

    async def accept(self, item_id: str) -> PlanBlock:
        block = await self._lifecycle.accept(_require_block_id(item_id))
        await self.refresh()
        return block

    async def lock(self, item_id: str) -> PlanBlock:
        block = await self._lifecycle.lock(_require_block_id(item_id))
        await self.refresh()
        return block

    async def delete(self, item_id: str) -> None:
        await self._lifecycle.delete(_require_block_id(item_id))
        await self.refresh()

    async def sync_now(self) -> SyncOutcome:
        outcome = await self._sync.sync_now("manual")
        if not outcome.succeeded:
            # Successful syncs refresh through the orchestrator callback.
            self.sync_status = await self._sync.remote.get_sync_status()
        return outcome

    # -- drag ------------------------------------------------------------------

    def pointer_down(self, item_id: str, event: PointerEvent, item_top: float) -> bool:
        item = self.aggregated.find(item_id)
        if item is None:
            return False
        self.select(item_id)
        return self.drag.pointer_down(item, event, item_top, self.days)

    async def pointer_move(self, event: PointerEvent) -> None:
        await self.drag.listeners.dispatch(POINTER_MOVE, event)

    async def pointer_up(self, event: PointerEvent) -> None:
        committed = self.drag.dragging
        await self.drag.listeners.dispatch(POINTER_UP, event)
        if committed:
            await self.refresh()


def _require_block_id(item_id: str) -> int:
    block_id = parse_plan_block_id(item_id)
    if block_id is None:
        raise PlanBlockValidationError(f"Item {item_id!r} is not a plan block")
    return block_id
