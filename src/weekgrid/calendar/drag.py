"""Drag-to-reschedule for plan blocks on the time grid.

The rescheduler is a two-state machine (idle, dragging).  Pointer-down on an
editable plan block captures its duration, the pointer offset inside the
block and the block's day column, and acquires global move/up listeners.
Moves snap the preview to the grid step on the original day.  Pointer-up
releases the listeners, commits the preview through the lifecycle controller
and clears the drag state on every path.
"""

from __future__ import annotations

import inspect
import logging
import math
from collections.abc import Callable, Sequence
from contextlib import ExitStack
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any

from weekgrid.calendar.lifecycle import PlanBlockLifecycle
from weekgrid.calendar.models import (
    CalendarItem,
    PlanBlock,
    PlanBlockInput,
    PlanBlockStatus,
    format_local_datetime,
    normalize_block_type,
    week_start,
)

logger = logging.getLogger(__name__)

MINUTES_PER_DAY = 24 * 60
POINTER_MOVE = "pointermove"
POINTER_UP = "pointerup"


@dataclass(frozen=True)
class GridGeometry:
    """Pixel geometry of the time grid."""

    hour_height: float = 56.0
    snap_minutes: int = 15
    min_duration_minutes: int = 15

    def snapped_minutes(self, offset_px: float, duration_minutes: int) -> int:
        """Convert a vertical offset into snapped minutes from midnight.

        The result keeps a block of ``duration_minutes`` inside the day.
        """
        raw = offset_px / self.hour_height * 60 / self.snap_minutes
        # Half-up rounding, matching pointer math in browsers.
        minutes = math.floor(raw + 0.5) * self.snap_minutes
        return max(0, min(minutes, MINUTES_PER_DAY - duration_minutes))


@dataclass(frozen=True)
class PointerEvent:
    """Pointer position in client coordinates plus the grid's current top edge."""

    client_y: float
    grid_top: float = 0.0


@dataclass(frozen=True)
class DragState:
    item: CalendarItem
    duration_minutes: int
    day_index: int
    day: date
    offset_y: float


@dataclass(frozen=True)
class DragPreview:
    start: datetime
    end: datetime
    day_index: int


class PointerListeners:
    """Registry of global pointer handlers keyed by event kind."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Callable[[PointerEvent], Any]]] = {}

    def add(self, kind: str, handler: Callable[[PointerEvent], Any]) -> None:
        self._handlers.setdefault(kind, []).append(handler)

    def remove(self, kind: str, handler: Callable[[PointerEvent], Any]) -> None:
        handlers = self._handlers.get(kind, [])
        if handler in handlers:
            handlers.remove(handler)

    def count(self, kind: str) -> int:
        return len(self._handlers.get(kind, []))

    async def dispatch(self, kind: str, event: PointerEvent) -> None:
        for handler in list(self._handlers.get(kind, [])):
            result = handler(event)
            if inspect.isawaitable(result):
                await result


class PointerCapture:
    """Scoped registration of the move/up handlers for one drag."""

    def __init__(
        self,
        listeners: PointerListeners,
        on_move: Callable[[PointerEvent], Any],
        on_up: Callable[[PointerEvent], Any],
    ) -> None:
        self._listeners = listeners
        self._on_move = on_move
        self._on_up = on_up

    def __enter__(self) -> PointerCapture:
        self._listeners.add(POINTER_MOVE, self._on_move)
        self._listeners.add(POINTER_UP, self._on_up)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        self._listeners.remove(POINTER_MOVE, self._on_move)
        self._listeners.remove(POINTER_UP, self._on_up)


class DragRescheduler:
    """Turns pointer gestures on plan blocks into reschedule commits."""

    def __init__(
        self,
        lifecycle: PlanBlockLifecycle,
        *,
        geometry: GridGeometry | None = None,
        listeners: PointerListeners | None = None,
    ) -> None:
        self._lifecycle = lifecycle
        self.geometry = geometry or GridGeometry()
        self.listeners = listeners or PointerListeners()
        self._state: DragState | None = None
        self._preview: DragPreview | None = None
        self._days: list[date] = []
        self._capture = ExitStack()

    @property
    def state(self) -> DragState | None:
        return self._state

    @property
    def preview(self) -> DragPreview | None:
        return self._preview

    @property
    def dragging(self) -> bool:
        return self._state is not None

    def pointer_down(
        self,
        item: CalendarItem,
        event: PointerEvent,
        item_top: float,
        days: Sequence[date],
    ) -> bool:
        """Start dragging *item*; returns ``False`` when the item cannot be dragged.

        ``item_top`` is the block's top edge in client coordinates and *days*
        are the visible day columns.
        """
        if not item.editable or item.all_day or self._state is not None:
            return False
        if item.plan_block_id is None:
            return False

        start, end = item.start, item.end
        duration = max(
            self.geometry.min_duration_minutes,
            int((end - start).total_seconds() // 60),
        )
        visible = list(days)
        try:
            day_index = visible.index(start.date())
        except ValueError:
            day_index = 0
        day = visible[day_index] if visible else start.date()

        self._days = visible
        self._state = DragState(
            item=item,
            duration_minutes=duration,
            day_index=day_index,
            day=day,
            offset_y=event.client_y - item_top,
        )
        self._preview = DragPreview(start=start, end=end, day_index=day_index)
        self._capture.enter_context(
            PointerCapture(self.listeners, self.pointer_move, self.pointer_up)
        )
        logger.debug("Drag started for %s (duration=%dm)", item.id, duration)
        return True

    def pointer_move(self, event: PointerEvent) -> DragPreview | None:
        state = self._state
        if state is None:
            return None
        minutes = self.geometry.snapped_minutes(
            event.client_y - event.grid_top - state.offset_y,
            state.duration_minutes,
        )
        start = datetime.combine(state.day, time()) + timedelta(minutes=minutes)
        self._preview = DragPreview(
            start=start,
            end=start + timedelta(minutes=state.duration_minutes),
            day_index=state.day_index,
        )
        return self._preview

    async def pointer_up(self, event: PointerEvent | None = None) -> PlanBlock | None:
        """Commit the preview.  Drag state is cleared even when the commit fails."""
        self._capture.close()
        state, preview = self._state, self._preview
        if state is None:
            return None
        try:
            block_id = state.item.plan_block_id
            if block_id is None or preview is None:
                return None
            payload = PlanBlockInput(
                week_start_date=week_start(preview.start).isoformat(),
                start_at=format_local_datetime(preview.start),
                end_at=format_local_datetime(preview.end),
                block_type=normalize_block_type(state.item.category),
                title=state.item.title,
                status=state.item.status or PlanBlockStatus.SUGGESTED,
            )
            block = await self._lifecycle.reschedule(block_id, payload)
            await self._lifecycle.push_if_connected(block, "drag")
            return block
        finally:
            self._state = None
            self._preview = None

    def cancel(self) -> None:
        """Abandon the current drag without committing."""
        self._capture.close()
        self._state = None
        self._preview = None

    def display_range(self, item: CalendarItem) -> tuple[datetime, datetime]:
        """Preview range for the dragged item; persisted range for every other item."""
        if self._state is not None and self._preview is not None and self._state.item.id == item.id:
            return self._preview.start, self._preview.end
        return item.start, item.end
