"""Slot finder: earliest free fixed-duration slot inside a daily planning window."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from weekgrid.calendar.models import (
    BlockType,
    CalendarItem,
    Interval,
    ItemSource,
    PlanBlockInput,
    PlanBlockStatus,
    day_key,
    format_local_datetime,
)

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_TITLE = "Focus block"


@dataclass(frozen=True)
class PlanningWindow:
    """Daily window in which suggestions may be placed."""

    start: time = time(8, 0)
    end: time = time(20, 0)
    step_minutes: int = 15
    block_minutes: int = 90

    def __post_init__(self) -> None:
        if self.step_minutes < 1:
            raise ValueError("step_minutes must be at least 1")
        if self.block_minutes < 1:
            raise ValueError("block_minutes must be at least 1")
        if self.start >= self.end:
            raise ValueError("planning window start must be before its end")

    def bounds(self, day: date) -> Interval:
        return Interval(datetime.combine(day, self.start), datetime.combine(day, self.end))


def find_first_slot(
    day: date,
    busy: Iterable[Interval],
    duration_minutes: int,
    window: PlanningWindow | None = None,
) -> Interval | None:
    """Return the earliest ``duration_minutes`` slot on *day* overlapping no busy interval.

    Candidates start at the window start and advance by the window step while
    they still end inside the window.  Returns ``None`` when nothing fits.
    """
    window = window or PlanningWindow()
    if duration_minutes <= 0:
        raise ValueError("duration_minutes must be positive")

    bounds = window.bounds(day)
    busy_list = list(busy)
    duration = timedelta(minutes=duration_minutes)
    step = timedelta(minutes=window.step_minutes)

    cursor = bounds.start
    while cursor + duration <= bounds.end:
        candidate = Interval(cursor, cursor + duration)
        if not any(candidate.overlaps(interval) for interval in busy_list):
            return candidate
        cursor += step
    return None


def _is_busy(item: CalendarItem) -> bool:
    # Suggestions do not block other suggestions.
    return not (
        item.source is ItemSource.PLAN_BLOCK and item.status is PlanBlockStatus.SUGGESTED
    )


def busy_intervals_by_day(
    days: Sequence[date],
    items: Iterable[CalendarItem],
    window: PlanningWindow | None = None,
) -> dict[str, list[Interval]]:
    """Collect busy intervals keyed by day; all-day items block the whole window."""
    window = window or PlanningWindow()
    busy: dict[str, list[Interval]] = {day_key(day): [] for day in days}
    for item in items:
        if not _is_busy(item):
            continue
        key = day_key(item.start)
        if key not in busy:
            continue
        if item.all_day:
            busy[key].append(window.bounds(item.start.date()))
        else:
            busy[key].append(Interval(item.start, item.end))
    return busy


def build_suggested_blocks(
    days: Sequence[date],
    items: Iterable[CalendarItem],
    week_start_date: date,
    *,
    window: PlanningWindow | None = None,
    title: str = DEFAULT_BLOCK_TITLE,
) -> list[PlanBlockInput]:
    """Propose at most one suggested study block per day in *days*."""
    window = window or PlanningWindow()
    busy = busy_intervals_by_day(days, items, window)
    suggestions: list[PlanBlockInput] = []
    for day in days:
        slot = find_first_slot(day, busy[day_key(day)], window.block_minutes, window)
        if slot is None:
            logger.debug("No free %d-minute slot on %s", window.block_minutes, day_key(day))
            continue
        suggestions.append(
            PlanBlockInput(
                week_start_date=week_start_date.isoformat(),
                start_at=format_local_datetime(slot.start),
                end_at=format_local_datetime(slot.end),
                block_type=BlockType.STUDY,
                title=title,
                status=PlanBlockStatus.SUGGESTED,
            )
        )
    return suggestions
