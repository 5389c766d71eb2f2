"""Item aggregation: project source records into calendar items and partition by day.

The projection helpers turn course meetings, calendar events, plan blocks,
assignments and exams into :class:`CalendarItem` occurrences for a date range.
:func:`aggregate` then partitions any item list into the render-ready
all-day/timed maps keyed by ``yyyy-MM-dd``.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from weekgrid.calendar.models import (
    Assignment,
    CalendarEventRecord,
    CalendarItem,
    CourseMeeting,
    Exam,
    ItemSource,
    PlanBlock,
    PlanBlockStatus,
    day_key,
    format_local_datetime,
    parse_item_datetime,
)

logger = logging.getLogger(__name__)

WEEKLY_RRULE_PREFIX = "WEEKLY:"
DEFAULT_RECURRING_START = "09:00"
DEFAULT_RECURRING_END = "10:00"
MIN_RENDERED_MINUTES = 15


@dataclass
class AggregatedView:
    """Render-ready partition of calendar items.

    Every requested day has a (possibly empty) list in both maps.
    """

    all_day_by_day: dict[str, list[CalendarItem]] = field(default_factory=dict)
    timed_by_day: dict[str, list[CalendarItem]] = field(default_factory=dict)

    def items_for_day(self, key: str) -> list[CalendarItem]:
        return [*self.all_day_by_day.get(key, []), *self.timed_by_day.get(key, [])]

    def find(self, item_id: str) -> CalendarItem | None:
        for bucket in (self.all_day_by_day, self.timed_by_day):
            for items in bucket.values():
                for item in items:
                    if item.id == item_id:
                        return item
        return None


def _group(days: Sequence[date], items: Iterable[CalendarItem]) -> dict[str, list[CalendarItem]]:
    grouped: dict[str, list[CalendarItem]] = {day_key(day): [] for day in days}
    for item in items:
        key = day_key(item.start)
        # Keys outside the requested days are synthesized, never dropped.
        grouped.setdefault(key, []).append(item)
    return grouped


def aggregate(days: Sequence[date], items: Iterable[CalendarItem]) -> AggregatedView:
    """Partition *items* into all-day and timed maps keyed by start date."""
    materialized = list(items)
    view = AggregatedView(
        all_day_by_day=_group(days, (item for item in materialized if item.all_day)),
        timed_by_day=_group(days, (item for item in materialized if not item.all_day)),
    )
    requested = {day_key(day) for day in days}
    extra = (set(view.all_day_by_day) | set(view.timed_by_day)) - requested
    if extra:
        logger.debug("Synthesized %d day key(s) outside the requested range", len(extra))
    return view


# ---------------------------------------------------------------------------
# Projection
# ---------------------------------------------------------------------------


def _iter_days(start_date: date, end_date: date) -> Iterable[date]:
    current = start_date
    while current <= end_date:
        yield current
        current += timedelta(days=1)


def _sunday_based_weekday(value: date) -> int:
    return (value.weekday() + 1) % 7


def _at(day: date, hhmm: str) -> str:
    return f"{day.isoformat()}T{hhmm}:00"


def _parse_weekly_rule(rule: str) -> set[int]:
    days: set[int] = set()
    for part in rule[len(WEEKLY_RRULE_PREFIX) :].split(","):
        part = part.strip()
        if part.isdigit():
            days.add(int(part))
    return days


def expand_course_meetings(
    meetings: Iterable[CourseMeeting], start_date: date, end_date: date
) -> list[CalendarItem]:
    """Expand weekly course meetings into one item per occurrence in range."""
    items: list[CalendarItem] = []
    for meeting in meetings:
        for day in _iter_days(start_date, end_date):
            if _sunday_based_weekday(day) != meeting.day_of_week:
                continue
            title = f"{meeting.course_name or 'Course'} - {meeting.meeting_type or 'Class'}"
            items.append(
                CalendarItem(
                    id=f"cm_{meeting.id}_{day.isoformat()}",
                    source=ItemSource.COURSE_MEETING,
                    title=title,
                    start_at=_at(day, meeting.start_time),
                    end_at=_at(day, meeting.end_time),
                    color=meeting.color,
                    course_id=meeting.course_id,
                    course_name=meeting.course_name,
                    category="class",
                    locked=True,
                    metadata={"location": meeting.location} if meeting.location else {},
                )
            )
    return items


def expand_calendar_events(
    events: Iterable[CalendarEventRecord], start_date: date, end_date: date
) -> list[CalendarItem]:
    """Expand ``WEEKLY:d,d`` recurring events and filter one-off events to the range."""
    items: list[CalendarItem] = []
    for event in events:
        if event.rrule is not None:
            if not event.rrule.startswith(WEEKLY_RRULE_PREFIX):
                logger.debug(
                    "Skipping calendar event %s with unsupported rule %r", event.id, event.rrule
                )
                continue
            weekdays = _parse_weekly_rule(event.rrule)
            start_time = event.start_time or DEFAULT_RECURRING_START
            end_time = event.end_time or DEFAULT_RECURRING_END
            for day in _iter_days(start_date, end_date):
                if _sunday_based_weekday(day) not in weekdays:
                    continue
                items.append(
                    CalendarItem(
                        id=f"ce_{event.id}_{day.isoformat()}",
                        source=ItemSource.CALENDAR_EVENT,
                        title=event.title,
                        start_at=_at(day, start_time),
                        end_at=_at(day, end_time),
                        category=event.category,
                        locked=event.locked,
                    )
                )
        elif event.start_at and event.end_at:
            event_date = event.start_at.split("T", 1)[0]
            if start_date.isoformat() <= event_date <= end_date.isoformat():
                items.append(
                    CalendarItem(
                        id=f"ce_{event.id}",
                        source=ItemSource.CALENDAR_EVENT,
                        title=event.title,
                        start_at=event.start_at,
                        end_at=event.end_at,
                        all_day=len(event.start_at.strip()) == 10,
                        category=event.category,
                        locked=event.locked,
                    )
                )
    return items


def plan_block_items(
    blocks: Iterable[PlanBlock], colors: dict[int, str] | None = None
) -> list[CalendarItem]:
    items: list[CalendarItem] = []
    for block in blocks:
        locked = block.status is PlanBlockStatus.LOCKED
        items.append(
            CalendarItem(
                id=block.item_id,
                source=ItemSource.PLAN_BLOCK,
                title=block.title or block.block_type.value,
                start_at=block.start_at,
                end_at=block.end_at,
                color=(colors or {}).get(block.course_id) if block.course_id else None,
                course_id=block.course_id,
                category=block.block_type.value,
                status=block.status,
                locked=locked,
                editable=not locked,
            )
        )
    return items


def assignment_items(assignments: Iterable[Assignment]) -> list[CalendarItem]:
    """Project incomplete assignments as all-day deadline markers."""
    return [
        CalendarItem(
            id=f"asgn_{assignment.id}",
            source=ItemSource.ASSIGNMENT,
            title=f"Due: {assignment.title}",
            start_at=assignment.due_date,
            end_at=assignment.due_date,
            all_day=True,
            color=assignment.color,
            course_id=assignment.course_id,
            category="deadline",
            locked=True,
        )
        for assignment in assignments
        if assignment.due_date and not assignment.is_completed
    ]


def _exam_end(exam_date: str, duration_minutes: int) -> str:
    if "T" not in exam_date:
        return exam_date
    try:
        start = parse_item_datetime(exam_date)
    except ValueError:
        return exam_date
    return format_local_datetime(start + timedelta(minutes=duration_minutes))


def exam_items(exams: Iterable[Exam]) -> list[CalendarItem]:
    """Project exams; exams without a duration are all-day."""
    items: list[CalendarItem] = []
    for exam in exams:
        if not exam.exam_date:
            continue
        all_day = exam.duration_minutes is None
        end_at = exam.exam_date if all_day else _exam_end(exam.exam_date, exam.duration_minutes)
        items.append(
            CalendarItem(
                id=f"exam_{exam.id}",
                source=ItemSource.EXAM,
                title=f"Exam: {exam.title}",
                start_at=exam.exam_date,
                end_at=end_at,
                all_day=all_day,
                color=exam.color,
                course_id=exam.course_id,
                category="exam",
                locked=True,
            )
        )
    return items


def collect_calendar_items(
    *,
    start_date: date,
    end_date: date,
    meetings: Iterable[CourseMeeting] = (),
    events: Iterable[CalendarEventRecord] = (),
    blocks: Iterable[PlanBlock] = (),
    assignments: Iterable[Assignment] = (),
    exams: Iterable[Exam] = (),
    include_assignments: bool = True,
    include_exams: bool = True,
    course_colors: dict[int, str] | None = None,
) -> list[CalendarItem]:
    """Merge every feed into one list sorted by ``start_at``."""
    items = [
        *expand_course_meetings(meetings, start_date, end_date),
        *expand_calendar_events(events, start_date, end_date),
        *plan_block_items(blocks, course_colors),
    ]
    if include_assignments:
        items.extend(assignment_items(assignments))
    if include_exams:
        items.extend(exam_items(exams))
    items.sort(key=lambda item: item.start_at)
    return items


# ---------------------------------------------------------------------------
# Timed layout
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ItemBox:
    """Vertical placement of a timed item inside its day column."""

    item_id: str
    top: float
    height: float
    start: datetime
    end: datetime


def item_box(
    item_id: str, start: datetime, end: datetime, *, hour_height: float
) -> ItemBox:
    minutes_from_midnight = start.hour * 60 + start.minute
    duration = max(MIN_RENDERED_MINUTES, int((end - start).total_seconds() // 60))
    return ItemBox(
        item_id=item_id,
        top=minutes_from_midnight / 60 * hour_height,
        height=duration / 60 * hour_height,
        start=start,
        end=end,
    )


def busy_layout(items: Iterable[CalendarItem], *, hour_height: float) -> dict[str, list[ItemBox]]:
    """Compute per-day vertical boxes for the timed items of a view."""
    layout: dict[str, list[ItemBox]] = {}
    for item in items:
        if item.all_day:
            continue
        start = item.start
        layout.setdefault(day_key(start), []).append(
            item_box(item.id, start, item.end, hour_height=hour_height)
        )
    for boxes in layout.values():
        boxes.sort(key=lambda box: (box.top, box.item_id))
    return layout
