"""Calendar data model: display items, persisted plan blocks and source records.

All times handled by the engine are local naive date-times serialized as
``yyyy-MM-ddTHH:mm:ss``.  All-day items may carry a bare ``yyyy-MM-dd`` date.
Conversion to and from provider time zones happens only in the remote layer.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

PLAN_BLOCK_ID_PREFIX = "wpb_"
DAY_KEY_FORMAT = "%Y-%m-%d"
LOCAL_DATETIME_FORMAT = "%Y-%m-%dT%H:%M:%S"


class ItemSource(StrEnum):
    """Origin of a calendar item; drives styling, editability and mutation target."""

    COURSE_MEETING = "course_meeting"
    CALENDAR_EVENT = "calendar_event"
    ASSIGNMENT = "assignment"
    EXAM = "exam"
    PLAN_BLOCK = "plan_block"


class PlanBlockStatus(StrEnum):
    SUGGESTED = "suggested"
    ACCEPTED = "accepted"
    LOCKED = "locked"


class BlockType(StrEnum):
    STUDY = "study"
    ASSIGNMENT = "assignment"
    EXAM_PREP = "exam_prep"
    BREAK = "break"
    WEEKLY_TASK = "weekly_task"


EDITABLE_STATUSES = frozenset({PlanBlockStatus.SUGGESTED, PlanBlockStatus.ACCEPTED})

# Source statuses from which each lifecycle action is legal.  There are no
# backward transitions; delete is legal from every status.
ALLOWED_SOURCE_STATUSES: dict[str, frozenset[PlanBlockStatus]] = {
    "accept": frozenset({PlanBlockStatus.SUGGESTED}),
    "lock": frozenset({PlanBlockStatus.SUGGESTED, PlanBlockStatus.ACCEPTED}),
    "update": EDITABLE_STATUSES,
    "delete": frozenset(PlanBlockStatus),
}

# Statuses whose blocks are mirrored to the remote calendar.
PUSHABLE_STATUSES = frozenset({PlanBlockStatus.ACCEPTED, PlanBlockStatus.LOCKED})


# ---------------------------------------------------------------------------
# Date helpers
# ---------------------------------------------------------------------------


def parse_item_datetime(value: str) -> datetime:
    """Parse an item boundary into a local naive datetime.

    Bare ``yyyy-MM-dd`` dates resolve to local midnight.  Offset-aware values
    are converted to the local wall clock.
    """
    normalized = value.strip()
    if len(normalized) == 10:
        return datetime.combine(date.fromisoformat(normalized), time())
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    parsed = datetime.fromisoformat(normalized)
    if parsed.tzinfo is not None:
        return parsed.astimezone().replace(tzinfo=None)
    return parsed


def format_local_datetime(value: datetime) -> str:
    """Format as a local naive date-time with no offset."""
    return value.strftime(LOCAL_DATETIME_FORMAT)


def day_key(value: date | datetime) -> str:
    """Return the ``yyyy-MM-dd`` key for a calendar day."""
    if isinstance(value, datetime):
        value = value.date()
    return value.strftime(DAY_KEY_FORMAT)


def week_start(value: date | datetime) -> date:
    """Return the Monday of the week containing *value*."""
    if isinstance(value, datetime):
        value = value.date()
    return value - timedelta(days=value.weekday())


def week_days(anchor: date | datetime) -> list[date]:
    """Return the seven days (Monday first) of the week containing *anchor*."""
    monday = week_start(anchor)
    return [monday + timedelta(days=offset) for offset in range(7)]


def plan_block_item_id(block_id: int) -> str:
    return f"{PLAN_BLOCK_ID_PREFIX}{block_id}"


def parse_plan_block_id(item_id: str) -> int | None:
    """Map a ``wpb_<id>`` item id back to the persisted block id."""
    if not item_id.startswith(PLAN_BLOCK_ID_PREFIX):
        return None
    raw = item_id[len(PLAN_BLOCK_ID_PREFIX) :]
    if not raw.isdigit():
        return None
    return int(raw)


def normalize_block_type(value: str | None) -> BlockType:
    """Round-trip a display category into a block type, defaulting to ``study``."""
    if not value:
        return BlockType.STUDY
    try:
        return BlockType(value)
    except ValueError:
        return BlockType.STUDY


@dataclass(frozen=True)
class Interval:
    """Half-open ``[start, end)`` time range."""

    start: datetime
    end: datetime

    def overlaps(self, other: Interval) -> bool:
        # Touching endpoints do not overlap.
        return self.start < other.end and other.start < self.end

    @property
    def duration_minutes(self) -> int:
        return int((self.end - self.start).total_seconds() // 60)


# ---------------------------------------------------------------------------
# Display model
# ---------------------------------------------------------------------------


class CalendarItem(BaseModel):
    """One render-ready occurrence in the requested range."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    source: ItemSource
    title: str
    start_at: str
    end_at: str
    all_day: bool = False
    color: str | None = None
    course_id: int | None = None
    course_name: str | None = None
    category: str | None = None
    status: PlanBlockStatus | None = None
    locked: bool = False
    editable: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _restrict_editable(self) -> CalendarItem:
        if self.source is not ItemSource.PLAN_BLOCK:
            self.status = None
            self.editable = False
        elif self.status not in EDITABLE_STATUSES:
            self.editable = False
        return self

    @property
    def start(self) -> datetime:
        return parse_item_datetime(self.start_at)

    @property
    def end(self) -> datetime:
        return parse_item_datetime(self.end_at)

    @property
    def plan_block_id(self) -> int | None:
        if self.source is not ItemSource.PLAN_BLOCK:
            return None
        return parse_plan_block_id(self.id)


# ---------------------------------------------------------------------------
# Persisted plan blocks
# ---------------------------------------------------------------------------


class _PlanBlockFields(BaseModel):
    week_start_date: str
    start_at: str
    end_at: str
    block_type: BlockType
    title: str | None = None
    status: PlanBlockStatus = PlanBlockStatus.SUGGESTED
    course_id: int | None = None
    weekly_task_id: int | None = None
    rationale: dict[str, Any] | None = None

    @field_validator("week_start_date")
    @classmethod
    def _validate_week_start(cls, value: str) -> str:
        date.fromisoformat(value.strip())
        return value.strip()

    @field_validator("start_at", "end_at")
    @classmethod
    def _validate_datetime(cls, value: str) -> str:
        parse_item_datetime(value)
        return value.strip()

    @property
    def interval(self) -> Interval:
        return Interval(parse_item_datetime(self.start_at), parse_item_datetime(self.end_at))


class PlanBlockInput(_PlanBlockFields):
    """Create/update payload for a plan block."""

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _validate_range(self) -> PlanBlockInput:
        if parse_item_datetime(self.start_at) >= parse_item_datetime(self.end_at):
            raise ValueError("start_at must be before end_at")
        return self


class PlanBlock(_PlanBlockFields):
    """A persisted plan block as returned by the store."""

    model_config = ConfigDict(extra="ignore")

    id: int
    created_at: datetime | None = None

    @property
    def item_id(self) -> str:
        return plan_block_item_id(self.id)


class SyncStatus(BaseModel):
    """Remote calendar connection status."""

    connected: bool = False
    email: str | None = None
    last_sync: datetime | None = None


# ---------------------------------------------------------------------------
# Source records projected into calendar items
# ---------------------------------------------------------------------------


class CourseMeeting(BaseModel):
    """Weekly recurring class meeting (``day_of_week`` 0 = Sunday)."""

    id: int
    course_id: int
    day_of_week: int = Field(ge=0, le=6)
    start_time: str
    end_time: str
    location: str | None = None
    meeting_type: str | None = None
    course_name: str | None = None
    color: str | None = None


class CalendarEventRecord(BaseModel):
    """Manual or imported busy block, either one-off or weekly recurring."""

    id: int
    title: str
    start_at: str | None = None
    end_at: str | None = None
    rrule: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    category: str = "busy"
    locked: bool = False


class Assignment(BaseModel):
    id: int
    course_id: int
    title: str
    due_date: str | None = None
    is_completed: bool = False
    color: str | None = None


class Exam(BaseModel):
    id: int
    course_id: int
    title: str
    exam_date: str | None = None
    duration_minutes: int | None = None
    color: str | None = None


class EventLink(BaseModel):
    """Mapping between a local entity and an event on the remote provider."""

    provider: str
    entity_type: str
    entity_id: int
    remote_calendar_id: str
    remote_event_id: str
    etag: str | None = None
