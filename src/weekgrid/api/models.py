"""Shared Pydantic response/request models for the weekgrid API.

Provides the generic ``{"data": T, "meta": {...}}`` wrapper, the error
envelope and the calendar view payloads.
"""

from __future__ import annotations

from datetime import datetime
from typing import Generic, Literal, TypeVar

from pydantic import BaseModel, Field

from weekgrid.calendar.models import CalendarItem, SyncStatus
from weekgrid.calendar.sync import SyncOutcome

# ---------------------------------------------------------------------------
# Base response wrappers
# ---------------------------------------------------------------------------


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to every API response."""

    model_config = {"extra": "allow"}


T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    """Generic API response wrapper.

    All successful responses follow ``{"data": T, "meta": {...}}``.
    """

    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    """Structured error payload."""

    code: str
    message: str
    details: dict | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


# ---------------------------------------------------------------------------
# Calendar payloads
# ---------------------------------------------------------------------------

ViewName = Literal["week", "day"]


class CalendarDay(BaseModel):
    """One visible day column."""

    date: str
    all_day: list[CalendarItem] = Field(default_factory=list)
    timed: list[CalendarItem] = Field(default_factory=list)


class CalendarViewResponse(BaseModel):
    view: ViewName
    anchor_date: str
    days: list[CalendarDay]


class GeneratePlanRequest(BaseModel):
    """Generate suggestions for the week (or day) containing ``anchor_date``."""

    anchor_date: str
    view: ViewName = "week"


class SyncOutcomeResponse(BaseModel):
    result: str
    reason: str
    detail: str | None = None
    failure_count: int = 0
    retry_at: int | None = None

    @classmethod
    def from_outcome(cls, outcome: SyncOutcome) -> SyncOutcomeResponse:
        backoff = outcome.backoff
        return cls(
            result=outcome.result.value,
            reason=outcome.reason,
            detail=outcome.detail,
            failure_count=backoff.failure_count if backoff is not None else 0,
            retry_at=backoff.retry_at if backoff is not None else None,
        )


class SyncStatusResponse(BaseModel):
    connected: bool
    email: str | None = None
    last_sync: datetime | None = None

    @classmethod
    def from_status(cls, status: SyncStatus) -> SyncStatusResponse:
        return cls(connected=status.connected, email=status.email, last_sync=status.last_sync)
