"""Calendar read, plan-block lifecycle and sync endpoints."""

from __future__ import annotations

import logging
from datetime import date, datetime

from fastapi import APIRouter, Depends, HTTPException, Query

from weekgrid.api.models import (
    ApiResponse,
    CalendarDay,
    CalendarViewResponse,
    GeneratePlanRequest,
    SyncOutcomeResponse,
    SyncStatusResponse,
    ViewName,
)
from weekgrid.calendar.aggregator import aggregate
from weekgrid.calendar.lifecycle import PlanBlockLifecycle
from weekgrid.calendar.models import CalendarItem, PlanBlock, PlanBlockInput, day_key
from weekgrid.calendar.store import PlanStore
from weekgrid.calendar.sync import SyncOrchestrator
from weekgrid.calendar.workspace import ViewMode, visible_days

router = APIRouter(prefix="/api/calendar", tags=["calendar"])
logger = logging.getLogger(__name__)

_MAX_RANGE_DAYS = 120


def _get_store() -> PlanStore:
    """Dependency stub: overridden at app startup or in tests."""
    raise RuntimeError("PlanStore not initialized")


def _get_lifecycle() -> PlanBlockLifecycle:
    """Dependency stub: overridden at app startup or in tests."""
    raise RuntimeError("PlanBlockLifecycle not initialized")


def _get_sync() -> SyncOrchestrator:
    """Dependency stub: overridden at app startup or in tests."""
    raise RuntimeError("SyncOrchestrator not initialized")


def _parse_anchor(raw: str | None) -> date:
    if raw is None or not raw.strip():
        return datetime.now().date()
    try:
        return date.fromisoformat(raw.strip())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid date: {raw}") from exc


@router.get("/items", response_model=ApiResponse[list[CalendarItem]])
async def list_items(
    start: date = Query(..., description="Inclusive start date"),
    end: date = Query(..., description="Inclusive end date"),
    include_assignments: bool = Query(True),
    include_exams: bool = Query(True),
    store: PlanStore = Depends(_get_store),
) -> ApiResponse[list[CalendarItem]]:
    if end < start:
        raise HTTPException(status_code=400, detail="end must not be before start")
    if (end - start).days > _MAX_RANGE_DAYS:
        raise HTTPException(
            status_code=400, detail=f"Requested range exceeds {_MAX_RANGE_DAYS} days"
        )
    items = await store.get_calendar_items(
        start,
        end,
        include_assignments=include_assignments,
        include_exams=include_exams,
    )
    return ApiResponse[list[CalendarItem]](data=items)


@router.get("/view", response_model=ApiResponse[CalendarViewResponse])
async def get_view(
    anchor: str | None = Query(None, description="Any day inside the wanted range"),
    view: ViewName = Query("week"),
    include_assignments: bool = Query(True),
    include_exams: bool = Query(True),
    store: PlanStore = Depends(_get_store),
) -> ApiResponse[CalendarViewResponse]:
    anchor_date = _parse_anchor(anchor)
    days = visible_days(ViewMode(view), anchor_date)
    items = await store.get_calendar_items(
        days[0],
        days[-1],
        include_assignments=include_assignments,
        include_exams=include_exams,
    )
    aggregated = aggregate(days, items)
    payload = CalendarViewResponse(
        view=view,
        anchor_date=anchor_date.isoformat(),
        days=[
            CalendarDay(
                date=day_key(day),
                all_day=aggregated.all_day_by_day.get(day_key(day), []),
                timed=aggregated.timed_by_day.get(day_key(day), []),
            )
            for day in days
        ],
    )
    return ApiResponse[CalendarViewResponse](data=payload)


@router.post("/plan/generate", response_model=ApiResponse[list[PlanBlock]])
async def generate_plan(
    request: GeneratePlanRequest,
    lifecycle: PlanBlockLifecycle = Depends(_get_lifecycle),
) -> ApiResponse[list[PlanBlock]]:
    days = visible_days(ViewMode(request.view), _parse_anchor(request.anchor_date))
    created = await lifecycle.generate(days)
    return ApiResponse[list[PlanBlock]](data=created, meta={"created": len(created)})


@router.post("/plan-blocks", response_model=ApiResponse[PlanBlock], status_code=201)
async def create_plan_block(
    payload: PlanBlockInput,
    lifecycle: PlanBlockLifecycle = Depends(_get_lifecycle),
) -> ApiResponse[PlanBlock]:
    block = await lifecycle.create(payload)
    return ApiResponse[PlanBlock](data=block)


@router.put("/plan-blocks/{block_id}", response_model=ApiResponse[PlanBlock])
async def update_plan_block(
    block_id: int,
    payload: PlanBlockInput,
    lifecycle: PlanBlockLifecycle = Depends(_get_lifecycle),
) -> ApiResponse[PlanBlock]:
    block = await lifecycle.reschedule(block_id, payload)
    await lifecycle.push_if_connected(block, "update")
    return ApiResponse[PlanBlock](data=block)


@router.post("/plan-blocks/{block_id}/accept", response_model=ApiResponse[PlanBlock])
async def accept_plan_block(
    block_id: int,
    lifecycle: PlanBlockLifecycle = Depends(_get_lifecycle),
) -> ApiResponse[PlanBlock]:
    block = await lifecycle.accept(block_id)
    return ApiResponse[PlanBlock](data=block)


@router.post("/plan-blocks/{block_id}/lock", response_model=ApiResponse[PlanBlock])
async def lock_plan_block(
    block_id: int,
    lifecycle: PlanBlockLifecycle = Depends(_get_lifecycle),
) -> ApiResponse[PlanBlock]:
    block = await lifecycle.lock(block_id)
    return ApiResponse[PlanBlock](data=block)


@router.delete("/plan-blocks/{block_id}", response_model=ApiResponse[dict])
async def delete_plan_block(
    block_id: int,
    lifecycle: PlanBlockLifecycle = Depends(_get_lifecycle),
) -> ApiResponse[dict]:
    await lifecycle.delete(block_id)
    return ApiResponse[dict](data={"id": block_id, "deleted": True})


@router.get("/sync/status", response_model=ApiResponse[SyncStatusResponse])
async def sync_status(
    sync: SyncOrchestrator = Depends(_get_sync),
) -> ApiResponse[SyncStatusResponse]:
    status = await sync.remote.get_sync_status()
    return ApiResponse[SyncStatusResponse](data=SyncStatusResponse.from_status(status))


@router.post("/sync", response_model=ApiResponse[SyncOutcomeResponse])
async def trigger_sync(
    sync: SyncOrchestrator = Depends(_get_sync),
) -> ApiResponse[SyncOutcomeResponse]:
    outcome = await sync.sync_now("manual")
    return ApiResponse[SyncOutcomeResponse](data=SyncOutcomeResponse.from_outcome(outcome))
