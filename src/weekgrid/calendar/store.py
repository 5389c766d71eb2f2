"""Plan-block persistence and calendar item retrieval.

:class:`PlanStore` is the collaborator seam used by the lifecycle controller,
the sync layer and the HTTP API.  :class:`PostgresPlanStore` implements it on
an asyncpg pool.  Lifecycle legality is enforced atomically in SQL: a status
transition only updates rows whose current status is an allowed source.
"""

from __future__ import annotations

import abc
import json
import logging
from collections.abc import Sequence
from datetime import date
from typing import Any

import asyncpg

from weekgrid.calendar.aggregator import collect_calendar_items
from weekgrid.calendar.errors import IllegalTransitionError, PlanBlockNotFoundError
from weekgrid.calendar.models import (
    ALLOWED_SOURCE_STATUSES,
    PUSHABLE_STATUSES,
    Assignment,
    CalendarEventRecord,
    CalendarItem,
    CourseMeeting,
    EventLink,
    Exam,
    PlanBlock,
    PlanBlockInput,
    PlanBlockStatus,
    week_start,
)
from weekgrid.core.state import decode_jsonb, state_get, state_set

logger = logging.getLogger(__name__)

SETTINGS_KEY_PREFIX = "weekgrid::settings::"
ENTITY_CALENDAR_EVENT = "calendar_event"
ENTITY_PLAN_BLOCK = "plan_block"


class PlanStore(abc.ABC):
    """Storage abstraction for calendar items and plan blocks."""

    # -- read model --------------------------------------------------------

    @abc.abstractmethod
    async def get_calendar_items(
        self,
        start_date: date,
        end_date: date,
        *,
        include_assignments: bool = True,
        include_exams: bool = True,
    ) -> list[CalendarItem]:
        """Return every item whose start date falls in ``[start_date, end_date]``."""
        ...

    # -- plan blocks -------------------------------------------------------

    @abc.abstractmethod
    async def get_plan_block(self, block_id: int) -> PlanBlock:
        """Return one block or raise :exc:`PlanBlockNotFoundError`."""
        ...

    @abc.abstractmethod
    async def create_plan_block(self, payload: PlanBlockInput) -> PlanBlock: ...

    @abc.abstractmethod
    async def update_plan_block(self, block_id: int, payload: PlanBlockInput) -> PlanBlock:
        """Rewrite the time and descriptive fields of an editable block.

        The stored status is never changed by an update.  Optional fields
        left as ``None`` keep their stored value.
        """
        ...

    @abc.abstractmethod
    async def accept_plan_block(self, block_id: int) -> PlanBlock: ...

    @abc.abstractmethod
    async def lock_plan_block(self, block_id: int) -> PlanBlock: ...

    @abc.abstractmethod
    async def delete_plan_block(self, block_id: int) -> None: ...

    @abc.abstractmethod
    async def bulk_create_plan_blocks(
        self, payloads: Sequence[PlanBlockInput]
    ) -> list[PlanBlock]: ...

    @abc.abstractmethod
    async def clear_suggested_blocks(self, week_start_date: date) -> int:
        """Delete the ``suggested`` blocks of one week; return how many went."""
        ...

    # -- remote sync helpers -----------------------------------------------

    @abc.abstractmethod
    async def list_pushable_blocks(self, start_date: date, end_date: date) -> list[PlanBlock]:
        """Return ``accepted``/``locked`` blocks starting in the range."""
        ...

    @abc.abstractmethod
    async def apply_remote_block_update(
        self, block_id: int, *, start_at: str, end_at: str
    ) -> PlanBlock | None:
        """Move a block to remote-edited times; ``None`` if the block is gone."""
        ...

    @abc.abstractmethod
    async def upsert_external_event(
        self,
        *,
        provider: str,
        remote_calendar_id: str,
        remote_event_id: str,
        title: str,
        start_at: str,
        end_at: str,
        etag: str | None = None,
    ) -> int:
        """Mirror one remote event as a locked busy ``calendar_events`` row."""
        ...

    @abc.abstractmethod
    async def delete_external_event(
        self, *, provider: str, remote_calendar_id: str, remote_event_id: str
    ) -> bool: ...

    @abc.abstractmethod
    async def get_event_link(
        self, *, provider: str, entity_type: str, entity_id: int
    ) -> EventLink | None: ...

    @abc.abstractmethod
    async def upsert_event_link(self, link: EventLink) -> None: ...

    @abc.abstractmethod
    async def get_setting(self, name: str) -> Any | None: ...

    @abc.abstractmethod
    async def set_setting(self, name: str, value: Any) -> None: ...


def _plan_block_from_row(row: Any) -> PlanBlock:
    data = dict(row)
    data["rationale"] = decode_jsonb(data.get("rationale"))
    return PlanBlock(**data)


def _rationale_json(payload: PlanBlockInput) -> str | None:
    if payload.rationale is None:
        return None
    return json.dumps(payload.rationale)


_INSERT_BLOCK_SQL = """
    INSERT INTO week_plan_blocks (
        week_start_date, start_at, end_at, block_type, title, status,
        course_id, weekly_task_id, rationale
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9::jsonb)
    RETURNING *
"""


def _insert_args(payload: PlanBlockInput) -> tuple[Any, ...]:
    return (
        payload.week_start_date,
        payload.start_at,
        payload.end_at,
        payload.block_type.value,
        payload.title,
        payload.status.value,
        payload.course_id,
        payload.weekly_task_id,
        _rationale_json(payload),
    )


class PostgresPlanStore(PlanStore):
    """:class:`PlanStore` backed by the weekgrid PostgreSQL schema."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    # -- read model --------------------------------------------------------

    async def get_calendar_items(
        self,
        start_date: date,
        end_date: date,
        *,
        include_assignments: bool = True,
        include_exams: bool = True,
    ) -> list[CalendarItem]:
        start_key = start_date.isoformat()
        end_key = end_date.isoformat()

        meeting_rows = await self._pool.fetch(
            """
            SELECT cm.id, cm.course_id, cm.day_of_week, cm.start_time, cm.end_time,
                   cm.location, cm.meeting_type, c.name AS course_name, c.color
            FROM course_meetings cm
            JOIN courses c ON c.id = cm.course_id
            ORDER BY cm.id
            """
        )
        event_rows = await self._pool.fetch(
            """
            SELECT id, title, start_at, end_at, rrule, start_time, end_time, category, locked
            FROM calendar_events
            WHERE rrule IS NOT NULL
               OR substr(start_at, 1, 10) BETWEEN $1 AND $2
            ORDER BY id
            """,
            start_key,
            end_key,
        )
        block_rows = await self._pool.fetch(
            """
            SELECT * FROM week_plan_blocks
            WHERE substr(start_at, 1, 10) BETWEEN $1 AND $2
            ORDER BY start_at, id
            """,
            start_key,
            end_key,
        )
        color_rows = await self._pool.fetch("SELECT id, color FROM courses")

        assignment_rows: list[Any] = []
        if include_assignments:
            assignment_rows = await self._pool.fetch(
                """
                SELECT a.id, a.course_id, a.title, a.due_date, a.is_completed, c.color
                FROM assignments a
                JOIN courses c ON c.id = a.course_id
                WHERE a.is_completed = false
                  AND substr(a.due_date, 1, 10) BETWEEN $1 AND $2
                ORDER BY a.id
                """,
                start_key,
                end_key,
            )
        exam_rows: list[Any] = []
        if include_exams:
            exam_rows = await self._pool.fetch(
                """
                SELECT e.id, e.course_id, e.title, e.exam_date, e.duration_minutes, c.color
                FROM exams e
                JOIN courses c ON c.id = e.course_id
                WHERE substr(e.exam_date, 1, 10) BETWEEN $1 AND $2
                ORDER BY e.id
                """,
                start_key,
                end_key,
            )

        return collect_calendar_items(
            start_date=start_date,
            end_date=end_date,
            meetings=[CourseMeeting(**dict(row)) for row in meeting_rows],
            events=[CalendarEventRecord(**dict(row)) for row in event_rows],
            blocks=[_plan_block_from_row(row) for row in block_rows],
            assignments=[Assignment(**dict(row)) for row in assignment_rows],
            exams=[Exam(**dict(row)) for row in exam_rows],
            include_assignments=include_assignments,
            include_exams=include_exams,
            course_colors={row["id"]: row["color"] for row in color_rows if row["color"]},
        )

    # -- plan blocks -------------------------------------------------------

    async def get_plan_block(self, block_id: int) -> PlanBlock:
        row = await self._pool.fetchrow("SELECT * FROM week_plan_blocks WHERE id = $1", block_id)
        if row is None:
            raise PlanBlockNotFoundError(block_id)
        return _plan_block_from_row(row)

    async def create_plan_block(self, payload: PlanBlockInput) -> PlanBlock:
        row = await self._pool.fetchrow(_INSERT_BLOCK_SQL, *_insert_args(payload))
        block = _plan_block_from_row(row)
        logger.info("Created plan block %d (%s, %s)", block.id, block.block_type, block.status)
        return block

    async def update_plan_block(self, block_id: int, payload: PlanBlockInput) -> PlanBlock:
        row = await self._pool.fetchrow(
            """
            UPDATE week_plan_blocks
            SET week_start_date = $2,
                start_at = $3,
                end_at = $4,
                block_type = $5,
                title = COALESCE($6, title),
                course_id = COALESCE($7, course_id),
                weekly_task_id = COALESCE($8, weekly_task_id),
                rationale = COALESCE($9::jsonb, rationale)
            WHERE id = $1 AND status = ANY($10::text[])
            RETURNING *
            """,
            block_id,
            week_start(date.fromisoformat(payload.start_at[:10])).isoformat(),
            payload.start_at,
            payload.end_at,
            payload.block_type.value,
            payload.title,
            payload.course_id,
            payload.weekly_task_id,
            _rationale_json(payload),
            _allowed("update"),
        )
        if row is None:
            await self._raise_missing_or_illegal(block_id, "update")
        return _plan_block_from_row(row)

    async def accept_plan_block(self, block_id: int) -> PlanBlock:
        return await self._transition(block_id, "accept", PlanBlockStatus.ACCEPTED)

    async def lock_plan_block(self, block_id: int) -> PlanBlock:
        return await self._transition(block_id, "lock", PlanBlockStatus.LOCKED)

    async def delete_plan_block(self, block_id: int) -> None:
        async with self._pool.acquire() as conn, conn.transaction():
            deleted = await conn.fetchval(
                "DELETE FROM week_plan_blocks WHERE id = $1 RETURNING id", block_id
            )
            if deleted is None:
                raise PlanBlockNotFoundError(block_id)
            await conn.execute(
                "DELETE FROM remote_event_links WHERE entity_type = $1 AND entity_id = $2",
                ENTITY_PLAN_BLOCK,
                block_id,
            )
        logger.info("Deleted plan block %d", block_id)

    async def bulk_create_plan_blocks(
        self, payloads: Sequence[PlanBlockInput]
    ) -> list[PlanBlock]:
        if not payloads:
            return []
        blocks: list[PlanBlock] = []
        async with self._pool.acquire() as conn, conn.transaction():
            for payload in payloads:
                row = await conn.fetchrow(_INSERT_BLOCK_SQL, *_insert_args(payload))
                blocks.append(_plan_block_from_row(row))
        logger.info("Created %d plan block(s)", len(blocks))
        return blocks

    async def clear_suggested_blocks(self, week_start_date: date) -> int:
        rows = await self._pool.fetch(
            """
            DELETE FROM week_plan_blocks
            WHERE week_start_date = $1 AND status = $2
            RETURNING id
            """,
            week_start_date.isoformat(),
            PlanBlockStatus.SUGGESTED.value,
        )
        return len(rows)

    async def _transition(
        self, block_id: int, action: str, target: PlanBlockStatus
    ) -> PlanBlock:
        row = await self._pool.fetchrow(
            """
            UPDATE week_plan_blocks
            SET status = $2
            WHERE id = $1 AND status = ANY($3::text[])
            RETURNING *
            """,
            block_id,
            target.value,
            _allowed(action),
        )
        if row is None:
            await self._raise_missing_or_illegal(block_id, action)
        logger.info("Plan block %d -> %s", block_id, target)
        return _plan_block_from_row(row)

    async def _raise_missing_or_illegal(self, block_id: int, action: str) -> None:
        current = await self._pool.fetchval(
            "SELECT status FROM week_plan_blocks WHERE id = $1", block_id
        )
        if current is None:
            raise PlanBlockNotFoundError(block_id)
        raise IllegalTransitionError(block_id=block_id, action=action, current_status=current)

    # -- remote sync helpers -----------------------------------------------

    async def list_pushable_blocks(self, start_date: date, end_date: date) -> list[PlanBlock]:
        rows = await self._pool.fetch(
            """
            SELECT * FROM week_plan_blocks
            WHERE status = ANY($3::text[])
              AND substr(start_at, 1, 10) BETWEEN $1 AND $2
            ORDER BY start_at, id
            """,
            start_date.isoformat(),
            end_date.isoformat(),
            sorted(status.value for status in PUSHABLE_STATUSES),
        )
        return [_plan_block_from_row(row) for row in rows]

    async def apply_remote_block_update(
        self, block_id: int, *, start_at: str, end_at: str
    ) -> PlanBlock | None:
        row = await self._pool.fetchrow(
            """
            UPDATE week_plan_blocks
            SET start_at = $2, end_at = $3, week_start_date = $4
            WHERE id = $1
            RETURNING *
            """,
            block_id,
            start_at,
            end_at,
            week_start(date.fromisoformat(start_at[:10])).isoformat(),
        )
        if row is None:
            return None
        return _plan_block_from_row(row)

    async def upsert_external_event(
        self,
        *,
        provider: str,
        remote_calendar_id: str,
        remote_event_id: str,
        title: str,
        start_at: str,
        end_at: str,
        etag: str | None = None,
    ) -> int:
        async with self._pool.acquire() as conn, conn.transaction():
            event_id = await conn.fetchval(
                """
                SELECT entity_id FROM remote_event_links
                WHERE provider = $1 AND remote_calendar_id = $2 AND remote_event_id = $3
                  AND entity_type = $4
                """,
                provider,
                remote_calendar_id,
                remote_event_id,
                ENTITY_CALENDAR_EVENT,
            )
            if event_id is not None:
                await conn.execute(
                    """
                    UPDATE calendar_events
                    SET title = $2, start_at = $3, end_at = $4
                    WHERE id = $1
                    """,
                    event_id,
                    title,
                    start_at,
                    end_at,
                )
                await conn.execute(
                    """
                    UPDATE remote_event_links SET etag = $2, updated_at = now()
                    WHERE entity_type = $3 AND entity_id = $1
                    """,
                    event_id,
                    etag,
                    ENTITY_CALENDAR_EVENT,
                )
                return event_id

            event_id = await conn.fetchval(
                """
                INSERT INTO calendar_events (title, start_at, end_at, category, locked)
                VALUES ($1, $2, $3, 'busy', true)
                RETURNING id
                """,
                title,
                start_at,
                end_at,
            )
            await conn.execute(
                """
                INSERT INTO remote_event_links (
                    provider, entity_type, entity_id, remote_calendar_id, remote_event_id, etag
                )
                VALUES ($1, $2, $3, $4, $5, $6)
                """,
                provider,
                ENTITY_CALENDAR_EVENT,
                event_id,
                remote_calendar_id,
                remote_event_id,
                etag,
            )
            return event_id

    async def delete_external_event(
        self, *, provider: str, remote_calendar_id: str, remote_event_id: str
    ) -> bool:
        async with self._pool.acquire() as conn, conn.transaction():
            event_id = await conn.fetchval(
                """
                DELETE FROM remote_event_links
                WHERE provider = $1 AND remote_calendar_id = $2 AND remote_event_id = $3
                  AND entity_type = $4
                RETURNING entity_id
                """,
                provider,
                remote_calendar_id,
                remote_event_id,
                ENTITY_CALENDAR_EVENT,
            )
            if event_id is None:
                return False
            await conn.execute("DELETE FROM calendar_events WHERE id = $1", event_id)
            return True

    async def get_event_link(
        self, *, provider: str, entity_type: str, entity_id: int
    ) -> EventLink | None:
        row = await self._pool.fetchrow(
            """
            SELECT provider, entity_type, entity_id, remote_calendar_id, remote_event_id, etag
            FROM remote_event_links
            WHERE provider = $1 AND entity_type = $2 AND entity_id = $3
            """,
            provider,
            entity_type,
            entity_id,
        )
        if row is None:
            return None
        return EventLink(**dict(row))

    async def upsert_event_link(self, link: EventLink) -> None:
        await self._pool.execute(
            """
            INSERT INTO remote_event_links (
                provider, entity_type, entity_id, remote_calendar_id, remote_event_id, etag
            )
            VALUES ($1, $2, $3, $4, $5, $6)
            ON CONFLICT (provider, entity_type, entity_id) DO UPDATE
                SET remote_calendar_id = EXCLUDED.remote_calendar_id,
                    remote_event_id = EXCLUDED.remote_event_id,
                    etag = EXCLUDED.etag,
                    updated_at = now()
            """,
            link.provider,
            link.entity_type,
            link.entity_id,
            link.remote_calendar_id,
            link.remote_event_id,
            link.etag,
        )

    async def get_setting(self, name: str) -> Any | None:
        return await state_get(self._pool, f"{SETTINGS_KEY_PREFIX}{name}")

    async def set_setting(self, name: str, value: Any) -> None:
        await state_set(self._pool, f"{SETTINGS_KEY_PREFIX}{name}", value)


def _allowed(action: str) -> list[str]:
    return sorted(status.value for status in ALLOWED_SOURCE_STATUSES[action])
