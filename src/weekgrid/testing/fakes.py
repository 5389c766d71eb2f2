"""In-memory doubles for :class:`PlanStore`, :class:`BackoffStore` and :class:`RemoteCalendar`."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import date, datetime
from typing import Any

from weekgrid.calendar.aggregator import expand_calendar_events, plan_block_items
from weekgrid.calendar.backoff import BackoffPolicy, BackoffRecord, BackoffStore
from weekgrid.calendar.errors import IllegalTransitionError, PlanBlockNotFoundError
from weekgrid.calendar.models import (
    ALLOWED_SOURCE_STATUSES,
    PUSHABLE_STATUSES,
    CalendarEventRecord,
    CalendarItem,
    EventLink,
    ItemSource,
    PlanBlock,
    PlanBlockInput,
    PlanBlockStatus,
    SyncStatus,
    week_start,
)
from weekgrid.calendar.remote import RemoteCalendar
from weekgrid.calendar.store import ENTITY_CALENDAR_EVENT, ENTITY_PLAN_BLOCK, PlanStore
from weekgrid.core.state import ABSENT_VERSION, CASConflictError


class InMemoryPlanStore(PlanStore):
    """Dict-backed store with the same legality rules as the PostgreSQL store.

    ``items`` holds fixed non-plan items (course meetings, assignments and so
    on) that are returned alongside the stored plan blocks.
    """

    def __init__(self, items: Sequence[CalendarItem] = ()) -> None:
        self.items: list[CalendarItem] = list(items)
        self.blocks: dict[int, PlanBlock] = {}
        self.events: dict[int, CalendarEventRecord] = {}
        self.links: dict[tuple[str, str, int], EventLink] = {}
        self.settings: dict[str, Any] = {}
        self._next_block_id = 1
        self._next_event_id = 1

    # -- read model --------------------------------------------------------

    async def get_calendar_items(
        self,
        start_date: date,
        end_date: date,
        *,
        include_assignments: bool = True,
        include_exams: bool = True,
    ) -> list[CalendarItem]:
        start_key, end_key = start_date.isoformat(), end_date.isoformat()
        excluded: set[ItemSource] = set()
        if not include_assignments:
            excluded.add(ItemSource.ASSIGNMENT)
        if not include_exams:
            excluded.add(ItemSource.EXAM)

        items = [
            item
            for item in self.items
            if item.source not in excluded and start_key <= item.start_at[:10] <= end_key
        ]
        items.extend(expand_calendar_events(self.events.values(), start_date, end_date))
        blocks = [b for b in self.blocks.values() if start_key <= b.start_at[:10] <= end_key]
        items.extend(plan_block_items(sorted(blocks, key=lambda b: (b.start_at, b.id))))
        items.sort(key=lambda item: item.start_at)
        return items

    # -- plan blocks -------------------------------------------------------

    async def get_plan_block(self, block_id: int) -> PlanBlock:
        try:
            return self.blocks[block_id]
        except KeyError:
            raise PlanBlockNotFoundError(block_id) from None

    async def create_plan_block(self, payload: PlanBlockInput) -> PlanBlock:
        block = PlanBlock(
            id=self._next_block_id,
            created_at=datetime.now(),
            **payload.model_dump(),
        )
        self._next_block_id += 1
        self.blocks[block.id] = block
        return block

    async def update_plan_block(self, block_id: int, payload: PlanBlockInput) -> PlanBlock:
        current = self._check(block_id, "update")
        fields = payload.model_dump(exclude={"status"}, exclude_none=True)
        monday = week_start(date.fromisoformat(payload.start_at[:10]))
        fields["week_start_date"] = monday.isoformat()
        updated = current.model_copy(update=fields)
        self.blocks[block_id] = updated
        return updated

    async def accept_plan_block(self, block_id: int) -> PlanBlock:
        return self._transition(block_id, "accept", PlanBlockStatus.ACCEPTED)

    async def lock_plan_block(self, block_id: int) -> PlanBlock:
        return self._transition(block_id, "lock", PlanBlockStatus.LOCKED)

    async def delete_plan_block(self, block_id: int) -> None:
        if self.blocks.pop(block_id, None) is None:
            raise PlanBlockNotFoundError(block_id)
        for key in [k for k in self.links if k[1] == ENTITY_PLAN_BLOCK and k[2] == block_id]:
            del self.links[key]

    async def bulk_create_plan_blocks(
        self, payloads: Sequence[PlanBlockInput]
    ) -> list[PlanBlock]:
        return [await self.create_plan_block(payload) for payload in payloads]

    async def clear_suggested_blocks(self, week_start_date: date) -> int:
        doomed = [
            block.id
            for block in self.blocks.values()
            if block.week_start_date == week_start_date.isoformat()
            and block.status is PlanBlockStatus.SUGGESTED
        ]
        for block_id in doomed:
            del self.blocks[block_id]
        return len(doomed)

    def _check(self, block_id: int, action: str) -> PlanBlock:
        current = self.blocks.get(block_id)
        if current is None:
            raise PlanBlockNotFoundError(block_id)
        if current.status not in ALLOWED_SOURCE_STATUSES[action]:
            raise IllegalTransitionError(
                block_id=block_id, action=action, current_status=current.status.value
            )
        return current

    def _transition(self, block_id: int, action: str, target: PlanBlockStatus) -> PlanBlock:
        current = self._check(block_id, action)
        updated = current.model_copy(update={"status": target})
        self.blocks[block_id] = updated
        return updated

    # -- remote sync helpers -----------------------------------------------

    async def list_pushable_blocks(self, start_date: date, end_date: date) -> list[PlanBlock]:
        start_key, end_key = start_date.isoformat(), end_date.isoformat()
        return sorted(
            (
                block
                for block in self.blocks.values()
                if block.status in PUSHABLE_STATUSES
                and start_key <= block.start_at[:10] <= end_key
            ),
            key=lambda block: (block.start_at, block.id),
        )

    async def apply_remote_block_update(
        self, block_id: int, *, start_at: str, end_at: str
    ) -> PlanBlock | None:
        current = self.blocks.get(block_id)
        if current is None:
            return None
        updated = current.model_copy(
            update={
                "start_at": start_at,
                "end_at": end_at,
                "week_start_date": week_start(date.fromisoformat(start_at[:10])).isoformat(),
            }
        )
        self.blocks[block_id] = updated
        return updated

    def _find_event_link(
        self, provider: str, remote_calendar_id: str, remote_event_id: str
    ) -> EventLink | None:
        for link in self.links.values():
            if (
                link.provider == provider
                and link.entity_type == ENTITY_CALENDAR_EVENT
                and link.remote_calendar_id == remote_calendar_id
                and link.remote_event_id == remote_event_id
            ):
                return link
        return None

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
        link = self._find_event_link(provider, remote_calendar_id, remote_event_id)
        if link is not None:
            event_id = link.entity_id
        else:
            event_id = self._next_event_id
            self._next_event_id += 1
        self.events[event_id] = CalendarEventRecord(
            id=event_id,
            title=title,
            start_at=start_at,
            end_at=end_at,
            category="busy",
            locked=True,
        )
        self.links[(provider, ENTITY_CALENDAR_EVENT, event_id)] = EventLink(
            provider=provider,
            entity_type=ENTITY_CALENDAR_EVENT,
            entity_id=event_id,
            remote_calendar_id=remote_calendar_id,
            remote_event_id=remote_event_id,
            etag=etag,
        )
        return event_id

    async def delete_external_event(
        self, *, provider: str, remote_calendar_id: str, remote_event_id: str
    ) -> bool:
        link = self._find_event_link(provider, remote_calendar_id, remote_event_id)
        if link is None:
            return False
        del self.links[(provider, ENTITY_CALENDAR_EVENT, link.entity_id)]
        self.events.pop(link.entity_id, None)
        return True

    async def get_event_link(
        self, *, provider: str, entity_type: str, entity_id: int
    ) -> EventLink | None:
        return self.links.get((provider, entity_type, entity_id))

    async def upsert_event_link(self, link: EventLink) -> None:
        self.links[(link.provider, link.entity_type, link.entity_id)] = link

    async def get_setting(self, name: str) -> Any | None:
        return self.settings.get(name)

    async def set_setting(self, name: str, value: Any) -> None:
        self.settings[name] = value


class InMemoryBackoffStore(BackoffStore):
    """Versioned backoff record held in memory.

    ``conflicts`` makes the next N writes fail with :exc:`CASConflictError`
    as if another process had written first.
    """

    def __init__(self, policy: BackoffPolicy | None = None, *, max_retries: int = 5) -> None:
        super().__init__(policy, max_retries=max_retries)
        self.record: BackoffRecord | None = None
        self.version = ABSENT_VERSION
        self.conflicts = 0
        self.writes = 0

    async def load(self) -> tuple[BackoffRecord, int]:
        return (self.record or BackoffRecord()), self.version

    async def compare_and_set(self, record: BackoffRecord, expected_version: int) -> int:
        if self.conflicts > 0:
            self.conflicts -= 1
            raise CASConflictError("backoff", expected_version, self.version)
        if expected_version != self.version:
            raise CASConflictError("backoff", expected_version, self.version)
        self.record = record
        self.version += 1
        self.writes += 1
        return self.version


class StubRemote(RemoteCalendar):
    """Scriptable remote: each ``sync_now`` pops the next result.

    A result may be a bool or any exception instance to raise.  When the
    script runs out, ``default`` is returned.
    """

    def __init__(
        self,
        *,
        connected: bool = True,
        email: str | None = "student@example.com",
        results: Sequence[bool | Exception] = (),
        default: bool = True,
    ) -> None:
        self.connected = connected
        self.email = email
        self.results = list(results)
        self.default = default
        self.calls = 0
        self.last_sync: datetime | None = None
        self.shut_down = False

    async def get_sync_status(self) -> SyncStatus:
        return SyncStatus(
            connected=self.connected,
            email=self.email if self.connected else None,
            last_sync=self.last_sync,
        )

    async def sync_now(self) -> bool:
        self.calls += 1
        result = self.results.pop(0) if self.results else self.default
        if isinstance(result, Exception):
            raise result
        if result:
            self.last_sync = datetime.now()
        return result

    async def shutdown(self) -> None:
        self.shut_down = True


class FakeClock:
    """Manually advanced epoch-millisecond clock."""

    def __init__(self, start_ms: int = 1_000_000) -> None:
        self.now = start_ms

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


def make_item(
    item_id: str,
    start_at: str,
    end_at: str,
    *,
    source: ItemSource = ItemSource.CALENDAR_EVENT,
    all_day: bool = False,
    title: str | None = None,
    **extra: Any,
) -> CalendarItem:
    """Build a calendar item with sensible defaults for tests."""
    return CalendarItem(
        id=item_id,
        source=source,
        title=title or item_id,
        start_at=start_at,
        end_at=end_at,
        all_day=all_day,
        **extra,
    )
