"""weekgrid baseline

Revision ID: core_001
Revises:
Create Date: 2026-10-18 00:00:00.000000

Creates the academic source tables, the plan-block table, the remote event
link table and the versioned key-value state store.
"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS courses (
            id BIGSERIAL PRIMARY KEY,
            name TEXT NOT NULL,
            code TEXT,
            color TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS course_meetings (
            id BIGSERIAL PRIMARY KEY,
            course_id BIGINT NOT NULL REFERENCES courses(id) ON DELETE CASCADE,
            day_of_week SMALLINT NOT NULL CHECK (day_of_week BETWEEN 0 AND 6),
            start_time TEXT NOT NULL,
            end_time TEXT NOT NULL,
            location TEXT,
            meeting_type TEXT
        )
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS calendar_events (
            id BIGSERIAL PRIMARY KEY,
            title TEXT NOT NULL,
            start_at TEXT,
            end_at TEXT,
            rrule TEXT,
            start_time TEXT,
            end_time TEXT,
            category TEXT NOT NULL DEFAULT 'busy',
            locked BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS assignments (
            id BIGSERIAL PRIMARY KEY,
            course_id BIGINT NOT NULL REFERENCES courses(id) ON DELETE CASCADE,
            title TEXT NOT NULL,
            due_date TEXT,
            is_completed BOOLEAN NOT NULL DEFAULT false
        )
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS exams (
            id BIGSERIAL PRIMARY KEY,
            course_id BIGINT NOT NULL REFERENCES courses(id) ON DELETE CASCADE,
            title TEXT NOT NULL,
            exam_date TEXT,
            duration_minutes INTEGER
        )
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS week_plan_blocks (
            id BIGSERIAL PRIMARY KEY,
            week_start_date TEXT NOT NULL,
            start_at TEXT NOT NULL,
            end_at TEXT NOT NULL,
            block_type TEXT NOT NULL CHECK (
                block_type IN ('study', 'assignment', 'exam_prep', 'break', 'weekly_task')
            ),
            title TEXT,
            status TEXT NOT NULL DEFAULT 'suggested' CHECK (
                status IN ('suggested', 'accepted', 'locked')
            ),
            course_id BIGINT REFERENCES courses(id) ON DELETE SET NULL,
            weekly_task_id BIGINT,
            rationale JSONB,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_week_plan_blocks_week_status
        ON week_plan_blocks (week_start_date, status)
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS remote_event_links (
            id BIGSERIAL PRIMARY KEY,
            provider TEXT NOT NULL,
            entity_type TEXT NOT NULL CHECK (entity_type IN ('calendar_event', 'plan_block')),
            entity_id BIGINT NOT NULL,
            remote_calendar_id TEXT NOT NULL,
            remote_event_id TEXT NOT NULL,
            etag TEXT,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            UNIQUE (provider, remote_calendar_id, remote_event_id),
            UNIQUE (provider, entity_type, entity_id)
        )
        """
    )
    op.execute(
        """
        CREATE TABLE IF NOT EXISTS state (
            key TEXT PRIMARY KEY,
            value JSONB NOT NULL DEFAULT '{}'::jsonb,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            version INTEGER NOT NULL DEFAULT 1
        )
        """
    )


def downgrade() -> None:
    for table in (
        "state",
        "remote_event_links",
        "week_plan_blocks",
        "exams",
        "assignments",
        "calendar_events",
        "course_meetings",
        "courses",
    ):
        op.execute(f"DROP TABLE IF EXISTS {table}")
