"""Tests for weekgrid.core.state against a mocked asyncpg pool."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest

from weekgrid.core.state import (
    ABSENT_VERSION,
    CASConflictError,
    decode_jsonb,
    state_compare_and_set,
    state_delete,
    state_get,
    state_get_versioned,
    state_set,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def pool() -> AsyncMock:
    return AsyncMock()


class TestDecodeJsonb:
    def test_passthrough_for_decoded_values(self):
        assert decode_jsonb({"a": 1}) == {"a": 1}
        assert decode_jsonb(None) is None

    def test_decodes_json_text(self):
        assert decode_jsonb('{"failure_count": 2}') == {"failure_count": 2}

    def test_double_encoded_value(self):
        assert decode_jsonb(json.dumps(json.dumps({"a": 1}))) == {"a": 1}

    def test_plain_json_string_survives(self):
        assert decode_jsonb('"primary"') == "primary"


class TestGetSet:
    async def test_get_missing_key(self, pool):
        pool.fetchval.return_value = None
        assert await state_get(pool, "missing") is None

    async def test_get_decodes_value(self, pool):
        pool.fetchval.return_value = '{"x": 1}'
        assert await state_get(pool, "k") == {"x": 1}

    async def test_versioned_missing_key_reports_absent(self, pool):
        pool.fetchrow.return_value = None
        assert await state_get_versioned(pool, "k") == (None, ABSENT_VERSION)

    async def test_versioned_returns_version(self, pool):
        pool.fetchrow.return_value = {"value": "[1, 2]", "version": 4}
        assert await state_get_versioned(pool, "k") == ([1, 2], 4)

    async def test_set_serializes_and_returns_version(self, pool):
        pool.fetchval.return_value = 3

        version = await state_set(pool, "k", {"when": "2026-03-02"})

        assert version == 3
        assert json.loads(pool.fetchval.call_args.args[2]) == {"when": "2026-03-02"}

    async def test_delete(self, pool):
        await state_delete(pool, "k")
        assert pool.execute.call_args.args[1] == "k"


class TestCompareAndSet:
    async def test_absent_version_inserts(self, pool):
        pool.fetchrow.return_value = {"version": 1}

        assert await state_compare_and_set(pool, "k", ABSENT_VERSION, {"v": 1}) == 1
        assert "ON CONFLICT (key) DO NOTHING" in pool.fetchrow.call_args.args[0]

    async def test_matching_version_updates(self, pool):
        pool.fetchrow.return_value = {"version": 6}

        assert await state_compare_and_set(pool, "k", 5, {"v": 2}) == 6
        assert pool.fetchrow.call_args.args[2] == 5

    async def test_stale_version_raises_with_actual(self, pool):
        pool.fetchrow.return_value = None
        pool.fetchval.return_value = 9

        with pytest.raises(CASConflictError) as exc_info:
            await state_compare_and_set(pool, "k", 5, {"v": 2})

        assert exc_info.value.expected_version == 5
        assert exc_info.value.actual_version == 9

    async def test_concurrent_insert_raises(self, pool):
        pool.fetchrow.return_value = None
        pool.fetchval.return_value = 1

        with pytest.raises(CASConflictError):
            await state_compare_and_set(pool, "k", ABSENT_VERSION, {"v": 1})
