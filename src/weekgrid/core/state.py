"""Versioned JSONB key-value store on the ``state`` table.

Each row has a ``version`` that increases on every write.  Read the pair
with :func:`state_get_versioned`, then write back with
:func:`state_compare_and_set` to make read-modify-write cycles safe across
processes.  weekgrid keeps its sync backoff record here.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import asyncpg

logger = logging.getLogger(__name__)

# Version reported for keys that do not exist yet.
ABSENT_VERSION = 0

_SELECT_VALUE = "SELECT value FROM state WHERE key = $1"
_SELECT_VALUE_VERSION = "SELECT value, version FROM state WHERE key = $1"
_SELECT_VERSION = "SELECT version FROM state WHERE key = $1"

_UPSERT = """
INSERT INTO state (key, value, updated_at, version)
VALUES ($1, $2::jsonb, now(), 1)
ON CONFLICT (key) DO UPDATE
    SET value = EXCLUDED.value,
        updated_at = now(),
        version = state.version + 1
RETURNING version
"""

_INSERT_IF_ABSENT = """
INSERT INTO state (key, value, updated_at, version)
VALUES ($1, $2::jsonb, now(), 1)
ON CONFLICT (key) DO NOTHING
RETURNING version
"""

_UPDATE_IF_VERSION = """
UPDATE state
SET value = $3::jsonb,
    updated_at = now(),
    version = version + 1
WHERE key = $1 AND version = $2
RETURNING version
"""


class CASConflictError(Exception):
    """The stored version of *key* differs from the one the writer read.

    ``actual_version`` is ``None`` when the key has been deleted meanwhile.
    """

    def __init__(self, key: str, expected_version: int, actual_version: int | None) -> None:
        self.key = key
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"CAS conflict on key {key!r}: expected version {expected_version}, "
            f"got {actual_version!r}"
        )


def decode_jsonb(val: Any) -> Any:
    """Decode a JSONB column value returned as text.

    Tolerates values that were JSON-encoded twice before storage.
    """
    if not isinstance(val, str):
        return val
    decoded = json.loads(val)
    if not isinstance(decoded, str):
        return decoded
    try:
        inner = json.loads(decoded)
    except ValueError:
        return decoded
    logger.warning("Double-encoded JSONB detected, applying second decode pass")
    return inner


async def state_get(pool: asyncpg.Pool, key: str) -> Any | None:
    value = await pool.fetchval(_SELECT_VALUE, key)
    return None if value is None else decode_jsonb(value)


async def state_get_versioned(pool: asyncpg.Pool, key: str) -> tuple[Any | None, int]:
    """Return ``(value, version)``; missing keys give ``(None, ABSENT_VERSION)``."""
    row = await pool.fetchrow(_SELECT_VALUE_VERSION, key)
    if row is None:
        return None, ABSENT_VERSION
    return decode_jsonb(row["value"]), row["version"]


async def state_set(pool: asyncpg.Pool, key: str, value: Any) -> int:
    """Unconditionally upsert *key*; returns the new version."""
    return await pool.fetchval(_UPSERT, key, json.dumps(value))


async def state_compare_and_set(
    pool: asyncpg.Pool,
    key: str,
    expected_version: int,
    new_value: Any,
) -> int:
    """Write *key* only if its stored version is still *expected_version*.

    ``ABSENT_VERSION`` means the key must not exist yet.  When two writers
    race from the same version exactly one wins; the other gets
    :exc:`CASConflictError`.  Returns the new version.
    """
    payload = json.dumps(new_value)
    if expected_version == ABSENT_VERSION:
        row = await pool.fetchrow(_INSERT_IF_ABSENT, key, payload)
    else:
        row = await pool.fetchrow(_UPDATE_IF_VERSION, key, expected_version, payload)
    if row is not None:
        return row["version"]

    actual = await pool.fetchval(_SELECT_VERSION, key)
    raise CASConflictError(key, expected_version, actual)


async def state_delete(pool: asyncpg.Pool, key: str) -> None:
    """Delete *key*; a missing key is not an error."""
    await pool.execute("DELETE FROM state WHERE key = $1", key)
