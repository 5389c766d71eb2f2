"""Test support utilities for the weekgrid package.

In-memory implementations of the storage and remote seams so the calendar
engine can be exercised without PostgreSQL or a Google account.  Nothing here
depends on pytest.
"""

from __future__ import annotations

from weekgrid.testing.fakes import (
    FakeClock,
    InMemoryBackoffStore,
    InMemoryPlanStore,
    StubRemote,
    make_item,
)

__all__ = [
    "FakeClock",
    "InMemoryBackoffStore",
    "InMemoryPlanStore",
    "StubRemote",
    "make_item",
]
