"""Exception hierarchy for the calendar engine.

Expected-empty outcomes (no free slot, an empty day) are never errors; they
are represented as ``None`` or empty collections.  Everything below is raised
to the caller.
"""

from __future__ import annotations


class PlanStoreError(RuntimeError):
    """Base error raised by plan-block store operations."""


class PlanBlockNotFoundError(PlanStoreError):
    """Raised when a plan block id does not map to a persisted record."""

    def __init__(self, block_id: int) -> None:
        self.block_id = block_id
        super().__init__(f"Plan block {block_id} not found")


class IllegalTransitionError(PlanStoreError):
    """Raised when a lifecycle action is not permitted from the current status."""

    def __init__(self, *, block_id: int, action: str, current_status: str | None) -> None:
        self.block_id = block_id
        self.action = action
        self.current_status = current_status
        super().__init__(
            f"Cannot {action} plan block {block_id} from status {current_status!r}"
        )


class PlanBlockValidationError(ValueError):
    """Raised when a plan-block payload carries an invalid block type or status."""


class RemoteCalendarError(RuntimeError):
    """Base error raised by remote calendar collaborators."""


class RemoteAuthError(RemoteCalendarError):
    """Raised when OAuth credentials are missing or the token refresh fails."""


class RemoteRequestError(RemoteCalendarError):
    """Raised when a remote calendar API request fails."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Remote calendar request failed ({status_code}): {message}")
