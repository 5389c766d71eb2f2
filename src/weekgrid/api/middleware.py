"""API error handling middleware: consistent error responses.

Registers FastAPI exception handlers that convert domain exceptions into
standardised ``{"error": {"code": "...", "message": "..."}}`` JSON responses.

Status code mapping:
- ``PlanBlockNotFoundError`` -> 404 Not Found
- ``IllegalTransitionError`` -> 409 Conflict
- ``ValueError`` (including ``PlanBlockValidationError``) -> 400 Bad Request
- Any other ``Exception`` -> 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from weekgrid.api.models import ErrorDetail, ErrorResponse
from weekgrid.calendar.errors import IllegalTransitionError, PlanBlockNotFoundError

logger = logging.getLogger(__name__)


async def _handle_not_found(
    request: Request,
    exc: PlanBlockNotFoundError,
) -> JSONResponse:
    """Return 404 when a plan block id is unknown."""
    logger.info("Plan block not found: %s", exc.block_id)
    body = ErrorResponse(
        error=ErrorDetail(
            code="PLAN_BLOCK_NOT_FOUND",
            message=str(exc),
            details={"block_id": exc.block_id},
        )
    )
    return JSONResponse(status_code=404, content=body.model_dump())


async def _handle_illegal_transition(
    request: Request,
    exc: IllegalTransitionError,
) -> JSONResponse:
    """Return 409 when a lifecycle action is not legal from the current status."""
    logger.info("Illegal transition: %s", exc)
    body = ErrorResponse(
        error=ErrorDetail(
            code="ILLEGAL_TRANSITION",
            message=str(exc),
            details={
                "block_id": exc.block_id,
                "action": exc.action,
                "current_status": exc.current_status,
            },
        )
    )
    return JSONResponse(status_code=409, content=body.model_dump())


async def _handle_value_error(
    request: Request,
    exc: ValueError,
) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    body = ErrorResponse(
        error=ErrorDetail(
            code="VALIDATION_ERROR",
            message=str(exc),
        )
    )
    return JSONResponse(status_code=400, content=body.model_dump())


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500.

    Sits above the Starlette exception handler layer so that exceptions not
    caught by ``add_exception_handler`` still produce the standard envelope.
    """

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            body = ErrorResponse(
                error=ErrorDetail(
                    code="INTERNAL_ERROR",
                    message="Internal server error",
                )
            )
            return JSONResponse(status_code=500, content=body.model_dump())


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application."""
    app.add_exception_handler(PlanBlockNotFoundError, _handle_not_found)  # type: ignore[arg-type]
    app.add_exception_handler(
        IllegalTransitionError,
        _handle_illegal_transition,  # type: ignore[arg-type]
    )
    app.add_exception_handler(ValueError, _handle_value_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
