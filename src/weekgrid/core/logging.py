"""Structured logging for weekgrid.

Every module logs through ``logging.getLogger(__name__)``; structlog's
``ProcessorFormatter`` renders those records, so call sites stay plain stdlib.

Formats: ``text`` (coloured console, the default) and ``json`` (one JSON
object per line).  Each record carries the running component (``api``,
``cli``) plus the trace and span ids of the active OTel span.

With ``log_root`` set, JSON copies are also written to::

    {log_root}/weekgrid/weekgrid.log   application records
    {log_root}/http/weekgrid.log       uvicorn, httpx and asyncpg records
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

VALID_FORMATS = ("text", "json")

_component_context: ContextVar[str | None] = ContextVar("weekgrid_component", default=None)

# Transport loggers: capped at WARNING on the console, mirrored to http/ on disk.
_NOISE_LOGGERS = (
    "uvicorn.access",
    "uvicorn.error",
    "httpx",
    "httpcore",
    "asyncpg",
)

_ZERO_TRACE_ID = "0" * 32
_ZERO_SPAN_ID = "0" * 16


def set_component_context(name: str) -> None:
    _component_context.set(name)


def get_component_context() -> str | None:
    return _component_context.get()


def add_component_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """structlog processor: stamp the current component."""
    event_dict["component"] = _component_context.get()
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """structlog processor: stamp trace/span ids, zeros outside a span."""
    ctx = trace.get_current_span().get_span_context()
    if ctx is not None and ctx.trace_id:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    else:
        event_dict["trace_id"] = _ZERO_TRACE_ID
        event_dict["span_id"] = _ZERO_SPAN_ID
    return event_dict


def _pre_chain(time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_component_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(
    renderer: structlog.types.Processor, pre_chain: list[structlog.types.Processor]
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )


def _json_file_handler(path: Path) -> logging.Handler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), _pre_chain("iso")))
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
    component: str | None = None,
) -> None:
    """(Re)configure process-wide logging.

    Calling it again replaces the root handlers instead of stacking them.
    An unknown *level* falls back to INFO.
    """
    if component:
        set_component_context(component)

    if fmt == "json":
        pre_chain = _pre_chain("iso")
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        pre_chain = _pre_chain("%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(renderer, pre_chain))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is not None:
        log_root = Path(log_root)
        root.addHandler(_json_file_handler(log_root / "weekgrid" / "weekgrid.log"))
        http_handler = _json_file_handler(log_root / "http" / "weekgrid.log")
        for name in _NOISE_LOGGERS:
            noisy = logging.getLogger(name)
            noisy.handlers.clear()
            noisy.addHandler(http_handler)

    # Direct structlog.get_logger() users share the same chain.
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
