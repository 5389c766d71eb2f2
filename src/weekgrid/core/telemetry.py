"""OpenTelemetry initialization and span helpers for weekgrid."""

from __future__ import annotations

import logging
import os
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

logger = logging.getLogger(__name__)

_TRACER_NAME = "weekgrid"
_ENDPOINT_ENV = "OTEL_EXPORTER_OTLP_ENDPOINT"

# The global provider may only be set once per process.
_tracer_provider_installed: bool = False


def _install_provider(service_name: str, endpoint: str) -> None:
    global _tracer_provider_installed

    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    from opentelemetry.sdk.trace.export import BatchSpanProcessor

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    _tracer_provider_installed = True
    logger.info("Telemetry initialized: endpoint=%s service=%s", endpoint, service_name)


def init_telemetry(service_name: str = "weekgrid") -> trace.Tracer:
    """Return a tracer, exporting over OTLP gRPC when an endpoint is configured.

    Without ``OTEL_EXPORTER_OTLP_ENDPOINT`` the global no-op tracer is used.
    Repeated calls reuse the provider installed by the first one.
    """
    endpoint = os.environ.get(_ENDPOINT_ENV)
    if not endpoint:
        logger.info("%s not set, using no-op tracer", _ENDPOINT_ENV)
    elif not _tracer_provider_installed:
        _install_provider(service_name, endpoint)
    return trace.get_tracer(service_name)


def get_tracer(name: str = _TRACER_NAME) -> trace.Tracer:
    return trace.get_tracer(name)


class traced_span:
    """Context manager that runs a block inside a named span.

    Exceptions are recorded on the span and its status is set to ERROR
    before the exception is re-raised::

        with traced_span("weekgrid.sync", reason="timer") as span:
            span.set_attribute("weekgrid.sync.outcome", "succeeded")
    """

    def __init__(self, name: str, **attributes: Any) -> None:
        self._name = name
        self._attributes = attributes
        self._span: trace.Span | None = None
        self._token: object | None = None

    def __enter__(self) -> trace.Span:
        tracer = get_tracer()
        self._span = tracer.start_span(self._name)
        for key, value in self._attributes.items():
            if value is not None:
                self._span.set_attribute(f"{self._name}.{key}", value)
        self._token = trace.context_api.attach(trace.set_span_in_context(self._span))
        return self._span

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        if self._span is None:
            return
        if exc_val is not None:
            self._span.set_status(trace.StatusCode.ERROR, str(exc_val))
            self._span.record_exception(exc_val)
        self._span.end()
        if self._token is not None:
            trace.context_api.detach(self._token)
