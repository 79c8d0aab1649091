"""Correlation context and span export for the bridge.

Every inbound request runs inside a :func:`correlation_scope`; outbound
backend calls forward the identifier through :func:`correlation_headers`
and record it on their spans.
"""
from __future__ import annotations

import contextlib
from contextvars import ContextVar
from typing import Dict, Iterator, Optional

from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from structlog.contextvars import bound_contextvars

CORRELATION_HEADER = "X-Correlation-ID"
TRACES_PATH = "/v1/traces"

_correlation_id: ContextVar[Optional[str]] = ContextVar("ollama_bridge_correlation_id", default=None)
_instrumented_apps: set = set()


def current_correlation_id() -> Optional[str]:
    return _correlation_id.get()


@contextlib.contextmanager
def correlation_scope(correlation_id: str) -> Iterator[str]:
    """Bind ``correlation_id`` to the current task and to structlog's context."""

    token = _correlation_id.set(correlation_id)
    try:
        with bound_contextvars(correlation_id=correlation_id):
            yield correlation_id
    finally:
        _correlation_id.reset(token)


def correlation_headers() -> Dict[str, str]:
    correlation_id = current_correlation_id()
    return {CORRELATION_HEADER: correlation_id} if correlation_id else {}


def configure_tracing(
    app: FastAPI,
    service_name: str,
    *,
    endpoint: Optional[str],
    disabled: bool = False,
) -> bool:
    """Export spans of ``app`` to the OTLP collector at ``endpoint``.

    Nothing is installed when no endpoint is given or tracing is disabled.
    Exporter headers come from ``OTEL_EXPORTER_OTLP_HEADERS``, which the
    exporter reads itself. Returns whether instrumentation was installed.
    """

    if disabled or not endpoint or id(app) in _instrumented_apps:
        return False

    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint.rstrip("/") + TRACES_PATH))
    )
    trace.set_tracer_provider(provider)
    FastAPIInstrumentor().instrument_app(app, tracer_provider=provider)
    _instrumented_apps.add(id(app))
    return True
