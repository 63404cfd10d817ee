"""OpenTelemetry spans for pipeline runs, exported over OTLP/HTTP when enabled."""

from __future__ import annotations

import functools
import inspect
from typing import Optional

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

DEFAULT_ENDPOINT = "http://localhost:4318/v1/traces"
SERVICE_NAME = "enhance-video"

tracer: Optional[trace.Tracer] = None


def init_tracing(endpoint: str = DEFAULT_ENDPOINT) -> None:
    """Configure the OpenTelemetry tracer to export spans to an OTLP endpoint."""
    global tracer
    if tracer is not None:
        return

    resource = Resource.create({"service.name": SERVICE_NAME})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    tracer = trace.get_tracer(__name__)


def is_enabled() -> bool:
    return tracer is not None


def traced(func):
    """Wrap a sync or async callable in a span once tracing has been initialised."""
    if inspect.iscoroutinefunction(func):

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            if tracer is None:
                return await func(*args, **kwargs)
            with tracer.start_as_current_span(func.__qualname__):
                return await func(*args, **kwargs)

        return async_wrapper

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        if tracer is None:
            return func(*args, **kwargs)
        with tracer.start_as_current_span(func.__qualname__):
            return func(*args, **kwargs)

    return wrapper
