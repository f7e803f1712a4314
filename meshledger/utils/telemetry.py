"""OpenTelemetry tracing for the ledger.

Spans come from one module-level tracer. Services annotate whatever span
is current; the pinger opens its own span per echo request.
"""

import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, BatchSpanProcessor
from opentelemetry.sdk.resources import Resource, SERVICE_NAME, SERVICE_VERSION
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor

from meshledger.config import settings
from meshledger import __version__

logger = logging.getLogger(__name__)

_tracer: Optional[trace.Tracer] = None


def _resource() -> Resource:
    return Resource(
        attributes={
            SERVICE_NAME: settings.OTEL_SERVICE_NAME,
            SERVICE_VERSION: __version__,
            "environment": settings.ENVIRONMENT,
        }
    )


def setup_telemetry() -> None:
    """Install the tracer provider.

    Call once at startup, before the first span is opened. Spans are
    sampled at OTEL_TRACE_SAMPLE_RATE and printed only when
    OTEL_EXPORT_CONSOLE is set.
    """
    global _tracer

    provider = TracerProvider(
        resource=_resource(),
        sampler=TraceIdRatioBased(settings.OTEL_TRACE_SAMPLE_RATE),
    )
    if settings.OTEL_EXPORT_CONSOLE:
        provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    trace.set_tracer_provider(provider)
    _tracer = trace.get_tracer(__name__, __version__)

    logger.info(
        "OpenTelemetry initialized",
        extra={
            "service_name": settings.OTEL_SERVICE_NAME,
            "sample_rate": settings.OTEL_TRACE_SAMPLE_RATE,
            "export_console": settings.OTEL_EXPORT_CONSOLE,
        },
    )


def _instrument(component: str, install: Callable[[], None]) -> bool:
    try:
        install()
    except Exception as e:
        # Tracing is optional; the ledger keeps serving without it
        logger.warning(f"Failed to instrument {component}: {e}")
        return False
    logger.info(f"{component} instrumented with OpenTelemetry")
    return True


def instrument_app(app: Any) -> bool:
    """Trace every HTTP request handled by the API.

    Args:
        app: FastAPI application instance

    Returns:
        True if instrumentation was installed
    """
    return _instrument("FastAPI", lambda: FastAPIInstrumentor.instrument_app(app))


def instrument_sqlalchemy(engine: Any) -> bool:
    """Trace ledger queries on a database engine.

    Args:
        engine: Synchronous SQLAlchemy engine (``async_engine.sync_engine``)

    Returns:
        True if instrumentation was installed
    """
    return _instrument(
        "SQLAlchemy", lambda: SQLAlchemyInstrumentor().instrument(engine=engine)
    )


def instrument_redis() -> bool:
    """Trace alert event publishing over Redis.

    Returns:
        True if instrumentation was installed
    """
    return _instrument("Redis", lambda: RedisInstrumentor().instrument())


def get_tracer() -> trace.Tracer:
    """Return the ledger tracer.

    Returns:
        The tracer installed by ``setup_telemetry``, or one from the
        default provider when setup has not run (tests, the worker)
    """
    global _tracer

    if _tracer is None:
        _tracer = trace.get_tracer(__name__, __version__)

    return _tracer


def _set_attributes(span: trace.Span, attributes: Dict[str, Any]) -> None:
    for key, value in attributes.items():
        if value is not None:
            span.set_attribute(key, value)


@contextmanager
def trace_operation(
    name: str, attributes: Optional[Dict[str, Any]] = None
) -> Iterator[trace.Span]:
    """Open a span and mark it failed if the block raises.

    Args:
        name: Span name, e.g. ``client.pinger.ping``
        attributes: Initial attributes; None values are skipped

    Yields:
        The open span
    """
    with get_tracer().start_as_current_span(name) as span:
        _set_attributes(span, attributes or {})
        try:
            yield span
        except Exception as e:
            span.record_exception(e)
            span.set_status(trace.Status(trace.StatusCode.ERROR, str(e)))
            raise


def add_span_attributes(**attributes: Any) -> None:
    """Annotate the current span, skipping None values.

    Args:
        **attributes: Dotted attribute names such as ``equipment.id``
    """
    span = trace.get_current_span()
    if span.is_recording():
        _set_attributes(span, attributes)


def add_span_event(name: str, attributes: Optional[Dict[str, Any]] = None) -> None:
    """Record a point-in-time event on the current span.

    Args:
        name: Event name, e.g. ``equipment.delete.audited``
        attributes: Event attributes
    """
    span = trace.get_current_span()
    if span.is_recording():
        span.add_event(name, attributes or {})
