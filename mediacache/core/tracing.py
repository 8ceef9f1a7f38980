"""OpenTelemetry tracing for the transform pipeline.

Each stage (cache lookup, fetch, encode, persist) runs inside its own span.
Client faults are annotated on the span without marking it failed; server
faults set an ERROR status.
"""

import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, ConsoleSpanExporter
from opentelemetry.trace import Span, Status, StatusCode

logger = logging.getLogger(__name__)

_provider: Optional[TracerProvider] = None
_tracer: Optional[trace.Tracer] = None


def setup_tracing(
    service_name: str,
    service_version: str,
    environment: str = "development",
    enable_console_export: bool = False,
) -> trace.Tracer:
    """Create the tracer provider for this process.

    The provider is kept private to the service instead of being installed
    as the OpenTelemetry global, so repeated app construction in one process
    starts from a fresh provider.

    Args:
        service_name: Name reported on every span
        service_version: Version reported on every span
        environment: Deployment environment attribute
        enable_console_export: Print finished spans to stdout

    Returns:
        The service tracer
    """
    global _provider, _tracer

    if _provider is not None:
        _provider.shutdown()

    _provider = TracerProvider(resource=Resource.create({
        SERVICE_NAME: service_name,
        SERVICE_VERSION: service_version,
        "deployment.environment": environment,
    }))
    if enable_console_export:
        _provider.add_span_processor(BatchSpanProcessor(ConsoleSpanExporter()))

    _tracer = _provider.get_tracer("mediacache", service_version)
    logger.info(f"Tracing ready for {service_name} {service_version} ({environment})")
    return _tracer


def get_tracer() -> trace.Tracer:
    if _tracer is None:
        return trace.get_tracer("mediacache")
    return _tracer


def current_span_ids() -> tuple[Optional[str], Optional[str]]:
    """Hex trace and span ids of the active span, or (None, None)."""
    context = trace.get_current_span().get_span_context()
    if not context.is_valid:
        return None, None
    return format(context.trace_id, "032x"), format(context.span_id, "016x")


def _mark_failure(span: Span, error: BaseException) -> None:
    span.record_exception(error)
    span.set_attribute("media.error_code", getattr(error, "code", type(error).__name__))
    if getattr(error, "client_fault", False):
        span.set_attribute("media.client_fault", True)
        return
    span.set_status(Status(StatusCode.ERROR, type(error).__name__))


@contextmanager
def create_span(
    name: str,
    attributes: Optional[dict[str, Any]] = None,
    kind: trace.SpanKind = trace.SpanKind.INTERNAL,
) -> Iterator[Span]:
    """Run a block inside a span.

    Exceptions are recorded on the span and re-raised.

    Args:
        name: Span name, e.g. ``media.encode``
        attributes: Initial span attributes
        kind: Span kind

    Yields:
        The active span
    """
    with get_tracer().start_as_current_span(
        name,
        kind=kind,
        attributes=attributes or {},
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        try:
            yield span
        except Exception as e:
            _mark_failure(span, e)
            raise


def add_span_attributes(attributes: dict[str, Any]) -> None:
    span = trace.get_current_span()
    for key, value in attributes.items():
        span.set_attribute(key, value)


def shutdown_tracing() -> None:
    """Flush pending spans and drop the provider."""
    global _provider, _tracer
    if _provider is None:
        return
    _provider.shutdown()
    _provider = None
    _tracer = None
    logger.info("Tracing shut down")
