"""Optional OpenTelemetry tracing for evaluations.

Spans are exported only when OTEL_EXPORTER_OTLP_ENDPOINT is set and the
``telemetry`` extra is installed. Otherwise every helper yields a no-op span,
so callers never branch on whether tracing is on.

Span names used across the package:

    evaluation.run       one evaluation, from initial event to final event
    evaluation.round     one scoring or discussion round
    log.publish          one event written to the ordered log (all its parts)
    llm.query_model      one OpenRouter request, retries included
"""

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

logger = logging.getLogger(__name__)

OTEL_EXPORTER_OTLP_ENDPOINT = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
OTEL_SERVICE_NAME = os.getenv("OTEL_SERVICE_NAME", "jurybox")

_tracer = None
_telemetry_enabled = False
_setup_attempted = False
_httpx_instrumented = False


def is_telemetry_enabled() -> bool:
    """Check if OpenTelemetry tracing is enabled."""
    return _telemetry_enabled


def setup_telemetry() -> bool:
    """Initialize OpenTelemetry tracing and httpx instrumentation.

    Safe to call repeatedly; only the first call does any work.

    Returns:
        True if telemetry is configured, False otherwise.
    """
    global _tracer, _telemetry_enabled, _setup_attempted

    if _setup_attempted:
        return _telemetry_enabled
    _setup_attempted = True

    if not OTEL_EXPORTER_OTLP_ENDPOINT:
        logger.debug("OpenTelemetry disabled: OTEL_EXPORTER_OTLP_ENDPOINT not configured")
        return False

    try:
        from opentelemetry import trace
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        from . import __version__

        provider = TracerProvider(resource=Resource.create({
            "service.name": OTEL_SERVICE_NAME,
            "service.version": __version__,
        }))
        provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=OTEL_EXPORTER_OTLP_ENDPOINT))
        )
        trace.set_tracer_provider(provider)

        _tracer = trace.get_tracer("jurybox")
        _telemetry_enabled = True
    except ImportError as e:
        logger.warning("OpenTelemetry packages not available: %s", e)
        return False
    except Exception as e:
        logger.warning("Failed to initialize OpenTelemetry: %s", e)
        return False

    logger.info(
        "OpenTelemetry initialized. Endpoint: %s, Service: %s",
        OTEL_EXPORTER_OTLP_ENDPOINT, OTEL_SERVICE_NAME,
    )
    instrument_httpx()
    return True


def instrument_httpx() -> None:
    """Trace requests made by every httpx client (OpenRouter and mirror node)."""
    global _httpx_instrumented

    if not _telemetry_enabled or _httpx_instrumented:
        return
    try:
        from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor

        HTTPXClientInstrumentor().instrument()
        _httpx_instrumented = True
        logger.info("httpx instrumentation enabled")
    except ImportError:
        logger.warning("httpx instrumentation package not available")
    except Exception as e:
        logger.warning("Failed to instrument httpx: %s", e)


class _NoOpSpan:
    """Stands in for a span when tracing is disabled."""

    def set_attribute(self, key: str, value: Any) -> None:
        pass

    def set_attributes(self, attributes: dict[str, Any]) -> None:
        pass

    def add_event(self, name: str, attributes: dict[str, Any] | None = None) -> None:
        pass

    def record_exception(self, exception: BaseException) -> None:
        pass

    def set_status(self, status: Any) -> None:
        pass


def span_attributes(**values: Any) -> dict[str, Any]:
    """
    Build span attributes from keyword arguments.

    Underscores become dots (``evaluation_id`` -> ``evaluation.id``) and None
    values are dropped, since OpenTelemetry rejects them.
    """
    return {
        key.replace("_", "."): value
        for key, value in values.items()
        if value is not None
    }


@contextmanager
def trace_span(name: str, attributes: dict[str, Any] | None = None) -> Iterator[Any]:
    """Open a span, or a no-op span when tracing is disabled."""
    if not _telemetry_enabled:
        yield _NoOpSpan()
        return

    with _tracer.start_as_current_span(name) as span:
        if attributes:
            span.set_attributes(attributes)
        yield span


def evaluation_span(
    evaluation_id: str,
    *,
    agents: int,
    algorithm: str,
    topic_id: str | None = None,
):
    """Span covering one evaluation run."""
    return trace_span("evaluation.run", span_attributes(
        evaluation_id=evaluation_id,
        evaluation_agents=agents,
        evaluation_algorithm=algorithm,
        log_topic_id=topic_id,
    ))


def round_span(round_number: int, *, agents: int, topic_id: str | None = None):
    """Span covering one scoring or discussion round."""
    return trace_span("evaluation.round", span_attributes(
        round_number=round_number,
        round_agents=agents,
        log_topic_id=topic_id,
    ))


def publish_span(topic_id: str, *, event_type: str, round_number: int, parts: int):
    """Span covering the log writes for one event."""
    return trace_span("log.publish", span_attributes(
        log_topic_id=topic_id,
        event_type=event_type,
        round_number=round_number,
        log_parts=parts,
    ))


def record_span_error(span: Any, error: BaseException) -> None:
    """Mark a span as failed when telemetry is enabled."""
    if not _telemetry_enabled:
        return
    from opentelemetry.trace import Status, StatusCode

    span.record_exception(error)
    span.set_status(Status(StatusCode.ERROR, str(error)))
