"""
OpenTelemetry tracing and metrics for the live chat core.

Every helper is a no-op until ``setup_observability`` has run, so the
routing core and the tests work without a collector.
"""
import time
from contextlib import contextmanager
from typing import Any, Dict, Optional

from loguru import logger
from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.trace import Status, StatusCode

from livedesk import config

# Global providers
_tracer_provider: Optional[TracerProvider] = None
_meter_provider: Optional[MeterProvider] = None
_tracer: Optional[trace.Tracer] = None
_meter: Optional[metrics.Meter] = None

# Metrics
_handoff_offer_counter = None
_human_request_counter = None
_accept_counter = None
_session_end_counter = None
_queue_timeout_counter = None
_agent_reconnect_counter = None
_ai_reply_counter = None
_ai_turn_histogram = None


def setup_observability(
    service_name: str = config.SERVICE_NAME,
    otel_endpoint: str = config.OTEL_ENDPOINT,
    environment: str = config.ENVIRONMENT,
) -> tuple[trace.Tracer, metrics.Meter]:
    """
    Initialize OpenTelemetry tracing and metrics.

    Args:
        service_name: Name of the service for identification
        otel_endpoint: OTLP endpoint URL (without /v1/traces or /v1/metrics)
        environment: Deployment environment (dev, staging, production)

    Returns:
        Tuple of (tracer, meter)
    """
    global _tracer_provider, _meter_provider, _tracer, _meter
    global _handoff_offer_counter, _human_request_counter, _accept_counter, _session_end_counter
    global _queue_timeout_counter, _agent_reconnect_counter, _ai_reply_counter, _ai_turn_histogram

    if _tracer and _meter:
        logger.info("OpenTelemetry already initialized")
        return _tracer, _meter

    logger.info("Initializing OpenTelemetry for {}...", service_name)

    resource = Resource.create({
        "service.name": service_name,
        "service.version": "1.0.0",
        "deployment.environment": environment,
    })

    # === TRACING SETUP ===
    _tracer_provider = TracerProvider(resource=resource)
    _tracer_provider.add_span_processor(
        BatchSpanProcessor(
            OTLPSpanExporter(endpoint=f"{otel_endpoint}/v1/traces", headers={}),
            max_queue_size=2048,
            max_export_batch_size=512,
            schedule_delay_millis=5000,
        )
    )
    trace.set_tracer_provider(_tracer_provider)
    _tracer = trace.get_tracer(service_name, "1.0.0")
    logger.info("Tracing configured: {}/v1/traces", otel_endpoint)

    # === METRICS SETUP ===
    metric_reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=f"{otel_endpoint}/v1/metrics", headers={}),
        export_interval_millis=10000,
    )
    _meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(_meter_provider)
    _meter = metrics.get_meter(service_name, "1.0.0")
    logger.info("Metrics configured: {}/v1/metrics", otel_endpoint)

    # === CREATE METRICS ===
    _handoff_offer_counter = _meter.create_counter(
        name="livedesk.handoff.offers",
        description="Handoff suggestions surfaced to customers",
        unit="1",
    )
    _human_request_counter = _meter.create_counter(
        name="livedesk.human.requests",
        description="Customer requests for a human agent, by outcome",
        unit="1",
    )
    _accept_counter = _meter.create_counter(
        name="livedesk.accepts",
        description="Agent accept attempts, by outcome",
        unit="1",
    )
    _session_end_counter = _meter.create_counter(
        name="livedesk.sessions.ended",
        description="Ended or abandoned sessions, by reason",
        unit="1",
    )
    _queue_timeout_counter = _meter.create_counter(
        name="livedesk.queue.timeouts",
        description="Queued customers dropped after the queue timeout",
        unit="1",
    )
    _agent_reconnect_counter = _meter.create_counter(
        name="livedesk.agent.reconnects",
        description="Agents restored onto their session after a channel drop",
        unit="1",
    )
    _ai_reply_counter = _meter.create_counter(
        name="livedesk.ai.replies",
        description="Assistant replies, by kind",
        unit="1",
    )
    _ai_turn_histogram = _meter.create_histogram(
        name="livedesk.ai.turn.duration",
        description="Duration of one assistant turn",
        unit="ms",
    )

    logger.info("OpenTelemetry fully initialized for {}", service_name)
    return _tracer, _meter


def get_tracer() -> Optional[trace.Tracer]:
    return _tracer


@contextmanager
def trace_operation(
    operation_name: str,
    attributes: Optional[Dict[str, Any]] = None,
    record_exception: bool = True,
):
    """
    Context manager for tracing operations with automatic error handling.

    Usage:
        with trace_operation("knowledge_search", {"search.threshold": 0.4}):
            hits = await knowledge.search(query, 0.4, 5)
    """
    if not _tracer:
        yield None
        return

    with _tracer.start_as_current_span(operation_name) as span:
        for key, value in (attributes or {}).items():
            span.set_attribute(key, value)

        start_time = time.time()
        try:
            yield span
            span.set_status(Status(StatusCode.OK))
        except Exception as e:
            if record_exception:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                span.set_attribute("error.type", type(e).__name__)
            raise
        finally:
            span.set_attribute("duration_ms", (time.time() - start_time) * 1000)


def add_span_attributes(attributes: Dict[str, Any]):
    """Add attributes to the current active span."""
    current_span = trace.get_current_span()
    if current_span.is_recording():
        for key, value in attributes.items():
            current_span.set_attribute(key, value)


def record_handoff_offer(reason: str):
    if _handoff_offer_counter:
        _handoff_offer_counter.add(1, {"reason": reason})


def record_human_request(outcome: str):
    if _human_request_counter:
        _human_request_counter.add(1, {"outcome": outcome})


def record_accept(outcome: str):
    if _accept_counter:
        _accept_counter.add(1, {"outcome": outcome})


def record_session_end(reason: str, had_human: bool):
    if _session_end_counter:
        _session_end_counter.add(1, {"reason": reason, "had_human": str(had_human).lower()})


def record_queue_timeout():
    if _queue_timeout_counter:
        _queue_timeout_counter.add(1)


def record_agent_reconnect():
    if _agent_reconnect_counter:
        _agent_reconnect_counter.add(1)


def record_ai_reply(kind: str, duration_ms: float):
    if _ai_reply_counter:
        _ai_reply_counter.add(1, {"kind": kind})
    if _ai_turn_histogram:
        _ai_turn_histogram.record(duration_ms, {"kind": kind})


def shutdown_observability():
    """Gracefully shutdown OpenTelemetry providers."""
    global _tracer_provider, _meter_provider, _tracer, _meter
    if not (_tracer_provider or _meter_provider):
        return
    logger.info("Shutting down OpenTelemetry...")

    if _tracer_provider:
        _tracer_provider.force_flush(timeout_millis=5000)
        _tracer_provider.shutdown()

    if _meter_provider:
        _meter_provider.force_flush(timeout_millis=5000)
        _meter_provider.shutdown()

    _tracer_provider = _meter_provider = None
    _tracer = _meter = None
    logger.info("OpenTelemetry shutdown complete")
