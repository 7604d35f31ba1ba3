"""Observability setup for OpenTelemetry, metrics, and structured logging."""

import logging

import structlog
from opentelemetry import metrics, trace
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest

from .config import settings

SERVICE_NAME = "salon-slot-allocation"

# Prometheus metrics
REGISTRY = CollectorRegistry()

# Request metrics
REQUEST_COUNT = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'endpoint', 'status_code'],
    registry=REGISTRY
)

REQUEST_DURATION = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'endpoint'],
    registry=REGISTRY
)

# Allocation metrics
OFFERS_CREATED = Counter(
    'waitlist_offers_created_total',
    'Waitlist offers created',
    ['trigger', 'status'],
    registry=REGISTRY
)

OFFER_CONTENTION = Counter(
    'waitlist_offer_contention_total',
    'Offer attempts rejected because the slot or entry was already taken',
    ['reason'],
    registry=REGISTRY
)

OFFERS_RESOLVED = Counter(
    'waitlist_offers_resolved_total',
    'Waitlist offers finalized by claim or sweep',
    ['result_status'],
    registry=REGISTRY
)

NOTIFICATION_FAILURES = Counter(
    'waitlist_notification_failures_total',
    'Claim-link deliveries that failed per channel',
    ['channel'],
    registry=REGISTRY
)

CONFLICTS_DETECTED = Counter(
    'booking_conflicts_detected_total',
    'Booking conflicts found during validation',
    ['message_code'],
    registry=REGISTRY
)

SWEEP_ERRORS = Counter(
    'waitlist_sweep_errors_total',
    'Rows a waitlist sweep failed to process',
    ['sweep'],
    registry=REGISTRY
)

SLOT_SEARCH_DURATION = Histogram(
    'slot_search_duration_seconds',
    'Duration of first-available slot searches',
    registry=REGISTRY
)


def setup_structured_logging():
    """Configure structured logging with structlog."""

    def add_trace_context(logger, method_name, event_dict):
        """Add trace context to log events."""
        span = trace.get_current_span()
        if span and span.is_recording():
            ctx = span.get_span_context()
            event_dict['trace_id'] = format(ctx.trace_id, '032x')
            event_dict['span_id'] = format(ctx.span_id, '016x')
        return event_dict

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            add_trace_context,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer() if settings.debug else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, settings.log_level)
        ),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _resource() -> Resource:
    return Resource.create({
        "service.name": SERVICE_NAME,
        "service.version": "1.0.0",
        "environment": settings.environment,
    })


def setup_tracing(app_name: str = SERVICE_NAME):
    """Setup OpenTelemetry tracing."""
    provider = TracerProvider(resource=_resource())
    if settings.otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otlp_endpoint)))
    trace.set_tracer_provider(provider)
    return trace.get_tracer(app_name)


def setup_metrics(app_name: str = SERVICE_NAME):
    """Setup OpenTelemetry metrics."""
    if settings.otlp_endpoint:
        reader = PeriodicExportingMetricReader(
            exporter=OTLPMetricExporter(endpoint=settings.otlp_endpoint),
            export_interval_millis=60000,
        )
        metrics.set_meter_provider(MeterProvider(resource=_resource(), metric_readers=[reader]))
    return metrics.get_meter(app_name)


def instrument_fastapi(app):
    """Instrument FastAPI with OpenTelemetry."""
    FastAPIInstrumentor.instrument_app(app)


def instrument_sqlalchemy():
    """Instrument SQLAlchemy with OpenTelemetry."""
    SQLAlchemyInstrumentor().instrument()


class MetricsCollector:
    """Collector for allocation metrics."""

    @staticmethod
    def record_offer_created(trigger: str, status: str):
        OFFERS_CREATED.labels(trigger=trigger, status=status).inc()

    @staticmethod
    def record_offer_contention(reason: str):
        OFFER_CONTENTION.labels(reason=reason).inc()

    @staticmethod
    def record_offer_resolved(result_status: str):
        OFFERS_RESOLVED.labels(result_status=result_status).inc()

    @staticmethod
    def record_notification_failure(channel: str):
        NOTIFICATION_FAILURES.labels(channel=channel).inc()

    @staticmethod
    def record_conflict(message_code: str):
        CONFLICTS_DETECTED.labels(message_code=message_code).inc()

    @staticmethod
    def record_sweep_error(sweep: str):
        SWEEP_ERRORS.labels(sweep=sweep).inc()

    @staticmethod
    def observe_slot_search(duration_seconds: float):
        SLOT_SEARCH_DURATION.observe(duration_seconds)


def get_prometheus_metrics():
    """Get Prometheus metrics for the /metrics endpoint."""
    return generate_latest(REGISTRY)


# Global metrics collector instance
metrics_collector = MetricsCollector()
