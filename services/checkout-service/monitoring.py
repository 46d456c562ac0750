"""Monitoring and observability setup.

When OTEL_ENABLED is set, traces and metrics are exported over OTLP/gRPC to
the collector at OTEL_EXPORTER_OTLP_ENDPOINT. Otherwise the OpenTelemetry API
falls back to its no-op providers, so the instruments below can always be
recorded against.

Exemplars are attached automatically to histogram points recorded inside an
active span, which links checkout amounts back to the checkout trace.
"""
import logging
from opentelemetry import trace, metrics
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter

from config import OTEL_ENABLED, OTEL_EXPORTER_OTLP_ENDPOINT, SERVICE_NAME

logger = logging.getLogger(__name__)


def init_tracing() -> trace.Tracer:
    """
    Initialize OpenTelemetry tracing.

    Returns:
        Tracer instance
    """
    resource = Resource.create({"service.name": SERVICE_NAME})

    tracer_provider = TracerProvider(resource=resource)
    otlp_span_exporter = OTLPSpanExporter(
        endpoint=OTEL_EXPORTER_OTLP_ENDPOINT,
        insecure=True
    )
    tracer_provider.add_span_processor(BatchSpanProcessor(otlp_span_exporter))
    trace.set_tracer_provider(tracer_provider)

    logger.info(f"Tracing initialized with endpoint: {OTEL_EXPORTER_OTLP_ENDPOINT}")

    return trace.get_tracer(__name__)


def init_metrics() -> metrics.Meter:
    """
    Initialize OpenTelemetry metrics.

    Returns:
        Meter instance
    """
    resource = Resource.create({"service.name": SERVICE_NAME})

    otlp_metric_exporter = OTLPMetricExporter(
        endpoint=OTEL_EXPORTER_OTLP_ENDPOINT,
        insecure=True
    )
    otlp_metric_reader = PeriodicExportingMetricReader(
        otlp_metric_exporter,
        export_interval_millis=5000
    )

    meter_provider = MeterProvider(
        resource=resource,
        metric_readers=[otlp_metric_reader]
    )
    metrics.set_meter_provider(meter_provider)

    logger.info("Metrics initialized with OTLP exporter")

    return metrics.get_meter(__name__)


# Initialize tracer and meter
if OTEL_ENABLED:
    tracer = init_tracing()
    meter = init_metrics()
else:
    tracer = trace.get_tracer(__name__)
    meter = metrics.get_meter(__name__)

# Business metrics using OpenTelemetry

# One increment per checkout that runs, labelled with the outcome and the
# failed stage if any. Replays are counted by duplicate_checkout_counter
checkout_counter = meter.create_counter(
    "checkout.attempts",
    description="Checkout attempts by outcome and failed stage",
    unit="1"
)

checkout_amount_histogram = meter.create_histogram(
    "checkout.order.total",
    description="Order total amount of completed checkouts",
    unit="USD"
)

duplicate_checkout_counter = meter.create_counter(
    "checkout.duplicates",
    description="Checkout submissions rejected or replayed by idempotency key",
    unit="1"
)

coupon_rejections_counter = meter.create_counter(
    "checkout.coupons.rejected",
    description="Coupon codes rejected during validation by reason",
    unit="1"
)

coupon_redemptions_counter = meter.create_counter(
    "checkout.coupons.redeemed",
    description="Coupon uses claimed by placed orders",
    unit="1"
)

inventory_unavailable_counter = meter.create_counter(
    "checkout.inventory.unavailable",
    description="Cart lines rejected because stock could not cover them",
    unit="1"
)

inventory_settlement_shortfalls_counter = meter.create_counter(
    "checkout.inventory.settlement_shortfalls",
    description="Order lines that could not be settled against stock after order creation",
    unit="1"
)

reservation_conflicts_counter = meter.create_counter(
    "checkout.inventory.reservation_conflicts",
    description="Reservations rolled back because a concurrent reservation won the stock",
    unit="1"
)

notification_failures_counter = meter.create_counter(
    "checkout.notifications.failed",
    description="Order confirmation notifications dropped after retries",
    unit="1"
)

notification_duration_histogram = meter.create_histogram(
    "checkout.notifications.duration",
    description="Duration of notification service calls",
    unit="s"
)
