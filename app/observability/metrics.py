# ==== PROMETHEUS METRICS ==== #

"""
Prometheus metrics for monitoring OrderDesk.

This module defines the counters, gauges and histograms exported by the
service: order transitions, invoicing, payment reconciliation, webhook
rejections, reminder sweeps, outbound notifications and database session
health. These are observability signals only and never a system of record;
invoice numbers, idempotency keys and status history live in the store.
"""

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse
from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    REGISTRY
)


# ==== ORDER LIFECYCLE METRICS ==== #

order_transitions_total = Counter(
    "orderdesk_order_transitions_total",
    "Order status transition attempts by source, target and outcome",
    ["from_status", "to_status", "outcome"]
)

invoices_created_total = Counter(
    "orderdesk_invoices_created_total",
    "Invoices created by kind (regular or manual)",
    ["kind"]
)

invoice_amount_minor_units = Histogram(
    "orderdesk_invoice_amount_minor_units",
    "Invoice amounts in minor currency units",
    buckets=[1_000, 5_000, 10_000, 50_000, 100_000, 500_000, 1_000_000, 5_000_000]
)


# ==== PAYMENT RECONCILIATION METRICS ==== #

payment_events_total = Counter(
    "orderdesk_payment_events_total",
    "Payment webhook events by type and outcome",
    ["event_type", "outcome"]
)

webhook_rejections_total = Counter(
    "orderdesk_webhook_rejections_total",
    "Payment webhooks rejected before processing",
    ["reason"]
)

manual_completions_total = Counter(
    "orderdesk_manual_completions_total",
    "Orders completed manually by payment method",
    ["payment_method"]
)


# ==== REMINDER & NOTIFICATION METRICS ==== #

reminders_total = Counter(
    "orderdesk_reminders_total",
    "Payment reminders processed by type and outcome",
    ["reminder_type", "outcome"]
)

notifications_sent_total = Counter(
    "orderdesk_notifications_sent_total",
    "Outbound notifications by template and outcome",
    ["template", "outcome"]
)


# ==== DATABASE METRICS ==== #

db_connections_active = Gauge(
    "orderdesk_db_connections_active",
    "Number of active database sessions"
)

db_transaction_duration_seconds = Histogram(
    "orderdesk_db_transaction_duration_seconds",
    "Duration of database units of work in seconds"
)

db_infrastructure_errors_total = Counter(
    "orderdesk_db_infrastructure_errors_total",
    "Store failures translated into infrastructure errors",
    ["error_type"]
)


# ==== HTTP METRICS ==== #

http_request_duration_seconds = Histogram(
    "orderdesk_http_request_duration_seconds",
    "HTTP request latency in seconds by method and status class",
    ["method", "status_class"]
)


# ==== SYSTEM METRICS ==== #

app_info = Gauge(
    "orderdesk_app_info",
    "Application information",
    ["version", "environment", "service_name"]
)


def init_metrics(app) -> None:
    """Initialize metrics collection.

    Args:
        app: FastAPI application instance
    """
    from app.settings import settings
    app_info.labels(
        version=app.version,
        environment=settings.APP_ENV,
        service_name=settings.SERVICE_NAME
    ).set(1)


# Metrics router for Prometheus scraping
metrics_router = APIRouter()


@metrics_router.get("/metrics")
def get_metrics() -> PlainTextResponse:
    """Expose Prometheus metrics for scraping.

    Returns:
        Prometheus metrics in text format
    """
    return PlainTextResponse(
        generate_latest(REGISTRY).decode("utf-8"),
        media_type="text/plain"
    )
