"""SQLAlchemy models for the OrderDesk application."""

import datetime as dt
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON, Boolean, CheckConstraint, Date, DateTime, ForeignKey, Index,
    Integer, String, Text, UniqueConstraint
)
from sqlalchemy.orm import Mapped, mapped_column

from app.business.clock import utcnow
from app.business.order_status import OrderStatus
from app.storage.db import Base


def _in_clause(column: str, values) -> str:
    quoted = ", ".join(f"'{value}'" for value in values)
    return f"{column} IN ({quoted})"


INVOICE_STATUSES = ("draft", "sent", "paid", "cancelled")
PAYMENT_STATUSES = ("succeeded", "refunded", "failed")
PAYMENT_METHODS = ("card", "cash", "check", "wire", "other")
REMINDER_TYPES = ("upcoming", "due_today", "overdue")


class SchemaVersion(Base):
    """Single-row record of the applied schema version."""

    __tablename__ = "schema_version"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    applied_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class Order(Base):
    """Service order moving through the quote, invoice, payment lifecycle."""

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    status: Mapped[str] = mapped_column(
        String(32), default=OrderStatus.PENDING.value, nullable=False, index=True
    )

    # Customer contact snapshot
    contact_name: Mapped[str] = mapped_column(String(128), nullable=False)
    contact_email: Mapped[str] = mapped_column(String(255), nullable=False)
    contact_phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    service_type: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    package_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    add_ons: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(JSON, nullable=True)

    # Amounts in minor units
    subtotal: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tax_amount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_amount: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    jurisdiction: Mapped[str] = mapped_column(String(2), default="AB", nullable=False)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(_in_clause("status", [s.value for s in OrderStatus]), name="ck_orders_status"),
        CheckConstraint("subtotal >= 0 AND tax_amount >= 0 AND total_amount >= 0", name="ck_orders_amounts"),
    )


class StatusHistoryEntry(Base):
    """Append-only trail of order status changes."""

    __tablename__ = "order_status_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    previous_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    new_status: Mapped[str] = mapped_column(String(32), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class Invoice(Base):
    """Invoice issued for an order with a frozen pricing snapshot."""

    __tablename__ = "invoices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    invoice_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    external_reference: Mapped[str] = mapped_column(String(128), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default="draft", nullable=False)
    is_manual: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Frozen at creation
    subtotal_minor_units: Mapped[int] = mapped_column(Integer, nullable=False)
    tax_minor_units: Mapped[int] = mapped_column(Integer, nullable=False)
    amount_minor_units: Mapped[int] = mapped_column(Integer, nullable=False)
    jurisdiction: Mapped[str] = mapped_column(String(2), nullable=False)
    snapshot: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    issue_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    due_date: Mapped[dt.date] = mapped_column(Date, nullable=False, index=True)

    sent_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)
    paid_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(_in_clause("status", INVOICE_STATUSES), name="ck_invoices_status"),
        CheckConstraint("amount_minor_units >= 0", name="ck_invoices_amount"),
        Index("ix_invoices_status_due", "status", "due_date"),
    )


class Payment(Base):
    """Money movement against an invoice, keyed by its external reference."""

    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    invoice_id: Mapped[int] = mapped_column(Integer, ForeignKey("invoices.id"), nullable=False, index=True)
    external_reference: Mapped[str] = mapped_column(String(255), nullable=False)
    amount_minor_units: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(16), default="card", nullable=False)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    paid_at: Mapped[Optional[dt.datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("external_reference", name="uq_payments_external_reference"),
        CheckConstraint(_in_clause("status", PAYMENT_STATUSES), name="ck_payments_status"),
        CheckConstraint(_in_clause("payment_method", PAYMENT_METHODS), name="ck_payments_method"),
    )


class ManualCompletion(Base):
    """Marker guarding an order against a second manual completion."""

    __tablename__ = "manual_completions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(Integer, ForeignKey("orders.id"), nullable=False)
    invoice_id: Mapped[int] = mapped_column(Integer, ForeignKey("invoices.id"), nullable=False)
    payment_id: Mapped[int] = mapped_column(Integer, ForeignKey("payments.id"), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(16), nullable=False)
    amount_minor_units: Mapped[int] = mapped_column(Integer, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("order_id", name="uq_manual_completions_order"),
    )


class ProcessedWebhookEvent(Base):
    """Provider event ids already applied, one row per event."""

    __tablename__ = "processed_webhook_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    order_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    processed_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("event_id", name="uq_processed_webhook_events_event"),
    )


class ReminderLog(Base):
    """Append-only record of every reminder send attempt."""

    __tablename__ = "reminder_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    order_id: Mapped[int] = mapped_column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    invoice_id: Mapped[int] = mapped_column(Integer, ForeignKey("invoices.id"), nullable=False)
    reminder_type: Mapped[str] = mapped_column(String(16), nullable=False)
    days_until_due: Mapped[int] = mapped_column(Integer, nullable=False)
    recipient: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    sent_on: Mapped[dt.date] = mapped_column(Date, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(_in_clause("reminder_type", REMINDER_TYPES), name="ck_reminder_logs_type"),
        CheckConstraint(_in_clause("status", ("sent", "failed")), name="ck_reminder_logs_status"),
        Index("ix_reminder_logs_order_sent_on", "order_id", "sent_on"),
    )


class ReminderPause(Base):
    """Per-order flag suppressing payment reminders."""

    __tablename__ = "reminder_pauses"

    order_id: Mapped[int] = mapped_column(Integer, ForeignKey("orders.id"), primary_key=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    paused_by: Mapped[str] = mapped_column(String(64), nullable=False)
    paused_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class SequenceCounter(Base):
    """Named monotonically increasing counter (invoice numbers)."""

    __tablename__ = "sequence_counters"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    current_value: Mapped[int] = mapped_column(Integer, nullable=False)


class TaxSettingsRecord(Base):
    """Singleton row holding tax configuration."""

    __tablename__ = "tax_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    default_jurisdiction: Mapped[str] = mapped_column(String(2), nullable=False)
    include_in_price: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    auto_apply_tax: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (CheckConstraint("id = 1", name="ck_tax_settings_singleton"),)


class InvoiceSettingsRecord(Base):
    """Singleton row holding invoice configuration."""

    __tablename__ = "invoice_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    company_name: Mapped[str] = mapped_column(String(255), nullable=False)
    company_address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    company_phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    company_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_terms_days: Mapped[int] = mapped_column(Integer, nullable=False)
    invoice_prefix: Mapped[str] = mapped_column(String(16), nullable=False)
    starting_number: Mapped[int] = mapped_column(Integer, nullable=False)
    default_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    auto_send_on_quote_accept: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("id = 1", name="ck_invoice_settings_singleton"),
        CheckConstraint("payment_terms_days >= 1", name="ck_invoice_settings_terms"),
    )


class ReminderSettingsRecord(Base):
    """Singleton row holding reminder schedule configuration."""

    __tablename__ = "reminder_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=1)
    days_before: Mapped[List[int]] = mapped_column(JSON, nullable=False)
    days_after: Mapped[List[int]] = mapped_column(JSON, nullable=False)
    max_reminders: Mapped[int] = mapped_column(Integer, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint("id = 1", name="ck_reminder_settings_singleton"),
        CheckConstraint("max_reminders >= 1", name="ck_reminder_settings_max"),
    )


class AuditLog(Base):
    """Append-only audit trail of administrative and financial actions."""

    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False)
    target_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    correlation_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_audit_logs_target", "target_type", "target_id"),
    )
