# ==== APPEND-ONLY AND IMMUTABILITY GUARDS ==== #

"""
ORM-level guards for records that must never be rewritten.

Status history, reminder logs and audit rows are append-only. Orders are
never deleted, only transitioned to a terminal status. An invoice's priced
snapshot (amounts, line items, dates, number) is frozen at creation; a
reprice requires a new invoice, not a mutation. The listeners raise
ValidationError at flush time, which aborts the surrounding transaction.
"""

from sqlalchemy import event
from sqlalchemy.orm.attributes import get_history

from app.business.errors import ValidationError
from app.storage.models import AuditLog, Invoice, Order, ReminderLog, StatusHistoryEntry


FROZEN_INVOICE_FIELDS = (
    "invoice_number",
    "subtotal_minor_units",
    "tax_minor_units",
    "amount_minor_units",
    "snapshot",
    "issue_date",
    "due_date",
)

_APPEND_ONLY = (StatusHistoryEntry, ReminderLog, AuditLog)

_installed = False


def _reject_append_only_write(mapper, connection, target):
    raise ValidationError(
        f"{type(target).__name__} records are append-only",
        code="IMMUTABLE_RECORD",
        record_id=target.id,
    )


def _reject_order_delete(mapper, connection, target):
    raise ValidationError(
        "Orders are never deleted; cancel them instead",
        code="IMMUTABLE_RECORD",
        order_id=target.id,
    )


def _check_invoice_snapshot(mapper, connection, target):
    changed = [field for field in FROZEN_INVOICE_FIELDS if get_history(target, field).has_changes()]
    if changed:
        raise ValidationError(
            f"Invoice {target.invoice_number} pricing is frozen",
            code="IMMUTABLE_RECORD",
            invoice_id=target.id,
            fields=changed,
        )


def install() -> None:
    """Register the listeners once per process."""
    global _installed
    if _installed:
        return

    for model in _APPEND_ONLY:
        event.listen(model, "before_update", _reject_append_only_write)
        event.listen(model, "before_delete", _reject_append_only_write)
    event.listen(Order, "before_delete", _reject_order_delete)
    event.listen(Invoice, "before_update", _check_invoice_snapshot)

    _installed = True
