# ==== AUDIT LOG SINK ==== #

"""
Best-effort, append-only audit trail for OrderDesk.

Audit entries are written in their own transaction after the primary
operation has committed. A failure to write one is logged and never
propagated: the audit sink must not be able to fail or roll back the
business operation it describes.
"""

from enum import Enum
from typing import Any, Dict, Optional

from app.middleware.correlation import get_correlation_id
from app.observability.logging import get_logger
from app.storage.db import get_session
from app.storage.models import AuditLog


logger = get_logger(__name__)


class AuditAction(str, Enum):
    """Audited action identifiers."""

    ORDER_STATUS_CHANGED = "order.status_changed"
    ORDER_BULK_STATUS_CHANGED = "order.bulk_status_changed"
    ORDER_TAX_APPLIED = "order.tax_applied"
    ORDER_MANUAL_COMPLETED = "order.manual_completed"
    INVOICE_CREATED = "invoice.created"
    INVOICE_SENT = "invoice.sent"
    INVOICE_PAID = "invoice.paid"
    PAYMENT_COMPLETED = "payment.completed"
    PAYMENT_FAILED = "payment.failed"
    PAYMENT_REFUNDED = "payment.refunded"
    PAYMENT_REFUND_REVIEW_REQUIRED = "payment.refund_review_required"
    REMINDER_SENT = "reminder.sent"
    REMINDER_PAUSED = "reminder.paused"
    REMINDER_RESUMED = "reminder.resumed"
    SETTINGS_UPDATED = "settings.updated"
    EMAIL_SENT = "email.sent"


class AuditSink:
    """Writes audit rows; never raises."""

    async def record(
        self,
        action: AuditAction,
        actor_id: str,
        target_type: str,
        target_id: Any = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Append one audit entry.

        Args:
            action (AuditAction): What happened
            actor_id (str): Who did it
            target_type (str): Kind of record affected (order, invoice, settings)
            target_id (Any): Identifier of the affected record
            details (Optional[Dict[str, Any]]): JSON-serializable context

        Returns:
            bool: True if the entry was written
        """
        try:
            async with get_session() as db:
                db.add(AuditLog(
                    action=AuditAction(action).value,
                    actor_id=actor_id,
                    target_type=target_type,
                    target_id=None if target_id is None else str(target_id),
                    details=details,
                    correlation_id=get_correlation_id(),
                ))
            return True
        except Exception as e:
            logger.warning(
                "Audit entry could not be written",
                action=str(action),
                target_type=target_type,
                target_id=target_id,
                error=str(e),
            )
            return False


_audit_sink: AuditSink | None = None


def get_audit_sink() -> AuditSink:
    global _audit_sink
    if _audit_sink is None:
        _audit_sink = AuditSink()
    return _audit_sink
