"""Data factories for generating test data."""

import uuid
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select

from app.services.payment_reconciler import compute_webhook_signature
from app.storage.db import get_session
from app.storage.models import AuditLog, Invoice, Order, Payment, StatusHistoryEntry


@dataclass
class OrderFactory:
    """Factory for orders and invoices written straight to the store."""

    contact_name: str = "Jane Customer"
    contact_email: str = "jane@example.com"
    created: List[int] = field(default_factory=list)

    async def create(
        self,
        status: str = "quoted",
        subtotal: int = 10000,
        jurisdiction: str = "ON",
        add_ons: Optional[List[Dict[str, Any]]] = None,
        package_name: Optional[str] = "Standard package",
        tax_amount: int = 0,
        **overrides: Any,
    ) -> int:
        """Insert an order in the given status and return its id."""
        async with get_session() as db:
            order = Order(
                status=status,
                contact_name=overrides.pop("contact_name", self.contact_name),
                contact_email=overrides.pop("contact_email", self.contact_email),
                service_type="consulting",
                package_name=package_name,
                add_ons=add_ons,
                subtotal=subtotal,
                tax_amount=tax_amount,
                total_amount=subtotal + tax_amount,
                jurisdiction=jurisdiction,
                **overrides,
            )
            db.add(order)
            await db.flush()
            order_id = order.id
        self.created.append(order_id)
        return order_id

    async def create_invoice(
        self,
        order_id: int,
        due_date: date,
        status: str = "sent",
        amount: int = 11300,
        issue_date: Optional[date] = None,
    ) -> int:
        """Insert an invoice directly, bypassing numbering and pricing."""
        number = f"TEST-{uuid.uuid4().hex[:8]}"
        async with get_session() as db:
            invoice = Invoice(
                order_id=order_id,
                invoice_number=number,
                external_reference=number,
                status=status,
                subtotal_minor_units=amount,
                tax_minor_units=0,
                amount_minor_units=amount,
                jurisdiction="AB",
                snapshot={"line_items": [], "tax": {}, "customer": {}},
                issue_date=issue_date or due_date - timedelta(days=14),
                due_date=due_date,
            )
            db.add(invoice)
            await db.flush()
            return invoice.id


# ==== READ HELPERS ==== #


async def fetch_order(order_id: int) -> Order:
    async with get_session() as db:
        return await db.get(Order, order_id)


async def fetch_invoices(order_id: int) -> List[Invoice]:
    async with get_session() as db:
        rows = await db.execute(select(Invoice).where(Invoice.order_id == order_id).order_by(Invoice.id))
        return list(rows.scalars().all())


async def fetch_payments(invoice_id: int) -> List[Payment]:
    async with get_session() as db:
        rows = await db.execute(select(Payment).where(Payment.invoice_id == invoice_id).order_by(Payment.id))
        return list(rows.scalars().all())


async def count_history(order_id: int) -> int:
    async with get_session() as db:
        return (
            await db.execute(
                select(func.count(StatusHistoryEntry.id)).where(StatusHistoryEntry.order_id == order_id)
            )
        ).scalar_one()


async def audit_actions() -> List[str]:
    async with get_session() as db:
        rows = await db.execute(select(AuditLog.action).order_by(AuditLog.id))
        return list(rows.scalars().all())


# ==== WEBHOOK DELIVERIES ==== #


@dataclass
class WebhookFactory:
    """Factory for signed payment-provider webhook bodies."""

    signing_key: str
    timestamp: int

    def create(
        self,
        event_type: str,
        payload: Dict[str, Any],
        event_id: Optional[str] = None,
        timestamp: Optional[int] = None,
        signature: Optional[str] = None,
    ) -> Dict[str, Any]:
        ts = str(self.timestamp if timestamp is None else timestamp)
        token = uuid.uuid4().hex
        return {
            "signature": {
                "timestamp": ts,
                "token": token,
                "signature": signature or compute_webhook_signature(self.signing_key, ts, token),
            },
            "event_type": event_type,
            "event_id": event_id or f"evt_{uuid.uuid4().hex[:12]}",
            "payload": payload,
        }
