# ==== INVOICE MANAGER SERVICE ==== #

"""
Invoice manager service for OrderDesk.

Generates invoices from orders, freezes their pricing, tracks aging and
overdue state and records admin-entered payments.

Creation is idempotent per order: the order row is locked, an existing
(non-cancelled) invoice is returned as-is, and otherwise a number is drawn
from the atomic invoice-number sequence, tax is computed by the tax engine
and the line items, dates and totals are frozen into the invoice snapshot.
The order's tax and total are updated in the same transaction. Emails are
sent only after the transaction that created or sent the invoice commits.
"""

import datetime as dt
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from app.business.clock import Clock, get_clock
from app.business.errors import ConflictError, NotFoundError, ValidationError
from app.business.order_status import (
    SETTLED_STATUSES,
    OrderStatus,
    can_transition,
    parse_status,
)
from app.business.tax import TaxBreakdown, format_tax_breakdown, resolve_jurisdiction
from app.observability.logging import get_logger, log_business_event
from app.observability.metrics import invoice_amount_minor_units, invoices_created_total
from app.observability.tracing import get_tracer
from app.schemas.invoices import (
    AgingBucket,
    AgingSummary,
    InvoiceOptions,
    InvoiceProjection,
    LineItem,
    OverdueInvoice,
    PaymentDetails,
)
from app.schemas.settings import InvoiceSettings, InvoiceSettingsUpdate
from app.security.auth import Actor, ensure_role
from app.services.audit import AuditAction, AuditSink, get_audit_sink
from app.services.notifications import (
    NotificationSender,
    dispatch_notification,
    get_notification_sender,
    render_invoice_email,
)
from app.services.order_state_machine import OrderStateMachine, get_order_state_machine
from app.services.tax_service import price_order, untaxed_breakdown
from app.storage.configuration import ConfigurationStore, get_configuration_store
from app.storage.db import get_session
from app.storage.dialect import insert_ignoring_conflict
from app.storage.models import Invoice, Order, Payment
from app.storage.sequences import INVOICE_NUMBER_SEQUENCE, format_invoice_number, next_sequence_value


tracer = get_tracer(__name__)
logger = get_logger(__name__)

OPEN_INVOICE_STATUSES = ("draft", "sent")


# ==== PURE HELPERS ==== #


def classify_aging(age_days: int) -> str:
    """Aging bucket for an invoice issued ``age_days`` ago."""
    if age_days < 30:
        return "current"
    if age_days < 60:
        return "thirty_to_sixty"
    if age_days < 90:
        return "sixty_to_ninety"
    return "ninety_plus"


def build_line_items(order: Order, subtotal: int) -> List[Dict[str, Any]]:
    """
    Itemize an order: add-ons as their own lines, the base package as the remainder.

    Args:
        order (Order): Order with optional ``add_ons`` [{name, price, quantity}]
        subtotal (int): Pre-tax amount the lines must sum to

    Returns:
        List[Dict[str, Any]]: Line items in minor units

    Raises:
        ValidationError: If an add-on is malformed or add-ons exceed the subtotal
    """
    add_on_lines = []
    add_on_total = 0
    for add_on in order.add_ons or []:
        try:
            name = str(add_on["name"])
            price = int(add_on.get("price", 0))
            quantity = int(add_on.get("quantity", 1))
        except (KeyError, TypeError, ValueError):
            raise ValidationError("Malformed add-on on order", order_id=order.id, add_on=add_on)
        if price < 0 or quantity < 1:
            raise ValidationError("Add-on price and quantity must be positive", order_id=order.id, add_on=name)
        line_total = price * quantity
        add_on_total += line_total
        add_on_lines.append(
            {"description": name, "quantity": quantity, "unit_price": price, "total": line_total}
        )

    if add_on_total > subtotal:
        raise ValidationError(
            "Add-ons exceed the order subtotal",
            order_id=order.id,
            add_on_total=add_on_total,
            subtotal=subtotal,
        )

    base_amount = subtotal - add_on_total
    base = {
        "description": order.package_name or order.service_type or "Service package",
        "quantity": 1,
        "unit_price": base_amount,
        "total": base_amount,
    }
    return [base, *add_on_lines]


def _naive_utc(value: Optional[dt.datetime]) -> Optional[dt.datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(dt.timezone.utc).replace(tzinfo=None)


def project_invoice(invoice: Invoice, **flags: Any) -> InvoiceProjection:
    snapshot = invoice.snapshot or {}
    return InvoiceProjection(
        id=invoice.id,
        order_id=invoice.order_id,
        invoice_number=invoice.invoice_number,
        external_reference=invoice.external_reference,
        status=invoice.status,
        is_manual=invoice.is_manual,
        subtotal=invoice.subtotal_minor_units,
        tax=invoice.tax_minor_units,
        amount=invoice.amount_minor_units,
        jurisdiction=invoice.jurisdiction,
        issue_date=invoice.issue_date,
        due_date=invoice.due_date,
        line_items=[LineItem(**item) for item in snapshot.get("line_items", [])],
        tax_breakdown=snapshot.get("tax", {}),
        customer=snapshot.get("customer", {}),
        notes=snapshot.get("notes"),
        sent_at=invoice.sent_at,
        paid_at=invoice.paid_at,
        **flags,
    )


def build_snapshot(
    order: Order,
    breakdown: TaxBreakdown,
    line_items: List[Dict[str, Any]],
    issue_date: dt.date,
    due_date: dt.date,
    notes: Optional[str],
    invoice_settings: InvoiceSettings,
) -> Dict[str, Any]:
    return {
        "customer": {
            "name": order.contact_name,
            "email": order.contact_email,
            "phone": order.contact_phone,
        },
        "company": {
            "name": invoice_settings.company_name,
            "address": invoice_settings.company_address,
            "phone": invoice_settings.company_phone,
            "email": invoice_settings.company_email,
        },
        "line_items": line_items,
        "tax": breakdown.to_dict(),
        "tax_lines": format_tax_breakdown(breakdown),
        "issue_date": issue_date.isoformat(),
        "due_date": due_date.isoformat(),
        "notes": notes,
    }


# ==== INVOICE MANAGER ==== #


class InvoiceManager:
    """
    Service for generating and settling invoices.

    All mutating operations lock the order row first, so invoice creation,
    sending and payment for one order are serialized across instances.
    """

    def __init__(
        self,
        state_machine: Optional[OrderStateMachine] = None,
        notifier: Optional[NotificationSender] = None,
        config_store: Optional[ConfigurationStore] = None,
        audit: Optional[AuditSink] = None,
        clock: Optional[Clock] = None,
    ):
        self.state_machine = state_machine or get_order_state_machine()
        self.notifier = notifier or get_notification_sender()
        self.config_store = config_store or get_configuration_store()
        self.audit = audit or get_audit_sink()
        self.clock = clock or get_clock()

    async def current_invoice(self, db, order_id: int) -> Optional[Invoice]:
        """Latest non-cancelled invoice of an order."""
        return (
            await db.execute(
                select(Invoice)
                .where(Invoice.order_id == order_id, Invoice.status != "cancelled")
                .order_by(Invoice.id.desc())
                .limit(1)
            )
        ).scalar_one_or_none()

    async def allocate_invoice_number(self, db, invoice_settings: InvoiceSettings) -> str:
        value = await next_sequence_value(db, INVOICE_NUMBER_SEQUENCE, invoice_settings.starting_number)
        return format_invoice_number(invoice_settings.invoice_prefix, value)

    # --► CREATION

    async def create_invoice_from_order(
        self,
        order_id: int,
        actor: Actor,
        options: Optional[InvoiceOptions] = None,
    ) -> InvoiceProjection:
        """
        Create the invoice for an order, or return the one it already has.

        Args:
            order_id (int): Order to invoice
            actor (Actor): Authenticated admin
            options (Optional[InvoiceOptions]): Notes, due-day override,
                jurisdiction override and whether to email the invoice

        Returns:
            InvoiceProjection: The invoice; ``created`` tells whether this call made it

        Raises:
            ValidationError: If the order is cancelled, its add-ons are invalid
                or sending would require an illegal transition
            ConflictError: If the order was already paid without an invoice
            NotFoundError: If the order does not exist
        """
        ensure_role(actor)
        options = options or InvoiceOptions()

        with tracer.start_as_current_span("create_invoice_from_order") as span:
            span.set_attribute("order_id", order_id)

            async with get_session() as db:
                order = await self.state_machine.load_order_for_update(db, order_id)

                existing = await self.current_invoice(db, order_id)
                if existing is not None:
                    logger.info(
                        "Invoice already exists for order",
                        order_id=order_id,
                        invoice_number=existing.invoice_number,
                    )
                    span.set_attribute("idempotent_hit", True)
                    return project_invoice(existing, created=False)

                status = parse_status(order.status)
                if status == OrderStatus.CANCELLED:
                    raise ValidationError("Cannot invoice a cancelled order", order_id=order_id)
                if status in SETTLED_STATUSES:
                    raise ConflictError("Cannot re-invoice a paid order", order_id=order_id, status=status.value)
                if (
                    options.send_email
                    and status != OrderStatus.INVOICED
                    and not can_transition(status, OrderStatus.INVOICED)
                ):
                    raise ValidationError(
                        f"Order in status '{status.value}' cannot be sent an invoice",
                        order_id=order_id,
                    )

                invoice_settings = await self.config_store.get_invoice_settings(db)
                tax_settings = await self.config_store.get_tax_settings(db)

                if tax_settings.auto_apply_tax:
                    breakdown = price_order(order, tax_settings, options.jurisdiction)
                else:
                    breakdown = untaxed_breakdown(
                        order,
                        resolve_jurisdiction(
                            options.jurisdiction or order.jurisdiction, tax_settings.default_jurisdiction
                        ),
                    )
                line_items = build_line_items(order, breakdown.subtotal)

                invoice_number = await self.allocate_invoice_number(db, invoice_settings)
                issue_date = self.clock.today()
                due_date = issue_date + dt.timedelta(
                    days=options.due_days or invoice_settings.payment_terms_days
                )
                notes = options.notes or invoice_settings.default_notes

                invoice = Invoice(
                    order_id=order_id,
                    invoice_number=invoice_number,
                    external_reference=invoice_number,
                    status="draft",
                    subtotal_minor_units=breakdown.subtotal,
                    tax_minor_units=breakdown.total_tax,
                    amount_minor_units=breakdown.total,
                    jurisdiction=breakdown.jurisdiction,
                    snapshot=build_snapshot(
                        order, breakdown, line_items, issue_date, due_date, notes, invoice_settings
                    ),
                    issue_date=issue_date,
                    due_date=due_date,
                )
                db.add(invoice)

                order.jurisdiction = breakdown.jurisdiction
                order.subtotal = breakdown.subtotal
                order.tax_amount = breakdown.total_tax
                order.total_amount = breakdown.total
                await db.flush()

                projection = project_invoice(invoice, created=True)

            invoices_created_total.labels(kind="regular").inc()
            invoice_amount_minor_units.observe(projection.amount)
            log_business_event(
                "invoice.created",
                order_id=order_id,
                invoice_number=projection.invoice_number,
                amount=projection.amount,
            )
            await self.audit.record(
                AuditAction.INVOICE_CREATED,
                actor.actor_id,
                "invoice",
                projection.id,
                {"order_id": order_id, "invoice_number": projection.invoice_number, "amount": projection.amount},
            )

        if options.send_email:
            sent = await self.send_invoice(order_id, actor)
            return sent.model_copy(update={"created": True})
        return projection

    # --► SENDING

    async def send_invoice(self, order_id: int, actor: Actor) -> InvoiceProjection:
        """
        Mark the current invoice sent, move the order to invoiced and email it.

        The email goes out after commit; a failed send is reported through
        ``email_sent`` and does not undo the state change.

        Raises:
            NotFoundError: If the order or its invoice does not exist
            ConflictError: If the invoice is already paid
            InvalidTransitionError: If the order cannot move to invoiced
        """
        ensure_role(actor)

        async with get_session() as db:
            order = await self.state_machine.load_order_for_update(db, order_id)
            invoice = await self.current_invoice(db, order_id)
            if invoice is None:
                raise NotFoundError(f"No invoice for order {order_id}", order_id=order_id)
            if invoice.status == "paid":
                raise ConflictError("Invoice is already paid", invoice_number=invoice.invoice_number)

            if invoice.status == "draft":
                if parse_status(order.status) != OrderStatus.INVOICED:
                    await self.state_machine.apply_transition(
                        db, order, OrderStatus.INVOICED, actor.actor_id,
                        f"Invoice {invoice.invoice_number} sent",
                    )
                invoice.status = "sent"
                invoice.sent_at = self.clock.now()
                await db.flush()

            projection = project_invoice(invoice)
            tax_lines = (invoice.snapshot or {}).get("tax_lines", [])

        invoice_settings = await self.config_store.get_invoice_settings()
        message = render_invoice_email(
            to=projection.customer.get("email") or "",
            customer_name=projection.customer.get("name") or "",
            order_id=order_id,
            invoice_number=projection.invoice_number,
            line_items=[item.model_dump() for item in projection.line_items],
            tax_lines=tax_lines,
            total=projection.amount,
            due_date=projection.due_date.isoformat(),
            notes=projection.notes,
            company_name=invoice_settings.company_name,
        )
        projection.email_sent = await dispatch_notification(self.notifier, message)

        await self.audit.record(
            AuditAction.INVOICE_SENT,
            actor.actor_id,
            "invoice",
            projection.id,
            {"order_id": order_id, "email_sent": projection.email_sent},
        )
        return projection

    # --► READS

    async def get_invoice(self, order_id: int) -> InvoiceProjection:
        async with get_session() as db:
            invoice = await self.current_invoice(db, order_id)
            if invoice is None:
                raise NotFoundError(f"No invoice for order {order_id}", order_id=order_id)
            return project_invoice(invoice)

    async def get_invoice_aging_summary(self) -> AgingSummary:
        """
        Bucket every unpaid, uncancelled invoice by days since issue.

        Each invoice lands in exactly one bucket; ``total`` covers all of them.

        Returns:
            AgingSummary: Count and amount per bucket
        """
        today = self.clock.today()
        async with get_session() as db:
            rows = (
                await db.execute(
                    select(Invoice.issue_date, Invoice.amount_minor_units).where(
                        Invoice.status.in_(OPEN_INVOICE_STATUSES)
                    )
                )
            ).all()

        summary = AgingSummary(as_of=today)
        for issue_date, amount in rows:
            bucket: AgingBucket = getattr(summary, classify_aging((today - issue_date).days))
            bucket.count += 1
            bucket.amount += amount
            summary.total.count += 1
            summary.total.amount += amount
        return summary

    async def get_overdue_invoices(self) -> List[OverdueInvoice]:
        """Unpaid invoices past their due date, most overdue first."""
        today = self.clock.today()
        async with get_session() as db:
            rows = (
                await db.execute(
                    select(Invoice, Order.contact_name, Order.contact_email)
                    .join(Order, Order.id == Invoice.order_id)
                    .where(Invoice.status.in_(OPEN_INVOICE_STATUSES), Invoice.due_date < today)
                    .order_by(Invoice.due_date.asc(), Invoice.id.asc())
                )
            ).all()

        return [
            OverdueInvoice(
                order_id=invoice.order_id,
                invoice_id=invoice.id,
                invoice_number=invoice.invoice_number,
                status=invoice.status,
                customer_name=name,
                customer_email=email,
                amount=invoice.amount_minor_units,
                due_date=invoice.due_date,
                days_overdue=(today - invoice.due_date).days,
            )
            for invoice, name, email in rows
        ]

    # --► PAYMENT

    async def mark_invoice_as_paid(
        self,
        order_id: int,
        actor: Actor,
        payment_details: Optional[PaymentDetails] = None,
    ) -> InvoiceProjection:
        """
        Record an admin-confirmed payment of the current invoice.

        Sets the invoice to paid and moves the order to paid through the
        state machine. When a transaction id is given a payment row keyed
        by it is inserted; a duplicate key is a no-op, so the call is safe
        to retry.

        Raises:
            NotFoundError: If the order or its invoice does not exist
            InvalidTransitionError: If the order cannot reach paid
        """
        ensure_role(actor)
        details = payment_details or PaymentDetails()

        with tracer.start_as_current_span("mark_invoice_as_paid") as span:
            span.set_attribute("order_id", order_id)

            async with get_session() as db:
                order = await self.state_machine.load_order_for_update(db, order_id)
                invoice = await self.current_invoice(db, order_id)
                if invoice is None:
                    raise NotFoundError(f"No invoice for order {order_id}", order_id=order_id)

                already_paid = invoice.status == "paid"
                paid_at = _naive_utc(details.paid_at) or self.clock.now()

                if not already_paid:
                    await self.state_machine.advance_to_paid(
                        db, order, actor.actor_id,
                        details.notes or f"Invoice {invoice.invoice_number} marked paid",
                    )
                    invoice.status = "paid"
                    invoice.paid_at = paid_at

                payment_id = None
                if details.transaction_id:
                    payment_id = await insert_ignoring_conflict(
                        db,
                        Payment,
                        {
                            "invoice_id": invoice.id,
                            "external_reference": details.transaction_id,
                            "amount_minor_units": (
                                details.amount if details.amount is not None else invoice.amount_minor_units
                            ),
                            "status": "succeeded",
                            "payment_method": details.payment_method,
                            "paid_at": paid_at,
                        },
                        conflict_columns=["external_reference"],
                    )
                await db.flush()
                projection = project_invoice(invoice)

            span.set_attribute("already_paid", already_paid)

        if not already_paid:
            log_business_event("invoice.paid", order_id=order_id, invoice_number=projection.invoice_number)
            await self.audit.record(
                AuditAction.INVOICE_PAID,
                actor.actor_id,
                "invoice",
                projection.id,
                {
                    "order_id": order_id,
                    "transaction_id": details.transaction_id,
                    "payment_id": payment_id,
                    "payment_method": details.payment_method,
                },
            )
        return projection

    # --► SETTINGS

    async def get_invoice_settings(self) -> InvoiceSettings:
        return await self.config_store.get_invoice_settings()

    async def update_invoice_settings(self, patch: InvoiceSettingsUpdate, actor: Actor) -> InvoiceSettings:
        ensure_role(actor)
        updated = await self.config_store.update_invoice_settings(patch)
        await self.audit.record(
            AuditAction.SETTINGS_UPDATED,
            actor.actor_id,
            "settings",
            "invoice",
            patch.model_dump(exclude_unset=True),
        )
        return updated


_invoice_manager: InvoiceManager | None = None


def get_invoice_manager() -> InvoiceManager:
    global _invoice_manager
    if _invoice_manager is None:
        _invoice_manager = InvoiceManager()
    return _invoice_manager
