# ==== PAYMENT RECONCILER SERVICE ==== #

"""
Payment reconciliation for OrderDesk.

Two entry paths lead into the same order state machine:

1. Signed payment-provider webhooks. The envelope signature is an
   HMAC-SHA256 over ``timestamp + token`` with the shared signing key, and
   the timestamp must fall inside the replay window. Failing either check
   rejects the delivery (401) before anything is read or written. Verified
   events are applied in one transaction together with a row in
   ``processed_webhook_events`` keyed by the provider's event id, so a
   redelivered event is acknowledged without being applied twice.
   Everything after verification is acknowledged with a 2xx receipt,
   including unknown event types and internal failures, to keep the
   provider from retrying into a storm.

2. Admin manual completion of an order paid offline. The order row is
   locked, a manual-completion marker guards against double submission and
   a manual invoice and payment pair is written with the transition to
   ``completed``.

Receipt and completion emails go out only after the transaction commits.
"""

import datetime as dt
import hashlib
import hmac
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

import pydantic
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.business.clock import Clock, get_clock
from app.business.errors import (
    ConflictError,
    NotFoundError,
    OrderDeskError,
    ValidationError,
    WebhookRejectedError,
)
from app.business.order_status import (
    MANUAL_COMPLETION_BLOCKED,
    SETTLED_STATUSES,
    OrderStatus,
    can_transition,
)
from app.business.tax import split_tax_inclusive_total
from app.observability.logging import get_logger, log_business_event
from app.observability.metrics import (
    invoices_created_total,
    manual_completions_total,
    payment_events_total,
    webhook_rejections_total,
)
from app.observability.tracing import get_tracer
from app.schemas.payments import (
    ManualCompletionRequest,
    ManualCompletionResult,
    PaymentEventPayload,
    WebhookEnvelope,
    WebhookReceipt,
)
from app.security.auth import SYSTEM_ACTOR_ID, Actor, ensure_role
from app.services.audit import AuditAction, AuditSink, get_audit_sink
from app.services.invoice_manager import (
    OPEN_INVOICE_STATUSES,
    InvoiceManager,
    build_snapshot,
    get_invoice_manager,
)
from app.services.notifications import (
    EmailMessage,
    NotificationSender,
    dispatch_notification,
    get_notification_sender,
    render_manual_completion_email,
    render_payment_receipt,
)
from app.services.order_state_machine import (
    OrderStateMachine,
    coerce_status,
    get_order_state_machine,
)
from app.settings import settings
from app.storage.configuration import ConfigurationStore, get_configuration_store
from app.storage.db import get_session
from app.storage.dialect import insert_ignoring_conflict
from app.storage.models import Invoice, ManualCompletion, Payment, ProcessedWebhookEvent


tracer = get_tracer(__name__)
logger = get_logger(__name__)

CHECKOUT_COMPLETED = "checkout.session.completed"
PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"
CHARGE_REFUNDED = "charge.refunded"


# ==== SIGNATURES ==== #


def compute_webhook_signature(signing_key: str, timestamp: str, token: str) -> str:
    """Hex HMAC-SHA256 of ``timestamp + token`` under the signing key."""
    return hmac.new(
        signing_key.encode("utf-8"),
        f"{timestamp}{token}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def verify_webhook_signature(signing_key: str, timestamp: str, token: str, signature: str) -> bool:
    """Constant-time check of a webhook signature."""
    expected = compute_webhook_signature(signing_key, timestamp, token)
    return hmac.compare_digest(expected, signature or "")


@dataclass
class _Outcome:
    """What a handled event did, for post-commit audit and email."""

    action: AuditAction
    order_id: int
    details: Dict[str, Any] = field(default_factory=dict)
    email: Optional[EmailMessage] = None


# ==== RECONCILER ==== #


class PaymentReconciler:
    """Applies payment events and manual completions to orders and invoices."""

    def __init__(
        self,
        state_machine: Optional[OrderStateMachine] = None,
        invoice_manager: Optional[InvoiceManager] = None,
        notifier: Optional[NotificationSender] = None,
        config_store: Optional[ConfigurationStore] = None,
        audit: Optional[AuditSink] = None,
        clock: Optional[Clock] = None,
        signing_key: Optional[str] = None,
        replay_window_seconds: Optional[int] = None,
    ):
        self.state_machine = state_machine or get_order_state_machine()
        self.invoice_manager = invoice_manager or get_invoice_manager()
        self.notifier = notifier or get_notification_sender()
        self.config_store = config_store or get_configuration_store()
        self.audit = audit or get_audit_sink()
        self.clock = clock or get_clock()
        self.signing_key = settings.PAYMENT_WEBHOOK_SIGNING_KEY if signing_key is None else signing_key
        self.replay_window_seconds = (
            settings.PAYMENT_WEBHOOK_REPLAY_WINDOW_SECONDS
            if replay_window_seconds is None
            else replay_window_seconds
        )
        self._handlers: Dict[str, Callable[..., Awaitable[_Outcome]]] = {
            CHECKOUT_COMPLETED: self._handle_payment_succeeded,
            PAYMENT_SUCCEEDED: self._handle_payment_succeeded,
            PAYMENT_FAILED: self._handle_payment_failed,
            CHARGE_REFUNDED: self._handle_charge_refunded,
        }

    # --► AUTHENTICATION

    def _reject(self, reason: str, **context: Any) -> WebhookRejectedError:
        webhook_rejections_total.labels(reason=reason).inc()
        logger.warning("Payment webhook rejected", reason=reason, **context)
        return WebhookRejectedError(reason)

    def authenticate(self, body: Any) -> WebhookEnvelope:
        """
        Verify a raw webhook body before anything else looks at it.

        Args:
            body (Any): Parsed JSON body of the delivery

        Returns:
            WebhookEnvelope: The verified envelope

        Raises:
            WebhookRejectedError: On a malformed envelope, bad signature or
                a timestamp outside the replay window
        """
        try:
            envelope = WebhookEnvelope.model_validate(body)
        except pydantic.ValidationError:
            raise self._reject("malformed_envelope")

        if not self.signing_key:
            raise self._reject("signing_key_not_configured")

        signature = envelope.signature
        if not verify_webhook_signature(
            self.signing_key, signature.timestamp, signature.token, signature.signature
        ):
            raise self._reject("invalid_signature", event_id=envelope.event_id)

        try:
            event_time = int(signature.timestamp)
        except ValueError:
            raise self._reject("invalid_timestamp", event_id=envelope.event_id)

        now = self.clock.now().replace(tzinfo=dt.timezone.utc).timestamp()
        if abs(now - event_time) > self.replay_window_seconds:
            raise self._reject("replay_window_exceeded", event_id=envelope.event_id)

        return envelope

    # --► WEBHOOK PROCESSING

    async def handle_webhook(self, body: Any) -> WebhookReceipt:
        """
        Authenticate and apply one payment webhook delivery.

        Args:
            body (Any): Parsed JSON body of the delivery

        Returns:
            WebhookReceipt: ``processed`` tells whether state changed; ``reason``
                explains a no-op without exposing internal detail

        Raises:
            WebhookRejectedError: Only for signature and replay failures
        """
        envelope = self.authenticate(body)
        event_type = envelope.event_type

        with tracer.start_as_current_span("handle_payment_webhook") as span:
            span.set_attribute("event_type", event_type)
            span.set_attribute("event_id", envelope.event_id)

            handler = self._handlers.get(event_type)
            if handler is None:
                logger.info("Unhandled payment webhook event type", event_type=event_type, event_id=envelope.event_id)
                payment_events_total.labels(event_type=event_type, outcome="ignored").inc()
                return WebhookReceipt(processed=False, reason="unhandled_event_type")

            try:
                payload = PaymentEventPayload.model_validate(envelope.payload)
            except pydantic.ValidationError as e:
                logger.warning(
                    "Payment webhook payload invalid",
                    event_id=envelope.event_id,
                    errors=e.errors(include_url=False, include_context=False),
                )
                payment_events_total.labels(event_type=event_type, outcome="invalid").inc()
                return WebhookReceipt(processed=False, reason="invalid_payload")

            outcome = None
            try:
                async with get_session() as db:
                    recorded = await insert_ignoring_conflict(
                        db,
                        ProcessedWebhookEvent,
                        {"event_id": envelope.event_id, "event_type": event_type, "order_id": payload.order_id},
                        conflict_columns=["event_id"],
                    )
                    if recorded is not None:
                        outcome = await handler(db, envelope, payload)
            except OrderDeskError as e:
                logger.warning(
                    "Payment webhook not applied",
                    event_id=envelope.event_id,
                    event_type=event_type,
                    code=e.code,
                    error=e.message,
                )
                payment_events_total.labels(event_type=event_type, outcome="failed").inc()
                return WebhookReceipt(processed=False, reason=e.code.lower())
            except Exception as e:
                logger.exception(
                    "Payment webhook processing failed", event_id=envelope.event_id, error=str(e)
                )
                payment_events_total.labels(event_type=event_type, outcome="failed").inc()
                return WebhookReceipt(processed=False, reason="internal_error")

            if outcome is None:
                logger.info("Duplicate payment webhook acknowledged", event_id=envelope.event_id)
                payment_events_total.labels(event_type=event_type, outcome="duplicate").inc()
                return WebhookReceipt(processed=False, reason="duplicate_event")

        payment_events_total.labels(event_type=event_type, outcome="processed").inc()
        log_business_event(outcome.action.value, order_id=outcome.order_id, event_id=envelope.event_id)
        await self.audit.record(
            outcome.action,
            SYSTEM_ACTOR_ID,
            "order",
            outcome.order_id,
            {"event_id": envelope.event_id, "event_type": event_type, **outcome.details},
        )
        if outcome.email is not None:
            await dispatch_notification(self.notifier, outcome.email)
        return WebhookReceipt(processed=True)

    async def _find_invoice(self, db: AsyncSession, order_id: int, reference: Optional[str]) -> Invoice:
        if reference:
            invoice = (
                await db.execute(
                    select(Invoice).where(
                        Invoice.order_id == order_id, Invoice.external_reference == reference
                    )
                )
            ).scalar_one_or_none()
        else:
            invoice = await self.invoice_manager.current_invoice(db, order_id)
        if invoice is None:
            raise NotFoundError(
                f"No invoice for order {order_id}", order_id=order_id, invoice_reference=reference
            )
        return invoice

    async def _find_payment(self, db: AsyncSession, reference: str) -> Optional[Payment]:
        return (
            await db.execute(select(Payment).where(Payment.external_reference == reference))
        ).scalar_one_or_none()

    async def _owning_invoice(self, db: AsyncSession, payment: Payment, order_id: int) -> Invoice:
        """Invoice of a payment found by reference; it must belong to the event's order."""
        invoice = await db.get(Invoice, payment.invoice_id)
        if invoice.order_id != order_id:
            raise ConflictError(
                "Payment reference belongs to another order",
                order_id=order_id,
                payment_reference=payment.external_reference,
            )
        return invoice

    async def _handle_payment_succeeded(
        self, db: AsyncSession, envelope: WebhookEnvelope, payload: PaymentEventPayload
    ) -> _Outcome:
        order = await self.state_machine.load_order_for_update(db, payload.order_id)
        invoice = await self._find_invoice(db, order.id, payload.invoice_reference)
        if invoice.status == "cancelled":
            raise ConflictError("Invoice was cancelled", invoice_number=invoice.invoice_number)

        now = self.clock.now()
        reference = payload.payment_reference or envelope.event_id
        amount = payload.amount if payload.amount is not None else invoice.amount_minor_units

        payment_id = await insert_ignoring_conflict(
            db,
            Payment,
            {
                "invoice_id": invoice.id,
                "external_reference": reference,
                "amount_minor_units": amount,
                "status": "succeeded",
                "payment_method": "card",
                "paid_at": now,
            },
            conflict_columns=["external_reference"],
        )
        if payment_id is None:
            payment = await self._find_payment(db, reference)
            await self._owning_invoice(db, payment, order.id)
            if payment.invoice_id != invoice.id:
                raise ConflictError(
                    "Payment reference belongs to another invoice",
                    invoice_number=invoice.invoice_number,
                    payment_reference=reference,
                )
            if payment.status == "failed":
                payment.status = "succeeded"
                payment.failure_reason = None
                payment.paid_at = now

        newly_paid = invoice.status != "paid"
        if newly_paid:
            invoice.status = "paid"
            invoice.paid_at = now
            if coerce_status(order.status) not in SETTLED_STATUSES:
                await self.state_machine.advance_to_paid(
                    db, order, SYSTEM_ACTOR_ID, f"Payment {reference} received"
                )
        await db.flush()

        company = (await self.config_store.get_invoice_settings(db)).company_name
        email = None
        if newly_paid:
            email = render_payment_receipt(
                to=order.contact_email,
                customer_name=order.contact_name,
                order_id=order.id,
                invoice_number=invoice.invoice_number,
                amount=amount,
                company_name=company,
            )
        return _Outcome(
            AuditAction.PAYMENT_COMPLETED,
            order.id,
            {"invoice_number": invoice.invoice_number, "payment_reference": reference, "amount": amount},
            email,
        )

    async def _handle_payment_failed(
        self, db: AsyncSession, envelope: WebhookEnvelope, payload: PaymentEventPayload
    ) -> _Outcome:
        order = await self.state_machine.load_order_for_update(db, payload.order_id)
        invoice = await self._find_invoice(db, order.id, payload.invoice_reference)
        reference = payload.payment_reference or envelope.event_id
        reason = payload.failure_message or "Payment failed"

        payment_id = await insert_ignoring_conflict(
            db,
            Payment,
            {
                "invoice_id": invoice.id,
                "external_reference": reference,
                "amount_minor_units": payload.amount if payload.amount is not None else invoice.amount_minor_units,
                "status": "failed",
                "payment_method": "card",
                "failure_reason": reason,
            },
            conflict_columns=["external_reference"],
        )
        if payment_id is None:
            payment = await self._find_payment(db, reference)
            await self._owning_invoice(db, payment, order.id)
            if payment.status == "failed":
                payment.failure_reason = reason

        logger.warning("Payment failed", order_id=order.id, invoice_number=invoice.invoice_number, reason=reason)
        return _Outcome(
            AuditAction.PAYMENT_FAILED,
            order.id,
            {"invoice_number": invoice.invoice_number, "payment_reference": reference, "reason": reason},
        )

    async def _handle_charge_refunded(
        self, db: AsyncSession, envelope: WebhookEnvelope, payload: PaymentEventPayload
    ) -> _Outcome:
        order = await self.state_machine.load_order_for_update(db, payload.order_id)

        if payload.payment_reference:
            payment = await self._find_payment(db, payload.payment_reference)
        else:
            invoice = await self._find_invoice(db, order.id, payload.invoice_reference)
            payment = (
                await db.execute(
                    select(Payment)
                    .where(Payment.invoice_id == invoice.id, Payment.status == "succeeded")
                    .order_by(Payment.id.desc())
                    .limit(1)
                )
            ).scalar_one_or_none()
        if payment is None:
            raise NotFoundError("No payment to refund", order_id=order.id)
        invoice = await self._owning_invoice(db, payment, order.id)
        if payment.status != "succeeded":
            raise ConflictError(
                f"Payment in status '{payment.status}' cannot be refunded",
                payment_reference=payment.external_reference,
                status=payment.status,
            )

        payment.status = "refunded"
        details = {"payment_reference": payment.external_reference, "amount": payment.amount_minor_units}

        current = coerce_status(order.status)
        if not can_transition(current, OrderStatus.CANCELLED):
            logger.warning(
                "Refund received for order that cannot be cancelled",
                order_id=order.id,
                status=current.value,
            )
            return _Outcome(
                AuditAction.PAYMENT_REFUND_REVIEW_REQUIRED,
                order.id,
                {**details, "order_status": current.value},
            )

        await self.state_machine.apply_transition(
            db, order, OrderStatus.CANCELLED, SYSTEM_ACTOR_ID,
            f"Payment {payment.external_reference} refunded",
        )
        if invoice.status in OPEN_INVOICE_STATUSES:
            invoice.status = "cancelled"
            invoice.cancelled_at = self.clock.now()
        await db.flush()
        return _Outcome(AuditAction.PAYMENT_REFUNDED, order.id, details)

    # --► MANUAL COMPLETION

    async def manual_complete(self, request: ManualCompletionRequest, actor: Actor) -> ManualCompletionResult:
        """
        Complete an order paid outside the payment provider.

        Args:
            request (ManualCompletionRequest): Amount, method, notes and email flag
            actor (Actor): Authenticated admin

        Returns:
            ManualCompletionResult: Previous/new status and the manual invoice and payment ids

        Raises:
            ConflictError: If the order was already manually completed
            ValidationError: If the order is completed, delivered or cancelled
            NotFoundError: If the order does not exist
        """
        ensure_role(actor)
        order_id = request.order_id

        with tracer.start_as_current_span("manual_complete") as span:
            span.set_attribute("order_id", order_id)
            span.set_attribute("payment_method", request.payment_method)

            async with get_session() as db:
                order = await self.state_machine.load_order_for_update(db, order_id)

                marker = (
                    await db.execute(select(ManualCompletion.id).where(ManualCompletion.order_id == order_id))
                ).scalar_one_or_none()
                if marker is not None:
                    raise ConflictError(
                        f"Order {order_id} was already manually completed",
                        code="ALREADY_COMPLETED",
                        order_id=order_id,
                    )

                previous = coerce_status(order.status)
                if previous in MANUAL_COMPLETION_BLOCKED:
                    raise ValidationError(
                        f"Order in status '{previous.value}' cannot be manually completed",
                        code="ORDER_TERMINAL",
                        order_id=order_id,
                        status=previous.value,
                    )

                now = self.clock.now()
                today = self.clock.today()
                open_invoices = (
                    await db.execute(
                        select(Invoice).where(
                            Invoice.order_id == order_id, Invoice.status.in_(OPEN_INVOICE_STATUSES)
                        )
                    )
                ).scalars().all()
                for open_invoice in open_invoices:
                    open_invoice.status = "cancelled"
                    open_invoice.cancelled_at = now

                invoice_settings = await self.config_store.get_invoice_settings(db)
                tax_settings = await self.config_store.get_tax_settings(db)
                breakdown = split_tax_inclusive_total(
                    request.completion_amount, order.jurisdiction, tax_settings.default_jurisdiction
                )
                line_items = [{
                    "description": f"{order.package_name or order.service_type or 'Order'} (manual completion)",
                    "quantity": 1,
                    "unit_price": breakdown.subtotal,
                    "total": breakdown.subtotal,
                }]

                invoice_number = await self.invoice_manager.allocate_invoice_number(db, invoice_settings)
                invoice = Invoice(
                    order_id=order_id,
                    invoice_number=invoice_number,
                    external_reference=invoice_number,
                    status="paid",
                    is_manual=True,
                    subtotal_minor_units=breakdown.subtotal,
                    tax_minor_units=breakdown.total_tax,
                    amount_minor_units=breakdown.total,
                    jurisdiction=breakdown.jurisdiction,
                    snapshot=build_snapshot(
                        order, breakdown, line_items, today, today, request.notes, invoice_settings
                    ),
                    issue_date=today,
                    due_date=today,
                    paid_at=now,
                )
                db.add(invoice)
                await db.flush()

                payment = Payment(
                    invoice_id=invoice.id,
                    external_reference=f"manual-{order_id}",
                    amount_minor_units=request.completion_amount,
                    status="succeeded",
                    payment_method=request.payment_method,
                    paid_at=now,
                )
                db.add(payment)
                try:
                    await db.flush()
                    db.add(ManualCompletion(
                        order_id=order_id,
                        invoice_id=invoice.id,
                        payment_id=payment.id,
                        actor_id=actor.actor_id,
                        payment_method=request.payment_method,
                        amount_minor_units=request.completion_amount,
                        notes=request.notes,
                    ))
                    await db.flush()
                except IntegrityError as e:
                    raise ConflictError(
                        f"Order {order_id} was already manually completed",
                        code="ALREADY_COMPLETED",
                        order_id=order_id,
                    ) from e

                order.jurisdiction = breakdown.jurisdiction
                order.subtotal = breakdown.subtotal
                order.tax_amount = breakdown.total_tax
                order.total_amount = breakdown.total
                await self.state_machine.apply_transition(
                    db, order, OrderStatus.COMPLETED, actor.actor_id,
                    request.notes or f"Manually completed ({request.payment_method})",
                    enforce=False,
                )

                result = ManualCompletionResult(
                    success=True,
                    order_id=order_id,
                    previous_status=previous.value,
                    new_status=OrderStatus.COMPLETED.value,
                    amount=request.completion_amount,
                    invoice_id=invoice.id,
                    payment_id=payment.id,
                    email_sent=False,
                )
                contact = (order.contact_email, order.contact_name, order.service_type)
                company = invoice_settings.company_name

        manual_completions_total.labels(payment_method=request.payment_method).inc()
        invoices_created_total.labels(kind="manual").inc()
        log_business_event(
            "order.manual_completed",
            order_id=order_id,
            amount=request.completion_amount,
            payment_method=request.payment_method,
        )
        await self.audit.record(
            AuditAction.ORDER_MANUAL_COMPLETED,
            actor.actor_id,
            "order",
            order_id,
            {
                "previous_status": result.previous_status,
                "amount": request.completion_amount,
                "payment_method": request.payment_method,
                "invoice_id": result.invoice_id,
                "payment_id": result.payment_id,
            },
        )

        if request.send_email:
            email, name, service_type = contact
            message = render_manual_completion_email(
                to=email,
                customer_name=name,
                order_id=order_id,
                amount=request.completion_amount,
                service_type=service_type,
                admin_message=request.notes,
                company_name=company,
            )
            result.email_sent = await dispatch_notification(self.notifier, message)
            if result.email_sent:
                await self.audit.record(
                    AuditAction.EMAIL_SENT, actor.actor_id, "order", order_id, {"template": message.template}
                )
        return result


_reconciler: PaymentReconciler | None = None


def get_payment_reconciler() -> PaymentReconciler:
    global _reconciler
    if _reconciler is None:
        _reconciler = PaymentReconciler()
    return _reconciler
