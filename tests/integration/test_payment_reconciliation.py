# ==== PAYMENT RECONCILIATION INTEGRATION TESTS ==== #

"""
Integration tests for signed payment webhooks and admin manual completion.
"""

from datetime import date

import pytest
from sqlalchemy import func, select

from app.business.errors import ConflictError, NotFoundError, ValidationError, WebhookRejectedError
from app.schemas.invoices import InvoiceOptions
from app.schemas.payments import ManualCompletionRequest
from app.services.payment_reconciler import (
    CHARGE_REFUNDED,
    CHECKOUT_COMPLETED,
    PAYMENT_FAILED,
    PAYMENT_SUCCEEDED,
)
from app.storage.db import get_session
from app.storage.models import Payment, ProcessedWebhookEvent
from tests.factories.data_factories import (
    audit_actions,
    count_history,
    fetch_invoices,
    fetch_order,
    fetch_payments,
)


pytestmark = pytest.mark.integration

TODAY = date(2026, 3, 2)


async def _processed_event_count() -> int:
    async with get_session() as db:
        return (await db.execute(select(func.count(ProcessedWebhookEvent.id)))).scalar_one()


async def _invoiced_order(orders, invoice_manager, admin, **fields) -> tuple:
    order_id = await orders.create(status="quoted", **fields)
    invoice = await invoice_manager.create_invoice_from_order(order_id, admin, InvoiceOptions(send_email=True))
    return order_id, invoice


class TestWebhookAuthentication:

    async def test_bad_signature_changes_nothing(self, reconciler, orders, invoice_manager, admin, webhooks):
        order_id, invoice = await _invoiced_order(orders, invoice_manager, admin)
        body = webhooks.create(PAYMENT_SUCCEEDED, {"order_id": order_id}, signature="f" * 64)

        with pytest.raises(WebhookRejectedError):
            await reconciler.handle_webhook(body)

        assert (await fetch_order(order_id)).status == "invoiced"
        assert await fetch_payments(invoice.id) == []
        assert await _processed_event_count() == 0


class TestPaymentSucceeded:

    async def test_settles_invoice_and_order(self, reconciler, orders, invoice_manager, admin, webhooks, sender):
        order_id, invoice = await _invoiced_order(orders, invoice_manager, admin)
        body = webhooks.create(PAYMENT_SUCCEEDED, {"order_id": order_id, "payment_reference": "pi_123"})

        receipt = await reconciler.handle_webhook(body)

        assert (receipt.received, receipt.processed, receipt.reason) == (True, True, None)
        assert (await fetch_order(order_id)).status == "paid"
        stored = (await fetch_invoices(order_id))[0]
        assert stored.status == "paid"
        assert stored.paid_at is not None
        payments = await fetch_payments(invoice.id)
        assert [(p.external_reference, p.status, p.amount_minor_units) for p in payments] == [
            ("pi_123", "succeeded", 11300),
        ]
        assert sender.templates() == ["invoice", "payment_receipt"]
        assert "payment.completed" in await audit_actions()

    async def test_redelivered_event_applied_once(self, reconciler, orders, invoice_manager, admin, webhooks, sender):
        order_id, invoice = await _invoiced_order(orders, invoice_manager, admin)
        body = webhooks.create(PAYMENT_SUCCEEDED, {"order_id": order_id}, event_id="evt_dup")

        first = await reconciler.handle_webhook(body)
        second = await reconciler.handle_webhook(body)

        assert first.processed is True
        assert (second.processed, second.reason) == (False, "duplicate_event")
        assert len(await fetch_payments(invoice.id)) == 1
        assert sender.templates().count("payment_receipt") == 1
        assert await _processed_event_count() == 1

    async def test_second_event_for_same_payment_is_harmless(
        self, reconciler, orders, invoice_manager, admin, webhooks, sender
    ):
        order_id, invoice = await _invoiced_order(orders, invoice_manager, admin)
        payload = {"order_id": order_id, "payment_reference": "pi_9"}

        await reconciler.handle_webhook(webhooks.create(CHECKOUT_COMPLETED, payload))
        history_after_first = await count_history(order_id)
        receipt = await reconciler.handle_webhook(webhooks.create(PAYMENT_SUCCEEDED, payload))

        assert receipt.processed is True
        assert len(await fetch_payments(invoice.id)) == 1
        assert await count_history(order_id) == history_after_first
        assert sender.templates().count("payment_receipt") == 1

    async def test_quote_status_passes_through_invoiced(
        self, reconciler, state_machine, orders, invoice_manager, admin, webhooks
    ):
        order_id = await orders.create(status="quote_viewed")
        await invoice_manager.create_invoice_from_order(order_id, admin)

        await reconciler.handle_webhook(webhooks.create(CHECKOUT_COMPLETED, {"order_id": order_id}))

        history = await state_machine.get_status_history(order_id)
        assert [entry.new_status for entry in history] == ["paid", "invoiced"]
        assert all(entry.actor_id == "system" for entry in history)

    async def test_invoice_matched_by_reference(self, reconciler, orders, invoice_manager, admin, webhooks):
        order_id, invoice = await _invoiced_order(orders, invoice_manager, admin)
        payload = {"order_id": order_id, "invoice_reference": invoice.external_reference, "amount": 5000}

        await reconciler.handle_webhook(webhooks.create(PAYMENT_SUCCEEDED, payload))

        payments = await fetch_payments(invoice.id)
        assert payments[0].amount_minor_units == 5000

    async def test_unknown_order_is_acknowledged_not_recorded(self, reconciler, database, webhooks):
        receipt = await reconciler.handle_webhook(webhooks.create(PAYMENT_SUCCEEDED, {"order_id": 4242}))

        assert (receipt.processed, receipt.reason) == (False, "not_found")
        assert await _processed_event_count() == 0

    async def test_unhandled_event_type(self, reconciler, database, webhooks):
        receipt = await reconciler.handle_webhook(webhooks.create("customer.created", {"id": "cus_1"}))

        assert (receipt.received, receipt.processed, receipt.reason) == (True, False, "unhandled_event_type")

    async def test_invalid_payload(self, reconciler, database, webhooks):
        receipt = await reconciler.handle_webhook(webhooks.create(PAYMENT_SUCCEEDED, {"amount": 10}))

        assert (receipt.processed, receipt.reason) == (False, "invalid_payload")


class TestPaymentFailed:

    async def test_failure_recorded_without_status_change(
        self, reconciler, orders, invoice_manager, admin, webhooks
    ):
        order_id, invoice = await _invoiced_order(orders, invoice_manager, admin)
        payload = {"order_id": order_id, "payment_reference": "pi_7", "failure_message": "Card declined"}

        receipt = await reconciler.handle_webhook(webhooks.create(PAYMENT_FAILED, payload))

        assert receipt.processed is True
        assert (await fetch_order(order_id)).status == "invoiced"
        payments = await fetch_payments(invoice.id)
        assert [(p.status, p.failure_reason) for p in payments] == [("failed", "Card declined")]
        assert "payment.failed" in await audit_actions()

    async def test_later_success_flips_failed_payment(self, reconciler, orders, invoice_manager, admin, webhooks):
        order_id, invoice = await _invoiced_order(orders, invoice_manager, admin)
        await reconciler.handle_webhook(
            webhooks.create(PAYMENT_FAILED, {"order_id": order_id, "payment_reference": "pi_7"})
        )

        await reconciler.handle_webhook(
            webhooks.create(PAYMENT_SUCCEEDED, {"order_id": order_id, "payment_reference": "pi_7"})
        )

        payments = await fetch_payments(invoice.id)
        assert [(p.status, p.failure_reason) for p in payments] == [("succeeded", None)]
        assert (await fetch_order(order_id)).status == "paid"

    async def test_reference_of_another_orders_failed_payment_conflicts(
        self, reconciler, orders, invoice_manager, admin, webhooks
    ):
        first_id, first_invoice = await _invoiced_order(orders, invoice_manager, admin)
        second_id, second_invoice = await _invoiced_order(orders, invoice_manager, admin)
        await reconciler.handle_webhook(
            webhooks.create(PAYMENT_FAILED, {"order_id": second_id, "payment_reference": "pi_x"})
        )

        receipt = await reconciler.handle_webhook(
            webhooks.create(PAYMENT_SUCCEEDED, {"order_id": first_id, "payment_reference": "pi_x"})
        )

        assert (receipt.processed, receipt.reason) == (False, "conflict")
        assert (await fetch_order(first_id)).status == "invoiced"
        assert await fetch_payments(first_invoice.id) == []
        assert [p.status for p in await fetch_payments(second_invoice.id)] == ["failed"]
        assert (await fetch_invoices(second_id))[0].status == "sent"


class TestChargeRefunded:

    async def test_refund_of_paid_order_needs_review(self, reconciler, orders, invoice_manager, admin, webhooks):
        order_id, invoice = await _invoiced_order(orders, invoice_manager, admin)
        await reconciler.handle_webhook(
            webhooks.create(PAYMENT_SUCCEEDED, {"order_id": order_id, "payment_reference": "pi_1"})
        )

        receipt = await reconciler.handle_webhook(
            webhooks.create(CHARGE_REFUNDED, {"order_id": order_id, "payment_reference": "pi_1"})
        )

        assert receipt.processed is True
        assert (await fetch_order(order_id)).status == "paid"
        assert (await fetch_payments(invoice.id))[0].status == "refunded"
        assert "payment.refund_review_required" in await audit_actions()

    async def test_refund_cancels_order_that_allows_it(self, reconciler, orders, webhooks):
        order_id = await orders.create(status="invoiced")
        invoice_id = await orders.create_invoice(order_id, due_date=TODAY, status="sent")
        async with get_session() as db:
            db.add(Payment(
                invoice_id=invoice_id,
                external_reference="pi_5",
                amount_minor_units=11300,
                status="succeeded",
                payment_method="card",
            ))

        receipt = await reconciler.handle_webhook(webhooks.create(CHARGE_REFUNDED, {"order_id": order_id}))

        assert receipt.processed is True
        assert (await fetch_order(order_id)).status == "cancelled"
        assert (await fetch_invoices(order_id))[0].status == "cancelled"
        assert (await fetch_payments(invoice_id))[0].status == "refunded"
        assert "payment.refunded" in await audit_actions()

    async def test_reference_of_another_orders_payment_conflicts(
        self, reconciler, orders, invoice_manager, admin, webhooks
    ):
        first_id, _ = await _invoiced_order(orders, invoice_manager, admin)
        second_id, second_invoice = await _invoiced_order(orders, invoice_manager, admin)
        await reconciler.handle_webhook(
            webhooks.create(PAYMENT_SUCCEEDED, {"order_id": second_id, "payment_reference": "pi_b"})
        )

        receipt = await reconciler.handle_webhook(
            webhooks.create(CHARGE_REFUNDED, {"order_id": first_id, "payment_reference": "pi_b"})
        )

        assert (receipt.processed, receipt.reason) == (False, "conflict")
        assert (await fetch_order(first_id)).status == "invoiced"
        assert (await fetch_order(second_id)).status == "paid"
        assert [p.status for p in await fetch_payments(second_invoice.id)] == ["succeeded"]

    async def test_failed_payment_cannot_be_refunded(self, reconciler, orders, invoice_manager, admin, webhooks):
        order_id, invoice = await _invoiced_order(orders, invoice_manager, admin)
        await reconciler.handle_webhook(
            webhooks.create(PAYMENT_FAILED, {"order_id": order_id, "payment_reference": "pi_f"})
        )

        receipt = await reconciler.handle_webhook(
            webhooks.create(CHARGE_REFUNDED, {"order_id": order_id, "payment_reference": "pi_f"})
        )

        assert (receipt.processed, receipt.reason) == (False, "conflict")
        assert (await fetch_order(order_id)).status == "invoiced"
        assert [p.status for p in await fetch_payments(invoice.id)] == ["failed"]
        assert "payment.refunded" not in await audit_actions()

    async def test_refund_without_payment(self, reconciler, orders, invoice_manager, admin, webhooks):
        order_id, _ = await _invoiced_order(orders, invoice_manager, admin)

        receipt = await reconciler.handle_webhook(webhooks.create(CHARGE_REFUNDED, {"order_id": order_id}))

        assert (receipt.processed, receipt.reason) == (False, "not_found")
        assert (await fetch_order(order_id)).status == "invoiced"


class TestManualCompletion:

    async def test_completes_order_with_manual_invoice(
        self, reconciler, state_machine, orders, invoice_manager, admin, sender
    ):
        order_id = await orders.create(status="quoted", jurisdiction="ON")
        await invoice_manager.create_invoice_from_order(order_id, admin)

        result = await reconciler.manual_complete(
            ManualCompletionRequest(
                order_id=order_id, completion_amount=11300, payment_method="cash", notes="Paid at counter",
                send_email=True,
            ),
            admin,
        )

        assert result.success is True
        assert (result.previous_status, result.new_status) == ("quoted", "completed")
        assert result.email_sent is True

        order = await fetch_order(order_id)
        assert (order.status, order.subtotal, order.tax_amount, order.total_amount) == (
            "completed", 10000, 1300, 11300,
        )
        regular, manual = await fetch_invoices(order_id)
        assert regular.status == "cancelled"
        assert manual.id == result.invoice_id
        assert (manual.status, manual.is_manual, manual.amount_minor_units) == ("paid", True, 11300)
        assert manual.issue_date == manual.due_date

        payments = await fetch_payments(manual.id)
        assert [(p.id, p.external_reference, p.payment_method) for p in payments] == [
            (result.payment_id, f"manual-{order_id}", "cash"),
        ]
        history = await state_machine.get_status_history(order_id)
        assert (history[0].previous_status, history[0].new_status) == ("quoted", "completed")
        assert sender.templates() == ["manual_completion"]
        actions = await audit_actions()
        assert "order.manual_completed" in actions
        assert "email.sent" in actions

    async def test_invoice_total_is_the_collected_amount(self, reconciler, orders, admin):
        order_id = await orders.create(status="invoiced", jurisdiction="ON")

        result = await reconciler.manual_complete(
            ManualCompletionRequest(order_id=order_id, completion_amount=4, payment_method="cash"), admin
        )

        manual = (await fetch_invoices(order_id))[-1]
        assert manual.id == result.invoice_id
        assert manual.amount_minor_units == 4
        assert manual.subtotal_minor_units + manual.tax_minor_units == 4
        assert [p.amount_minor_units for p in await fetch_payments(manual.id)] == [4]
        order = await fetch_order(order_id)
        assert (order.subtotal, order.tax_amount, order.total_amount) == (4, 0, 4)

    async def test_second_submission_conflicts(self, reconciler, orders, admin):
        order_id = await orders.create(status="paid")
        request = ManualCompletionRequest(order_id=order_id, completion_amount=5000, payment_method="check")
        await reconciler.manual_complete(request, admin)

        with pytest.raises(ConflictError) as exc_info:
            await reconciler.manual_complete(request, admin)

        assert exc_info.value.code == "ALREADY_COMPLETED"
        assert len(await fetch_invoices(order_id)) == 1

    @pytest.mark.parametrize("status", ["completed", "delivered", "cancelled"])
    async def test_terminal_orders_rejected(self, reconciler, orders, admin, status):
        order_id = await orders.create(status=status)

        with pytest.raises(ValidationError) as exc_info:
            await reconciler.manual_complete(
                ManualCompletionRequest(order_id=order_id, completion_amount=5000, payment_method="other"),
                admin,
            )

        assert exc_info.value.code == "ORDER_TERMINAL"
        assert await fetch_invoices(order_id) == []
        assert (await fetch_order(order_id)).status == status

    async def test_unknown_order(self, reconciler, database, admin):
        with pytest.raises(NotFoundError):
            await reconciler.manual_complete(
                ManualCompletionRequest(order_id=77, completion_amount=5000, payment_method="cash"), admin
            )
