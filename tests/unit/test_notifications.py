# ==== OUTBOUND NOTIFICATION TESTS ==== #

"""
Unit tests for email rendering and delivery.

The Mailgun HTTP API is mocked with respx.
"""

import httpx
import pytest
import respx

from app.business.order_status import OrderStatus
from app.services.notifications import (
    EmailMessage,
    LogOnlySender,
    MailgunSender,
    NotificationError,
    dispatch_notification,
    render_invoice_email,
    render_reminder_email,
    render_status_update_email,
    sanitize_subject,
)


MAILGUN_URL = "https://api.mailgun.net/v3/mg.example.com/messages"


@pytest.fixture
def message():
    return EmailMessage(to="jane@example.com", subject="Hello", html="<p>Hi</p>", template="invoice", order_id=1)


@pytest.mark.unit
class TestMailgunSender:

    @respx.mock
    async def test_posts_message(self, message):
        route = respx.post(MAILGUN_URL).mock(return_value=httpx.Response(200, json={"id": "<1@mg>"}))

        await MailgunSender(api_key="key-123", domain="mg.example.com").send(message)

        assert route.called
        request = route.calls.last.request
        assert request.headers["authorization"].startswith("Basic ")
        assert b"subject=Hello" in request.content
        assert b"to=jane%40example.com" in request.content

    @respx.mock
    async def test_provider_rejection_raises(self, message):
        respx.post(MAILGUN_URL).mock(return_value=httpx.Response(400, json={"message": "bad"}))

        with pytest.raises(NotificationError) as exc_info:
            await MailgunSender(api_key="key-123", domain="mg.example.com").send(message)

        assert exc_info.value.details["status"] == 400

    @respx.mock
    async def test_transport_error_raises(self, message):
        respx.post(MAILGUN_URL).mock(side_effect=httpx.ConnectError("down"))

        with pytest.raises(NotificationError):
            await MailgunSender(api_key="key-123", domain="mg.example.com").send(message)

    @respx.mock
    async def test_dispatch_swallows_failures(self, message):
        respx.post(MAILGUN_URL).mock(return_value=httpx.Response(500))

        sent = await dispatch_notification(MailgunSender(api_key="k", domain="mg.example.com"), message)

        assert sent is False

    async def test_dispatch_reports_success(self, message):
        sender = LogOnlySender()

        assert await dispatch_notification(sender, message) is True
        assert sender.sent == [message]


@pytest.mark.unit
class TestTemplates:

    def test_subject_cannot_inject_headers(self):
        assert sanitize_subject("Invoice\r\nBcc: evil@example.com") == "Invoice Bcc: evil@example.com"

    def test_invoice_email_escapes_customer_input(self):
        message = render_invoice_email(
            to="jane@example.com",
            customer_name="<script>alert(1)</script>",
            order_id=1,
            invoice_number="INV-1001",
            line_items=[{"description": "Gold", "quantity": 1, "total": 10000}],
            tax_lines=[{"label": "Total", "amount": "$113.00"}],
            total=11300,
            due_date="2026-03-16",
            notes=None,
            company_name="Acme",
        )

        assert "<script>" not in message.html
        assert "&lt;script&gt;" in message.html
        assert "$113.00" in message.html
        assert message.subject == "Invoice INV-1001 - Acme"

    def test_overdue_reminder_copy(self):
        message = render_reminder_email(
            reminder_type="overdue",
            to="jane@example.com",
            customer_name="Jane",
            order_id=1,
            invoice_number="INV-1001",
            amount=11300,
            due_date="2026-02-27",
            days_until_due=-3,
            company_name="Acme",
        )

        assert message.template == "reminder_overdue"
        assert message.subject == "Overdue Payment - Invoice INV-1001"
        assert "3 day(s) overdue" in message.html

    def test_status_update_only_for_customer_facing_statuses(self):
        kwargs = dict(to="jane@example.com", customer_name="Jane", order_id=1, notes=None, company_name="Acme")

        assert render_status_update_email(status=OrderStatus.INVOICED, **kwargs) is None
        assert render_status_update_email(status=OrderStatus.DELIVERED, **kwargs).template == "status_delivered"
