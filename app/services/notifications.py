# ==== OUTBOUND NOTIFICATIONS ==== #

"""
Outbound customer email for OrderDesk.

Services build an EmailMessage from one of the templates below and hand it
to dispatch_notification() only after their transaction has committed.
Delivery is best-effort: a failed send is logged and counted, never raised,
and never rolls back or blocks the caller (at-least-once, not
exactly-once).

Production delivery goes through the Mailgun HTTP API with httpx; when
notifications are disabled a log-only sender records what would have been
sent.
"""

import html
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import httpx

from app.business.errors import InfrastructureError
from app.business.order_status import OrderStatus, get_status_label
from app.business.tax import format_minor_units
from app.observability.logging import get_logger
from app.observability.metrics import notifications_sent_total
from app.observability.tracing import get_tracer
from app.settings import settings


logger = get_logger(__name__)
tracer = get_tracer(__name__)


class NotificationError(InfrastructureError):
    """Raised by senders when the provider rejects or cannot be reached."""

    code = "NOTIFICATION_FAILED"


@dataclass
class EmailMessage:
    """A rendered email ready for delivery."""

    to: str
    subject: str
    html: str
    template: str
    order_id: Optional[int] = None
    tags: List[str] = field(default_factory=list)


class NotificationSender(Protocol):
    async def send(self, message: EmailMessage) -> None:
        ...


def sanitize_subject(subject: str) -> str:
    """Strip line breaks so a subject can never inject extra headers."""
    return " ".join(subject.replace("\r", " ").replace("\n", " ").split())[:200]


# ==== SENDERS ==== #


class MailgunSender:
    """Deliver email through the Mailgun messages API."""

    def __init__(
        self,
        api_key: str,
        domain: str,
        base_url: str = "https://api.mailgun.net/v3",
        sender: str = "OrderDesk <no-reply@orderdesk.local>",
        timeout: float = 10.0,
    ):
        self.api_key = api_key
        self.domain = domain
        self.base_url = base_url.rstrip("/")
        self.sender = sender
        self.timeout = timeout

    async def send(self, message: EmailMessage) -> None:
        """
        Send one message.

        Args:
            message (EmailMessage): Rendered message

        Raises:
            NotificationError: On transport errors or non-2xx responses
        """
        data: Dict[str, Any] = {
            "from": self.sender,
            "to": message.to,
            "subject": sanitize_subject(message.subject),
            "html": message.html,
            "o:tag": [message.template, *message.tags],
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/{self.domain}/messages",
                    auth=("api", self.api_key),
                    data=data,
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise NotificationError(
                "Email provider rejected the message",
                status=e.response.status_code,
                template=message.template,
            ) from e
        except httpx.HTTPError as e:
            raise NotificationError(
                "Email provider unreachable", template=message.template
            ) from e


class LogOnlySender:
    """Record messages in the log instead of delivering them."""

    def __init__(self):
        self.sent: List[EmailMessage] = []

    async def send(self, message: EmailMessage) -> None:
        self.sent.append(message)
        logger.info(
            "Notification suppressed (notifications disabled)",
            template=message.template,
            order_id=message.order_id,
        )


_sender: NotificationSender | None = None


def get_notification_sender() -> NotificationSender:
    """Build the configured sender once per process."""
    global _sender
    if _sender is None:
        if settings.NOTIFICATIONS_ENABLED and settings.MAILGUN_API_KEY and settings.MAILGUN_DOMAIN:
            _sender = MailgunSender(
                api_key=settings.MAILGUN_API_KEY,
                domain=settings.MAILGUN_DOMAIN,
                base_url=settings.MAILGUN_BASE_URL,
                sender=settings.EMAIL_FROM,
                timeout=settings.NOTIFICATION_TIMEOUT_SECONDS,
            )
        else:
            _sender = LogOnlySender()
    return _sender


async def dispatch_notification(sender: NotificationSender, message: EmailMessage) -> bool:
    """
    Send a message after commit without letting a failure escape.

    Args:
        sender (NotificationSender): Delivery backend
        message (EmailMessage): Rendered message

    Returns:
        bool: True if the sender accepted the message
    """
    with tracer.start_as_current_span("notification_send") as span:
        span.set_attribute("notification.template", message.template)
        try:
            await sender.send(message)
        except Exception as e:
            notifications_sent_total.labels(template=message.template, outcome="failed").inc()
            span.set_attribute("notification.failed", True)
            logger.warning(
                "Notification send failed",
                template=message.template,
                order_id=message.order_id,
                error=str(e),
            )
            return False

    notifications_sent_total.labels(template=message.template, outcome="sent").inc()
    logger.info("Notification sent", template=message.template, order_id=message.order_id)
    return True


# ==== TEMPLATES ==== #


def _e(value: Any) -> str:
    return html.escape("" if value is None else str(value))


def _layout(title: str, body: str, company_name: str) -> str:
    return (
        "<!DOCTYPE html><html><body style=\"font-family: Arial, sans-serif; color: #222;\">"
        f"<h1 style=\"font-size: 20px;\">{_e(title)}</h1>"
        f"{body}"
        f"<p style=\"color: #777; font-size: 12px;\">{_e(company_name)}</p>"
        "</body></html>"
    )


def render_invoice_email(
    *,
    to: str,
    customer_name: str,
    order_id: int,
    invoice_number: str,
    line_items: List[Dict[str, Any]],
    tax_lines: List[Dict[str, str]],
    total: int,
    due_date: str,
    notes: Optional[str],
    company_name: str,
) -> EmailMessage:
    rows = "".join(
        f"<tr><td>{_e(item['description'])}</td><td>{item['quantity']}</td>"
        f"<td>{format_minor_units(item['total'])}</td></tr>"
        for item in line_items
    )
    totals = "".join(f"<p>{_e(line['label'])}: {_e(line['amount'])}</p>" for line in tax_lines)
    body = (
        f"<p>Hi {_e(customer_name)},</p>"
        f"<p>Please find your invoice <strong>{_e(invoice_number)}</strong> below. "
        f"Payment of <strong>{format_minor_units(total)}</strong> is due by {_e(due_date)}.</p>"
        f"<table>{rows}</table>{totals}"
        + (f"<p>{_e(notes)}</p>" if notes else "")
    )
    return EmailMessage(
        to=to,
        subject=f"Invoice {invoice_number} - {company_name}",
        html=_layout(f"Invoice {invoice_number}", body, company_name),
        template="invoice",
        order_id=order_id,
    )


_REMINDER_COPY = {
    "upcoming": (
        "Payment Reminder - Invoice {number}",
        "This is a friendly reminder that invoice {number} for {amount} is due in {days} day(s), on {due}.",
    ),
    "due_today": (
        "Payment Due Today - Invoice {number}",
        "Invoice {number} for {amount} is due today ({due}).",
    ),
    "overdue": (
        "Overdue Payment - Invoice {number}",
        "Invoice {number} for {amount} was due on {due} and is now {days} day(s) overdue.",
    ),
}


def render_reminder_email(
    *,
    reminder_type: str,
    to: str,
    customer_name: str,
    order_id: int,
    invoice_number: str,
    amount: int,
    due_date: str,
    days_until_due: int,
    company_name: str,
) -> EmailMessage:
    subject_tpl, line_tpl = _REMINDER_COPY[reminder_type]
    values = {
        "number": invoice_number,
        "amount": format_minor_units(amount),
        "due": due_date,
        "days": abs(days_until_due),
    }
    subject = subject_tpl.format(**values)
    body = (
        f"<p>Hi {_e(customer_name)},</p>"
        f"<p>{_e(line_tpl.format(**values))}</p>"
        "<p>If you have already paid, please disregard this message.</p>"
    )
    return EmailMessage(
        to=to,
        subject=subject,
        html=_layout(subject, body, company_name),
        template=f"reminder_{reminder_type}",
        order_id=order_id,
    )


def render_payment_receipt(
    *,
    to: str,
    customer_name: str,
    order_id: int,
    invoice_number: str,
    amount: int,
    company_name: str,
) -> EmailMessage:
    body = (
        f"<p>Hi {_e(customer_name)},</p>"
        f"<p>We received your payment of <strong>{format_minor_units(amount)}</strong> "
        f"for invoice {_e(invoice_number)}. Thank you!</p>"
    )
    return EmailMessage(
        to=to,
        subject=f"Payment Received - Order #{order_id}",
        html=_layout("Payment received", body, company_name),
        template="payment_receipt",
        order_id=order_id,
    )


def render_manual_completion_email(
    *,
    to: str,
    customer_name: str,
    order_id: int,
    amount: int,
    service_type: Optional[str],
    admin_message: Optional[str],
    company_name: str,
) -> EmailMessage:
    body = (
        f"<p>Hi {_e(customer_name)},</p>"
        f"<p>Your order #{order_id}"
        + (f" ({_e(service_type)})" if service_type else "")
        + f" has been completed and a payment of <strong>{format_minor_units(amount)}</strong> was recorded.</p>"
        + (f"<p>{_e(admin_message)}</p>" if admin_message else "")
    )
    return EmailMessage(
        to=to,
        subject=f"Order Completed - Order #{order_id}",
        html=_layout("Order completed", body, company_name),
        template="manual_completion",
        order_id=order_id,
    )


_STATUS_UPDATE_COPY = {
    OrderStatus.IN_PROGRESS: "We have started working on your order.",
    OrderStatus.QUOTED: "Your quote is ready for review.",
    OrderStatus.COMPLETED: "Your order is complete.",
    OrderStatus.DELIVERED: "Your order has been delivered.",
    OrderStatus.CANCELLED: "Your order has been cancelled.",
}


def render_status_update_email(
    *,
    status: OrderStatus,
    to: str,
    customer_name: str,
    order_id: int,
    notes: Optional[str],
    company_name: str,
) -> Optional[EmailMessage]:
    """Status-change email, or None for statuses customers are not told about."""
    copy = _STATUS_UPDATE_COPY.get(status)
    if copy is None:
        return None
    label = get_status_label(status)
    body = (
        f"<p>Hi {_e(customer_name)},</p><p>{_e(copy)}</p>"
        + (f"<p>{_e(notes)}</p>" if notes else "")
    )
    return EmailMessage(
        to=to,
        subject=f"Order #{order_id} - {label}",
        html=_layout(f"Order {label}", body, company_name),
        template=f"status_{status.value}",
        order_id=order_id,
    )
