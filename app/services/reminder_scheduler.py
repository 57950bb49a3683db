# ==== PAYMENT REMINDER SCHEDULER ==== #

"""
Payment reminder scheduler for OrderDesk.

Once per day the sweep finds unpaid invoices whose due date sits on one of
the configured offsets (days before, on, or days after the due date) and
emails the customer. Every send attempt, successful or not, is appended to
``reminder_logs``; that log drives the once-per-day and lifetime-cap rules.

The sweep sends sequentially with a fixed delay between messages to stay
under the email provider's rate limit. Overlapping sweeps are not safe
(they could double-send) and must be serialized by the scheduler that runs
them; see flows/payment_reminders_flow.py.
"""

import asyncio
import datetime as dt
from typing import Dict, List, Optional, Sequence

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.business.clock import Clock, get_clock
from app.business.errors import NotFoundError
from app.business.order_status import SETTLED_STATUSES, OrderStatus
from app.observability.logging import get_logger, log_business_event
from app.observability.metrics import reminders_total
from app.observability.tracing import get_tracer
from app.schemas.reminders import (
    PendingReminder,
    ReminderHistoryItem,
    ReminderPauseStatus,
    ReminderRunSummary,
    ReminderStats,
    ReminderType,
)
from app.schemas.settings import ReminderSettings, ReminderSettingsUpdate
from app.security.auth import SYSTEM_ACTOR_ID, Actor, ensure_role
from app.services.audit import AuditAction, AuditSink, get_audit_sink
from app.services.notifications import (
    NotificationSender,
    get_notification_sender,
    render_reminder_email,
)
from app.settings import settings
from app.storage.configuration import ConfigurationStore, get_configuration_store
from app.storage.db import get_session
from app.storage.models import Invoice, Order, ReminderLog, ReminderPause


tracer = get_tracer(__name__)
logger = get_logger(__name__)

REMINDABLE_INVOICE_STATUSES = ("draft", "sent")
EXCLUDED_ORDER_STATUSES = tuple(s.value for s in (*SETTLED_STATUSES, OrderStatus.CANCELLED))


def classify_reminder(
    days_until_due: int, days_before: Sequence[int], days_after: Sequence[int]
) -> Optional[ReminderType]:
    """
    Decide whether an invoice is due a reminder today.

    Args:
        days_until_due (int): Due date minus today; negative when overdue
        days_before (Sequence[int]): Offsets before the due date
        days_after (Sequence[int]): Offsets after the due date

    Returns:
        Optional[ReminderType]: The reminder kind, or None if today is not a reminder day
    """
    if days_until_due == 0:
        return ReminderType.DUE_TODAY
    if days_until_due > 0 and days_until_due in days_before:
        return ReminderType.UPCOMING
    if days_until_due < 0 and abs(days_until_due) in days_after:
        return ReminderType.OVERDUE
    return None


class ReminderScheduler:
    """Finds, sends and logs payment reminders."""

    def __init__(
        self,
        notifier: Optional[NotificationSender] = None,
        config_store: Optional[ConfigurationStore] = None,
        audit: Optional[AuditSink] = None,
        clock: Optional[Clock] = None,
        send_delay: Optional[float] = None,
    ):
        self.notifier = notifier or get_notification_sender()
        self.config_store = config_store or get_configuration_store()
        self.audit = audit or get_audit_sink()
        self.clock = clock or get_clock()
        self.send_delay = settings.REMINDER_SEND_DELAY_SECONDS if send_delay is None else send_delay

    # --► SELECTION

    async def _sent_counts(self, db: AsyncSession, order_ids: List[int]) -> Dict[int, int]:
        rows = (
            await db.execute(
                select(ReminderLog.order_id, func.count(ReminderLog.id))
                .where(ReminderLog.order_id.in_(order_ids), ReminderLog.status == "sent")
                .group_by(ReminderLog.order_id)
            )
        ).all()
        return {order_id: count for order_id, count in rows}

    async def _reminded_on(self, db: AsyncSession, order_ids: List[int], day: dt.date) -> set:
        rows = await db.execute(
            select(ReminderLog.order_id)
            .where(ReminderLog.order_id.in_(order_ids), ReminderLog.sent_on == day)
            .distinct()
        )
        return set(rows.scalars().all())

    async def _paused(self, db: AsyncSession, order_ids: List[int]) -> set:
        rows = await db.execute(select(ReminderPause.order_id).where(ReminderPause.order_id.in_(order_ids)))
        return set(rows.scalars().all())

    async def _select_pending(
        self, db: AsyncSession, today: dt.date, order_id: Optional[int] = None
    ) -> List[PendingReminder]:
        reminder_settings = await self.config_store.get_reminder_settings(db)

        query = (
            select(Invoice, Order)
            .join(Order, Order.id == Invoice.order_id)
            .where(
                Invoice.status.in_(REMINDABLE_INVOICE_STATUSES),
                Order.status.not_in(EXCLUDED_ORDER_STATUSES),
            )
            .order_by(Invoice.due_date.asc(), Invoice.id.asc())
        )
        if order_id is not None:
            query = query.where(Order.id == order_id)
        rows = (await db.execute(query)).all()
        if not rows:
            return []

        order_ids = list({order.id for _, order in rows})
        sent_counts = await self._sent_counts(db, order_ids)
        reminded_today = await self._reminded_on(db, order_ids, today)
        paused = await self._paused(db, order_ids)

        pending = []
        seen = set()
        for invoice, order in rows:
            if order.id in seen or order.id in paused or order.id in reminded_today:
                continue
            sent = sent_counts.get(order.id, 0)
            if sent >= reminder_settings.max_reminders:
                continue

            days_until_due = (invoice.due_date - today).days
            reminder_type = classify_reminder(
                days_until_due, reminder_settings.days_before, reminder_settings.days_after
            )
            if reminder_type is None:
                continue

            seen.add(order.id)
            pending.append(PendingReminder(
                order_id=order.id,
                invoice_id=invoice.id,
                invoice_number=invoice.invoice_number,
                customer_name=order.contact_name,
                customer_email=order.contact_email,
                amount=invoice.amount_minor_units,
                due_date=invoice.due_date,
                days_until_due=days_until_due,
                reminder_type=reminder_type,
                reminders_sent=sent,
            ))
        return pending

    async def get_pending_reminders(self) -> List[PendingReminder]:
        """
        Invoices that should be reminded about today.

        An order appears at most once. Orders that are paused, already had a
        reminder attempt today, or reached ``max_reminders`` sent reminders
        are excluded.

        Returns:
            List[PendingReminder]: Due reminders, earliest due date first
        """
        async with get_session() as db:
            return await self._select_pending(db, self.clock.today())

    # --► SENDING

    async def _log_attempt(
        self, reminder: PendingReminder, status: str, error_message: Optional[str] = None
    ) -> None:
        async with get_session() as db:
            db.add(ReminderLog(
                order_id=reminder.order_id,
                invoice_id=reminder.invoice_id,
                reminder_type=reminder.reminder_type.value,
                days_until_due=reminder.days_until_due,
                recipient=reminder.customer_email,
                status=status,
                error_message=error_message,
                sent_on=self.clock.today(),
            ))

    async def send_payment_reminder(self, reminder: PendingReminder) -> bool:
        """
        Email one reminder and log the attempt.

        A failed send is logged as ``failed`` and not retried here.

        Args:
            reminder (PendingReminder): Reminder from get_pending_reminders()

        Returns:
            bool: True if the provider accepted the email
        """
        invoice_settings = await self.config_store.get_invoice_settings()
        message = render_reminder_email(
            reminder_type=reminder.reminder_type.value,
            to=reminder.customer_email,
            customer_name=reminder.customer_name,
            order_id=reminder.order_id,
            invoice_number=reminder.invoice_number,
            amount=reminder.amount,
            due_date=reminder.due_date.isoformat(),
            days_until_due=reminder.days_until_due,
            company_name=invoice_settings.company_name,
        )

        with tracer.start_as_current_span("send_payment_reminder") as span:
            span.set_attribute("order_id", reminder.order_id)
            span.set_attribute("reminder_type", reminder.reminder_type.value)
            try:
                await self.notifier.send(message)
            except Exception as e:
                logger.error(
                    "Failed to send payment reminder",
                    order_id=reminder.order_id,
                    invoice_number=reminder.invoice_number,
                    error=str(e),
                )
                reminders_total.labels(reminder_type=reminder.reminder_type.value, outcome="failed").inc()
                await self._log_attempt(reminder, "failed", str(e)[:1000])
                return False

        await self._log_attempt(reminder, "sent")
        reminders_total.labels(reminder_type=reminder.reminder_type.value, outcome="sent").inc()
        logger.info(
            "Payment reminder sent",
            order_id=reminder.order_id,
            invoice_number=reminder.invoice_number,
            reminder_type=reminder.reminder_type.value,
        )
        await self.audit.record(
            AuditAction.REMINDER_SENT,
            SYSTEM_ACTOR_ID,
            "order",
            reminder.order_id,
            {"invoice_number": reminder.invoice_number, "reminder_type": reminder.reminder_type.value},
        )
        return True

    async def _still_due(self, reminder: PendingReminder) -> bool:
        async with get_session() as db:
            current = await self._select_pending(db, self.clock.today(), reminder.order_id)
        return any(item.invoice_id == reminder.invoice_id for item in current)

    async def process_all_reminders(self) -> ReminderRunSummary:
        """
        Send every pending reminder, one at a time.

        Each item is re-checked just before sending; items paid, paused or
        reminded since selection count as skipped. A failure on one item
        never stops the sweep.

        Returns:
            ReminderRunSummary: Counts of sent, failed and skipped reminders
        """
        summary = ReminderRunSummary()

        with tracer.start_as_current_span("process_all_reminders") as span:
            pending = await self.get_pending_reminders()
            span.set_attribute("pending", len(pending))

            for index, reminder in enumerate(pending):
                if index and self.send_delay:
                    await asyncio.sleep(self.send_delay)
                try:
                    if not await self._still_due(reminder):
                        summary.skipped += 1
                        reminders_total.labels(
                            reminder_type=reminder.reminder_type.value, outcome="skipped"
                        ).inc()
                        continue
                    if await self.send_payment_reminder(reminder):
                        summary.sent += 1
                    else:
                        summary.failed += 1
                except Exception as e:
                    logger.exception("Reminder processing failed", order_id=reminder.order_id, error=str(e))
                    summary.failed += 1

        log_business_event("reminders.processed", **summary.model_dump())
        return summary

    # --► PAUSE / RESUME

    async def pause_reminders(
        self, order_id: int, actor: Actor, reason: Optional[str] = None
    ) -> ReminderPauseStatus:
        """Stop reminders for an order until resumed."""
        ensure_role(actor)
        async with get_session() as db:
            if await db.get(Order, order_id) is None:
                raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
            pause = await self.config_store.set_reminder_pause(db, order_id, actor.actor_id, reason)
            status = ReminderPauseStatus(
                order_id=order_id,
                paused=True,
                reason=pause.reason,
                paused_by=pause.paused_by,
                paused_at=pause.paused_at,
            )

        await self.audit.record(AuditAction.REMINDER_PAUSED, actor.actor_id, "order", order_id, {"reason": reason})
        return status

    async def resume_reminders(self, order_id: int, actor: Actor) -> ReminderPauseStatus:
        ensure_role(actor)
        async with get_session() as db:
            if await db.get(Order, order_id) is None:
                raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
            removed = await self.config_store.clear_reminder_pause(db, order_id)

        if removed:
            await self.audit.record(AuditAction.REMINDER_RESUMED, actor.actor_id, "order", order_id)
        return ReminderPauseStatus(order_id=order_id, paused=False)

    async def are_reminders_paused(self, order_id: int) -> bool:
        async with get_session() as db:
            return await self.config_store.get_reminder_pause(db, order_id) is not None

    # --► HISTORY & STATS

    async def get_reminder_history(self, order_id: int) -> List[ReminderHistoryItem]:
        """Reminder attempts for an order, newest first."""
        async with get_session() as db:
            rows = (
                await db.execute(
                    select(ReminderLog)
                    .where(ReminderLog.order_id == order_id)
                    .order_by(ReminderLog.created_at.desc(), ReminderLog.id.desc())
                )
            ).scalars().all()
        return [ReminderHistoryItem.model_validate(row) for row in rows]

    async def get_reminder_stats(self) -> ReminderStats:
        today = self.clock.today()
        async with get_session() as db:
            outcome_rows = (
                await db.execute(
                    select(ReminderLog.status, func.count(ReminderLog.id)).group_by(ReminderLog.status)
                )
            ).all()
            type_rows = (
                await db.execute(
                    select(ReminderLog.reminder_type, func.count(ReminderLog.id))
                    .where(ReminderLog.status == "sent")
                    .group_by(ReminderLog.reminder_type)
                )
            ).all()
            sent_today = (
                await db.execute(
                    select(func.count(ReminderLog.id)).where(
                        ReminderLog.status == "sent", ReminderLog.sent_on == today
                    )
                )
            ).scalar_one()
            paused_orders = (await db.execute(select(func.count()).select_from(ReminderPause))).scalar_one()

        outcomes = dict(outcome_rows)
        by_type = {reminder_type.value: 0 for reminder_type in ReminderType}
        by_type.update(dict(type_rows))
        return ReminderStats(
            total_sent=outcomes.get("sent", 0),
            total_failed=outcomes.get("failed", 0),
            sent_today=sent_today,
            paused_orders=paused_orders,
            by_type=by_type,
        )

    # --► SETTINGS

    async def get_reminder_settings(self) -> ReminderSettings:
        return await self.config_store.get_reminder_settings()

    async def update_reminder_settings(self, patch: ReminderSettingsUpdate, actor: Actor) -> ReminderSettings:
        ensure_role(actor)
        updated = await self.config_store.update_reminder_settings(patch)
        await self.audit.record(
            AuditAction.SETTINGS_UPDATED,
            actor.actor_id,
            "settings",
            "reminder",
            patch.model_dump(exclude_unset=True),
        )
        return updated


_scheduler: ReminderScheduler | None = None


def get_reminder_scheduler() -> ReminderScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = ReminderScheduler()
    return _scheduler
