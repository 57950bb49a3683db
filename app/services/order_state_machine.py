# ==== ORDER STATE MACHINE SERVICE ==== #

"""
Order state machine service for OrderDesk.

Validates requested status changes against the allowed-transition table and
applies them atomically: the order's status update and its status-history
entry are written in the same transaction, so a change without its history
row (or the reverse) is never observable. The order row is locked for the
check-then-act sequence, which serializes concurrent admin actions and
webhooks across service instances.

Other services that need a status change inside their own transaction
(invoicing, payment reconciliation) call apply_transition() with their
session instead of opening a new one.
"""

from typing import Iterable, List, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.business.errors import (
    InfrastructureError,
    InvalidTransitionError,
    NotFoundError,
    OrderDeskError,
    ValidationError,
)
from app.business.order_status import (
    OrderStatus,
    PRE_INVOICE_STATUSES,
    can_transition,
    get_allowed_transitions,
    is_terminal,
    parse_status,
)
from app.observability.logging import get_logger, log_business_event
from app.observability.metrics import order_transitions_total
from app.observability.tracing import get_tracer
from app.schemas.orders import (
    AllowedTransitionsResponse,
    BulkFailure,
    BulkTransitionResult,
    StatusHistoryItem,
    StatusOption,
    TransitionResult,
)
from app.schemas.settings import InvoiceSettings
from app.security.auth import Actor, ensure_role
from app.services.audit import AuditAction, AuditSink, get_audit_sink
from app.services.notifications import (
    NotificationSender,
    dispatch_notification,
    get_notification_sender,
    render_status_update_email,
)
from app.settings import settings
from app.storage.configuration import ConfigurationStore, get_configuration_store
from app.storage.db import get_session
from app.storage.dialect import locked
from app.storage.models import Order, StatusHistoryEntry


tracer = get_tracer(__name__)
logger = get_logger(__name__)


def coerce_status(value: Union[str, OrderStatus]) -> OrderStatus:
    """Parse a status, turning unknown values into a ValidationError."""
    try:
        return parse_status(value)
    except (ValueError, AttributeError):
        raise ValidationError(f"Unknown order status '{value}'", code="UNKNOWN_STATUS", status=str(value))


class OrderStateMachine:
    """
    Applies order status transitions with an immutable history trail.

    Transitions are validated before any write; an illegal transition raises
    InvalidTransitionError (a ValidationError) and leaves no history row.
    """

    def __init__(
        self,
        notifier: Optional[NotificationSender] = None,
        audit: Optional[AuditSink] = None,
        config_store: Optional[ConfigurationStore] = None,
    ):
        self.notifier = notifier or get_notification_sender()
        self.audit = audit or get_audit_sink()
        self.config_store = config_store or get_configuration_store()

    # --► PURE LOOKUPS

    def get_allowed_transitions(self, current_status: Union[str, OrderStatus]) -> AllowedTransitionsResponse:
        """
        Get the statuses reachable from the current status.

        Args:
            current_status: Current order status

        Returns:
            AllowedTransitionsResponse: Targets with labels and the terminal flag
        """
        status = coerce_status(current_status)
        return AllowedTransitionsResponse(
            current_status=status.value,
            allowed_transitions=[StatusOption(**option) for option in get_allowed_transitions(status)],
            is_terminal=is_terminal(status),
        )

    # --► IN-TRANSACTION PRIMITIVES

    async def load_order_for_update(self, db: AsyncSession, order_id: int) -> Order:
        """
        Load an order holding its row lock until the transaction ends.

        Raises:
            NotFoundError: If the order does not exist
        """
        order = (
            await db.execute(locked(select(Order).where(Order.id == order_id)))
        ).scalar_one_or_none()
        if order is None:
            raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
        return order

    async def apply_transition(
        self,
        db: AsyncSession,
        order: Order,
        target: OrderStatus,
        actor_id: str,
        notes: Optional[str] = None,
        *,
        enforce: bool = True,
    ) -> StatusHistoryEntry:
        """
        Change an order's status and append the history entry in the caller's transaction.

        Args:
            db (AsyncSession): Session of the surrounding transaction
            order (Order): Order loaded (and locked) in that session
            target (OrderStatus): Requested status
            actor_id (str): Who requested the change
            notes (Optional[str]): Free-text reason stored in history
            enforce (bool): Check the transition table; only the manual
                completion override passes False

        Returns:
            StatusHistoryEntry: The flushed history entry

        Raises:
            InvalidTransitionError: If enforce is set and the transition is not allowed
        """
        current = coerce_status(order.status)

        if enforce and not can_transition(current, target):
            order_transitions_total.labels(
                from_status=current.value, to_status=target.value, outcome="rejected"
            ).inc()
            raise InvalidTransitionError(current.value, target.value, order_id=order.id)

        order.status = target.value
        entry = StatusHistoryEntry(
            order_id=order.id,
            previous_status=current.value,
            new_status=target.value,
            actor_id=actor_id,
            notes=notes,
        )
        db.add(entry)
        await db.flush()

        order_transitions_total.labels(
            from_status=current.value, to_status=target.value, outcome="applied"
        ).inc()
        logger.info(
            "Order status changed",
            order_id=order.id,
            previous_status=current.value,
            new_status=target.value,
            actor_id=actor_id,
            override=not enforce,
        )
        return entry

    async def advance_to_paid(
        self, db: AsyncSession, order: Order, actor_id: str, notes: Optional[str] = None
    ) -> List[StatusHistoryEntry]:
        """
        Move an order to paid, passing through invoiced from a quote status.

        Each step is a regular checked transition with its own history entry.
        An order that is already paid is left untouched.

        Raises:
            InvalidTransitionError: If paid is not reachable from the current status
        """
        current = coerce_status(order.status)
        if current == OrderStatus.PAID:
            return []

        entries = []
        if not can_transition(current, OrderStatus.PAID) and current in PRE_INVOICE_STATUSES:
            entries.append(await self.apply_transition(db, order, OrderStatus.INVOICED, actor_id, notes))
        entries.append(await self.apply_transition(db, order, OrderStatus.PAID, actor_id, notes))
        return entries

    # --► PUBLIC OPERATIONS

    async def attempt_transition(
        self,
        order_id: int,
        target_status: Union[str, OrderStatus],
        actor: Actor,
        notes: Optional[str] = None,
        notify_customer: bool = False,
    ) -> TransitionResult:
        """
        Validate and apply one status transition in its own transaction.

        Args:
            order_id (int): Order to transition
            target_status: Requested status
            actor (Actor): Authenticated caller
            notes (Optional[str]): Reason recorded in history
            notify_customer (bool): Email the order contact after commit

        Returns:
            TransitionResult: Previous/new status and the history entry id

        Raises:
            AuthorizationError: If the actor is not an admin
            ValidationError: If the status is unknown or the transition illegal
            NotFoundError: If the order does not exist
        """
        ensure_role(actor)
        target = coerce_status(target_status)

        with tracer.start_as_current_span("attempt_transition") as span:
            span.set_attribute("order_id", order_id)
            span.set_attribute("target_status", target.value)

            async with get_session() as db:
                order = await self.load_order_for_update(db, order_id)
                previous = order.status
                entry = await self.apply_transition(db, order, target, actor.actor_id, notes)
                contact = (order.contact_email, order.contact_name)

            await self.audit.record(
                AuditAction.ORDER_STATUS_CHANGED,
                actor.actor_id,
                "order",
                order_id,
                {"previous_status": previous, "new_status": target.value, "notes": notes},
            )

            result = TransitionResult(
                order_id=order_id,
                previous_status=previous,
                new_status=target.value,
                history_id=entry.id,
            )
            if notify_customer:
                result.notification_sent = await self._notify_status_change(
                    order_id, target, contact, notes
                )
            return result

    async def bulk_transition(
        self,
        order_ids: Iterable[int],
        target_status: Union[str, OrderStatus],
        actor: Actor,
        notes: Optional[str] = None,
    ) -> BulkTransitionResult:
        """
        Apply the same transition to many orders, each independently.

        Each order runs in its own transaction; one order's failure is
        reported in ``failed`` and does not affect the others.

        Args:
            order_ids (Iterable[int]): Orders to transition (duplicates processed once)
            target_status: Requested status
            actor (Actor): Authenticated caller
            notes (Optional[str]): Reason recorded in each history entry

        Returns:
            BulkTransitionResult: Succeeded ids and per-id failures

        Raises:
            ValidationError: If the list is empty, too long or the status unknown
        """
        ensure_role(actor)
        target = coerce_status(target_status)
        unique_ids = list(dict.fromkeys(order_ids))

        if not unique_ids:
            raise ValidationError("At least one order id is required")
        if len(unique_ids) > settings.BULK_TRANSITION_MAX_ORDERS:
            raise ValidationError(
                f"Cannot update more than {settings.BULK_TRANSITION_MAX_ORDERS} orders at once",
                count=len(unique_ids),
            )

        result = BulkTransitionResult()
        for order_id in unique_ids:
            try:
                await self.attempt_transition(order_id, target, actor, notes)
                result.succeeded.append(order_id)
            except OrderDeskError as e:
                result.failed.append(BulkFailure(id=order_id, reason=e.message, code=e.code))
            except Exception as e:
                logger.exception("Bulk transition item failed", order_id=order_id, error=str(e))
                result.failed.append(
                    BulkFailure(id=order_id, reason="Internal error", code="INTERNAL_ERROR")
                )

        log_business_event(
            "order.bulk_status_changed",
            target_status=target.value,
            succeeded=len(result.succeeded),
            failed=len(result.failed),
        )
        await self.audit.record(
            AuditAction.ORDER_BULK_STATUS_CHANGED,
            actor.actor_id,
            "order",
            None,
            {
                "target_status": target.value,
                "succeeded": result.succeeded,
                "failed": [failure.id for failure in result.failed],
            },
        )
        return result

    async def get_status_history(self, order_id: int) -> List[StatusHistoryItem]:
        """Status history of an order, newest first."""
        async with get_session() as db:
            if await db.get(Order, order_id) is None:
                raise NotFoundError(f"Order {order_id} not found", order_id=order_id)
            rows = (
                await db.execute(
                    select(StatusHistoryEntry)
                    .where(StatusHistoryEntry.order_id == order_id)
                    .order_by(StatusHistoryEntry.created_at.desc(), StatusHistoryEntry.id.desc())
                )
            ).scalars().all()
        return [StatusHistoryItem.model_validate(row) for row in rows]

    async def _notify_status_change(
        self, order_id: int, status: OrderStatus, contact: tuple, notes: Optional[str]
    ) -> bool:
        email, name = contact
        try:
            invoice_settings = await self.config_store.get_invoice_settings()
        except InfrastructureError:
            invoice_settings = InvoiceSettings()
        message = render_status_update_email(
            status=status,
            to=email,
            customer_name=name,
            order_id=order_id,
            notes=notes,
            company_name=invoice_settings.company_name,
        )
        if message is None:
            return False
        return await dispatch_notification(self.notifier, message)


_state_machine: OrderStateMachine | None = None


def get_order_state_machine() -> OrderStateMachine:
    global _state_machine
    if _state_machine is None:
        _state_machine = OrderStateMachine()
    return _state_machine
