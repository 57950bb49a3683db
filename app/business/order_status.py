# ==== ORDER STATUS STATE TABLE ==== #

"""
Order status definitions and the allowed-transition table for OrderDesk.

This module is the single source of truth for which order statuses exist,
how they are labelled for display and which transitions between them are
legal. It performs no I/O; the order state machine service applies these
rules inside a store transaction.
"""

from enum import Enum
from typing import Dict, FrozenSet, List


# ==== ENUMERATION DEFINITIONS ==== #


class OrderStatus(str, Enum):
    """Lifecycle status of a service order."""

    PENDING = "pending"
    SUBMITTED = "submitted"
    IN_PROGRESS = "in_progress"
    QUOTED = "quoted"
    QUOTE_VIEWED = "quote_viewed"
    QUOTE_ACCEPTED = "quote_accepted"
    INVOICED = "invoiced"
    PAID = "paid"
    COMPLETED = "completed"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


# ==== TRANSITION TABLE ==== #


ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.SUBMITTED, OrderStatus.CANCELLED}),
    OrderStatus.SUBMITTED: frozenset({
        OrderStatus.IN_PROGRESS, OrderStatus.QUOTED, OrderStatus.CANCELLED,
    }),
    OrderStatus.IN_PROGRESS: frozenset({OrderStatus.QUOTED, OrderStatus.CANCELLED}),
    OrderStatus.QUOTED: frozenset({
        OrderStatus.INVOICED, OrderStatus.IN_PROGRESS, OrderStatus.CANCELLED,
    }),
    OrderStatus.QUOTE_VIEWED: frozenset({
        OrderStatus.QUOTE_ACCEPTED, OrderStatus.INVOICED,
        OrderStatus.IN_PROGRESS, OrderStatus.CANCELLED,
    }),
    OrderStatus.QUOTE_ACCEPTED: frozenset({
        OrderStatus.INVOICED, OrderStatus.IN_PROGRESS, OrderStatus.CANCELLED,
    }),
    OrderStatus.INVOICED: frozenset({OrderStatus.PAID, OrderStatus.CANCELLED}),
    OrderStatus.PAID: frozenset({
        OrderStatus.IN_PROGRESS, OrderStatus.COMPLETED, OrderStatus.DELIVERED,
    }),
    OrderStatus.COMPLETED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

STATUS_LABELS: Dict[OrderStatus, str] = {
    OrderStatus.PENDING: "Pending",
    OrderStatus.SUBMITTED: "Submitted",
    OrderStatus.IN_PROGRESS: "In Progress",
    OrderStatus.QUOTED: "Quoted",
    OrderStatus.QUOTE_VIEWED: "Quote Viewed",
    OrderStatus.QUOTE_ACCEPTED: "Quote Accepted",
    OrderStatus.INVOICED: "Invoiced",
    OrderStatus.PAID: "Paid",
    OrderStatus.COMPLETED: "Completed",
    OrderStatus.DELIVERED: "Delivered",
    OrderStatus.CANCELLED: "Cancelled",
}

TERMINAL_STATUSES: FrozenSet[OrderStatus] = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)

# Statuses a manual completion may not start from.
MANUAL_COMPLETION_BLOCKED: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.COMPLETED, OrderStatus.DELIVERED, OrderStatus.CANCELLED,
})

# Statuses in which money has already been collected for the order.
SETTLED_STATUSES: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.PAID, OrderStatus.COMPLETED, OrderStatus.DELIVERED,
})

# Quote-side statuses from which a payment may settle via an implicit invoicing step.
PRE_INVOICE_STATUSES: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.QUOTED, OrderStatus.QUOTE_VIEWED, OrderStatus.QUOTE_ACCEPTED,
})


# ==== LOOKUP HELPERS ==== #


def parse_status(value: str) -> OrderStatus:
    """
    Parse a raw status string into an OrderStatus.

    Args:
        value (str): Raw status value

    Returns:
        OrderStatus: Parsed status

    Raises:
        ValueError: If the value is not a known status
    """
    if isinstance(value, OrderStatus):
        return value
    return OrderStatus(value.strip().lower())


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def is_terminal(status: OrderStatus) -> bool:
    return status in TERMINAL_STATUSES


def get_status_label(status: OrderStatus) -> str:
    return STATUS_LABELS[status]


def get_allowed_transitions(current: OrderStatus) -> List[Dict[str, str]]:
    """
    Get the statuses reachable from the current status with display labels.

    Pure lookup used by callers to pre-validate a transition; targets are
    returned in lifecycle order so UIs render them consistently.

    Args:
        current (OrderStatus): Current order status

    Returns:
        List[Dict[str, str]]: Entries of the form {"status", "label"}
    """
    targets = ALLOWED_TRANSITIONS[current]
    return [
        {"status": status.value, "label": STATUS_LABELS[status]}
        for status in OrderStatus
        if status in targets
    ]
