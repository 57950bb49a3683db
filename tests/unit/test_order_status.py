# ==== ORDER STATUS TABLE TESTS ==== #

"""Unit tests for the order status transition table and its lookups."""

from itertools import product

import pytest

from app.business.errors import ValidationError
from app.business.order_status import (
    ALLOWED_TRANSITIONS,
    OrderStatus,
    can_transition,
    get_allowed_transitions,
    is_terminal,
    parse_status,
)
from app.services.order_state_machine import OrderStateMachine


LIFECYCLE = {
    "pending": {"submitted", "cancelled"},
    "submitted": {"in_progress", "quoted", "cancelled"},
    "in_progress": {"quoted", "cancelled"},
    "quoted": {"invoiced", "in_progress", "cancelled"},
    "quote_viewed": {"quote_accepted", "invoiced", "in_progress", "cancelled"},
    "quote_accepted": {"invoiced", "in_progress", "cancelled"},
    "invoiced": {"paid", "cancelled"},
    "paid": {"in_progress", "completed", "delivered"},
    "completed": {"delivered"},
    "delivered": set(),
    "cancelled": set(),
}

DISALLOWED_PAIRS = [
    (current, target)
    for current, target in product(OrderStatus, OrderStatus)
    if target.value not in LIFECYCLE[current.value]
]


@pytest.mark.unit
class TestTransitionTable:

    @pytest.mark.parametrize("current,target", [
        (OrderStatus.PENDING, OrderStatus.SUBMITTED),
        (OrderStatus.SUBMITTED, OrderStatus.QUOTED),
        (OrderStatus.QUOTED, OrderStatus.INVOICED),
        (OrderStatus.QUOTE_VIEWED, OrderStatus.QUOTE_ACCEPTED),
        (OrderStatus.INVOICED, OrderStatus.PAID),
        (OrderStatus.PAID, OrderStatus.COMPLETED),
        (OrderStatus.COMPLETED, OrderStatus.DELIVERED),
    ])
    def test_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize("current,target", DISALLOWED_PAIRS)
    def test_every_pair_outside_lifecycle_rejected(self, current, target):
        assert not can_transition(current, target)

    def test_table_matches_lifecycle(self):
        assert {
            status.value: {target.value for target in targets} for status, targets in ALLOWED_TRANSITIONS.items()
        } == LIFECYCLE
        assert len(DISALLOWED_PAIRS) == len(OrderStatus) ** 2 - sum(map(len, LIFECYCLE.values()))

    def test_terminal_statuses(self):
        terminal = {status for status in OrderStatus if is_terminal(status)}

        assert terminal == {OrderStatus.DELIVERED, OrderStatus.CANCELLED}

    def test_every_status_has_an_entry(self):
        assert set(ALLOWED_TRANSITIONS) == set(OrderStatus)

    def test_allowed_transitions_in_lifecycle_order(self):
        options = get_allowed_transitions(OrderStatus.QUOTED)

        assert [option["status"] for option in options] == ["in_progress", "invoiced", "cancelled"]
        assert options[1]["label"] == "Invoiced"


@pytest.mark.unit
class TestStatusParsing:

    def test_parse_is_case_and_space_insensitive(self):
        assert parse_status(" Paid ") == OrderStatus.PAID

    def test_parse_unknown_status(self):
        with pytest.raises(ValueError):
            parse_status("archived")

    def test_state_machine_lookup(self):
        response = OrderStateMachine().get_allowed_transitions("delivered")

        assert response.current_status == "delivered"
        assert response.allowed_transitions == []
        assert response.is_terminal is True

    def test_state_machine_lookup_unknown_status(self):
        with pytest.raises(ValidationError) as exc_info:
            OrderStateMachine().get_allowed_transitions("archived")

        assert exc_info.value.code == "UNKNOWN_STATUS"
