# ==== ORDER LIFECYCLE ROUTES ==== #

"""
Order lifecycle routes for OrderDesk.

Admin endpoints for querying allowed transitions, changing order status
(singly or in bulk), reading the status history and applying tax.
"""

from typing import List

from fastapi import APIRouter, Depends

from app.schemas.orders import (
    AllowedTransitionsResponse,
    ApplyTaxRequest,
    BulkTransitionRequest,
    BulkTransitionResult,
    OrderTaxResult,
    StatusHistoryItem,
    TransitionRequest,
    TransitionResult,
)
from app.security.auth import Actor, require_admin
from app.services.order_state_machine import OrderStateMachine, get_order_state_machine
from app.services.tax_service import TaxService, get_tax_service
from app.observability.tracing import get_tracer


router = APIRouter()
tracer = get_tracer(__name__)


# ==== STATUS TRANSITIONS ==== #


@router.get("/transitions/{status}", response_model=AllowedTransitionsResponse)
async def get_allowed_transitions(
    status: str,
    actor: Actor = Depends(require_admin),
    state_machine: OrderStateMachine = Depends(get_order_state_machine),
) -> AllowedTransitionsResponse:
    """
    List the statuses an order can move to from the given status.

    Args:
        status (str): Current order status
        actor (Actor): Authenticated admin
        state_machine (OrderStateMachine): State machine dependency

    Returns:
        AllowedTransitionsResponse: Targets with labels and the terminal flag
    """
    return state_machine.get_allowed_transitions(status)


@router.post("/bulk-transition", response_model=BulkTransitionResult)
async def bulk_transition(
    body: BulkTransitionRequest,
    actor: Actor = Depends(require_admin),
    state_machine: OrderStateMachine = Depends(get_order_state_machine),
) -> BulkTransitionResult:
    """Apply one transition to many orders; failures are reported per order."""
    with tracer.start_as_current_span("bulk_transition_endpoint") as span:
        span.set_attribute("order_count", len(body.order_ids))
        return await state_machine.bulk_transition(
            body.order_ids, body.target_status, actor, body.notes
        )


@router.post("/{order_id}/transition", response_model=TransitionResult)
async def transition_order(
    order_id: int,
    body: TransitionRequest,
    actor: Actor = Depends(require_admin),
    state_machine: OrderStateMachine = Depends(get_order_state_machine),
) -> TransitionResult:
    return await state_machine.attempt_transition(
        order_id, body.target_status, actor, body.notes, body.notify_customer
    )


@router.get("/{order_id}/history", response_model=List[StatusHistoryItem])
async def get_status_history(
    order_id: int,
    actor: Actor = Depends(require_admin),
    state_machine: OrderStateMachine = Depends(get_order_state_machine),
) -> List[StatusHistoryItem]:
    return await state_machine.get_status_history(order_id)


# ==== TAX ==== #


@router.post("/{order_id}/tax", response_model=OrderTaxResult)
async def apply_tax(
    order_id: int,
    body: ApplyTaxRequest,
    actor: Actor = Depends(require_admin),
    tax_service: TaxService = Depends(get_tax_service),
) -> OrderTaxResult:
    """
    Recompute and store an order's tax in the given (or current) jurisdiction.

    Args:
        order_id (int): Order to price
        body (ApplyTaxRequest): Optional jurisdiction override
        actor (Actor): Authenticated admin
        tax_service (TaxService): Tax service dependency

    Returns:
        OrderTaxResult: Stored amounts and the breakdown
    """
    return await tax_service.apply_tax_to_order(order_id, actor, body.jurisdiction)
