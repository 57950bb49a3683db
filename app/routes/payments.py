# ==== PAYMENT ROUTES ==== #

"""
Payment routes for OrderDesk.

The admin manual-completion endpoint and the payment-provider webhook.
The webhook is authenticated by its envelope signature, not by a JWT.
"""

import json

from fastapi import APIRouter, Depends, Request

from app.schemas.payments import ManualCompletionRequest, ManualCompletionResult, WebhookReceipt
from app.security.auth import Actor, require_admin
from app.services.payment_reconciler import PaymentReconciler, get_payment_reconciler
from app.observability.tracing import get_tracer


router = APIRouter()
webhook_router = APIRouter()
tracer = get_tracer(__name__)


# ==== MANUAL COMPLETION ==== #


@router.post("/manual-complete", response_model=ManualCompletionResult)
async def manual_complete(
    body: ManualCompletionRequest,
    actor: Actor = Depends(require_admin),
    reconciler: PaymentReconciler = Depends(get_payment_reconciler),
) -> ManualCompletionResult:
    """
    Complete an order that was paid offline.

    Args:
        body (ManualCompletionRequest): Amount, payment method, notes and email flag
        actor (Actor): Authenticated admin
        reconciler (PaymentReconciler): Payment reconciler dependency

    Returns:
        ManualCompletionResult: Status change and the manual invoice/payment ids
    """
    return await reconciler.manual_complete(body, actor)


# ==== PROVIDER WEBHOOK ==== #


@webhook_router.post("/payments", response_model=WebhookReceipt)
async def payment_webhook(
    request: Request,
    reconciler: PaymentReconciler = Depends(get_payment_reconciler),
) -> WebhookReceipt:
    """
    Receive a signed payment event.

    The body is read as raw JSON so that an unsigned or malformed delivery
    is rejected with 401 rather than a schema error.

    Returns:
        WebhookReceipt: ``{received, processed, reason}`` for every verified delivery
    """
    with tracer.start_as_current_span("payment_webhook_endpoint"):
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            body = None
        return await reconciler.handle_webhook(body)
