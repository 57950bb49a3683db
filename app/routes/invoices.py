# ==== INVOICE ROUTES ==== #

"""
Invoice routes for OrderDesk.

Admin endpoints for creating, sending and settling an order's invoice and
for the aging and overdue views over unpaid invoices.
"""

from typing import List, Optional

from fastapi import APIRouter, Body, Depends

from app.schemas.invoices import (
    AgingSummary,
    InvoiceOptions,
    InvoiceProjection,
    OverdueInvoice,
    PaymentDetails,
)
from app.security.auth import Actor, require_admin
from app.services.invoice_manager import InvoiceManager, get_invoice_manager
from app.observability.tracing import get_tracer


router = APIRouter()
tracer = get_tracer(__name__)


# ==== REPORTING VIEWS ==== #


@router.get("/aging", response_model=AgingSummary)
async def get_aging_summary(
    actor: Actor = Depends(require_admin),
    invoice_manager: InvoiceManager = Depends(get_invoice_manager),
) -> AgingSummary:
    return await invoice_manager.get_invoice_aging_summary()


@router.get("/overdue", response_model=List[OverdueInvoice])
async def get_overdue_invoices(
    actor: Actor = Depends(require_admin),
    invoice_manager: InvoiceManager = Depends(get_invoice_manager),
) -> List[OverdueInvoice]:
    return await invoice_manager.get_overdue_invoices()


# ==== PER-ORDER INVOICE ==== #


@router.post("/orders/{order_id}", response_model=InvoiceProjection)
async def create_invoice(
    order_id: int,
    options: Optional[InvoiceOptions] = Body(None),
    actor: Actor = Depends(require_admin),
    invoice_manager: InvoiceManager = Depends(get_invoice_manager),
) -> InvoiceProjection:
    """
    Create the invoice for an order, or return the one it already has.

    Args:
        order_id (int): Order to invoice
        options (Optional[InvoiceOptions]): Notes, due days, jurisdiction, send flag
        actor (Actor): Authenticated admin
        invoice_manager (InvoiceManager): Invoice manager dependency

    Returns:
        InvoiceProjection: The invoice with ``created`` set when this call made it
    """
    with tracer.start_as_current_span("create_invoice_endpoint") as span:
        span.set_attribute("order_id", order_id)
        return await invoice_manager.create_invoice_from_order(order_id, actor, options)


@router.get("/orders/{order_id}", response_model=InvoiceProjection)
async def get_invoice(
    order_id: int,
    actor: Actor = Depends(require_admin),
    invoice_manager: InvoiceManager = Depends(get_invoice_manager),
) -> InvoiceProjection:
    return await invoice_manager.get_invoice(order_id)


@router.post("/orders/{order_id}/send", response_model=InvoiceProjection)
async def send_invoice(
    order_id: int,
    actor: Actor = Depends(require_admin),
    invoice_manager: InvoiceManager = Depends(get_invoice_manager),
) -> InvoiceProjection:
    return await invoice_manager.send_invoice(order_id, actor)


@router.post("/orders/{order_id}/mark-paid", response_model=InvoiceProjection)
async def mark_invoice_paid(
    order_id: int,
    payment_details: Optional[PaymentDetails] = Body(None),
    actor: Actor = Depends(require_admin),
    invoice_manager: InvoiceManager = Depends(get_invoice_manager),
) -> InvoiceProjection:
    """Record an offline payment against the order's invoice; safe to retry."""
    return await invoice_manager.mark_invoice_as_paid(order_id, actor, payment_details)
