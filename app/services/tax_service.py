# ==== ORDER TAX SERVICE ==== #

"""
Order-level tax application for OrderDesk.

Bridges the pure tax engine and stored orders: resolves the jurisdiction
against the configured default, honours the tax-inclusive pricing setting
and writes the resulting tax and total back onto the order. Orders that
already have an invoice or have been paid keep their amounts; the invoice
snapshot is the record of what was charged.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy import select

from app.business.errors import ConflictError, ValidationError
from app.business.order_status import SETTLED_STATUSES, OrderStatus, parse_status
from app.business.tax import (
    TaxBreakdown,
    calculate_tax,
    calculate_tax_from_total,
    get_supported_jurisdictions,
    resolve_jurisdiction,
)
from app.observability.logging import get_logger
from app.observability.tracing import get_tracer
from app.schemas.orders import OrderTaxResult
from app.schemas.settings import TaxSettings, TaxSettingsUpdate
from app.security.auth import Actor, ensure_role
from app.services.audit import AuditAction, AuditSink, get_audit_sink
from app.services.order_state_machine import OrderStateMachine, get_order_state_machine
from app.storage.configuration import ConfigurationStore, get_configuration_store
from app.storage.db import get_session
from app.storage.models import Invoice, Order


tracer = get_tracer(__name__)
logger = get_logger(__name__)


def price_order(order: Order, tax_settings: TaxSettings, jurisdiction: Optional[str] = None) -> TaxBreakdown:
    """
    Compute an order's tax breakdown under the current tax settings.

    With tax-inclusive pricing the order's gross amount (subtotal plus any
    tax already applied) is split in reverse; otherwise tax is added on top
    of the subtotal.

    Args:
        order (Order): Order to price
        tax_settings (TaxSettings): Current tax configuration
        jurisdiction (Optional[str]): Override of the order's jurisdiction

    Returns:
        TaxBreakdown: Breakdown in the resolved jurisdiction
    """
    code = resolve_jurisdiction(jurisdiction or order.jurisdiction, tax_settings.default_jurisdiction)
    if tax_settings.include_in_price:
        return calculate_tax_from_total(
            order.subtotal + order.tax_amount, code, tax_settings.default_jurisdiction
        )
    return calculate_tax(order.subtotal, code, tax_settings.default_jurisdiction)


def untaxed_breakdown(order: Order, jurisdiction: str) -> TaxBreakdown:
    """Breakdown for an order invoiced without tax (automatic tax disabled)."""
    return TaxBreakdown(
        jurisdiction=jurisdiction,
        subtotal=order.subtotal,
        primary=0,
        secondary=0,
        combined=0,
        total_tax=0,
        total=order.subtotal,
        effective_rate=0.0,
    )


class TaxService:
    """Applies jurisdiction tax to orders and manages tax settings."""

    def __init__(
        self,
        state_machine: Optional[OrderStateMachine] = None,
        config_store: Optional[ConfigurationStore] = None,
        audit: Optional[AuditSink] = None,
    ):
        self.state_machine = state_machine or get_order_state_machine()
        self.config_store = config_store or get_configuration_store()
        self.audit = audit or get_audit_sink()

    async def apply_tax_to_order(
        self, order_id: int, actor: Actor, jurisdiction: Optional[str] = None
    ) -> OrderTaxResult:
        """
        Recompute and store an order's tax and total.

        Args:
            order_id (int): Order to price
            actor (Actor): Authenticated admin
            jurisdiction (Optional[str]): New jurisdiction for the order

        Returns:
            OrderTaxResult: Stored amounts and the breakdown

        Raises:
            ValidationError: If the order is cancelled
            ConflictError: If the order is paid or already invoiced
            NotFoundError: If the order does not exist
        """
        ensure_role(actor)

        with tracer.start_as_current_span("apply_tax_to_order") as span:
            span.set_attribute("order_id", order_id)

            async with get_session() as db:
                order = await self.state_machine.load_order_for_update(db, order_id)
                status = parse_status(order.status)

                if status == OrderStatus.CANCELLED:
                    raise ValidationError("Cannot apply tax to a cancelled order", order_id=order_id)
                if status in SETTLED_STATUSES:
                    raise ConflictError("Cannot modify tax on a paid order", order_id=order_id)

                invoiced = (
                    await db.execute(
                        select(Invoice.id)
                        .where(Invoice.order_id == order_id, Invoice.status != "cancelled")
                        .limit(1)
                    )
                ).scalar_one_or_none()
                if invoiced is not None:
                    raise ConflictError(
                        "Order already has an invoice; its amounts are frozen",
                        order_id=order_id,
                        invoice_id=invoiced,
                    )

                tax_settings = await self.config_store.get_tax_settings(db)
                breakdown = price_order(order, tax_settings, jurisdiction)

                order.jurisdiction = breakdown.jurisdiction
                order.subtotal = breakdown.subtotal
                order.tax_amount = breakdown.total_tax
                order.total_amount = breakdown.total

            logger.info(
                "Tax applied to order",
                order_id=order_id,
                jurisdiction=breakdown.jurisdiction,
                tax_amount=breakdown.total_tax,
            )
            await self.audit.record(
                AuditAction.ORDER_TAX_APPLIED, actor.actor_id, "order", order_id, breakdown.to_dict()
            )

        return OrderTaxResult(
            order_id=order_id,
            jurisdiction=breakdown.jurisdiction,
            subtotal=breakdown.subtotal,
            tax_amount=breakdown.total_tax,
            total_amount=breakdown.total,
            breakdown=breakdown.to_dict(),
        )

    async def calculate(
        self, amount: int, jurisdiction: Optional[str] = None, amount_includes_tax: bool = False
    ) -> TaxBreakdown:
        """Preview a breakdown using the configured default jurisdiction."""
        tax_settings = await self.config_store.get_tax_settings()
        if amount_includes_tax:
            return calculate_tax_from_total(amount, jurisdiction, tax_settings.default_jurisdiction)
        return calculate_tax(amount, jurisdiction, tax_settings.default_jurisdiction)

    def get_supported_jurisdictions(self) -> List[Dict[str, Any]]:
        return get_supported_jurisdictions()

    async def get_tax_settings(self) -> TaxSettings:
        return await self.config_store.get_tax_settings()

    async def update_tax_settings(self, patch: TaxSettingsUpdate, actor: Actor) -> TaxSettings:
        ensure_role(actor)
        updated = await self.config_store.update_tax_settings(patch)
        await self.audit.record(
            AuditAction.SETTINGS_UPDATED,
            actor.actor_id,
            "settings",
            "tax",
            patch.model_dump(exclude_unset=True),
        )
        return updated


_tax_service: TaxService | None = None


def get_tax_service() -> TaxService:
    global _tax_service
    if _tax_service is None:
        _tax_service = TaxService()
    return _tax_service
