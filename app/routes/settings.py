# ==== CONFIGURATION ROUTES ==== #

"""
Configuration routes for OrderDesk.

Read and partially update the tax and invoice settings, list supported
tax jurisdictions and preview a tax calculation.
"""

from typing import Any, Dict, List

from fastapi import APIRouter, Depends

from app.schemas.orders import TaxCalculationRequest
from app.schemas.settings import (
    InvoiceSettings,
    InvoiceSettingsUpdate,
    TaxSettings,
    TaxSettingsUpdate,
)
from app.security.auth import Actor, require_admin
from app.services.invoice_manager import InvoiceManager, get_invoice_manager
from app.services.tax_service import TaxService, get_tax_service


router = APIRouter()


# ==== INVOICE SETTINGS ==== #


@router.get("/invoice", response_model=InvoiceSettings)
async def get_invoice_settings(
    actor: Actor = Depends(require_admin),
    invoice_manager: InvoiceManager = Depends(get_invoice_manager),
) -> InvoiceSettings:
    return await invoice_manager.get_invoice_settings()


@router.put("/invoice", response_model=InvoiceSettings)
async def update_invoice_settings(
    patch: InvoiceSettingsUpdate,
    actor: Actor = Depends(require_admin),
    invoice_manager: InvoiceManager = Depends(get_invoice_manager),
) -> InvoiceSettings:
    return await invoice_manager.update_invoice_settings(patch, actor)


# ==== TAX SETTINGS ==== #


@router.get("/tax", response_model=TaxSettings)
async def get_tax_settings(
    actor: Actor = Depends(require_admin),
    tax_service: TaxService = Depends(get_tax_service),
) -> TaxSettings:
    return await tax_service.get_tax_settings()


@router.put("/tax", response_model=TaxSettings)
async def update_tax_settings(
    patch: TaxSettingsUpdate,
    actor: Actor = Depends(require_admin),
    tax_service: TaxService = Depends(get_tax_service),
) -> TaxSettings:
    return await tax_service.update_tax_settings(patch, actor)


@router.get("/tax/jurisdictions")
async def list_jurisdictions(
    actor: Actor = Depends(require_admin),
    tax_service: TaxService = Depends(get_tax_service),
) -> List[Dict[str, Any]]:
    return tax_service.get_supported_jurisdictions()


@router.post("/tax/calculate")
async def calculate_tax(
    body: TaxCalculationRequest,
    actor: Actor = Depends(require_admin),
    tax_service: TaxService = Depends(get_tax_service),
) -> Dict[str, Any]:
    """
    Preview a tax breakdown without touching any order.

    Args:
        body (TaxCalculationRequest): Amount, jurisdiction and whether the amount includes tax
        actor (Actor): Authenticated admin
        tax_service (TaxService): Tax service dependency

    Returns:
        Dict[str, Any]: The breakdown in minor units
    """
    breakdown = await tax_service.calculate(body.amount, body.jurisdiction, body.amount_includes_tax)
    return breakdown.to_dict()
