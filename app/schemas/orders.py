"""Pydantic schemas for order status transitions and order tax."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from app.business.order_status import OrderStatus


class StatusOption(BaseModel):
    status: str
    label: str


class AllowedTransitionsResponse(BaseModel):
    """Statuses reachable from a given status."""

    current_status: str
    allowed_transitions: List[StatusOption]
    is_terminal: bool


class TransitionRequest(BaseModel):
    target_status: OrderStatus
    notes: Optional[str] = Field(None, max_length=2000)
    notify_customer: bool = False


class TransitionResult(BaseModel):
    order_id: int
    previous_status: str
    new_status: str
    history_id: int
    notification_sent: Optional[bool] = None


class BulkTransitionRequest(BaseModel):
    order_ids: List[int] = Field(..., min_length=1)
    target_status: OrderStatus
    notes: Optional[str] = Field(None, max_length=2000)


class BulkFailure(BaseModel):
    id: int
    reason: str
    code: str


class BulkTransitionResult(BaseModel):
    """Per-order outcome of a bulk transition; failures never abort the batch."""

    succeeded: List[int] = Field(default_factory=list)
    failed: List[BulkFailure] = Field(default_factory=list)


class StatusHistoryItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    previous_status: Optional[str] = None
    new_status: str
    actor_id: str
    notes: Optional[str] = None
    created_at: datetime


class ApplyTaxRequest(BaseModel):
    jurisdiction: Optional[str] = Field(None, min_length=2, max_length=2)


class OrderTaxResult(BaseModel):
    order_id: int
    jurisdiction: str
    subtotal: int
    tax_amount: int
    total_amount: int
    breakdown: Dict[str, Any]


class TaxCalculationRequest(BaseModel):
    amount: int = Field(..., ge=0)
    jurisdiction: Optional[str] = None
    amount_includes_tax: bool = False
