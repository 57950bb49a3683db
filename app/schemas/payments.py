"""Pydantic schemas for payment webhooks and manual completion."""

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field


class ManualCompletionRequest(BaseModel):
    """Admin-entered offline payment that completes an order."""

    order_id: int = Field(..., ge=1)
    completion_amount: int = Field(..., ge=1, le=5_000_000)
    payment_method: Literal["cash", "check", "wire", "other"]
    notes: Optional[str] = Field(None, max_length=2000)
    send_email: bool = False


class ManualCompletionResult(BaseModel):
    success: bool
    order_id: int
    previous_status: str
    new_status: str
    amount: int
    invoice_id: int
    payment_id: int
    email_sent: bool


class WebhookSignature(BaseModel):
    timestamp: str
    token: str
    signature: str


class WebhookEnvelope(BaseModel):
    """Signed payment provider event."""

    signature: WebhookSignature
    event_type: str = Field(..., min_length=1, max_length=64)
    event_id: str = Field(..., min_length=1, max_length=255)
    payload: Dict[str, Any] = Field(default_factory=dict)


class PaymentEventPayload(BaseModel):
    """Fields the reconciler reads from an event payload."""

    order_id: int = Field(..., ge=1)
    invoice_reference: Optional[str] = None
    payment_reference: Optional[str] = None
    amount: Optional[int] = Field(None, ge=0)
    failure_message: Optional[str] = None


class WebhookReceipt(BaseModel):
    """Acknowledgement returned for every verified delivery."""

    received: bool = True
    processed: bool
    reason: Optional[str] = None
