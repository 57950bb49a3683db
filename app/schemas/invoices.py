"""Pydantic schemas for invoices, aging and payment details."""

from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


class InvoiceOptions(BaseModel):
    """Options for creating an invoice from an order."""

    notes: Optional[str] = Field(None, max_length=2000)
    due_days: Optional[int] = Field(None, ge=1, le=365)
    jurisdiction: Optional[str] = Field(None, min_length=2, max_length=2)
    send_email: bool = False


class LineItem(BaseModel):
    description: str
    quantity: int
    unit_price: int
    total: int


class InvoiceProjection(BaseModel):
    """Read model of an invoice as stored, plus per-call flags."""

    id: int
    order_id: int
    invoice_number: str
    external_reference: str
    status: str
    is_manual: bool
    subtotal: int
    tax: int
    amount: int
    jurisdiction: str
    issue_date: date
    due_date: date
    line_items: List[LineItem]
    tax_breakdown: Dict[str, Any]
    customer: Dict[str, Any]
    notes: Optional[str] = None
    sent_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    created: bool = False
    email_sent: Optional[bool] = None


class PaymentDetails(BaseModel):
    """Details recorded when an admin marks an invoice paid."""

    transaction_id: Optional[str] = Field(None, min_length=1, max_length=255)
    payment_method: Literal["card", "cash", "check", "wire", "other"] = "card"
    amount: Optional[int] = Field(None, ge=0)
    paid_at: Optional[datetime] = None
    notes: Optional[str] = Field(None, max_length=2000)


class AgingBucket(BaseModel):
    count: int = 0
    amount: int = 0


class AgingSummary(BaseModel):
    """Unpaid invoices partitioned by days since issue."""

    as_of: date
    current: AgingBucket = Field(default_factory=AgingBucket)
    thirty_to_sixty: AgingBucket = Field(default_factory=AgingBucket)
    sixty_to_ninety: AgingBucket = Field(default_factory=AgingBucket)
    ninety_plus: AgingBucket = Field(default_factory=AgingBucket)
    total: AgingBucket = Field(default_factory=AgingBucket)


class OverdueInvoice(BaseModel):
    order_id: int
    invoice_id: int
    invoice_number: str
    status: str
    customer_name: str
    customer_email: str
    amount: int
    due_date: date
    days_overdue: int
