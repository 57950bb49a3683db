"""Pydantic schemas for the typed configuration aggregates."""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.business.tax import JURISDICTION_TAX_RATES


def _normalize_offsets(values: List[int]) -> List[int]:
    if any(value < 1 for value in values):
        raise ValueError("reminder offsets must be positive whole days")
    return sorted(set(values), reverse=True)


def _normalize_jurisdiction(value: str) -> str:
    code = value.strip().upper()
    if code not in JURISDICTION_TAX_RATES:
        raise ValueError(f"unsupported jurisdiction '{value}'")
    return code


# ==== TAX SETTINGS ==== #


class TaxSettings(BaseModel):
    """Tax configuration applied when pricing orders and invoices."""

    model_config = ConfigDict(from_attributes=True)

    default_jurisdiction: str = "AB"
    include_in_price: bool = False
    auto_apply_tax: bool = True

    @field_validator("default_jurisdiction")
    @classmethod
    def check_jurisdiction(cls, value: str) -> str:
        return _normalize_jurisdiction(value)


class TaxSettingsUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    default_jurisdiction: Optional[str] = None
    include_in_price: Optional[bool] = None
    auto_apply_tax: Optional[bool] = None


# ==== INVOICE SETTINGS ==== #


class InvoiceSettings(BaseModel):
    """Company details and numbering/terms used when issuing invoices."""

    model_config = ConfigDict(from_attributes=True)

    company_name: str = Field("OrderDesk", min_length=1, max_length=255)
    company_address: Optional[str] = None
    company_phone: Optional[str] = Field(None, max_length=32)
    company_email: Optional[str] = Field(None, max_length=255)
    payment_terms_days: int = Field(14, ge=1, le=365)
    invoice_prefix: str = Field("INV-", max_length=16)
    starting_number: int = Field(1001, ge=1)
    default_notes: Optional[str] = "Thank you for your business!"
    auto_send_on_quote_accept: bool = True


class InvoiceSettingsUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    company_name: Optional[str] = None
    company_address: Optional[str] = None
    company_phone: Optional[str] = None
    company_email: Optional[str] = None
    payment_terms_days: Optional[int] = None
    invoice_prefix: Optional[str] = None
    starting_number: Optional[int] = None
    default_notes: Optional[str] = None
    auto_send_on_quote_accept: Optional[bool] = None


# ==== REMINDER SETTINGS ==== #


class ReminderSettings(BaseModel):
    """Reminder schedule: offsets in days relative to the invoice due date."""

    model_config = ConfigDict(from_attributes=True)

    days_before: List[int] = Field(default_factory=lambda: [7, 3, 1])
    days_after: List[int] = Field(default_factory=lambda: [1, 3, 7, 14])
    max_reminders: int = Field(6, ge=1)

    @field_validator("days_before", "days_after")
    @classmethod
    def check_offsets(cls, values: List[int]) -> List[int]:
        return _normalize_offsets(values)


class ReminderSettingsUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    days_before: Optional[List[int]] = None
    days_after: Optional[List[int]] = None
    max_reminders: Optional[int] = None
