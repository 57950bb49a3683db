"""Pydantic schemas for payment reminders."""

from datetime import date, datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class ReminderType(str, Enum):
    UPCOMING = "upcoming"
    DUE_TODAY = "due_today"
    OVERDUE = "overdue"


class PendingReminder(BaseModel):
    """An unpaid invoice that should be reminded about today."""

    order_id: int
    invoice_id: int
    invoice_number: str
    customer_name: str
    customer_email: str
    amount: int
    due_date: date
    days_until_due: int
    reminder_type: ReminderType
    reminders_sent: int


class ReminderRunSummary(BaseModel):
    sent: int = 0
    failed: int = 0
    skipped: int = 0


class PauseRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class ReminderPauseStatus(BaseModel):
    order_id: int
    paused: bool
    reason: Optional[str] = None
    paused_by: Optional[str] = None
    paused_at: Optional[datetime] = None


class ReminderHistoryItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_id: int
    invoice_id: int
    reminder_type: str
    days_until_due: int
    recipient: str
    status: str
    error_message: Optional[str] = None
    sent_on: date
    created_at: datetime


class ReminderStats(BaseModel):
    total_sent: int
    total_failed: int
    sent_today: int
    paused_orders: int
    by_type: Dict[str, int]
