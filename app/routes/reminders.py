# ==== PAYMENT REMINDER ROUTES ==== #

"""
Payment reminder routes for OrderDesk.

Admin endpoints for the reminder schedule, the pending set, an on-demand
sweep, per-order pause/resume and reminder history and stats. The daily
sweep normally runs from the Prefect flow, not from here.
"""

from typing import List, Optional

from fastapi import APIRouter, Body, Depends

from app.schemas.reminders import (
    PauseRequest,
    PendingReminder,
    ReminderHistoryItem,
    ReminderPauseStatus,
    ReminderRunSummary,
    ReminderStats,
)
from app.schemas.settings import ReminderSettings, ReminderSettingsUpdate
from app.security.auth import Actor, require_admin
from app.services.reminder_scheduler import ReminderScheduler, get_reminder_scheduler
from app.observability.logging import get_logger
from app.observability.tracing import get_tracer


router = APIRouter()
tracer = get_tracer(__name__)
logger = get_logger(__name__)


# ==== SCHEDULE SETTINGS ==== #


@router.get("/settings", response_model=ReminderSettings)
async def get_reminder_settings(
    actor: Actor = Depends(require_admin),
    scheduler: ReminderScheduler = Depends(get_reminder_scheduler),
) -> ReminderSettings:
    return await scheduler.get_reminder_settings()


@router.put("/settings", response_model=ReminderSettings)
async def update_reminder_settings(
    patch: ReminderSettingsUpdate,
    actor: Actor = Depends(require_admin),
    scheduler: ReminderScheduler = Depends(get_reminder_scheduler),
) -> ReminderSettings:
    return await scheduler.update_reminder_settings(patch, actor)


# ==== SWEEP ==== #


@router.get("/pending", response_model=List[PendingReminder])
async def get_pending_reminders(
    actor: Actor = Depends(require_admin),
    scheduler: ReminderScheduler = Depends(get_reminder_scheduler),
) -> List[PendingReminder]:
    return await scheduler.get_pending_reminders()


@router.post("/process", response_model=ReminderRunSummary)
async def process_reminders(
    actor: Actor = Depends(require_admin),
    scheduler: ReminderScheduler = Depends(get_reminder_scheduler),
) -> ReminderRunSummary:
    """
    Run the reminder sweep now.

    Must not overlap with the scheduled flow run; both send from the same
    pending set.

    Returns:
        ReminderRunSummary: Counts of sent, failed and skipped reminders
    """
    with tracer.start_as_current_span("process_reminders_endpoint"):
        logger.info("Manual reminder sweep requested", actor_id=actor.actor_id)
        return await scheduler.process_all_reminders()


@router.get("/stats", response_model=ReminderStats)
async def get_reminder_stats(
    actor: Actor = Depends(require_admin),
    scheduler: ReminderScheduler = Depends(get_reminder_scheduler),
) -> ReminderStats:
    return await scheduler.get_reminder_stats()


# ==== PER-ORDER CONTROLS ==== #


@router.post("/orders/{order_id}/pause", response_model=ReminderPauseStatus)
async def pause_reminders(
    order_id: int,
    body: Optional[PauseRequest] = Body(None),
    actor: Actor = Depends(require_admin),
    scheduler: ReminderScheduler = Depends(get_reminder_scheduler),
) -> ReminderPauseStatus:
    return await scheduler.pause_reminders(order_id, actor, body.reason if body else None)


@router.post("/orders/{order_id}/resume", response_model=ReminderPauseStatus)
async def resume_reminders(
    order_id: int,
    actor: Actor = Depends(require_admin),
    scheduler: ReminderScheduler = Depends(get_reminder_scheduler),
) -> ReminderPauseStatus:
    return await scheduler.resume_reminders(order_id, actor)


@router.get("/orders/{order_id}/history", response_model=List[ReminderHistoryItem])
async def get_reminder_history(
    order_id: int,
    actor: Actor = Depends(require_admin),
    scheduler: ReminderScheduler = Depends(get_reminder_scheduler),
) -> List[ReminderHistoryItem]:
    return await scheduler.get_reminder_history(order_id)
