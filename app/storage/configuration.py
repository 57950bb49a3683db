# ==== TYPED CONFIGURATION AGGREGATES ==== #

"""
Store-backed business configuration for OrderDesk.

Tax, invoice and reminder settings each live in their own single-row
table with a matching pydantic model. Reads return stored values or the
defaults; writes are partial updates applied under a row lock in one
transaction and validated by the model before anything is persisted, so
invariants such as ``max_reminders >= 1`` hold at the boundary.

Per-order reminder pauses are stored in ``reminder_pauses``.
"""

from dataclasses import dataclass
from typing import Callable, Optional, Type

import pydantic
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.business.clock import utcnow
from app.business.errors import ValidationError
from app.observability.logging import get_logger
from app.schemas.settings import (
    InvoiceSettings,
    InvoiceSettingsUpdate,
    ReminderSettings,
    ReminderSettingsUpdate,
    TaxSettings,
    TaxSettingsUpdate,
)
from app.settings import settings
from app.storage.db import get_session
from app.storage.dialect import insert_ignoring_conflict, locked
from app.storage.models import (
    InvoiceSettingsRecord,
    ReminderPause,
    ReminderSettingsRecord,
    TaxSettingsRecord,
)


logger = get_logger(__name__)

_SINGLETON_ID = 1


@dataclass(frozen=True)
class _Aggregate:
    name: str
    record: type
    schema: Type[pydantic.BaseModel]
    defaults: Callable[[], pydantic.BaseModel]


TAX = _Aggregate(
    "tax", TaxSettingsRecord, TaxSettings,
    lambda: TaxSettings(default_jurisdiction=settings.DEFAULT_JURISDICTION),
)
INVOICE = _Aggregate("invoice", InvoiceSettingsRecord, InvoiceSettings, InvoiceSettings)
REMINDER = _Aggregate("reminder", ReminderSettingsRecord, ReminderSettings, ReminderSettings)


class ConfigurationStore:
    """Read/write contract for the configuration aggregates."""

    # --► GENERIC SINGLETON ACCESS

    async def _read(self, aggregate: _Aggregate, db: Optional[AsyncSession]) -> pydantic.BaseModel:
        if db is None:
            async with get_session() as session:
                return await self._read(aggregate, session)
        row = await db.get(aggregate.record, _SINGLETON_ID)
        if row is None:
            return aggregate.defaults()
        return aggregate.schema.model_validate(row)

    async def _write(self, aggregate: _Aggregate, patch: pydantic.BaseModel) -> pydantic.BaseModel:
        changes = patch.model_dump(exclude_unset=True)

        async with get_session() as db:
            await insert_ignoring_conflict(
                db,
                aggregate.record,
                {"id": _SINGLETON_ID, **aggregate.defaults().model_dump()},
                conflict_columns=["id"],
            )
            row = (
                await db.execute(
                    locked(select(aggregate.record).where(aggregate.record.id == _SINGLETON_ID))
                )
            ).scalar_one()

            merged = aggregate.schema.model_validate(row).model_dump() | changes
            try:
                validated = aggregate.schema.model_validate(merged)
            except pydantic.ValidationError as exc:
                raise ValidationError(
                    f"Invalid {aggregate.name} settings",
                    errors=exc.errors(include_url=False, include_context=False),
                ) from exc

            for field, value in validated.model_dump().items():
                setattr(row, field, value)

        logger.info(f"{aggregate.name.capitalize()} settings updated", fields=sorted(changes))
        return validated

    # --► TAX SETTINGS

    async def get_tax_settings(self, db: Optional[AsyncSession] = None) -> TaxSettings:
        return await self._read(TAX, db)

    async def update_tax_settings(self, patch: TaxSettingsUpdate) -> TaxSettings:
        return await self._write(TAX, patch)

    # --► INVOICE SETTINGS

    async def get_invoice_settings(self, db: Optional[AsyncSession] = None) -> InvoiceSettings:
        return await self._read(INVOICE, db)

    async def update_invoice_settings(self, patch: InvoiceSettingsUpdate) -> InvoiceSettings:
        return await self._write(INVOICE, patch)

    # --► REMINDER SETTINGS

    async def get_reminder_settings(self, db: Optional[AsyncSession] = None) -> ReminderSettings:
        return await self._read(REMINDER, db)

    async def update_reminder_settings(self, patch: ReminderSettingsUpdate) -> ReminderSettings:
        return await self._write(REMINDER, patch)

    # --► PER-ORDER REMINDER PAUSES

    async def get_reminder_pause(self, db: AsyncSession, order_id: int) -> Optional[ReminderPause]:
        return await db.get(ReminderPause, order_id)

    async def set_reminder_pause(
        self, db: AsyncSession, order_id: int, actor_id: str, reason: Optional[str]
    ) -> ReminderPause:
        """Pause reminders for an order; re-pausing refreshes the reason."""
        await insert_ignoring_conflict(
            db,
            ReminderPause,
            {"order_id": order_id, "reason": reason, "paused_by": actor_id, "paused_at": utcnow()},
            conflict_columns=["order_id"],
        )
        pause = (
            await db.execute(locked(select(ReminderPause).where(ReminderPause.order_id == order_id)))
        ).scalar_one()
        pause.reason = reason
        pause.paused_by = actor_id
        return pause

    async def clear_reminder_pause(self, db: AsyncSession, order_id: int) -> bool:
        result = await db.execute(delete(ReminderPause).where(ReminderPause.order_id == order_id))
        return bool(result.rowcount)


_store: ConfigurationStore | None = None


def get_configuration_store() -> ConfigurationStore:
    global _store
    if _store is None:
        _store = ConfigurationStore()
    return _store
