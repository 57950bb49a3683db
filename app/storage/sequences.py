# ==== ATOMIC SEQUENCE ALLOCATION ==== #

"""
Gap-tolerant, race-free sequence allocation backed by the store.

Invoice numbers come from a named counter row. Allocation is a single
UPDATE ... SET current_value = current_value + 1 RETURNING current_value,
which takes the row's write lock until the surrounding transaction ends,
so concurrent allocators serialize on the row and can never read the same
value. A rolled-back transaction releases its value without reuse
guarantees; numbers are unique and increasing, not gapless.
"""

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from app.business.errors import ValidationError
from app.observability.logging import get_logger
from app.storage.dialect import insert_ignoring_conflict
from app.storage.models import SequenceCounter


logger = get_logger(__name__)

INVOICE_NUMBER_SEQUENCE = "invoice_number"


async def next_sequence_value(db: AsyncSession, name: str, start: int = 1) -> int:
    """
    Allocate the next value of a named sequence inside the caller's transaction.

    The first allocation creates the counter so that it hands out ``start``;
    creation uses INSERT ... ON CONFLICT DO NOTHING so two first-time callers
    cannot both create it.

    Args:
        db (AsyncSession): Session inside the caller's transaction
        name (str): Sequence name
        start (int): First value handed out when the counter does not exist

    Returns:
        int: Newly allocated value

    Raises:
        ValidationError: If start is not positive
    """
    if start < 1:
        raise ValidationError("Sequence start must be positive", sequence=name, start=start)

    created = await insert_ignoring_conflict(
        db,
        SequenceCounter,
        {"name": name, "current_value": start - 1},
        conflict_columns=["name"],
        returning=SequenceCounter.name,
    )
    if created is not None:
        logger.info("Sequence counter created", sequence=name, start=start)

    stmt = (
        update(SequenceCounter)
        .where(SequenceCounter.name == name)
        .values(current_value=SequenceCounter.current_value + 1)
        .returning(SequenceCounter.current_value)
        .execution_options(synchronize_session=False)
    )
    return (await db.execute(stmt)).scalar_one()


def format_invoice_number(prefix: str, value: int) -> str:
    return f"{prefix}{value}"
