# ==== ALEMBIC MIGRATION ENVIRONMENT ==== #

"""Alembic environment running migrations over the application's async engine URL."""

import asyncio

from alembic import context
from sqlalchemy.ext.asyncio import create_async_engine

from app.settings import settings
from app.storage.db import Base, _normalize_url
from app.storage import models  # noqa: F401  registers tables on Base.metadata


target_metadata = Base.metadata


def run_migrations_offline() -> None:
    context.configure(
        url=_normalize_url(settings.DATABASE_URL),
        target_metadata=target_metadata,
        literal_binds=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def _run_sync(connection) -> None:
    context.configure(connection=connection, target_metadata=target_metadata)
    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    engine = create_async_engine(_normalize_url(settings.DATABASE_URL))
    async with engine.connect() as connection:
        await connection.run_sync(_run_sync)
    await engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
