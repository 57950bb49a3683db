# ==== DATABASE CONNECTION AND SESSION MANAGEMENT ==== #

"""
Database connection and session management for OrderDesk.

This module provides async SQLAlchemy connectivity, the transactional unit
of work every service runs inside, and the startup checks that pin the
store's schema version and capabilities.

Capabilities (row locks, INSERT ... ON CONFLICT, RETURNING) are detected
once from the dialect when the engine is built. Query helpers read the
flags and pick their statements deterministically instead of trying one
form and catching errors to fall back to another.
"""

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncGenerator, Optional

from sqlalchemy import exc as sa_exc
from sqlalchemy import select
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    async_sessionmaker,
    AsyncSession,
    AsyncEngine
)
from sqlalchemy.orm import declarative_base

from app.business.errors import InfrastructureError
from app.observability.logging import get_logger
from app.observability.metrics import (
    db_connections_active,
    db_infrastructure_errors_total,
    db_transaction_duration_seconds
)
from app.settings import settings


logger = get_logger(__name__)


# ==== SQLALCHEMY CONFIGURATION ==== #

# SQLAlchemy base for model definitions
Base = declarative_base()

# Version stamped by migrations/bootstrap and required at startup
SCHEMA_VERSION = 1

# Global engine and session factory instances
engine: AsyncEngine | None = None
SessionLocal: async_sessionmaker[AsyncSession] | None = None


@dataclass(frozen=True)
class StoreCapabilities:
    """Feature flags of the connected store, fixed for the process lifetime."""

    dialect: str
    supports_row_locks: bool
    supports_on_conflict: bool
    supports_returning: bool


_capabilities: StoreCapabilities | None = None

_TRANSIENT_ERRORS = (
    sa_exc.OperationalError,
    sa_exc.InterfaceError,
    sa_exc.TimeoutError,
    sa_exc.DisconnectionError,
    TimeoutError,
)


def detect_capabilities(dialect_name: str) -> StoreCapabilities:
    """
    Derive store capabilities from the dialect name.

    Args:
        dialect_name (str): SQLAlchemy dialect name

    Returns:
        StoreCapabilities: Flags used by query helpers

    Raises:
        InfrastructureError: If the dialect is not supported
    """
    if dialect_name == "postgresql":
        return StoreCapabilities(dialect_name, True, True, True)
    if dialect_name == "sqlite":
        # SQLite serializes writers at the database level; FOR UPDATE is not emitted
        return StoreCapabilities(dialect_name, False, True, True)
    raise InfrastructureError(f"Unsupported database dialect: {dialect_name}")


def get_capabilities() -> StoreCapabilities:
    if _capabilities is None:
        init_database()
    return _capabilities


# ==== DATABASE INITIALIZATION ==== #

def _normalize_url(db_url: str) -> str:
    if db_url.startswith("postgresql+asyncpg://") or db_url.startswith("sqlite+aiosqlite://"):
        return db_url
    db_url = db_url.replace("postgresql+psycopg://", "postgresql+asyncpg://")
    db_url = db_url.replace("postgresql://", "postgresql+asyncpg://")
    db_url = db_url.replace("sqlite://", "sqlite+aiosqlite://")
    # asyncpg spells the SSL flag differently
    return db_url.replace("sslmode=require", "ssl=require")


def init_database(db_url: Optional[str] = None) -> None:
    """
    Initialize database engine, session factory and capability flags.

    Sets up the async SQLAlchemy engine with pooling and, on PostgreSQL, a
    per-connection statement timeout so long-running queries fail as
    infrastructure errors instead of blocking indefinitely.

    Args:
        db_url (Optional[str]): Override for settings.DATABASE_URL
    """
    global engine, SessionLocal, _capabilities

    if engine is not None:
        return

    # --► DATABASE URL VALIDATION AND DRIVER SETUP
    url = _normalize_url(db_url or settings.DATABASE_URL)
    engine_kwargs = {"echo": False, "pool_pre_ping": True}

    if url.startswith("postgresql+asyncpg://"):
        engine_kwargs.update(
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            connect_args={
                "timeout": settings.DB_CONNECT_TIMEOUT_SECONDS,
                "server_settings": {
                    "application_name": settings.SERVICE_NAME,
                    "timezone": "UTC",
                    "statement_timeout": str(settings.DB_STATEMENT_TIMEOUT_MS),
                },
            },
        )
    else:
        engine_kwargs["connect_args"] = {"timeout": settings.DB_CONNECT_TIMEOUT_SECONDS}

    engine = create_async_engine(url, **engine_kwargs)
    _capabilities = detect_capabilities(engine.dialect.name)

    # Create session factory
    SessionLocal = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    # Append-only and immutability listeners
    from app.storage import guards
    guards.install()

    logger.info(
        "Database initialized",
        dialect=_capabilities.dialect,
        row_locks=_capabilities.supports_row_locks,
    )


# ==== UNIT OF WORK ==== #

@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Open a transactional unit of work.

    Commits on normal exit and rolls back every write on any exception.
    Transient store failures (timeouts, dropped connections) are re-raised
    as InfrastructureError after the rollback.

    Yields:
        AsyncSession: Database session

    Raises:
        InfrastructureError: If the store times out or the connection fails
    """
    if SessionLocal is None:
        init_database()

    started = time.perf_counter()
    async with SessionLocal() as session:
        db_connections_active.inc()
        try:
            yield session
            await session.commit()
        except _TRANSIENT_ERRORS as exc:
            await _safe_rollback(session)
            db_infrastructure_errors_total.labels(error_type=type(exc).__name__).inc()
            logger.error("Store failure, transaction rolled back", error=str(exc))
            raise InfrastructureError("Database temporarily unavailable") from exc
        except BaseException:
            await _safe_rollback(session)
            raise
        finally:
            db_connections_active.dec()
            db_transaction_duration_seconds.observe(time.perf_counter() - started)


async def _safe_rollback(session: AsyncSession) -> None:
    try:
        await session.rollback()
    except _TRANSIENT_ERRORS as exc:
        logger.warning("Rollback failed on broken connection", error=str(exc))


# ==== SCHEMA MANAGEMENT ==== #

async def bootstrap_schema() -> None:
    """Create all tables from metadata and stamp the schema version.

    Used by tests and local development; deployed databases are migrated
    with alembic, whose initial revision stamps the same version.
    """
    if engine is None:
        init_database()

    from app.storage import models

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with get_session() as db:
        existing = await db.get(models.SchemaVersion, 1)
        if existing is None:
            db.add(models.SchemaVersion(id=1, version=SCHEMA_VERSION))
        else:
            existing.version = SCHEMA_VERSION


async def verify_schema_version() -> int:
    """Fail fast when the database schema does not match this build.

    Returns:
        int: The verified schema version

    Raises:
        InfrastructureError: If the version row is missing or differs
    """
    from app.storage.models import SchemaVersion

    try:
        async with get_session() as db:
            version = (
                await db.execute(select(SchemaVersion.version).where(SchemaVersion.id == 1))
            ).scalar_one_or_none()
    except sa_exc.ProgrammingError as exc:
        raise InfrastructureError("Schema version table is missing; run migrations") from exc

    if version != SCHEMA_VERSION:
        raise InfrastructureError(
            f"Database schema version {version} does not match required {SCHEMA_VERSION}",
            found=version,
            required=SCHEMA_VERSION,
        )
    return version


async def close_database() -> None:
    """Close database connections on shutdown."""
    global engine, SessionLocal, _capabilities
    if engine is not None:
        await engine.dispose()
    engine = None
    SessionLocal = None
    _capabilities = None
