"""Database connection and session management."""

import structlog
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from entitlement_sync.config import settings
from entitlement_sync.database.models import Base

logger = structlog.get_logger()

# Create async engine with configurable pool settings
engine: AsyncEngine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_pre_ping=True,
    pool_size=settings.DB_POOL_SIZE,
    max_overflow=settings.DB_POOL_MAX_OVERFLOW,
    pool_timeout=settings.DB_POOL_TIMEOUT,
    pool_recycle=settings.DB_POOL_RECYCLE,
)


def _setup_pool_listeners(async_engine: AsyncEngine) -> None:
    """Warn when the pool runs at capacity.

    Reconciliation sweeps and webhook bursts share this pool.
    """
    pool = async_engine.sync_engine.pool

    @event.listens_for(pool, "checkout")
    def _on_checkout(
        _dbapi_conn: object, _connection_record: object, _connection_proxy: object
    ) -> None:
        checked_out = pool.checkedout()  # type: ignore[attr-defined]
        pool_size = pool.size()  # type: ignore[attr-defined]
        if checked_out >= pool_size:
            logger.warning(
                "DB pool at capacity",
                checked_out=checked_out,
                pool_size=pool_size,
                overflow=pool.overflow(),  # type: ignore[attr-defined]
                max_overflow=settings.DB_POOL_MAX_OVERFLOW,
            )

    @event.listens_for(pool, "invalidate")
    def _on_invalidate(
        _dbapi_conn: object, _connection_record: object, exception: Exception | None
    ) -> None:
        logger.warning(
            "DB connection invalidated",
            exception=str(exception) if exception else None,
        )


_setup_pool_listeners(engine)


# Create async session factory
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def init_database() -> None:
    """Initialize database connection and create tables if needed.

    In development/test: Creates tables from models using create_all().
    In production: the schema is managed outside the service.
    """
    try:
        db_host = settings.DATABASE_URL.split("@")[-1].split(":")[0].split("/")[0]
    except (IndexError, AttributeError):
        db_host = "unknown"
    logger.info("Initializing database connection", host=db_host)

    if settings.ENVIRONMENT in ("development", "test"):
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            logger.info("Database tables created/verified (development mode)")
    else:
        logger.info("Skipping create_all outside development")


async def close_database() -> None:
    """Close database connection pool."""
    logger.info("Closing database connection pool")
    await engine.dispose()

