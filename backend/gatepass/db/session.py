"""
Engine, session factory and the transaction boundary.

CONCURRENCY STRATEGY: Serializable transactions with bounded retry
==================================================================

Problem:
  Two requests read "1 slot left" at the same time and both insert a row.
  Result: the channel cap is exceeded.

Solution:
  Every capacity read and the write that depends on it run in ONE transaction
  that the store serializes against other writers:

  - PostgreSQL: the engine runs at SERIALIZABLE. A transaction that lost the
    race fails with SQLSTATE 40001 and is replayed from scratch, re-reading
    the counts.
  - SQLite: the transaction takes the write lock up front (BEGIN IMMEDIATE),
    so writers queue behind each other and never see a stale count.

  Services never open, commit or nest transactions themselves; they receive
  the session and flush. run_in_transaction() is the only owner of the
  begin/commit/rollback boundary, and the only place retries happen.

Notifications queued by services during the transaction are handed to the
dispatcher only after the commit succeeds.
"""

from typing import AsyncGenerator, Awaitable, Callable, Optional, TypeVar

from sqlalchemy import event
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from gatepass.core.config import get_settings
from gatepass.core.errors import StorageConflict
from gatepass.core.logging import get_logger
from gatepass.core.metrics import db_retries, record_db_operation
from gatepass.services.notification_service import (
    NotificationDispatcher,
    get_dispatcher,
    pop_pending_notifications,
)

logger = get_logger(__name__)

T = TypeVar("T")

# serialization_failure, deadlock_detected, unique_violation
RETRYABLE_SQLSTATES = {"40001", "40P01", "23505"}

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def build_engine(url: str, **overrides) -> AsyncEngine:
    """Create an async engine whose transactions serialize capacity decisions."""
    settings = get_settings()

    if url.startswith("sqlite"):
        engine = create_async_engine(
            url,
            connect_args={"timeout": settings.SQLITE_BUSY_TIMEOUT},
            **overrides,
        )
        _take_write_lock_on_begin(engine)
        return engine

    options = {
        "isolation_level": "SERIALIZABLE",
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_timeout": settings.DB_POOL_TIMEOUT,
        "pool_recycle": settings.DB_POOL_RECYCLE,
        "pool_pre_ping": True,
    }
    options.update(overrides)
    return create_async_engine(url, **options)


def _take_write_lock_on_begin(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        # Stop the driver from issuing its own deferred BEGIN
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = build_engine(get_settings().DATABASE_URL)
    return _engine


def get_session_factory() -> async_sessionmaker:
    """Process-wide session factory; also used as a FastAPI dependency."""
    global _session_factory
    if _session_factory is None:
        _session_factory = build_session_factory(get_engine())
    return _session_factory


async def dispose_engine() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Read-side request session. Writes go through run_in_transaction()."""
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def insert_for(session: AsyncSession):
    """Dialect-specific insert() that supports ON CONFLICT upserts."""
    if session.get_bind().dialect.name == "postgresql":
        return postgresql.insert
    return sqlite.insert


def is_storage_conflict(exc: DBAPIError) -> bool:
    """True when a write lost a race and replaying the transaction can succeed."""
    orig = exc.orig
    for candidate in (orig, getattr(orig, "__cause__", None)):
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code in RETRYABLE_SQLSTATES:
            return True

    message = str(orig)
    return "database is locked" in message or "UNIQUE constraint failed" in message


async def run_in_transaction(
    work: Callable[[AsyncSession], Awaitable[T]],
    *,
    session_factory: Optional[async_sessionmaker] = None,
    attempts: Optional[int] = None,
    dispatcher: Optional[NotificationDispatcher] = None,
) -> T:
    """
    Run `work(session)` as one transaction and commit it.
    Retries the whole unit on storage conflicts, then raises StorageConflict.
    """
    factory = session_factory or get_session_factory()
    max_attempts = attempts or get_settings().MAX_TRANSACTION_ATTEMPTS

    for attempt in range(1, max_attempts + 1):
        async with factory() as session:
            try:
                result = await work(session)
                await session.commit()
            except DBAPIError as exc:
                await session.rollback()
                if not is_storage_conflict(exc):
                    raise
                db_retries.inc()
                record_db_operation("retry")
                logger.info(
                    "transaction_retry",
                    attempt=attempt,
                    reason=type(exc.orig).__name__,
                )
                if attempt == max_attempts:
                    record_db_operation("conflict")
                    raise StorageConflict(max_attempts) from exc
                continue
            except Exception:
                await session.rollback()
                raise

            record_db_operation("commit")
            pending = pop_pending_notifications(session)

        if pending:
            (dispatcher or get_dispatcher()).submit_many(pending)
        return result

    # Loop always returns or raises
    raise StorageConflict(max_attempts)
