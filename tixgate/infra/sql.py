import os
import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable, AsyncContextManager

from sqlalchemy import event, text
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncEngine, AsyncSession
)
from contextlib import asynccontextmanager
from tenacity import (
    AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential,
)

from .. import config
from ..errors import LockTimeout

logger = logging.getLogger(__name__)

Gated = Callable[[], AsyncContextManager[None]]

# lock_not_available, serialization_failure, deadlock_detected
_TRANSIENT_SQLSTATES = {"55P03", "40001", "40P01"}
_SQLITE_BUSY_MESSAGES = (
    "database is locked", "database is busy", "database table is locked",
)


def _normalize_async_url(url: str) -> str:
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


# DB-GATE
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


@dataclass
class Database:
    engine: AsyncEngine
    sessionmaker: async_sessionmaker
    gated: Gated

    @property
    def is_postgres(self) -> bool:
        return self.engine.dialect.name == "postgresql"

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """
        One gated session with one transaction around it. Commits on clean
        exit, rolls back when the block raises.
        """
        async with self.gated():
            async with self.sessionmaker() as session:
                async with session.begin():
                    if self.is_postgres:
                        # contention must fail fast instead of queueing
                        await session.execute(text(
                            f"SET LOCAL lock_timeout = "
                            f"'{int(config.LOCK_TIMEOUT_MS)}ms'"
                        ))
                    yield session

    async def dispose(self) -> None:
        await self.engine.dispose()


def make_async_engine(database_url: str) -> Database:
    db_url = _normalize_async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)

    pool_size = None
    if db_url.startswith("postgresql+asyncpg://"):
        pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        kw.update(
            pool_size=pool_size,
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
        )

    engine = create_async_engine(db_url, **kw)

    if db_url.startswith("sqlite+aiosqlite://"):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.execute("PRAGMA busy_timeout=5000;")
            cur.execute("PRAGMA synchronous=NORMAL;")
            cur.close()

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    # DB-GATE
    # Create a per-engine gate. Default to pool_size
    if pool_size is None:
        # sqlite
        gate_limit = int(os.getenv("DB_GATE_LIMIT", "10"))
    else:
        # postgres
        gate_limit = int(os.getenv("DB_GATE_LIMIT", pool_size))

    db_gate = asyncio.Semaphore(max(1, gate_limit))

    def gated():
        return _gated(db_gate)

    return Database(engine=engine, sessionmaker=SessionAsync, gated=gated)


# ----------------------------
# Transient contention
# ----------------------------
def is_transient(exc: BaseException) -> bool:
    if not isinstance(exc, DBAPIError):
        return False
    if exc.connection_invalidated:
        return True
    orig = getattr(exc, "orig", None)
    sqlstate = getattr(orig, "sqlstate", None) or getattr(
        getattr(orig, "__cause__", None), "sqlstate", None
    )
    if sqlstate in _TRANSIENT_SQLSTATES:
        return True
    if isinstance(exc, OperationalError):
        # sqlite reports contention only through the message
        msg = str(orig or exc).lower()
        return any(m in msg for m in _SQLITE_BUSY_MESSAGES)
    return False


def _log_retry(retry_state) -> None:
    logger.info(
        "transient database error, retrying (attempt %d): %s",
        retry_state.attempt_number,
        retry_state.outcome.exception(),
    )


def transient_retry(attempts: int | None = None) -> AsyncRetrying:
    """
    usage:
        async for attempt in transient_retry():
            with attempt:
                await do_the_transaction()
    """
    return AsyncRetrying(
        retry=retry_if_exception(is_transient),
        stop=stop_after_attempt(attempts or config.TRANSIENT_RETRY_ATTEMPTS),
        wait=wait_exponential(multiplier=0.05, max=1.0),
        before_sleep=_log_retry,
        reraise=True,
    )


async def atomically(db: Database, fn, *args, **kwargs):
    """
    Run `fn(session, *args, **kwargs)` inside one gated transaction.
    Transient contention is retried; when the budget is spent it surfaces as
    LockTimeout. Everything else propagates untouched.
    """
    try:
        async for attempt in transient_retry():
            with attempt:
                async with db.transaction() as session:
                    result = await fn(session, *args, **kwargs)
    except Exception as exc:
        if is_transient(exc):
            raise LockTimeout(str(exc)) from exc
        raise
    return result
