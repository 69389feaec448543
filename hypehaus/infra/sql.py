import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Callable, AsyncContextManager, Optional
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
)
from contextlib import asynccontextmanager

Gated = Callable[[], AsyncContextManager[None]]


def _normalize_async_url(url: str) -> str:
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


# DB-GATE: bound concurrent DB work to what the pool can serve
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


@dataclass
class GatedAsyncSession:
    session: AsyncSession
    gated: Gated


@dataclass
class Database:
    engine: AsyncEngine
    sessionmaker: async_sessionmaker
    gate: asyncio.Semaphore

    def gated(self):
        return _gated(self.gate)

    @asynccontextmanager
    async def connect(self) -> AsyncIterator[GatedAsyncSession]:
        async with self.sessionmaker() as session:
            yield GatedAsyncSession(session=session, gated=self.gated)

    async def create_schema(self) -> None:
        # late import: orm imports nothing from infra, keep it that way
        from ..model.orm import Base
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()


def make_database(
    database_url: str,
    *,
    pool_size: int = 10,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    gate_limit: Optional[int] = None,
) -> Database:
    db_url = _normalize_async_url(database_url)
    kw = dict(pool_pre_ping=True)

    is_postgres = db_url.startswith("postgresql+asyncpg://")
    if is_postgres:
        kw.update(
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
        )

    engine = create_async_engine(db_url, **kw)

    if db_url.startswith("sqlite+aiosqlite://"):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.execute("PRAGMA busy_timeout=5000;")
            cur.execute("PRAGMA synchronous=NORMAL;")
            cur.execute("PRAGMA foreign_keys=ON;")
            cur.close()

    sessionmaker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    # gate defaults to the pool size on postgres, 10 on sqlite
    if gate_limit is None:
        gate_limit = pool_size if is_postgres else 10

    return Database(
        engine=engine,
        sessionmaker=sessionmaker,
        gate=asyncio.Semaphore(max(1, gate_limit)),
    )


def database_for(settings) -> Database:
    return make_database(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
        gate_limit=settings.db_gate_limit,
    )
