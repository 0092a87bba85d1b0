import logging
from datetime import datetime, timezone

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """Naive UTC timestamp; every table stores UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Database:
    """Engine and session factory for one service's store."""

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.engine = create_async_engine(url, echo=echo)
        if url.startswith("sqlite"):
            _use_immediate_transactions(self.engine)
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    def session(self) -> AsyncSession:
        return self.session_factory()

    async def create_all(self, metadata) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)
        logger.info("Schema ready on %s", self.engine.url.render_as_string(hide_password=True))

    async def dispose(self) -> None:
        await self.engine.dispose()


def _use_immediate_transactions(engine) -> None:
    # SQLite only takes the write lock at the first write; a read-then-write
    # transaction can then fail with "database is locked" instead of waiting.
    # BEGIN IMMEDIATE makes writers queue on the busy timeout.
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")
