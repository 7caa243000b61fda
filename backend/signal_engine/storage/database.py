"""Database connection, the signals table and the change-notification trigger."""

import re
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import (
    Column,
    DateTime,
    Index,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from signal_engine.config import get_settings

Base = declarative_base()

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class SignalTable(Base):
    """Signals table (store of record, shared with the dashboard)."""

    __tablename__ = "signals"

    id = Column(String(64), primary_key=True)
    symbol = Column(String(32), nullable=False)
    direction = Column(String(10), nullable=False)  # 'long' | 'short'
    entry_price = Column(Numeric(30, 10), nullable=True)
    take_profit = Column(Numeric(30, 10), nullable=True)
    stop_loss = Column(Numeric(30, 10), nullable=True)
    leverage = Column(Numeric(10, 2), nullable=True)
    status = Column(String(20), nullable=False, default="pending_entry")
    entry_time = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=text("NOW()"))
    exit_type = Column(String(20), nullable=True)  # 'take_profit' | 'stop_loss'
    exit_price = Column(Numeric(30, 10), nullable=True)
    exit_time = Column(DateTime(timezone=True), nullable=True)
    signal_duration = Column(String(32), nullable=True)
    pnl_percentage = Column(Numeric(20, 4), nullable=True)
    pnl_ratio = Column(Text, nullable=True)  # Text keeps all 6 decimals

    __table_args__ = (
        Index("idx_signals_status", "status"),
        Index("idx_signals_symbol_status", "symbol", "status"),
    )


def change_feed_statements(channel: str) -> list[str]:
    """SQL that publishes every row change on the signals table.

    Payload: {"eventType": "INSERT"|"UPDATE"|"DELETE", "new": row, "old": row}
    """
    if not _IDENTIFIER.match(channel):
        raise ValueError(f"Invalid notification channel name: {channel!r}")

    table = SignalTable.__tablename__
    return [
        f"""
        CREATE OR REPLACE FUNCTION notify_{table}_change() RETURNS trigger AS $$
        BEGIN
            PERFORM pg_notify('{channel}', CAST(json_build_object(
                'eventType', TG_OP,
                'new', CASE WHEN TG_OP = 'DELETE' THEN NULL ELSE row_to_json(NEW) END,
                'old', CASE WHEN TG_OP = 'INSERT' THEN NULL ELSE row_to_json(OLD) END
            ) AS text));
            RETURN NULL;
        END;
        $$ LANGUAGE plpgsql
        """,
        f"DROP TRIGGER IF EXISTS {table}_change_notify ON {table}",
        f"""
        CREATE TRIGGER {table}_change_notify
        AFTER INSERT OR UPDATE OR DELETE ON {table}
        FOR EACH ROW EXECUTE FUNCTION notify_{table}_change()
        """,
    ]


def to_asyncpg_url(url: str) -> str:
    """Convert postgresql:// to postgresql+asyncpg:// for SQLAlchemy."""
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def to_plain_url(url: str) -> str:
    """Strip the SQLAlchemy driver suffix for direct asyncpg connections."""
    return url.replace("postgresql+asyncpg://", "postgresql://", 1)


class Database:
    """Database connection manager."""

    def __init__(self, database_url: str | None = None):
        settings = get_settings()
        url = to_asyncpg_url(database_url or settings.database_url)

        # Sized for a burst of conditional writes plus the periodic resync
        self.engine = create_async_engine(
            url,
            echo=settings.debug,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,    # Validate before use
            pool_recycle=3600,     # Recycle every hour
            pool_timeout=30,       # Wait max 30s for connection
            connect_args={
                "timeout": 10,                 # Connection timeout
                "command_timeout": 30,         # Query timeout
            },
        )
        self.session_factory = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self) -> None:
        """Create the signals table if it does not exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def install_change_feed(self, channel: str) -> None:
        """Install (or replace) the row-change notification trigger."""
        async with self.engine.begin() as conn:
            for statement in change_feed_statements(channel):
                await conn.execute(text(statement))

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get a database session."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def close(self) -> None:
        """Close database connection."""
        await self.engine.dispose()


# Global database instance
_db: Database | None = None


def get_database() -> Database:
    """Get the global database instance."""
    global _db
    if _db is None:
        _db = Database()
    return _db


async def init_database() -> Database:
    """Initialize the database: create the table and the change trigger."""
    db = get_database()
    await db.create_tables()
    await db.install_change_feed(get_settings().change_feed_channel)
    return db
