"""Database setup with SQLAlchemy 2.0 async."""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import DateTime, Dialect, TypeDecorator, event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from chatpay.config import settings


class UTCDateTime(TypeDecorator[datetime]):
    """Timezone-aware DateTime.

    Stores UTC and returns aware datetimes for every dialect, including
    SQLite, which drops tzinfo on the way back.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    @property
    def python_type(self) -> type[datetime]:
        return datetime

    def process_bind_param(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return value
        if value.tzinfo is None:
            raise TypeError("tzinfo is required")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: datetime | None, dialect: Dialect) -> datetime | None:
        if value is None:
            return value
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    type_annotation_map = {datetime: UTCDateTime}


def create_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
    """Create an async engine with serialized transactions on every backend."""
    if not database_url.startswith("sqlite"):
        kwargs = {}
        if settings.database_isolation_level:
            kwargs["isolation_level"] = settings.database_isolation_level
        return create_async_engine(database_url, echo=echo, future=True, **kwargs)

    engine = create_async_engine(database_url, echo=echo, future=True)

    @event.listens_for(engine.sync_engine, "connect")
    def _sqlite_on_connect(dbapi_connection: Any, _: Any) -> None:
        """Turn off the driver's own BEGIN, which it defers to the first write."""
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _sqlite_on_begin(conn: Any) -> None:
        # Take the write lock before the first read so read-then-write is atomic
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# Create async engine
engine = create_engine(settings.database_url, echo=settings.debug and not settings.log_json)

# Create async session factory
AsyncSessionLocal = create_session_factory(engine)


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Initialize database tables."""
    # Registers every mapped table on Base.metadata
    import chatpay.models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
