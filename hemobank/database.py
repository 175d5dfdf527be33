"""Async database engine, session factory and portable column types."""
import enum
from datetime import datetime, timezone

from sqlalchemy import JSON, DateTime, Enum, TypeDecorator, make_url
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from hemobank.core.config import get_settings

ASYNCPG_UNSUPPORTED_QUERY_KEYS = frozenset({"sslmode", "ssl_mode"})
SSL_REQUIRED_MODES = frozenset({"require", "verify-ca", "verify-full"})

JSONType = JSON().with_variant(JSONB(), "postgresql")


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC timestamps on every backend (SQLite drops tzinfo)."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def str_enum(enum_cls: type[enum.Enum]) -> Enum:
    """Store a str Enum by value in a plain VARCHAR column."""
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


def _async_engine_url_and_connect_args():
    """Return the async database URL and the driver connect_args.

    asyncpg rejects libpq's ``sslmode`` query parameter, so it is lifted out
    of the URL and becomes ``ssl=True`` for the modes that need TLS.
    """
    url = make_url(get_settings().database_url_async)
    query = dict(url.query)
    sslmode = None
    for key in [k for k in query if k.lower() in ASYNCPG_UNSUPPORTED_QUERY_KEYS]:
        value = query.pop(key)
        if isinstance(value, tuple):
            value = value[0] if value else None
        sslmode = sslmode or value

    connect_args = {}
    if sslmode and sslmode.lower() in SSL_REQUIRED_MODES:
        connect_args["ssl"] = True
    return url.set(query=query).render_as_string(hide_password=False), connect_args


def get_engine():
    settings = get_settings()
    url, connect_args = _async_engine_url_and_connect_args()
    pool_options = {}
    if not settings.is_sqlite:
        pool_options = {
            "pool_size": settings.DB_POOL_SIZE,
            "max_overflow": settings.DB_MAX_OVERFLOW,
            "pool_timeout": settings.DB_POOL_TIMEOUT,
            "pool_recycle": settings.DB_POOL_RECYCLE,
            "pool_pre_ping": True,
        }
    return create_async_engine(url, echo=False, connect_args=connect_args, **pool_options)


def make_session_factory(bind) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = get_engine()
async_session_factory = make_session_factory(engine)


class Base(DeclarativeBase):
    pass


async def init_db(bind=None) -> None:
    """Create tables if they do not exist. Production schemas are managed by alembic."""
    from hemobank import models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session() -> AsyncSession:
    async with async_session_factory() as session:
        yield session


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
