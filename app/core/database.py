import logging
import ssl
from urllib.parse import urlparse

from sqlalchemy import event
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from app.core.config import get_database_url

logger = logging.getLogger(__name__)


def normalize_database_url(database_url: str) -> str:
    """
    Turn a provider connection string into an async SQLAlchemy URL.

    asyncpg fails if it sees "sslmode" in the URL, and Supabase hands out
    plain postgres:// URLs.
    """
    if "?sslmode=" in database_url:
        logger.info("[DB] Cleaning URL parameters (removing sslmode)")
        database_url = database_url.split("?sslmode=")[0]

    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql+asyncpg://", 1)
    elif database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    return database_url


def _install_sqlite_write_lock(engine: AsyncEngine) -> None:
    # Every transaction takes the write lock up front, so concurrent
    # check-and-increment transactions queue on the busy timeout instead of
    # failing on a lock upgrade.
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create the async engine for the given URL.

    PostgreSQL hosts other than local/docker ones get an SSL context; SQLite
    databases get immediate write transactions.
    """
    database_url = normalize_database_url(database_url)
    parsed = urlparse(database_url)
    connect_args = {}

    if parsed.scheme.startswith("postgresql"):
        host = parsed.hostname or ""
        if host not in ("db", "localhost", "127.0.0.1"):
            logger.info("[DB] Creating secure SSL context (remote DB)")
            ssl_context = ssl.create_default_context()
            ssl_context.check_hostname = False
            ssl_context.verify_mode = ssl.CERT_NONE
            connect_args["ssl"] = ssl_context
        else:
            logger.info("[DB] Local/Docker DB detected, SSL disabled")

    engine = create_async_engine(
        database_url,
        echo=echo,
        connect_args=connect_args,
        poolclass=NullPool,  # serverless friendly, one connection per session
    )

    if engine.dialect.name == "sqlite":
        _install_sqlite_write_lock(engine)

    return engine


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(bind=bind, expire_on_commit=False)


engine = build_engine(get_database_url())

# Create the session factory (Session Local)
AsyncSessionLocal = build_session_factory(engine)


# Base class for models (Tables)
class Base(DeclarativeBase):
    pass


# Dependency to get DB session in FastAPI endpoints
async def get_db():
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


def dialect_insert(db: AsyncSession):
    """
    Return the INSERT construct of the session's dialect.

    Only the PostgreSQL and SQLite variants support ON CONFLICT DO NOTHING,
    which the atomic counters rely on.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise ValueError(f"Upserts are not supported on dialect '{dialect}'")
