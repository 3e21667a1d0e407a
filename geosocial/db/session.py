import structlog
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from geosocial.core.config import settings
from geosocial.models.tables import Base

logger = structlog.get_logger(__name__)


def create_engine(database_url: str = settings.DATABASE_URL, echo: bool = settings.DB_ECHO) -> AsyncEngine:
    if database_url.startswith("sqlite"):
        # In-memory SQLite only survives on a single shared connection
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url:
            kwargs["poolclass"] = StaticPool
    else:
        kwargs = {"pool_pre_ping": True}

    engine = create_async_engine(database_url, echo=False, future=True, **kwargs)

    if echo:
        # --- SQL query logging ---
        @event.listens_for(engine.sync_engine, "before_cursor_execute")
        def before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
            logger.debug("sql", statement=statement, params=parameters)

    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind=engine,
        autoflush=False,
        expire_on_commit=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("db_tables_ready", tables=sorted(Base.metadata.tables))
