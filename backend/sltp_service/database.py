from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from sltp_service.config import settings


class Base(DeclarativeBase):
    pass


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """WAL lets dispatch reads run during exit bookings; writers wait instead of failing."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute(f"PRAGMA busy_timeout={settings.sqlite_busy_timeout_ms}")
    cursor.close()


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Async engine with SQLite pragmas applied to every new connection."""
    sqlite = _is_sqlite(url)
    new_engine = create_async_engine(
        url,
        echo=echo,
        connect_args={"check_same_thread": False} if sqlite else {},
        pool_pre_ping=True,
        pool_recycle=3600,
    )
    if sqlite:
        event.listens_for(new_engine.sync_engine, "connect")(_set_sqlite_pragma)
    return new_engine


engine = build_engine(settings.database_url, echo=settings.database_echo)

async_session_maker = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
)


async def init_db():
    # Register tables on Base.metadata before create_all
    import sltp_service.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_db():
    await engine.dispose()
