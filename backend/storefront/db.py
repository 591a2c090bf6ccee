import os
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import declarative_base

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./local.db").strip()


def _engine_options(url: str) -> dict:
    opts = {"echo": False, "future": True}
    if (url or "").lower().startswith("sqlite"):
        return opts
    # Managed Postgres drops idle connections; pre-ping and recycle keep the pool usable.
    opts.update({
        "pool_pre_ping": True,
        "pool_recycle": int(os.environ.get("DB_POOL_RECYCLE_SECONDS", "300").strip() or 300),
    })
    if os.environ.get("DB_POOL_SIZE"):
        opts["pool_size"] = int(os.environ.get("DB_POOL_SIZE", "").strip() or 5)
    if os.environ.get("DB_MAX_OVERFLOW"):
        opts["max_overflow"] = int(os.environ.get("DB_MAX_OVERFLOW", "").strip() or 10)
    return opts


def provider_name(url: str = DATABASE_URL) -> str:
    """Human label for the configured backend, shown on the database page."""
    scheme = (url or "").split(":", 1)[0].lower()
    if scheme.startswith("postgres"):
        return "PostgreSQL"
    if scheme.startswith("sqlite"):
        return "SQLite"
    if scheme.startswith("mysql"):
        return "MySQL"
    return scheme or "unknown"


engine = create_async_engine(DATABASE_URL, **_engine_options(DATABASE_URL))
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
Base = declarative_base()


async def get_session() -> AsyncSession:
    """FastAPI dependency that yields an async session."""
    async with SessionLocal() as session:
        yield session


async def init_db():
    """Create tables at startup (safe to run repeatedly)."""
    from . import models  # noqa: F401  register tables on Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
