"""Async engine and session factory for PostgreSQL (asyncpg)."""
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from backend.app.core.settings import get_settings

_settings = get_settings()

engine = create_async_engine(
    url=_settings.db_url,
    echo=False,
    pool_size=_settings.DB_POOL_SIZE,
    max_overflow=_settings.DB_MAX_OVERFLOW,
    pool_recycle=_settings.DB_POOL_RECYCLE,
    pool_pre_ping=True,
    pool_timeout=30,
)

# expire_on_commit=False: services hand committed ORM objects back to the routers
async_session = async_sessionmaker(engine, expire_on_commit=False)
