"""
Database Configuration and Session Management
============================================

Async engine, session factory and table creation for the prize-pool wallet
service. The engine is built on first use from Config.DATABASE_URL so that
importing services never requires a live database.
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import ProgrammingError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from config import Config
from models import Base

logger = logging.getLogger(__name__)

async_engine: Optional[AsyncEngine] = None
AsyncSessionLocal: Optional[async_sessionmaker] = None


def to_async_database_url(database_url: str) -> str:
    """Rewrite a plain PostgreSQL URL for asyncpg"""
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    # asyncpg uses 'ssl' instead of 'sslmode'
    for mode in ("require", "prefer", "disable"):
        database_url = database_url.replace(f"sslmode={mode}", f"ssl={mode}")
    return database_url


def init_database(database_url: Optional[str] = None, **engine_kwargs) -> async_sessionmaker:
    """Create the async engine and session factory, replacing any previous ones"""
    global async_engine, AsyncSessionLocal

    database_url = database_url or Config.DATABASE_URL
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is required")

    async_url = to_async_database_url(database_url)
    if async_url.startswith("postgresql+asyncpg://"):
        engine_kwargs.setdefault("pool_size", Config.DATABASE_POOL_SIZE)
        engine_kwargs.setdefault("max_overflow", Config.DATABASE_MAX_OVERFLOW)
        engine_kwargs.setdefault("pool_pre_ping", True)
        engine_kwargs.setdefault("pool_recycle", 3600)
        engine_kwargs.setdefault("connect_args", {
            "server_settings": {"application_name": "prize_pool_wallets"},
            "timeout": 10,
            "command_timeout": 30,
        })

    async_engine = create_async_engine(async_url, echo=False, **engine_kwargs)
    AsyncSessionLocal = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )
    logger.info("✅ DATABASE_INITIALIZED: async engine ready")
    return AsyncSessionLocal


def get_session_factory() -> async_sessionmaker:
    if AsyncSessionLocal is None:
        init_database()
    return AsyncSessionLocal


@asynccontextmanager
async def async_managed_session(session_factory: Optional[async_sessionmaker] = None):
    """Async context manager for database sessions, commits on success"""
    session = (session_factory or get_session_factory())()
    try:
        yield session
        await session.commit()
    except Exception as e:
        logger.error(f"Database session error: {e}")
        await session.rollback()
        raise
    finally:
        await session.close()


async def create_tables(engine: Optional[AsyncEngine] = None) -> bool:
    """Create all database tables if they don't exist"""
    if engine is None:
        get_session_factory()
        engine = async_engine

    logger.info(f"🏗️ Creating database tables (if they don't exist) - {len(Base.metadata.tables)} models")
    try:
        async with engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all, checkfirst=True)
    except ProgrammingError as e:
        if "already exists" not in str(e):
            raise
        logger.info(f"⚠️ Some database objects already exist (this is normal): {e}")

    logger.info("✅ Database schema verified")
    return True


async def test_connection() -> bool:
    """Test database connection"""
    get_session_factory()
    try:
        async with async_engine.connect() as connection:
            await connection.execute(text("SELECT 1"))
        logger.info("✅ Database connection test successful")
        return True
    except Exception as e:
        logger.error(f"❌ Database connection test failed: {e}")
        return False
