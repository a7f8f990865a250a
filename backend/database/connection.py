from typing import Optional

from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
)
from sqlalchemy import text
from dotenv import load_dotenv
from pathlib import Path
import logging

from config import get_settings

logger = logging.getLogger(__name__)

# Load environment variables
ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / '.env')

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def get_engine() -> AsyncEngine:
    """
    Create the async engine on first use.

    Raises ConfigurationError when no database URL is configured, so
    importing this module never fails on its own.
    """
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.get_database_url(),
            echo=False,
            pool_pre_ping=True,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
        )
    return _engine


def get_session_factory() -> async_sessionmaker:
    """Session factory bound to the shared engine"""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False
        )
    return _session_factory


async def get_db():
    """Dependency to get database session"""
    async with get_session_factory()() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db():
    """Verify the connection and that the engine's tables exist"""
    try:
        async with get_engine().begin() as conn:
            await conn.execute(text("SELECT 1"))
            logger.info("PostgreSQL connection successful")

            tables_query = text("""
                SELECT table_name
                FROM information_schema.tables
                WHERE table_schema = 'public'
                  AND table_name IN ('transaction_records', 'invoice_records', 'reconciliation_leases')
            """)
            result = await conn.execute(tables_query)
            tables = [row[0] for row in result.fetchall()]
            logger.info(f"Reconciliation tables present: {tables}")

            return True
    except Exception as e:
        logger.error(f"Database initialization error: {e}")
        raise


async def dispose_engine():
    """Close pooled connections at shutdown"""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
