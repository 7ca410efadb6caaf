from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from . import config
import logging

logger = logging.getLogger(__name__)

Base = declarative_base()


def _masked(url: str) -> str:
    return url.replace(config.DATABASE_PASSWORD, "***") if config.DATABASE_PASSWORD else url


def create_session_factory(database_url: str | None = None) -> tuple[AsyncEngine, async_sessionmaker]:
    """Builds the async engine and the session factory bound to it."""
    url = database_url or config.DATABASE_URL
    try:
        logger.info(f"Attempting to create engine with URL: {_masked(url)}") # Hide password
        engine = create_async_engine(url, echo=config.DATABASE_ECHO, pool_pre_ping=True)
        # Use async_sessionmaker for SQLAlchemy 2.0+
        factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        logger.info("Async database engine and session factory created successfully.")
    except Exception as e:
        logger.error(f"FATAL: Failed to create database engine or session factory: {e}")
        raise RuntimeError(f"Could not initialize database connection: {e}") from e
    return engine, factory


async def create_tables(engine: AsyncEngine) -> None:
    # Development convenience; production schemas are migrated separately
    logger.info("Checking/Creating database tables...")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables check complete.")
