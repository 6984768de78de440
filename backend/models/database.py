"""
Database connection and session management.
"""

import logging
from datetime import datetime

from sqlalchemy import Column, Integer, DateTime, select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker, declarative_base

from config import settings

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

# SQLite with async support
DATABASE_URL = settings.database_url.replace("sqlite:///", "sqlite+aiosqlite:///")

# SQLite needs special handling for async operations
engine = create_async_engine(
    DATABASE_URL,
    echo=settings.debug,
    connect_args={
        "timeout": 30,  # Wait up to 30 seconds for locks
        "check_same_thread": False,
    } if DATABASE_URL.startswith("sqlite") else {},
    pool_pre_ping=True,  # Verify connections before use
)
async_session = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


class SchemaVersion(Base):
    """Tracks the database schema version for future migrations."""
    __tablename__ = "schema_version"
    id = Column(Integer, primary_key=True)
    version = Column(Integer, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow)


async def get_db():
    """Dependency for getting database sessions."""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db():
    """Create tables and record the schema version on first run."""
    # Import models here to ensure they are registered with Base metadata
    from models.subject import Subject  # noqa: F401
    from models.queue_entry import QueueEntry  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

        result = await conn.execute(select(SchemaVersion.id).limit(1))
        if result.scalar_one_or_none() is None:
            await conn.execute(
                SchemaVersion.__table__.insert().values(version=SCHEMA_VERSION)
            )
            logger.info(f"Initialized schema version {SCHEMA_VERSION}")
