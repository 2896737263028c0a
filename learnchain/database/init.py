"""Database initialization - creates tables from the registered models."""

import logging

from sqlalchemy.ext.asyncio import AsyncEngine

# Import all models to register them with Base metadata
from learnchain.courses.models import Course, Lesson, Quiz  # noqa: F401
from learnchain.ledger.models import ChainTransaction  # noqa: F401
from learnchain.progress.models import PointEvent, QuizAttempt, UserCourse, UserLesson  # noqa: F401
from learnchain.user.models import User  # noqa: F401

from .base import Base


logger = logging.getLogger(__name__)


async def init_database(db_engine: AsyncEngine) -> None:
    """Create all tables from models (idempotent)."""
    async with db_engine.begin() as conn:
        logger.info("Creating database tables from models...")
        await conn.run_sync(Base.metadata.create_all)
        logger.info("All tables created successfully")


async def drop_database(db_engine: AsyncEngine) -> None:
    """Drop every table known to the metadata. Used by the test-suite."""
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
