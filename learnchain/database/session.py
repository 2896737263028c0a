from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from learnchain.database.engine import engine


def create_session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build a session factory bound to ``db_engine``.

    Objects stay loaded after commit. Services that depend on a value another
    transaction may have changed re-read it with ``session.refresh``.
    """
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


async_session_maker = create_session_factory(engine)


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Get an async database session generator.

    Yields
    ------
        AsyncSession: Database session without automatic commit.
        Services commit each state transition themselves.
    """
    async with async_session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


# Create a reusable dependency
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
