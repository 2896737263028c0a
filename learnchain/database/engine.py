from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from learnchain.config.settings import get_settings


settings = get_settings()


def create_app_engine(database_url: str | None = None) -> AsyncEngine:
    """Create the async engine for Postgres (psycopg 3) or SQLite (aiosqlite).

    - Postgres: standard pool with pre-ping and a connect timeout so a stuck
      database surfaces as an OperationalError instead of hanging a request.
    - SQLite: used by the test-suite and local experiments; no pool tuning.
    """
    database_url = database_url or settings.DATABASE_URL

    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=False)

    return create_async_engine(
        database_url,
        echo=False,  # Set True for SQL debugging
        pool_size=10,
        max_overflow=10,
        pool_recycle=3600,  # ~1h
        pool_pre_ping=True,
        pool_use_lifo=True,
        connect_args={"connect_timeout": 10},
    )


# Create the engine
engine: AsyncEngine = create_app_engine()
