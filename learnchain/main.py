import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv


# Load .env FIRST before any other imports that might need env vars
PROJECT_DIR = Path(__file__).parent.parent
ENV_PATH = PROJECT_DIR / ".env"
load_dotenv(ENV_PATH)

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from sqlalchemy.exc import OperationalError

from .config.logging import setup_logging
from .config.settings import Settings, get_settings
from .database.init import init_database
from .database.session import async_session_maker, engine
from .enrollment.router import router as enrollment_router
from .ledger.exceptions import LedgerSetupError
from .ledger.factory import create_ledger
from .middleware.error_handlers import register_exception_handlers
from .progress.router import router as progress_router
from .reconciliation.job import ReconciliationJob
from .reconciliation.scheduler import ReconciliationScheduler
from .user.router import router as user_router


setup_logging()
logger = logging.getLogger(__name__)


def _register_routers(app: FastAPI) -> None:
    """Register all application routers."""
    app.include_router(enrollment_router)
    app.include_router(progress_router)
    app.include_router(user_router)


async def _startup_database() -> None:
    """Initialize database with retry logic."""
    max_retries = 5
    retry_delay = 1  # seconds

    for attempt in range(max_retries):
        try:
            await init_database(engine)
            logger.info("Database initialization completed successfully")

            break  # Success - exit the retry loop

        except OperationalError:
            if attempt == max_retries - 1:  # Last attempt
                logger.exception("Startup failed after %d attempts", max_retries)
                raise

            logger.warning(
                "Database connection attempt %d failed, retrying in %ds...",
                attempt + 1,
                retry_delay,
            )
            await asyncio.sleep(retry_delay)
            retry_delay *= 2  # Exponential backoff


async def _startup_ledger(app: FastAPI, settings: Settings) -> None:
    """Create the ledger and check the relayer. A broken relayer setup is fatal."""
    ledger = create_ledger(settings)
    if settings.LEDGER_VERIFY_ON_STARTUP:
        try:
            await ledger.verify_setup()
        except LedgerSetupError:
            logger.exception("Ledger setup verification failed")
            await ledger.close()
            raise
    app.state.ledger = ledger

    if settings.RECONCILE_ENABLED:
        job = ReconciliationJob(async_session_maker, ledger, settings, engine=engine)
        scheduler = ReconciliationScheduler(job, settings.RECONCILE_INTERVAL_SECONDS)
        scheduler.start()
        app.state.reconciliation_scheduler = scheduler


async def _shutdown_cleanup(app: FastAPI) -> None:
    """Clean up resources on shutdown."""
    logger.info("Starting graceful shutdown...")

    scheduler = getattr(app.state, "reconciliation_scheduler", None)
    if scheduler is not None:
        await scheduler.stop()

    ledger = getattr(app.state, "ledger", None)
    if ledger is not None:
        try:
            await ledger.close()
            logger.info("Ledger client closed successfully")
        except Exception as e:
            logger.warning(f"Error closing ledger client: {e}")

    # Close database engine and all connections
    try:
        await engine.dispose()
        logger.info("Database engine disposed successfully")
    except Exception as e:
        logger.warning(f"Error disposing database engine: {e}")

    logger.info("Shutdown complete")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan events."""
    # Startup
    settings = app.state.settings
    await _startup_database()
    await _startup_ledger(app, settings)

    yield

    # Shutdown
    await _shutdown_cleanup(app)


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure FastAPI application."""
    try:
        settings = settings or get_settings()
    except Exception:
        logger.exception("Failed to load settings")
        raise

    app = FastAPI(
        title="learnchain API",
        description="Learning progress, point rewards and on-chain course records",
        version="0.1.0",
        debug=settings.DEBUG,
        lifespan=lifespan if settings.ENVIRONMENT != "test" else None,
    )
    app.state.settings = settings

    # Note: When allow_credentials=True, allow_origins cannot be ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Add gzip compression middleware
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    register_exception_handlers(app)

    # Register health check endpoint
    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Check application health status."""
        return {"status": "healthy"}

    _register_routers(app)

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn

    from .config import env

    host = env("API_HOST", "127.0.0.1")
    port = int(env("API_PORT", "8080"))

    uvicorn.run(app, host=host, port=port)
