"""field-tracker service entry point.

Initializes the FastAPI application with:
- A motor client on the configured MongoDB database
- The FieldTracker registry, populated by an optional setup callable
- Tracking and ledger indexes, when enabled
- The read-only ledger API
"""

from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI
from motor.motor_asyncio import AsyncIOMotorClient

from field_tracker.adapters.registry import FieldTracker
from field_tracker.api.router import router
from field_tracker.ledger.reader import LedgerReader
from field_tracker.observability import configure_logging, get_logger
from field_tracker.settings import TrackerSettings

logger = get_logger(__name__)


def create_app(
    settings: TrackerSettings | None = None,
    setup: Callable[[FieldTracker], None] | None = None,
) -> FastAPI:
    """Build the application.

    Args:
        settings: Service settings; read from the environment when omitted.
        setup: Called with the registry at startup, before indexes are
            ensured, to register the tracked collections.

    Returns:
        The configured FastAPI application.
    """
    settings = settings or TrackerSettings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        configure_logging(settings.log_level, settings.json_logs)
        logger.info("Connecting to MongoDB", service=settings.service_name, database=settings.database_name)
        client: AsyncIOMotorClient = AsyncIOMotorClient(settings.mongo_url)
        database = client[settings.database_name]

        tracker = FieldTracker(database, settings)
        if setup is not None:
            setup(tracker)
        if settings.ensure_indexes_on_startup:
            indexes = await tracker.ensure_indexes()
            logger.info("Tracking indexes ready", count=len(indexes))

        app.state.settings = settings
        app.state.tracker = tracker
        app.state.ledger_reader = LedgerReader(database)
        logger.info("field-tracker startup complete", collections=len(tracker.collections))

        yield

        logger.info("Shutting down field-tracker")
        client.close()

    app = FastAPI(title=settings.service_name, version="0.1.0", lifespan=lifespan)
    app.include_router(router, prefix="/api/v1")
    return app
