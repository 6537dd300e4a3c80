"""FastAPI application entry point."""
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from advisor.config import settings
from advisor.services.runtime import build_runtime, cleanup_loop

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables, build the job runtime, start housekeeping."""
    store = None
    if settings.PERSIST_JOBS:
        from advisor.database import async_session, create_tables, engine
        from advisor.services.job_store import SqlJobStore
        await create_tables(engine)
        store = SqlJobStore(async_session)

    runtime = build_runtime(settings, store=store)
    app.state.runtime = runtime
    if hasattr(runtime.client, "open"):
        await runtime.client.open()

    if store is not None:
        await runtime.scheduler.load_finished()
    if settings.RESTORE_INCOMPLETE_JOBS:
        await runtime.scheduler.restore_incomplete()

    logger.info(
        f"Job queue ready: {settings.MAX_CONCURRENT_JOBS} concurrent, "
        f"models={settings.model_list}, retry={settings.RETRY_MAX_ATTEMPTS}x "
        f"({settings.RETRY_INITIAL_DELAY_MS}-{settings.RETRY_MAX_DELAY_MS}ms)"
    )
    cleanup_task = asyncio.create_task(cleanup_loop(runtime))

    yield

    cleanup_task.cancel()
    await runtime.scheduler.shutdown()
    if hasattr(runtime.client, "close"):
        await runtime.client.close()
    if store is not None:
        from advisor.database import engine
        await engine.dispose()


app = FastAPI(
    title="Model Advisor API",
    version="1.0.0",
    description="Ask several models the same question as a background job.",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Register routers
from advisor.routes.health import router as health_router
from advisor.routes.jobs import router as jobs_router
app.include_router(health_router)
app.include_router(jobs_router)
