import logging
import os
import time
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

# Load env from foundpoems/.env
package_dir = os.path.dirname(os.path.abspath(__file__))
if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv(dotenv_path=os.path.join(package_dir, ".env"))

# Import after dotenv is loaded
from foundpoems.core.config import settings, validate_config
from foundpoems.core.database import create_all_tables
from foundpoems.core.logging import configure_logging
from foundpoems.core.middleware.request_id import RequestIdMiddleware
from foundpoems.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    unhandled_exception_handler,
    validation_error_handler,
)
from foundpoems.api import health, invites, metrics, realtime, sessions, streams
from foundpoems.realtime.hub import hub
from foundpoems.workers.scheduler import PeriodicTask
from foundpoems.workers.spawner import sync_streams
from foundpoems.workers.sweeper import run_sweep

configure_logging(settings.ENV)
validate_config(strict=settings.CONFIG_STRICT)


def build_background_tasks() -> list:
    """Sweeper (plus presence reclaim) and feed spawner, not yet started."""

    async def reclaim_presence():
        await hub.prune_stale(settings.PRESENCE_TTL_SECONDS)

    return [
        PeriodicTask("sweeper", settings.STATUS_REFRESH_INTERVAL_SECONDS, run_sweep, after=reclaim_presence),
        PeriodicTask("spawner", settings.FEED_POLL_INTERVAL_SECONDS, sync_streams),
    ]


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger = logging.getLogger("foundpoems")
    logger.info("Starting Found Poems backend...")
    app.state.startup_time = time.time()
    if settings.AUTO_CREATE_TABLES:
        create_all_tables()

    tasks = build_background_tasks() if settings.BACKGROUND_TASKS_ENABLED else []
    for task in tasks:
        task.start()
    app.state.background_tasks = tasks
    try:
        yield
    finally:
        for task in tasks:
            await task.stop()
        await hub.reset()
        logging.getLogger("foundpoems").info("Stopping Found Poems backend...")


app = FastAPI(title="Found Poems - Backend", lifespan=lifespan)

# Middlewares
app.add_middleware(RequestIdMiddleware)

app.add_exception_handler(AppError, app_error_handler)
app.add_exception_handler(RequestValidationError, validation_error_handler)
app.add_exception_handler(HTTPException, http_error_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sessions.router, tags=["sessions"])
app.include_router(invites.router, tags=["invites"])
app.include_router(streams.router, tags=["streams"])
app.include_router(streams.public_router, tags=["streams"])
app.include_router(realtime.router, tags=["realtime"])
app.include_router(health.router, tags=["health"])
app.include_router(health.root_router, tags=["health"])
app.include_router(metrics.router, tags=["metrics"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("foundpoems.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")), reload=False)
