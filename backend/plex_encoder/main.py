"""Main FastAPI application."""

import logging
import os
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from plex_encoder.config import settings
from plex_encoder.database import init_db

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO), format=LOG_FORMAT)
logger = logging.getLogger(__name__)

# Uvicorn may have configured the root logger before us
if not logging.getLogger().handlers:
    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(console)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the worker and scheduler; on exit stop them and drop scratch files."""
    from plex_encoder.services.discovery import discovery_engine
    from plex_encoder.services.dispatch import dispatch_engine
    from plex_encoder.services.notifier import notifier
    from plex_encoder.services.scheduler import window_scheduler
    from plex_encoder.services.websocket_manager import websocket_manager

    logger.info("Starting encoding service...")
    settings.ensure_directories()
    await init_db()
    logger.info("Database initialized")

    notifier.subscribe(websocket_manager.broadcast)
    await dispatch_engine.start_worker()
    await window_scheduler.start()

    try:
        yield
    finally:
        logger.info("Shutting down encoding service...")
        await window_scheduler.stop()
        await discovery_engine.stop_watching()
        await dispatch_engine.stop_worker()
        notifier.unsubscribe(websocket_manager.broadcast)
        settings.clean_scratch()


app = FastAPI(
    title="Plex Encoder",
    description="Library re-encoding service with scheduled, bounded-concurrency HEVC jobs",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

from plex_encoder.routes import jobs, library, schedules, websocket  # noqa: E402

app.include_router(library.router, prefix="/api/library", tags=["library"])
app.include_router(jobs.router, prefix="/api/jobs", tags=["jobs"])
app.include_router(schedules.router, prefix="/api/schedules", tags=["schedules"])
app.include_router(websocket.router, tags=["websocket"])


@app.get("/api/health")
async def health_check():
    """Liveness plus a summary of the dispatch state."""
    from plex_encoder.models.job import NON_TERMINAL_STATUSES
    from plex_encoder.services.dispatch import dispatch_engine

    state = dispatch_engine.state
    return {
        "status": "healthy",
        "pending_jobs": await dispatch_engine.store.count_jobs(NON_TERMINAL_STATUSES),
        "active_jobs": sorted(state.active_jobs),
        "paused": state.paused,
        "max_parallel_jobs": state.concurrency_limit,
    }


@app.get("/api/encoder")
async def get_encoder():
    """Report which encoder profile jobs will use."""
    from plex_encoder.services.encoder import encoder_service

    profile = await encoder_service.select_profile()
    return {"name": profile.name, "hardware": profile.hardware}


def run():
    """Entry point for the plex-encoder console script."""
    import uvicorn

    uvicorn.run(
        "plex_encoder.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        log_level=settings.LOG_LEVEL.lower(),
    )
