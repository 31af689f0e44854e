"""Marble Sync Bridge — FastAPI application entry point.

Invariants:
    - Routes registered explicitly (no auto-discovery)
    - Global error handlers map SyncError → structured JSON responses
    - CORS configured from settings (not hardcoded)
    - Sync core built on startup and flushed/closed on shutdown via lifespan

Design Decisions:
    - Lifespan over @app.on_event: FastAPI recommended pattern, cleaner cleanup
    - SyncCore lives on app.state; a core set before startup (tests, embedding
      applications) is used as-is instead of building a new one
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from marble_sync.api.error_handlers import register_error_handlers
from marble_sync.api.routes import autosave, health, project_structure, working_memory
from marble_sync.config import get_settings
from marble_sync.infrastructure.observability import setup_logging
from marble_sync.services.composition import build_sync_core

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle."""
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_format)
    if getattr(app.state, "sync_core", None) is None:
        app.state.sync_core = build_sync_core(settings)
    logger.info("Marble sync bridge started")
    yield
    logger.info("Marble sync bridge shutting down")
    await app.state.sync_core.aclose()
    app.state.sync_core = None


app = FastAPI(
    title="Marble Sync Bridge", version="1.0.0", lifespan=lifespan,
)

# CORS configured from settings
settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(autosave.router)
app.include_router(working_memory.router)
app.include_router(project_structure.router)

register_error_handlers(app)
