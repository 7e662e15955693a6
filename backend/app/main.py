"""
CloudOps Actions - Cloud Action Orchestration Engine

FastAPI application entry point.
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.app.core.config import get_settings
from backend.app.core.logging import setup_logging, get_logger
from backend.app.api import cloud_actions, health
from backend.app.middleware.trace import TracingMiddleware

settings = get_settings()

# Initialize logging
setup_logging(level=settings.log_level)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info(f"🚀 Starting {settings.app_name} v{settings.app_version}")

    # Local SQLite runs have no migrations applied
    if settings.database_url.startswith("sqlite"):
        from backend.app.core.init_db import create_tables
        await create_tables()

    from backend.app.services.orchestrator import build_orchestrator
    orchestrator = build_orchestrator(settings)
    app.state.orchestrator = orchestrator

    dispatch_task = None
    if settings.dispatch_scheduler_enabled:
        from backend.app.workers.scheduled import start_scheduler
        dispatch_task = start_scheduler(settings.dispatch_interval_seconds, orchestrator.run_cycle)
        logger.info(f"Dispatch scheduler started (interval={settings.dispatch_interval_seconds}s)")

    yield
    # Shutdown
    logger.info(f"👋 Shutting down {settings.app_name}")

    if dispatch_task is not None:
        from backend.app.workers.scheduled import stop_scheduler
        await stop_scheduler(dispatch_task)


app = FastAPI(
    title=settings.app_name,
    description="Durable, resumable orchestration of cloud application lifecycle actions",
    version=settings.app_version,
    lifespan=lifespan,
)

# Add Middleware
app.add_middleware(TracingMiddleware)

# CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Correlation-ID"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(
    cloud_actions.router,
    prefix=f"{settings.api_prefix}/cloud-actions",
    tags=["Cloud Actions"],
)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "description": "Cloud Action Orchestration Engine",
        "docs": "/docs",
    }
