"""FastAPI application wiring for the communication event core.

This module bootstraps the HTTP API:

- Configures logging, CORS (optional for the dashboard UI), Prometheus
  metrics and rate limiting.
- Mounts the signed provider webhooks, the read-only dashboard API, the
  operator control API and the realtime WebSocket stream.
- Starts the platform's background threads (reservation deadlines and the
  activity-log pump) for the lifetime of the application.
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from .__version__ import __build_date__, __commit_sha__, __version__
from .app_logging import init_logging
from .core.ratelimit import limiter
from .platform import get_platform, reset_platform
from .routers import control, dashboard, realtime, webhooks

load_dotenv()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start background processing; tests may override the platform provider."""
    provider = app.dependency_overrides.get(get_platform, get_platform)
    platform = provider()
    platform.start()
    logger.info("commhub %s started", __version__)
    try:
        yield
    finally:
        platform.stop()
        if provider is get_platform:
            reset_platform()
        logger.info("commhub stopped")


app = FastAPI(title="commhub", version=__version__, lifespan=lifespan)
init_logging(app)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)
# Optional CORS for the dashboard UI
dashboard_origins = os.getenv("DASHBOARD_ORIGINS")
if dashboard_origins:
    origins = [o.strip() for o in dashboard_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
app.include_router(webhooks.router)
app.include_router(dashboard.router)
app.include_router(control.router)
app.include_router(realtime.router)

# Expose Prometheus metrics
Instrumentator().instrument(app).expose(
    app, include_in_schema=False, endpoint="/api/metrics"
)


@app.get("/api/health")
async def health():
    """Liveness/readiness probe with a minimal JSON body."""
    return {"status": "ok"}


@app.get("/api/version")
async def version():
    """Return version information for the application."""
    return {
        "version": __version__,
        "build_date": __build_date__,
        "commit_sha": __commit_sha__,
    }
