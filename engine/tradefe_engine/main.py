"""
Trade FE Engine - FastAPI Application

Main entry point for the Python sidecar process.
Provides the live market data API for the dashboard.
"""

from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

from fastapi import Depends, FastAPI, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from tradefe_engine import __version__
from tradefe_engine.api.market_data_routes import router as market_data_router
from tradefe_engine.api.market_data_routes import shutdown_market_data
from tradefe_engine.config import Settings, get_settings, get_settings_dep
from tradefe_engine.logging import get_in_memory_logs, get_logger, setup_logging

# Setup logging
setup_logging(level=get_settings().log_level)
logger = get_logger(__name__)


# =============================================================================
# Response Models
# =============================================================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    time: str
    uptime_seconds: float


class ConfigResponse(BaseModel):
    """Configuration response (redacted)."""

    env: str
    backend_base_url: str
    status_recheck_interval_s: float
    tick_history_limit: int


class LogsResponse(BaseModel):
    """Recent log lines."""

    logs: list[dict[str, Any]]
    count: int


# =============================================================================
# Application State
# =============================================================================


class AppState:
    """Application state container."""

    def __init__(self) -> None:
        self.start_time: datetime = datetime.now(UTC)


state = AppState()


# =============================================================================
# Lifecycle
# =============================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    settings = get_settings()
    logger.info("Starting Trade FE Engine v%s (%s)", __version__, settings.env.value)
    logger.info("Backend API: %s", settings.backend_base_url)
    logger.info("Server: http://%s:%d", settings.host, settings.port)

    yield

    logger.info("Shutting down Trade FE Engine")
    await shutdown_market_data()


# =============================================================================
# Application
# =============================================================================


app = FastAPI(
    title="Trade FE Engine",
    description="Live market data acquisition for the Trade FE dashboard",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(market_data_router)


# =============================================================================
# REST Endpoints
# =============================================================================


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """
    Health check endpoint.

    Returns current status, version, and uptime.
    """
    now = datetime.now(UTC)
    uptime = (now - state.start_time).total_seconds()

    return HealthResponse(
        status="healthy",
        version=__version__,
        time=now.isoformat(),
        uptime_seconds=round(uptime, 2),
    )


@app.get("/config", response_model=ConfigResponse)
async def config(settings: Settings = Depends(get_settings_dep)) -> ConfigResponse:
    """Get current configuration (safe subset)."""
    return ConfigResponse(
        env=settings.env.value,
        backend_base_url=settings.backend_base_url,
        status_recheck_interval_s=settings.status_recheck_interval_s,
        tick_history_limit=settings.tick_history_limit,
    )


@app.get("/logs", response_model=LogsResponse)
async def logs(
    level: str = Query(default="INFO", description="Minimum level"),
    limit: int = Query(default=50, ge=1, le=1000),
) -> LogsResponse:
    """Recent engine log lines (in-memory tail)."""
    entries = get_in_memory_logs(level=level, limit=limit)
    return LogsResponse(logs=entries, count=len(entries))


@app.get("/")
async def root() -> dict[str, Any]:
    """Root endpoint with API info."""
    return {
        "name": "Trade FE Engine",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# =============================================================================
# Entry Point
# =============================================================================


def main() -> None:
    """Run the server."""
    import uvicorn

    settings = get_settings()
    logger.info("Config: %s", settings.get_redacted_config())
    uvicorn.run(
        "tradefe_engine.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
