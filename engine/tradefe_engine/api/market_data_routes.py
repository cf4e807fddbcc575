"""
Market data API routes for the dashboard's live view.

Provides endpoints for:
- Viewing an instrument (starts stream-or-poll acquisition)
- Reading the live tick history and current error
- Controller status, manual re-check and stop
"""

from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from tradefe_engine.backend.client import AsyncBackendClient
from tradefe_engine.config import Settings, get_settings_dep
from tradefe_engine.logging import get_logger
from tradefe_engine.market_data.controller import ControllerConfig, MarketDataController
from tradefe_engine.market_data.models import ErrorKind, Instrument, MarketDataStatus

router = APIRouter(prefix="/market", tags=["Market Data"])
logger = get_logger(__name__)

# Lazy-initialized singletons
_backend_client: AsyncBackendClient | None = None
_market_controller: MarketDataController | None = None


def get_backend_client(settings: Settings = Depends(get_settings_dep)) -> AsyncBackendClient:
    """Get or create backend client singleton."""
    global _backend_client
    if _backend_client is None:
        _backend_client = AsyncBackendClient(settings, get_logger("tradefe_engine.backend"))
    return _backend_client


def get_market_controller(
    settings: Settings = Depends(get_settings_dep),
    client: AsyncBackendClient = Depends(get_backend_client),
) -> MarketDataController:
    """Get or create market data controller singleton."""
    global _market_controller
    if _market_controller is None:
        _market_controller = MarketDataController(
            client=client,
            config=ControllerConfig.from_settings(settings),
        )
    return _market_controller


async def shutdown_market_data() -> None:
    """Stop the controller and close the backend client (app shutdown)."""
    global _backend_client, _market_controller
    if _market_controller is not None:
        await _market_controller.stop()
        _market_controller = None
    if _backend_client is not None:
        await _backend_client.close()
        _backend_client = None


# =============================================================================
# Request/Response Models
# =============================================================================


class ViewResponse(BaseModel):
    """Response from view operation."""

    ok: bool = True
    symbol: str
    message: str = ""
    status: MarketDataStatus


class HistoryResponse(BaseModel):
    """Live tick history, newest first."""

    symbol: str | None
    state: str
    error: ErrorKind | None = None
    ticks: list[dict[str, Any]] = Field(default_factory=list)
    count: int = 0


class ActionResponse(BaseModel):
    """Response from control actions."""

    ok: bool = True
    message: str = ""


# =============================================================================
# Routes
# =============================================================================


@router.post("/view", response_model=ViewResponse)
async def view_symbol(
    instrument: Instrument,
    controller: MarketDataController = Depends(get_market_controller),
) -> ViewResponse:
    """
    View an instrument.

    The controller checks the market session and either streams (open) or
    takes one polled snapshot (closed). Waits for that decision, so the
    returned status is the one after the view. Results appear in
    /market/history. Viewing the symbol already being streamed is a no-op.
    """
    await controller.view_symbol(instrument)
    await controller.settle()
    logger.info("View requested for %s", instrument.symbol)

    return ViewResponse(
        ok=True,
        symbol=instrument.symbol,
        message=f"Viewing {instrument.symbol}",
        status=controller.get_status(),
    )


@router.get("/history", response_model=HistoryResponse)
async def get_history(
    controller: MarketDataController = Depends(get_market_controller),
) -> HistoryResponse:
    """
    Get live ticks for the viewed symbol, newest first.
    """
    ticks = [tick.to_payload() for tick in controller.current_history()]
    return HistoryResponse(
        symbol=controller.symbol,
        state=controller.state.value,
        error=controller.current_error(),
        ticks=ticks,
        count=len(ticks),
    )


@router.get("/status", response_model=MarketDataStatus)
async def get_market_status(
    controller: MarketDataController = Depends(get_market_controller),
) -> MarketDataStatus:
    """
    Get controller state, mode, current error and counters.
    """
    return controller.get_status()


@router.post("/recheck", response_model=ActionResponse)
async def recheck_market_status(
    controller: MarketDataController = Depends(get_market_controller),
) -> ActionResponse:
    """
    Re-check the market session now.

    Only has an effect while polled or failed; escalates to streaming if
    the market has opened.
    """
    if not controller.is_running or controller.symbol is None:
        return ActionResponse(ok=False, message="No symbol is being viewed")

    controller.request_recheck()
    return ActionResponse(ok=True, message=f"Re-check requested for {controller.symbol}")


@router.post("/stop", response_model=ActionResponse)
async def stop_market_data(
    controller: MarketDataController = Depends(get_market_controller),
) -> ActionResponse:
    """
    Stop live data: closes the stream, cancels re-checks, clears history.
    """
    if not controller.is_running:
        return ActionResponse(ok=True, message="Market data controller not running")

    await controller.stop()
    return ActionResponse(ok=True, message="Market data controller stopped")
