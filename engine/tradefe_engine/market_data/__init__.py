"""
Market data subsystem for live price acquisition.

Provides:
- Session status probing and idempotent backend subscriptions
- Single-shot quote polling with vendor field normalisation
- Push-feed connection filtered to the viewed symbol
- Stream-or-poll controller with periodic escalation
"""

from tradefe_engine.market_data.controller import (
    ControllerConfig,
    ControllerState,
    ControllerStats,
    MarketDataController,
)
from tradefe_engine.market_data.errors import (
    MalformedMessageError,
    MarketDataError,
    PollError,
    StatusProbeError,
    StreamError,
    SubscribeError,
)
from tradefe_engine.market_data.models import (
    ErrorKind,
    Instrument,
    MarketDataMode,
    MarketDataStatus,
    SessionStatus,
    SubscriptionState,
    Tick,
    TickHistory,
)
from tradefe_engine.market_data.polling import QuotePoller, normalize_tick
from tradefe_engine.market_data.session import SessionStatusProbe, SubscriptionGate
from tradefe_engine.market_data.streaming import StreamConnection

__all__ = [
    # Models
    "Instrument",
    "SessionStatus",
    "Tick",
    "TickHistory",
    "SubscriptionState",
    "MarketDataMode",
    "MarketDataStatus",
    "ErrorKind",
    # Errors
    "MarketDataError",
    "StatusProbeError",
    "SubscribeError",
    "StreamError",
    "PollError",
    "MalformedMessageError",
    # Components
    "SessionStatusProbe",
    "SubscriptionGate",
    "QuotePoller",
    "normalize_tick",
    "StreamConnection",
    # Controller
    "MarketDataController",
    "ControllerConfig",
    "ControllerState",
    "ControllerStats",
]
