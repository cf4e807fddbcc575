"""
Market data models for live price acquisition.
"""

from collections import deque
from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field


class MarketDataMode(str, Enum):
    """How live data is being acquired."""

    STREAM = "stream"  # Push feed
    POLL = "poll"  # Single REST snapshot
    NONE = "none"


class SubscriptionState(str, Enum):
    """Backend subscription state for a symbol."""

    NOT_SUBSCRIBED = "not_subscribed"
    SUBSCRIBED = "subscribed"


class ErrorKind(str, Enum):
    """Failure categories surfaced by the controller."""

    STATUS_PROBE_FAILURE = "status_probe_failure"
    SUBSCRIBE_FAILURE = "subscribe_failure"
    STREAM_FAILURE = "stream_failure"
    POLL_FAILURE = "poll_failure"
    MALFORMED_MESSAGE = "malformed_message"


class Instrument(BaseModel):
    """
    A tradeable instrument as selected in the dashboard.

    Immutable once selected.
    """

    symbol: str = Field(
        ...,
        description="Listing symbol (e.g., AAPL)",
        min_length=1,
        max_length=32,
    )
    description: str | None = Field(default=None, description="Human-readable name")
    display_symbol: str | None = Field(default=None, description="Symbol as shown in the UI")
    instrument_type: str | None = Field(
        default=None,
        description="Instrument type as reported by contract search (e.g., STK)",
    )

    model_config = {"frozen": True}


class SessionStatus(BaseModel):
    """
    Point-in-time market session snapshot for an instrument's venue.

    Never cached: every probe fetches a fresh one.
    """

    exchange: str = Field(..., description="Venue code")
    is_open: bool = Field(..., alias="isOpen", description="Whether the venue is trading now")
    session: str = Field(default="", description="Session label (e.g., regular, pre-market)")
    holiday: str | None = Field(default=None, description="Holiday name if closed for one")
    timezone: str = Field(default="UTC", description="Venue timezone")

    model_config = {"frozen": True, "populate_by_name": True}


class Tick(BaseModel):
    """
    One timestamped price/volume observation.

    Produced by the push feed or by a poll, always in this canonical shape.
    """

    symbol: str = Field(..., description="Listing symbol")
    timestamp: datetime = Field(..., description="Observation time (UTC)")
    price: Decimal | None = Field(default=None, description="Last price, if reported")
    volume: Decimal | None = Field(default=None, description="Volume, if reported")

    model_config = {"frozen": True}

    def to_payload(self) -> dict[str, str | None]:
        """Convert to a JSON-friendly dict for the dashboard."""
        return {
            "symbol": self.symbol,
            "timestamp": self.timestamp.isoformat(),
            "price": str(self.price) if self.price is not None else None,
            "volume": str(self.volume) if self.volume is not None else None,
        }


class MarketDataStatus(BaseModel):
    """
    Snapshot of the live market data controller.
    """

    state: str = Field(..., description="Controller state")
    mode: MarketDataMode = Field(default=MarketDataMode.NONE, description="Acquisition mode")
    symbol: str | None = Field(default=None, description="Viewed symbol")
    stream_open: bool = Field(default=False, description="Whether a push connection is open")
    error: ErrorKind | None = Field(default=None, description="Current error, if any")
    error_message: str | None = Field(default=None, description="Detail for the current error")
    history_size: int = Field(default=0, description="Ticks currently held")
    last_tick_ts: datetime | None = Field(default=None, description="Timestamp of newest tick")
    subscriptions: list[str] = Field(
        default_factory=list,
        description="Symbols subscribed on the backend this session",
    )
    recheck_interval_s: float = Field(default=60.0, description="Status re-check cadence")
    stats: dict[str, int] = Field(default_factory=dict, description="Runtime counters")


class TickHistory:
    """
    Bounded newest-first tick history for the viewed symbol.

    Oldest entries are evicted once the limit is reached.
    """

    def __init__(self, limit: int = 50) -> None:
        if limit < 1:
            raise ValueError("limit must be positive")
        self._ticks: deque[Tick] = deque(maxlen=limit)

    @property
    def limit(self) -> int:
        return self._ticks.maxlen or 0

    def push(self, tick: Tick) -> None:
        """Prepend a tick, evicting the oldest if at capacity."""
        self._ticks.appendleft(tick)

    def clear(self) -> None:
        self._ticks.clear()

    def snapshot(self) -> tuple[Tick, ...]:
        """Immutable copy, newest first."""
        return tuple(self._ticks)

    def latest(self) -> Tick | None:
        return self._ticks[0] if self._ticks else None

    def __len__(self) -> int:
        return len(self._ticks)
