"""
Pull-based quote acquisition and tick normalisation.

The backend relays quotes from several vendors whose field names differ.
normalize_tick() maps any of them onto the canonical Tick using a fixed
field-priority order. This order is a compatibility contract with the
upstream payloads and must not be reshuffled:

    timestamp  <- t | timestamp | (current time)
    price      <- c | price | last | close | (absent)
    volume     <- v | volume | size | (absent)

A field counts as present when its key exists and its value is not null.
The push feed uses the same mapping (see streaming.py).
"""

from collections.abc import Mapping
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

import httpx

from tradefe_engine.backend.client import BackendAPIError
from tradefe_engine.logging import get_logger
from tradefe_engine.market_data.errors import MalformedMessageError, PollError
from tradefe_engine.market_data.models import Tick

if TYPE_CHECKING:
    from tradefe_engine.backend.client import AsyncBackendClient

logger = get_logger(__name__)

TIMESTAMP_FIELDS = ("t", "timestamp")
PRICE_FIELDS = ("c", "price", "last", "close")
VOLUME_FIELDS = ("v", "volume", "size")

# Epoch values above this are milliseconds (1e11 s is year 5138)
_EPOCH_MS_THRESHOLD = 100_000_000_000


def _first_present(payload: Mapping[str, Any], fields: tuple[str, ...]) -> tuple[str, Any] | None:
    for name in fields:
        value = payload.get(name)
        if value is not None:
            return name, value
    return None


def _to_decimal(name: str, value: Any) -> Decimal:
    if isinstance(value, bool):
        raise MalformedMessageError(f"Field '{name}' is boolean, expected a number")
    if isinstance(value, (int, float, str, Decimal)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation as e:
            raise MalformedMessageError(f"Field '{name}' is not numeric: {value!r}") from e
        if not result.is_finite():
            raise MalformedMessageError(f"Field '{name}' is not finite: {value!r}")
        return result
    raise MalformedMessageError(f"Field '{name}' has unsupported type {type(value).__name__}")


def _epoch_to_datetime(value: float) -> datetime:
    seconds = value / 1000 if abs(value) > _EPOCH_MS_THRESHOLD else value
    return datetime.fromtimestamp(seconds, UTC)


def _to_timestamp(name: str, value: Any) -> datetime:
    if isinstance(value, bool):
        raise MalformedMessageError(f"Field '{name}' is boolean, expected a timestamp")
    try:
        if isinstance(value, (int, float)):
            return _epoch_to_datetime(value)
        if isinstance(value, str):
            text = value.strip()
            try:
                return _epoch_to_datetime(float(text))
            except ValueError:
                pass
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                return parsed.replace(tzinfo=UTC)
            return parsed.astimezone(UTC)
    except (ValueError, OverflowError, OSError) as e:
        raise MalformedMessageError(f"Field '{name}' is not a timestamp: {value!r}") from e
    raise MalformedMessageError(f"Field '{name}' has unsupported type {type(value).__name__}")


def normalize_tick(payload: Any, symbol: str, now: datetime | None = None) -> Tick:
    """
    Map a vendor quote payload onto a Tick.

    Args:
        payload: Decoded JSON object from the backend
        symbol: Symbol the tick belongs to
        now: Fallback timestamp (defaults to the current UTC time)

    Raises:
        MalformedMessageError: Payload is not an object or a field is unusable
    """
    if not isinstance(payload, Mapping):
        raise MalformedMessageError(
            f"Expected an object, got {type(payload).__name__}", symbol
        )

    ts_field = _first_present(payload, TIMESTAMP_FIELDS)
    if ts_field is not None:
        timestamp = _to_timestamp(*ts_field)
    else:
        timestamp = now or datetime.now(UTC)

    price_field = _first_present(payload, PRICE_FIELDS)
    volume_field = _first_present(payload, VOLUME_FIELDS)

    return Tick(
        symbol=symbol,
        timestamp=timestamp,
        price=_to_decimal(*price_field) if price_field else None,
        volume=_to_decimal(*volume_field) if volume_field else None,
    )


class QuotePoller:
    """
    Single-shot quote fetcher.

    Used when the market is closed (or its status is unknown) and a push
    feed is not warranted. Has no loop of its own: the controller decides
    when to poll.
    """

    def __init__(self, client: "AsyncBackendClient") -> None:
        self._client = client

    async def poll_once(self, symbol: str) -> Tick:
        """
        Fetch and normalise the latest quote for a symbol.

        Raises:
            PollError: Transport failure, error response or unusable payload
        """
        try:
            payload = await self._client.get_quote(symbol)
        except (BackendAPIError, httpx.HTTPError) as e:
            raise PollError(f"Quote poll failed for {symbol}: {e}", symbol) from e

        try:
            tick = normalize_tick(payload, symbol)
        except MalformedMessageError as e:
            raise PollError(f"Unusable quote for {symbol}: {e}", symbol) from e

        logger.debug("Polled %s: price=%s volume=%s", symbol, tick.price, tick.volume)
        return tick
