"""
Market session awareness and backend subscriptions.

SessionStatusProbe answers "is this instrument's venue open right now?".
SubscriptionGate makes sure each symbol is subscribed at most once.
"""

from typing import TYPE_CHECKING

import httpx
from pydantic import ValidationError

from tradefe_engine.backend.client import BackendAPIError
from tradefe_engine.logging import get_logger
from tradefe_engine.market_data.errors import StatusProbeError, SubscribeError
from tradefe_engine.market_data.models import Instrument, SessionStatus, SubscriptionState

if TYPE_CHECKING:
    from tradefe_engine.backend.client import AsyncBackendClient

logger = get_logger(__name__)


class SessionStatusProbe:
    """
    Stateless market session probe.

    Failures are raised, never replaced by a default status: the caller
    decides what "unknown" means.
    """

    def __init__(self, client: "AsyncBackendClient") -> None:
        self._client = client

    async def check_status(self, instrument: Instrument) -> SessionStatus:
        """
        Fetch the current session status for an instrument.

        Raises:
            StatusProbeError: Transport failure, error response or malformed payload
        """
        symbol = instrument.symbol
        try:
            payload = await self._client.get_market_status(symbol)
        except (BackendAPIError, httpx.HTTPError) as e:
            raise StatusProbeError(f"Status probe failed for {symbol}: {e}", symbol) from e

        try:
            status = SessionStatus.model_validate(payload)
        except ValidationError as e:
            raise StatusProbeError(
                f"Malformed status payload for {symbol}: {e.error_count()} errors", symbol
            ) from e

        logger.debug(
            "Session status for %s: exchange=%s open=%s session=%s",
            symbol,
            status.exchange,
            status.is_open,
            status.session,
        )
        return status


class SubscriptionGate:
    """
    Idempotent subscribe-by-symbol.

    Tracks per-symbol SubscriptionState for the lifetime of the gate
    (one viewing session). A symbol never goes back to NOT_SUBSCRIBED.
    """

    def __init__(self, client: "AsyncBackendClient") -> None:
        self._client = client
        self._states: dict[str, SubscriptionState] = {}
        self._calls = 0

    @property
    def calls(self) -> int:
        """Number of subscribe calls actually sent to the backend."""
        return self._calls

    def state(self, symbol: str) -> SubscriptionState:
        return self._states.setdefault(symbol, SubscriptionState.NOT_SUBSCRIBED)

    def subscribed_symbols(self) -> list[str]:
        return [s for s, st in self._states.items() if st == SubscriptionState.SUBSCRIBED]

    async def ensure_subscribed(self, symbol: str) -> None:
        """
        Subscribe the symbol unless already subscribed.

        Raises:
            SubscribeError: Backend call failed (state stays NOT_SUBSCRIBED)
        """
        if self.state(symbol) == SubscriptionState.SUBSCRIBED:
            logger.debug("%s already subscribed, skipping backend call", symbol)
            return

        self._calls += 1
        try:
            await self._client.subscribe(symbol)
        except (BackendAPIError, httpx.HTTPError) as e:
            raise SubscribeError(f"Subscribe failed for {symbol}: {e}", symbol) from e

        self._states[symbol] = SubscriptionState.SUBSCRIBED
        logger.info("Subscribed to %s", symbol)
