"""
Market data failure taxonomy.

Every failure carries an ErrorKind so the controller can decide how to
surface it without inspecting exception types.
"""

from tradefe_engine.market_data.models import ErrorKind


class MarketDataError(Exception):
    """Base class for market data acquisition failures."""

    kind: ErrorKind

    def __init__(self, message: str, symbol: str | None = None):
        super().__init__(message)
        self.symbol = symbol


class StatusProbeError(MarketDataError):
    """Market session status could not be determined."""

    kind = ErrorKind.STATUS_PROBE_FAILURE


class SubscribeError(MarketDataError):
    """Backend refused or failed the subscribe call."""

    kind = ErrorKind.SUBSCRIBE_FAILURE


class StreamError(MarketDataError):
    """Push feed failed or ended."""

    kind = ErrorKind.STREAM_FAILURE


class PollError(MarketDataError):
    """Quote snapshot could not be fetched or used."""

    kind = ErrorKind.POLL_FAILURE


class MalformedMessageError(MarketDataError):
    """A payload could not be mapped to a Tick. Never leaves the stream."""

    kind = ErrorKind.MALFORMED_MESSAGE
