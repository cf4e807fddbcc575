"""
Push-feed connection for live ticks.

One StreamConnection owns one long-lived feed connection and tracks one
symbol. The feed is multiplexed across every symbol the backend publishes,
so messages are filtered client-side.

Accepted framing:
- newline-delimited JSON objects
- server-sent events ("data: {...}" lines; ":" keep-alives, event:/id:/retry: ignored)

A malformed message is dropped and counted, never raised. Any transport
failure, including the server ending the feed, reports an error exactly
once and the connection is dead. Reconnecting is the controller's call.
"""

import asyncio
import json
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from tradefe_engine.logging import get_logger
from tradefe_engine.market_data.errors import MalformedMessageError, StreamError
from tradefe_engine.market_data.models import Tick
from tradefe_engine.market_data.polling import normalize_tick

if TYPE_CHECKING:
    from tradefe_engine.backend.client import AsyncBackendClient

logger = get_logger(__name__)

TickCallback = Callable[[Tick], None]
ErrorCallback = Callable[[StreamError], None]

_SSE_IGNORED_PREFIXES = ("event:", "id:", "retry:")


def parse_feed_line(line: str) -> dict[str, Any] | None:
    """
    Decode one feed line.

    Returns:
        The decoded JSON object, or None for keep-alives and framing lines

    Raises:
        MalformedMessageError: Line carries data that is not a JSON object
    """
    text = line.strip()
    if not text or text.startswith(":"):
        return None
    if text.startswith(_SSE_IGNORED_PREFIXES):
        return None
    if text.startswith("data:"):
        text = text[len("data:") :].strip()
        if not text:
            return None

    try:
        message = json.loads(text)
    except (ValueError, RecursionError) as e:
        # ValueError covers JSONDecodeError and the int digit limit
        raise MalformedMessageError(f"Not JSON: {text[:50]!r}") from e
    if not isinstance(message, dict):
        raise MalformedMessageError(f"Expected an object, got {type(message).__name__}")
    return message


class StreamConnection:
    """
    One push-feed connection filtered to a single symbol.
    """

    def __init__(self, client: "AsyncBackendClient", symbol: str) -> None:
        """
        Initialize stream connection.

        Args:
            client: Backend client providing stream_events()
            symbol: Symbol whose ticks are delivered
        """
        self._client = client
        self._symbol = symbol

        self._on_tick: TickCallback | None = None
        self._on_error: ErrorCallback | None = None
        self._task: asyncio.Task[None] | None = None

        self._closed = False
        self._failed = False

        self.messages_received = 0
        self.malformed_dropped = 0
        self.other_symbol_dropped = 0

    @property
    def symbol(self) -> str:
        return self._symbol

    @property
    def is_open(self) -> bool:
        """True from open() until close() or failure."""
        return self._task is not None and not self._closed and not self._failed

    async def open(self, on_tick: TickCallback, on_error: ErrorCallback) -> None:
        """
        Start receiving.

        Callbacks run on the event loop and must not block.
        """
        if self._task is not None:
            raise RuntimeError("StreamConnection can only be opened once")

        self._on_tick = on_tick
        self._on_error = on_error
        self._task = asyncio.create_task(self._receive_loop(), name=f"stream:{self._symbol}")
        logger.info("Stream opened for %s", self._symbol)

    async def close(self) -> None:
        """Tear down the connection. Never reports an error."""
        if self._closed:
            return
        self._closed = True

        if self._task is not None and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

        logger.info(
            "Stream closed for %s (messages=%d, malformed=%d)",
            self._symbol,
            self.messages_received,
            self.malformed_dropped,
        )

    async def _receive_loop(self) -> None:
        try:
            async with self._client.stream_events() as lines:
                async for line in lines:
                    self._handle_line(line)
            error = StreamError("Push feed ended by server", self._symbol)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = StreamError(f"Push feed failed: {e}", self._symbol)

        self._fail(error)

    def _handle_line(self, line: str) -> None:
        try:
            message = parse_feed_line(line)
            if message is None:
                return
            self.messages_received += 1

            if message.get("symbol") != self._symbol:
                self.other_symbol_dropped += 1
                return

            tick = normalize_tick(message, self._symbol)
        except MalformedMessageError as e:
            self.malformed_dropped += 1
            logger.debug("Dropping malformed feed message: %s", e)
            return

        if self._on_tick is not None and not self._closed:
            self._on_tick(tick)

    def _fail(self, error: StreamError) -> None:
        if self._closed or self._failed:
            return
        self._failed = True
        logger.warning("Stream for %s failed: %s", self._symbol, error)
        if self._on_error is not None:
            self._on_error(error)
