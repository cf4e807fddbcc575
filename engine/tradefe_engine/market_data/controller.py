"""
Live market data controller.

Decides per viewed instrument whether to stream (market open) or take a
single polled snapshot (market closed or status unknown), and escalates
from poll to stream when a periodic status re-check finds the market open.

All state lives in one control loop task fed by an event queue. Network
calls run as separate tasks and post their results back tagged with the
generation they were issued for; a symbol change bumps the generation so
late results for the previous symbol are discarded.
"""

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from tradefe_engine.logging import get_logger, set_symbol_context
from tradefe_engine.market_data.errors import (
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
    Tick,
    TickHistory,
)
from tradefe_engine.market_data.polling import QuotePoller
from tradefe_engine.market_data.session import SessionStatusProbe, SubscriptionGate
from tradefe_engine.market_data.streaming import StreamConnection

if TYPE_CHECKING:
    from tradefe_engine.backend.client import AsyncBackendClient
    from tradefe_engine.config import Settings

logger = get_logger(__name__)


class ControllerState(str, Enum):
    """Controller state."""

    IDLE = "idle"
    DECIDING = "deciding"
    POLLED = "polled"
    STREAMING = "streaming"
    FAILED = "failed"


@dataclass
class ControllerConfig:
    """Controller configuration."""

    # Re-check cadence while no stream is active
    status_recheck_interval_s: float = 60.0

    # Live history bound
    history_limit: int = 50

    @classmethod
    def from_settings(cls, settings: "Settings") -> "ControllerConfig":
        return cls(
            status_recheck_interval_s=settings.status_recheck_interval_s,
            history_limit=settings.tick_history_limit,
        )


@dataclass
class ControllerStats:
    """Controller runtime statistics."""

    started_at: datetime | None = None

    status_probes: int = 0
    subscribe_calls: int = 0  # Backend calls, gate short-circuits excluded
    polls: int = 0
    rechecks: int = 0

    streams_opened: int = 0
    streams_closed: int = 0

    ticks_received: int = 0
    last_tick_ts: datetime | None = None

    stale_results_discarded: int = 0


class _ProbePurpose(str, Enum):
    DECIDE = "decide"
    RECHECK = "recheck"


# -----------------------------------------------------------------------------
# Control loop events
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class _ViewRequested:
    instrument: Instrument


@dataclass(frozen=True)
class _StopRequested:
    pass


@dataclass(frozen=True)
class _RecheckDue:
    generation: int


@dataclass(frozen=True)
class _StatusChecked:
    generation: int
    purpose: _ProbePurpose
    status: SessionStatus | None
    error: StatusProbeError | None


@dataclass(frozen=True)
class _SubscribeDone:
    generation: int
    error: SubscribeError | None


@dataclass(frozen=True)
class _PollDone:
    generation: int
    tick: Tick | None
    error: PollError | None


@dataclass(frozen=True)
class _TickArrived:
    connection: StreamConnection
    tick: Tick


@dataclass(frozen=True)
class _StreamFailed:
    connection: StreamConnection
    error: StreamError


StreamFactory = Callable[[str], StreamConnection]


class MarketDataController:
    """
    Stream-or-poll acquisition controller for a single viewed symbol.

    States: IDLE -> DECIDING -> (STREAMING | POLLED | FAILED).

    - Market open: subscribe once, open one stream, append ticks.
    - Market closed or status unknown: poll once, then re-check the status
      every status_recheck_interval_s and escalate to streaming when open.
    - Stream failure: FAILED, re-checked on the same timer. Never falls back
      to polling on its own.
    - Symbol change: close stream, cancel timer and in-flight calls, clear
      history, decide again.
    """

    def __init__(
        self,
        client: "AsyncBackendClient",
        config: ControllerConfig | None = None,
        stream_factory: StreamFactory | None = None,
    ):
        """
        Initialize controller.

        Args:
            client: Backend client shared by probe, gate, poller and stream
            config: Controller configuration
            stream_factory: Builds a StreamConnection for a symbol
        """
        self._config = config or ControllerConfig()
        self._probe = SessionStatusProbe(client)
        self._gate = SubscriptionGate(client)
        self._poller = QuotePoller(client)
        self._stream_factory = stream_factory or (lambda symbol: StreamConnection(client, symbol))

        self._state = ControllerState.IDLE
        self._instrument: Instrument | None = None
        self._generation = 0
        self._history = TickHistory(self._config.history_limit)
        self._error: ErrorKind | None = None
        self._error_message: str | None = None

        # Owned handles: at most one of each
        self._stream: StreamConnection | None = None
        self._recheck_task: asyncio.Task[None] | None = None

        # Network calls for the current generation
        self._inflight: set[asyncio.Task[None]] = set()
        self._ops_pending = 0

        self._events: asyncio.Queue[Any] | None = None
        self._loop_task: asyncio.Task[None] | None = None
        self._stats = ControllerStats()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def instrument(self) -> Instrument | None:
        return self._instrument

    @property
    def symbol(self) -> str | None:
        return self._instrument.symbol if self._instrument else None

    @property
    def mode(self) -> MarketDataMode:
        if self._state == ControllerState.STREAMING:
            return MarketDataMode.STREAM
        if self._state == ControllerState.POLLED:
            return MarketDataMode.POLL
        return MarketDataMode.NONE

    @property
    def stats(self) -> ControllerStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    @property
    def stream_open(self) -> bool:
        return self._stream is not None and self._stream.is_open

    def current_history(self) -> tuple[Tick, ...]:
        """Ticks for the viewed symbol, newest first."""
        return self._history.snapshot()

    def current_error(self) -> ErrorKind | None:
        return self._error

    def get_status(self) -> MarketDataStatus:
        latest = self._history.latest()
        return MarketDataStatus(
            state=self._state.value,
            mode=self.mode,
            symbol=self.symbol,
            stream_open=self.stream_open,
            error=self._error,
            error_message=self._error_message,
            history_size=len(self._history),
            last_tick_ts=latest.timestamp if latest else None,
            subscriptions=self._gate.subscribed_symbols(),
            recheck_interval_s=self._config.status_recheck_interval_s,
            stats={
                "status_probes": self._stats.status_probes,
                "subscribe_calls": self._stats.subscribe_calls,
                "polls": self._stats.polls,
                "rechecks": self._stats.rechecks,
                "streams_opened": self._stats.streams_opened,
                "streams_closed": self._stats.streams_closed,
                "ticks_received": self._stats.ticks_received,
                "stale_results_discarded": self._stats.stale_results_discarded,
            },
        )

    async def start(self) -> None:
        """Start the control loop (idempotent)."""
        if self.is_running:
            return
        self._events = asyncio.Queue()
        self._loop_task = asyncio.create_task(self._control_loop(), name="market-data-control")
        self._stats.started_at = datetime.now(UTC)
        logger.info("Market data controller started")

    async def view_symbol(self, instrument: Instrument) -> None:
        """Switch the controller to an instrument."""
        await self.start()
        self._post(_ViewRequested(instrument))

    def request_recheck(self) -> None:
        """Run one status re-check cycle now instead of waiting for the timer."""
        self._post(_RecheckDue(self._generation))

    async def settle(self) -> None:
        """Wait until queued events are handled and no network call is in flight."""
        while self._events is not None:
            await self._events.join()
            pending = [t for t in self._inflight if not t.done()]
            if not pending:
                if self._events.empty():
                    return
                continue
            await asyncio.wait(pending)

    async def stop(self) -> None:
        """Unmount: tear down everything, return to IDLE and stop the loop."""
        if not self.is_running or self._events is None:
            return

        self._post(_StopRequested())
        await self._events.join()

        assert self._loop_task is not None
        self._loop_task.cancel()
        try:
            await self._loop_task
        except asyncio.CancelledError:
            pass
        self._loop_task = None
        self._events = None
        logger.info("Market data controller stopped")

    # -------------------------------------------------------------------------
    # Internal: Control loop
    # -------------------------------------------------------------------------

    def _post(self, event: Any) -> None:
        if self._events is None:
            logger.debug("Controller not running, dropping %s", type(event).__name__)
            return
        self._events.put_nowait(event)

    async def _control_loop(self) -> None:
        handlers: dict[type, Callable[[Any], Awaitable[None]]] = {
            _ViewRequested: self._handle_view,
            _StopRequested: self._handle_stop,
            _RecheckDue: self._handle_recheck,
            _StatusChecked: self._handle_status,
            _SubscribeDone: self._handle_subscribe,
            _PollDone: self._handle_poll,
            _TickArrived: self._handle_tick,
            _StreamFailed: self._handle_stream_failed,
        }
        assert self._events is not None
        events = self._events

        while True:
            event = await events.get()
            try:
                await handlers[type(event)](event)
            except Exception:
                logger.exception("Control loop error handling %s", type(event).__name__)
            finally:
                events.task_done()

    def _is_current(self, generation: int) -> bool:
        if generation != self._generation:
            self._stats.stale_results_discarded += 1
            return False
        return True

    # -------------------------------------------------------------------------
    # Internal: Handlers
    # -------------------------------------------------------------------------

    async def _handle_view(self, event: _ViewRequested) -> None:
        instrument = event.instrument

        if self._instrument is not None and instrument.symbol == self._instrument.symbol:
            busy = self._ops_pending > 0 or self._state in (
                ControllerState.DECIDING,
                ControllerState.STREAMING,
            )
            if busy:
                logger.debug("Already viewing %s (%s), ignoring", instrument.symbol, self._state.value)
                return
            logger.info("Re-deciding %s from %s", instrument.symbol, self._state.value)
            await self._teardown()
            self._begin_deciding(instrument, clear_history=False)
            return

        previous = self.symbol
        await self._teardown()
        self._begin_deciding(instrument, clear_history=True)
        logger.info("Viewing %s (previous: %s)", instrument.symbol, previous)

    async def _handle_stop(self, event: _StopRequested) -> None:
        await self._teardown()
        self._generation += 1
        self._instrument = None
        self._history.clear()
        self._clear_error()
        self._state = ControllerState.IDLE
        set_symbol_context(None)

    async def _handle_recheck(self, event: _RecheckDue) -> None:
        if not self._is_current(event.generation):
            return
        if self._state not in (ControllerState.POLLED, ControllerState.FAILED):
            return
        if self._ops_pending > 0 or self.stream_open:
            logger.debug("Re-check skipped: operation in flight")
            return

        self._stats.rechecks += 1
        self._spawn_probe(_ProbePurpose.RECHECK)

    async def _handle_status(self, event: _StatusChecked) -> None:
        if not self._is_current(event.generation):
            return
        self._ops_pending -= 1

        if event.error is not None:
            logger.warning("%s; assuming market closed", event.error)
            market_open = False
        else:
            assert event.status is not None
            market_open = event.status.is_open

        if market_open:
            if self.stream_open:
                return
            if event.purpose == _ProbePurpose.RECHECK:
                logger.info("Market opened for %s, escalating to stream", self.symbol)
            self._spawn_subscribe()
            return

        if event.purpose == _ProbePurpose.DECIDE:
            self._spawn_poll()
        elif self._error == ErrorKind.POLL_FAILURE:
            logger.info("Market still closed, retrying failed poll")
            self._spawn_poll()
        else:
            logger.debug("Market still closed for %s", self.symbol)

    async def _handle_subscribe(self, event: _SubscribeDone) -> None:
        self._stats.subscribe_calls = self._gate.calls
        if not self._is_current(event.generation):
            return
        self._ops_pending -= 1

        if event.error is not None:
            self._enter_failed(event.error)
            return

        await self._open_stream()

    async def _handle_poll(self, event: _PollDone) -> None:
        if not self._is_current(event.generation):
            return
        self._ops_pending -= 1

        if event.tick is not None:
            self._append(event.tick)
            self._clear_error()
        elif event.error is not None:
            self._set_error(event.error)

        self._state = ControllerState.POLLED
        self._arm_recheck()

    async def _handle_tick(self, event: _TickArrived) -> None:
        if event.connection is not self._stream:
            self._stats.stale_results_discarded += 1
            return
        self._append(event.tick)

    async def _handle_stream_failed(self, event: _StreamFailed) -> None:
        if event.connection is not self._stream:
            return
        await self._close_stream()
        self._enter_failed(event.error)

    # -------------------------------------------------------------------------
    # Internal: Transitions
    # -------------------------------------------------------------------------

    def _begin_deciding(self, instrument: Instrument, clear_history: bool) -> None:
        self._generation += 1
        self._instrument = instrument
        set_symbol_context(instrument.symbol)
        if clear_history:
            self._history.clear()
        self._clear_error()
        self._state = ControllerState.DECIDING
        self._spawn_probe(_ProbePurpose.DECIDE)

    async def _teardown(self) -> None:
        """Release every handle owned for the current symbol."""
        if self._stream is not None:
            await self._close_stream()

        self._cancel_recheck()

        for task in self._inflight:
            task.cancel()
        self._inflight = set()
        self._ops_pending = 0

    async def _open_stream(self) -> None:
        if self._stream is not None:
            await self._close_stream()

        assert self._instrument is not None
        connection = self._stream_factory(self._instrument.symbol)
        try:
            await connection.open(
                on_tick=lambda tick: self._post(_TickArrived(connection, tick)),
                on_error=lambda error: self._post(_StreamFailed(connection, error)),
            )
        except Exception as e:
            self._enter_failed(StreamError(f"Could not open stream: {e}", self.symbol))
            return

        self._stream = connection
        self._stats.streams_opened += 1
        self._cancel_recheck()
        self._clear_error()
        self._state = ControllerState.STREAMING
        logger.info("Streaming %s", self.symbol)

    async def _close_stream(self) -> None:
        connection, self._stream = self._stream, None
        if connection is None:
            return
        await connection.close()
        self._stats.streams_closed += 1

    def _enter_failed(self, error: MarketDataError) -> None:
        self._set_error(error)
        self._state = ControllerState.FAILED
        self._arm_recheck()

    def _append(self, tick: Tick) -> None:
        self._history.push(tick)
        self._stats.ticks_received += 1
        self._stats.last_tick_ts = tick.timestamp

    def _set_error(self, error: MarketDataError) -> None:
        self._error = error.kind
        self._error_message = str(error)
        logger.warning("Market data error (%s): %s", error.kind.value, error)

    def _clear_error(self) -> None:
        self._error = None
        self._error_message = None

    # -------------------------------------------------------------------------
    # Internal: Re-check timer
    # -------------------------------------------------------------------------

    def _arm_recheck(self) -> None:
        if self._recheck_task is not None and not self._recheck_task.done():
            return
        self._recheck_task = asyncio.create_task(
            self._recheck_timer(self._generation), name="market-status-recheck"
        )

    def _cancel_recheck(self) -> None:
        if self._recheck_task is not None:
            self._recheck_task.cancel()
            self._recheck_task = None

    async def _recheck_timer(self, generation: int) -> None:
        interval = self._config.status_recheck_interval_s
        while True:
            await asyncio.sleep(interval)
            self._post(_RecheckDue(generation))

    # -------------------------------------------------------------------------
    # Internal: Network calls (run outside the loop, results posted back)
    # -------------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, None], name: str) -> None:
        task = asyncio.create_task(coro, name=name)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        self._ops_pending += 1

    def _spawn_probe(self, purpose: _ProbePurpose) -> None:
        assert self._instrument is not None
        self._stats.status_probes += 1
        self._spawn(
            self._run_probe(self._generation, self._instrument, purpose),
            f"status-probe:{self._instrument.symbol}",
        )

    def _spawn_subscribe(self) -> None:
        assert self._instrument is not None
        self._spawn(
            self._run_subscribe(self._generation, self._instrument.symbol),
            f"subscribe:{self._instrument.symbol}",
        )

    def _spawn_poll(self) -> None:
        assert self._instrument is not None
        self._stats.polls += 1
        self._spawn(
            self._run_poll(self._generation, self._instrument.symbol),
            f"poll:{self._instrument.symbol}",
        )

    async def _run_probe(
        self, generation: int, instrument: Instrument, purpose: _ProbePurpose
    ) -> None:
        try:
            status = await self._probe.check_status(instrument)
        except StatusProbeError as e:
            self._post(_StatusChecked(generation, purpose, None, e))
        except Exception as e:
            logger.exception("Unexpected status probe failure")
            self._post(_StatusChecked(generation, purpose, None, StatusProbeError(str(e))))
        else:
            self._post(_StatusChecked(generation, purpose, status, None))

    async def _run_subscribe(self, generation: int, symbol: str) -> None:
        try:
            await self._gate.ensure_subscribed(symbol)
        except SubscribeError as e:
            self._post(_SubscribeDone(generation, e))
        except Exception as e:
            logger.exception("Unexpected subscribe failure")
            self._post(_SubscribeDone(generation, SubscribeError(str(e), symbol)))
        else:
            self._post(_SubscribeDone(generation, None))

    async def _run_poll(self, generation: int, symbol: str) -> None:
        try:
            tick = await self._poller.poll_once(symbol)
        except PollError as e:
            self._post(_PollDone(generation, None, e))
        except Exception as e:
            logger.exception("Unexpected poll failure")
            self._post(_PollDone(generation, None, PollError(str(e), symbol)))
        else:
            self._post(_PollDone(generation, tick, None))
