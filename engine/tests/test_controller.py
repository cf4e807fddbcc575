"""
Tests for the stream-or-poll market data controller.

Uses FakeBackendClient - NO REAL NETWORK CALLS.
"""

import asyncio
from decimal import Decimal

import pytest

from tradefe_engine.market_data.controller import (
    ControllerConfig,
    ControllerState,
    MarketDataController,
)
from tradefe_engine.market_data.models import ErrorKind, Instrument, MarketDataMode
from tests.fixtures.fake_backend import FakeBackendClient, backend_down, eventually

AAPL = Instrument(symbol="AAPL", description="Apple Inc")
MSFT = Instrument(symbol="MSFT", description="Microsoft Corp")


def make_controller(
    client: FakeBackendClient,
    recheck_interval_s: float = 60.0,
    history_limit: int = 50,
) -> MarketDataController:
    return MarketDataController(
        client,  # type: ignore[arg-type]
        ControllerConfig(
            status_recheck_interval_s=recheck_interval_s,
            history_limit=history_limit,
        ),
    )


async def view_and_stream(controller: MarketDataController, client: FakeBackendClient) -> None:
    """View AAPL with the market open and wait for the feed to connect."""
    await controller.view_symbol(AAPL)
    await controller.settle()
    await eventually(lambda: client.open_streams == 1)


# =============================================================================
# Market open: stream
# =============================================================================


class TestOpenMarket:
    @pytest.mark.asyncio
    async def test_open_market_streams(self) -> None:
        client = FakeBackendClient(market_open=True)
        controller = make_controller(client)
        try:
            await view_and_stream(controller, client)

            assert controller.state == ControllerState.STREAMING
            assert controller.mode == MarketDataMode.STREAM
            assert controller.stream_open
            assert controller.current_error() is None
            assert client.count("subscribe") == 1
            assert client.count("quote") == 0
            assert client.index("subscribe") < client.index("stream_open")
        finally:
            await controller.stop()

    @pytest.mark.asyncio
    async def test_ticks_appended_newest_first(self) -> None:
        client = FakeBackendClient(market_open=True)
        controller = make_controller(client)
        try:
            await view_and_stream(controller, client)
            feed = client.feeds[0]
            for i in range(3):
                feed.push({"symbol": "AAPL", "t": 1000 + i, "c": 100 + i})

            await eventually(lambda: len(controller.current_history()) == 3)
            prices = [t.price for t in controller.current_history()]
            assert prices == [Decimal(102), Decimal(101), Decimal(100)]
        finally:
            await controller.stop()

    @pytest.mark.asyncio
    async def test_history_bounded(self) -> None:
        client = FakeBackendClient(market_open=True)
        controller = make_controller(client, history_limit=3)
        try:
            await view_and_stream(controller, client)
            feed = client.feeds[0]
            for i in range(5):
                feed.push({"symbol": "AAPL", "t": 1000 + i, "c": i})

            await eventually(lambda: controller.stats.ticks_received == 5)
            await controller.settle()
            prices = [t.price for t in controller.current_history()]
            assert prices == [Decimal(4), Decimal(3), Decimal(2)]
        finally:
            await controller.stop()

    @pytest.mark.asyncio
    async def test_other_symbols_and_malformed_ignored(self) -> None:
        client = FakeBackendClient(market_open=True)
        controller = make_controller(client)
        try:
            await view_and_stream(controller, client)
            feed = client.feeds[0]
            feed.push({"symbol": "MSFT", "c": 400})
            feed.push("garbage")
            feed.push({"symbol": "AAPL", "c": 150})

            await eventually(lambda: len(controller.current_history()) == 1)
            assert controller.current_history()[0].symbol == "AAPL"
            assert controller.state == ControllerState.STREAMING
            assert controller.current_error() is None
        finally:
            await controller.stop()

    @pytest.mark.asyncio
    async def test_same_symbol_view_is_noop(self) -> None:
        client = FakeBackendClient(market_open=True)
        controller = make_controller(client)
        try:
            await view_and_stream(controller, client)
            await controller.view_symbol(AAPL)
            await controller.view_symbol(AAPL)
            await controller.settle()

            assert client.count("status") == 1
            assert client.count("stream_open") == 1
            assert client.max_open_streams == 1
            assert controller.state == ControllerState.STREAMING
        finally:
            await controller.stop()

    @pytest.mark.asyncio
    async def test_subscribe_failure_enters_failed(self) -> None:
        client = FakeBackendClient(market_open=True)
        client.subscribe_error = backend_down()
        controller = make_controller(client)
        try:
            await controller.view_symbol(AAPL)
            await controller.settle()

            assert controller.state == ControllerState.FAILED
            assert controller.current_error() == ErrorKind.SUBSCRIBE_FAILURE
            assert client.count("stream_open") == 0
            assert client.count("quote") == 0
        finally:
            await controller.stop()


# =============================================================================
# Market closed or unknown: poll
# =============================================================================


class TestClosedMarket:
    @pytest.mark.asyncio
    async def test_closed_market_polls_once(self) -> None:
        client = FakeBackendClient(market_open=False)
        controller = make_controller(client)
        try:
            await controller.view_symbol(AAPL)
            await controller.settle()

            assert controller.state == ControllerState.POLLED
            assert controller.mode == MarketDataMode.POLL
            assert client.count("quote") == 1
            assert client.count("subscribe") == 0
            assert client.count("stream_open") == 0
            history = controller.current_history()
            assert len(history) == 1
            assert history[0].price == Decimal("150.2")
        finally:
            await controller.stop()

    @pytest.mark.asyncio
    async def test_status_failure_treated_as_closed(self) -> None:
        """Unknown status polls once and is not surfaced as an error."""
        client = FakeBackendClient(market_open=True)
        client.status_error = backend_down()
        controller = make_controller(client)
        try:
            await controller.view_symbol(AAPL)
            await controller.settle()

            assert controller.state == ControllerState.POLLED
            assert client.count("quote") == 1
            assert client.count("subscribe") == 0
            assert controller.current_error() is None
        finally:
            await controller.stop()

    @pytest.mark.asyncio
    async def test_poll_failure_surfaced(self) -> None:
        client = FakeBackendClient(market_open=False)
        client.quote_error = backend_down()
        controller = make_controller(client)
        try:
            await controller.view_symbol(AAPL)
            await controller.settle()

            assert controller.state == ControllerState.POLLED
            assert controller.current_error() == ErrorKind.POLL_FAILURE
            assert controller.current_history() == ()
            assert "connection refused" in (controller.get_status().error_message or "")
        finally:
            await controller.stop()

    @pytest.mark.asyncio
    async def test_recheck_retries_failed_poll(self) -> None:
        client = FakeBackendClient(market_open=False)
        client.quote_error = backend_down()
        controller = make_controller(client)
        try:
            await controller.view_symbol(AAPL)
            await controller.settle()

            client.quote_error = None
            controller.request_recheck()
            await controller.settle()

            assert client.count("quote") == 2
            assert controller.current_error() is None
            assert len(controller.current_history()) == 1
        finally:
            await controller.stop()

    @pytest.mark.asyncio
    async def test_recheck_still_closed_does_not_repoll(self) -> None:
        client = FakeBackendClient(market_open=False)
        controller = make_controller(client)
        try:
            await controller.view_symbol(AAPL)
            await controller.settle()
            controller.request_recheck()
            await controller.settle()

            assert client.count("status") == 2
            assert client.count("quote") == 1
            assert controller.state == ControllerState.POLLED
            assert controller.stats.rechecks == 1
        finally:
            await controller.stop()

    @pytest.mark.asyncio
    async def test_recheck_escalates_to_stream(self) -> None:
        client = FakeBackendClient(market_open=False)
        controller = make_controller(client)
        try:
            await controller.view_symbol(AAPL)
            await controller.settle()
            assert controller.state == ControllerState.POLLED

            client.market_open = True
            controller.request_recheck()
            await controller.settle()
            await eventually(lambda: client.open_streams == 1)

            assert controller.state == ControllerState.STREAMING
            assert client.count("subscribe") == 1
            assert client.count("stream_open") == 1
            # Polled snapshot is kept until streamed ticks replace it
            assert len(controller.current_history()) == 1
        finally:
            await controller.stop()

    @pytest.mark.asyncio
    async def test_timer_escalates_to_stream(self) -> None:
        client = FakeBackendClient(market_open=False)
        controller = make_controller(client, recheck_interval_s=0.02)
        try:
            await controller.view_symbol(AAPL)
            await controller.settle()

            client.market_open = True
            await eventually(lambda: controller.state == ControllerState.STREAMING)
            await eventually(lambda: client.open_streams == 1)
            rechecks = controller.stats.rechecks

            # Timer is cancelled once streaming
            await asyncio.sleep(0.1)
            assert controller.stats.rechecks == rechecks
            assert client.count("subscribe") == 1
        finally:
            await controller.stop()

    @pytest.mark.asyncio
    async def test_recheck_ignored_while_streaming(self) -> None:
        client = FakeBackendClient(market_open=True)
        controller = make_controller(client)
        try:
            await view_and_stream(controller, client)
            controller.request_recheck()
            await controller.settle()

            assert client.count("status") == 1
            assert controller.stats.rechecks == 0
        finally:
            await controller.stop()


# =============================================================================
# Stream failure
# =============================================================================


class TestStreamFailure:
    @pytest.mark.asyncio
    async def test_stream_failure_enters_failed_without_polling(self) -> None:
        client = FakeBackendClient(market_open=True)
        controller = make_controller(client)
        try:
            await view_and_stream(controller, client)
            client.feeds[0].fail(ConnectionResetError("reset"))

            await eventually(lambda: controller.state == ControllerState.FAILED)
            await controller.settle()
            assert controller.current_error() == ErrorKind.STREAM_FAILURE
            assert not controller.stream_open
            assert client.count("quote") == 0
            assert client.open_streams == 0
        finally:
            await controller.stop()

    @pytest.mark.asyncio
    async def test_server_end_enters_failed(self) -> None:
        client = FakeBackendClient(market_open=True)
        controller = make_controller(client)
        try:
            await view_and_stream(controller, client)
            client.feeds[0].end()

            await eventually(lambda: controller.state == ControllerState.FAILED)
            assert controller.current_error() == ErrorKind.STREAM_FAILURE
        finally:
            await controller.stop()

    @pytest.mark.asyncio
    async def test_recheck_after_failure_reopens_without_resubscribing(self) -> None:
        client = FakeBackendClient(market_open=True)
        controller = make_controller(client)
        try:
            await view_and_stream(controller, client)
            client.feeds[0].fail(ConnectionResetError("reset"))
            await eventually(lambda: controller.state == ControllerState.FAILED)
            await controller.settle()

            controller.request_recheck()
            await controller.settle()
            await eventually(lambda: client.open_streams == 1)

            assert controller.state == ControllerState.STREAMING
            assert controller.current_error() is None
            assert client.count("subscribe") == 1
            assert client.count("stream_open") == 2
            assert controller.stats.subscribe_calls == 1
            assert controller.get_status().stats["subscribe_calls"] == 1
        finally:
            await controller.stop()

    @pytest.mark.asyncio
    async def test_timer_reopens_stream_after_failure(self) -> None:
        client = FakeBackendClient(market_open=True)
        controller = make_controller(client, recheck_interval_s=0.02)
        try:
            await view_and_stream(controller, client)
            client.feeds[0].fail(ConnectionResetError("reset"))

            # No request_recheck(): only the re-armed timer can reopen
            await eventually(lambda: client.count("stream_open") == 2)
            await eventually(lambda: controller.state == ControllerState.STREAMING)

            assert controller.stats.rechecks >= 1
            assert client.count("subscribe") == 1
            assert client.count("quote") == 0
            assert controller.current_error() is None
        finally:
            await controller.stop()


# =============================================================================
# Symbol change and stop
# =============================================================================


class TestSymbolChange:
    @pytest.mark.asyncio
    async def test_switch_closes_stream_before_new_status(self) -> None:
        client = FakeBackendClient(market_open=True)
        controller = make_controller(client)
        try:
            await view_and_stream(controller, client)
            client.feeds[0].push({"symbol": "AAPL", "c": 150})
            await eventually(lambda: len(controller.current_history()) == 1)

            await controller.view_symbol(MSFT)
            await controller.settle()
            await eventually(lambda: len(client.feeds) == 2)

            assert client.index("stream_close") < client.index("status", "MSFT")
            assert client.max_open_streams == 1
            assert controller.symbol == "MSFT"
            assert controller.current_history() == ()
            assert controller.get_status().subscriptions == ["AAPL", "MSFT"]
        finally:
            await controller.stop()

    @pytest.mark.asyncio
    async def test_late_result_for_previous_symbol_ignored(self) -> None:
        client = FakeBackendClient(market_open=True)
        client.status_gate = asyncio.Event()
        controller = make_controller(client)
        try:
            await controller.view_symbol(AAPL)
            await eventually(lambda: client.count("status") == 1)

            await controller.view_symbol(MSFT)
            await eventually(lambda: client.count("status") == 2)
            client.status_gate.set()
            await controller.settle()
            await eventually(lambda: client.open_streams == 1)

            assert controller.symbol == "MSFT"
            assert controller.state == ControllerState.STREAMING
            assert client.calls.count(("subscribe", "AAPL")) == 0
            assert client.calls.count(("subscribe", "MSFT")) == 1
        finally:
            await controller.stop()

    @pytest.mark.asyncio
    async def test_same_symbol_after_poll_redecides_and_keeps_history(self) -> None:
        client = FakeBackendClient(market_open=False)
        controller = make_controller(client)
        try:
            await controller.view_symbol(AAPL)
            await controller.settle()
            client.market_open = True

            await controller.view_symbol(AAPL)
            await controller.settle()
            await eventually(lambda: client.open_streams == 1)

            assert controller.state == ControllerState.STREAMING
            assert client.count("status") == 2
            assert len(controller.current_history()) == 1
        finally:
            await controller.stop()


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_releases_everything(self) -> None:
        client = FakeBackendClient(market_open=True)
        controller = make_controller(client)

        await view_and_stream(controller, client)
        client.feeds[0].push({"symbol": "AAPL", "c": 150})
        await eventually(lambda: len(controller.current_history()) == 1)

        await controller.stop()

        assert controller.state == ControllerState.IDLE
        assert controller.symbol is None
        assert controller.current_history() == ()
        assert not controller.is_running
        assert client.open_streams == 0

    @pytest.mark.asyncio
    async def test_stop_when_not_running(self) -> None:
        controller = make_controller(FakeBackendClient())
        await controller.stop()
        assert controller.state == ControllerState.IDLE

    @pytest.mark.asyncio
    async def test_status_snapshot(self) -> None:
        client = FakeBackendClient(market_open=False)
        controller = make_controller(client, recheck_interval_s=30.0)
        try:
            await controller.view_symbol(AAPL)
            await controller.settle()

            status = controller.get_status()
            assert status.state == "polled"
            assert status.mode == MarketDataMode.POLL
            assert status.symbol == "AAPL"
            assert status.history_size == 1
            assert status.recheck_interval_s == 30.0
            assert status.stats["polls"] == 1
            assert status.stats["status_probes"] == 1
        finally:
            await controller.stop()
