"""Tests for the REST fallback poller."""

import asyncio
import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock

from signal_core.index import SignalIndex
from signal_core.models import Signal
from signal_engine.clients import BinanceRestClient, RestClientError
from signal_engine.services.fallback_poller import FallbackPoller
from signal_engine.services.market_data import MarketDataConnector
from signal_engine.services.trigger_service import TriggerService


def make_connector_stub(stale=False, fallback=False, open_=True):
    connector = MagicMock()
    connector.is_stale.return_value = stale
    connector.fallback_active = fallback
    connector.is_open = open_
    return connector


def make_rest_stub(prices=None):
    rest = MagicMock()
    rest.get_ticker_prices = AsyncMock(return_value=prices or {})
    return rest


class TestActivation:
    """Tests for when the poller is allowed to run."""

    def test_inactive_while_stream_healthy(self):
        poller = FallbackPoller(make_rest_stub(), make_connector_stub(), AsyncMock(), list, 60.0)
        assert not poller.is_active

    def test_active_when_all_endpoints_failed(self):
        connector = make_connector_stub(fallback=True, open_=False)
        poller = FallbackPoller(make_rest_stub(), connector, AsyncMock(), list, 60.0)
        assert poller.is_active

    def test_active_when_open_stream_is_stale(self):
        connector = make_connector_stub(stale=True)
        poller = FallbackPoller(make_rest_stub(), connector, AsyncMock(), list, 60.0)

        assert poller.is_active
        connector.is_stale.assert_called_with(60.0)


class TestPollOnce:
    """Tests for a single poll cycle."""

    @pytest.mark.asyncio
    async def test_skips_while_stream_healthy(self):
        rest = make_rest_stub({"BTCUSDT": 1.0})
        on_tick = AsyncMock()
        poller = FallbackPoller(rest, make_connector_stub(), on_tick, lambda: ["BTCUSDT"], 60.0)

        assert await poller.poll_once() == 0
        rest.get_ticker_prices.assert_not_awaited()
        on_tick.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_skips_without_symbols(self):
        rest = make_rest_stub()
        connector = make_connector_stub(fallback=True, open_=False)
        poller = FallbackPoller(rest, connector, AsyncMock(), lambda: [], 60.0)

        assert await poller.poll_once() == 0
        rest.get_ticker_prices.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_prices_fed_as_rest_ticks(self):
        rest = make_rest_stub({"BTCUSDT": 68800.0, "ETHUSDT": 3200.0})
        on_tick = AsyncMock()
        connector = make_connector_stub(fallback=True, open_=False)
        poller = FallbackPoller(rest, connector, on_tick, lambda: ["BTCUSDT", "ETHUSDT"], 60.0)

        assert await poller.poll_once() == 2

        rest.get_ticker_prices.assert_awaited_once_with(["BTCUSDT", "ETHUSDT"])
        ticks = {c.args[0].symbol: c.args[0] for c in on_tick.await_args_list}
        assert ticks["BTCUSDT"].price == 68800.0
        assert ticks["ETHUSDT"].source == "rest"
        assert poller.polls == 1

    @pytest.mark.asyncio
    async def test_failure_is_logged_and_counted(self):
        rest = make_rest_stub()
        rest.get_ticker_prices.side_effect = RestClientError("HTTP 503")
        on_tick = AsyncMock()
        connector = make_connector_stub(fallback=True, open_=False)
        poller = FallbackPoller(rest, connector, on_tick, lambda: ["BTCUSDT"], 60.0)

        assert await poller.poll_once() == 0
        assert poller.failures == 1
        on_tick.assert_not_awaited()

        # Next cycle is not blocked by the failed one
        rest.get_ticker_prices.side_effect = None
        rest.get_ticker_prices.return_value = {"BTCUSDT": 1.0}
        assert await poller.poll_once() == 1

    @pytest.mark.asyncio
    async def test_overlapping_polls_skipped(self):
        release = asyncio.Event()

        async def slow_fetch(symbols):
            await release.wait()
            return {"BTCUSDT": 1.0}

        rest = make_rest_stub()
        rest.get_ticker_prices.side_effect = slow_fetch
        connector = make_connector_stub(fallback=True, open_=False)
        poller = FallbackPoller(rest, connector, AsyncMock(), lambda: ["BTCUSDT"], 60.0)

        first = asyncio.create_task(poller.poll_once())
        await asyncio.sleep(0)

        assert await poller.poll_once() == 0

        release.set()
        assert await first == 1
        assert rest.get_ticker_prices.await_count == 1


class RefusingTransport:
    """Stream transport whose every handshake fails."""

    def __init__(self):
        self.attempts = 0

    async def connect(self, url, on_message, on_close):
        self.attempts += 1
        raise ConnectionRefusedError(url)


class TestDegradedMode:
    """End-to-end: live stream down, REST prices close a signal."""

    @pytest.mark.asyncio
    async def test_rest_price_closes_signal_while_stream_down(self):
        index = SignalIndex()
        index.upsert(Signal.from_row({
            "id": "sig-1",
            "symbol": "BTC/USDT",
            "direction": "long",
            "entry_price": 68800,
            "take_profit": 72000,
            "stop_loss": 67000,
            "status": "entered",
            "created_at": "2026-02-08T12:00:00Z",
        }))

        repo = MagicMock()
        repo.conditional_update = AsyncMock(return_value=True)
        trigger = TriggerService(index, repo)

        transport = RefusingTransport()
        connector = MarketDataConnector(
            transport,
            ["wss://primary.example", "wss://backup.example"],
            on_tick=trigger.handle_tick,
            symbols_provider=index.all_symbols,
            reconnect_base=10.0,
            failover_delay=0.0,
        )

        rest_client = BinanceRestClient(
            transport=httpx.MockTransport(
                lambda request: httpx.Response(200, json=[{"symbol": "BTCUSDT", "price": "72100"}])
            )
        )
        poller = FallbackPoller(rest_client, connector, trigger.handle_tick, index.all_symbols, 60.0)

        connector.connect(index.all_symbols())
        for _ in range(200):
            if connector.fallback_active:
                break
            await asyncio.sleep(0.005)

        assert transport.attempts == 2
        assert poller.is_active

        assert await poller.poll_once() == 1

        signal_id, expected, patch = repo.conditional_update.await_args.args
        assert signal_id == "sig-1"
        assert patch["exit_type"] == "take_profit"
        assert patch["exit_price"] == 72100.0
        assert index.get("sig-1") is None

        connector.close()
        await rest_client.close()
