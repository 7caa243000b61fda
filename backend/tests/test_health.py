"""Tests for the scheduler / health monitor."""

import asyncio
import pytest
from unittest.mock import AsyncMock, MagicMock

from signal_core.index import SignalIndex
from signal_core.models import Signal
from signal_engine.services.health import HealthMonitor
from signal_engine.services.market_data import MarketDataConnector
from signal_engine.storage import ChangeFeedListener, StoreError


def make_signal(signal_id, symbol="BTCUSDT", status="entered"):
    return Signal.from_row({
        "id": signal_id,
        "symbol": symbol,
        "direction": "long",
        "entry_price": 100,
        "take_profit": 110,
        "stop_loss": 95,
        "status": status,
    })


class TestHealthMonitor:
    """Tests for HealthMonitor."""

    @pytest.fixture
    def index(self):
        index = SignalIndex()
        index.upsert(make_signal("a"))
        return index

    @pytest.fixture
    def connector(self):
        connector = MagicMock()
        connector.is_stale.return_value = False
        connector.is_open = True
        return connector

    @pytest.fixture
    def poller(self):
        poller = MagicMock()
        poller.is_active = False
        poller.poll_once = AsyncMock(return_value=0)
        return poller

    @pytest.fixture
    def loader(self):
        loader = MagicMock()
        loader.load_active_signals = AsyncMock(return_value=[])
        return loader

    @pytest.fixture
    def monitor(self, index, connector, poller, loader):
        return HealthMonitor(
            index,
            connector,
            poller,
            loader,
            heartbeat_interval=30.0,
            resync_interval=300.0,
            poll_interval=2.0,
        )

    def test_stale_threshold_is_two_heartbeats(self, monitor):
        assert monitor.stale_after == 60.0

    @pytest.mark.asyncio
    async def test_heartbeat_healthy_logs_status(self, monitor, connector, caplog):
        caplog.set_level("INFO", logger="health")

        await monitor.heartbeat()

        connector.is_stale.assert_called_once_with(60.0)
        connector.force_reconnect.assert_not_called()
        assert "signals=1, symbols=1, ws=up, rest=off" in caplog.text

    @pytest.mark.asyncio
    async def test_heartbeat_stale_forces_reconnect(self, monitor, connector):
        connector.is_stale.return_value = True

        await monitor.heartbeat()

        connector.force_reconnect.assert_called_once()
        assert monitor.forced_reconnects == 1

    @pytest.mark.asyncio
    async def test_resync_replaces_index(self, monitor, index, loader):
        loader.load_active_signals.return_value = [
            make_signal("b", symbol="ETHUSDT"),
            make_signal("c", symbol="SOLUSDT", status="pending_entry"),
        ]

        assert await monitor.resync() is True

        assert index.get("a") is None
        assert index.all_symbols() == ["ETHUSDT", "SOLUSDT"]
        assert monitor.resyncs == 1

    @pytest.mark.asyncio
    async def test_resync_failure_leaves_index_untouched(self, monitor, index, loader):
        loader.load_active_signals.side_effect = StoreError("timeout")

        assert await monitor.resync() is False

        assert index.get("a") is not None
        assert monitor.resyncs == 0

    @pytest.mark.asyncio
    async def test_loops_run_and_survive_failures(self, index, connector, poller, loader):
        poller.poll_once.side_effect = [RuntimeError("boom"), 0, 0, 0, 0, 0, 0, 0, 0, 0]
        monitor = HealthMonitor(
            index,
            connector,
            poller,
            loader,
            heartbeat_interval=0.01,
            resync_interval=0.01,
            poll_interval=0.005,
        )

        monitor.start()
        for _ in range(200):
            if poller.poll_once.await_count >= 3 and monitor.resyncs >= 1:
                break
            await asyncio.sleep(0.005)
        await monitor.stop()

        assert poller.poll_once.await_count >= 3
        assert loader.load_active_signals.await_count >= 1

    @pytest.mark.asyncio
    async def test_stop_cancels_loops(self, monitor, poller):
        monitor.start()
        await monitor.stop()
        await asyncio.sleep(0.01)

        poller.poll_once.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_resync_replays_changes_received_during_load(self, index, connector, poller, loader):
        feed = ChangeFeedListener(index, "postgresql://localhost/signals", "signals_changes")
        monitor = HealthMonitor(index, connector, poller, loader, change_feed=feed)

        async def load_racing_update():
            feed.handle_payload({"eventType": "UPDATE", "new": {
                "id": "b",
                "symbol": "ETHUSDT",
                "direction": "long",
                "entry_price": 100,
                "status": "cancelled",
            }})
            return [make_signal("b", symbol="ETHUSDT"), make_signal("c", symbol="SOLUSDT")]

        loader.load_active_signals.side_effect = load_racing_update

        assert await monitor.resync() is True

        # The cancel raced the snapshot and still wins
        assert index.get("b") is None
        assert index.all_symbols() == ["SOLUSDT"]

    @pytest.mark.asyncio
    async def test_resync_failure_still_releases_feed(self, index, connector, poller, loader):
        feed = ChangeFeedListener(index, "postgresql://localhost/signals", "signals_changes")
        monitor = HealthMonitor(index, connector, poller, loader, change_feed=feed)
        loader.load_active_signals.side_effect = StoreError("timeout")

        assert await monitor.resync() is False

        feed.handle_payload({"eventType": "INSERT", "new": {
            "id": "d",
            "symbol": "XRPUSDT",
            "direction": "short",
            "status": "pending_entry",
        }})
        assert index.get("d") is not None


class TestIdleHeartbeat:
    """Heartbeat against a real connector with nothing to stream."""

    @pytest.mark.asyncio
    async def test_idle_connector_is_not_reconnected(self, caplog):
        caplog.set_level("INFO", logger="health")
        connector = MarketDataConnector(
            transport=MagicMock(),
            endpoints=["wss://primary.example"],
            on_tick=AsyncMock(),
            symbols_provider=list,
        )
        # Stream was live earlier, then the last signal closed
        connector.last_message_at = 1.0
        connector.connect([])

        poller = MagicMock()
        poller.is_active = False
        monitor = HealthMonitor(SignalIndex(), connector, poller, MagicMock(), heartbeat_interval=0.001)

        for _ in range(3):
            await monitor.heartbeat()

        assert monitor.forced_reconnects == 0
        assert "signals=0, symbols=0, ws=down, rest=off" in caplog.text
        connector.close()
