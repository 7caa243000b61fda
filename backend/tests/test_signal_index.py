"""Tests for the in-memory signal index."""

import pytest
from unittest.mock import MagicMock

from signal_core.index import SignalIndex
from signal_core.models import Signal, SignalStatus


def make_signal(signal_id="sig-1", symbol="BTCUSDT", status="pending_entry", **overrides):
    row = {
        "id": signal_id,
        "symbol": symbol,
        "direction": "long",
        "entry_price": 100,
        "take_profit": 110,
        "stop_loss": 95,
        "status": status,
    }
    row.update(overrides)
    return Signal.from_row(row)


class TestSignalIndex:
    """Tests for SignalIndex."""

    @pytest.fixture
    def on_change(self):
        return MagicMock()

    @pytest.fixture
    def index(self, on_change):
        return SignalIndex(on_symbols_changed=on_change)

    def test_upsert_and_get(self, index):
        signal = make_signal()
        index.upsert(signal)

        assert index.get("sig-1") is signal
        assert index.ids_for_symbol("BTCUSDT") == {"sig-1"}
        assert index.all_symbols() == ["BTCUSDT"]
        assert len(index) == 1
        assert "sig-1" in index

    def test_absent_ids_yield_empty_results(self, index):
        assert index.get("missing") is None
        assert index.ids_for_symbol("ETHUSDT") == frozenset()
        assert index.remove("missing") is None

    def test_symbol_is_indexed_normalized(self, index):
        index.upsert(make_signal(symbol="eth/usdt"))
        assert index.all_symbols() == ["ETHUSDT"]

    def test_upsert_moves_signal_between_buckets(self, index):
        index.upsert(make_signal(symbol="BTCUSDT"))
        index.upsert(make_signal(symbol="ETHUSDT"))

        assert index.ids_for_symbol("BTCUSDT") == frozenset()
        assert index.ids_for_symbol("ETHUSDT") == {"sig-1"}
        assert index.all_symbols() == ["ETHUSDT"]
        assert len(index) == 1

    def test_upsert_non_active_family_removes(self, index):
        index.upsert(make_signal())
        index.upsert(make_signal(status="cancelled"))

        assert index.get("sig-1") is None
        assert index.all_symbols() == []

    def test_upsert_non_active_family_unknown_id_is_noop(self, index, on_change):
        index.upsert(make_signal(status="closed"))

        assert len(index) == 0
        on_change.assert_not_called()

    def test_remove_drops_empty_bucket(self, index):
        index.upsert(make_signal("a"))
        index.upsert(make_signal("b"))

        index.remove("a")
        assert index.all_symbols() == ["BTCUSDT"]

        removed = index.remove("b")
        assert removed.id == "b"
        assert index.all_symbols() == []
        assert index.symbol_count == 0

    def test_callback_only_on_symbol_set_change(self, index, on_change):
        index.upsert(make_signal("a"))
        assert on_change.call_count == 1

        # Same symbol: set unchanged
        index.upsert(make_signal("b"))
        index.upsert(make_signal("a", status="entered"))
        index.remove("b")
        assert on_change.call_count == 1

        # New symbol
        index.upsert(make_signal("c", symbol="ETHUSDT"))
        assert on_change.call_count == 2

        # Last signal of a symbol leaves
        index.remove("a")
        assert on_change.call_count == 3

    def test_replace_all(self, index, on_change):
        index.upsert(make_signal("old", symbol="SOLUSDT"))
        on_change.reset_mock()

        index.replace_all([
            make_signal("a", symbol="BTCUSDT"),
            make_signal("b", symbol="ETHUSDT", status="active"),
            make_signal("c", symbol="XRPUSDT", status="closed"),
        ])

        assert index.get("old") is None
        assert index.get("c") is None
        assert index.all_symbols() == ["BTCUSDT", "ETHUSDT"]
        on_change.assert_called_once()

    def test_mark_status_updates_in_place(self, index):
        signal = make_signal()
        index.upsert(signal)

        index.mark_status("sig-1", SignalStatus.ENTERED)

        assert index.get("sig-1").status == SignalStatus.ENTERED
        assert signal.status == SignalStatus.ENTERED

    def test_mark_status_closed_removes(self, index):
        index.upsert(make_signal())
        index.mark_status("sig-1", SignalStatus.CLOSED)
        assert index.get("sig-1") is None

    def test_works_without_callback(self):
        index = SignalIndex()
        index.upsert(make_signal())
        index.remove("sig-1")
        assert len(index) == 0
