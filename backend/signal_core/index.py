"""In-memory index of active-family signals.

Owns two maps: signals by id, and signal ids grouped by normalized symbol.
All mutation goes through ``upsert``/``remove``/``replace_all`` so the two
maps can never disagree. The set of symbol keys is the subscription set for
the market data feeds; any change to it notifies the registered callback.
"""

from typing import Callable, Iterable

from signal_core.models import Signal, SignalStatus

SymbolsChangedCallback = Callable[[], None]


class SignalIndex:
    """Authoritative view of the signals currently being tracked."""

    def __init__(self, on_symbols_changed: SymbolsChangedCallback | None = None):
        self._by_id: dict[str, Signal] = {}
        self._by_symbol: dict[str, set[str]] = {}
        self._on_symbols_changed = on_symbols_changed

    def on_symbols_changed(self, callback: SymbolsChangedCallback) -> None:
        """Register the callback fired when the symbol set changes."""
        self._on_symbols_changed = callback

    def upsert(self, signal: Signal) -> None:
        """Insert or replace a signal.

        A signal outside the active family is removed instead. If the id is
        already indexed under another symbol it is moved to the new bucket.
        """
        if not signal.is_active_family:
            self.remove(signal.id)
            return

        before = self._symbol_keys()

        previous = self._by_id.get(signal.id)
        if previous is not None and previous.symbol_norm != signal.symbol_norm:
            self._discard_from_bucket(previous.symbol_norm, signal.id)

        self._by_id[signal.id] = signal
        self._by_symbol.setdefault(signal.symbol_norm, set()).add(signal.id)

        self._notify_if_changed(before)

    def remove(self, signal_id: str) -> Signal | None:
        """Remove a signal by id. Returns the removed signal, if any."""
        existing = self._by_id.pop(signal_id, None)
        if existing is None:
            return None

        before = self._symbol_keys()
        self._discard_from_bucket(existing.symbol_norm, signal_id)
        self._notify_if_changed(before)
        return existing

    def replace_all(self, signals: Iterable[Signal]) -> None:
        """Replace the whole index (bulk load and periodic resync)."""
        self._by_id.clear()
        self._by_symbol.clear()
        for signal in signals:
            if not signal.is_active_family:
                continue
            self._by_id[signal.id] = signal
            self._by_symbol.setdefault(signal.symbol_norm, set()).add(signal.id)

        if self._on_symbols_changed:
            self._on_symbols_changed()

    def mark_status(self, signal_id: str, status: SignalStatus) -> None:
        """Update the in-memory status of an indexed signal."""
        signal = self._by_id.get(signal_id)
        if signal is None:
            return
        if status in (SignalStatus.CLOSED, SignalStatus.CANCELLED):
            self.remove(signal_id)
            return
        signal.status = status

    def get(self, signal_id: str) -> Signal | None:
        return self._by_id.get(signal_id)

    def ids_for_symbol(self, symbol: str) -> frozenset[str]:
        return frozenset(self._by_symbol.get(symbol, ()))

    def all_symbols(self) -> list[str]:
        """Sorted subscription set."""
        return sorted(self._by_symbol)

    def signals(self) -> list[Signal]:
        return list(self._by_id.values())

    @property
    def symbol_count(self) -> int:
        return len(self._by_symbol)

    def __len__(self) -> int:
        return len(self._by_id)

    def __contains__(self, signal_id: object) -> bool:
        return signal_id in self._by_id

    def _discard_from_bucket(self, symbol: str, signal_id: str) -> None:
        bucket = self._by_symbol.get(symbol)
        if bucket is None:
            return
        bucket.discard(signal_id)
        if not bucket:
            del self._by_symbol[symbol]

    def _symbol_keys(self) -> set[str]:
        return set(self._by_symbol)

    def _notify_if_changed(self, before: set[str]) -> None:
        if self._on_symbols_changed and before != self._symbol_keys():
            self._on_symbols_changed()
