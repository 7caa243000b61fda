"""Trigger service: apply price ticks to indexed signals.

For every tick, each signal indexed under the tick's symbol is evaluated in
turn. A signal id is "in flight" from the moment a transition is decided
until the Store write resolves; ticks arriving for an in-flight id are
dropped, and later ticks re-evaluate once the flag clears.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from signal_core.evaluator import Decision, DecisionKind, evaluate
from signal_core.index import SignalIndex
from signal_core.models import PriceTick, Signal, SignalStatus

logger = logging.getLogger("eval")
entry_logger = logging.getLogger("entry")
exit_logger = logging.getLogger("exit")
tick_logger = logging.getLogger("ws")

TICK_LOG_INTERVAL = 10.0


class SignalGateway(Protocol):
    """The Store operations the trigger service depends on."""

    async def conditional_update(
        self,
        signal_id: str,
        expected_status: SignalStatus | str,
        patch: dict[str, Any],
    ) -> bool:
        ...


class TriggerService:
    """Evaluate ticks against the index and persist transitions."""

    def __init__(
        self,
        index: SignalIndex,
        gateway: SignalGateway,
        clock: Callable[[], datetime] | None = None,
    ):
        self.index = index
        self.gateway = gateway
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._in_flight: set[str] = set()
        self._last_tick_log = 0.0

        # Counters for the heartbeat log
        self.entries = 0
        self.exits = 0
        self.failures = 0

    def is_in_flight(self, signal_id: str) -> bool:
        return signal_id in self._in_flight

    async def handle_tick(self, tick: PriceTick) -> None:
        """Evaluate every signal indexed under the tick's symbol."""
        ids = self.index.ids_for_symbol(tick.symbol)
        if not ids:
            return

        now = time.monotonic()
        if now - self._last_tick_log > TICK_LOG_INTERVAL:
            tick_logger.info("tick %s @ %s (%s)", tick.symbol, tick.price, tick.source)
            self._last_tick_log = now

        for signal_id in sorted(ids):
            signal = self.index.get(signal_id)
            if signal is None:
                continue
            await self.handle_signal(signal, tick.price)

    async def handle_signal(self, signal: Signal, price: float) -> bool:
        """Evaluate one signal. Returns True if a transition was persisted."""
        if signal.id in self._in_flight:
            return False

        decision = evaluate(signal, price, self._clock())
        if decision is None:
            return False

        self._in_flight.add(signal.id)
        try:
            applied = await self._apply(signal, decision)
        except Exception as e:
            self.failures += 1
            logger.error("%s failed: %s", signal.id, e)
            return False
        finally:
            self._in_flight.discard(signal.id)

        if applied:
            self._after_transition(signal, decision, price)
        else:
            logger.debug(
                "%s status moved on (expected %s), skipping",
                signal.id,
                "/".join(s.value for s in decision.expected_statuses),
            )
        return applied

    async def _apply(self, signal: Signal, decision: Decision) -> bool:
        """Try each expected status in order until one matches."""
        for expected in decision.expected_statuses:
            if await self.gateway.conditional_update(signal.id, expected, decision.patch):
                return True
        return False

    def _after_transition(self, signal: Signal, decision: Decision, price: float) -> None:
        if decision.kind == DecisionKind.ENTER:
            self.index.mark_status(signal.id, SignalStatus.ENTERED)
            self.entries += 1
            entry_logger.info("%s %s -> entered @ %s", signal.id, signal.symbol_norm, price)
            return

        # Removing the last signal of a symbol re-arms the subscription set
        self.index.remove(signal.id)
        self.exits += 1
        exit_logger.info(
            "%s %s -> closed(%s) @ %s pnl=%s%%",
            signal.id,
            signal.symbol_norm,
            decision.exit_type.value,
            price,
            decision.patch.get("pnl_percentage"),
        )
