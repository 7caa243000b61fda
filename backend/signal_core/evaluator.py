"""Trigger evaluation: decide what a price does to a signal.

Pure functions only. The caller owns the Store write and the index update;
this module just answers "should this signal move, and what gets written".

State machine:
    pending_entry --(entry gate)--> entered --(TP/SL)--> closed
    active --(TP/SL)--> closed
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from signal_core.models import (
    Direction,
    ExitType,
    Signal,
    SignalStatus,
    format_duration,
)


class DecisionKind(str, Enum):
    ENTER = "enter"
    CLOSE = "close"


@dataclass(frozen=True)
class Decision:
    """A state transition to request from the Store.

    ``expected_statuses`` is tried in order; each attempt is a conditional
    write guarded by that status.
    """

    kind: DecisionKind
    expected_statuses: tuple[SignalStatus, ...]
    patch: dict[str, Any] = field(default_factory=dict)
    exit_type: ExitType | None = None


def is_entry_triggered(signal: Signal, price: float) -> bool:
    """Long enters at or below the entry price, short at or above it."""
    if signal.entry_price is None:
        return False
    if signal.direction == Direction.LONG:
        return price <= signal.entry_price
    return price >= signal.entry_price


def get_exit_type(signal: Signal, price: float) -> ExitType | None:
    """Check take-profit first, then stop-loss. Unset levels never trigger."""
    tp = signal.take_profit
    sl = signal.stop_loss

    if signal.direction == Direction.LONG:
        if tp is not None and price >= tp:
            return ExitType.TAKE_PROFIT
        if sl is not None and price <= sl:
            return ExitType.STOP_LOSS
        return None

    if tp is not None and price <= tp:
        return ExitType.TAKE_PROFIT
    if sl is not None and price >= sl:
        return ExitType.STOP_LOSS
    return None


def calc_pnl(signal: Signal, exit_price: float) -> tuple[float, str]:
    """Return (pnl_percentage, pnl_ratio).

    pnl_percentage is rounded to 4 decimals; pnl_ratio keeps 6 decimals and
    is returned as text so the Store does not lose precision.
    """
    entry = signal.entry_price
    if signal.direction == Direction.LONG:
        raw = (exit_price - entry) / entry
    else:
        raw = (entry - exit_price) / entry

    leveraged = raw * signal.leverage
    return round(leveraged * 100, 4), f"{leveraged:.6f}"


def build_close_patch(
    signal: Signal,
    price: float,
    exit_type: ExitType,
    now: datetime,
) -> dict[str, Any]:
    """Fields written when a signal closes."""
    pnl_percentage, pnl_ratio = calc_pnl(signal, price)
    return {
        "status": SignalStatus.CLOSED.value,
        "exit_type": exit_type.value,
        "exit_price": price,
        "exit_time": now,
        "signal_duration": format_duration(signal.started_at, now),
        "pnl_percentage": pnl_percentage,
        "pnl_ratio": pnl_ratio,
    }


def evaluate(signal: Signal, price: float, now: datetime) -> Decision | None:
    """Decide the transition (if any) for a signal at a given price."""
    if signal.status == SignalStatus.PENDING_ENTRY:
        if not is_entry_triggered(signal, price):
            return None
        return Decision(
            kind=DecisionKind.ENTER,
            expected_statuses=(SignalStatus.PENDING_ENTRY,),
            patch={"status": SignalStatus.ENTERED.value},
        )

    if signal.status == SignalStatus.ENTERED:
        expected = (SignalStatus.ENTERED,)
    elif signal.status == SignalStatus.ACTIVE:
        # The local copy may predate a pending_entry -> entered write made
        # elsewhere, so fall back to "entered" when "active" does not match.
        expected = (SignalStatus.ACTIVE, SignalStatus.ENTERED)
    else:
        return None

    # PnL is undefined without an entry price
    if not signal.entry_price:
        return None

    exit_type = get_exit_type(signal, price)
    if exit_type is None:
        return None

    return Decision(
        kind=DecisionKind.CLOSE,
        expected_statuses=expected,
        patch=build_close_patch(signal, price, exit_type, now),
        exit_type=exit_type,
    )
