"""Signal and price tick data models."""

import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from signal_core.models.converters import normalize_symbol, to_datetime, to_number

logger = logging.getLogger(__name__)


class Direction(str, Enum):
    """Trade direction."""

    LONG = "long"
    SHORT = "short"


class SignalStatus(str, Enum):
    """Lifecycle status of a signal as stored in the Store."""

    PENDING_ENTRY = "pending_entry"
    ENTERED = "entered"
    ACTIVE = "active"
    CLOSED = "closed"
    CANCELLED = "cancelled"  # Only ever set by external actors


class ExitType(str, Enum):
    """Which exit level closed the signal."""

    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"


# Statuses for which a signal is tracked and indexed
ACTIVE_FAMILY = frozenset(
    {SignalStatus.PENDING_ENTRY, SignalStatus.ENTERED, SignalStatus.ACTIVE}
)


def is_active_family(status: Any) -> bool:
    """Check a raw or enum status against the active family."""
    try:
        return SignalStatus(str(status).strip().lower()) in ACTIVE_FAMILY
    except ValueError:
        return False


class Signal(BaseModel):
    """A conditional order tracked by the engine.

    Price fields are coerced on ingest: non-numeric or empty values become
    None, and leverage falls back to 1 when absent, non-finite or not positive.
    ``symbol_norm`` is derived from ``symbol`` and used for all indexing.

    Prices are binary floats rather than Decimal: ticks arrive as float
    strings and are only compared against thresholds, and PnL is rounded
    with ``round()`` on floats so stored values match rows already written
    by other writers of the table. ``pnl_ratio`` goes out as fixed-point
    text, so no float noise reaches the Store.
    """

    model_config = ConfigDict(extra="ignore")

    id: str
    symbol: str
    symbol_norm: str = ""
    direction: Direction
    entry_price: float | None = None
    take_profit: float | None = None
    stop_loss: float | None = None
    leverage: float = 1.0
    status: SignalStatus
    entry_time: datetime | None = None
    created_at: datetime | None = None

    @field_validator("id", "symbol", mode="before")
    @classmethod
    def _as_text(cls, value: Any) -> Any:
        # UUID columns come back from asyncpg as uuid.UUID
        return "" if value is None else str(value)

    @field_validator("direction", "status", mode="before")
    @classmethod
    def _lower(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("entry_price", "take_profit", "stop_loss", mode="before")
    @classmethod
    def _price(cls, value: Any) -> float | None:
        return to_number(value)

    @field_validator("leverage", mode="before")
    @classmethod
    def _leverage(cls, value: Any) -> float:
        number = to_number(value)
        if number is None or number <= 0:
            return 1.0
        return number

    @field_validator("entry_time", "created_at", mode="before")
    @classmethod
    def _timestamp(cls, value: Any) -> datetime | None:
        return to_datetime(value)

    def model_post_init(self, __context) -> None:
        """Derive the normalized symbol after validation."""
        self.symbol_norm = normalize_symbol(self.symbol)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Signal | None":
        """Build an enriched signal from a Store or change-feed row.

        Returns None for rows that cannot be tracked (missing id or symbol,
        unknown direction or status).
        """
        try:
            signal = cls.model_validate(dict(row))
        except ValidationError as e:
            logger.warning(
                "Skipping invalid signal row %s: %s",
                row.get("id"),
                e.errors(include_url=False),
            )
            return None

        if not signal.id or not signal.symbol_norm:
            return None
        return signal

    @property
    def is_active_family(self) -> bool:
        return self.status in ACTIVE_FAMILY

    @property
    def started_at(self) -> datetime | None:
        """Reference time for the signal duration."""
        return self.entry_time or self.created_at


class PriceTick(BaseModel):
    """A last-traded price for one symbol, from either price source."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    price: float
    source: Literal["ws", "rest"] = "ws"
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
