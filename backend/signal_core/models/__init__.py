"""Data models."""

from signal_core.models.signal import (
    ACTIVE_FAMILY,
    Direction,
    ExitType,
    PriceTick,
    Signal,
    SignalStatus,
    is_active_family,
)
from signal_core.models.converters import (
    format_duration,
    normalize_symbol,
    to_datetime,
    to_number,
)

__all__ = [
    "ACTIVE_FAMILY",
    "Direction",
    "ExitType",
    "PriceTick",
    "Signal",
    "SignalStatus",
    "is_active_family",
    # Converters
    "format_duration",
    "normalize_symbol",
    "to_datetime",
    "to_number",
]
