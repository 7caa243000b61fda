"""Value converters shared by the Store, the change feed and the price feeds.

Rows arrive from several sources (bulk load, change notifications, manual
edits in the dashboard) and are not consistently typed:
- prices may be numbers, numeric strings, empty strings or null
- symbols may be written "BTC/USDT", "btcusdt" or with stray whitespace
- timestamps may be ISO strings or datetimes
"""

import math
from datetime import datetime, timezone
from typing import Any


# =============================================================================
# Symbols
# =============================================================================

def normalize_symbol(raw: Any) -> str:
    """Normalize a symbol to the canonical uppercase, no-separator form.

    "BTC/USDT", "btcusdt" and " BTC/USDT " all become "BTCUSDT".
    Empty or missing input yields "".
    """
    if not raw:
        return ""
    return str(raw).replace("/", "").strip().upper()


# =============================================================================
# Numbers
# =============================================================================

def to_number(value: Any) -> float | None:
    """Coerce a loosely typed price field to float.

    None, empty strings, non-numeric text and non-finite values become None.
    """
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


# =============================================================================
# Time
# =============================================================================

def to_datetime(value: Any) -> datetime | None:
    """Parse an ISO timestamp (or pass through a datetime) as aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_duration(start: datetime | None, end: datetime | None) -> str | None:
    """Format the wall-clock delta between two instants.

    Returns "{h}h {m}m" from one hour upwards and "{m}m" below that.
    Non-positive or non-finite deltas format as "0m".
    """
    if start is None or end is None:
        return None

    seconds = (end - start).total_seconds()
    if not math.isfinite(seconds) or seconds <= 0:
        return "0m"

    total = int(seconds)
    hours = total // 3600
    minutes = (total % 3600) // 60
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"
