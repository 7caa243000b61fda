#!/usr/bin/env python3
"""Inspect the signals table: row counts by status and the latest row.

Usage:
    python scripts/inspect_signals.py
    python scripts/inspect_signals.py --active    # also list the active family
"""

import argparse
import asyncio
import sys

from signal_engine.storage import SignalRepository, StoreError, get_database


async def inspect(show_active: bool) -> int:
    repo = SignalRepository()
    try:
        counts = await repo.count_by_status()
        sample = await repo.get_sample()
        active = await repo.load_active_signals() if show_active else []
    except StoreError as e:
        print(f"Table 'signals' check failed: {e}")
        return 1
    finally:
        await get_database().close()

    print("--- signals by status ---")
    if not counts:
        print("  (no rows)")
    for status, count in sorted(counts.items()):
        print(f"  {status:<15} {count}")

    print("--- latest row ---")
    if sample is None:
        print("  No rows")
    else:
        for key, value in sample.items():
            print(f"  {key:<16} {value}")

    if show_active:
        print(f"--- active family ({len(active)}) ---")
        for signal in active:
            print(
                f"  {signal.id}  {signal.symbol_norm:<12} {signal.direction.value:<5} "
                f"{signal.status.value:<13} entry={signal.entry_price} "
                f"tp={signal.take_profit} sl={signal.stop_loss} x{signal.leverage:g}"
            )
    return 0


def main():
    parser = argparse.ArgumentParser(description="Inspect the signals table")
    parser.add_argument("--active", action="store_true", help="List active-family signals")
    args = parser.parse_args()
    sys.exit(asyncio.run(inspect(args.active)))


if __name__ == "__main__":
    main()
