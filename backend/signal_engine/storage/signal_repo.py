"""Signal repository: the guarded boundary to the Store.

Every write is conditional on the status the caller expects the row to
have. The Store, not this process, decides whether a transition has already
happened, so a resync that re-delivers a stale copy or a second writer racing
on the same row can never apply the same transition twice.
"""

import logging
from typing import Any

from sqlalchemy import Update, func, select, update
from sqlalchemy.exc import SQLAlchemyError

from signal_core.models import ACTIVE_FAMILY, Signal, SignalStatus
from signal_engine.storage.database import SignalTable, get_database

logger = logging.getLogger(__name__)

# Columns the engine reads
SIGNAL_COLUMNS = (
    SignalTable.id,
    SignalTable.symbol,
    SignalTable.direction,
    SignalTable.entry_price,
    SignalTable.take_profit,
    SignalTable.stop_loss,
    SignalTable.leverage,
    SignalTable.status,
    SignalTable.entry_time,
    SignalTable.created_at,
)

# Columns the engine is allowed to write
WRITABLE_COLUMNS = frozenset({
    "status",
    "exit_type",
    "exit_price",
    "exit_time",
    "signal_duration",
    "pnl_percentage",
    "pnl_ratio",
})


class StoreError(Exception):
    """Store transport or storage failure. Safe to retry on a later tick."""


def build_conditional_update(
    signal_id: str,
    expected_status: SignalStatus | str,
    patch: dict[str, Any],
) -> Update:
    """UPDATE ... WHERE id = :id AND status = :expected RETURNING id."""
    unknown = set(patch) - WRITABLE_COLUMNS
    if unknown:
        raise ValueError(f"Refusing to write columns: {sorted(unknown)}")

    expected = SignalStatus(expected_status).value
    return (
        update(SignalTable)
        .where(SignalTable.id == signal_id, SignalTable.status == expected)
        .values(**patch)
        .returning(SignalTable.id)
    )


class SignalRepository:
    """Repository for signal reads and conditional state transitions."""

    async def load_active_signals(self) -> list[Signal]:
        """Load every signal in the active family.

        Raises:
            StoreError: If the Store cannot be reached or the query fails
        """
        statuses = sorted(s.value for s in ACTIVE_FAMILY)
        try:
            async with get_database().session() as session:
                stmt = select(*SIGNAL_COLUMNS).where(SignalTable.status.in_(statuses))
                result = await session.execute(stmt)
                rows = result.mappings().all()
        except (SQLAlchemyError, OSError) as e:
            raise StoreError(f"Load signals failed: {e}") from e

        signals = []
        for row in rows:
            signal = Signal.from_row(row)
            if signal is not None:
                signals.append(signal)
        return signals

    async def conditional_update(
        self,
        signal_id: str,
        expected_status: SignalStatus | str,
        patch: dict[str, Any],
    ) -> bool:
        """Apply ``patch`` only if the stored status equals ``expected_status``.

        Returns:
            True if a row matched and was updated, False if the row is gone
            or has already moved on (not an error).

        Raises:
            StoreError: On transport or storage failure
        """
        stmt = build_conditional_update(signal_id, expected_status, patch)
        try:
            async with get_database().session() as session:
                result = await session.execute(stmt)
                matched = result.scalar_one_or_none()
        except (SQLAlchemyError, OSError) as e:
            raise StoreError(f"Update {signal_id} failed: {e}") from e

        return matched is not None

    async def count_by_status(self) -> dict[str, int]:
        """Row counts grouped by status."""
        try:
            async with get_database().session() as session:
                stmt = select(
                    SignalTable.status,
                    func.count().label("count"),
                ).group_by(SignalTable.status)
                result = await session.execute(stmt)
                return {row.status: row.count for row in result.all()}
        except (SQLAlchemyError, OSError) as e:
            raise StoreError(f"Count signals failed: {e}") from e

    async def get_sample(self) -> dict[str, Any] | None:
        """Most recently created row, for inspection."""
        try:
            async with get_database().session() as session:
                stmt = (
                    select(SignalTable)
                    .order_by(SignalTable.created_at.desc())
                    .limit(1)
                )
                result = await session.execute(stmt)
                row = result.scalar_one_or_none()
        except (SQLAlchemyError, OSError) as e:
            raise StoreError(f"Sample signal failed: {e}") from e

        if row is None:
            return None
        return {c.name: getattr(row, c.name) for c in SignalTable.__table__.columns}
