"""Change feed: folds external row changes on the signals table into the index.

The notification trigger (see ``change_feed_statements``) publishes every
insert, update and delete as JSON on a LISTEN/NOTIFY channel. This listener
holds a dedicated asyncpg connection, applies each payload to the index and
reconnects with exponential backoff when the connection drops.
"""

import asyncio
import logging
from typing import Any

import asyncpg
import orjson

from signal_core.index import SignalIndex
from signal_core.models import Signal, is_active_family
from signal_engine.storage.database import to_plain_url

logger = logging.getLogger("realtime")


class ChangeFeedListener:
    """LISTEN on the signals channel and keep the index in step."""

    def __init__(
        self,
        index: SignalIndex,
        database_url: str,
        channel: str,
        reconnect_base: float = 2.0,
        reconnect_max: float = 30.0,
    ):
        self.index = index
        self.database_url = to_plain_url(database_url)
        self.channel = channel
        self.reconnect_base = reconnect_base
        self.reconnect_max = reconnect_max

        self._running = False
        self._task: asyncio.Task | None = None
        self._conn: asyncpg.Connection | None = None
        self._terminated = asyncio.Event()
        self._subscribed = asyncio.Event()
        self._attempts = 0
        self._held: list[dict[str, Any]] | None = None

    @property
    def is_subscribed(self) -> bool:
        return self._subscribed.is_set()

    async def start(self) -> None:
        """Start listening in the background."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run())

    async def wait_subscribed(self, timeout: float) -> bool:
        """Wait for the first successful LISTEN."""
        try:
            await asyncio.wait_for(self._subscribed.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def stop(self) -> None:
        """Stop listening and close the connection."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self._close_connection()

    async def _run(self) -> None:
        """Connect, listen until the connection dies, then reconnect."""
        while self._running:
            try:
                await self._listen_once()
            except asyncio.CancelledError:
                raise
            except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
                logger.error("Change feed connection failed: %s", e)

            self._subscribed.clear()
            await self._close_connection()

            if self._running:
                delay = min(self.reconnect_base * 2 ** self._attempts, self.reconnect_max)
                self._attempts += 1
                logger.warning("Re-subscribing to change feed in %.1fs", delay)
                await asyncio.sleep(delay)

    async def _listen_once(self) -> None:
        self._terminated.clear()
        self._conn = await asyncpg.connect(self.database_url)
        self._conn.add_termination_listener(self._on_termination)
        await self._conn.add_listener(self.channel, self._on_notification)

        self._attempts = 0
        self._subscribed.set()
        logger.info("SUBSCRIBED to %s", self.channel)

        await self._terminated.wait()
        logger.error("CLOSED: change feed connection terminated")

    async def _close_connection(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None or conn.is_closed():
            return
        try:
            await conn.remove_listener(self.channel, self._on_notification)
            await conn.close(timeout=5)
        except (OSError, asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            logger.warning("Error closing change feed connection: %s", e)
            conn.terminate()

    def _on_termination(self, connection: asyncpg.Connection) -> None:
        self._terminated.set()

    def _on_notification(
        self,
        connection: asyncpg.Connection,
        pid: int,
        channel: str,
        payload: str,
    ) -> None:
        try:
            data = orjson.loads(payload)
        except orjson.JSONDecodeError as e:
            logger.warning("Dropping malformed change payload: %s", e)
            return
        if not isinstance(data, dict):
            return
        self.handle_payload(data)

    def hold(self) -> None:
        """Queue changes instead of applying them (during a bulk load)."""
        if self._held is None:
            self._held = []

    def release(self) -> int:
        """Apply queued changes in arrival order and resume live apply.

        Call after the bulk load has replaced the index, so changes that
        raced the load land on top of its snapshot.
        """
        held, self._held = self._held, None
        for payload in held or ():
            self._apply(payload)
        return len(held or ())

    def handle_payload(self, payload: dict[str, Any]) -> None:
        """Apply one ``{eventType, new, old}`` change to the index."""
        if self._held is not None:
            self._held.append(payload)
            return
        self._apply(payload)

    def _apply(self, payload: dict[str, Any]) -> None:
        event_type = str(payload.get("eventType") or "").upper()
        new = payload.get("new") or {}
        old = payload.get("old") or {}

        if event_type == "DELETE":
            old_id = old.get("id")
            if old_id is not None:
                self.index.remove(str(old_id))
            return

        new_id = new.get("id")
        if new_id is None:
            return

        if not is_active_family(new.get("status")):
            self.index.remove(str(new_id))
            return

        signal = Signal.from_row(new)
        if signal is None:
            # Untrackable row (bad symbol/direction): make sure no stale copy lingers
            self.index.remove(str(new_id))
            return
        self.index.upsert(signal)
