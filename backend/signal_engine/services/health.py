"""Scheduler and health monitor.

Three independent timers:
- heartbeat: log counts, force a reconnect when the stream has gone stale
- resync: reload the active family from the Store and replace the index
- fallback poll: drive the REST poller

A failing iteration is logged and never stops its loop.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Protocol

from signal_core.index import SignalIndex
from signal_core.models import Signal
from signal_engine.services.fallback_poller import FallbackPoller
from signal_engine.services.market_data import MarketDataConnector
from signal_engine.storage.change_feed import ChangeFeedListener

health_logger = logging.getLogger("health")
resync_logger = logging.getLogger("resync")
rest_logger = logging.getLogger("rest")


class SignalLoader(Protocol):
    async def load_active_signals(self) -> list[Signal]:
        ...


class HealthMonitor:
    """Own the heartbeat, resync and fallback-poll loops."""

    def __init__(
        self,
        index: SignalIndex,
        connector: MarketDataConnector,
        poller: FallbackPoller,
        loader: SignalLoader,
        heartbeat_interval: float = 30.0,
        resync_interval: float = 300.0,
        poll_interval: float = 2.0,
        change_feed: ChangeFeedListener | None = None,
    ):
        self.index = index
        self.change_feed = change_feed
        self.connector = connector
        self.poller = poller
        self.loader = loader
        self.heartbeat_interval = heartbeat_interval
        self.resync_interval = resync_interval
        self.poll_interval = poll_interval

        self._tasks: list[asyncio.Task] = []
        self.resyncs = 0
        self.forced_reconnects = 0

    @property
    def stale_after(self) -> float:
        return self.heartbeat_interval * 2

    def start(self) -> None:
        """Start all three loops (restarting them if already running)."""
        self._cancel_tasks()
        self._tasks = [
            asyncio.create_task(self._every(self.heartbeat_interval, self.heartbeat, health_logger)),
            asyncio.create_task(self._every(self.resync_interval, self.resync, resync_logger)),
            asyncio.create_task(self._every(self.poll_interval, self.poller.poll_once, rest_logger)),
        ]

    async def stop(self) -> None:
        tasks = self._cancel_tasks()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _cancel_tasks(self) -> list[asyncio.Task]:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        return tasks

    async def _every(
        self,
        interval: float,
        job: Callable[[], Awaitable[object]],
        logger: logging.Logger,
    ) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Periodic job %s failed: %s", getattr(job, "__name__", job), e)

    async def heartbeat(self) -> None:
        """Log engine status, or force a reconnect if the stream went silent."""
        if self.connector.is_stale(self.stale_after):
            health_logger.warning("Stream stale, reconnecting...")
            self.forced_reconnects += 1
            self.connector.force_reconnect()
            return

        health_logger.info(
            "signals=%d, symbols=%d, ws=%s, rest=%s",
            len(self.index),
            self.index.symbol_count,
            "up" if self.connector.is_open else "down",
            "on" if self.poller.is_active else "off",
        )

    async def resync(self) -> bool:
        """Replace the index with the Store's current active family.

        Returns:
            True on success; on failure the index is left untouched
        """
        if self.change_feed is not None:
            self.change_feed.hold()
        try:
            signals = await self.loader.load_active_signals()
        except Exception as e:
            resync_logger.error("Failed: %s", e)
            return False
        else:
            self.index.replace_all(signals)
        finally:
            if self.change_feed is not None:
                self.change_feed.release()

        self.resyncs += 1
        resync_logger.info(
            "Done: %d signals across %d symbols",
            len(self.index),
            self.index.symbol_count,
        )
        return True
