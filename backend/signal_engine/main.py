"""Main entry point: wire the engine together and run until signalled."""

import asyncio
import logging
import signal
import sys

from signal_core.index import SignalIndex
from signal_engine.clients import BinanceRestClient, PicowsStreamTransport, StreamTransport
from signal_engine.config import Settings, get_settings
from signal_engine.services import (
    FallbackPoller,
    HealthMonitor,
    MarketDataConnector,
    TriggerService,
)
from signal_engine.storage import ChangeFeedListener, SignalRepository, StoreError, get_database

# Startup timeouts in seconds
STARTUP_LOAD_TIMEOUT = 60
CHANGE_FEED_TIMEOUT = 10

logger = logging.getLogger("engine")
init_logger = logging.getLogger("init")


def configure_logging(level: str = "INFO") -> None:
    """Configure process-wide logging once."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(levelname)s - [%(name)s] %(message)s",
    )

    # Reduce noise from third-party libraries
    for name in ("sqlalchemy", "sqlalchemy.engine", "httpx", "httpcore", "asyncio", "picows", "asyncpg"):
        logging.getLogger(name).setLevel(logging.WARNING)


class SignalEngine:
    """Owns the index and every component that reads or mutates it."""

    def __init__(
        self,
        settings: Settings,
        repo: SignalRepository | None = None,
        transport: StreamTransport | None = None,
        rest_client: BinanceRestClient | None = None,
        change_feed: ChangeFeedListener | None = None,
    ):
        self.settings = settings
        self.index = SignalIndex()
        self.repo = repo or SignalRepository()
        self.trigger = TriggerService(self.index, self.repo)

        self.connector = MarketDataConnector(
            transport=transport or PicowsStreamTransport(),
            endpoints=settings.ws_endpoints(),
            on_tick=self.trigger.handle_tick,
            symbols_provider=self.index.all_symbols,
            stream_kind=settings.binance_stream_kind,
            reconnect_base=settings.reconnect_base_seconds,
            reconnect_max=settings.reconnect_max_seconds,
            failover_delay=settings.failover_delay_seconds,
            debounce=settings.debounce_seconds,
        )
        self.index.on_symbols_changed(self.connector.request_refresh)

        self.rest_client = rest_client or BinanceRestClient(settings.binance_rest_base)
        self.poller = FallbackPoller(
            rest_client=self.rest_client,
            connector=self.connector,
            on_tick=self.trigger.handle_tick,
            symbols_provider=self.index.all_symbols,
            stale_after=settings.heartbeat_seconds * 2,
        )

        self.change_feed = change_feed or ChangeFeedListener(
            index=self.index,
            database_url=settings.database_url,
            channel=settings.change_feed_channel,
            reconnect_base=settings.reconnect_base_seconds,
            reconnect_max=settings.reconnect_max_seconds,
        )

        self.health = HealthMonitor(
            index=self.index,
            connector=self.connector,
            poller=self.poller,
            loader=self.repo,
            heartbeat_interval=settings.heartbeat_seconds,
            resync_interval=settings.resync_seconds,
            poll_interval=settings.rest_poll_seconds,
            change_feed=self.change_feed,
        )

    async def start(self) -> None:
        """Subscribe to changes, load the active family and go live.

        Raises:
            StoreError: If the initial load fails
            asyncio.TimeoutError: If the initial load does not complete in time
        """
        logger.info("Starting signal engine...")

        # Listen before loading so no change between the two is missed
        await self.change_feed.start()
        if not await self.change_feed.wait_subscribed(CHANGE_FEED_TIMEOUT):
            logger.warning("Change feed not subscribed yet, continuing (resync covers drift)")

        # Changes arriving during the load are applied on top of its snapshot
        self.change_feed.hold()
        try:
            signals = await asyncio.wait_for(
                self.repo.load_active_signals(), timeout=STARTUP_LOAD_TIMEOUT
            )
            self.index.replace_all(signals)
        finally:
            replayed = self.change_feed.release()
        if replayed:
            init_logger.info("Replayed %d changes received during load", replayed)
        init_logger.info(
            "Loaded %d active-family signals across %d symbols",
            len(self.index),
            self.index.symbol_count,
        )

        self.connector.connect(self.index.all_symbols())
        self.health.start()

    async def stop(self) -> None:
        """Close the stream and stop background work without draining evaluations."""
        self.connector.close()
        await self.health.stop()
        await self.change_feed.stop()
        await self.rest_client.close()

        try:
            await get_database().close()
            logger.info("Database connections closed")
        except Exception as e:
            logger.warning(f"Error closing database: {e}")


async def run(settings: Settings) -> int:
    """Run the engine until SIGINT/SIGTERM. Returns the process exit code."""
    engine = SignalEngine(settings)
    stop_event = asyncio.Event()
    received: list[str] = []

    def request_stop(sig: signal.Signals) -> None:
        received.append(sig.name)
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, request_stop, sig)

    try:
        await engine.start()
    except (StoreError, asyncio.TimeoutError) as e:
        logger.error(f"Fatal: initial load failed: {e}")
        await engine.stop()
        return 1

    await stop_event.wait()
    logger.info("Shutting down (%s)", received[0] if received else "stop")
    await engine.stop()
    logger.info("Shutdown complete")
    return 0


def main() -> None:
    """Console entry point."""
    settings = get_settings()
    configure_logging(settings.log_level)

    # Try to use uvloop for better performance (Unix only)
    try:
        import uvloop
        runner = uvloop.run
        logger.info("Event loop: uvloop")
    except ImportError:
        runner = asyncio.run
        logger.info("Event loop: asyncio")

    sys.exit(runner(run(settings)))


if __name__ == "__main__":
    main()
