"""REST fallback poller: degraded-mode price source.

Runs only while the live stream is unavailable, either because every
endpoint failed (the connector's fallback flag) or because an "open" stream
has gone silent for too long. Prices go through the same tick path as the
live feed.
"""

import logging
import time
from typing import Awaitable, Callable

from signal_core.models import PriceTick
from signal_engine.clients.binance_rest import BinanceRestClient, RestClientError
from signal_engine.services.market_data import MarketDataConnector

logger = logging.getLogger("rest")

TickCallback = Callable[[PriceTick], Awaitable[None]]

ACTIVE_LOG_INTERVAL = 10.0


class FallbackPoller:
    """Poll batched ticker prices while the live stream is down."""

    def __init__(
        self,
        rest_client: BinanceRestClient,
        connector: MarketDataConnector,
        on_tick: TickCallback,
        symbols_provider: Callable[[], list[str]],
        stale_after: float,
    ):
        self.rest_client = rest_client
        self.connector = connector
        self.on_tick = on_tick
        self.symbols_provider = symbols_provider
        self.stale_after = stale_after

        self._in_flight = False
        self._last_active_log = 0.0
        self.polls = 0
        self.failures = 0

    @property
    def is_active(self) -> bool:
        """Should prices come from REST right now?"""
        if self.connector.is_stale(self.stale_after):
            return True
        return self.connector.fallback_active and not self.connector.is_open

    async def poll_once(self) -> int:
        """Fetch prices once and feed them as ticks.

        Returns:
            Number of ticks delivered (0 when skipped or failed)
        """
        symbols = self.symbols_provider()
        if not symbols or self._in_flight or not self.is_active:
            return 0

        self._in_flight = True
        try:
            try:
                prices = await self.rest_client.get_ticker_prices(symbols)
            except RestClientError as e:
                self.failures += 1
                logger.error("Price poll failed: %s", e)
                return 0

            self.polls += 1
            now = time.monotonic()
            if now - self._last_active_log > ACTIVE_LOG_INTERVAL:
                logger.info(
                    "Fallback active, polled %d prices for %d symbols",
                    len(prices),
                    len(symbols),
                )
                self._last_active_log = now

            delivered = 0
            for symbol, price in prices.items():
                await self.on_tick(PriceTick(symbol=symbol, price=price, source="rest"))
                delivered += 1
            return delivered
        finally:
            self._in_flight = False
