"""Binance REST client for batched last-price snapshots."""

import asyncio
import logging

import httpx
import orjson

from signal_core.models import normalize_symbol, to_number

logger = logging.getLogger("rest")


class RestClientError(Exception):
    """REST request failed (transport, HTTP status or unexpected payload)."""


class RateLimiter:
    """Simple rate limiter for API calls."""

    def __init__(self, calls_per_minute: int = 1200):
        self.calls_per_minute = calls_per_minute
        self.interval = 60.0 / calls_per_minute
        self.last_call = 0.0
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        """Wait if necessary to respect rate limit."""
        async with self._lock:
            loop = asyncio.get_running_loop()
            wait_time = self.last_call + self.interval - loop.time()
            if wait_time > 0:
                await asyncio.sleep(wait_time)
            self.last_call = loop.time()


class BinanceRestClient:
    """Binance spot market-data REST client."""

    TICKER_PRICE_PATH = "/api/v3/ticker/price"

    def __init__(
        self,
        base_url: str = "https://data-api.binance.vision",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.rate_limiter = RateLimiter()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def get_ticker_prices(self, symbols: list[str]) -> dict[str, float]:
        """Fetch last prices for many symbols in one request.

        Args:
            symbols: Normalized symbols (e.g. ["BTCUSDT", "ETHUSDT"])

        Returns:
            Mapping of normalized symbol to price; malformed entries are skipped

        Raises:
            RestClientError: On transport failure, non-2xx status or a
                payload that is not a list
        """
        if not symbols:
            return {}

        params = {"symbols": orjson.dumps(symbols).decode()}
        await self.rate_limiter.acquire()
        client = await self._get_client()
        try:
            response = await client.get(self.TICKER_PRICE_PATH, params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise RestClientError(f"HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise RestClientError(f"{type(e).__name__}: {e}") from e
        except ValueError as e:
            raise RestClientError(f"Invalid JSON: {e}") from e

        if not isinstance(data, list):
            raise RestClientError(f"Unexpected payload type: {type(data).__name__}")

        prices: dict[str, float] = {}
        for item in data:
            if not isinstance(item, dict):
                continue
            symbol = normalize_symbol(item.get("symbol"))
            price = to_number(item.get("price"))
            if symbol and price is not None:
                prices[symbol] = price
        return prices
