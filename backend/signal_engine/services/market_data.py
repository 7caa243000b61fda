"""Market data connector: one multiplexed live-price stream for the active symbols.

Connection lifecycle:
1. ``connect(symbols)`` tears down the current socket and starts a new
   connection cycle tagged with a fresh generation token
2. Endpoints are tried in priority order; a failed handshake moves on to the
   next endpoint after a short delay
3. When every endpoint has failed, the connector flags "fallback active"
   (the REST poller takes over) and schedules a reconnect with exponential
   backoff, starting again from the first endpoint
4. A successful open clears the fallback flag and resets the backoff; a drop
   after open schedules a reconnect through the same sequence

Every callback carries the generation token of the cycle that created it and
is ignored once a newer cycle has started, so a superseded socket can never
mutate state.
"""

import asyncio
import logging
import time
from enum import Enum
from functools import partial
from typing import Awaitable, Callable

from signal_core.models import PriceTick
from signal_engine.clients.binance_ws import (
    StreamConnection,
    StreamTransport,
    build_stream_url,
    parse_trade_message,
)

logger = logging.getLogger("ws")

TickCallback = Callable[[PriceTick], Awaitable[None]]
SymbolsProvider = Callable[[], list[str]]


class ConnectorState(str, Enum):
    IDLE = "idle"              # Nothing to subscribe to
    CONNECTING = "connecting"  # Walking the endpoint list
    OPEN = "open"
    FAILING = "failing"        # Waiting for a backoff reconnect


class MarketDataConnector:
    """Live price subscription with endpoint failover and backoff."""

    def __init__(
        self,
        transport: StreamTransport,
        endpoints: list[str],
        on_tick: TickCallback,
        symbols_provider: SymbolsProvider,
        stream_kind: str = "aggTrade",
        reconnect_base: float = 2.0,
        reconnect_max: float = 30.0,
        failover_delay: float = 0.25,
        debounce: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.endpoints = list(dict.fromkeys(e for e in endpoints if e))
        if not self.endpoints:
            raise ValueError("At least one stream endpoint is required")

        self.transport = transport
        self.on_tick = on_tick
        self.symbols_provider = symbols_provider
        self.stream_kind = stream_kind
        self.reconnect_base = reconnect_base
        self.reconnect_max = reconnect_max
        self.failover_delay = failover_delay
        self.debounce = debounce
        self._clock = clock

        self.state = ConnectorState.IDLE
        self.last_message_at = 0.0
        self.active_endpoint: str | None = None

        self._generation = 0
        self._connection: StreamConnection | None = None
        self._attempt_task: asyncio.Task | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._refresh_handle: asyncio.TimerHandle | None = None
        self._reconnect_attempts = 0
        self._fallback_active = False
        self._subscribed: list[str] = []
        self._tick_tasks: set[asyncio.Task] = set()
        # Close reported by the socket of the attempt still in its handshake
        self._handshake_close: str | None = None

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_open(self) -> bool:
        return self.state == ConnectorState.OPEN

    @property
    def fallback_active(self) -> bool:
        return self._fallback_active

    @property
    def subscribed_symbols(self) -> list[str]:
        return list(self._subscribed)

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    def is_stale(self, threshold: float) -> bool:
        """True if the stream has been silent for longer than ``threshold``."""
        return self.last_message_at > 0 and self._clock() - self.last_message_at > threshold

    def next_backoff(self) -> float:
        return min(self.reconnect_base * 2 ** self._reconnect_attempts, self.reconnect_max)

    # ------------------------------------------------------------------
    # Subscription management
    # ------------------------------------------------------------------

    def request_refresh(self) -> None:
        """Coalesce subscription changes, then reconnect if the set differs."""
        if self._refresh_handle is not None:
            self._refresh_handle.cancel()
        loop = asyncio.get_running_loop()
        self._refresh_handle = loop.call_later(self.debounce, self._refresh_now)

    def _refresh_now(self) -> None:
        self._refresh_handle = None
        symbols = sorted(self.symbols_provider())
        if symbols != self._subscribed:
            self.connect(symbols)

    def connect(self, symbols: list[str]) -> None:
        """Start a new connection cycle for ``symbols``."""
        self._teardown()
        self._generation += 1
        token = self._generation
        symbols = sorted(symbols)

        if not symbols:
            self._subscribed = []
            self._fallback_active = False
            self.last_message_at = 0.0
            self.state = ConnectorState.IDLE
            logger.info("No active symbols, waiting for signal inserts/updates...")
            return

        self._subscribed = symbols
        self.state = ConnectorState.CONNECTING

        logger.info(
            "Prepare connect (%d symbols) endpoints=%s",
            len(symbols),
            ", ".join(self.endpoints),
        )
        self._attempt_task = asyncio.create_task(self._run_endpoints(symbols, token))

    def force_reconnect(self) -> None:
        """Restart the connection cycle for the current index symbols."""
        self.connect(self.symbols_provider())

    def close(self) -> None:
        """Shut down: drop the socket and cancel every pending timer."""
        if self._refresh_handle is not None:
            self._refresh_handle.cancel()
            self._refresh_handle = None
        self._teardown()
        self._generation += 1
        self.last_message_at = 0.0
        self.state = ConnectorState.IDLE

    # ------------------------------------------------------------------
    # Connection cycle
    # ------------------------------------------------------------------

    async def _run_endpoints(self, symbols: list[str], token: int) -> None:
        """Walk the endpoint list until one opens or all have failed."""
        total = len(self.endpoints)
        for position, base in enumerate(self.endpoints):
            if token != self._generation:
                return

            url = build_stream_url(base, symbols, self.stream_kind)
            logger.info("Attempt %d/%d via %s", position + 1, total, base)
            logger.debug("url=%s", url)

            self._handshake_close = None
            error: str | None = None
            connection: StreamConnection | None = None
            try:
                connection = await self.transport.connect(
                    url,
                    on_message=partial(self._on_message, token),
                    on_close=partial(self._on_close, token),
                )
            except asyncio.CancelledError:
                raise
            except Exception as e:
                error = str(e) or type(e).__name__

            if token != self._generation:
                # Superseded while the handshake was in progress
                if connection is not None:
                    connection.detach()
                    connection.close()
                return

            early_close, self._handshake_close = self._handshake_close, None
            if connection is not None and early_close is not None:
                # Dropped between the handshake and the open: a failed attempt
                connection.detach()
                connection.close()
                connection = None
                error = f"closed before open ({early_close})"

            if connection is not None:
                self._connection = connection
                self._on_open(base)
                return

            logger.error("Handshake failed: %s (%s)", error, base)
            if position + 1 < total:
                logger.error("Endpoint failed, switch -> %s", self.endpoints[position + 1])
                await asyncio.sleep(self.failover_delay)

        if token != self._generation:
            return
        self._fallback_active = True
        self.state = ConnectorState.FAILING
        logger.error(
            "All endpoints failed, fallback -> REST polling (endpoints=%s)",
            ", ".join(self.endpoints),
        )
        self._schedule_reconnect()

    def _on_open(self, base: str) -> None:
        self.state = ConnectorState.OPEN
        self.active_endpoint = base
        self._reconnect_attempts = 0
        if self._fallback_active:
            logger.info("Connected, disabling REST fallback")
        self._fallback_active = False
        self.last_message_at = self._clock()
        logger.info("Connected via %s", base)

    def _on_message(self, token: int, message: str) -> None:
        if token != self._generation:
            return
        self.last_message_at = self._clock()

        parsed = parse_trade_message(message)
        if parsed is None:
            return
        symbol, price = parsed

        task = asyncio.create_task(self._dispatch(PriceTick(symbol=symbol, price=price, source="ws")))
        self._tick_tasks.add(task)
        task.add_done_callback(self._tick_tasks.discard)

    async def _dispatch(self, tick: PriceTick) -> None:
        """Safely execute the tick callback."""
        try:
            await self.on_tick(tick)
        except Exception as e:
            logger.error("Tick callback error for %s: %s", tick.symbol, e)

    def _on_close(self, token: int, reason: str) -> None:
        if token != self._generation:
            return
        if self.state == ConnectorState.CONNECTING:
            self._handshake_close = reason
            return
        if self.state != ConnectorState.OPEN:
            return
        self._connection = None
        self.active_endpoint = None
        self.state = ConnectorState.FAILING
        logger.error("Disconnected (%s)", reason)
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            return
        delay = self.next_backoff()
        self._reconnect_attempts += 1
        logger.info("Reconnecting in %.1fs (attempt %d)", delay, self._reconnect_attempts)
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(delay, self._reconnect_now)

    def _reconnect_now(self) -> None:
        self._reconnect_handle = None
        self.connect(self.symbols_provider())

    def _teardown(self) -> None:
        """Detach and close the current socket; cancel pending attempts."""
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

        task = self._attempt_task
        self._attempt_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

        connection = self._connection
        self._connection = None
        self.active_endpoint = None
        if connection is not None:
            connection.detach()
            connection.close()
