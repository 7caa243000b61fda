"""Binance combined-stream WebSocket transport using picows.

The market data connector talks to the socket only through the
``StreamTransport`` / ``StreamConnection`` interface defined here, so its
failover state machine can be driven by a fake transport in tests.
"""

import logging
from typing import Any, Callable, Protocol

import orjson
from picows import ws_connect, WSFrame, WSTransport, WSListener, WSMsgType, WSCloseCode

from signal_core.models import normalize_symbol, to_number

logger = logging.getLogger("ws")

MessageCallback = Callable[[str], None]
CloseCallback = Callable[[str], None]


class StreamConnection(Protocol):
    """An open live-price connection."""

    def detach(self) -> None:
        """Stop delivering callbacks. Must be called before ``close``."""

    def close(self) -> None:
        """Close the socket. Never raises."""


class StreamTransport(Protocol):
    """Opens live-price connections.

    ``connect`` returns once the handshake has completed and raises if the
    handshake fails or the socket closes before it ever opened.
    """

    async def connect(
        self,
        url: str,
        on_message: MessageCallback,
        on_close: CloseCallback,
    ) -> StreamConnection:
        ...


def build_stream_url(base: str, symbols: list[str], stream_kind: str = "aggTrade") -> str:
    """Combined-stream URL: {base}/stream?streams=btcusdt@aggTrade/ethusdt@aggTrade"""
    streams = "/".join(f"{symbol.lower()}@{stream_kind}" for symbol in symbols)
    return f"{base.rstrip('/')}/stream?streams={streams}"


def parse_trade_message(message: str | bytes) -> tuple[str, float] | None:
    """Extract (normalized symbol, last price) from a stream frame.

    Combined streams wrap the trade in a ``data`` envelope; raw streams do
    not. Anything without a symbol and a finite price returns None.
    """
    try:
        payload: Any = orjson.loads(message)
    except orjson.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None

    trade = payload.get("data", payload)
    if not isinstance(trade, dict):
        return None

    symbol = normalize_symbol(trade.get("s"))
    price = to_number(trade.get("p"))
    if not symbol or price is None:
        return None
    return symbol, price


class BinanceStreamListener(WSListener):
    """picows listener forwarding text frames until detached."""

    def __init__(self, on_message: MessageCallback, on_close: CloseCallback):
        self._on_message: MessageCallback | None = on_message
        self._on_close: CloseCallback | None = on_close
        self._transport: WSTransport | None = None

    def on_ws_connected(self, transport: WSTransport):
        """Called when WebSocket connection is established."""
        self._transport = transport

    def on_ws_disconnected(self, transport: WSTransport):
        """Called when WebSocket is disconnected."""
        self._transport = None
        callback = self._on_close
        self._on_close = None
        if callback:
            callback("disconnected")

    def on_ws_frame(self, transport: WSTransport, frame: WSFrame):
        """Called when a new frame is received."""
        if frame.msg_type == WSMsgType.TEXT:
            if self._on_message:
                self._on_message(frame.get_payload_as_utf8_text())
        elif frame.msg_type == WSMsgType.PING:
            transport.send_pong(frame.get_payload_as_bytes())
        elif frame.msg_type == WSMsgType.CLOSE:
            code = frame.get_close_code()
            logger.info("Server sent close frame code=%s", code)

    def detach(self) -> None:
        self._on_message = None
        self._on_close = None

    def close(self) -> None:
        transport = self._transport
        self._transport = None
        if transport is None:
            return
        try:
            transport.send_close(WSCloseCode.OK)
            transport.disconnect()
        except Exception as e:
            logger.debug("Ignoring error while closing socket: %s", e)


class PicowsStreamTransport:
    """Production transport: one picows WebSocket per connection attempt."""

    def __init__(
        self,
        handshake_timeout: float = 10.0,
        auto_ping_idle_timeout: float = 30.0,
        auto_ping_reply_timeout: float = 10.0,
    ):
        self.handshake_timeout = handshake_timeout
        self.auto_ping_idle_timeout = auto_ping_idle_timeout
        self.auto_ping_reply_timeout = auto_ping_reply_timeout

    async def connect(
        self,
        url: str,
        on_message: MessageCallback,
        on_close: CloseCallback,
    ) -> StreamConnection:
        def listener_factory():
            return BinanceStreamListener(on_message, on_close)

        _, listener = await ws_connect(
            listener_factory,
            url,
            enable_auto_ping=True,
            auto_ping_idle_timeout=self.auto_ping_idle_timeout,
            auto_ping_reply_timeout=self.auto_ping_reply_timeout,
            websocket_handshake_timeout=self.handshake_timeout,
        )
        return listener
