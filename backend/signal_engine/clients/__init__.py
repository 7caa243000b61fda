"""Exchange clients."""

from signal_engine.clients.binance_rest import BinanceRestClient, RateLimiter, RestClientError
from signal_engine.clients.binance_ws import (
    BinanceStreamListener,
    PicowsStreamTransport,
    StreamConnection,
    StreamTransport,
    build_stream_url,
    parse_trade_message,
)

__all__ = [
    "BinanceRestClient",
    "RateLimiter",
    "RestClientError",
    "BinanceStreamListener",
    "PicowsStreamTransport",
    "StreamConnection",
    "StreamTransport",
    "build_stream_url",
    "parse_trade_message",
]
