"""Application configuration."""

from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_WS_FALLBACK_BASE = "wss://stream.binance.com:443"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Store
    database_url: str = "postgresql://localhost/signals"
    change_feed_channel: str = "signals_changes"

    # Engine timers (milliseconds, matching the deployment env)
    engine_heartbeat_ms: int = 30_000
    engine_resync_ms: int = 300_000
    engine_reconnect_base_ms: int = 2_000
    engine_reconnect_max_ms: int = 30_000
    engine_rest_poll_ms: int = 2_000
    engine_debounce_ms: int = 500
    engine_failover_delay_ms: int = 250

    # Binance
    binance_ws_bases: str = ""  # Comma-separated, overrides binance_ws_base
    binance_ws_base: str = "wss://stream.binance.com:9443"
    binance_rest_base: str = "https://data-api.binance.vision"
    binance_stream_kind: str = "aggTrade"

    # Logging
    log_level: str = "INFO"
    debug: bool = False

    def ws_endpoints(self) -> list[str]:
        """Prioritized, deduplicated list of live stream bases."""
        if self.binance_ws_bases.strip():
            candidates = [s.strip() for s in self.binance_ws_bases.split(",")]
        else:
            candidates = [self.binance_ws_base, DEFAULT_WS_FALLBACK_BASE]

        endpoints: list[str] = []
        for base in candidates:
            base = base.rstrip("/")
            if base and base not in endpoints:
                endpoints.append(base)
        return endpoints

    @property
    def heartbeat_seconds(self) -> float:
        return self.engine_heartbeat_ms / 1000

    @property
    def resync_seconds(self) -> float:
        return self.engine_resync_ms / 1000

    @property
    def reconnect_base_seconds(self) -> float:
        return self.engine_reconnect_base_ms / 1000

    @property
    def reconnect_max_seconds(self) -> float:
        return self.engine_reconnect_max_ms / 1000

    @property
    def rest_poll_seconds(self) -> float:
        return self.engine_rest_poll_ms / 1000

    @property
    def debounce_seconds(self) -> float:
        return self.engine_debounce_ms / 1000

    @property
    def failover_delay_seconds(self) -> float:
        return self.engine_failover_delay_ms / 1000


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
