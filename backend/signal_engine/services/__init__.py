"""Business services."""

from signal_engine.services.trigger_service import TriggerService
from signal_engine.services.market_data import ConnectorState, MarketDataConnector
from signal_engine.services.fallback_poller import FallbackPoller
from signal_engine.services.health import HealthMonitor

__all__ = [
    "TriggerService",
    "ConnectorState",
    "MarketDataConnector",
    "FallbackPoller",
    "HealthMonitor",
]
