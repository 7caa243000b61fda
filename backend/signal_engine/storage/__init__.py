"""Data storage layer."""

from signal_engine.storage.database import Database, get_database, init_database
from signal_engine.storage.signal_repo import SignalRepository, StoreError
from signal_engine.storage.change_feed import ChangeFeedListener

__all__ = [
    "Database",
    "get_database",
    "init_database",
    "SignalRepository",
    "StoreError",
    "ChangeFeedListener",
]
