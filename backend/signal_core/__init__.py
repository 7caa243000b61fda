"""Core signal logic: models, the in-memory index and trigger evaluation.

This package contains pure business logic with no I/O dependencies
(no database, network or timers). The engine package (signal_engine/)
wires it to the Store and to live market data.
"""
