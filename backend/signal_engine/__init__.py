"""Signal engine: live trigger evaluation for stored trading signals."""

__version__ = "0.1.0"
