"""Query engine, sessions, exports, and graceful shutdown with state recovery."""

__version__ = "0.1.0"