"""Caching HTTP and WebSocket gateway in front of cryptocurrency exchange APIs."""

__version__ = "1.0.0"
