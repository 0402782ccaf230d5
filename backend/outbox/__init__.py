"""Durable outbox job processor."""

__version__ = "0.1.0"
