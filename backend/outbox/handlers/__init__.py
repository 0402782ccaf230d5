"""Outbox job handlers.

Importing this package registers every handler on ``registry``.
"""
from outbox.handlers.base import HandlerRegistry, HandlerResult, JobContext
from outbox.handlers.registry import registry
from outbox.handlers import offer_email, reorder_reminder, trial_email  # noqa: F401


def validate_registry() -> None:
    registry.validate()


__all__ = ["HandlerRegistry", "HandlerResult", "JobContext", "registry", "validate_registry"]
