"""Middleware package for FastAPI application."""

from outbox.middleware.auth import SharedSecretMiddleware
from outbox.middleware.request_id import RequestIdMiddleware

__all__ = ["SharedSecretMiddleware", "RequestIdMiddleware"]
