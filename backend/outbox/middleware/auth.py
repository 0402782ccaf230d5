"""Shared-secret authentication for the cron trigger and the admin routes.

Requests are rejected here, before any route runs, so a bad secret never
reaches the job store.
"""

import hmac
import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from outbox.config import get_settings

logger = logging.getLogger(__name__)

# Protected route prefix -> (header carrying the secret, settings attribute holding it)
PROTECTED_ROUTES: dict[str, tuple[str, str]] = {
    "/api/outbox": ("X-Cron-Secret", "cron_secret"),
    "/api/admin": ("X-Admin-Token", "admin_api_token"),
}


def _required_secret(path: str) -> tuple[str, str] | None:
    """Return the (header, setting) pair guarding ``path``, if any (exact or prefix)."""
    for route, requirement in PROTECTED_ROUTES.items():
        if path == route or path.startswith(route + "/"):
            return requirement
    return None


def secret_matches(provided: str | None, expected: str) -> bool:
    """Constant-time comparison; an unset secret matches nothing."""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode(), expected.encode())


class SharedSecretMiddleware(BaseHTTPMiddleware):
    """Middleware that rejects protected requests lacking the configured secret header."""

    def __init__(self, app, **options):
        super().__init__(app)
        self.settings = options.get("settings") or get_settings()

    async def dispatch(self, request: Request, call_next):
        requirement = _required_secret(request.url.path)
        if requirement is None:
            return await call_next(request)

        header, setting = requirement
        if not secret_matches(request.headers.get(header), getattr(self.settings, setting)):
            logger.error("Invalid or missing %s header for %s", header, request.url.path)
            return JSONResponse(
                status_code=401,
                content={"detail": "Unauthorized"},
            )

        return await call_next(request)
