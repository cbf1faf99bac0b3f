"""
api/limiter.py -- Shared slowapi rate limiter and the login limit.

Import this in api/main.py (to mount as middleware) and in the route modules
(to apply per-route limits with @limiter.limit()). A single shared instance
means every route counts against the same in-memory store.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_rate_limit() -> str:
    """Return LOGIN_RATE_LIMIT. Resolved per request so tests can raise it."""
    return get_settings().login_rate_limit
