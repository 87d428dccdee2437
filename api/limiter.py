"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in api/main.py (to mount as middleware) and api/routes/auth.py (to
apply per-route limits with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store. If this were instantiated in each module separately, each
module would get its own isolated counter and rate limits would never trigger.

This is the coarse per-IP flood guard. The per-identity login throttle lives
in auth/limiter.py and is enforced by AuthService.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")


def login_http_limit() -> str:
    """Limit string for POST /auth/login, read from settings at request time."""
    return get_settings().login_http_rate_limit
