"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and the route
modules that apply tighter per-route limits with @limiter.limit().

Using a single shared instance ensures all routes share the same in-memory
counter store. Routes without their own limit fall back to
RATE_LIMIT_DEFAULT from settings.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[get_settings().rate_limit_default],
    storage_uri="memory://",
)
