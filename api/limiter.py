"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (mounted via SlowAPIMiddleware) and by the auth and
two-factor routers (per-route limits with @limiter.limit()).

One shared instance means every route counts against the same in-memory
store. A limiter per module would keep isolated counters and the login limit
would never trigger.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
