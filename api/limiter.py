"""
api/limiter.py -- Shared slowapi rate limiter instance.

Import this in both api/main.py (to mount as middleware) and
api/routes/v1/auth.py (to apply the coarse per-IP login limit with
@limiter.limit()).

This limit is a cheap first line in front of the per-principal brute-force
guard (auth/guard.py). It is in-memory and per-process; the guard's counters
live in the shared store and are what actually enforces lockout.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
