"""
api/limiter.py -- The one slowapi Limiter every rate-limited route shares.

register, login and the OAuth entry points are the unauthenticated ways to
spend server CPU (bcrypt) or start provider round-trips, so they are throttled
per client IP with AUTH_RATE_LIMIT. api/main.py mounts this instance as
SlowAPIMiddleware and the routers decorate with @limiter.limit(); both must
see the same object or the middleware would not find the route limits.

Counters live in process memory. Behind several workers each worker counts
on its own.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
