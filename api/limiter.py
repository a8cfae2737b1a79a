"""
api/limiter.py -- The one slowapi Limiter for the whole application.

api/main.py mounts it through SlowAPIMiddleware; api/routes/v1/auth.py
decorates the credential endpoints with @limiter.limit(login_rate_limit).
Both must reference this object or their counters diverge.

Counters live in RATE_LIMIT_STORAGE_URI: "memory://" for a single process,
a redis:// URL when several API replicas must share one limit per client IP.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri=get_settings().rate_limit_storage_uri)


def login_rate_limit() -> str:
    """Limit string for credential endpoints, read from LOGIN_RATE_LIMIT at call time."""
    return get_settings().login_rate_limit
