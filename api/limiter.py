"""
api/limiter.py -- Shared slowapi rate limiter for the sign-in endpoints.

api/main.py mounts it (app.state.limiter + SlowAPIMiddleware) and
api/routes/v1/auth.py applies @limiter.limit() to POST /auth/login.

One instance for the whole app: separate instances would keep separate
counters and the limit would never trip. Counters live in
RATE_LIMIT_STORAGE_URI (memory:// by default, so they are per-process).
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from core.config import get_settings

limiter = Limiter(key_func=get_remote_address, storage_uri=get_settings().rate_limit_storage_uri)
