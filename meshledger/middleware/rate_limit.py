"""Rate limiting middleware using SlowAPI.

Every route gets the default per-client limit through ``SlowAPIMiddleware``.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from meshledger.config import settings

limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[f"{settings.RATE_LIMIT_PER_MINUTE}/minute"],
    storage_uri="memory://",
    enabled=settings.RATE_LIMIT_ENABLED,
)
