"""Rate limiting for public webhook endpoints (slowapi, in-memory per instance)."""

from slowapi import Limiter
from slowapi.util import get_remote_address

from switchyard.settings import settings

limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)
