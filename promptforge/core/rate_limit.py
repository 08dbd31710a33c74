"""Rate limiting configuration using slowapi."""

from slowapi import Limiter
from slowapi.util import get_remote_address

from promptforge.core.config import settings

# Rate limiter instance keyed by client address; guards the endpoints that fan out to the model API
limiter = Limiter(key_func=get_remote_address, enabled=settings.rate_limit_enabled)
