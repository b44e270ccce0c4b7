"""Rate limiting configuration using slowapi.

Provides a module-level Limiter instance that the leave router uses for
per-endpoint limits, and that main.py wires into the FastAPI app.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

from leaveflow.config import settings

# Default applies to every endpoint; mutating routes tighten it with
# @limiter.limit("N/period").
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[settings.RATE_LIMIT_DEFAULT],
)
