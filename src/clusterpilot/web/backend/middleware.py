"""
Request middleware for the clusterpilot API.
"""
import time

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address

from ...utils.logging import logger


# Rate limiter configuration
limiter = Limiter(key_func=get_remote_address)

# Applied to every mutating endpoint
MUTATION_RATE_LIMIT = "120/minute"
# Lifecycle operations fan out to every host of a cluster
OPERATION_RATE_LIMIT = "30/minute"


async def request_logging_middleware(request: Request, call_next):
    """Log method, path, status and duration of every API request."""
    start = time.time()
    response = await call_next(request)
    duration_ms = (time.time() - start) * 1000

    logger.getChild("http").debug(
        f"{request.method} {request.url.path} -> {response.status_code} ({duration_ms:.1f}ms)"
    )
    return response
