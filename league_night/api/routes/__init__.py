"""
API routes - combined router from all domain modules.

Shared infrastructure (limiter) lives here; every sub-router imports what it
needs from this package.
"""

import os

from fastapi import APIRouter
from slowapi import Limiter
from slowapi.util import get_remote_address

# ---------------------------------------------------------------------------
# Shared rate limiter
# ---------------------------------------------------------------------------
IS_TEST_ENV = os.getenv("ENV", "").lower() == "test"
if IS_TEST_ENV:
    limiter = Limiter(key_func=get_remote_address)

    def no_op_limit(*args, **kwargs):
        """No-op decorator for test mode - doesn't apply any rate limiting."""
        def decorator(func):
            return func
        return decorator

    limiter.limit = lambda *args, **kwargs: no_op_limit()
else:
    limiter = Limiter(key_func=get_remote_address)

# Player-facing write endpoints
WRITE_RATE_LIMIT = os.getenv("WRITE_RATE_LIMIT", "30/minute")

# ---------------------------------------------------------------------------
# Import sub-routers and combine
# ---------------------------------------------------------------------------
from league_night.api.routes.league_nights import router as league_nights_router  # noqa: E402
from league_night.api.routes.matches import router as matches_router  # noqa: E402
from league_night.api.routes.push import router as push_router  # noqa: E402
from league_night.api.routes.realtime import router as realtime_router  # noqa: E402

router = APIRouter()
router.include_router(league_nights_router)
router.include_router(matches_router)
router.include_router(push_router)
router.include_router(realtime_router)
