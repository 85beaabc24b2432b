"""
API routes - combined router from all domain modules.

Shared infrastructure (the limiter) lives here; every sub-router imports
what it needs from this package.
"""

import os

from fastapi import APIRouter
from slowapi import Limiter
from slowapi.util import get_remote_address

# ---------------------------------------------------------------------------
# Shared rate limiter
# ---------------------------------------------------------------------------
IS_TEST_ENV = os.getenv("ENV", "").lower() == "test"
limiter = Limiter(key_func=get_remote_address, enabled=not IS_TEST_ENV)

# ---------------------------------------------------------------------------
# Import sub-routers and combine
# ---------------------------------------------------------------------------
from clubhouse.api.routes.auth import router as auth_router  # noqa: E402
from clubhouse.api.routes.registrations import router as registrations_router  # noqa: E402
from clubhouse.api.routes.payments import router as payments_router  # noqa: E402
from clubhouse.api.routes.webhooks import router as webhooks_router  # noqa: E402
from clubhouse.api.routes.payment_configuration import router as payment_configuration_router  # noqa: E402
from clubhouse.api.routes.communication_preferences import router as preferences_router  # noqa: E402

router = APIRouter()
router.include_router(auth_router)
router.include_router(registrations_router)
router.include_router(payments_router)
router.include_router(webhooks_router)
router.include_router(payment_configuration_router)
router.include_router(preferences_router)
