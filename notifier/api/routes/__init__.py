"""
API Routes
"""
from fastapi import APIRouter

from notifier.api.routes.webhooks import router as webhooks_router
from notifier.api.routes.events import router as events_router

router = APIRouter()

router.include_router(webhooks_router, prefix="/webhooks", tags=["Webhooks"])
router.include_router(events_router, prefix="/events", tags=["Events"])
