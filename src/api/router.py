"""
FastAPI Router for the Property Unlock API
"""

from typing import Any, Dict

from fastapi import APIRouter

# Import sub-routers
from src.api.unlock import router as unlock_router
from src.api.webhooks_payments import router as payments_webhook_router
from src.cache import get_redis_manager


# Main router
router = APIRouter()

# Include sub-routers (each carries its own prefix)
router.include_router(unlock_router)  # Address unlocks, deal codes, bookings
router.include_router(payments_webhook_router)  # PawaPay / XentriPay / relay callbacks


@router.get("/health")
async def health_check() -> Dict[str, Any]:
    """
    Health check endpoint (no auth required)
    """
    return {
        "status": "ok",
        "service": "Property Unlock API",
        "cache": get_redis_manager().get_stats(),
    }
