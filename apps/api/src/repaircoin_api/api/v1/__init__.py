from fastapi import APIRouter

from .endpoints import (
    customers,
    health,
    observability,
    redemption_sessions,
    shops,
)

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(customers.router)
router.include_router(redemption_sessions.router)
router.include_router(shops.router)
router.include_router(observability.router)
