from fastapi import APIRouter

from .endpoints import health, merchants, observability, operations, purchase

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(purchase.router)
router.include_router(merchants.router)
router.include_router(operations.router)
router.include_router(observability.router)
