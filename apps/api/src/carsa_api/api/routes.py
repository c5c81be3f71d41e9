from fastapi import APIRouter

from .v1 import router as v1_router

# Routes are served at the root; the wire contract has no version prefix.
api_router = APIRouter()
api_router.include_router(v1_router)
