"""
API v1 router initialization and setup.
"""
from fastapi import APIRouter
from .endpoints import accrual, outbox

api_router = APIRouter()

api_router.include_router(
    accrual.router,
    prefix="/accrual",
    tags=["accrual"]
)

api_router.include_router(
    outbox.router,
    prefix="/outbox",
    tags=["outbox"]
)
