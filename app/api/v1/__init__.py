from fastapi import APIRouter

from app.api.v1.routers import ess, health, loan_admin, outbound_messages

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(ess.router)
api_router.include_router(loan_admin.router)
api_router.include_router(outbound_messages.router)

__all__ = ["api_router"]
