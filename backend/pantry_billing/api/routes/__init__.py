from fastapi import APIRouter

from pantry_billing.api.routes import billing, entitlements, health

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(billing.router, tags=["billing"])
api_router.include_router(entitlements.router, prefix="/subscriptions", tags=["subscriptions"])
