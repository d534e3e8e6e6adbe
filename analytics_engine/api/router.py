from fastapi import APIRouter
from analytics_engine.api.endpoints import analytics, health

api_router = APIRouter()

# Combine all sub-routers into one
api_router.include_router(analytics.router)
api_router.include_router(health.router)
