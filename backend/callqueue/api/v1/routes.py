"""
API Router
Combines all endpoint routers
"""
from fastapi import APIRouter
from callqueue.api.v1.endpoints import (
    analytics,
    campaigns,
    queue,
    webhooks,
)

api_router = APIRouter()

api_router.include_router(campaigns.router)
api_router.include_router(queue.router)
api_router.include_router(webhooks.router)
api_router.include_router(analytics.router)
