from fastapi import APIRouter

from launchpad.api.routes import analytics, deployments, health

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(deployments.router, prefix="/deployments", tags=["deployments"])
api_router.include_router(analytics.router, prefix="/projects", tags=["analytics"])
