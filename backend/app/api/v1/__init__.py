"""API v1 router and endpoint organization."""

from fastapi import APIRouter

from app.api.v1.endpoints import pipeline, usage

router = APIRouter(prefix="/api/v1", tags=["v1"])

# Include domain-specific routers
router.include_router(pipeline.router, prefix="/pipeline", tags=["Pipeline"])
router.include_router(usage.router, prefix="/usage", tags=["Usage"])
