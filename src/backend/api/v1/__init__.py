"""
API v1 router aggregating all endpoints.
"""

from fastapi import APIRouter

from api.v1.ip_check import router as ip_check_router
from api.v1.links import router as links_router
from api.v1.quality import router as quality_router
from api.v1.verification import router as verification_router

router = APIRouter()

router.include_router(links_router, prefix="/links", tags=["Survey Links"])
router.include_router(
    verification_router,
    prefix="/verification",
    tags=["Human Verification"],
)
router.include_router(ip_check_router, tags=["IP Check"])
router.include_router(quality_router, prefix="/quality", tags=["Quality Control"])
