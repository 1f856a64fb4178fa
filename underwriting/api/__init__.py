"""
API routes for the underwriting engine.
"""

from fastapi import APIRouter

from underwriting.api import calculations, deals

router = APIRouter()

router.include_router(calculations.router, prefix="/calculate", tags=["calculations"])
router.include_router(deals.router, prefix="/deals", tags=["deals"])
