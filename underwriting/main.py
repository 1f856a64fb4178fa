"""
Main FastAPI application entry point.
"""

import logging

from fastapi import FastAPI

from underwriting import __version__
from underwriting.api import router as api_router
from underwriting.config import get_settings
from underwriting.db.database import init_db

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(
    title=settings.app_name,
    description="Real estate underwriting, waterfall and sensitivity engine",
    version=__version__,
    debug=settings.debug,
)

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
def create_tables():
    init_db()


@app.get("/health")
async def health_check():
    """Health check endpoint for monitoring."""
    return {"status": "healthy", "version": __version__}
