"""
Database package.
"""

from underwriting.db.database import get_db, init_db, engine, SessionLocal
from underwriting.db.models import (
    Base,
    UnderwritingModel,
    WaterfallStructureRecord,
    ScenarioRecord,
    WaterfallDistributionRecord,
)

__all__ = [
    "get_db",
    "init_db",
    "engine",
    "SessionLocal",
    "Base",
    "UnderwritingModel",
    "WaterfallStructureRecord",
    "ScenarioRecord",
    "WaterfallDistributionRecord",
]
