"""
SQLAlchemy ORM models for persisted underwriting inputs and results.
"""

from datetime import datetime
from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    ForeignKey,
    JSON,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship
import uuid

Base = declarative_base()


def generate_uuid():
    return str(uuid.uuid4())


class AuditMixin:
    """Mixin for audit fields on all models."""

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )
    created_by = Column(String(255), nullable=True)
    updated_by = Column(String(255), nullable=True)
    is_deleted = Column(Boolean, default=False, nullable=False)


class UnderwritingModel(AuditMixin, Base):
    """Base-case underwriting assumptions for a deal."""

    __tablename__ = "underwriting_models"

    id = Column(String, primary_key=True, default=generate_uuid)
    deal_id = Column(String(255), nullable=False, unique=True, index=True)

    # UnderwritingAssumptions.to_dict()
    assumptions = Column(JSON, nullable=False, default=dict)

    # Calculated results (cached from the last recalculation)
    return_metrics = Column(JSON, default=dict)
    calculated_at = Column(DateTime, nullable=True)


class WaterfallStructureRecord(AuditMixin, Base):
    """Promote structure for a deal (one per deal)."""

    __tablename__ = "waterfall_structures"

    id = Column(String, primary_key=True, default=generate_uuid)
    deal_id = Column(String(255), nullable=False, unique=True, index=True)

    # WaterfallStructure.to_dict()
    structure = Column(JSON, nullable=False, default=dict)

    distributions = relationship(
        "WaterfallDistributionRecord",
        back_populates="structure_record",
        cascade="all, delete-orphan",
        lazy="dynamic",
    )


class ScenarioRecord(AuditMixin, Base):
    """Named assumption overrides for a deal, with cached results."""

    __tablename__ = "scenarios"

    id = Column(String, primary_key=True, default=generate_uuid)
    deal_id = Column(String(255), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    is_base_case = Column(Boolean, default=False, nullable=False)

    overrides = Column(JSON, default=dict)

    # Calculated results (cached)
    return_metrics = Column(JSON, default=dict)
    waterfall_results = Column(JSON, nullable=True)


class WaterfallDistributionRecord(AuditMixin, Base):
    """
    One waterfall calculation run.

    Each calculation inserts a new row and marks earlier rows for the same
    structure and scenario as superseded; rows are never updated in place.
    """

    __tablename__ = "waterfall_distributions"

    id = Column(String, primary_key=True, default=generate_uuid)
    deal_id = Column(String(255), nullable=False, index=True)
    structure_id = Column(String, ForeignKey("waterfall_structures.id"), nullable=False)
    scenario_id = Column(String, ForeignKey("scenarios.id"), nullable=True)

    # WaterfallDistribution.to_dict()
    results = Column(JSON, nullable=False)
    superseded = Column(Boolean, default=False, nullable=False)

    structure_record = relationship("WaterfallStructureRecord", back_populates="distributions")
