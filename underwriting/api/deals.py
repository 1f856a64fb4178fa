"""
Deal underwriting API endpoints.

Persisted base-case assumptions, waterfall structure and scenarios for a
deal, plus recalculation. Recalculation for one deal is serialized with a
per-deal lock; different deals recalculate independently.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from underwriting.api.calculations import (
    AssumptionsInput,
    WaterfallStructureInput,
    bad_request,
    get_solver,
)
from underwriting.calculations.assumptions import UnderwritingAssumptions
from underwriting.calculations.scenarios import (
    Scenario,
    ScenarioRunner,
    compare_scenarios,
    generate_default_scenarios,
)
from underwriting.calculations.sensitivity import create_scenario_from_cell
from underwriting.calculations.waterfall import WaterfallStructure
from underwriting.db.database import get_db
from underwriting.db.models import (
    ScenarioRecord,
    UnderwritingModel,
    WaterfallDistributionRecord,
    WaterfallStructureRecord,
)

logger = logging.getLogger(__name__)

router = APIRouter()

DEAL_LOCK_STRIPES = 64
_deal_locks: List[threading.Lock] = [threading.Lock() for _ in range(DEAL_LOCK_STRIPES)]


def lock_for(deal_id: str) -> threading.Lock:
    """Striped lock for a deal; one deal always maps to the same stripe."""
    return _deal_locks[hash(deal_id) % DEAL_LOCK_STRIPES]


@contextmanager
def deal_lock(deal_id: str) -> Iterator[None]:
    """Serialize recalculation for one deal."""
    with lock_for(deal_id):
        yield


# Loaders


def _get_model(db: Session, deal_id: str) -> UnderwritingModel:
    record = (
        db.query(UnderwritingModel)
        .filter(UnderwritingModel.deal_id == deal_id, UnderwritingModel.is_deleted == False)
        .first()
    )
    if not record:
        raise HTTPException(status_code=404, detail="Underwriting model not found")
    return record


def _get_structure_record(db: Session, deal_id: str) -> Optional[WaterfallStructureRecord]:
    return (
        db.query(WaterfallStructureRecord)
        .filter(
            WaterfallStructureRecord.deal_id == deal_id,
            WaterfallStructureRecord.is_deleted == False,
        )
        .first()
    )


def _list_scenario_records(db: Session, deal_id: str) -> List[ScenarioRecord]:
    return (
        db.query(ScenarioRecord)
        .filter(ScenarioRecord.deal_id == deal_id, ScenarioRecord.is_deleted == False)
        .order_by(ScenarioRecord.created_at)
        .all()
    )


def _get_scenario_record(db: Session, deal_id: str, scenario_id: str) -> ScenarioRecord:
    record = (
        db.query(ScenarioRecord)
        .filter(
            ScenarioRecord.id == scenario_id,
            ScenarioRecord.deal_id == deal_id,
            ScenarioRecord.is_deleted == False,
        )
        .first()
    )
    if not record:
        raise HTTPException(status_code=404, detail="Scenario not found")
    return record


def _runner(db: Session, deal_id: str) -> ScenarioRunner:
    model = _get_model(db, deal_id)
    structure_record = _get_structure_record(db, deal_id)
    try:
        assumptions = UnderwritingAssumptions.from_dict(model.assumptions)
        structure = (
            WaterfallStructure.from_dict(structure_record.structure)
            if structure_record
            else None
        )
    except ValueError as e:
        raise bad_request(e)
    return ScenarioRunner(assumptions, structure, get_solver())


def _to_scenario(record: ScenarioRecord) -> Scenario:
    return Scenario(
        name=record.name,
        description=record.description or "",
        overrides=record.overrides or {},
        is_base_case=record.is_base_case,
    )


def _scenario_response(record: ScenarioRecord) -> Dict:
    return {
        "id": record.id,
        "deal_id": record.deal_id,
        "name": record.name,
        "description": record.description,
        "is_base_case": record.is_base_case,
        "overrides": record.overrides,
        "return_metrics": record.return_metrics,
        "waterfall_results": record.waterfall_results,
    }


def _store_result(record: ScenarioRecord, scenario: Scenario) -> None:
    record.return_metrics = scenario.summary.to_dict()
    record.waterfall_results = scenario.waterfall.to_dict() if scenario.waterfall else None


# Underwriting model and structure


@router.put("/{deal_id}/model")
async def save_model(
    deal_id: str,
    inputs: AssumptionsInput,
    db: Session = Depends(get_db),
):
    """Create or replace the base-case assumptions for a deal."""
    try:
        assumptions = inputs.to_assumptions()
    except ValueError as e:
        raise bad_request(e)

    record = (
        db.query(UnderwritingModel)
        .filter(UnderwritingModel.deal_id == deal_id, UnderwritingModel.is_deleted == False)
        .first()
    )
    if record is None:
        record = UnderwritingModel(deal_id=deal_id)
        db.add(record)

    record.assumptions = assumptions.to_dict()
    record.return_metrics = {}
    record.calculated_at = None
    db.commit()
    db.refresh(record)

    return {"deal_id": deal_id, "assumptions": record.assumptions}


@router.get("/{deal_id}/model")
async def get_model(deal_id: str, db: Session = Depends(get_db)):
    """Get the stored assumptions and last calculated metrics."""
    record = _get_model(db, deal_id)
    return {
        "deal_id": deal_id,
        "assumptions": record.assumptions,
        "return_metrics": record.return_metrics,
        "calculated_at": record.calculated_at.isoformat() if record.calculated_at else None,
    }


@router.put("/{deal_id}/waterfall-structure")
async def save_waterfall_structure(
    deal_id: str,
    inputs: WaterfallStructureInput,
    db: Session = Depends(get_db),
):
    """Create or replace the waterfall structure for a deal."""
    try:
        structure = inputs.to_structure()
    except ValueError as e:
        raise bad_request(e)

    record = _get_structure_record(db, deal_id)
    if record is None:
        record = WaterfallStructureRecord(deal_id=deal_id)
        db.add(record)

    record.structure = structure.to_dict()
    db.commit()
    db.refresh(record)

    return {"id": record.id, "deal_id": deal_id, "structure": record.structure}


@router.get("/{deal_id}/waterfall-structure")
async def get_waterfall_structure(deal_id: str, db: Session = Depends(get_db)):
    record = _get_structure_record(db, deal_id)
    if not record:
        raise HTTPException(status_code=404, detail="Waterfall structure not found")
    return {"id": record.id, "deal_id": deal_id, "structure": record.structure}


# Scenarios


class ScenarioCreate(BaseModel):
    """Schema for creating a scenario."""

    name: str
    description: Optional[str] = None
    overrides: Dict[str, Any] = {}
    is_base_case: bool = False


def _create_scenario(
    db: Session, deal_id: str, runner: ScenarioRunner, scenario: Scenario
) -> ScenarioRecord:
    if scenario.is_base_case and any(
        r.is_base_case for r in _list_scenario_records(db, deal_id)
    ):
        raise HTTPException(status_code=400, detail="Deal already has a base case scenario")

    try:
        evaluated = runner.evaluate(scenario)
    except ValueError as e:
        raise bad_request(e)

    record = ScenarioRecord(
        deal_id=deal_id,
        name=scenario.name,
        description=scenario.description,
        is_base_case=scenario.is_base_case,
        overrides=dict(scenario.overrides),
    )
    _store_result(record, evaluated)
    db.add(record)
    return record


@router.post("/{deal_id}/scenarios", status_code=201)
def create_scenario(
    deal_id: str,
    scenario_data: ScenarioCreate,
    db: Session = Depends(get_db),
):
    """Create and evaluate a scenario."""
    runner = _runner(db, deal_id)
    try:
        scenario = Scenario(
            name=scenario_data.name,
            description=scenario_data.description or "",
            overrides=scenario_data.overrides,
            is_base_case=scenario_data.is_base_case,
        )
    except ValueError as e:
        raise bad_request(e)

    with deal_lock(deal_id):
        record = _create_scenario(db, deal_id, runner, scenario)
        db.commit()
        db.refresh(record)

    return _scenario_response(record)


@router.get("/{deal_id}/scenarios")
async def list_scenarios(deal_id: str, db: Session = Depends(get_db)):
    """List all scenarios for a deal."""
    records = _list_scenario_records(db, deal_id)
    return {
        "deal_id": deal_id,
        "scenarios": [_scenario_response(r) for r in records],
        "total": len(records),
    }


@router.delete("/{deal_id}/scenarios/{scenario_id}")
async def delete_scenario(deal_id: str, scenario_id: str, db: Session = Depends(get_db)):
    """Soft delete a scenario."""
    record = _get_scenario_record(db, deal_id, scenario_id)
    record.is_deleted = True
    db.commit()
    return {"deleted": True, "id": scenario_id}


@router.post("/{deal_id}/scenarios/generate-defaults", status_code=201)
def generate_defaults(deal_id: str, sector: Optional[str] = None, db: Session = Depends(get_db)):
    """Create the standard scenario set; names that already exist are skipped."""
    runner = _runner(db, deal_id)
    try:
        defaults = generate_default_scenarios(runner.base, sector=sector)
    except ValueError as e:
        raise bad_request(e)

    with deal_lock(deal_id):
        existing = _list_scenario_records(db, deal_id)
        names = {r.name for r in existing}
        has_base = any(r.is_base_case for r in existing)

        created = []
        for scenario in defaults:
            if scenario.name in names or (scenario.is_base_case and has_base):
                continue
            created.append(_create_scenario(db, deal_id, runner, scenario))
        db.commit()

    logger.info("Generated %d default scenarios for deal %s", len(created), deal_id)
    return {
        "deal_id": deal_id,
        "scenarios": [_scenario_response(r) for r in created],
        "total": len(created),
    }


@router.get("/{deal_id}/scenarios/compare")
def compare_deal_scenarios(deal_id: str, db: Session = Depends(get_db)):
    """Side-by-side metrics for every scenario of a deal."""
    runner = _runner(db, deal_id)
    try:
        evaluated = [runner.evaluate(_to_scenario(r)) for r in _list_scenario_records(db, deal_id)]
    except ValueError as e:
        raise bad_request(e)
    return compare_scenarios(evaluated)


class CellScenarioInput(BaseModel):
    x_field: str
    x_value: float
    y_field: str
    y_value: float


@router.post("/{deal_id}/sensitivity/scenario", status_code=201)
def create_cell_scenario(
    deal_id: str,
    inputs: CellScenarioInput,
    db: Session = Depends(get_db),
):
    """Save a sensitivity matrix cell as a scenario."""
    runner = _runner(db, deal_id)
    base = runner.base
    scenario = create_scenario_from_cell(
        inputs.x_field,
        inputs.x_value,
        inputs.y_field,
        inputs.y_value,
        base_x=getattr(base, inputs.x_field, None),
        base_y=getattr(base, inputs.y_field, None),
    )

    with deal_lock(deal_id):
        record = _create_scenario(db, deal_id, runner, scenario)
        db.commit()
        db.refresh(record)

    return _scenario_response(record)


# Recalculation


@router.post("/{deal_id}/recalculate")
def recalculate(deal_id: str, db: Session = Depends(get_db)):
    """Recalculate the base case and every scenario, refreshing cached results."""
    runner = _runner(db, deal_id)

    with deal_lock(deal_id):
        try:
            base = runner.run()
            records = _list_scenario_records(db, deal_id)
            for record in records:
                _store_result(record, runner.evaluate(_to_scenario(record)))
        except ValueError as e:
            raise bad_request(e)

        model = _get_model(db, deal_id)
        model.return_metrics = base.summary.to_dict()
        model.calculated_at = datetime.utcnow()
        db.commit()

    logger.info("Recalculated deal %s (%d scenarios)", deal_id, len(records))
    return {
        "deal_id": deal_id,
        "summary": base.summary.to_dict(),
        "waterfall": base.waterfall.to_dict() if base.waterfall else None,
        "scenarios_recalculated": len(records),
    }


@router.post("/{deal_id}/waterfall/calculate")
def calculate_deal_waterfall(
    deal_id: str,
    scenario_id: Optional[str] = None,
    db: Session = Depends(get_db),
):
    """
    Run the deal's waterfall for the base case or one scenario.

    Each run is stored as a new distribution record; earlier runs for the
    same structure and scenario are marked superseded.
    """
    runner = _runner(db, deal_id)
    structure_record = _get_structure_record(db, deal_id)
    if structure_record is None:
        raise HTTPException(status_code=404, detail="Waterfall structure not found")

    overrides = None
    if scenario_id is not None:
        overrides = _get_scenario_record(db, deal_id, scenario_id).overrides

    with deal_lock(deal_id):
        try:
            result = runner.run(overrides)
        except ValueError as e:
            raise bad_request(e)

        previous = db.query(WaterfallDistributionRecord).filter(
            WaterfallDistributionRecord.structure_id == structure_record.id,
            WaterfallDistributionRecord.scenario_id == scenario_id,
            WaterfallDistributionRecord.superseded == False,
        )
        for row in previous:
            row.superseded = True

        record = WaterfallDistributionRecord(
            deal_id=deal_id,
            structure_id=structure_record.id,
            scenario_id=scenario_id,
            results=result.waterfall.to_dict(),
        )
        db.add(record)
        db.commit()
        db.refresh(record)

    return {"id": record.id, "deal_id": deal_id, "scenario_id": scenario_id, **record.results}
