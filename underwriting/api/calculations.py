"""
Financial calculation API endpoints.

These endpoints accept inputs and return calculated results without
touching persisted deal records.
"""

import logging
from datetime import date
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from underwriting.calculations import irr
from underwriting.calculations.amortization import AmortizationSchedule
from underwriting.calculations.assumptions import UnderwritingAssumptions
from underwriting.calculations.cashflow import project_cash_flows
from underwriting.calculations.metrics import calculate_return_summary
from underwriting.calculations.scenarios import DEFAULT_SCENARIOS, ScenarioRunner
from underwriting.calculations.sensitivity import (
    calculate_hold_period_sensitivity,
    calculate_quick_sensitivity,
    calculate_sensitivity_grid,
    sensitivity_options,
)
from underwriting.calculations.waterfall import (
    WATERFALL_TEMPLATES,
    WaterfallStructure,
    calculate_waterfall,
    structure_from_template,
)
from underwriting.config import get_settings

logger = logging.getLogger(__name__)

router = APIRouter()


def get_solver() -> irr.IRRSolverConfig:
    """IRR solver bounds from settings."""
    settings = get_settings()
    return irr.IRRSolverConfig(
        lower_bound=settings.irr_lower_bound,
        upper_bound=settings.irr_upper_bound,
        tolerance=settings.irr_tolerance,
        max_iterations=settings.irr_max_iterations,
    )


def bad_request(e: ValueError) -> HTTPException:
    logger.info("Rejected calculation request: %s", e)
    return HTTPException(status_code=400, detail=str(e))


class AssumptionsInput(BaseModel):
    """Underwriting assumptions. Rates are decimals (0.05 = 5%)."""

    gross_potential_rent: float
    exit_cap_rate: float
    purchase_price: Optional[float] = None
    loan_to_value: Optional[float] = None
    vacancy_rate: float = 0.05
    other_income: float = 0.0
    # Either a single annual total or a breakdown by expense line
    operating_expenses: Union[float, Dict[str, float]] = 0.0
    loan_amount: float = 0.0
    interest_rate: float = 0.0
    amortization_years: int = 30
    loan_term_years: int = 10
    interest_only_years: int = 0
    hold_period_years: int = 5
    rent_growth_rate: float = 0.03
    expense_growth_rate: float = 0.02
    other_income_growth_rate: Optional[float] = None
    selling_cost_rate: Optional[float] = None
    acquisition_date: Optional[date] = None

    def to_assumptions(self) -> UnderwritingAssumptions:
        data = self.model_dump(exclude_none=True)
        data.setdefault("selling_cost_rate", get_settings().default_selling_cost_rate)
        return UnderwritingAssumptions.from_dict(data)


class PromoteTierInput(BaseModel):
    """Promote tier; a null hurdle is the open-ended final tier."""

    hurdle: Optional[float] = None
    lp_split: float
    gp_split: float


class ShareClassInput(BaseModel):
    code: str
    priority: int
    equity_amount: float
    preferred_return: Optional[float] = None


class WaterfallStructureInput(BaseModel):
    """Waterfall terms, either explicit or from a named template."""

    lp_equity: float
    gp_equity: float = 0.0
    template: Optional[str] = None
    preferred_return: float = 0.08
    promote_tiers: Optional[List[PromoteTierInput]] = None
    gp_catch_up: bool = True
    catch_up_percent: float = 1.0
    lookback: bool = False
    use_per_class_waterfall: bool = False
    share_classes: List[ShareClassInput] = []

    def to_structure(self) -> WaterfallStructure:
        if self.template:
            return structure_from_template(
                self.template,
                self.lp_equity,
                self.gp_equity,
                lookback=self.lookback,
                use_per_class_waterfall=self.use_per_class_waterfall,
                share_classes=tuple(c.model_dump() for c in self.share_classes),
            )
        data = self.model_dump(exclude={"template"})
        if data["promote_tiers"] is None:
            data.pop("promote_tiers")
        return WaterfallStructure.from_dict(data)


# Projection and metrics


@router.post("/cashflows")
async def calculate_cashflows(inputs: AssumptionsInput):
    """Calculate annual cash flow projections and return metrics."""
    try:
        assumptions = inputs.to_assumptions()
        projection = project_cash_flows(assumptions)
        summary = calculate_return_summary(projection, get_solver())
    except ValueError as e:
        raise bad_request(e)

    return {
        "projection": projection.to_dict(),
        "summary": summary.to_dict(),
    }


class IRRInput(BaseModel):
    """Input for IRR calculation."""

    cash_flows: List[float]
    dates: Optional[List[date]] = None


class IRRResponse(BaseModel):
    """Response with IRR calculation."""

    irr: float
    multiple: float
    profit: float
    npv_at_10_percent: float


@router.post("/irr", response_model=IRRResponse)
async def calculate_irr_endpoint(inputs: IRRInput):
    """Calculate IRR for given cash flows."""
    try:
        if inputs.dates:
            irr_val = irr.calculate_xirr(inputs.cash_flows, inputs.dates, solver=get_solver())
        else:
            irr_val = irr.calculate_irr(inputs.cash_flows, solver=get_solver())

        return IRRResponse(
            irr=irr_val,
            multiple=irr.calculate_multiple(inputs.cash_flows),
            profit=irr.calculate_profit(inputs.cash_flows),
            npv_at_10_percent=irr.calculate_npv(inputs.cash_flows, 0.10),
        )
    except ValueError as e:
        raise bad_request(e)


class AmortizationInput(BaseModel):
    """Input for amortization calculation."""

    principal: float
    annual_rate: float
    amortization_years: int = 30
    interest_only_years: int = 0
    total_months: int = 120
    start_date: Optional[date] = None


@router.post("/amortization")
async def calculate_amortization(inputs: AmortizationInput):
    """Generate loan amortization schedule."""
    try:
        loan = AmortizationSchedule(
            principal=inputs.principal,
            annual_rate=inputs.annual_rate,
            amortization_years=inputs.amortization_years,
            interest_only_years=inputs.interest_only_years,
        )
    except ValueError as e:
        raise bad_request(e)

    schedule = loan.monthly_rows(inputs.total_months, inputs.start_date)
    years = -(-inputs.total_months // 12)

    return {
        "monthly_payment": round(loan.monthly_payment, 2),
        "schedule": schedule,
        "annual": [y.to_dict() for y in loan.years(years)],
        "total_interest": sum(row["interest"] for row in schedule),
        "total_principal": sum(row["principal"] for row in schedule),
    }


# Waterfall and scenarios


class WaterfallInput(BaseModel):
    cash_flows: List[float]
    structure: WaterfallStructureInput


@router.post("/waterfall")
async def calculate_waterfall_endpoint(inputs: WaterfallInput):
    """Distribute yearly equity cash flows through a promote structure."""
    try:
        structure = inputs.structure.to_structure()
        result = calculate_waterfall(inputs.cash_flows, structure, get_solver())
    except ValueError as e:
        raise bad_request(e)
    return result.to_dict()


@router.get("/waterfall/templates")
async def list_waterfall_templates():
    """Available waterfall templates and their terms."""
    return {
        "templates": [
            {
                "key": key,
                "name": t["name"],
                "description": t["description"],
                "preferred_return": t["preferred_return"],
                "gp_catch_up": t["gp_catch_up"],
                "catch_up_percent": t["catch_up_percent"],
                "promote_tiers": [tier.to_dict() for tier in t["promote_tiers"]],
            }
            for key, t in WATERFALL_TEMPLATES.items()
        ]
    }


class ScenarioInput(BaseModel):
    assumptions: AssumptionsInput
    overrides: Dict[str, Any] = {}
    structure: Optional[WaterfallStructureInput] = None


@router.post("/scenario")
async def run_scenario(inputs: ScenarioInput):
    """Run the full pipeline for the base assumptions plus overrides."""
    try:
        runner = ScenarioRunner(
            inputs.assumptions.to_assumptions(),
            inputs.structure.to_structure() if inputs.structure else None,
            get_solver(),
        )
        result = runner.run(inputs.overrides)
    except ValueError as e:
        raise bad_request(e)
    return result.to_dict()


@router.get("/scenario/templates")
async def list_scenario_templates():
    """Default scenario set generated for new deals."""
    return {
        "templates": [
            {
                "key": key,
                "name": t["name"],
                "description": t["description"],
                "is_base_case": t["is_base_case"],
                "fields": sorted(t["adjustments"]),
            }
            for key, t in DEFAULT_SCENARIOS.items()
        ]
    }


# Sensitivity


class SensitivityInput(BaseModel):
    assumptions: AssumptionsInput
    x_field: str
    y_field: str
    x_values: Optional[List[float]] = None
    y_values: Optional[List[float]] = None
    output_metric: str = "irr"


@router.post("/sensitivity")
def calculate_sensitivity(inputs: SensitivityInput):
    """2-D sensitivity matrix of one output metric."""
    settings = get_settings()
    try:
        runner = ScenarioRunner(inputs.assumptions.to_assumptions(), solver=get_solver())
        grid = calculate_sensitivity_grid(
            runner,
            inputs.x_field,
            inputs.y_field,
            inputs.x_values,
            inputs.y_values,
            inputs.output_metric,
            max_points=settings.sensitivity_max_points,
            max_workers=settings.sensitivity_max_workers,
        )
    except ValueError as e:
        raise bad_request(e)
    return grid.to_dict()


@router.get("/sensitivity/options")
async def get_sensitivity_options():
    """Fields and metrics available for sensitivity analysis."""
    return sensitivity_options()


class HoldPeriodInput(BaseModel):
    assumptions: AssumptionsInput
    max_years: int = 10


@router.post("/hold-period")
def calculate_hold_period(inputs: HoldPeriodInput):
    """IRR and total return for each potential exit year."""
    try:
        runner = ScenarioRunner(inputs.assumptions.to_assumptions(), solver=get_solver())
        analysis = calculate_hold_period_sensitivity(runner, inputs.max_years)
    except ValueError as e:
        raise bad_request(e)
    return analysis.to_dict()


@router.post("/quick-sensitivity")
def calculate_quick(inputs: AssumptionsInput):
    """IRR and multiple response to standard +/- shocks."""
    try:
        runner = ScenarioRunner(inputs.to_assumptions(), solver=get_solver())
        return calculate_quick_sensitivity(runner)
    except ValueError as e:
        raise bad_request(e)
