"""
Scenario Runner

Evaluates named assumption overrides against a base case. Every run merges
the overrides into a validated copy of the base assumptions, so the base is
never mutated and concurrent runs share no state.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from underwriting.calculations.assumptions import UnderwritingAssumptions
from underwriting.calculations.cashflow import CashFlowProjection, project_cash_flows
from underwriting.calculations.irr import IRRSolverConfig
from underwriting.calculations.metrics import ReturnSummary, calculate_return_summary
from underwriting.calculations.waterfall import (
    WaterfallDistribution,
    WaterfallStructure,
    calculate_waterfall,
)
from underwriting.errors import ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScenarioResult:
    """Fully materialized output of one pipeline run."""

    assumptions: UnderwritingAssumptions
    projection: CashFlowProjection
    summary: ReturnSummary
    waterfall: Optional[WaterfallDistribution] = None

    def to_dict(self) -> Dict:
        return {
            "assumptions": self.assumptions.to_dict(),
            "projection": self.projection.to_dict(),
            "summary": self.summary.to_dict(),
            "waterfall": self.waterfall.to_dict() if self.waterfall else None,
        }


@dataclass(frozen=True)
class Scenario:
    """Named override of the base assumptions, with its last evaluated result."""

    name: str
    overrides: Mapping[str, Any] = field(default_factory=dict)
    description: str = ""
    is_base_case: bool = False
    result: Optional[ScenarioResult] = None

    def __post_init__(self):
        if not self.name:
            raise ValidationError("Scenario name is required", "name")
        object.__setattr__(self, "overrides", dict(self.overrides))

    @property
    def summary(self) -> Optional[ReturnSummary]:
        return self.result.summary if self.result else None

    @property
    def waterfall(self) -> Optional[WaterfallDistribution]:
        return self.result.waterfall if self.result else None

    def to_dict(self) -> Dict:
        return {
            "name": self.name,
            "description": self.description,
            "is_base_case": self.is_base_case,
            "overrides": dict(self.overrides),
            "summary": self.summary.to_dict() if self.summary else None,
            "waterfall": self.waterfall.to_dict() if self.waterfall else None,
        }


class ScenarioRunner:
    """
    Runs projection, return metrics and (optionally) the waterfall for a
    base case plus overrides.
    """

    def __init__(
        self,
        base: UnderwritingAssumptions,
        structure: Optional[WaterfallStructure] = None,
        solver: Optional[IRRSolverConfig] = None,
    ):
        self.base = base
        self.structure = structure
        self.solver = solver

    def _evaluate(self, assumptions: UnderwritingAssumptions, with_waterfall: bool) -> ScenarioResult:
        projection = project_cash_flows(assumptions)
        summary = calculate_return_summary(projection, self.solver)

        waterfall = None
        if with_waterfall and self.structure is not None:
            waterfall = calculate_waterfall(
                projection.distributable_cash_flows(), self.structure, self.solver
            )

        return ScenarioResult(
            assumptions=assumptions,
            projection=projection,
            summary=summary,
            waterfall=waterfall,
        )

    def run(self, overrides: Optional[Mapping[str, Any]] = None) -> ScenarioResult:
        """
        Merge `overrides` into a copy of the base and run the full pipeline.

        Raises:
            ValidationError: If the overrides produce invalid assumptions
        """
        return self._evaluate(self.base.with_overrides(overrides), with_waterfall=True)

    def project(self, overrides: Optional[Mapping[str, Any]] = None) -> ScenarioResult:
        """Projection and return metrics only (no waterfall)."""
        return self._evaluate(self.base.with_overrides(overrides), with_waterfall=False)

    def summarize(self, overrides: Optional[Mapping[str, Any]] = None) -> ReturnSummary:
        """Return metrics only, for sweeps."""
        return self.project(overrides).summary

    def base_summary(self) -> ReturnSummary:
        return self._evaluate(self.base, with_waterfall=False).summary

    def evaluate(self, scenario: Scenario) -> Scenario:
        """Return a copy of `scenario` carrying a fresh result."""
        logger.debug("Evaluating scenario %r", scenario.name)
        return replace(scenario, result=self.run(scenario.overrides))


# Default scenario set

Adjustment = Callable[[Any], Any]

DEFAULT_SCENARIOS: Dict[str, Dict[str, Any]] = {
    "base_case": {
        "name": "Base Case",
        "description": "As-is underwriting based on current operations",
        "is_base_case": True,
        "adjustments": {},
    },
    "downside": {
        "name": "Downside",
        "description": "Conservative scenario with stressed assumptions",
        "is_base_case": False,
        "adjustments": {
            "vacancy_rate": lambda base: min(base * 1.5, 0.15),
            "rent_growth_rate": lambda base: base * 0.5,
            "other_income": lambda base: base * 0.85,
            "operating_expenses": lambda base: base.scaled(1.05),
            "expense_growth_rate": lambda base: max(base * 1.25, 0.03),
            "exit_cap_rate": lambda base: base + 0.005,
        },
    },
    "value_add": {
        "name": "Value-Add Achieved",
        "description": "Upside scenario assuming successful value-add execution",
        "is_base_case": False,
        "adjustments": {
            "gross_potential_rent": lambda base: base * 1.10,
            "vacancy_rate": lambda base: max(base - 0.02, 0.03),
            "other_income": lambda base: base * 1.15,
            "rent_growth_rate": lambda base: min(base * 1.25, 0.05),
            "operating_expenses": lambda base: base.scaled(0.95),
            "exit_cap_rate": lambda base: max(base - 0.0025, 0.04),
        },
    },
    "extended_hold": {
        "name": "Extended Hold (7 Years)",
        "description": "Longer hold period to maximize value creation",
        "is_base_case": False,
        "adjustments": {
            "hold_period_years": lambda base: 7,
            "exit_cap_rate": lambda base: base + 0.0025,
        },
    },
    "rate_stress": {
        "name": "Interest Rate Stress",
        "description": "100bps increase in the loan interest rate",
        "is_base_case": False,
        "adjustments": {
            "interest_rate": lambda base: base + 0.01,
        },
    },
}

# Layered over the matching template's adjustments; sector keys win.
SECTOR_ADJUSTMENTS: Dict[str, Dict[str, Dict[str, Adjustment]]] = {
    "MULTIFAMILY": {
        "downside": {"vacancy_rate": lambda base: min(base * 1.4, 0.12)},
        "value_add": {"gross_potential_rent": lambda base: base * 1.08},
    },
    "OFFICE": {
        "downside": {"vacancy_rate": lambda base: min(base * 2.0, 0.25)},
    },
    "INDUSTRIAL": {
        "downside": {
            "vacancy_rate": lambda base: min(base * 1.3, 0.10),
            "exit_cap_rate": lambda base: base + 0.0075,
        },
        "value_add": {"rent_growth_rate": lambda base: min(base * 1.5, 0.06)},
    },
    "RETAIL": {
        "downside": {
            "vacancy_rate": lambda base: min(base * 1.5, 0.20),
            "gross_potential_rent": lambda base: base * 0.95,
        },
    },
}


def _serializable(value: Any) -> Any:
    if hasattr(value, "to_dict"):
        return value.to_dict()
    if isinstance(value, float):
        return round(value, 6)
    return value


def build_overrides(
    base: UnderwritingAssumptions, adjustments: Mapping[str, Adjustment]
) -> Dict[str, Any]:
    """Apply adjustment functions to base values, producing a JSON-safe override map."""
    return {
        name: _serializable(adjust(getattr(base, name)))
        for name, adjust in adjustments.items()
    }


def generate_default_scenarios(
    base: UnderwritingAssumptions,
    templates: Optional[Mapping[str, Mapping[str, Any]]] = None,
    sector: Optional[str] = None,
) -> List[Scenario]:
    """
    Build the standard scenario set (base, downside, upside, ...) for a deal.

    Args:
        base: Base-case assumptions
        templates: Scenario templates keyed by template name
        sector: Optional property sector whose adjustments override the templates'

    Raises:
        ValidationError: If the sector is unknown
    """
    templates = templates if templates is not None else DEFAULT_SCENARIOS
    sector_adjustments: Mapping[str, Mapping[str, Adjustment]] = {}
    if sector is not None:
        sector_adjustments = SECTOR_ADJUSTMENTS.get(sector.upper())
        if sector_adjustments is None:
            raise ValidationError(
                f"Unknown sector '{sector}'. Valid: {', '.join(SECTOR_ADJUSTMENTS)}",
                "sector",
            )

    scenarios = []
    for key, t in templates.items():
        adjustments = {**t["adjustments"], **sector_adjustments.get(key, {})}
        scenarios.append(
            Scenario(
                name=t["name"],
                description=t["description"],
                is_base_case=t["is_base_case"],
                overrides=build_overrides(base, adjustments),
            )
        )
    ensure_single_base_case(scenarios)
    return scenarios


def ensure_single_base_case(scenarios: Sequence[Scenario]) -> None:
    """
    Raises:
        ValidationError: If more than one scenario is marked as the base case
    """
    base_cases = [s.name for s in scenarios if s.is_base_case]
    if len(base_cases) > 1:
        raise ValidationError(
            f"Only one base case allowed per deal (got {', '.join(base_cases)})",
            "is_base_case",
        )


COMPARISON_METRICS = (
    "irr",
    "equity_multiple",
    "avg_cash_on_cash",
    "avg_dscr",
    "going_in_cap_rate",
    "year_one_noi",
    "exit_value",
    "profit",
)


def compare_scenarios(scenarios: Sequence[Scenario]) -> Dict:
    """
    Side-by-side comparison of evaluated scenarios.

    Differences are measured against the base-case scenario when one is
    present; a difference is None whenever either side is undefined.
    """
    evaluated = [s for s in scenarios if s.summary is not None]
    base = next((s for s in evaluated if s.is_base_case), None)

    rows = []
    for scenario in evaluated:
        metrics = {name: getattr(scenario.summary, name) for name in COMPARISON_METRICS}
        deltas = None
        if base is not None and scenario is not base:
            deltas = {}
            for name in COMPARISON_METRICS:
                base_value = getattr(base.summary, name)
                value = metrics[name]
                deltas[name] = (
                    value - base_value if value is not None and base_value is not None else None
                )

        row = {
            "name": scenario.name,
            "is_base_case": scenario.is_base_case,
            "metrics": metrics,
            "vs_base": deltas,
        }
        if scenario.waterfall is not None:
            row["waterfall"] = {
                "lp_irr": scenario.waterfall.lp_irr,
                "gp_irr": scenario.waterfall.gp_irr,
                "total_promote": round(scenario.waterfall.total_promote, 2),
            }
        rows.append(row)

    return {
        "base_case": base.name if base else None,
        "metrics": list(COMPARISON_METRICS),
        "scenarios": rows,
    }
