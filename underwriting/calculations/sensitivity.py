"""
Sensitivity Analysis

2-D sensitivity grids, hold-period sweeps and quick +/- shocks over the
scenario runner. Grid cells are independent pipeline runs evaluated on a
thread pool; results are assembled into the grid once every cell has
finished or the sweep is cancelled.
"""

import enum
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, fields
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from underwriting.calculations.assumptions import UnderwritingAssumptions
from underwriting.calculations.metrics import SUMMARY_METRICS
from underwriting.calculations.scenarios import Scenario, ScenarioRunner
from underwriting.errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_MAX_POINTS = 100
DEFAULT_MAX_WORKERS = 4
# Axis values within this distance of the base value mark the base cell
BASE_MATCH_TOLERANCE = 1e-4

ASSUMPTION_FIELDS = frozenset(f.name for f in fields(UnderwritingAssumptions))


# Configuration tables


@dataclass(frozen=True)
class AxisRange:
    """Default sweep range for one assumption field."""

    label: str
    min: float
    max: float
    step: float
    format: str = "percent"
    decimals: int = 1


SENSITIVITY_FIELDS: Dict[str, AxisRange] = {
    "exit_cap_rate": AxisRange("Exit Cap Rate", 0.04, 0.07, 0.005, "percent", 2),
    "vacancy_rate": AxisRange("Vacancy Rate", 0.03, 0.12, 0.01, "percent", 1),
    "rent_growth_rate": AxisRange("Rent Growth", 0.0, 0.05, 0.005, "percent", 1),
    "expense_growth_rate": AxisRange("Expense Growth", 0.01, 0.04, 0.005, "percent", 1),
    "interest_rate": AxisRange("Interest Rate", 0.05, 0.08, 0.0025, "percent", 2),
    "purchase_price": AxisRange("Purchase Price", -0.10, 0.10, 0.025, "percent_change", 1),
    "hold_period_years": AxisRange("Hold Period", 3, 10, 1, "years", 0),
}


class SeverityBand(str, enum.Enum):
    GREEN = "green"
    AMBER = "amber"
    RED = "red"
    UNDEFINED = "undefined"


@dataclass(frozen=True)
class SeverityThresholds:
    """Higher is better: >= green is green, >= amber is amber, else red."""

    label: str
    green: float
    amber: float
    format: str = "percent"

    def band(self, value: Optional[float]) -> SeverityBand:
        if value is None or np.isnan(value):
            return SeverityBand.UNDEFINED
        if value >= self.green:
            return SeverityBand.GREEN
        if value >= self.amber:
            return SeverityBand.AMBER
        return SeverityBand.RED


METRIC_THRESHOLDS: Dict[str, SeverityThresholds] = {
    "irr": SeverityThresholds("IRR", 0.15, 0.10, "percent"),
    "equity_multiple": SeverityThresholds("Equity Multiple", 1.8, 1.5, "multiple"),
    "cash_on_cash": SeverityThresholds("Cash-on-Cash", 0.08, 0.05, "percent"),
    "dscr": SeverityThresholds("DSCR", 1.35, 1.20, "ratio"),
    "going_in_cap_rate": SeverityThresholds("Going-In Cap", 0.055, 0.045, "percent"),
}

# (field, delta, label)
QUICK_SENSITIVITY_TESTS: Tuple[Tuple[str, float, str], ...] = (
    ("exit_cap_rate", 0.005, "Exit Cap +50bps"),
    ("exit_cap_rate", -0.005, "Exit Cap -50bps"),
    ("vacancy_rate", 0.02, "Vacancy +2%"),
    ("vacancy_rate", -0.02, "Vacancy -2%"),
    ("rent_growth_rate", 0.01, "Rent Growth +1%"),
    ("rent_growth_rate", -0.01, "Rent Growth -1%"),
    ("interest_rate", 0.01, "Interest Rate +100bps"),
    ("interest_rate", -0.01, "Interest Rate -100bps"),
)

# (upper IRR bound, recommendation); the last band has no bound
HOLD_RECOMMENDATIONS: Tuple[Tuple[Optional[float], str], ...] = (
    (0.0, "negative"),
    (0.10, "caution"),
    (0.15, "acceptable"),
    (None, "recommended"),
)


def severity_band(
    value: Optional[float],
    metric: str,
    thresholds: Optional[Mapping[str, SeverityThresholds]] = None,
) -> SeverityBand:
    """Band for `value` under the metric's thresholds (undefined if the metric has none)."""
    table = thresholds if thresholds is not None else METRIC_THRESHOLDS
    if metric not in table:
        return SeverityBand.UNDEFINED
    return table[metric].band(value)


def hold_recommendation(irr: Optional[float]) -> str:
    if irr is None:
        return "error"
    for bound, label in HOLD_RECOMMENDATIONS:
        if bound is None or irr < bound:
            return label
    return HOLD_RECOMMENDATIONS[-1][1]


def format_axis_value(field: str, value: float, base_value: Optional[float] = None) -> str:
    axis = SENSITIVITY_FIELDS.get(field)
    if axis is None:
        return f"{value:g}"
    if axis.format == "years":
        return f"{int(value)} yrs"
    if axis.format == "percent_change":
        if base_value:
            change = value / base_value - 1
            return f"{'+' if change >= 0 else ''}{change * 100:.{axis.decimals}f}%"
        return f"${value:,.0f}"
    return f"{value * 100:.{axis.decimals}f}%"


def generate_axis_values(
    field: str, base_value: Optional[float] = None, axis: Optional[AxisRange] = None
) -> List[float]:
    """
    Sweep values for `field` from its axis range.

    Percent-change axes (purchase price) are applied to `base_value`.

    Raises:
        ValidationError: If the field has no axis range
    """
    axis = axis or SENSITIVITY_FIELDS.get(field)
    if axis is None:
        raise ValidationError(f"Unknown sensitivity field: {field}", "x_field")

    steps = np.arange(axis.min, axis.max + axis.step / 2, axis.step)

    if axis.format == "years":
        return [int(round(v)) for v in steps]
    if axis.format == "percent_change":
        if base_value is None:
            raise ValidationError(f"{field} sweep needs a base value", field)
        return [float(base_value * (1 + round(pct, 6))) for pct in steps]
    return [float(round(v, 6)) for v in steps]


# Grid


@dataclass(frozen=True)
class GridCell:
    x_index: int
    y_index: int
    x_value: float
    y_value: float
    value: Optional[float]
    band: SeverityBand
    undefined_reason: Optional[str] = None
    error: Optional[str] = None
    evaluated: bool = True

    def to_dict(self) -> Dict:
        return {
            "x_value": self.x_value,
            "y_value": self.y_value,
            "value": self.value,
            "band": self.band.value,
            "undefined_reason": self.undefined_reason,
            "error": self.error,
            "evaluated": self.evaluated,
        }


@dataclass(frozen=True)
class SensitivityGrid:
    """Rows are indexed by y, columns by x."""

    x_field: str
    y_field: str
    output_metric: str
    x_values: Tuple[float, ...]
    y_values: Tuple[float, ...]
    cells: Tuple[Tuple[GridCell, ...], ...]
    base_value: Optional[float]
    base_x_index: Optional[int]
    base_y_index: Optional[int]
    cancelled: bool = False

    def cell(self, x_index: int, y_index: int) -> GridCell:
        return self.cells[y_index][x_index]

    @property
    def base_cell(self) -> Optional[GridCell]:
        if self.base_x_index is None or self.base_y_index is None:
            return None
        return self.cell(self.base_x_index, self.base_y_index)

    def defined_values(self) -> List[float]:
        return [c.value for row in self.cells for c in row if c.value is not None]

    def to_dict(self) -> Dict:
        values = self.defined_values()
        base_x = self.x_values[self.base_x_index] if self.base_x_index is not None else None
        base_y = self.y_values[self.base_y_index] if self.base_y_index is not None else None
        return {
            "x_axis": {
                "field": self.x_field,
                "label": SENSITIVITY_FIELDS[self.x_field].label if self.x_field in SENSITIVITY_FIELDS else self.x_field,
                "values": list(self.x_values),
                "labels": [format_axis_value(self.x_field, v, base_x) for v in self.x_values],
            },
            "y_axis": {
                "field": self.y_field,
                "label": SENSITIVITY_FIELDS[self.y_field].label if self.y_field in SENSITIVITY_FIELDS else self.y_field,
                "values": list(self.y_values),
                "labels": [format_axis_value(self.y_field, v, base_y) for v in self.y_values],
            },
            "output_metric": self.output_metric,
            "matrix": [[c.to_dict() for c in row] for row in self.cells],
            "stats": {
                "min": min(values) if values else None,
                "max": max(values) if values else None,
            },
            "base_case": {
                "x_index": self.base_x_index,
                "y_index": self.base_y_index,
                "value": self.base_value,
            },
            "cancelled": self.cancelled,
        }


def _base_index(values: Sequence[float], base: float) -> Optional[int]:
    for i, v in enumerate(values):
        if abs(v - base) < BASE_MATCH_TOLERANCE:
            return i
    return None


def _evaluate_cell(
    runner: ScenarioRunner,
    x_field: str,
    y_field: str,
    x_index: int,
    y_index: int,
    x_value: float,
    y_value: float,
    output_metric: str,
    thresholds: Mapping[str, SeverityThresholds],
    cancel_event: threading.Event,
) -> Optional[GridCell]:
    if cancel_event.is_set():
        return None

    try:
        summary = runner.summarize({x_field: x_value, y_field: y_value})
    except ValueError as e:
        return GridCell(
            x_index, y_index, x_value, y_value,
            value=None, band=SeverityBand.UNDEFINED, error=str(e),
        )

    value = summary.get_metric(output_metric)
    reason = summary.undefined_reason(output_metric)
    return GridCell(
        x_index,
        y_index,
        x_value,
        y_value,
        value=value,
        band=severity_band(value, output_metric, thresholds),
        undefined_reason=reason.value if reason else None,
    )


def _check_metric(output_metric: str) -> None:
    if output_metric not in SUMMARY_METRICS:
        raise ValidationError(f"Invalid output metric: {output_metric}", "output_metric")


def calculate_sensitivity_grid(
    runner: ScenarioRunner,
    x_field: str,
    y_field: str,
    x_values: Optional[Sequence[float]] = None,
    y_values: Optional[Sequence[float]] = None,
    output_metric: str = "irr",
    thresholds: Optional[Mapping[str, SeverityThresholds]] = None,
    max_points: int = DEFAULT_MAX_POINTS,
    max_workers: int = DEFAULT_MAX_WORKERS,
    cancel_event: Optional[threading.Event] = None,
) -> SensitivityGrid:
    """
    Evaluate `output_metric` for every (x, y) pair of assumption values.

    Args:
        runner: Scenario runner holding the base assumptions
        x_field: Assumption field swept along the columns
        y_field: Assumption field swept along the rows
        x_values: Column values (defaults to the field's axis range)
        y_values: Row values (defaults to the field's axis range)
        output_metric: ReturnSummary metric to report
        thresholds: Severity table (defaults to METRIC_THRESHOLDS)
        max_points: Largest allowed number of cells
        max_workers: Thread pool size
        cancel_event: Set to abandon cells that have not started

    Returns:
        SensitivityGrid; cells that never ran are marked evaluated=False

    Raises:
        ValidationError: Unknown field or metric, or too many cells
    """
    if x_field == y_field:
        raise ValidationError("x_field and y_field must differ", "y_field")
    _check_metric(output_metric)

    base = runner.base
    thresholds = thresholds if thresholds is not None else METRIC_THRESHOLDS
    cancel_event = cancel_event or threading.Event()

    for name, values, param in ((x_field, x_values, "x_field"), (y_field, y_values, "y_field")):
        if name not in ASSUMPTION_FIELDS:
            raise ValidationError(f"Invalid sensitivity field: {name}", param)
        if values is None and name not in SENSITIVITY_FIELDS:
            raise ValidationError(f"No default range for sensitivity field: {name}", param)

    base_x = getattr(base, x_field)
    base_y = getattr(base, y_field)
    if x_field == "purchase_price" and base_x is None:
        base_x = base.implied_purchase_price
    if y_field == "purchase_price" and base_y is None:
        base_y = base.implied_purchase_price

    xs = tuple(x_values) if x_values is not None else tuple(generate_axis_values(x_field, base_x))
    ys = tuple(y_values) if y_values is not None else tuple(generate_axis_values(y_field, base_y))

    total = len(xs) * len(ys)
    if total == 0:
        raise ValidationError("Sensitivity axes cannot be empty", "x_values")
    if total > max_points:
        raise ValidationError(
            f"Matrix too large: {len(xs)} x {len(ys)} = {total} points (max {max_points})",
            "x_values",
        )

    logger.info(
        "Sensitivity grid %s x %s -> %s: %d cells, %d workers",
        x_field, y_field, output_metric, total, max_workers,
    )

    results: Dict[Tuple[int, int], GridCell] = {}
    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as ex:
        futures = {}
        for yi, y in enumerate(ys):
            for xi, x in enumerate(xs):
                fut = ex.submit(
                    _evaluate_cell,
                    runner, x_field, y_field, xi, yi, x, y,
                    output_metric, thresholds, cancel_event,
                )
                futures[fut] = (xi, yi)

        for fut in as_completed(futures):
            cell = fut.result()
            if cell is not None:
                results[futures[fut]] = cell
            if cancel_event.is_set():
                for pending in futures:
                    pending.cancel()
                break

    # Cells already running when the sweep was cancelled still finish intact
    for fut, key in futures.items():
        if key not in results and not fut.cancelled():
            cell = fut.result()
            if cell is not None:
                results[key] = cell

    cancelled = cancel_event.is_set()
    if cancelled:
        logger.info("Sensitivity grid cancelled after %d of %d cells", len(results), total)

    cells = tuple(
        tuple(
            results.get(
                (xi, yi),
                GridCell(xi, yi, x, y, value=None, band=SeverityBand.UNDEFINED, evaluated=False),
            )
            for xi, x in enumerate(xs)
        )
        for yi, y in enumerate(ys)
    )

    return SensitivityGrid(
        x_field=x_field,
        y_field=y_field,
        output_metric=output_metric,
        x_values=xs,
        y_values=ys,
        cells=cells,
        base_value=runner.base_summary().get_metric(output_metric),
        base_x_index=_base_index(xs, base_x) if base_x is not None else None,
        base_y_index=_base_index(ys, base_y) if base_y is not None else None,
        cancelled=cancelled,
    )


# Hold period, quick shocks, scenario from cell


@dataclass(frozen=True)
class HoldPeriodRow:
    year: int
    irr: Optional[float]
    equity_multiple: Optional[float]
    avg_cash_on_cash: Optional[float]
    total_cash_distributed: Optional[float]
    exit_value: Optional[float]
    net_proceeds: Optional[float]
    recommendation: str
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            "year": self.year,
            "irr": self.irr,
            "equity_multiple": self.equity_multiple,
            "avg_cash_on_cash": self.avg_cash_on_cash,
            "total_cash_distributed": (
                round(self.total_cash_distributed, 2)
                if self.total_cash_distributed is not None
                else None
            ),
            "exit_value": round(self.exit_value, 2) if self.exit_value is not None else None,
            "net_proceeds": round(self.net_proceeds, 2) if self.net_proceeds is not None else None,
            "recommendation": self.recommendation,
            "error": self.error,
        }


@dataclass(frozen=True)
class HoldPeriodAnalysis:
    rows: Tuple[HoldPeriodRow, ...]
    optimal_year: Optional[int]
    optimal_irr: Optional[float]
    highest_return_year: Optional[int]
    highest_total_return: Optional[float]

    def to_dict(self) -> Dict:
        return {
            "years": [r.to_dict() for r in self.rows],
            "optimal_year": self.optimal_year,
            "optimal_irr": self.optimal_irr,
            "highest_return_year": self.highest_return_year,
            "highest_total_return": (
                round(self.highest_total_return, 2)
                if self.highest_total_return is not None
                else None
            ),
        }


def calculate_hold_period_sensitivity(
    runner: ScenarioRunner, max_years: int = 10, min_years: int = 1
) -> HoldPeriodAnalysis:
    """
    Sweep the exit year and find the IRR-maximizing and total-return-maximizing years.

    Years whose IRR is undefined are excluded from both argmax searches.
    """
    if min_years < 1 or max_years < min_years:
        raise ValidationError("Hold period range must satisfy 1 <= min_years <= max_years", "max_years")

    rows = []
    for year in range(min_years, max_years + 1):
        try:
            result = runner.project({"hold_period_years": year})
        except ValueError as e:
            rows.append(HoldPeriodRow(year, None, None, None, None, None, None, "error", str(e)))
            continue
        summary = result.summary
        rows.append(
            HoldPeriodRow(
                year=year,
                irr=summary.irr,
                equity_multiple=summary.equity_multiple,
                avg_cash_on_cash=summary.avg_cash_on_cash,
                total_cash_distributed=summary.total_cash_distributed,
                exit_value=summary.exit_value,
                net_proceeds=result.projection.exit.net_equity_proceeds,
                recommendation=hold_recommendation(summary.irr),
            )
        )

    valid = [r for r in rows if r.irr is not None]
    best_irr = max(valid, key=lambda r: r.irr) if valid else None
    best_total = max(valid, key=lambda r: r.total_cash_distributed) if valid else None

    return HoldPeriodAnalysis(
        rows=tuple(rows),
        optimal_year=best_irr.year if best_irr else None,
        optimal_irr=best_irr.irr if best_irr else None,
        highest_return_year=best_total.year if best_total else None,
        highest_total_return=best_total.total_cash_distributed if best_total else None,
    )


def _difference(value: Optional[float], base: Optional[float]) -> Optional[float]:
    if value is None or base is None:
        return None
    return value - base


def calculate_quick_sensitivity(
    runner: ScenarioRunner,
    tests: Sequence[Tuple[str, float, str]] = QUICK_SENSITIVITY_TESTS,
) -> Dict:
    """Apply each +/- shock in `tests` to the base case and report IRR/multiple changes."""
    base = runner.base_summary()
    sensitivities = []

    for field, delta, label in tests:
        entry = {"label": label, "field": field, "delta": delta}
        try:
            summary = runner.summarize({field: getattr(runner.base, field) + delta})
        except ValueError as e:
            entry["error"] = str(e)
            sensitivities.append(entry)
            continue
        entry.update(
            irr=summary.irr,
            irr_change=_difference(summary.irr, base.irr),
            equity_multiple=summary.equity_multiple,
            equity_multiple_change=_difference(summary.equity_multiple, base.equity_multiple),
        )
        sensitivities.append(entry)

    return {
        "base_case": {
            "irr": base.irr,
            "equity_multiple": base.equity_multiple,
            "cash_on_cash": base.year_one_cash_on_cash,
            "dscr": base.year_one_dscr,
        },
        "sensitivities": sensitivities,
    }


def create_scenario_from_cell(
    x_field: str,
    x_value: float,
    y_field: str,
    y_value: float,
    base_x: Optional[float] = None,
    base_y: Optional[float] = None,
) -> Scenario:
    """Materialize a grid cell as a named scenario override."""
    x_label = SENSITIVITY_FIELDS[x_field].label if x_field in SENSITIVITY_FIELDS else x_field
    y_label = SENSITIVITY_FIELDS[y_field].label if y_field in SENSITIVITY_FIELDS else y_field
    x_text = format_axis_value(x_field, x_value, base_x)
    y_text = format_axis_value(y_field, y_value, base_y)

    return Scenario(
        name=f"{x_label} {x_text}, {y_label} {y_text}",
        description=f"Sensitivity scenario with {x_label} at {x_text} and {y_label} at {y_text}",
        overrides={x_field: x_value, y_field: y_value},
    )


def sensitivity_options() -> Dict:
    """Fields, metrics and thresholds available to sensitivity callers."""
    return {
        "fields": [
            {"value": name, "label": axis.label, "format": axis.format}
            for name, axis in SENSITIVITY_FIELDS.items()
        ],
        "metrics": [
            {
                "value": name,
                "label": t.label,
                "format": t.format,
                "thresholds": {"green": t.green, "amber": t.amber},
            }
            for name, t in METRIC_THRESHOLDS.items()
        ],
    }
