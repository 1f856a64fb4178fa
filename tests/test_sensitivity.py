"""
Tests for sensitivity grids, hold-period sweeps and quick shocks.
"""

import threading

import pytest

from underwriting.calculations.scenarios import ScenarioRunner
from underwriting.calculations.sensitivity import (
    QUICK_SENSITIVITY_TESTS,
    SeverityBand,
    SeverityThresholds,
    calculate_hold_period_sensitivity,
    calculate_quick_sensitivity,
    calculate_sensitivity_grid,
    create_scenario_from_cell,
    format_axis_value,
    generate_axis_values,
    hold_recommendation,
    sensitivity_options,
    severity_band,
)
from underwriting.errors import ValidationError


class CountingRunner(ScenarioRunner):
    """Runner that records every per-cell evaluation."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls = []
        self._lock = threading.Lock()

    def summarize(self, overrides=None):
        with self._lock:
            self.calls.append(dict(overrides or {}))
        return super().summarize(overrides)


class CancellingRunner(CountingRunner):
    """Sets the cancel event during its first evaluation."""

    def __init__(self, *args, cancel_event, **kwargs):
        super().__init__(*args, **kwargs)
        self.cancel_event = cancel_event

    def summarize(self, overrides=None):
        summary = super().summarize(overrides)
        self.cancel_event.set()
        return summary


X_VALUES = [0.06, 0.065, 0.07]
Y_VALUES = [0.04, 0.05, 0.06]


class TestGrid:
    """Test 2-D sensitivity grids."""

    def test_three_by_three_runs_nine_cells(self, stabilized_assumptions):
        runner = CountingRunner(stabilized_assumptions)
        grid = calculate_sensitivity_grid(
            runner, "exit_cap_rate", "vacancy_rate", X_VALUES, Y_VALUES
        )

        assert len(runner.calls) == 9
        assert {(c["exit_cap_rate"], c["vacancy_rate"]) for c in runner.calls} == {
            (x, y) for x in X_VALUES for y in Y_VALUES
        }
        assert len(grid.cells) == 3
        assert all(len(row) == 3 for row in grid.cells)

    def test_base_cell_matches_base_case(self, stabilized_assumptions):
        runner = ScenarioRunner(stabilized_assumptions)
        grid = calculate_sensitivity_grid(
            runner, "exit_cap_rate", "vacancy_rate", X_VALUES, Y_VALUES
        )

        assert (grid.base_x_index, grid.base_y_index) == (1, 1)
        assert grid.base_cell.value == runner.base_summary().irr
        assert grid.base_value == grid.base_cell.value

    def test_cells_indexed_by_row_and_column(self, stabilized_assumptions):
        grid = calculate_sensitivity_grid(
            ScenarioRunner(stabilized_assumptions),
            "exit_cap_rate", "vacancy_rate", X_VALUES, Y_VALUES,
        )
        cell = grid.cell(2, 0)
        assert (cell.x_value, cell.y_value) == (0.07, 0.04)
        # Higher exit cap lowers IRR along a row
        row = [c.value for c in grid.cells[0]]
        assert row == sorted(row, reverse=True)

    def test_cells_carry_bands(self, stabilized_assumptions):
        grid = calculate_sensitivity_grid(
            ScenarioRunner(stabilized_assumptions),
            "exit_cap_rate", "vacancy_rate", X_VALUES, Y_VALUES,
        )
        for row in grid.cells:
            for cell in row:
                assert cell.band == severity_band(cell.value, "irr")

    def test_custom_thresholds(self, stabilized_assumptions):
        everything_green = {"irr": SeverityThresholds("IRR", -1.0, -2.0)}
        grid = calculate_sensitivity_grid(
            ScenarioRunner(stabilized_assumptions),
            "exit_cap_rate", "vacancy_rate", X_VALUES, Y_VALUES,
            thresholds=everything_green,
        )
        assert all(c.band == SeverityBand.GREEN for row in grid.cells for c in row)

    def test_default_axes(self, stabilized_assumptions):
        grid = calculate_sensitivity_grid(
            ScenarioRunner(stabilized_assumptions), "exit_cap_rate", "vacancy_rate"
        )
        assert len(grid.x_values) == 7
        assert len(grid.y_values) == 10
        assert grid.base_cell is not None

    def test_invalid_cell_does_not_stop_grid(self, stabilized_assumptions):
        grid = calculate_sensitivity_grid(
            ScenarioRunner(stabilized_assumptions),
            "exit_cap_rate", "vacancy_rate", X_VALUES, [0.05, 1.5],
        )
        bad_row = grid.cells[1]
        assert all(c.error is not None and c.value is None for c in bad_row)
        assert all(c.band == SeverityBand.UNDEFINED for c in bad_row)
        assert all(c.value is not None for c in grid.cells[0])

    def test_undefined_metric_reason(self, stabilized_assumptions):
        unlevered = stabilized_assumptions.with_overrides({"loan_amount": 0})
        grid = calculate_sensitivity_grid(
            ScenarioRunner(unlevered),
            "exit_cap_rate", "vacancy_rate", X_VALUES, Y_VALUES, output_metric="dscr",
        )
        cell = grid.cell(0, 0)
        assert cell.value is None
        assert cell.undefined_reason == "zero_debt_service"
        assert cell.band == SeverityBand.UNDEFINED

    def test_to_dict(self, stabilized_assumptions):
        data = calculate_sensitivity_grid(
            ScenarioRunner(stabilized_assumptions),
            "exit_cap_rate", "vacancy_rate", X_VALUES, Y_VALUES,
        ).to_dict()
        assert data["x_axis"]["labels"] == ["6.00%", "6.50%", "7.00%"]
        assert data["y_axis"]["labels"] == ["4.0%", "5.0%", "6.0%"]
        assert data["base_case"] == {"x_index": 1, "y_index": 1, "value": data["matrix"][1][1]["value"]}
        assert data["stats"]["min"] <= data["stats"]["max"]


class TestGridValidation:
    """Grid configuration errors are raised before any cell runs."""

    def test_same_field(self, stabilized_assumptions):
        with pytest.raises(ValidationError):
            calculate_sensitivity_grid(
                ScenarioRunner(stabilized_assumptions), "vacancy_rate", "vacancy_rate"
            )

    def test_unknown_metric(self, stabilized_assumptions):
        with pytest.raises(ValidationError):
            calculate_sensitivity_grid(
                ScenarioRunner(stabilized_assumptions),
                "exit_cap_rate", "vacancy_rate", output_metric="npv",
            )

    def test_unknown_field(self, stabilized_assumptions):
        with pytest.raises(ValidationError):
            calculate_sensitivity_grid(
                ScenarioRunner(stabilized_assumptions), "exit_cap_rate", "cap_rate", X_VALUES, Y_VALUES
            )

    def test_field_without_default_range(self, stabilized_assumptions):
        with pytest.raises(ValidationError):
            calculate_sensitivity_grid(
                ScenarioRunner(stabilized_assumptions), "exit_cap_rate", "loan_amount"
            )

    def test_too_many_points(self, stabilized_assumptions):
        runner = CountingRunner(stabilized_assumptions)
        with pytest.raises(ValidationError):
            calculate_sensitivity_grid(
                runner,
                "exit_cap_rate",
                "vacancy_rate",
                [0.05 + i * 0.001 for i in range(11)],
                [0.03 + i * 0.001 for i in range(10)],
            )
        assert runner.calls == []

    def test_empty_axis(self, stabilized_assumptions):
        with pytest.raises(ValidationError):
            calculate_sensitivity_grid(
                ScenarioRunner(stabilized_assumptions), "exit_cap_rate", "vacancy_rate", [], Y_VALUES
            )


class TestCancellation:
    """Cancelled sweeps keep finished cells and flag the rest."""

    def test_cancelled_before_start(self, stabilized_assumptions):
        event = threading.Event()
        event.set()
        runner = CountingRunner(stabilized_assumptions)
        grid = calculate_sensitivity_grid(
            runner, "exit_cap_rate", "vacancy_rate", X_VALUES, Y_VALUES, cancel_event=event
        )
        assert grid.cancelled
        assert runner.calls == []
        assert not any(c.evaluated for row in grid.cells for c in row)

    def test_cancelled_mid_sweep(self, stabilized_assumptions):
        event = threading.Event()
        runner = CancellingRunner(stabilized_assumptions, cancel_event=event)
        grid = calculate_sensitivity_grid(
            runner,
            "exit_cap_rate",
            "vacancy_rate",
            X_VALUES,
            Y_VALUES,
            max_workers=1,
            cancel_event=event,
        )
        evaluated = [c for row in grid.cells for c in row if c.evaluated]
        assert grid.cancelled
        assert len(evaluated) == len(runner.calls) == 1
        assert evaluated[0].value is not None


class TestAxes:
    """Test axis generation and labels."""

    def test_percent_axis(self):
        assert generate_axis_values("exit_cap_rate") == [0.04, 0.045, 0.05, 0.055, 0.06, 0.065, 0.07]

    def test_percent_change_axis(self):
        values = generate_axis_values("purchase_price", 10000000)
        assert len(values) == 9
        assert values[0] == pytest.approx(9000000)
        assert values[4] == pytest.approx(10000000)

    def test_percent_change_requires_base(self):
        with pytest.raises(ValidationError):
            generate_axis_values("purchase_price")

    def test_years_axis(self):
        assert generate_axis_values("hold_period_years") == list(range(3, 11))

    def test_labels(self):
        assert format_axis_value("exit_cap_rate", 0.055) == "5.50%"
        assert format_axis_value("hold_period_years", 7) == "7 yrs"
        assert format_axis_value("purchase_price", 9500000, 10000000) == "-5.0%"

    def test_purchase_price_grid(self, stabilized_assumptions):
        grid = calculate_sensitivity_grid(
            ScenarioRunner(stabilized_assumptions), "purchase_price", "hold_period_years"
        )
        assert len(grid.x_values) * len(grid.y_values) == 72
        assert grid.x_values[grid.base_x_index] == pytest.approx(10000000)
        assert grid.y_values[grid.base_y_index] == 5


class TestHoldPeriod:
    """Test exit-year sweep."""

    def test_rows_per_year(self, stabilized_assumptions):
        analysis = calculate_hold_period_sensitivity(ScenarioRunner(stabilized_assumptions), 10)
        assert [r.year for r in analysis.rows] == list(range(1, 11))

    def test_optimal_year(self, stabilized_assumptions):
        analysis = calculate_hold_period_sensitivity(ScenarioRunner(stabilized_assumptions), 10)
        best = max(analysis.rows, key=lambda r: r.irr)
        assert analysis.optimal_year == best.year
        assert analysis.optimal_irr == best.irr
        most = max(analysis.rows, key=lambda r: r.total_cash_distributed)
        assert analysis.highest_return_year == most.year

    def test_net_proceeds(self, stabilized_assumptions):
        runner = ScenarioRunner(stabilized_assumptions)
        analysis = calculate_hold_period_sensitivity(runner, 7)
        row = analysis.rows[4]
        projection = runner.project({"hold_period_years": 5}).projection
        assert row.net_proceeds == pytest.approx(projection.exit.net_equity_proceeds)
        assert row.net_proceeds < row.total_cash_distributed
        assert row.to_dict()["net_proceeds"] == pytest.approx(row.net_proceeds, abs=0.01)

    def test_invalid_range(self, stabilized_assumptions):
        with pytest.raises(ValidationError):
            calculate_hold_period_sensitivity(ScenarioRunner(stabilized_assumptions), 0)

    def test_recommendations(self):
        assert hold_recommendation(-0.02) == "negative"
        assert hold_recommendation(0.08) == "caution"
        assert hold_recommendation(0.12) == "acceptable"
        assert hold_recommendation(0.18) == "recommended"
        assert hold_recommendation(None) == "error"


class TestQuickSensitivity:
    def test_shocks(self, stabilized_assumptions):
        result = calculate_quick_sensitivity(ScenarioRunner(stabilized_assumptions))
        assert len(result["sensitivities"]) == len(QUICK_SENSITIVITY_TESTS)
        by_label = {s["label"]: s for s in result["sensitivities"]}
        assert by_label["Exit Cap +50bps"]["irr_change"] < 0
        assert by_label["Exit Cap -50bps"]["irr_change"] > 0
        assert by_label["Interest Rate +100bps"]["irr_change"] < 0

    def test_invalid_shock_reported(self, stabilized_assumptions):
        result = calculate_quick_sensitivity(
            ScenarioRunner(stabilized_assumptions), [("vacancy_rate", -0.5, "Vacancy -50%")]
        )
        assert "error" in result["sensitivities"][0]


class TestSeverityAndOptions:
    def test_irr_bands(self):
        assert severity_band(0.16, "irr") == SeverityBand.GREEN
        assert severity_band(0.12, "irr") == SeverityBand.AMBER
        assert severity_band(0.05, "irr") == SeverityBand.RED
        assert severity_band(None, "irr") == SeverityBand.UNDEFINED

    def test_metric_without_thresholds(self):
        assert severity_band(1000000, "exit_value") == SeverityBand.UNDEFINED

    def test_scenario_from_cell(self):
        scenario = create_scenario_from_cell("exit_cap_rate", 0.06, "vacancy_rate", 0.08)
        assert scenario.name == "Exit Cap Rate 6.00%, Vacancy Rate 8.0%"
        assert scenario.overrides == {"exit_cap_rate": 0.06, "vacancy_rate": 0.08}
        assert not scenario.is_base_case

    def test_options(self):
        options = sensitivity_options()
        assert {f["value"] for f in options["fields"]} >= {"exit_cap_rate", "purchase_price"}
        assert options["metrics"][0]["value"] == "irr"
