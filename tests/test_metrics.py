"""
Tests for return metrics.
"""

import pytest

from underwriting.calculations.assumptions import UnderwritingAssumptions
from underwriting.calculations.cashflow import project_cash_flows
from underwriting.calculations.irr import calculate_irr
from underwriting.calculations.metrics import calculate_return_summary
from underwriting.errors import UndefinedReason


def summarize(assumptions):
    return calculate_return_summary(project_cash_flows(assumptions))


class TestReturnSummary:
    """Test headline return metrics."""

    def test_example_deal_irr_defined(self, deal_assumptions):
        summary = summarize(deal_assumptions)
        assert summary.irr is not None
        assert "irr" not in summary.undefined

    def test_irr_matches_equity_cash_flows(self, stabilized_assumptions):
        projection = project_cash_flows(stabilized_assumptions)
        summary = calculate_return_summary(projection)
        assert summary.irr == pytest.approx(calculate_irr(projection.equity_cash_flows()), abs=1e-9)

    def test_going_in_cap_rate(self, stabilized_assumptions):
        summary = summarize(stabilized_assumptions)
        assert summary.going_in_cap_rate == pytest.approx(summary.year_one_noi / 10000000)

    def test_equity_multiple(self, stabilized_assumptions):
        projection = project_cash_flows(stabilized_assumptions)
        summary = calculate_return_summary(projection)
        total = sum(y.before_tax_cash_flow for y in projection.years) + projection.exit.net_equity_proceeds
        assert summary.total_cash_distributed == pytest.approx(total)
        assert summary.equity_multiple == pytest.approx(total / 4000000)
        assert summary.profit == pytest.approx(total - 4000000)

    def test_cash_on_cash_and_dscr(self, stabilized_assumptions):
        projection = project_cash_flows(stabilized_assumptions)
        summary = calculate_return_summary(projection)
        year1 = projection.years[0]
        assert summary.year_one_cash_on_cash == pytest.approx(year1.before_tax_cash_flow / 4000000)
        assert summary.year_one_dscr == pytest.approx(
            year1.net_operating_income / year1.debt_service.total_debt_service
        )
        assert summary.avg_dscr == pytest.approx(
            sum(y.dscr for y in projection.years) / len(projection.years)
        )

    def test_metric_aliases(self, stabilized_assumptions):
        summary = summarize(stabilized_assumptions)
        assert summary.get_metric("cash_on_cash") == summary.year_one_cash_on_cash
        assert summary.get_metric("dscr") == summary.year_one_dscr

    def test_unknown_metric(self, stabilized_assumptions):
        with pytest.raises(ValueError):
            summarize(stabilized_assumptions).get_metric("npv")


class TestUndefinedMetrics:
    """Division-by-zero conditions are reported, not raised."""

    def test_unlevered_debt_metrics(self):
        summary = summarize(
            UnderwritingAssumptions(
                gross_potential_rent=500000,
                exit_cap_rate=0.06,
                purchase_price=5000000,
                operating_expenses=150000,
            )
        )
        assert summary.avg_dscr is None
        assert summary.year_one_dscr is None
        assert summary.debt_yield is None
        assert summary.undefined["avg_dscr"] == UndefinedReason.ZERO_DEBT_SERVICE
        assert summary.undefined["debt_yield"] == UndefinedReason.ZERO_LOAN
        assert summary.irr is not None

    def test_zero_equity(self):
        summary = summarize(
            UnderwritingAssumptions(
                gross_potential_rent=500000,
                exit_cap_rate=0.06,
                purchase_price=5000000,
                loan_amount=5000000,
                interest_rate=0.05,
                operating_expenses=150000,
            )
        )
        assert summary.irr is None
        assert summary.equity_multiple is None
        assert summary.undefined["irr"] == UndefinedReason.ZERO_EQUITY
        assert summary.undefined["equity_multiple"] == UndefinedReason.ZERO_EQUITY
        # Other metrics still reach the caller
        assert summary.going_in_cap_rate is not None
        assert summary.year_one_dscr is not None

    def test_zero_purchase_price(self):
        summary = summarize(
            UnderwritingAssumptions(
                gross_potential_rent=500000, exit_cap_rate=0.06, purchase_price=0
            )
        )
        assert summary.going_in_cap_rate is None
        assert summary.undefined["going_in_cap_rate"] == UndefinedReason.ZERO_PURCHASE_PRICE

    def test_undefined_irr_has_reason(self):
        """A deal that never returns cash has no IRR."""
        summary = summarize(
            UnderwritingAssumptions(
                gross_potential_rent=0,
                exit_cap_rate=0.06,
                purchase_price=5000000,
                operating_expenses=100000,
                expense_growth_rate=0,
            )
        )
        assert summary.irr is None
        assert summary.undefined["irr"] == UndefinedReason.NO_SIGN_CHANGE

    def test_zero_revenue_expense_ratio(self):
        summary = summarize(
            UnderwritingAssumptions(
                gross_potential_rent=0,
                exit_cap_rate=0.06,
                purchase_price=5000000,
                operating_expenses=100000,
            )
        )
        assert summary.year_one_expense_ratio is None
        assert summary.get_metric("expense_ratio") is None
        assert summary.undefined_reason("expense_ratio") == UndefinedReason.ZERO_REVENUE
        assert summary.to_dict()["year_one"]["expense_ratio"] is None

    def test_expense_ratio(self, stabilized_assumptions):
        summary = summarize(stabilized_assumptions)
        # EGI = 1.2M * 0.95 + 30K
        assert summary.year_one_expense_ratio == pytest.approx(420000 / 1170000)
        assert "year_one_expense_ratio" not in summary.undefined

    def test_to_dict_reports_reasons(self):
        data = summarize(
            UnderwritingAssumptions(
                gross_potential_rent=500000, exit_cap_rate=0.06, purchase_price=5000000
            )
        ).to_dict()
        assert data["undefined"]["debt_yield"] == "zero_loan"
        assert data["year_one"]["dscr"] is None
