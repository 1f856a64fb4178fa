"""
Return Metrics

Summarizes a cash flow projection into the headline underwriting returns.
Metrics that cannot be computed are reported as None with a reason code in
`ReturnSummary.undefined`; they are never coerced to zero.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from underwriting.calculations.cashflow import CashFlowProjection
from underwriting.calculations.irr import IRRSolverConfig, calculate_irr
from underwriting.errors import NumericNonConvergenceError, UndefinedReason

logger = logging.getLogger(__name__)

# Metric names accepted by ReturnSummary.get_metric / sensitivity output_metric
SUMMARY_METRICS = (
    "irr",
    "equity_multiple",
    "avg_cash_on_cash",
    "avg_dscr",
    "going_in_cap_rate",
    "cash_on_cash",
    "dscr",
    "total_cash_distributed",
    "profit",
    "exit_value",
    "year_one_noi",
    "debt_yield",
    "ltv",
    "expense_ratio",
)

# Short aliases used by the sensitivity tables
METRIC_ALIASES = {
    "cash_on_cash": "year_one_cash_on_cash",
    "dscr": "year_one_dscr",
    "expense_ratio": "year_one_expense_ratio",
}


@dataclass(frozen=True)
class ReturnSummary:
    """Headline return metrics for one projection."""

    going_in_cap_rate: Optional[float]
    total_cash_distributed: float
    equity_invested: float
    irr: Optional[float]
    equity_multiple: Optional[float]
    avg_cash_on_cash: Optional[float]
    avg_dscr: Optional[float]
    year_one_noi: float
    year_one_debt_service: float
    year_one_cash_on_cash: Optional[float]
    year_one_dscr: Optional[float]
    year_one_expense_ratio: Optional[float]
    ltv: Optional[float]
    debt_yield: Optional[float]
    profit: float
    exit_value: float
    hold_period_years: int
    undefined: Dict[str, UndefinedReason] = field(default_factory=dict)
    warnings: Tuple[str, ...] = ()

    def get_metric(self, name: str) -> Optional[float]:
        if name not in SUMMARY_METRICS:
            raise ValueError(f"Unknown metric: {name}")
        return getattr(self, METRIC_ALIASES.get(name, name))

    def undefined_reason(self, name: str) -> Optional[UndefinedReason]:
        return self.undefined.get(METRIC_ALIASES.get(name, name))

    def to_dict(self) -> Dict:
        return {
            "going_in_cap_rate": self.going_in_cap_rate,
            "total_cash_distributed": round(self.total_cash_distributed, 2),
            "equity_invested": round(self.equity_invested, 2),
            "irr": self.irr,
            "equity_multiple": self.equity_multiple,
            "avg_cash_on_cash": self.avg_cash_on_cash,
            "avg_dscr": self.avg_dscr,
            "year_one": {
                "noi": round(self.year_one_noi, 2),
                "debt_service": round(self.year_one_debt_service, 2),
                "cash_on_cash": self.year_one_cash_on_cash,
                "dscr": self.year_one_dscr,
                "expense_ratio": self.year_one_expense_ratio,
            },
            "ltv": self.ltv,
            "debt_yield": self.debt_yield,
            "profit": round(self.profit, 2),
            "exit_value": round(self.exit_value, 2),
            "hold_period_years": self.hold_period_years,
            "undefined": {name: reason.value for name, reason in self.undefined.items()},
            "warnings": list(self.warnings),
        }


def _mean(values: List[float]) -> float:
    return sum(values) / len(values)


def calculate_return_summary(
    projection: CashFlowProjection,
    solver: Optional[IRRSolverConfig] = None,
) -> ReturnSummary:
    """
    Calculate return metrics for a projection.

    Args:
        projection: Output of project_cash_flows
        solver: IRR bounds and tolerances (defaults to [-0.99, 10.0])

    Returns:
        ReturnSummary; undefined metrics carry a reason in `undefined`
    """
    undefined: Dict[str, UndefinedReason] = {}
    years = projection.years
    first = years[0]
    equity = projection.equity_invested
    price = projection.purchase_price

    operating_cash = sum(y.before_tax_cash_flow for y in years)
    total_distributed = operating_cash + projection.exit.net_equity_proceeds

    going_in_cap_rate = None
    ltv = None
    if price > 0:
        going_in_cap_rate = first.net_operating_income / price
        ltv = projection.loan_amount / price
    else:
        undefined["going_in_cap_rate"] = UndefinedReason.ZERO_PURCHASE_PRICE
        undefined["ltv"] = UndefinedReason.ZERO_PURCHASE_PRICE

    irr = None
    equity_multiple = None
    avg_cash_on_cash = None
    year_one_cash_on_cash = None
    if equity > 0:
        equity_multiple = total_distributed / equity
        avg_cash_on_cash = _mean([y.before_tax_cash_flow for y in years]) / equity
        year_one_cash_on_cash = first.cash_on_cash
        try:
            irr = calculate_irr(projection.equity_cash_flows(), solver=solver)
        except NumericNonConvergenceError as e:
            logger.debug("IRR undefined: %s", e)
            undefined["irr"] = e.reason
    else:
        for name in ("irr", "equity_multiple", "avg_cash_on_cash", "year_one_cash_on_cash"):
            undefined[name] = UndefinedReason.ZERO_EQUITY

    dscrs = [y.dscr for y in years if y.dscr is not None]
    avg_dscr = _mean(dscrs) if dscrs else None
    if avg_dscr is None:
        undefined["avg_dscr"] = UndefinedReason.ZERO_DEBT_SERVICE
    if first.dscr is None:
        undefined["year_one_dscr"] = UndefinedReason.ZERO_DEBT_SERVICE

    if first.debt_yield is None:
        undefined["debt_yield"] = UndefinedReason.ZERO_LOAN

    if first.expense_ratio is None:
        undefined["year_one_expense_ratio"] = UndefinedReason.ZERO_REVENUE

    return ReturnSummary(
        going_in_cap_rate=going_in_cap_rate,
        total_cash_distributed=total_distributed,
        equity_invested=equity,
        irr=irr,
        equity_multiple=equity_multiple,
        avg_cash_on_cash=avg_cash_on_cash,
        avg_dscr=avg_dscr,
        year_one_noi=first.net_operating_income,
        year_one_debt_service=first.debt_service.total_debt_service,
        year_one_cash_on_cash=year_one_cash_on_cash,
        year_one_dscr=first.dscr,
        year_one_expense_ratio=first.expense_ratio,
        ltv=ltv,
        debt_yield=first.debt_yield,
        profit=total_distributed - equity,
        exit_value=projection.exit.gross_sale_price,
        hold_period_years=projection.hold_period_years,
        undefined=undefined,
        warnings=projection.warnings,
    )
