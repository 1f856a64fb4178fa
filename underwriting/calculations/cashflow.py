"""
Cash Flow Calculations

Generates annual operating and financing cash flow projections for a
stabilized real estate investment, plus the terminal sale event.

Exit pricing capitalizes the forward NOI (the year after the hold period),
computed with the same growth formula as the operating years.
"""

from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional, Tuple

from dateutil.relativedelta import relativedelta

from underwriting.calculations.amortization import (
    AmortizationSchedule,
    AnnualDebtService,
    calculate_dscr,
)
from underwriting.calculations.assumptions import UnderwritingAssumptions

# Underwriting warning thresholds
DSCR_BREAKEVEN = 1.0
DSCR_LENDER_MINIMUM = 1.25
LTV_WARNING = 0.80


def calculate_escalation_factor(annual_rate: float, year: int) -> float:
    """
    Growth factor applied in projection year `year` (1-indexed).

    Year 1 carries the base-year figures; each later year steps up once.
    """
    return (1 + annual_rate) ** (year - 1)


@dataclass(frozen=True)
class ExpenseBreakdown:
    """Operating expense lines for one projection year."""

    taxes: float
    insurance: float
    management: float
    repairs: float
    reserves: float
    other: float

    @property
    def total(self) -> float:
        return (
            self.taxes
            + self.insurance
            + self.management
            + self.repairs
            + self.reserves
            + self.other
        )

    def to_dict(self) -> Dict:
        return {
            "taxes": round(self.taxes, 2),
            "insurance": round(self.insurance, 2),
            "management": round(self.management, 2),
            "repairs": round(self.repairs, 2),
            "reserves": round(self.reserves, 2),
            "other": round(self.other, 2),
            "total_expenses": round(self.total, 2),
        }


@dataclass(frozen=True)
class OperatingStatement:
    """Revenue, expenses and NOI for one year (no financing)."""

    year: int
    gross_potential_rent: float
    vacancy_loss: float
    other_income: float
    expenses: ExpenseBreakdown

    @property
    def effective_gross_income(self) -> float:
        return self.gross_potential_rent - self.vacancy_loss + self.other_income

    @property
    def net_operating_income(self) -> float:
        return self.effective_gross_income - self.expenses.total


@dataclass(frozen=True)
class CashFlowYear:
    """One projection year: operations, debt service and cash to equity."""

    year: int
    period_end: Optional[date]
    gross_potential_rent: float
    vacancy_loss: float
    other_income: float
    effective_gross_income: float
    expenses: ExpenseBreakdown
    net_operating_income: float
    debt_service: AnnualDebtService
    before_tax_cash_flow: float
    cumulative_cash_flow: float
    cash_on_cash: Optional[float]
    dscr: Optional[float]
    debt_yield: Optional[float]

    @property
    def expense_ratio(self) -> Optional[float]:
        if self.effective_gross_income == 0:
            return None
        return self.expenses.total / self.effective_gross_income

    def to_dict(self) -> Dict:
        return {
            "year": self.year,
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "revenue": {
                "gross_potential_rent": round(self.gross_potential_rent, 2),
                "vacancy_loss": round(-self.vacancy_loss, 2),
                "other_income": round(self.other_income, 2),
                "effective_gross_income": round(self.effective_gross_income, 2),
            },
            "expenses": self.expenses.to_dict(),
            "expense_ratio": self.expense_ratio,
            "noi": round(self.net_operating_income, 2),
            "debt_service": self.debt_service.to_dict(),
            "before_tax_cash_flow": round(self.before_tax_cash_flow, 2),
            "cumulative_cash_flow": round(self.cumulative_cash_flow, 2),
            "cash_on_cash": self.cash_on_cash,
            "dscr": self.dscr,
            "debt_yield": self.debt_yield,
        }


@dataclass(frozen=True)
class ExitEvent:
    """Terminal sale at the end of the hold period."""

    year: int
    final_year_noi: float
    exit_noi: float
    exit_cap_rate: float
    gross_sale_price: float
    selling_cost_rate: float
    selling_costs: float
    net_sale_proceeds: float
    loan_payoff: float
    net_equity_proceeds: float

    def to_dict(self) -> Dict:
        return {
            "year": self.year,
            "final_year_noi": round(self.final_year_noi, 2),
            "exit_noi": round(self.exit_noi, 2),
            "exit_cap_rate": self.exit_cap_rate,
            "gross_sale_price": round(self.gross_sale_price, 2),
            "selling_cost_rate": self.selling_cost_rate,
            "selling_costs": round(self.selling_costs, 2),
            "net_sale_proceeds": round(self.net_sale_proceeds, 2),
            "loan_payoff": round(self.loan_payoff, 2),
            "net_equity_proceeds": round(self.net_equity_proceeds, 2),
        }


@dataclass(frozen=True)
class CashFlowProjection:
    """Complete projection: one record per hold year plus the exit."""

    years: Tuple[CashFlowYear, ...]
    exit: ExitEvent
    purchase_price: float
    loan_amount: float
    equity_invested: float
    warnings: Tuple[str, ...] = ()

    @property
    def hold_period_years(self) -> int:
        return len(self.years)

    def distributable_cash_flows(self) -> List[float]:
        """Cash to equity by year; the final year includes net sale proceeds."""
        flows = [y.before_tax_cash_flow for y in self.years]
        flows[-1] += self.exit.net_equity_proceeds
        return flows

    def equity_cash_flows(self) -> List[float]:
        """Signed IRR vector: [-equity, CF_1, ..., CF_n + net equity proceeds]."""
        return [-self.equity_invested] + self.distributable_cash_flows()

    def to_dict(self) -> Dict:
        return {
            "years": [y.to_dict() for y in self.years],
            "exit": self.exit.to_dict(),
            "purchase_price": round(self.purchase_price, 2),
            "loan_amount": round(self.loan_amount, 2),
            "equity_invested": round(self.equity_invested, 2),
            "warnings": list(self.warnings),
        }


def project_operating_year(
    assumptions: UnderwritingAssumptions, year: int
) -> OperatingStatement:
    """
    Operating statement for projection year `year`.

    Revenue lines grow at the rent growth rate (other income at its own
    rate); every expense line grows at the expense growth rate.
    """
    rent_factor = calculate_escalation_factor(assumptions.rent_growth_rate, year)
    other_factor = calculate_escalation_factor(
        assumptions.effective_other_income_growth, year
    )
    expense_factor = calculate_escalation_factor(assumptions.expense_growth_rate, year)

    gpr = assumptions.gross_potential_rent * rent_factor
    base = assumptions.operating_expenses

    return OperatingStatement(
        year=year,
        gross_potential_rent=gpr,
        vacancy_loss=gpr * assumptions.vacancy_rate,
        other_income=assumptions.other_income * other_factor,
        expenses=ExpenseBreakdown(
            taxes=base.taxes * expense_factor,
            insurance=base.insurance * expense_factor,
            management=base.management * expense_factor,
            repairs=base.repairs * expense_factor,
            reserves=base.reserves * expense_factor,
            other=base.other * expense_factor,
        ),
    )


def _period_end(acquisition_date: Optional[date], year: int) -> Optional[date]:
    if acquisition_date is None:
        return None
    return acquisition_date + relativedelta(years=year, days=-1)


def project_cash_flows(assumptions: UnderwritingAssumptions) -> CashFlowProjection:
    """
    Project year-by-year cash flows and the exit for the hold period.

    Args:
        assumptions: Validated underwriting assumptions

    Returns:
        CashFlowProjection with exactly `hold_period_years` records
    """
    hold = assumptions.hold_period_years
    purchase_price = assumptions.implied_purchase_price
    loan_amount = assumptions.loan_amount
    equity = assumptions.equity_invested

    loan = AmortizationSchedule(
        principal=loan_amount,
        annual_rate=assumptions.interest_rate,
        amortization_years=assumptions.amortization_years,
        interest_only_years=assumptions.interest_only_years,
    )

    years = []
    cumulative = 0.0

    for year in range(1, hold + 1):
        ops = project_operating_year(assumptions, year)
        debt = loan.year(year)
        noi = ops.net_operating_income
        btcf = noi - debt.total_debt_service
        cumulative += btcf

        years.append(
            CashFlowYear(
                year=year,
                period_end=_period_end(assumptions.acquisition_date, year),
                gross_potential_rent=ops.gross_potential_rent,
                vacancy_loss=ops.vacancy_loss,
                other_income=ops.other_income,
                effective_gross_income=ops.effective_gross_income,
                expenses=ops.expenses,
                net_operating_income=noi,
                debt_service=debt,
                before_tax_cash_flow=btcf,
                cumulative_cash_flow=cumulative,
                cash_on_cash=btcf / equity if equity > 0 else None,
                dscr=calculate_dscr(noi, debt.total_debt_service),
                debt_yield=noi / loan_amount if loan_amount > 0 else None,
            )
        )

    forward = project_operating_year(assumptions, hold + 1)
    exit_noi = forward.net_operating_income
    gross_sale_price = exit_noi / assumptions.exit_cap_rate
    selling_costs = gross_sale_price * assumptions.selling_cost_rate
    net_sale_proceeds = gross_sale_price - selling_costs
    loan_payoff = years[-1].debt_service.ending_balance

    exit_event = ExitEvent(
        year=hold,
        final_year_noi=years[-1].net_operating_income,
        exit_noi=exit_noi,
        exit_cap_rate=assumptions.exit_cap_rate,
        gross_sale_price=gross_sale_price,
        selling_cost_rate=assumptions.selling_cost_rate,
        selling_costs=selling_costs,
        net_sale_proceeds=net_sale_proceeds,
        loan_payoff=loan_payoff,
        net_equity_proceeds=net_sale_proceeds - loan_payoff,
    )

    return CashFlowProjection(
        years=tuple(years),
        exit=exit_event,
        purchase_price=purchase_price,
        loan_amount=loan_amount,
        equity_invested=equity,
        warnings=tuple(_underwriting_warnings(assumptions, years)),
    )


def _underwriting_warnings(
    assumptions: UnderwritingAssumptions, years: List[CashFlowYear]
) -> List[str]:
    warnings = []

    first_dscr = years[0].dscr
    if first_dscr is not None:
        if first_dscr < DSCR_BREAKEVEN:
            warnings.append("DSCR below 1.0 - negative cash flow")
        elif first_dscr < DSCR_LENDER_MINIMUM:
            warnings.append("DSCR below typical lender minimum of 1.25")

    ltv = assumptions.ltv
    if ltv is not None and ltv > LTV_WARNING:
        warnings.append("LTV above 80% - may require additional guarantees")

    if assumptions.loan_amount > 0 and assumptions.hold_period_years > assumptions.loan_term_years:
        warnings.append("Hold period extends past loan maturity")

    return warnings
