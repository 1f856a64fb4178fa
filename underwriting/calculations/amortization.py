"""
Loan Amortization Calculations

Implements loan payment and amortization schedule calculations,
matching Excel's PMT, IPMT, and PPMT functions. Payments are monthly;
annual figures are the sum of the twelve monthly payments in that loan year.
"""

from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional, Tuple

from dateutil.relativedelta import relativedelta

from underwriting.errors import ValidationError


def calculate_payment(
    principal: float, annual_rate: float, amortization_months: int
) -> float:
    """
    Calculate monthly loan payment.

    Matches Excel's PMT() function.

    Args:
        principal: Loan principal amount
        annual_rate: Annual interest rate as decimal (e.g., 0.05 for 5%)
        amortization_months: Total amortization period in months

    Returns:
        Monthly payment amount (positive number)
    """
    if principal <= 0:
        return 0.0
    if amortization_months <= 0:
        return 0.0

    monthly_rate = annual_rate / 12

    if monthly_rate == 0:
        return principal / amortization_months

    return principal * monthly_rate / (1 - (1 + monthly_rate) ** -amortization_months)


def calculate_remaining_balance(
    principal: float,
    annual_rate: float,
    amortization_months: int,
    payments_completed: int,
) -> float:
    """Calculate remaining loan balance after N level payments."""
    if payments_completed >= amortization_months:
        return 0.0

    monthly_rate = annual_rate / 12
    payment = calculate_payment(principal, annual_rate, amortization_months)

    if monthly_rate == 0:
        return max(0.0, principal - payment * payments_completed)

    balance = principal * ((1 + monthly_rate) ** payments_completed) - payment * (
        ((1 + monthly_rate) ** payments_completed - 1) / monthly_rate
    )

    return max(0.0, balance)


@dataclass(frozen=True)
class AnnualDebtService:
    """Principal/interest split for one loan year."""

    year: int
    beginning_balance: float
    interest_paid: float
    principal_paid: float
    ending_balance: float
    is_interest_only: bool

    @property
    def total_debt_service(self) -> float:
        return self.interest_paid + self.principal_paid

    def to_dict(self) -> Dict:
        return {
            "year": self.year,
            "beginning_balance": round(self.beginning_balance, 2),
            "interest_paid": round(self.interest_paid, 2),
            "principal_paid": round(self.principal_paid, 2),
            "total_debt_service": round(self.total_debt_service, 2),
            "ending_balance": round(self.ending_balance, 2),
            "is_interest_only": self.is_interest_only,
        }


@dataclass(frozen=True)
class AmortizationSchedule:
    """
    Level-payment loan with an optional interest-only lead-in.

    Amortization starts after the interest-only years, so the full
    `amortization_years` of level payments follow the IO period. A loan with
    no principal produces zero debt service for every year.
    """

    principal: float
    annual_rate: float
    amortization_years: int = 30
    interest_only_years: int = 0

    def __post_init__(self):
        if self.principal < 0:
            raise ValidationError("Loan principal cannot be negative", "loan_amount")
        if self.annual_rate < 0:
            raise ValidationError("Interest rate cannot be negative", "interest_rate")
        if self.amortization_years < 1:
            raise ValidationError(
                "Amortization must be at least 1 year", "amortization_years"
            )
        if self.interest_only_years < 0:
            raise ValidationError(
                "Interest-only period cannot be negative", "interest_only_years"
            )

    @property
    def monthly_rate(self) -> float:
        return self.annual_rate / 12

    @property
    def amortization_months(self) -> int:
        return self.amortization_years * 12

    @property
    def interest_only_months(self) -> int:
        return self.interest_only_years * 12

    @property
    def monthly_payment(self) -> float:
        """Level amortizing payment (after any interest-only period)."""
        return calculate_payment(
            self.principal, self.annual_rate, self.amortization_months
        )

    def balance_after(self, months: int) -> float:
        """Outstanding principal after `months` monthly payments."""
        if months <= self.interest_only_months:
            return self.principal
        return calculate_remaining_balance(
            self.principal,
            self.annual_rate,
            self.amortization_months,
            months - self.interest_only_months,
        )

    def year(self, year: int) -> AnnualDebtService:
        """
        Debt service for loan year `year` (1-indexed).

        Years past full amortization return zero payments and zero balance.
        """
        if year < 1:
            raise ValidationError("Loan year must be 1 or greater", "year")

        first_month = 12 * (year - 1) + 1
        last_month = 12 * year

        beginning_balance = self.balance_after(first_month - 1)
        ending_balance = self.balance_after(last_month)
        principal_paid = beginning_balance - ending_balance

        io_months = max(0, min(last_month, self.interest_only_months) - first_month + 1)
        amortization_end = self.interest_only_months + self.amortization_months
        amortizing_months = max(
            0, min(last_month, amortization_end) - max(first_month, self.interest_only_months + 1) + 1
        )

        payments = (
            io_months * self.principal * self.monthly_rate
            + amortizing_months * self.monthly_payment
        )
        interest_paid = max(0.0, payments - principal_paid)

        return AnnualDebtService(
            year=year,
            beginning_balance=beginning_balance,
            interest_paid=interest_paid,
            principal_paid=principal_paid,
            ending_balance=ending_balance,
            is_interest_only=year <= self.interest_only_years,
        )

    def years(self, count: int) -> Tuple[AnnualDebtService, ...]:
        """Annual debt service for loan years 1..count."""
        return tuple(self.year(n) for n in range(1, count + 1))

    def monthly_rows(
        self, total_months: int, start_date: Optional[date] = None
    ) -> List[Dict]:
        """
        Generate a dated monthly amortization schedule.

        Args:
            total_months: Loan term in months (rows stop early once paid off)
            start_date: Date of first payment (defaults to today)

        Returns:
            List of amortization rows
        """
        if start_date is None:
            start_date = date.today()

        rows = []
        balance = self.principal

        for period in range(1, total_months + 1):
            interest = balance * self.monthly_rate

            if period <= self.interest_only_months:
                principal_pmt = 0.0
            else:
                principal_pmt = min(self.monthly_payment - interest, balance)

            ending_balance = max(0.0, balance - principal_pmt)

            rows.append(
                {
                    "period": period,
                    "date": (start_date + relativedelta(months=period - 1)).isoformat(),
                    "beginning_balance": round(balance, 2),
                    "payment": round(principal_pmt + interest, 2),
                    "interest": round(interest, 2),
                    "principal": round(principal_pmt, 2),
                    "ending_balance": round(ending_balance, 2),
                }
            )

            balance = ending_balance

            if balance <= 0:
                break

        return rows


def calculate_dscr(noi: float, debt_service: float) -> Optional[float]:
    """
    Calculate Debt Service Coverage Ratio (DSCR).

    Args:
        noi: Net Operating Income for the period
        debt_service: Debt service for the period

    Returns:
        DSCR ratio, or None when there is no debt service to cover
    """
    if debt_service == 0:
        return None
    return noi / debt_service


def calculate_loan_constant(
    principal: float, annual_rate: float, amortization_years: int
) -> float:
    """Calculate loan constant (annual debt service / loan amount)."""
    monthly_payment = calculate_payment(principal, annual_rate, amortization_years * 12)
    annual_debt_service = monthly_payment * 12
    return annual_debt_service / principal if principal > 0 else 0.0
