"""
Underwriting Assumptions

Immutable input snapshot for a projection run. Every field is validated
once when the object is built; scenario overrides produce a new validated
copy and never touch the base.
"""

from dataclasses import asdict, dataclass, field, fields, replace
from datetime import date
from typing import Any, Dict, Mapping, Optional

from underwriting.errors import ValidationError

# Share of a single total operating-expense figure assigned to each line
# when a T12 only reports the total
TOTAL_EXPENSE_ALLOCATION = {
    "other": 0.50,
    "taxes": 0.25,
    "insurance": 0.08,
    "management": 0.12,
    "reserves": 0.05,
    "repairs": 0.0,
}


@dataclass(frozen=True)
class OperatingExpenses:
    """Year-one operating expense lines (annual dollars)."""

    taxes: float = 0.0
    insurance: float = 0.0
    management: float = 0.0
    repairs: float = 0.0
    reserves: float = 0.0
    other: float = 0.0

    def __post_init__(self):
        for f in fields(self):
            if getattr(self, f.name) < 0:
                raise ValidationError(
                    f"Operating expense '{f.name}' cannot be negative",
                    f"operating_expenses.{f.name}",
                )

    @classmethod
    def from_total(cls, total: float) -> "OperatingExpenses":
        """Spread a single total across lines using TOTAL_EXPENSE_ALLOCATION."""
        return cls(**{line: total * share for line, share in TOTAL_EXPENSE_ALLOCATION.items()})

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "OperatingExpenses":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValidationError(
                f"Unknown operating expense lines: {', '.join(sorted(unknown))}",
                "operating_expenses",
            )
        return cls(**{k: float(v or 0.0) for k, v in data.items()})

    @property
    def total(self) -> float:
        return sum(getattr(self, f.name) for f in fields(self))

    def scaled(self, factor: float) -> "OperatingExpenses":
        return OperatingExpenses(
            **{f.name: getattr(self, f.name) * factor for f in fields(self)}
        )

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


def _coerce_expenses(value: Any) -> OperatingExpenses:
    if isinstance(value, OperatingExpenses):
        return value
    if isinstance(value, Mapping):
        return OperatingExpenses.from_dict(value)
    if isinstance(value, (int, float)):
        return OperatingExpenses.from_total(float(value))
    raise ValidationError(
        "operating_expenses must be an expense breakdown, a mapping or a total",
        "operating_expenses",
    )


_RATE_FIELDS = (
    "vacancy_rate",
    "interest_rate",
    "exit_cap_rate",
    "rent_growth_rate",
    "expense_growth_rate",
    "selling_cost_rate",
)


@dataclass(frozen=True)
class UnderwritingAssumptions:
    """
    Inputs for a multi-year underwriting projection.

    All rates are fractional (0.05 = 5%). Purchase price is either supplied
    directly or implied from the loan amount and loan-to-value.
    """

    gross_potential_rent: float
    exit_cap_rate: float
    purchase_price: Optional[float] = None
    loan_to_value: Optional[float] = None
    vacancy_rate: float = 0.05
    other_income: float = 0.0
    operating_expenses: OperatingExpenses = field(default_factory=OperatingExpenses)
    loan_amount: float = 0.0
    interest_rate: float = 0.0
    amortization_years: int = 30
    loan_term_years: int = 10
    interest_only_years: int = 0
    hold_period_years: int = 5
    rent_growth_rate: float = 0.03
    expense_growth_rate: float = 0.02
    other_income_growth_rate: Optional[float] = None
    selling_cost_rate: float = 0.02
    acquisition_date: Optional[date] = None

    def __post_init__(self):
        if not isinstance(self.operating_expenses, OperatingExpenses):
            object.__setattr__(
                self, "operating_expenses", _coerce_expenses(self.operating_expenses)
            )

        for name in _RATE_FIELDS:
            if getattr(self, name) < 0:
                raise ValidationError(f"{name} cannot be negative", name)

        if self.other_income_growth_rate is not None and self.other_income_growth_rate < 0:
            raise ValidationError(
                "other_income_growth_rate cannot be negative", "other_income_growth_rate"
            )
        if self.vacancy_rate >= 1:
            raise ValidationError("vacancy_rate must be below 100%", "vacancy_rate")
        if self.selling_cost_rate >= 1:
            raise ValidationError("selling_cost_rate must be below 100%", "selling_cost_rate")
        if self.exit_cap_rate <= 0:
            raise ValidationError("exit_cap_rate must be greater than 0", "exit_cap_rate")
        if self.gross_potential_rent < 0:
            raise ValidationError(
                "gross_potential_rent cannot be negative", "gross_potential_rent"
            )
        if self.other_income < 0:
            raise ValidationError("other_income cannot be negative", "other_income")

        for name in ("hold_period_years", "amortization_years", "loan_term_years"):
            value = getattr(self, name)
            if int(value) != value or value < 1:
                raise ValidationError(f"{name} must be a whole number of at least 1", name)
            object.__setattr__(self, name, int(value))
        if int(self.interest_only_years) != self.interest_only_years or self.interest_only_years < 0:
            raise ValidationError(
                "interest_only_years must be a non-negative whole number",
                "interest_only_years",
            )
        object.__setattr__(self, "interest_only_years", int(self.interest_only_years))

        if self.loan_amount < 0:
            raise ValidationError("loan_amount cannot be negative", "loan_amount")

        if self.purchase_price is None:
            if self.loan_to_value is None:
                raise ValidationError(
                    "Either purchase_price or loan_to_value is required", "purchase_price"
                )
            if not 0 < self.loan_to_value <= 1:
                raise ValidationError(
                    "loan_to_value must be between 0 and 100%", "loan_to_value"
                )
            if self.loan_amount <= 0:
                raise ValidationError(
                    "loan_amount is required to imply purchase price from loan_to_value",
                    "loan_amount",
                )
        elif self.purchase_price < 0:
            raise ValidationError("purchase_price cannot be negative", "purchase_price")

        if self.loan_amount > self.implied_purchase_price + 1e-6:
            raise ValidationError(
                "loan_amount cannot exceed the purchase price", "loan_amount"
            )

    @property
    def implied_purchase_price(self) -> float:
        if self.purchase_price is not None:
            return self.purchase_price
        return self.loan_amount / self.loan_to_value

    @property
    def equity_invested(self) -> float:
        return self.implied_purchase_price - self.loan_amount

    @property
    def effective_other_income_growth(self) -> float:
        if self.other_income_growth_rate is None:
            return self.rent_growth_rate
        return self.other_income_growth_rate

    @property
    def ltv(self) -> Optional[float]:
        price = self.implied_purchase_price
        return self.loan_amount / price if price > 0 else None

    def with_overrides(self, overrides: Optional[Mapping[str, Any]]) -> "UnderwritingAssumptions":
        """
        Return a validated copy with `overrides` applied.

        Raises:
            ValidationError: If an override names an unknown field or the
                merged assumptions are invalid
        """
        if not overrides:
            return self

        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise ValidationError(
                f"Unknown assumption fields: {', '.join(sorted(unknown))}",
                sorted(unknown)[0],
            )

        changes = dict(overrides)
        if "operating_expenses" in changes:
            changes["operating_expenses"] = _coerce_expenses(changes["operating_expenses"])
        if "acquisition_date" in changes and isinstance(changes["acquisition_date"], str):
            changes["acquisition_date"] = date.fromisoformat(changes["acquisition_date"])
        return replace(self, **changes)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UnderwritingAssumptions":
        """Build assumptions from a persisted/JSON record."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValidationError(
                f"Unknown assumption fields: {', '.join(sorted(unknown))}",
                sorted(unknown)[0],
            )
        for required in ("gross_potential_rent", "exit_cap_rate"):
            if data.get(required) is None:
                raise ValidationError(f"{required} is required", required)

        values = {k: v for k, v in data.items() if v is not None}
        if "operating_expenses" in values:
            values["operating_expenses"] = _coerce_expenses(values["operating_expenses"])
        if isinstance(values.get("acquisition_date"), str):
            values["acquisition_date"] = date.fromisoformat(values["acquisition_date"])
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.acquisition_date is not None:
            data["acquisition_date"] = self.acquisition_date.isoformat()
        return data
