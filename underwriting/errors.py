"""
Calculation error types.

Validation failures are raised before any arithmetic starts. Numeric
failures (IRR that cannot be solved, divisions by a zero base) are reported
on result objects as undefined metrics with a reason code.
"""

import enum
from typing import Optional


class UndefinedReason(str, enum.Enum):
    """Reason codes attached to metrics that could not be computed."""

    NO_SIGN_CHANGE = "no_sign_change"
    NO_ROOT_IN_BOUNDS = "no_root_in_bounds"
    TOO_FEW_CASH_FLOWS = "too_few_cash_flows"
    ZERO_EQUITY = "zero_equity"
    ZERO_PURCHASE_PRICE = "zero_purchase_price"
    ZERO_DEBT_SERVICE = "zero_debt_service"
    ZERO_LOAN = "zero_loan"
    ZERO_REVENUE = "zero_revenue"
    NO_GP_CAPITAL = "no_gp_capital"


class ValidationError(ValueError):
    """Malformed assumptions or waterfall configuration."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class NumericNonConvergenceError(ValueError):
    """Root-finder could not bracket or converge on a solution."""

    def __init__(self, message: str, reason: UndefinedReason):
        super().__init__(message)
        self.reason = reason
