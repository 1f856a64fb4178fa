"""
IRR and NPV Calculations

Implements IRR using Newton-Raphson with a bracketing bisection fallback,
matching Excel's IRR/XIRR functions where Excel converges and reporting a
non-convergence error (never a spurious rate) where it does not.
"""

from dataclasses import dataclass, replace
from datetime import date
from typing import List, Optional, Sequence

import numpy as np

from underwriting.errors import NumericNonConvergenceError, UndefinedReason

MAX_ITERATIONS = 100
TOLERANCE = 1e-10
DEFAULT_GUESS = 0.1
LOWER_BOUND = -0.99
UPPER_BOUND = 10.0

# Bracket scan is denser where real-estate returns actually live
BRACKET_SCAN_POINTS = 400


@dataclass(frozen=True)
class IRRSolverConfig:
    """Bounds and tolerances for the IRR root-finder."""

    lower_bound: float = LOWER_BOUND
    upper_bound: float = UPPER_BOUND
    tolerance: float = TOLERANCE
    max_iterations: int = MAX_ITERATIONS
    guess: float = DEFAULT_GUESS


DEFAULT_SOLVER = IRRSolverConfig()


def _present_values(amounts: np.ndarray, times: np.ndarray, rates) -> np.ndarray:
    """NPV of `amounts` at each rate in `rates` (vectorized over rates)."""
    rates = np.atleast_1d(np.asarray(rates, dtype=float))
    discount = (1.0 + rates)[:, None] ** times[None, :]
    return (amounts[None, :] / discount).sum(axis=1)


def _present_value_derivative(amounts: np.ndarray, times: np.ndarray, rate: float) -> float:
    """Derivative of NPV with respect to rate (for Newton-Raphson)."""
    return float(-(times * amounts / (1.0 + rate) ** (times + 1)).sum())


def calculate_npv(cash_flows: Sequence[float], discount_rate: float) -> float:
    """
    Calculate NPV (Net Present Value) of cash flows.

    The first cash flow is at period 0 (undiscounted), matching the
    convention used for equity IRR vectors throughout the engine.

    Args:
        cash_flows: Array of cash flows (negative = outflow, positive = inflow)
        discount_rate: Annual discount rate (e.g., 0.10 for 10%)

    Returns:
        NPV value
    """
    amounts = np.asarray(cash_flows, dtype=float)
    times = np.arange(len(amounts), dtype=float)
    return float(_present_values(amounts, times, discount_rate)[0])


def _check_cash_flows(cash_flows: Sequence[float]) -> None:
    if len(cash_flows) < 2:
        raise NumericNonConvergenceError(
            "At least 2 cash flows required", UndefinedReason.TOO_FEW_CASH_FLOWS
        )

    has_positive = any(cf > 0 for cf in cash_flows)
    has_negative = any(cf < 0 for cf in cash_flows)

    if not has_positive or not has_negative:
        raise NumericNonConvergenceError(
            "Cash flows must contain both positive and negative values",
            UndefinedReason.NO_SIGN_CHANGE,
        )


def _newton(
    amounts: np.ndarray, times: np.ndarray, solver: IRRSolverConfig
) -> Optional[float]:
    """Plain Newton-Raphson; returns None instead of raising on failure."""
    rate = solver.guess

    for _ in range(solver.max_iterations):
        npv = float(_present_values(amounts, times, rate)[0])
        dnpv = _present_value_derivative(amounts, times, rate)

        if not np.isfinite(npv) or not np.isfinite(dnpv) or abs(dnpv) < solver.tolerance:
            return None

        new_rate = rate - npv / dnpv

        if new_rate <= solver.lower_bound or new_rate >= solver.upper_bound:
            return None

        if abs(new_rate - rate) < solver.tolerance:
            return new_rate

        rate = new_rate

    return None


def _bisect(
    amounts: np.ndarray, times: np.ndarray, solver: IRRSolverConfig
) -> float:
    """Scan the bounded interval for a sign change and bisect the bracket."""
    lower, upper = solver.lower_bound, solver.upper_bound
    grid = np.unique(
        np.concatenate(
            [
                np.linspace(lower, 1.0, BRACKET_SCAN_POINTS),
                np.linspace(1.0, upper, BRACKET_SCAN_POINTS // 2),
            ]
        )
    )
    with np.errstate(over="ignore", invalid="ignore"):
        values = _present_values(amounts, times, grid)

    finite = np.isfinite(values)
    exact = np.where(finite & (values == 0.0))[0]
    if len(exact):
        return float(grid[exact[0]])

    signs = np.sign(values)
    brackets = [
        i
        for i in range(len(grid) - 1)
        if finite[i] and finite[i + 1] and signs[i] != signs[i + 1]
    ]
    if not brackets:
        raise NumericNonConvergenceError(
            f"No IRR root found within [{lower}, {upper}]",
            UndefinedReason.NO_ROOT_IN_BOUNDS,
        )

    # Several roots are possible when cash flows change sign more than once;
    # take the bracket nearest the guess
    best = min(brackets, key=lambda i: abs((grid[i] + grid[i + 1]) / 2 - solver.guess))
    lo, hi = float(grid[best]), float(grid[best + 1])
    f_lo = float(values[best])

    for _ in range(solver.max_iterations * 2):
        mid = (lo + hi) / 2
        f_mid = float(_present_values(amounts, times, mid)[0])
        if f_mid == 0.0 or (hi - lo) / 2 < solver.tolerance:
            return mid
        if np.sign(f_mid) == np.sign(f_lo):
            lo, f_lo = mid, f_mid
        else:
            hi = mid

    return (lo + hi) / 2


def _solve(
    amounts: np.ndarray, times: np.ndarray, solver: IRRSolverConfig
) -> float:
    rate = _newton(amounts, times, solver)
    if rate is not None:
        return rate
    return _bisect(amounts, times, solver)


def calculate_irr(
    cash_flows: Sequence[float],
    guess: float = DEFAULT_GUESS,
    solver: Optional[IRRSolverConfig] = None,
) -> float:
    """
    Calculate IRR (Internal Rate of Return).

    Newton-Raphson from `guess` first; if it diverges, stalls or leaves the
    solver bounds, the bounded interval is scanned for a sign change and the
    bracket is bisected.

    Args:
        cash_flows: Array of periodic cash flows
        guess: Initial guess for rate (default 0.1 = 10%)
        solver: Bounds and tolerances (defaults to [-0.99, 10.0])

    Returns:
        Annual IRR as decimal (e.g., 0.15 for 15%)

    Raises:
        NumericNonConvergenceError: If IRR cannot be calculated
    """
    _check_cash_flows(cash_flows)

    solver = solver or DEFAULT_SOLVER
    if guess != solver.guess:
        solver = replace(solver, guess=guess)

    amounts = np.asarray(cash_flows, dtype=float)
    times = np.arange(len(amounts), dtype=float)
    return _solve(amounts, times, solver)


def _year_fractions(dates: List[date]) -> np.ndarray:
    base_date = dates[0]
    return np.array([(d - base_date).days / 365.0 for d in dates], dtype=float)


def calculate_xnpv(
    cash_flows: List[float], dates: List[date], discount_rate: float
) -> float:
    """Calculate XNPV (NPV with specific dates)."""
    if len(cash_flows) != len(dates):
        raise ValueError("Cash flows and dates arrays must have same length")

    amounts = np.asarray(cash_flows, dtype=float)
    return float(_present_values(amounts, _year_fractions(dates), discount_rate)[0])


def calculate_xirr(
    cash_flows: List[float],
    dates: List[date],
    guess: float = DEFAULT_GUESS,
    solver: Optional[IRRSolverConfig] = None,
) -> float:
    """
    Calculate XIRR (IRR with specific dates).

    Matches Excel's XIRR() function behavior for irregular cash flows.

    Raises:
        ValueError: If the arrays do not line up
        NumericNonConvergenceError: If XIRR cannot be calculated
    """
    if len(cash_flows) != len(dates):
        raise ValueError("Cash flows and dates arrays must have same length")

    _check_cash_flows(cash_flows)

    solver = solver or DEFAULT_SOLVER
    if guess != solver.guess:
        solver = replace(solver, guess=guess)

    amounts = np.asarray(cash_flows, dtype=float)
    return _solve(amounts, _year_fractions(dates), solver)


def calculate_multiple(cash_flows: Sequence[float]) -> float:
    """
    Calculate equity multiple.

    Args:
        cash_flows: Array of cash flows (investments are negative)

    Returns:
        Multiple (e.g., 2.0 = 2.0x return)
    """
    total_inflows = sum(cf for cf in cash_flows if cf > 0)
    total_outflows = abs(sum(cf for cf in cash_flows if cf < 0))

    if total_outflows == 0:
        raise ValueError("No investment (outflows) found")

    return total_inflows / total_outflows


def calculate_profit(cash_flows: Sequence[float]) -> float:
    """Calculate profit (total inflows minus total outflows)."""
    return sum(cash_flows)
