"""
Underwriting Calculation Engine

Projection, return metrics, equity waterfall and scenario/sensitivity
modules. Every calculation is a pure function of its validated inputs.
"""

from underwriting.calculations import (
    amortization,
    assumptions,
    cashflow,
    irr,
    metrics,
    scenarios,
    sensitivity,
    waterfall,
)

__all__ = [
    "amortization",
    "assumptions",
    "cashflow",
    "irr",
    "metrics",
    "scenarios",
    "sensitivity",
    "waterfall",
]
