"""
Real estate underwriting and equity waterfall engine.
"""

__version__ = "0.1.0"
