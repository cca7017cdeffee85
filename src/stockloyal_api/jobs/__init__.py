"""Recurring job entrypoints for the order pipeline."""

from .pipeline import run_execution, run_missing_price_repair, run_scheduled_sweep, run_settlement

__all__ = [
    "run_execution",
    "run_missing_price_repair",
    "run_scheduled_sweep",
    "run_settlement",
]
