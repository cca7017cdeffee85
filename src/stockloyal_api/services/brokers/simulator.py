"""Simulated fills for brokers that do not report executions back."""

from __future__ import annotations

import random
from decimal import ROUND_HALF_EVEN, Decimal

from stockloyal_api.core.settings import settings
from .base import FillRequest, FillResult, FillStatus

_PRICE_STEP = Decimal("0.0001")
_CENT = Decimal("0.01")


class FillSimulator:
    """Fill at the target price moved by a uniform variance of +/- ``variance``."""

    def __init__(self, *, variance: float | None = None, rng: random.Random | None = None) -> None:
        self.variance = abs(variance if variance is not None else settings.execution_simulation_variance)
        self._rng = rng or random.Random(settings.execution_simulation_seed)

    def fill(self, request: FillRequest) -> FillResult:
        target = request.target_price
        if (target is None or target <= 0) and request.shares > 0:
            target = request.amount / request.shares
        if target is None or target <= 0 or request.shares <= 0:
            return FillResult(status=FillStatus.FAILED, error=f"No price available to fill {request.symbol}")

        drift = Decimal(str(self._rng.uniform(-self.variance, self.variance)))
        price = (target * (Decimal("1") + drift)).quantize(_PRICE_STEP, rounding=ROUND_HALF_EVEN)
        shares = request.shares
        amount = (price * shares).quantize(_CENT, rounding=ROUND_HALF_EVEN)
        return FillResult(status=FillStatus.FILLED, price=price, shares=shares, amount=amount, venue_status="simulated")


__all__ = ["FillSimulator"]
