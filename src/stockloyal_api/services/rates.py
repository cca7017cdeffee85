"""Conversion rate resolution and points-to-cash arithmetic."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Iterable

CENT = Decimal("0.01")
_ZERO = Decimal("0")
_HUNDRED = Decimal("100")


def _to_decimal(value: object) -> Decimal:
    if value is None or value == "":
        return _ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def normalize_rate(value: object) -> Decimal:
    """Return a fractional rate; values >= 1 are percentages and values <= 0 accrue nothing."""

    rate = _to_decimal(value)
    if rate <= 0:
        return _ZERO
    if rate >= 1:
        return rate / _HUNDRED
    return rate


def quantize_cents(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_EVEN)


@dataclass(slots=True)
class MerchantRates:
    """Merchant base rate plus its named tiers, already normalized."""

    base_rate: Decimal
    tiers: dict[str, Decimal] = field(default_factory=dict)

    @classmethod
    def build(cls, base_rate: object, tiers: Iterable[tuple[str | None, object]] = ()) -> "MerchantRates":
        resolved: dict[str, Decimal] = {}
        for name, rate in tiers:
            key = (name or "").strip().lower()
            if not key or key in resolved:
                continue
            normalized = normalize_rate(rate)
            if normalized > 0:
                resolved[key] = normalized
        return cls(base_rate=normalize_rate(base_rate), tiers=resolved)

    @classmethod
    def from_merchant(cls, merchant) -> "MerchantRates":
        return cls.build(merchant.conversion_rate, merchant.tiers())


class RateResolver:
    """Resolve effective member rates and convert points into cash."""

    def resolve(self, member_tier: str | None, rates: MerchantRates) -> Decimal:
        key = (member_tier or "").strip().lower()
        if key and key in rates.tiers:
            return rates.tiers[key]
        return rates.base_rate

    def points_to_cash(self, points: int | Decimal, rate: Decimal, *, parts: int = 1) -> Decimal:
        if parts <= 0:
            raise ValueError("parts must be positive")
        return quantize_cents(_to_decimal(points) * rate / Decimal(parts))

    def member_cash(self, points: int, member_tier: str | None, rates: MerchantRates) -> Decimal:
        return self.points_to_cash(points, self.resolve(member_tier, rates))


__all__ = ["CENT", "MerchantRates", "RateResolver", "normalize_rate", "quantize_cents"]
