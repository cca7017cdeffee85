"""Serialization helpers shared by model ``as_dict`` methods."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any


def as_float(value: Decimal | float | int | None) -> float | None:
    if value is None:
        return None
    return float(value)


def as_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value
