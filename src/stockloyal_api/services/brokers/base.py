"""Broker capability interface shared by dispatch and execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Protocol

from stockloyal_api.models.merchant import Broker, BrokerTypeEnum


def _num(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


@dataclass(slots=True)
class BrokerConfig:
    broker_id: str
    broker_name: str
    broker_type: BrokerTypeEnum
    webhook_url: str | None = None
    api_key: str | None = None
    ach_bank_name: str | None = None
    ach_routing_num: str | None = None
    ach_account_num: str | None = None
    ach_account_type: str | None = None

    @classmethod
    def from_model(cls, broker: Broker) -> "BrokerConfig":
        return cls(
            broker_id=broker.broker_id,
            broker_name=broker.broker_name,
            broker_type=BrokerTypeEnum(broker.broker_type),
            webhook_url=broker.webhook_url,
            api_key=broker.api_key,
            ach_bank_name=broker.ach_bank_name,
            ach_routing_num=broker.ach_routing_num,
            ach_account_num=broker.ach_account_num,
            ach_account_type=broker.ach_account_type,
        )


@dataclass(slots=True)
class FeedOrder:
    order_id: int
    member_id: str
    basket_id: str
    symbol: str
    shares: Decimal
    amount: Decimal
    price: Decimal | None
    points_used: int
    broker_account_id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "basket_id": self.basket_id,
            "symbol": self.symbol,
            "shares": _num(self.shares),
            "amount": _num(self.amount),
            "price": _num(self.price),
            "points_used": self.points_used,
        }


@dataclass(slots=True)
class BrokerFeed:
    """All pending orders of one merchant routed to one broker in a sweep run."""

    sweep_batch_id: str
    merchant_id: str
    broker: str
    sweep_date: date
    orders: list[FeedOrder] = field(default_factory=list)

    @property
    def total_amount(self) -> Decimal:
        return sum((order.amount for order in self.orders), Decimal("0"))

    @property
    def basket_ids(self) -> list[str]:
        return sorted({order.basket_id for order in self.orders})

    def build_payload(self, *, timestamp: datetime) -> dict[str, Any]:
        members: dict[str, dict[str, Any]] = {}
        for order in self.orders:
            entry = members.setdefault(
                order.member_id,
                {
                    "member_id": order.member_id,
                    "broker_account_id": order.broker_account_id,
                    "orders": [],
                    "order_count": 0,
                    "total_amount": Decimal("0"),
                    "total_points": 0,
                },
            )
            entry["orders"].append(order.as_dict())
            entry["order_count"] += 1
            entry["total_amount"] += order.amount
            entry["total_points"] += order.points_used

        for entry in members.values():
            entry["total_amount"] = float(entry["total_amount"])

        return {
            "event_type": "sweep_batch",
            "batch_id": self.sweep_batch_id,
            "merchant_id": self.merchant_id,
            "broker": self.broker,
            "sweep_date": self.sweep_date.isoformat(),
            "members": list(members.values()),
            "total_orders": len(self.orders),
            "total_amount": float(self.total_amount),
            "timestamp": timestamp.isoformat(),
        }


@dataclass(slots=True)
class AckResult:
    acknowledged: bool
    http_status: int | None = None
    request: Any = None
    response: Any = None
    error: str | None = None
    external_ref: str | None = None
    # per-order venue references, and orders the venue refused
    order_refs: dict[int, str] = field(default_factory=dict)
    rejected: dict[int, str] = field(default_factory=dict)


class FillStatus(str, Enum):
    FILLED = "filled"
    PENDING = "pending"
    FAILED = "failed"


@dataclass(slots=True)
class FillRequest:
    order_id: int
    symbol: str
    shares: Decimal
    amount: Decimal
    target_price: Decimal | None
    broker_ref: str | None = None
    broker_account_id: str | None = None


@dataclass(slots=True)
class FillResult:
    status: FillStatus
    price: Decimal | None = None
    shares: Decimal | None = None
    amount: Decimal | None = None
    error: str | None = None
    venue_status: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "price": _num(self.price),
            "shares": _num(self.shares),
            "amount": _num(self.amount),
            "error": self.error,
            "venue_status": self.venue_status,
        }


class BrokerAdapter(Protocol):
    """Capability surface every broker variant implements."""

    config: BrokerConfig

    async def dispatch(self, feed: BrokerFeed) -> AckResult:
        ...

    async def fetch_fill(self, request: FillRequest) -> FillResult:
        ...


__all__ = [
    "AckResult",
    "BrokerAdapter",
    "BrokerConfig",
    "BrokerFeed",
    "FeedOrder",
    "FillRequest",
    "FillResult",
    "FillStatus",
]
