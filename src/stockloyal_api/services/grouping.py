"""Ordered grouping of orders by merchant, broker and basket keys."""

from __future__ import annotations

from collections import OrderedDict
from typing import Callable, Hashable, Iterable, TypeVar

from stockloyal_api.models.order import Order

T = TypeVar("T")
K = TypeVar("K", bound=Hashable)


def group_by(items: Iterable[T], key: Callable[[T], K]) -> "OrderedDict[K, list[T]]":
    groups: "OrderedDict[K, list[T]]" = OrderedDict()
    for item in items:
        groups.setdefault(key(item), []).append(item)
    return groups


def feed_key(order: Order) -> tuple[str | None, str | None]:
    return (order.merchant_id, order.broker)


def basket_key(order: Order) -> tuple[str | None, str | None, str]:
    return (order.merchant_id, order.broker, order.basket_id)


__all__ = ["basket_key", "feed_key", "group_by"]
