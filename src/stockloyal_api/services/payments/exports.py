"""CSV payloads produced for a settlement batch."""

from __future__ import annotations

import csv
from decimal import Decimal
from io import StringIO
from typing import Iterable

from stockloyal_api.models.common import as_iso
from stockloyal_api.models.order import Order
from stockloyal_api.services.brokers import BrokerConfig

DETAIL_COLUMNS = [
    "batch_id",
    "merchant_id",
    "broker",
    "member_id",
    "order_id",
    "basket_id",
    "symbol",
    "shares",
    "amount_cash",
    "points_used",
    "executed_at",
]

ACH_COLUMNS = [
    "batch_id",
    "merchant_id",
    "broker_id",
    "broker_name",
    "payment_amount",
    "bank_name",
    "routing_number",
    "account_number",
    "account_type",
    "order_count",
]


def build_detail_csv(batch_id: str, orders: Iterable[Order]) -> str:
    output = StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(DETAIL_COLUMNS)
    for order in orders:
        shares = order.executed_shares if order.executed_shares is not None else order.shares
        writer.writerow(
            [
                batch_id,
                order.merchant_id,
                order.broker,
                order.member_id,
                order.order_id,
                order.basket_id,
                order.symbol,
                shares,
                f"{order.settlement_amount:.2f}",
                order.points_used,
                as_iso(order.executed_at) or "",
            ]
        )
    return output.getvalue()


def build_ach_csv(
    batch_id: str,
    merchant_id: str,
    broker: BrokerConfig,
    total_amount: Decimal,
    order_count: int,
) -> str:
    output = StringIO()
    writer = csv.writer(output, lineterminator="\n")
    writer.writerow(ACH_COLUMNS)
    writer.writerow(
        [
            batch_id,
            merchant_id,
            broker.broker_id,
            broker.broker_name,
            f"{total_amount:.2f}",
            broker.ach_bank_name or "",
            broker.ach_routing_num or "",
            broker.ach_account_num or "",
            broker.ach_account_type or "",
            order_count,
        ]
    )
    return output.getvalue()


__all__ = ["ACH_COLUMNS", "DETAIL_COLUMNS", "build_ach_csv", "build_detail_csv"]
