"""Fill placed orders through their broker adapter (live or simulated)."""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from stockloyal_api.models.common import as_float, as_iso
from stockloyal_api.models.member import Wallet
from stockloyal_api.models.order import Order, OrderStatusEnum
from stockloyal_api.models.sweep import ExecutionEventEnum, ExecutionRecord
from stockloyal_api.observability.pipeline import get_pipeline_store
from stockloyal_api.services.brokers import BrokerAdapter, BrokerRegistry, FillRequest, FillResult, FillStatus
from stockloyal_api.services.errors import (
    BrokerDispatchError,
    NoPlacedOrdersError,
    PipelineError,
    PipelineOperationError,
)
from stockloyal_api.services.grouping import basket_key, group_by

_HISTORY_LIMIT = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _exec_id(now: datetime) -> str:
    return f"EXEC-{now.strftime('%Y%m%d-%H%M%S')}-{secrets.token_hex(3)}"


@dataclass(slots=True)
class _Basket:
    merchant_id: str | None
    broker: str | None
    basket_id: str
    member_id: str
    sweep_batch_id: str | None
    requests: list[FillRequest] = field(default_factory=list)

    def result(
        self,
        *,
        executed: int = 0,
        failed: int = 0,
        pending: int = 0,
        fills: list[dict[str, Any]] | None = None,
        error: str | None = None,
    ) -> dict[str, Any]:
        return {
            "merchant_id": self.merchant_id,
            "broker": self.broker,
            "basket_id": self.basket_id,
            "orders_executed": executed,
            "orders_failed": failed,
            "orders_pending": pending,
            "fills": fills or [],
            "error": error,
        }


class ExecutionService:
    """Confirm placed orders with executed price, shares and amount.

    Merchant, basket and broker triggers are filters over the same placed
    set. Each order is filled on its own: a venue rejection marks that order
    ``failed`` and a fill the venue has not reported yet leaves it ``placed``
    for the next run.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        registry: BrokerRegistry,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._session = session
        self._registry = registry
        self._clock = clock or _utcnow

    async def _placed(
        self,
        *,
        merchant_id: str | None = None,
        basket_id: str | None = None,
        broker: str | None = None,
    ) -> list[tuple[Order, str | None]]:
        stmt = (
            select(Order, Wallet.broker_account_id)
            .outerjoin(Wallet, Wallet.member_id == Order.member_id)
            .where(Order.status == OrderStatusEnum.PLACED)
            .order_by(Order.merchant_id, Order.broker, Order.basket_id, Order.order_id)
        )
        if merchant_id:
            stmt = stmt.where(Order.merchant_id == merchant_id)
        if basket_id:
            stmt = stmt.where(Order.basket_id == basket_id)
        if broker:
            stmt = stmt.where(Order.broker == broker)
        return [(order, account) for order, account in (await self._session.execute(stmt)).all()]

    async def preview(self, *, broker: str | None = None, merchant_id: str | None = None) -> dict[str, Any]:
        rows = await self._placed(merchant_id=merchant_id, broker=broker)
        brokers: dict[str, dict[str, Any]] = {}
        for (_, broker_name, basket), orders in group_by((order for order, _ in rows), basket_key).items():
            entry = brokers.setdefault(
                broker_name or "",
                {"broker": broker_name, "order_count": 0, "total_amount": Decimal("0"), "baskets": []},
            )
            amount = sum((order.amount for order in orders), Decimal("0"))
            entry["order_count"] += len(orders)
            entry["total_amount"] += amount
            entry["baskets"].append(
                {
                    "basket_id": basket,
                    "merchant_id": orders[0].merchant_id,
                    "member_id": orders[0].member_id,
                    "sweep_batch_id": orders[0].sweep_batch_id,
                    "order_count": len(orders),
                    "total_amount": float(amount),
                    "orders": [order.as_dict() for order in orders],
                }
            )
        for entry in brokers.values():
            entry["total_amount"] = float(entry["total_amount"])
        return {
            "total_orders": len(rows),
            "total_amount": float(sum((order.amount for order, _ in rows), Decimal("0"))),
            "brokers": list(brokers.values()),
        }

    async def execute(
        self,
        *,
        merchant_id: str | None = None,
        basket_id: str | None = None,
        broker: str | None = None,
    ) -> dict[str, Any]:
        store = get_pipeline_store()
        try:
            result = await self._execute(merchant_id=merchant_id, basket_id=basket_id, broker=broker)
        except PipelineError as exc:
            store.record("execute", success=False, error=str(exc))
            raise
        store.record("execute", success=True, run_id=result["exec_id"], duration_seconds=result["duration_seconds"])
        return result

    def _baskets(self, rows: list[tuple[Order, str | None]]) -> list[_Basket]:
        accounts = {order.order_id: account for order, account in rows}
        baskets = []
        for (merchant, broker, basket_id), orders in group_by((order for order, _ in rows), basket_key).items():
            baskets.append(
                _Basket(
                    merchant_id=merchant,
                    broker=broker,
                    basket_id=basket_id,
                    member_id=orders[0].member_id,
                    sweep_batch_id=orders[0].sweep_batch_id,
                    requests=[
                        FillRequest(
                            order_id=order.order_id,
                            symbol=order.symbol,
                            shares=Decimal(order.shares or 0),
                            amount=Decimal(order.amount),
                            target_price=order.price,
                            broker_ref=order.broker_ref,
                            broker_account_id=accounts.get(order.order_id),
                        )
                        for order in orders
                    ],
                )
            )
        return baskets

    async def _execute(self, *, merchant_id: str | None, basket_id: str | None, broker: str | None) -> dict[str, Any]:
        timer = time.perf_counter()
        exec_id = _exec_id(self._clock())
        try:
            rows = await self._placed(merchant_id=merchant_id, basket_id=basket_id, broker=broker)
        except SQLAlchemyError as exc:
            raise PipelineOperationError(f"Failed to load placed orders: {exc}") from exc

        if not rows and (merchant_id or basket_id):
            target = f"basket {basket_id}" if basket_id else f"merchant {merchant_id}"
            raise NoPlacedOrdersError(f"No placed orders found for {target}")

        counts = {"executed": 0, "failed": 0, "pending": 0}
        basket_results: list[dict[str, Any]] = []
        errors: list[dict[str, Any]] = []
        adapters: dict[str, BrokerAdapter | PipelineError] = {}

        for basket in self._baskets(rows):
            key = basket.broker or ""
            if key not in adapters:
                try:
                    adapters[key] = await self._registry.resolve(basket.broker)
                except PipelineError as exc:
                    adapters[key] = exc
            adapter = adapters[key]
            if isinstance(adapter, PipelineError):
                result = basket.result(pending=len(basket.requests), error=str(adapter))
            else:
                result = await self._execute_basket(exec_id, adapter, basket)

            counts["executed"] += result["orders_executed"]
            counts["failed"] += result["orders_failed"]
            counts["pending"] += result["orders_pending"]
            if result["error"]:
                errors.append(
                    {
                        "merchant_id": basket.merchant_id,
                        "broker": basket.broker,
                        "basket_id": basket.basket_id,
                        "error": result["error"],
                    }
                )
            for fill in result["fills"]:
                if fill.get("error"):
                    errors.append({"basket_id": basket.basket_id, "order_id": fill["order_id"], "error": fill["error"]})
            basket_results.append(result)

        duration = round(time.perf_counter() - timer, 3)
        logger.info(
            "Execution completed",
            exec_id=exec_id,
            merchant_id=merchant_id,
            basket_id=basket_id,
            orders_executed=counts["executed"],
            orders_failed=counts["failed"],
            orders_pending=counts["pending"],
            duration_seconds=duration,
        )
        return {
            "exec_id": exec_id,
            "orders_executed": counts["executed"],
            "orders_failed": counts["failed"],
            "orders_pending": counts["pending"],
            "baskets_processed": len(basket_results),
            "basket_results": basket_results,
            "errors": errors,
            "duration_seconds": duration,
        }

    async def _fill(self, adapter: BrokerAdapter, request: FillRequest) -> FillResult:
        try:
            return await adapter.fetch_fill(request)
        except BrokerDispatchError as exc:
            return FillResult(status=FillStatus.PENDING, error=str(exc))

    async def _apply(self, exec_id: str, order_id: int, fill: FillResult, executed_at: datetime) -> bool:
        if fill.status is FillStatus.FILLED:
            values = {
                "status": OrderStatusEnum.CONFIRMED,
                "executed_price": fill.price,
                "executed_shares": fill.shares,
                "executed_amount": fill.amount,
                "executed_at": executed_at,
                "exec_id": exec_id,
            }
        else:
            values = {"status": OrderStatusEnum.FAILED, "failure_reason": fill.error, "exec_id": exec_id}
        result = await self._session.execute(
            update(Order)
            .where(Order.order_id == order_id, Order.status == OrderStatusEnum.PLACED)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        return bool(result.rowcount)

    async def _execute_basket(self, exec_id: str, adapter: BrokerAdapter, basket: _Basket) -> dict[str, Any]:
        outcomes = [(request, await self._fill(adapter, request)) for request in basket.requests]

        fills: list[dict[str, Any]] = []
        executed = failed = pending = 0
        executed_at = self._clock()
        try:
            for request, fill in outcomes:
                applied = False
                if fill.status is FillStatus.PENDING:
                    pending += 1
                else:
                    applied = await self._apply(exec_id, request.order_id, fill, executed_at)
                    if applied and fill.status is FillStatus.FILLED:
                        executed += 1
                    elif applied:
                        failed += 1
                fills.append({"order_id": request.order_id, "symbol": request.symbol, "applied": applied, **fill.as_dict()})

            self._session.add(
                ExecutionRecord(
                    exec_id=exec_id,
                    event_type=ExecutionEventEnum.ORDER_CONFIRMED,
                    sweep_batch_id=basket.sweep_batch_id,
                    merchant_id=basket.merchant_id,
                    broker=basket.broker,
                    basket_id=basket.basket_id,
                    member_id=basket.member_id,
                    request_payload={"orders": [request.order_id for request in basket.requests]},
                    response_payload={"fills": fills},
                    acknowledged=executed > 0,
                    error_message=None if executed or not failed else "No orders filled",
                )
            )
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            logger.error("Basket execution write failed", exec_id=exec_id, basket_id=basket.basket_id, error=str(exc))
            return basket.result(pending=len(basket.requests), error=f"Failed to record fills: {exc}")

        logger.info(
            "Basket executed",
            exec_id=exec_id,
            basket_id=basket.basket_id,
            broker=basket.broker,
            orders_executed=executed,
            orders_failed=failed,
            orders_pending=pending,
        )
        return basket.result(executed=executed, failed=failed, pending=pending, fills=fills)

    async def history(self, limit: int = 25) -> list[dict[str, Any]]:
        """Execution runs, newest first, one entry per ``exec_id``."""

        limit = max(1, min(limit, _HISTORY_LIMIT))
        runs = (
            await self._session.execute(
                select(
                    ExecutionRecord.exec_id,
                    func.count(ExecutionRecord.id),
                    func.count(func.distinct(ExecutionRecord.merchant_id)),
                    func.min(ExecutionRecord.created_at),
                )
                .where(ExecutionRecord.event_type == ExecutionEventEnum.ORDER_CONFIRMED)
                .group_by(ExecutionRecord.exec_id)
                .order_by(func.min(ExecutionRecord.created_at).desc(), ExecutionRecord.exec_id.desc())
                .limit(limit)
            )
        ).all()
        if not runs:
            return []

        exec_ids = [row[0] for row in runs]
        order_rows = (
            await self._session.execute(
                select(Order.exec_id, Order.status, func.count(Order.order_id), func.coalesce(func.sum(Order.executed_amount), 0))
                .where(Order.exec_id.in_(exec_ids))
                .group_by(Order.exec_id, Order.status)
            )
        ).all()
        by_exec: dict[str, dict[str, Any]] = {}
        for exec_id, status, count, amount in order_rows:
            entry = by_exec.setdefault(exec_id, {"orders_executed": 0, "orders_failed": 0, "executed_amount": Decimal("0")})
            if status == OrderStatusEnum.FAILED:
                entry["orders_failed"] += count
            else:
                entry["orders_executed"] += count
                entry["executed_amount"] += Decimal(amount)

        history = []
        for exec_id, baskets, merchants, started_at in runs:
            entry = by_exec.get(exec_id, {"orders_executed": 0, "orders_failed": 0, "executed_amount": Decimal("0")})
            history.append(
                {
                    "exec_id": exec_id,
                    "baskets": baskets,
                    "merchants": merchants,
                    "orders_executed": entry["orders_executed"],
                    "orders_failed": entry["orders_failed"],
                    "executed_amount": as_float(entry["executed_amount"]),
                    "executed_at": as_iso(started_at),
                }
            )
        return history

    async def exec_orders(self, exec_id: str) -> list[dict[str, Any]]:
        rows = (
            await self._session.execute(select(Order).where(Order.exec_id == exec_id).order_by(Order.order_id))
        ).scalars().all()
        return [order.as_dict() for order in rows]


__all__ = ["ExecutionService"]
