"""One-way approval of staged batches into live orders."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Any, Callable

from loguru import logger
from sqlalchemy import case, distinct, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from stockloyal_api.models.common import as_float
from stockloyal_api.models.order import Order, OrderStatusEnum
from stockloyal_api.models.prepare import PrepareBatch, PreparedOrder, PrepareStatusEnum
from stockloyal_api.observability.pipeline import get_pipeline_store
from stockloyal_api.services.errors import (
    BatchNotFoundError,
    BatchNotStagedError,
    PipelineError,
    PipelineOperationError,
)
from stockloyal_api.services.pricing import PriceFeed
from .engine import scope_locks

_SHARE_STEP = Decimal("0.000001")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ApprovalLock:
    """Irreversibly convert a staged batch into pending orders.

    The transition is a compare-and-set on the batch row (``status='staged'``)
    inside the same transaction that inserts the orders, so of two concurrent
    approvals only one can materialize orders; the other sees a rowcount of
    zero and fails with ``BatchNotStagedError``. ``orders.prepared_order_id``
    is unique as a second guard.
    """

    def __init__(self, session: AsyncSession, *, clock: Callable[[], datetime] | None = None) -> None:
        self._session = session
        self._clock = clock or _utcnow

    async def _load(self, batch_id: str) -> PrepareBatch:
        stmt = select(PrepareBatch).where(PrepareBatch.batch_id == batch_id).execution_options(populate_existing=True)
        batch = (await self._session.execute(stmt)).scalars().first()
        if batch is None:
            raise BatchNotFoundError(batch_id)
        return batch

    async def summary(self, batch_id: str) -> dict[str, Any]:
        """Counts and amounts an approval would materialize; no writes."""

        batch = await self._load(batch_id)
        staged = batch.status == PrepareStatusEnum.STAGED
        filters = [PreparedOrder.batch_id == batch_id]
        if staged:
            filters.append(PreparedOrder.status == PrepareStatusEnum.STAGED)

        row = (
            await self._session.execute(
                select(
                    func.count(PreparedOrder.id),
                    func.count(distinct(PreparedOrder.member_id)),
                    func.coalesce(func.sum(PreparedOrder.amount), 0),
                    func.coalesce(func.sum(PreparedOrder.points_used), 0),
                    func.coalesce(func.sum(case((PreparedOrder.price.is_(None), 1), else_=0)), 0),
                ).where(*filters)
            )
        ).one()
        brokers = (
            await self._session.execute(
                select(distinct(PreparedOrder.broker)).where(*filters).order_by(PreparedOrder.broker)
            )
        ).scalars().all()

        return {
            "batch_id": batch_id,
            "status": batch.status.value,
            "can_approve": staged,
            "orders": row[0],
            "members": row[1],
            "total_amount": as_float(row[2]),
            "total_points": int(row[3]),
            "missing_prices": int(row[4]),
            "brokers": [broker for broker in brokers if broker],
            "refresh_count": batch.refresh_count,
        }

    async def approve(self, batch_id: str) -> dict[str, Any]:
        batch = await self._load(batch_id)
        store = get_pipeline_store()
        async with scope_locks.hold(batch.scope_key):
            try:
                result = await self._approve_locked(batch_id)
            except PipelineError as exc:
                store.record("approve", success=False, run_id=batch_id, error=str(exc))
                raise
        store.record("approve", success=True, run_id=batch_id, duration_seconds=result["duration_seconds"])
        return result

    async def _approve_locked(self, batch_id: str) -> dict[str, Any]:
        timer = time.perf_counter()
        approved_at = self._clock()
        try:
            transition = await self._session.execute(
                update(PrepareBatch)
                .where(PrepareBatch.batch_id == batch_id, PrepareBatch.status == PrepareStatusEnum.STAGED)
                .values(status=PrepareStatusEnum.APPROVED, staged_scope_key=None, approved_at=approved_at)
            )
            if transition.rowcount != 1:
                await self._session.rollback()
                current = await self._load(batch_id)
                raise BatchNotStagedError(batch_id, current.status.value)

            rows = (
                await self._session.execute(
                    select(PreparedOrder)
                    .where(PreparedOrder.batch_id == batch_id, PreparedOrder.status == PrepareStatusEnum.STAGED)
                    .order_by(PreparedOrder.id)
                )
            ).scalars().all()

            missing_prices = 0
            for row in rows:
                price_missing = row.price is None
                missing_prices += int(price_missing)
                self._session.add(
                    Order(
                        batch_id=batch_id,
                        prepared_order_id=row.id,
                        basket_id=row.basket_id,
                        member_id=row.member_id,
                        merchant_id=row.merchant_id,
                        broker=row.broker,
                        symbol=row.symbol,
                        order_type="sweep",
                        price=row.price,
                        price_missing=price_missing,
                        shares=row.shares,
                        amount=row.amount,
                        points_used=row.points_used,
                        status=OrderStatusEnum.PENDING,
                    )
                )

            await self._session.execute(
                update(PreparedOrder)
                .where(PreparedOrder.batch_id == batch_id, PreparedOrder.status == PrepareStatusEnum.STAGED)
                .values(status=PrepareStatusEnum.APPROVED)
            )
            batch = await self._session.get(PrepareBatch, batch_id)
            batch.orders_created = len(rows)
            batch.missing_prices = missing_prices
            await self._session.commit()
        except PipelineError:
            raise
        except IntegrityError as exc:
            await self._session.rollback()
            raise BatchNotStagedError(batch_id, "approved") from exc
        except SQLAlchemyError as exc:
            await self._session.rollback()
            logger.exception("Batch approval failed", batch_id=batch_id, error=str(exc))
            raise PipelineOperationError(f"Failed to approve batch {batch_id}: {exc}") from exc

        duration = round(time.perf_counter() - timer, 3)
        logger.info(
            "Batch approved",
            batch_id=batch_id,
            orders_created=len(rows),
            missing_prices=missing_prices,
            duration_seconds=duration,
        )
        return {
            "batch_id": batch_id,
            "status": PrepareStatusEnum.APPROVED.value,
            "orders_created": len(rows),
            "missing_prices": missing_prices,
            "duration_seconds": duration,
        }

    async def reprice_missing(self, price_feed: PriceFeed, *, batch_id: str | None = None) -> dict[str, Any]:
        """Retry prices for pending orders flagged ``price_missing`` so they become sweep-eligible."""

        stmt = (
            select(Order)
            .where(Order.status == OrderStatusEnum.PENDING, Order.price_missing.is_(True))
            .order_by(Order.order_id)
        )
        if batch_id:
            stmt = stmt.where(Order.batch_id == batch_id)
        orders = (await self._session.execute(stmt)).scalars().all()
        if not orders:
            return {"orders_checked": 0, "orders_repriced": 0, "still_missing": 0}

        prices = await price_feed.fetch_prices({order.symbol for order in orders})
        repriced = 0
        try:
            for order in orders:
                price = prices.get(order.symbol)
                if price is None:
                    continue
                order.price = price
                order.shares = (order.amount / price).quantize(_SHARE_STEP, rounding=ROUND_HALF_EVEN)
                order.price_missing = False
                repriced += 1
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            raise PipelineOperationError(f"Failed to reprice orders: {exc}") from exc

        logger.info("Missing prices repaired", orders_checked=len(orders), orders_repriced=repriced)
        return {
            "orders_checked": len(orders),
            "orders_repriced": repriced,
            "still_missing": len(orders) - repriced,
        }


__all__ = ["ApprovalLock"]
