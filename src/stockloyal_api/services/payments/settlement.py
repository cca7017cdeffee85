"""Settlement of executed orders into ACH payment batches, and their reversal."""

from __future__ import annotations

import hashlib
import inspect
import re
import time
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Awaitable, Callable

from loguru import logger
from sqlalchemy import delete, distinct, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from stockloyal_api.models.common import as_float
from stockloyal_api.models.merchant import Broker, BrokerTypeEnum
from stockloyal_api.models.order import SETTLEABLE_STATUSES, Order, OrderStatusEnum
from stockloyal_api.models.payment import LedgerEntry, PaymentBatch, PaymentBatchStatusEnum
from stockloyal_api.observability.pipeline import get_pipeline_store
from stockloyal_api.services.brokers import BrokerConfig
from stockloyal_api.services.errors import (
    PaymentBatchAlreadyCancelledError,
    PaymentBatchNotFoundError,
    PipelineError,
    PipelineOperationError,
)
from stockloyal_api.services.locks import KeyedLocks
from stockloyal_api.services.rates import quantize_cents
from .exports import build_ach_csv, build_detail_csv

Progress = Callable[[int, int, dict[str, Any]], Awaitable[None] | None]

_MAX_PAGE = 100
_UNSAFE_ID_CHARS = re.compile(r"[^A-Za-z0-9-]+")

pair_locks = KeyedLocks()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def batch_id_part(value: str, fallback: str) -> str:
    """Id segment without underscores; a value that needed cleaning carries a digest of the original."""

    cleaned = _UNSAFE_ID_CHARS.sub("", value) or fallback
    if cleaned != value:
        cleaned = f"{cleaned}-{hashlib.sha1(value.encode('utf-8')).hexdigest()[:6]}"
    return cleaned


def _unpaid():
    return (Order.status.in_(SETTLEABLE_STATUSES), Order.paid_flag.is_(False))


class PaymentSettlementEngine:
    """Aggregate unpaid executed orders into one payment batch per merchant and broker.

    Batch ids for a pair are generated and written under a per-pair lock, so
    sequence numbers never collide; different pairs may settle concurrently.
    Multi-pair runs are sequential calls to ``process``.
    """

    def __init__(self, session: AsyncSession, *, clock: Callable[[], datetime] | None = None) -> None:
        self._session = session
        self._clock = clock or _utcnow

    async def pending_summary(self, merchant_id: str | None = None) -> dict[str, Any]:
        stmt = (
            select(
                Order.merchant_id,
                Order.broker,
                func.count(Order.order_id),
                func.count(distinct(Order.member_id)),
                func.coalesce(func.sum(func.coalesce(Order.executed_amount, Order.amount)), 0),
            )
            .where(*_unpaid())
            .group_by(Order.merchant_id, Order.broker)
            .order_by(Order.merchant_id, Order.broker)
        )
        if merchant_id:
            stmt = stmt.where(Order.merchant_id == merchant_id)
        rows = (await self._session.execute(stmt)).all()

        merchants: dict[str, dict[str, Any]] = {}
        for merchant, broker, count, members, amount in rows:
            entry = merchants.setdefault(
                merchant or "",
                {"merchant_id": merchant, "order_count": 0, "total_amount": Decimal("0"), "brokers": []},
            )
            entry["order_count"] += count
            entry["total_amount"] += Decimal(amount)
            entry["brokers"].append(
                {"broker": broker, "order_count": count, "members": members, "total_amount": as_float(amount)}
            )
        for entry in merchants.values():
            entry["total_amount"] = float(entry["total_amount"])

        return {
            "merchants": list(merchants.values()),
            "total_orders": sum(entry["order_count"] for entry in merchants.values()),
            "total_amount": round(sum(entry["total_amount"] for entry in merchants.values()), 2),
        }

    async def _broker_config(self, broker: str) -> BrokerConfig:
        row = (
            await self._session.execute(select(Broker).where(or_(Broker.broker_name == broker, Broker.broker_id == broker)))
        ).scalars().first()
        if row is None:
            return BrokerConfig(broker_id=broker, broker_name=broker, broker_type=BrokerTypeEnum.WEBHOOK)
        return BrokerConfig.from_model(row)

    async def _next_batch_id(self, merchant_id: str, broker: str, paid_at: datetime) -> str:
        merchant_part = batch_id_part(merchant_id, "merchant")
        broker_part = batch_id_part(broker, "broker")
        prefix = f"ACH_{merchant_part}_{broker_part}_{paid_at.strftime('%Y%m%d')}_"
        stmt = select(PaymentBatch.batch_id).where(
            PaymentBatch.merchant_id == merchant_id,
            PaymentBatch.broker == broker,
            PaymentBatch.batch_id.startswith(prefix, autoescape=True),
        )
        existing = (await self._session.execute(stmt)).scalars().all()
        seq = 0
        for batch_id in existing:
            suffix = batch_id[len(prefix):]
            if suffix.isdigit():
                seq = max(seq, int(suffix))
        return f"{prefix}{seq + 1:03d}"

    async def process(self, merchant_id: str, broker: str) -> dict[str, Any]:
        store = get_pipeline_store()
        async with pair_locks.hold((merchant_id, broker)):
            try:
                result = await self._process_locked(merchant_id, broker)
            except PipelineError as exc:
                store.record("settle", success=False, error=str(exc))
                raise
        store.record("settle", success=True, run_id=result["batch_id"], duration_seconds=result["duration_seconds"])
        return result

    async def _process_locked(self, merchant_id: str, broker: str) -> dict[str, Any]:
        timer = time.perf_counter()
        orders = (
            await self._session.execute(
                select(Order)
                .where(Order.merchant_id == merchant_id, Order.broker == broker, *_unpaid())
                .order_by(Order.member_id, Order.order_id)
                .execution_options(populate_existing=True)
            )
        ).scalars().all()
        if not orders:
            return {
                "batch_id": None,
                "merchant_id": merchant_id,
                "broker": broker,
                "order_count": 0,
                "member_count": 0,
                "total_amount": 0.0,
                "detail_csv": "",
                "ach_csv": "",
                "duration_seconds": round(time.perf_counter() - timer, 3),
            }

        paid_at = self._clock()
        order_ids = [order.order_id for order in orders]
        total = quantize_cents(sum((Decimal(order.settlement_amount) for order in orders), Decimal("0")))
        members: dict[str, list[Order]] = {}
        for order in orders:
            members.setdefault(order.member_id, []).append(order)

        try:
            config = await self._broker_config(broker)
            batch_id = await self._next_batch_id(merchant_id, broker, paid_at)
            detail_csv = build_detail_csv(batch_id, orders)
            ach_csv = build_ach_csv(batch_id, merchant_id, config, total, len(orders))

            self._session.add(
                PaymentBatch(
                    batch_id=batch_id,
                    merchant_id=merchant_id,
                    broker=broker,
                    order_count=len(orders),
                    total_amount=total,
                    status=PaymentBatchStatusEnum.SETTLED,
                    detail_csv=detail_csv,
                    ach_csv=ach_csv,
                    paid_at=paid_at,
                )
            )
            marked = await self._session.execute(
                update(Order)
                .where(Order.order_id.in_(order_ids), *_unpaid())
                .values(status=OrderStatusEnum.SETTLED, paid_flag=True, paid_batch_id=batch_id, paid_at=paid_at)
                .execution_options(synchronize_session="fetch")
            )
            if marked.rowcount != len(order_ids):
                raise PipelineOperationError(
                    f"Orders for {merchant_id}/{broker} changed during settlement; retry",
                    status_code=409,
                )

            for member_id, member_orders in members.items():
                self._session.add(
                    LedgerEntry(
                        member_id=member_id,
                        merchant_id=merchant_id,
                        broker=broker,
                        client_tx_id=f"{batch_id}-{member_id}",
                        external_ref=batch_id,
                        amount_cash=quantize_cents(
                            sum((Decimal(order.settlement_amount) for order in member_orders), Decimal("0"))
                        ),
                        order_count=len(member_orders),
                        note=f"ACH settlement {batch_id}",
                    )
                )
            await self._session.commit()
        except PipelineError:
            await self._session.rollback()
            raise
        except IntegrityError as exc:
            await self._session.rollback()
            raise PipelineOperationError(
                f"Settlement batch id collision for {merchant_id}/{broker}; retry",
                status_code=409,
            ) from exc
        except SQLAlchemyError as exc:
            await self._session.rollback()
            logger.exception("Settlement failed", merchant_id=merchant_id, broker=broker, error=str(exc))
            raise PipelineOperationError(f"Failed to settle {merchant_id}/{broker}: {exc}") from exc

        duration = round(time.perf_counter() - timer, 3)
        logger.info(
            "Payment batch settled",
            batch_id=batch_id,
            merchant_id=merchant_id,
            broker=broker,
            order_count=len(orders),
            total_amount=str(total),
        )
        return {
            "batch_id": batch_id,
            "merchant_id": merchant_id,
            "broker": broker,
            "order_count": len(order_ids),
            "member_count": len(members),
            "total_amount": float(total),
            "detail_csv": detail_csv,
            "ach_csv": ach_csv,
            "paid_at": paid_at.isoformat(),
            "duration_seconds": duration,
        }

    async def _pending_pairs(self, merchant_id: str | None = None) -> list[tuple[str, str]]:
        stmt = (
            select(Order.merchant_id, Order.broker)
            .where(*_unpaid(), Order.merchant_id.is_not(None), Order.broker.is_not(None))
            .group_by(Order.merchant_id, Order.broker)
            .order_by(Order.merchant_id, Order.broker)
        )
        if merchant_id:
            stmt = stmt.where(Order.merchant_id == merchant_id)
        return [(row[0], row[1]) for row in (await self._session.execute(stmt)).all()]

    async def _process_pairs(self, pairs: list[tuple[str, str]], progress: Progress | None) -> dict[str, Any]:
        results: list[dict[str, Any]] = []
        errors: list[dict[str, Any]] = []
        for index, (merchant_id, broker) in enumerate(pairs, start=1):
            try:
                result = await self.process(merchant_id, broker)
            except PipelineError as exc:
                logger.warning("Settlement pair failed", merchant_id=merchant_id, broker=broker, error=str(exc))
                result = {"merchant_id": merchant_id, "broker": broker, "batch_id": None, "error": str(exc)}
                errors.append(result)
            else:
                results.append(result)
            if progress is not None:
                outcome = progress(index, len(pairs), result)
                if inspect.isawaitable(outcome):
                    await outcome

        created = [result for result in results if result.get("batch_id")]
        return {
            "pairs_total": len(pairs),
            "batches_created": len(created),
            "orders_settled": sum(result["order_count"] for result in created),
            "total_amount": round(sum(result["total_amount"] for result in created), 2),
            "results": results,
            "errors": errors,
        }

    async def process_merchant(self, merchant_id: str, progress: Progress | None = None) -> dict[str, Any]:
        summary = await self._process_pairs(await self._pending_pairs(merchant_id), progress)
        return {"merchant_id": merchant_id, **summary}

    async def process_all(self, progress: Progress | None = None) -> dict[str, Any]:
        return await self._process_pairs(await self._pending_pairs(), progress)

    async def _load_batch(self, batch_id: str) -> PaymentBatch:
        batch = (
            await self._session.execute(
                select(PaymentBatch).where(PaymentBatch.batch_id == batch_id).execution_options(populate_existing=True)
            )
        ).scalars().first()
        if batch is None:
            raise PaymentBatchNotFoundError(batch_id)
        return batch

    async def cancel_summary(self, batch_id: str) -> dict[str, Any]:
        batch = await self._load_batch(batch_id)
        orders, members = (
            await self._session.execute(
                select(func.count(Order.order_id), func.count(distinct(Order.member_id))).where(
                    Order.paid_batch_id == batch_id
                )
            )
        ).one()
        ledger_entries = (
            await self._session.execute(select(func.count(LedgerEntry.id)).where(LedgerEntry.external_ref == batch_id))
        ).scalar_one()
        return {
            "batch_id": batch_id,
            "merchant_id": batch.merchant_id,
            "broker": batch.broker,
            "status": batch.status.value,
            "can_cancel": batch.status == PaymentBatchStatusEnum.SETTLED,
            "order_count": orders,
            "members": members,
            "total_amount": as_float(batch.total_amount),
            "ledger_entries": ledger_entries,
        }

    async def cancel(self, batch_id: str, *, remove_ledger: bool = True) -> dict[str, Any]:
        """Reverse a settled batch: orders back to ``executed`` and unpaid, ledger rows removed."""

        store = get_pipeline_store()
        batch = await self._load_batch(batch_id)
        if batch.status == PaymentBatchStatusEnum.CANCELLED:
            store.record("cancel_settlement", success=False, run_id=batch_id, error="already cancelled")
            raise PaymentBatchAlreadyCancelledError(batch_id)

        async with pair_locks.hold((batch.merchant_id, batch.broker)):
            try:
                transition = await self._session.execute(
                    update(PaymentBatch)
                    .where(PaymentBatch.batch_id == batch_id, PaymentBatch.status == PaymentBatchStatusEnum.SETTLED)
                    .values(status=PaymentBatchStatusEnum.CANCELLED, cancelled_at=self._clock())
                    .execution_options(synchronize_session="fetch")
                )
                if transition.rowcount != 1:
                    await self._session.rollback()
                    raise PaymentBatchAlreadyCancelledError(batch_id)

                reverted = await self._session.execute(
                    update(Order)
                    .where(Order.paid_batch_id == batch_id)
                    .values(status=OrderStatusEnum.EXECUTED, paid_flag=False, paid_batch_id=None, paid_at=None)
                    .execution_options(synchronize_session="fetch")
                )
                removed = 0
                if remove_ledger:
                    deleted = await self._session.execute(
                        delete(LedgerEntry)
                        .where(LedgerEntry.external_ref == batch_id)
                        .execution_options(synchronize_session="fetch")
                    )
                    removed = deleted.rowcount or 0
                await self._session.commit()
            except PipelineError as exc:
                store.record("cancel_settlement", success=False, run_id=batch_id, error=str(exc))
                raise
            except SQLAlchemyError as exc:
                await self._session.rollback()
                logger.exception("Settlement cancellation failed", batch_id=batch_id, error=str(exc))
                store.record("cancel_settlement", success=False, run_id=batch_id, error=str(exc))
                raise PipelineOperationError(f"Failed to cancel payment batch {batch_id}: {exc}") from exc

        store.record("cancel_settlement", success=True, run_id=batch_id)
        logger.info(
            "Payment batch cancelled",
            batch_id=batch_id,
            orders_cancelled=reverted.rowcount,
            ledger_entries_removed=removed,
        )
        return {
            "batch_id": batch_id,
            "status": PaymentBatchStatusEnum.CANCELLED.value,
            "orders_cancelled": reverted.rowcount,
            "ledger_entries_removed": removed,
        }

    async def list_settled_batches(
        self,
        merchant_id: str | None = None,
        *,
        limit: int = 25,
        offset: int = 0,
    ) -> dict[str, Any]:
        limit = max(1, min(limit, _MAX_PAGE))
        offset = max(offset, 0)
        filters = [PaymentBatch.status == PaymentBatchStatusEnum.SETTLED]
        if merchant_id:
            filters.append(PaymentBatch.merchant_id == merchant_id)

        total = (await self._session.execute(select(func.count(PaymentBatch.batch_id)).where(*filters))).scalar_one()
        batches = (
            await self._session.execute(
                select(PaymentBatch)
                .where(*filters)
                .order_by(PaymentBatch.paid_at.desc(), PaymentBatch.batch_id.desc())
                .offset(offset)
                .limit(limit)
            )
        ).scalars().all()
        return {
            "batches": [batch.as_dict() for batch in batches],
            "count": len(batches),
            "total": total,
            "has_more": offset + len(batches) < total,
            "limit": limit,
            "offset": offset,
        }


__all__ = ["PaymentSettlementEngine", "batch_id_part", "pair_locks"]
