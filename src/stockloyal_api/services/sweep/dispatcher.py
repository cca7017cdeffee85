"""Sweep dispatch: send pending orders to brokers, one feed per merchant and broker."""

from __future__ import annotations

import asyncio
import secrets
import time
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Sequence
from zoneinfo import ZoneInfo

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from stockloyal_api.core.settings import settings
from stockloyal_api.models.member import Wallet
from stockloyal_api.models.merchant import Merchant
from stockloyal_api.models.order import Order, OrderStatusEnum
from stockloyal_api.models.sweep import ExecutionEventEnum, ExecutionRecord, SweepLog
from stockloyal_api.observability.pipeline import get_pipeline_store
from stockloyal_api.services.brokers import AckResult, BrokerAdapter, BrokerFeed, BrokerRegistry, FeedOrder
from stockloyal_api.services.errors import BrokerDispatchError, PipelineError, PipelineOperationError
from stockloyal_api.services.grouping import feed_key, group_by
from stockloyal_api.services.market import MarketClock, MarketStatus
from .schedule import DayOfMonthSchedule, SweepSchedule

_HISTORY_LIMIT = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _sweep_id(now: datetime) -> str:
    return f"SWP-{now.strftime('%Y%m%d-%H%M%S')}-{secrets.token_hex(3)}"


@dataclass(slots=True)
class _FeedOutcome:
    feed: BrokerFeed
    ack: AckResult
    orders_placed: int = 0


class SweepDispatcher:
    """Move approved ``pending`` orders to ``placed`` by acknowledging broker feeds.

    Only orders still ``pending`` are selected and updated, so a re-run picks
    up whatever the previous run left behind and never touches placed orders.
    The market state is checked before selection and again before each feed
    is sent whenever the cached status has gone stale.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        registry: BrokerRegistry,
        market: MarketClock,
        schedule: SweepSchedule | None = None,
        clock: Callable[[], datetime] | None = None,
        concurrency: int | None = None,
    ) -> None:
        self._session = session
        self._registry = registry
        self._market = market
        self._schedule = schedule or DayOfMonthSchedule()
        self._clock = clock or _utcnow
        self._concurrency = max(1, concurrency or settings.broker_dispatch_concurrency)
        self._write_lock = asyncio.Lock()

    def _market_today(self, now: datetime) -> date:
        return now.astimezone(ZoneInfo(settings.market_timezone)).date()

    async def _due_merchants(self, today: date) -> list[str]:
        rows = (await self._session.execute(select(Merchant.merchant_id, Merchant.sweep_day))).all()
        return [merchant_id for merchant_id, sweep_day in rows if self._schedule.is_due(sweep_day, today)]

    async def _eligible(
        self,
        today: date,
        *,
        merchant_id: str | None,
        broker: str | None,
    ) -> list[tuple[Order, str | None]]:
        stmt = (
            select(Order, Wallet.broker_account_id)
            .outerjoin(Wallet, Wallet.member_id == Order.member_id)
            .where(Order.status == OrderStatusEnum.PENDING, Order.price_missing.is_(False))
            .order_by(Order.merchant_id, Order.broker, Order.basket_id, Order.order_id)
        )
        if merchant_id:
            stmt = stmt.where(Order.merchant_id == merchant_id)
        else:
            due = await self._due_merchants(today)
            if not due:
                return []
            stmt = stmt.where(Order.merchant_id.in_(due))
        if broker:
            stmt = stmt.where(Order.broker == broker)
        return [(order, account) for order, account in (await self._session.execute(stmt)).all()]

    def _build_feeds(self, rows: Sequence[tuple[Order, str | None]], sweep_id: str, today: date) -> list[BrokerFeed]:
        accounts = {order.order_id: account for order, account in rows}
        feeds: list[BrokerFeed] = []
        for (merchant, broker), orders in group_by((order for order, _ in rows), feed_key).items():
            feeds.append(
                BrokerFeed(
                    sweep_batch_id=sweep_id,
                    merchant_id=merchant or "",
                    broker=broker or "",
                    sweep_date=today,
                    orders=[
                        FeedOrder(
                            order_id=order.order_id,
                            member_id=order.member_id,
                            basket_id=order.basket_id,
                            symbol=order.symbol,
                            shares=Decimal(order.shares or 0),
                            amount=Decimal(order.amount),
                            price=order.price,
                            points_used=order.points_used or 0,
                            broker_account_id=accounts.get(order.order_id),
                        )
                        for order in orders
                    ],
                )
            )
        return feeds

    async def preview(self, *, merchant_id: str | None = None, broker: str | None = None) -> dict[str, Any]:
        now = self._clock()
        status = await self._market.status(now=now)
        today = self._market_today(now)
        rows = await self._eligible(today, merchant_id=merchant_id, broker=broker)
        feeds = self._build_feeds(rows, "preview", today)

        previews = []
        for feed in feeds:
            baskets = group_by(feed.orders, lambda order: order.basket_id)
            previews.append(
                {
                    "merchant_id": feed.merchant_id,
                    "broker": feed.broker,
                    "order_count": len(feed.orders),
                    "total_amount": float(feed.total_amount),
                    "baskets": [
                        {
                            "basket_id": basket_id,
                            "member_id": orders[0].member_id,
                            "order_count": len(orders),
                            "total_amount": float(sum((order.amount for order in orders), Decimal("0"))),
                            "symbols": [order.symbol for order in orders],
                        }
                        for basket_id, orders in baskets.items()
                    ],
                }
            )

        return {
            "sweep_date": today.isoformat(),
            "market": status.as_dict(),
            "total_orders": len(rows),
            "total_amount": float(sum((feed.total_amount for feed in feeds), Decimal("0"))),
            "merchants": len({feed.merchant_id for feed in feeds}),
            "feeds": previews,
        }

    async def run(self, *, merchant_id: str | None = None, broker: str | None = None) -> dict[str, Any]:
        store = get_pipeline_store()
        try:
            result = await self._run(merchant_id=merchant_id, broker=broker)
        except PipelineError as exc:
            store.record("sweep", success=False, error=str(exc))
            raise
        if not result.get("market_closed"):
            store.record(
                "sweep",
                success=True,
                run_id=result["results"]["sweep_batch_id"],
                duration_seconds=result["results"]["duration_seconds"],
            )
        return result

    async def _run(self, *, merchant_id: str | None, broker: str | None) -> dict[str, Any]:
        timer = time.perf_counter()
        started_at = self._clock()
        status = await self._market.status(now=started_at, refresh=True)
        if not status.is_open:
            logger.info(
                "Sweep skipped; market closed",
                merchant_id=merchant_id,
                broker=broker,
                delay_reason=status.delay_reason,
                next_open=status.next_open.isoformat() if status.next_open else None,
            )
            return self._closed_result(status, timer)

        sweep_id = _sweep_id(started_at)
        today = self._market_today(started_at)
        try:
            rows = await self._eligible(today, merchant_id=merchant_id, broker=broker)
        except SQLAlchemyError as exc:
            raise PipelineOperationError(f"Failed to select sweep orders: {exc}") from exc
        feeds = self._build_feeds(rows, sweep_id, today)
        logger.info("Sweep started", sweep_batch_id=sweep_id, feeds=len(feeds), orders=len(rows))

        adapters: list[BrokerAdapter | AckResult] = []
        for feed in feeds:
            try:
                adapters.append(await self._registry.resolve(feed.broker))
            except PipelineError as exc:
                adapters.append(AckResult(acknowledged=False, error=str(exc)))

        semaphore = asyncio.Semaphore(self._concurrency)

        async def dispatch_one(feed: BrokerFeed, adapter: BrokerAdapter | AckResult) -> _FeedOutcome:
            async with semaphore:
                ack = adapter if isinstance(adapter, AckResult) else await self._dispatch(feed, adapter)
                return await self._record(feed, ack)

        outcomes = list(await asyncio.gather(*(dispatch_one(feed, adapter) for feed, adapter in zip(feeds, adapters))))
        results = self._summarize(sweep_id, outcomes, timer)
        await self._write_log(sweep_id, merchant_id, broker, outcomes, results, started_at)

        logger.info(
            "Sweep completed",
            sweep_batch_id=sweep_id,
            orders_placed=results["orders_placed"],
            orders_failed=results["orders_failed"],
            duration_seconds=results["duration_seconds"],
        )
        return {"market_closed": False, "market": status.as_dict(), "results": results}

    async def _dispatch(self, feed: BrokerFeed, adapter: BrokerAdapter) -> AckResult:
        status = await self._market.status()
        if not status.is_open:
            return AckResult(acknowledged=False, error=f"Market closed before dispatch ({status.delay_reason})")
        try:
            return await adapter.dispatch(feed)
        except BrokerDispatchError as exc:
            return AckResult(acknowledged=False, http_status=exc.http_status, error=str(exc))

    async def _record(self, feed: BrokerFeed, ack: AckResult) -> _FeedOutcome:
        outcome = _FeedOutcome(feed=feed, ack=ack)
        async with self._write_lock:
            try:
                self._session.add(
                    ExecutionRecord(
                        exec_id=feed.sweep_batch_id,
                        event_type=ExecutionEventEnum.SWEEP_DISPATCH,
                        sweep_batch_id=feed.sweep_batch_id,
                        merchant_id=feed.merchant_id,
                        broker=feed.broker,
                        request_payload=ack.request,
                        response_payload=ack.response,
                        http_status=ack.http_status,
                        acknowledged=ack.acknowledged,
                        error_message=ack.error,
                    )
                )
                if ack.acknowledged:
                    outcome.orders_placed = await self._place(feed, ack)
                await self._session.commit()
            except SQLAlchemyError as exc:
                await self._session.rollback()
                logger.exception("Sweep feed write failed", merchant_id=feed.merchant_id, broker=feed.broker)
                outcome.ack = AckResult(
                    acknowledged=False,
                    http_status=ack.http_status,
                    request=ack.request,
                    response=ack.response,
                    error=f"Failed to record dispatch: {exc}",
                )
                outcome.orders_placed = 0

        log = logger.info if outcome.ack.acknowledged else logger.warning
        log(
            "Sweep feed dispatched",
            sweep_batch_id=feed.sweep_batch_id,
            merchant_id=feed.merchant_id,
            broker=feed.broker,
            acknowledged=outcome.ack.acknowledged,
            orders_placed=outcome.orders_placed,
            error=outcome.ack.error,
        )
        return outcome

    async def _place(self, feed: BrokerFeed, ack: AckResult) -> int:
        placed_at = self._clock()
        by_ref: dict[str | None, list[int]] = {}
        for order in feed.orders:
            if order.order_id in ack.rejected:
                continue
            ref = ack.order_refs.get(order.order_id, ack.external_ref)
            by_ref.setdefault(ref, []).append(order.order_id)

        placed = 0
        for ref, order_ids in by_ref.items():
            result = await self._session.execute(
                update(Order)
                .where(Order.order_id.in_(order_ids), Order.status == OrderStatusEnum.PENDING)
                .values(
                    status=OrderStatusEnum.PLACED,
                    placed_at=placed_at,
                    sweep_batch_id=feed.sweep_batch_id,
                    broker_ref=ref,
                )
                .execution_options(synchronize_session="fetch")
            )
            placed += result.rowcount or 0
        return placed

    def _summarize(self, sweep_id: str, outcomes: list[_FeedOutcome], timer: float) -> dict[str, Any]:
        basket_results = []
        errors = []
        orders_placed = 0
        orders_failed = 0
        for outcome in outcomes:
            feed, ack = outcome.feed, outcome.ack
            failed = len(feed.orders) - outcome.orders_placed
            orders_placed += outcome.orders_placed
            orders_failed += failed
            if ack.error:
                errors.append({"merchant_id": feed.merchant_id, "broker": feed.broker, "error": ack.error})
            for order_id, reason in ack.rejected.items():
                errors.append(
                    {"merchant_id": feed.merchant_id, "broker": feed.broker, "order_id": order_id, "error": reason}
                )
            basket_results.append(
                {
                    "merchant_id": feed.merchant_id,
                    "broker": feed.broker,
                    "order_count": len(feed.orders),
                    "total_amount": float(feed.total_amount),
                    "acknowledged": ack.acknowledged,
                    "request": ack.request,
                    "response": ack.response,
                    "http_status": ack.http_status,
                    "baskets": feed.basket_ids,
                    "orders_placed": outcome.orders_placed,
                    "error": ack.error,
                }
            )

        return {
            "sweep_batch_id": sweep_id,
            "orders_placed": orders_placed,
            "orders_failed": orders_failed,
            "merchants_processed": len({outcome.feed.merchant_id for outcome in outcomes}),
            "baskets_processed": sum(len(outcome.feed.basket_ids) for outcome in outcomes),
            "duration_seconds": round(time.perf_counter() - timer, 3),
            "basket_results": basket_results,
            "errors": errors,
        }

    def _closed_result(self, status: MarketStatus, timer: float) -> dict[str, Any]:
        return {
            "market_closed": True,
            "next_market_open": status.next_open.isoformat() if status.next_open else None,
            "delay_reason": status.delay_reason,
            "market": status.as_dict(),
            "results": {
                "sweep_batch_id": None,
                "orders_placed": 0,
                "orders_failed": 0,
                "merchants_processed": 0,
                "baskets_processed": 0,
                "duration_seconds": round(time.perf_counter() - timer, 3),
                "basket_results": [],
                "errors": [],
            },
        }

    async def _write_log(
        self,
        sweep_id: str,
        merchant_id: str | None,
        broker: str | None,
        outcomes: list[_FeedOutcome],
        results: dict[str, Any],
        started_at: datetime,
    ) -> None:
        try:
            self._session.add(
                SweepLog(
                    batch_id=sweep_id,
                    merchant_filter=merchant_id,
                    broker_filter=broker,
                    orders_processed=sum(len(outcome.feed.orders) for outcome in outcomes),
                    orders_placed=results["orders_placed"],
                    orders_failed=results["orders_failed"],
                    merchants_processed=results["merchants_processed"],
                    baskets_processed=results["baskets_processed"],
                    brokers_notified=sorted({outcome.feed.broker for outcome in outcomes if outcome.ack.acknowledged}),
                    errors=results["errors"],
                    started_at=started_at,
                    completed_at=self._clock(),
                    duration_seconds=results["duration_seconds"],
                )
            )
            await self._session.commit()
        except SQLAlchemyError as exc:
            await self._session.rollback()
            logger.error("Failed to write sweep log", sweep_batch_id=sweep_id, error=str(exc))

    async def history(self, limit: int = 25) -> list[dict[str, Any]]:
        limit = max(1, min(limit, _HISTORY_LIMIT))
        rows = (
            await self._session.execute(select(SweepLog).order_by(SweepLog.started_at.desc()).limit(limit))
        ).scalars().all()
        return [row.as_dict() for row in rows]


__all__ = ["SweepDispatcher"]
