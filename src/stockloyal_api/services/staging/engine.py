"""Staged batch aggregation: preview, prepare/refresh, discard and batch analytics."""

from __future__ import annotations

import math
import re
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import ROUND_FLOOR, ROUND_HALF_EVEN, Decimal
from typing import Any, Callable

import httpx
from loguru import logger
from sqlalchemy import case, delete, distinct, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from stockloyal_api.core.settings import settings
from stockloyal_api.models.common import as_float
from stockloyal_api.models.member import MemberStockPick, Wallet
from stockloyal_api.models.merchant import Merchant
from stockloyal_api.models.prepare import PrepareBatch, PreparedOrder, PrepareStatusEnum
from stockloyal_api.observability.pipeline import get_pipeline_store
from stockloyal_api.services.errors import (
    BatchNotFoundError,
    BatchNotStagedError,
    PipelineError,
    PipelineOperationError,
    PriceFeedError,
)
from stockloyal_api.services.locks import KeyedLocks
from stockloyal_api.services.pricing import PriceFeed
from stockloyal_api.services.rates import MerchantRates, RateResolver

_SHARE_STEP = Decimal("0.000001")
_HUNDRED = Decimal("100")
_TOP_SYMBOL_LIMIT = 20

scope_locks = KeyedLocks()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _slug(value: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "", value).upper()


@dataclass(slots=True, frozen=True)
class StagingScope:
    merchant_id: str | None = None
    member_id: str | None = None

    @property
    def key(self) -> str:
        return f"{self.merchant_id or '*'}|{self.member_id or '*'}"

    @property
    def slug(self) -> str:
        slug = _slug(self.merchant_id) if self.merchant_id else "ALL"
        if self.member_id:
            slug = f"{slug}-{_slug(self.member_id)}"
        return slug or "ALL"


@dataclass(slots=True)
class PlannedOrder:
    member_id: str
    merchant_id: str | None
    broker: str | None
    symbol: str
    amount: Decimal
    points_used: int
    member_tier: str | None
    conversion_rate: Decimal
    sweep_percentage: Decimal


@dataclass(slots=True)
class StagingPlan:
    orders: list[PlannedOrder] = field(default_factory=list)
    members: "OrderedDict[str, str | None]" = field(default_factory=OrderedDict)
    members_skipped: int = 0
    bypassed_below_min: int = 0
    capped_at_max: int = 0

    @property
    def total_amount(self) -> Decimal:
        return sum((order.amount for order in self.orders), Decimal("0"))

    @property
    def total_points(self) -> int:
        return sum(order.points_used for order in self.orders)

    def by_merchant(self) -> list[dict[str, Any]]:
        rollup: dict[str, dict[str, Any]] = {}
        for order in self.orders:
            key = order.merchant_id or ""
            entry = rollup.setdefault(key, {"merchant_id": order.merchant_id, "members": set(), "picks": 0})
            entry["members"].add(order.member_id)
            entry["picks"] += 1
        return [
            {"merchant_id": entry["merchant_id"], "members": len(entry["members"]), "picks": entry["picks"]}
            for _, entry in sorted(rollup.items())
        ]


class BatchStagingEngine:
    """Aggregate member basket elections into a single staged batch per scope.

    Aggregation is deterministic for a fixed snapshot of wallets, picks and
    merchant rates: members are visited by ``member_id`` and picks by
    ``(created_at, id)``, so re-running ``prepare`` reproduces the same rows.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        price_feed: PriceFeed,
        resolver: RateResolver | None = None,
        clock: Callable[[], datetime] | None = None,
        min_sweep_points: int | None = None,
        max_orders_per_basket: int | None = None,
        default_conversion_rate: float | None = None,
    ) -> None:
        self._session = session
        self._price_feed = price_feed
        self._resolver = resolver or RateResolver()
        self._clock = clock or _utcnow
        self._min_sweep_points = settings.min_sweep_points if min_sweep_points is None else min_sweep_points
        self._max_orders = settings.max_orders_per_basket if max_orders_per_basket is None else max_orders_per_basket
        self._default_rates = MerchantRates.build(
            settings.default_conversion_rate if default_conversion_rate is None else default_conversion_rate
        )

    async def preview(self, scope: StagingScope) -> dict[str, Any]:
        """Read-only eligibility aggregate for ``scope``."""

        plan = await self._build_plan(scope)
        return {
            "eligible_members": len(plan.members),
            "unique_merchants": len({order.merchant_id for order in plan.orders if order.merchant_id}),
            "unique_brokers": len({order.broker for order in plan.orders if order.broker}),
            "unique_symbols": len({order.symbol for order in plan.orders}),
            "total_picks": len(plan.orders),
            "est_total_amount": float(plan.total_amount),
            "est_total_points": plan.total_points,
            "bypassed_below_min": plan.bypassed_below_min,
            "capped_at_max": plan.capped_at_max,
            "members_skipped": plan.members_skipped,
            "by_merchant": plan.by_merchant(),
        }

    async def prepare(self, scope: StagingScope) -> dict[str, Any]:
        """Create the staged batch for ``scope`` or refresh the existing one in place."""

        store = get_pipeline_store()
        async with scope_locks.hold(scope.key):
            started_at = self._clock()
            timer = time.perf_counter()
            try:
                result = await self._prepare_locked(scope, started_at, timer)
            except PipelineError as exc:
                store.record("prepare", success=False, error=str(exc))
                raise
        store.record(
            "prepare",
            success=True,
            run_id=result["batch_id"],
            duration_seconds=result["results"]["duration_seconds"],
        )
        return result

    async def _prepare_locked(self, scope: StagingScope, started_at: datetime, timer: float) -> dict[str, Any]:
        plan = await self._build_plan(scope)
        prices = await self._lookup_prices({order.symbol for order in plan.orders})

        try:
            stmt = (
                select(PrepareBatch)
                .where(PrepareBatch.staged_scope_key == scope.key)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            batch = (await self._session.execute(stmt)).scalars().first()
            is_refresh = batch is not None
            if batch is not None:
                await self._session.execute(
                    delete(PreparedOrder).where(
                        PreparedOrder.batch_id == batch.batch_id,
                        PreparedOrder.status == PrepareStatusEnum.STAGED,
                    )
                )
                batch.refresh_count = (batch.refresh_count or 0) + 1
                batch.refreshed_at = started_at
            else:
                batch = PrepareBatch(
                    batch_id=await self._next_batch_id(scope, started_at),
                    status=PrepareStatusEnum.STAGED,
                    scope_key=scope.key,
                    staged_scope_key=scope.key,
                    filter_merchant=scope.merchant_id,
                    filter_member=scope.member_id,
                    refresh_count=0,
                )
                self._session.add(batch)

            missing_prices = 0
            total_shares = Decimal("0")
            for planned in plan.orders:
                price = prices.get(planned.symbol)
                if price is None:
                    missing_prices += 1
                    shares = Decimal("0")
                else:
                    shares = (planned.amount / price).quantize(_SHARE_STEP, rounding=ROUND_HALF_EVEN)
                total_shares += shares
                self._session.add(
                    PreparedOrder(
                        batch_id=batch.batch_id,
                        basket_id=f"{batch.batch_id}-{planned.member_id}",
                        member_id=planned.member_id,
                        merchant_id=planned.merchant_id,
                        broker=planned.broker,
                        symbol=planned.symbol,
                        amount=planned.amount,
                        price=price,
                        shares=shares,
                        points_used=planned.points_used,
                        member_tier=planned.member_tier,
                        conversion_rate=planned.conversion_rate,
                        sweep_percentage=planned.sweep_percentage,
                        status=PrepareStatusEnum.STAGED,
                    )
                )

            batch.total_members = len(plan.members)
            batch.total_orders = len(plan.orders)
            batch.total_amount = plan.total_amount
            batch.total_points = plan.total_points
            batch.total_shares = total_shares
            batch.members_skipped = plan.members_skipped
            batch.bypassed_below_min = plan.bypassed_below_min
            batch.capped_at_max = plan.capped_at_max
            batch.missing_prices = missing_prices
            batch.started_at = started_at
            batch.duration_seconds = round(time.perf_counter() - timer, 3)
            await self._session.commit()
        except IntegrityError as exc:
            await self._session.rollback()
            raise PipelineOperationError(
                f"A staged batch for scope {scope.key} was created concurrently; retry prepare",
                status_code=409,
            ) from exc
        except SQLAlchemyError as exc:
            await self._session.rollback()
            logger.exception("Batch prepare failed", scope=scope.key, error=str(exc))
            raise PipelineOperationError(f"Failed to prepare batch: {exc}") from exc

        logger.info(
            "Batch staged",
            batch_id=batch.batch_id,
            scope=scope.key,
            is_refresh=is_refresh,
            orders=batch.total_orders,
            members=batch.total_members,
            missing_prices=missing_prices,
        )
        return {
            "batch_id": batch.batch_id,
            "is_refresh": is_refresh,
            "refresh_count": batch.refresh_count,
            "results": {
                "total_members": batch.total_members,
                "total_orders": batch.total_orders,
                "total_amount": float(plan.total_amount),
                "total_shares": float(total_shares),
                "total_points": batch.total_points,
                "members_skipped": batch.members_skipped,
                "bypassed_below_min": batch.bypassed_below_min,
                "capped_at_max": batch.capped_at_max,
                "missing_prices": missing_prices,
                "duration_seconds": batch.duration_seconds,
            },
        }

    async def discard(self, batch_id: str) -> dict[str, Any]:
        """Mark a staged batch discarded; its rows are retained for audit."""

        batch = await self._load_batch(batch_id)
        async with scope_locks.hold(batch.scope_key):
            await self._session.refresh(batch)
            previous_status = batch.status.value if batch.status else None
            try:
                result = await self._session.execute(
                    update(PrepareBatch)
                    .where(PrepareBatch.batch_id == batch_id, PrepareBatch.status == PrepareStatusEnum.STAGED)
                    .values(status=PrepareStatusEnum.DISCARDED, staged_scope_key=None, discarded_at=self._clock())
                )
                if result.rowcount != 1:
                    await self._session.rollback()
                    raise BatchNotStagedError(batch_id, previous_status)
                rows = await self._session.execute(
                    update(PreparedOrder)
                    .where(PreparedOrder.batch_id == batch_id)
                    .values(status=PrepareStatusEnum.DISCARDED)
                )
                await self._session.commit()
            except SQLAlchemyError as exc:
                await self._session.rollback()
                raise PipelineOperationError(f"Failed to discard batch {batch_id}: {exc}") from exc

        get_pipeline_store().record("discard", success=True, run_id=batch_id)
        logger.info("Batch discarded", batch_id=batch_id, rows_retained=rows.rowcount)
        return {"batch_id": batch_id, "status": PrepareStatusEnum.DISCARDED.value, "rows_retained": rows.rowcount}

    async def list_batches(self, *, limit: int = 20) -> list[dict[str, Any]]:
        limit = min(max(limit, 1), 200)
        stmt = select(PrepareBatch).order_by(PrepareBatch.created_at.desc(), PrepareBatch.batch_id.desc()).limit(limit)
        batches = (await self._session.execute(stmt)).scalars().all()
        return [batch.as_dict() for batch in batches]

    async def stats(self, batch_id: str) -> dict[str, Any]:
        """Breakdowns of a batch by merchant, broker, tier and top symbols."""

        batch = await self._load_batch(batch_id)
        in_batch = PreparedOrder.batch_id == batch_id
        members = func.count(distinct(PreparedOrder.member_id))
        orders = func.count(PreparedOrder.id)
        amount = func.coalesce(func.sum(PreparedOrder.amount), 0)
        points = func.coalesce(func.sum(PreparedOrder.points_used), 0)

        by_merchant = await self._session.execute(
            select(PreparedOrder.merchant_id, members, orders, amount, points)
            .where(in_batch)
            .group_by(PreparedOrder.merchant_id)
            .order_by(PreparedOrder.merchant_id)
        )
        by_broker = await self._session.execute(
            select(PreparedOrder.broker, members, orders, amount, points)
            .where(in_batch)
            .group_by(PreparedOrder.broker)
            .order_by(PreparedOrder.broker)
        )
        by_tier = await self._session.execute(
            select(PreparedOrder.member_tier, PreparedOrder.conversion_rate, members, orders, amount)
            .where(in_batch)
            .group_by(PreparedOrder.member_tier, PreparedOrder.conversion_rate)
            .order_by(PreparedOrder.member_tier, PreparedOrder.conversion_rate)
        )
        symbol_amount = func.coalesce(func.sum(PreparedOrder.amount), 0)
        top_symbols = await self._session.execute(
            select(
                PreparedOrder.symbol,
                orders,
                symbol_amount,
                func.coalesce(func.sum(PreparedOrder.shares), 0),
            )
            .where(in_batch)
            .group_by(PreparedOrder.symbol)
            .order_by(symbol_amount.desc(), PreparedOrder.symbol)
            .limit(_TOP_SYMBOL_LIMIT)
        )

        return {
            "batch": batch.as_dict(),
            "by_merchant": [
                {"merchant_id": row[0], "members": row[1], "orders": row[2], "amount": as_float(row[3]), "points": int(row[4])}
                for row in by_merchant.all()
            ],
            "by_broker": [
                {"broker": row[0], "members": row[1], "orders": row[2], "amount": as_float(row[3]), "points": int(row[4])}
                for row in by_broker.all()
            ],
            "by_tier": [
                {
                    "member_tier": row[0],
                    "conversion_rate": as_float(row[1]),
                    "members": row[2],
                    "orders": row[3],
                    "amount": as_float(row[4]),
                }
                for row in by_tier.all()
            ],
            "top_symbols": [
                {"symbol": row[0], "orders": row[1], "amount": as_float(row[2]), "shares": as_float(row[3])}
                for row in top_symbols.all()
            ],
        }

    async def drilldown(
        self,
        batch_id: str,
        *,
        page: int = 1,
        per_page: int = 50,
        merchant_id: str | None = None,
        broker: str | None = None,
    ) -> dict[str, Any]:
        """Paginated per-member rollup of a batch."""

        await self._load_batch(batch_id)
        page = max(page, 1)
        per_page = min(max(per_page, 1), 500)

        filters = [PreparedOrder.batch_id == batch_id]
        if merchant_id:
            filters.append(PreparedOrder.merchant_id == merchant_id)
        if broker:
            filters.append(PreparedOrder.broker == broker)

        total = (
            await self._session.execute(select(func.count(distinct(PreparedOrder.member_id))).where(*filters))
        ).scalar_one()

        rows = (
            await self._session.execute(
                select(
                    PreparedOrder.member_id,
                    PreparedOrder.basket_id,
                    PreparedOrder.merchant_id,
                    PreparedOrder.broker,
                    PreparedOrder.member_tier,
                    func.count(PreparedOrder.id),
                    func.coalesce(func.sum(PreparedOrder.amount), 0),
                    func.coalesce(func.sum(PreparedOrder.points_used), 0),
                    func.sum(case((PreparedOrder.price.is_(None), 1), else_=0)),
                )
                .where(*filters)
                .group_by(
                    PreparedOrder.member_id,
                    PreparedOrder.basket_id,
                    PreparedOrder.merchant_id,
                    PreparedOrder.broker,
                    PreparedOrder.member_tier,
                )
                .order_by(PreparedOrder.member_id)
                .limit(per_page)
                .offset((page - 1) * per_page)
            )
        ).all()

        member_ids = [row[0] for row in rows]
        symbols: dict[str, list[str]] = {member_id: [] for member_id in member_ids}
        if member_ids:
            symbol_rows = await self._session.execute(
                select(PreparedOrder.member_id, PreparedOrder.symbol)
                .where(*filters, PreparedOrder.member_id.in_(member_ids))
                .order_by(PreparedOrder.member_id, PreparedOrder.id)
            )
            for member, symbol in symbol_rows.all():
                symbols[member].append(symbol)

        return {
            "batch_id": batch_id,
            "page": page,
            "per_page": per_page,
            "total_members": total,
            "total_pages": math.ceil(total / per_page) if total else 0,
            "members": [
                {
                    "member_id": row[0],
                    "basket_id": row[1],
                    "merchant_id": row[2],
                    "broker": row[3],
                    "member_tier": row[4],
                    "orders": row[5],
                    "amount": as_float(row[6]),
                    "points": int(row[7]),
                    "missing_prices": int(row[8] or 0),
                    "symbols": symbols.get(row[0], []),
                }
                for row in rows
            ],
        }

    async def _load_batch(self, batch_id: str) -> PrepareBatch:
        stmt = select(PrepareBatch).where(PrepareBatch.batch_id == batch_id).execution_options(populate_existing=True)
        batch = (await self._session.execute(stmt)).scalars().first()
        if batch is None:
            raise BatchNotFoundError(batch_id)
        return batch

    async def _next_batch_id(self, scope: StagingScope, started_at: datetime) -> str:
        prefix = f"PREP-{started_at:%Y%m}-{scope.slug}-"
        existing = await self._session.execute(
            select(PrepareBatch.batch_id).where(PrepareBatch.batch_id.like(f"{prefix}%"))
        )
        highest = 0
        for (batch_id,) in existing.all():
            suffix = batch_id[len(prefix) :]
            if suffix.isdigit():
                highest = max(highest, int(suffix))
        return f"{prefix}{highest + 1:02d}"

    async def _lookup_prices(self, symbols: set[str]) -> dict[str, Decimal]:
        if not symbols:
            return {}
        try:
            return await self._price_feed.fetch_prices(sorted(symbols))
        except (PriceFeedError, httpx.HTTPError) as exc:
            logger.warning("Price lookup failed; staging without prices", symbols=len(symbols), error=str(exc))
            return {}

    async def _load_rates(self, merchant_ids: set[str]) -> dict[str, MerchantRates]:
        if not merchant_ids:
            return {}
        merchants = (
            await self._session.execute(select(Merchant).where(Merchant.merchant_id.in_(merchant_ids)))
        ).scalars().all()
        return {merchant.merchant_id: MerchantRates.from_merchant(merchant) for merchant in merchants}

    async def _build_plan(self, scope: StagingScope) -> StagingPlan:
        stmt = (
            select(Wallet, MemberStockPick)
            .join(MemberStockPick, MemberStockPick.member_id == Wallet.member_id)
            .where(MemberStockPick.is_active.is_(True))
            .order_by(Wallet.member_id, MemberStockPick.created_at, MemberStockPick.id)
        )
        if scope.merchant_id:
            stmt = stmt.where(Wallet.merchant_id == scope.merchant_id)
        if scope.member_id:
            stmt = stmt.where(Wallet.member_id == scope.member_id)

        elections: "OrderedDict[str, tuple[Wallet, list[str]]]" = OrderedDict()
        for wallet, pick in (await self._session.execute(stmt)).all():
            _, symbols = elections.setdefault(wallet.member_id, (wallet, []))
            symbol = (pick.symbol or "").strip().upper()
            if symbol and symbol not in symbols:
                symbols.append(symbol)

        rates_by_merchant = await self._load_rates(
            {wallet.merchant_id for wallet, _ in elections.values() if wallet.merchant_id}
        )

        plan = StagingPlan()
        for member_id, (wallet, symbols) in elections.items():
            points = int(wallet.points or 0)
            if points <= 0 or not symbols:
                plan.members_skipped += 1
                continue

            percentage = Decimal(str(wallet.sweep_percentage or 0))
            if percentage <= 0 or percentage > _HUNDRED:
                percentage = _HUNDRED
            sweep_points = int((Decimal(points) * percentage / _HUNDRED).to_integral_value(rounding=ROUND_FLOOR))
            if self._min_sweep_points > 0 and sweep_points < self._min_sweep_points:
                plan.bypassed_below_min += 1
                continue

            kept = symbols[: self._max_orders] if self._max_orders > 0 else symbols
            rates = rates_by_merchant.get(wallet.merchant_id or "", self._default_rates)
            rate = self._resolver.resolve(wallet.member_tier, rates)
            points_used = sweep_points // len(kept)
            amount = self._resolver.points_to_cash(sweep_points, rate, parts=len(kept))
            if points_used <= 0 or amount <= 0:
                plan.members_skipped += 1
                continue

            plan.capped_at_max += len(symbols) - len(kept)
            plan.members[member_id] = wallet.merchant_id
            for symbol in kept:
                plan.orders.append(
                    PlannedOrder(
                        member_id=member_id,
                        merchant_id=wallet.merchant_id,
                        broker=wallet.broker,
                        symbol=symbol,
                        amount=amount,
                        points_used=points_used,
                        member_tier=wallet.member_tier,
                        conversion_rate=rate,
                        sweep_percentage=percentage,
                    )
                )
        return plan


__all__ = ["BatchStagingEngine", "StagingPlan", "StagingScope", "scope_locks"]
