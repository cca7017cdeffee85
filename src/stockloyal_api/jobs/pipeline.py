"""Scheduled pipeline jobs: missing-price repair, sweep, execution and settlement."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict

import httpx
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from stockloyal_api.core.settings import settings
from stockloyal_api.observability.tracing import pipeline_span
from stockloyal_api.services.brokers import BrokerRegistry
from stockloyal_api.services.execution import ExecutionService
from stockloyal_api.services.market import MarketCalendar
from stockloyal_api.services.payments import PaymentSettlementEngine
from stockloyal_api.services.pricing import QuotePriceFeed
from stockloyal_api.services.staging import ApprovalLock
from stockloyal_api.services.sweep import SweepDispatcher

# meta: job: order-pipeline

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]


async def _open_session(session_factory: SessionFactory) -> AsyncSession:
    maybe_session = session_factory()
    return maybe_session if isinstance(maybe_session, AsyncSession) else await maybe_session


def _http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=settings.broker_dispatch_timeout_seconds)


async def run_missing_price_repair(*, session_factory: SessionFactory, batch_id: str | None = None) -> Dict[str, Any]:
    """Reprice pending orders approved without a price so the next sweep can place them."""

    session = await _open_session(session_factory)
    async with session as managed_session, _http_client() as client:
        with pipeline_span("reprice", batch_id=batch_id):
            approval = ApprovalLock(managed_session)
            summary = await approval.reprice_missing(QuotePriceFeed(http_client=client), batch_id=batch_id)
    logger.bind(summary=summary).info("Missing price repair completed")
    return summary


async def run_scheduled_sweep(
    *,
    session_factory: SessionFactory,
    merchant_id: str | None = None,
    broker: str | None = None,
) -> Dict[str, Any]:
    """Dispatch pending orders of merchants whose sweep day is today."""

    session = await _open_session(session_factory)
    async with session as managed_session, _http_client() as client:
        with pipeline_span("sweep", merchant_id=merchant_id, broker=broker):
            dispatcher = SweepDispatcher(
                managed_session,
                registry=BrokerRegistry(managed_session, http_client=client),
                market=MarketCalendar(http_client=client),
            )
            result = await dispatcher.run(merchant_id=merchant_id, broker=broker)

    results = result["results"]
    summary = {
        "market_closed": result["market_closed"],
        "sweep_batch_id": results["sweep_batch_id"],
        "orders_placed": results["orders_placed"],
        "orders_failed": results["orders_failed"],
        "errors": len(results["errors"]),
    }
    logger.bind(summary=summary).info("Scheduled sweep completed")
    return summary


async def run_execution(
    *,
    session_factory: SessionFactory,
    merchant_id: str | None = None,
    broker: str | None = None,
) -> Dict[str, Any]:
    """Fill every placed order (optionally narrowed to one merchant or broker)."""

    session = await _open_session(session_factory)
    async with session as managed_session, _http_client() as client:
        with pipeline_span("execute", merchant_id=merchant_id, broker=broker):
            service = ExecutionService(managed_session, registry=BrokerRegistry(managed_session, http_client=client))
            result = await service.execute(merchant_id=merchant_id, broker=broker)

    summary = {
        "exec_id": result["exec_id"],
        "orders_executed": result["orders_executed"],
        "orders_failed": result["orders_failed"],
        "orders_pending": result["orders_pending"],
    }
    logger.bind(summary=summary).info("Scheduled execution completed")
    return summary


async def run_settlement(*, session_factory: SessionFactory, merchant_id: str | None = None) -> Dict[str, Any]:
    """Settle unpaid executed orders into payment batches, one merchant or all."""

    session = await _open_session(session_factory)
    async with session as managed_session:
        with pipeline_span("settle", merchant_id=merchant_id):
            engine = PaymentSettlementEngine(managed_session)
            if merchant_id:
                result = await engine.process_merchant(merchant_id)
            else:
                result = await engine.process_all()

    summary = {
        "pairs_total": result["pairs_total"],
        "batches_created": result["batches_created"],
        "orders_settled": result["orders_settled"],
        "total_amount": result["total_amount"],
        "errors": len(result["errors"]),
    }
    logger.bind(summary=summary).info("Scheduled settlement completed")
    return summary


__all__ = ["run_execution", "run_missing_price_repair", "run_scheduled_sweep", "run_settlement"]
