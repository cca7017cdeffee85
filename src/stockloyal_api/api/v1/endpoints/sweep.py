"""Sweep endpoints: preview, run and history, plus the market status check."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from stockloyal_api.api.dependencies.security import require_admin_api_key
from stockloyal_api.api.dependencies.services import get_broker_registry, get_market_calendar
from stockloyal_api.db.session import get_session
from stockloyal_api.schemas.pipeline import SweepRequest
from stockloyal_api.services.brokers import BrokerRegistry
from stockloyal_api.services.market import MarketClock
from stockloyal_api.services.sweep import SweepDispatcher


router = APIRouter(tags=["Sweep"], dependencies=[Depends(require_admin_api_key)])


def _dispatcher(session: AsyncSession, registry: BrokerRegistry, market: MarketClock) -> SweepDispatcher:
    return SweepDispatcher(session, registry=registry, market=market)


@router.post("/sweep/preview", summary="Pending orders a sweep would dispatch")
async def preview_sweep(
    payload: SweepRequest,
    session: AsyncSession = Depends(get_session),
    registry: BrokerRegistry = Depends(get_broker_registry),
    market: MarketClock = Depends(get_market_calendar),
) -> dict[str, Any]:
    dispatcher = _dispatcher(session, registry, market)
    return {"success": True, **await dispatcher.preview(merchant_id=payload.merchant_id, broker=payload.broker)}


@router.post("/sweep/run", summary="Dispatch pending orders to their brokers")
async def run_sweep(
    payload: SweepRequest,
    session: AsyncSession = Depends(get_session),
    registry: BrokerRegistry = Depends(get_broker_registry),
    market: MarketClock = Depends(get_market_calendar),
) -> dict[str, Any]:
    """A closed market is reported as ``market_closed: true`` with zero counts, not as an error."""

    dispatcher = _dispatcher(session, registry, market)
    return {"success": True, **await dispatcher.run(merchant_id=payload.merchant_id, broker=payload.broker)}


@router.get("/sweep/history", summary="Recent sweep runs")
async def sweep_history(
    limit: int = Query(25, ge=1, le=100),
    session: AsyncSession = Depends(get_session),
    registry: BrokerRegistry = Depends(get_broker_registry),
    market: MarketClock = Depends(get_market_calendar),
) -> dict[str, Any]:
    history = await _dispatcher(session, registry, market).history(limit)
    return {"success": True, "history": history, "count": len(history)}


@router.get("/market/status", summary="Whether the market is open and when it next opens")
async def market_status(
    refresh: bool = Query(False),
    market: MarketClock = Depends(get_market_calendar),
) -> dict[str, Any]:
    status = await market.status(refresh=refresh)
    return {"success": True, **status.as_dict()}
