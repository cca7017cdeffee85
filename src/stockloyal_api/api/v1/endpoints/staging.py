"""Staging endpoints: preview, prepare/refresh, approve, discard and batch inspection."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from stockloyal_api.api.dependencies.security import require_admin_api_key
from stockloyal_api.api.dependencies.services import get_price_feed
from stockloyal_api.db.session import get_session
from stockloyal_api.schemas.pipeline import BatchActionRequest, RepriceRequest, StagingScopeRequest
from stockloyal_api.services.pricing import PriceFeed
from stockloyal_api.services.staging import ApprovalLock, BatchStagingEngine, StagingScope


router = APIRouter(prefix="/staging", tags=["Staging"], dependencies=[Depends(require_admin_api_key)])


def _scope(payload: StagingScopeRequest) -> StagingScope:
    return StagingScope(merchant_id=payload.merchant_id or None, member_id=payload.member_id or None)


@router.post("/preview", summary="Read-only eligibility aggregate")
async def preview_staging(
    payload: StagingScopeRequest,
    session: AsyncSession = Depends(get_session),
    price_feed: PriceFeed = Depends(get_price_feed),
) -> dict[str, Any]:
    engine = BatchStagingEngine(session, price_feed=price_feed)
    return {"success": True, **await engine.preview(_scope(payload))}


@router.post("/prepare", summary="Create or refresh the staged batch for a scope")
async def prepare_batch(
    payload: StagingScopeRequest,
    session: AsyncSession = Depends(get_session),
    price_feed: PriceFeed = Depends(get_price_feed),
) -> dict[str, Any]:
    engine = BatchStagingEngine(session, price_feed=price_feed)
    return {"success": True, **await engine.prepare(_scope(payload))}


@router.post("/approve", summary="Convert a staged batch into pending orders")
async def approve_batch(payload: BatchActionRequest, session: AsyncSession = Depends(get_session)) -> dict[str, Any]:
    """Without ``confirm`` only the approval summary is returned and nothing is written."""

    approval = ApprovalLock(session)
    if not payload.confirm:
        summary = await approval.summary(payload.batch_id)
        return {"success": True, "requires_confirmation": True, "summary": summary}
    return {"success": True, **await approval.approve(payload.batch_id)}


@router.post("/discard", summary="Discard a staged batch")
async def discard_batch(
    payload: BatchActionRequest,
    session: AsyncSession = Depends(get_session),
    price_feed: PriceFeed = Depends(get_price_feed),
) -> dict[str, Any]:
    engine = BatchStagingEngine(session, price_feed=price_feed)
    return {"success": True, **await engine.discard(payload.batch_id)}


@router.post("/reprice", summary="Retry prices for approved orders flagged as missing one")
async def reprice_missing(
    payload: RepriceRequest,
    session: AsyncSession = Depends(get_session),
    price_feed: PriceFeed = Depends(get_price_feed),
) -> dict[str, Any]:
    approval = ApprovalLock(session)
    return {"success": True, **await approval.reprice_missing(price_feed, batch_id=payload.batch_id)}


@router.get("/batches", summary="Recent prepare batches")
async def list_batches(
    limit: int = Query(20, ge=1, le=200),
    session: AsyncSession = Depends(get_session),
    price_feed: PriceFeed = Depends(get_price_feed),
) -> dict[str, Any]:
    engine = BatchStagingEngine(session, price_feed=price_feed)
    batches = await engine.list_batches(limit=limit)
    return {"success": True, "batches": batches, "count": len(batches)}


@router.get("/batches/{batch_id}/stats", summary="Batch breakdown by merchant, broker, tier and symbol")
async def batch_stats(
    batch_id: str,
    session: AsyncSession = Depends(get_session),
    price_feed: PriceFeed = Depends(get_price_feed),
) -> dict[str, Any]:
    engine = BatchStagingEngine(session, price_feed=price_feed)
    return {"success": True, **await engine.stats(batch_id)}


@router.get("/batches/{batch_id}/drilldown", summary="Paginated per-member rollup of a batch")
async def batch_drilldown(
    batch_id: str,
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=500),
    merchant_id: str | None = Query(None),
    broker: str | None = Query(None),
    session: AsyncSession = Depends(get_session),
    price_feed: PriceFeed = Depends(get_price_feed),
) -> dict[str, Any]:
    engine = BatchStagingEngine(session, price_feed=price_feed)
    result = await engine.drilldown(batch_id, page=page, per_page=per_page, merchant_id=merchant_id, broker=broker)
    return {"success": True, **result}
