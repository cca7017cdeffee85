"""Payment settlement endpoints: pending summary, exports, cancellation and history."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from stockloyal_api.api.dependencies.security import require_admin_api_key
from stockloyal_api.db.session import get_session
from stockloyal_api.schemas.pipeline import (
    PaymentsCancelRequest,
    PaymentsExportRequest,
    PaymentsMerchantRequest,
    PaymentsPendingRequest,
    SettledBatchesRequest,
)
from stockloyal_api.services.payments import PaymentSettlementEngine


router = APIRouter(prefix="/payments", tags=["Payments"], dependencies=[Depends(require_admin_api_key)])


class _ProgressLog:
    """Collects ``current/total`` ticks so callers can replay sequential progress."""

    def __init__(self) -> None:
        self.entries: list[dict[str, Any]] = []

    def __call__(self, current: int, total: int, result: dict[str, Any]) -> None:
        self.entries.append(
            {
                "current": current,
                "total": total,
                "merchant_id": result.get("merchant_id"),
                "broker": result.get("broker"),
                "batch_id": result.get("batch_id"),
            }
        )


@router.post("/pending", summary="Unpaid executed orders grouped by merchant and broker")
async def pending_payments(
    payload: PaymentsPendingRequest,
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    engine = PaymentSettlementEngine(session)
    return {"success": True, **await engine.pending_summary(payload.merchant_id)}


@router.post("/export", summary="Settle one merchant and broker pair")
async def export_payments(
    payload: PaymentsExportRequest,
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    engine = PaymentSettlementEngine(session)
    return {"success": True, **await engine.process(payload.merchant_id, payload.broker)}


@router.post("/export-merchant", summary="Settle every broker of one merchant")
async def export_merchant_payments(
    payload: PaymentsMerchantRequest,
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    engine = PaymentSettlementEngine(session)
    progress = _ProgressLog()
    result = await engine.process_merchant(payload.merchant_id, progress=progress)
    return {"success": True, **result, "progress": progress.entries}


@router.post("/export-all", summary="Settle every merchant and broker pair")
async def export_all_payments(session: AsyncSession = Depends(get_session)) -> dict[str, Any]:
    engine = PaymentSettlementEngine(session)
    progress = _ProgressLog()
    result = await engine.process_all(progress=progress)
    return {"success": True, **result, "progress": progress.entries}


@router.post("/cancel", summary="Reverse a settled payment batch")
async def cancel_payment_batch(
    payload: PaymentsCancelRequest,
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    """Without ``confirm`` only the reversal summary is returned and nothing is written."""

    engine = PaymentSettlementEngine(session)
    if not payload.confirm:
        summary = await engine.cancel_summary(payload.batch_id)
        return {"success": True, "requires_confirmation": True, "summary": summary}
    return {"success": True, **await engine.cancel(payload.batch_id, remove_ledger=payload.remove_ledger)}


@router.post("/settled-batches", summary="Active payment batches, newest first")
async def settled_batches(
    payload: SettledBatchesRequest,
    session: AsyncSession = Depends(get_session),
) -> dict[str, Any]:
    engine = PaymentSettlementEngine(session)
    result = await engine.list_settled_batches(payload.merchant_id, limit=payload.limit, offset=payload.offset)
    return {"success": True, **result}
