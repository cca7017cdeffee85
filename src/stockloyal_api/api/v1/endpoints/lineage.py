from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from stockloyal_api.api.dependencies.security import require_admin_api_key
from stockloyal_api.db.session import get_session
from stockloyal_api.schemas.pipeline import LineageRequest
from stockloyal_api.services.lineage import LineageTracker


router = APIRouter(tags=["Lineage"], dependencies=[Depends(require_admin_api_key)])


@router.post("/lineage", summary="Trace any pipeline identifier through every stage")
async def trace_lineage(payload: LineageRequest, session: AsyncSession = Depends(get_session)) -> dict[str, Any]:
    tracker = LineageTracker(session)
    return {"success": True, **await tracker.trace(payload.identifier.strip(), payload.id_type)}
