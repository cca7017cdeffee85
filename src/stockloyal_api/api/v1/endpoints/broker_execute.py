"""Single action-dispatched endpoint for broker execution."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from stockloyal_api.api.dependencies.security import require_admin_api_key
from stockloyal_api.api.dependencies.services import get_broker_registry
from stockloyal_api.db.session import get_session
from stockloyal_api.schemas.pipeline import BrokerExecuteRequest
from stockloyal_api.services.brokers import BrokerRegistry
from stockloyal_api.services.errors import PipelineError
from stockloyal_api.services.execution import ExecutionService


router = APIRouter(tags=["Execution"], dependencies=[Depends(require_admin_api_key)])


def _require(value: str | None, field: str, action: str) -> str:
    if not value:
        raise PipelineError(f"{field} is required for action {action}")
    return value


@router.post("/broker-execute", summary="Preview, execute or inspect broker fills")
async def broker_execute(
    payload: BrokerExecuteRequest,
    session: AsyncSession = Depends(get_session),
    registry: BrokerRegistry = Depends(get_broker_registry),
) -> dict[str, Any]:
    """``execute``, ``execute_merchant`` and ``execute_basket`` are filters over one execution run."""

    service = ExecutionService(session, registry=registry)
    action = payload.action

    if action == "preview":
        result = await service.preview(broker=payload.broker, merchant_id=payload.merchant_id)
    elif action == "execute":
        result = await service.execute(broker=payload.broker)
    elif action == "execute_merchant":
        merchant_id = _require(payload.merchant_id, "merchant_id", action)
        result = await service.execute(merchant_id=merchant_id, broker=payload.broker)
    elif action == "execute_basket":
        basket_id = _require(payload.basket_id, "basket_id", action)
        result = await service.execute(basket_id=basket_id, merchant_id=payload.merchant_id, broker=payload.broker)
    elif action == "history":
        history = await service.history(payload.limit)
        result = {"history": history, "count": len(history)}
    else:
        exec_id = _require(payload.exec_id, "exec_id", action)
        orders = await service.exec_orders(exec_id)
        result = {"exec_id": exec_id, "orders": orders, "count": len(orders)}

    return {"success": True, "action": action, **result}
