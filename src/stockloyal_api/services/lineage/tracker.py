"""Read-only audit trail from any pipeline id back to its staged origin."""

from __future__ import annotations

from typing import Any, Iterable

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from stockloyal_api.models.order import Order
from stockloyal_api.models.payment import LedgerEntry, PaymentBatch
from stockloyal_api.models.prepare import PrepareBatch, PreparedOrder
from stockloyal_api.models.sweep import ExecutionEventEnum, ExecutionRecord, SweepLog
from stockloyal_api.services.errors import LineageNotFoundError, UnknownLineageTypeError

ID_TYPES = ("order", "basket", "batch", "sweep", "exec", "payment")


def _present(values: Iterable[Any]) -> list[Any]:
    return sorted({value for value in values if value is not None}, key=str)


class LineageTracker:
    """Collect every record that references an order, basket, batch, sweep, execution or payment id.

    The given id selects a set of orders; the trace is then expanded from
    those orders to the prepare batch and staged rows they came from, the
    sweep and dispatch that placed them, the execution that filled them and
    the payment batch that settled them.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def detect_type(self, identifier: str) -> str:
        if identifier.startswith("SWP-"):
            return "sweep"
        if identifier.startswith("EXEC-"):
            return "exec"
        if identifier.startswith("ACH_"):
            return "payment"
        if identifier.isdigit():
            return "order"
        if identifier.startswith("PREP-"):
            # basket ids are "<batch_id>-<member_id>"
            batch = await self._session.get(PrepareBatch, identifier)
            return "batch" if batch is not None else "basket"
        return "basket"

    async def _orders(self, identifier: str, id_type: str) -> list[Order]:
        if id_type == "order":
            if not identifier.isdigit():
                return []
            condition = Order.order_id == int(identifier)
        else:
            column = {
                "basket": Order.basket_id,
                "batch": Order.batch_id,
                "sweep": Order.sweep_batch_id,
                "exec": Order.exec_id,
                "payment": Order.paid_batch_id,
            }[id_type]
            condition = column == identifier
        stmt = select(Order).where(condition).order_by(Order.order_id).execution_options(populate_existing=True)
        return list((await self._session.execute(stmt)).scalars().all())

    async def _staged(self, identifier: str, id_type: str, orders: list[Order]) -> list[PreparedOrder]:
        conditions = []
        prepared_ids = _present(order.prepared_order_id for order in orders)
        if prepared_ids:
            conditions.append(PreparedOrder.id.in_(prepared_ids))
        if id_type == "batch":
            conditions.append(PreparedOrder.batch_id == identifier)
        elif id_type == "basket":
            conditions.append(PreparedOrder.basket_id == identifier)
        if not conditions:
            return []
        stmt = select(PreparedOrder).where(or_(*conditions)).order_by(PreparedOrder.id)
        return list((await self._session.execute(stmt)).scalars().all())

    async def trace(self, identifier: str, id_type: str | None = None) -> dict[str, Any]:
        identifier = (identifier or "").strip()
        if not identifier:
            raise LineageNotFoundError("An id is required to trace lineage")
        if id_type is not None and id_type not in ID_TYPES:
            raise UnknownLineageTypeError(f"Unknown lineage type '{id_type}'; expected one of {', '.join(ID_TYPES)}")
        id_type = id_type or await self.detect_type(identifier)

        orders = await self._orders(identifier, id_type)
        staged = await self._staged(identifier, id_type, orders)

        batch_ids = _present([order.batch_id for order in orders] + [row.batch_id for row in staged])
        if id_type == "batch":
            batch_ids = _present([*batch_ids, identifier])
        sweep_ids = _present([order.sweep_batch_id for order in orders] + ([identifier] if id_type == "sweep" else []))
        exec_ids = _present([order.exec_id for order in orders] + ([identifier] if id_type == "exec" else []))
        payment_ids = _present([order.paid_batch_id for order in orders] + ([identifier] if id_type == "payment" else []))
        basket_ids = _present([order.basket_id for order in orders] + [row.basket_id for row in staged])
        pairs = {(order.merchant_id, order.broker) for order in orders}

        prep = []
        if batch_ids:
            prep = (
                await self._session.execute(
                    select(PrepareBatch).where(PrepareBatch.batch_id.in_(batch_ids)).order_by(PrepareBatch.batch_id)
                )
            ).scalars().all()

        sweeps = []
        dispatches = []
        if sweep_ids:
            sweeps = (
                await self._session.execute(select(SweepLog).where(SweepLog.batch_id.in_(sweep_ids)))
            ).scalars().all()
            dispatch_stmt = select(ExecutionRecord).where(
                ExecutionRecord.event_type == ExecutionEventEnum.SWEEP_DISPATCH,
                ExecutionRecord.sweep_batch_id.in_(sweep_ids),
            )
            if pairs:
                dispatch_stmt = dispatch_stmt.where(
                    or_(*(and_(ExecutionRecord.merchant_id == m, ExecutionRecord.broker == b) for m, b in pairs))
                )
            dispatches = (await self._session.execute(dispatch_stmt.order_by(ExecutionRecord.id))).scalars().all()

        executions = []
        if exec_ids:
            exec_stmt = select(ExecutionRecord).where(
                ExecutionRecord.event_type == ExecutionEventEnum.ORDER_CONFIRMED,
                ExecutionRecord.exec_id.in_(exec_ids),
            )
            if basket_ids and id_type != "exec":
                exec_stmt = exec_stmt.where(ExecutionRecord.basket_id.in_(basket_ids))
            executions = (await self._session.execute(exec_stmt.order_by(ExecutionRecord.id))).scalars().all()

        payments = []
        if payment_ids:
            batches = (
                await self._session.execute(
                    select(PaymentBatch).where(PaymentBatch.batch_id.in_(payment_ids)).order_by(PaymentBatch.batch_id)
                )
            ).scalars().all()
            ledger = (
                await self._session.execute(
                    select(LedgerEntry).where(LedgerEntry.external_ref.in_(payment_ids)).order_by(LedgerEntry.id)
                )
            ).scalars().all()
            for batch in batches:
                entry = batch.as_dict()
                entry["ledger_entries"] = [row.as_dict() for row in ledger if row.external_ref == batch.batch_id]
                payments.append(entry)

        if not (orders or staged or prep or sweeps or executions or payments):
            raise LineageNotFoundError(f"No pipeline records reference {id_type} {identifier}")

        return {
            "origin": {"id": identifier, "type": id_type},
            "prep": [batch.as_dict() for batch in prep],
            "staged": [row.as_dict() for row in staged],
            "baskets": self._baskets(orders),
            "orders": [order.as_dict() for order in orders],
            "sweeps": [row.as_dict() for row in sweeps],
            "dispatches": [row.as_dict() for row in dispatches],
            "executions": [row.as_dict() for row in executions],
            "payments": payments,
        }

    @staticmethod
    def _baskets(orders: list[Order]) -> list[dict[str, Any]]:
        baskets: dict[str, dict[str, Any]] = {}
        for order in orders:
            entry = baskets.setdefault(
                order.basket_id,
                {
                    "basket_id": order.basket_id,
                    "member_id": order.member_id,
                    "merchant_id": order.merchant_id,
                    "broker": order.broker,
                    "order_ids": [],
                    "statuses": {},
                },
            )
            entry["order_ids"].append(order.order_id)
            status = order.status.value if order.status is not None else None
            entry["statuses"][status] = entry["statuses"].get(status, 0) + 1
        return list(baskets.values())


__all__ = ["ID_TYPES", "LineageTracker"]
