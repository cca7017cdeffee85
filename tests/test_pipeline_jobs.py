from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import select

from stockloyal_api.jobs.pipeline import run_execution, run_missing_price_repair, run_settlement
from stockloyal_api.models import Order, OrderStatusEnum, PaymentBatch


def _order(symbol: str, status: OrderStatusEnum, **extra) -> Order:
    values = {
        "basket_id": "B-1",
        "member_id": "m-001",
        "merchant_id": "acme",
        "broker": "acme-broker",
        "symbol": symbol,
        "amount": Decimal("40.00"),
        "price": Decimal("200"),
        "shares": Decimal("0.2"),
        "points_used": 4000,
        "status": status,
    }
    values.update(extra)
    return Order(**values)


@pytest.mark.asyncio
async def test_missing_price_repair_without_candidates_is_a_noop(seeded_program) -> None:
    async with seeded_program() as session:
        session.add(_order("AAPL", OrderStatusEnum.PENDING))
        await session.commit()

    summary = await run_missing_price_repair(session_factory=seeded_program)

    assert summary == {"orders_checked": 0, "orders_repriced": 0, "still_missing": 0}


@pytest.mark.asyncio
async def test_execution_job_fills_webhook_orders_with_simulator(seeded_program) -> None:
    async with seeded_program() as session:
        session.add_all(
            [
                _order("AAPL", OrderStatusEnum.PLACED, sweep_batch_id="SWP-1", broker_ref="R-1"),
                _order("TSLA", OrderStatusEnum.PLACED, sweep_batch_id="SWP-1", broker_ref="R-1"),
                _order("NVDA", OrderStatusEnum.PENDING),
            ]
        )
        await session.commit()

    summary = await run_execution(session_factory=seeded_program, merchant_id="acme")

    assert summary["exec_id"].startswith("EXEC-")
    assert summary["orders_executed"] == 2
    assert summary["orders_failed"] == 0
    assert summary["orders_pending"] == 0

    async with seeded_program() as session:
        statuses = dict((await session.execute(select(Order.symbol, Order.status))).all())
    assert statuses == {
        "AAPL": OrderStatusEnum.CONFIRMED,
        "TSLA": OrderStatusEnum.CONFIRMED,
        "NVDA": OrderStatusEnum.PENDING,
    }


@pytest.mark.asyncio
async def test_settlement_job_settles_every_pair(seeded_program) -> None:
    executed_at = datetime(2026, 10, 19, 19, 30, tzinfo=timezone.utc)
    async with seeded_program() as session:
        session.add_all(
            [
                _order("AAPL", OrderStatusEnum.CONFIRMED, executed_amount=Decimal("40.10"), executed_at=executed_at),
                _order(
                    "NVDA",
                    OrderStatusEnum.CONFIRMED,
                    member_id="g-001",
                    merchant_id="globex",
                    executed_amount=Decimal("12.00"),
                    executed_at=executed_at,
                ),
            ]
        )
        await session.commit()

    acme_only = await run_settlement(session_factory=seeded_program, merchant_id="acme")
    remaining = await run_settlement(session_factory=seeded_program)

    assert acme_only["batches_created"] == 1
    assert acme_only["orders_settled"] == 1
    assert acme_only["total_amount"] == pytest.approx(40.10)
    assert acme_only["errors"] == 0
    assert remaining["pairs_total"] == 1
    assert remaining["orders_settled"] == 1

    async with seeded_program() as session:
        merchants = (await session.execute(select(PaymentBatch.merchant_id).order_by(PaymentBatch.merchant_id))).scalars()
        assert list(merchants) == ["acme", "globex"]
