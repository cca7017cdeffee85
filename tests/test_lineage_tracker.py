import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select

from stockloyal_api.models import Order
from stockloyal_api.services.brokers import BrokerRegistry, FillSimulator
from stockloyal_api.services.errors import LineageNotFoundError, UnknownLineageTypeError
from stockloyal_api.services.execution import ExecutionService
from stockloyal_api.services.lineage import LineageTracker
from stockloyal_api.services.payments import PaymentSettlementEngine
from stockloyal_api.services.staging import ApprovalLock, BatchStagingEngine, StagingScope
from stockloyal_api.services.sweep import SweepDispatcher


@pytest_asyncio.fixture
async def settled_pipeline(seeded_program, price_feed, open_market, pipeline_now):
    """Run acme through every stage; MSFT has no price so it stays pending at approval."""

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"acknowledged": True, "reference_id": "BRK-REF-7"})

    async with seeded_program() as session, httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        staged = await BatchStagingEngine(
            session,
            price_feed=price_feed,
            clock=lambda: pipeline_now,
            min_sweep_points=500,
            max_orders_per_basket=2,
        ).prepare(StagingScope(merchant_id="acme"))
        await ApprovalLock(session).approve(staged["batch_id"])

        registry = BrokerRegistry(session, http_client=client, simulator=FillSimulator(variance=0))
        sweep = await SweepDispatcher(session, registry=registry, market=open_market, clock=lambda: pipeline_now).run(
            merchant_id="acme"
        )
        execution = await ExecutionService(session, registry=registry, clock=lambda: pipeline_now).execute(
            merchant_id="acme"
        )
        settlement = await PaymentSettlementEngine(session, clock=lambda: pipeline_now).process("acme", "acme-broker")

    return {
        "session_factory": seeded_program,
        "batch_id": staged["batch_id"],
        "sweep_id": sweep["results"]["sweep_batch_id"],
        "exec_id": execution["exec_id"],
        "payment_id": settlement["batch_id"],
    }


@pytest.mark.asyncio
async def test_pipeline_stages_hand_off_counts(settled_pipeline) -> None:
    async with settled_pipeline["session_factory"]() as session:
        orders = (await session.execute(select(Order).order_by(Order.order_id))).scalars().all()

    assert len(orders) == 4
    settled = [order for order in orders if order.paid_batch_id == settled_pipeline["payment_id"]]
    assert [order.symbol for order in settled] == ["AAPL", "NVDA", "TSLA"]
    assert all(order.sweep_batch_id == settled_pipeline["sweep_id"] for order in settled)
    assert all(order.exec_id == settled_pipeline["exec_id"] for order in settled)
    assert [order.symbol for order in orders if order.paid_batch_id is None] == ["MSFT"]


@pytest.mark.asyncio
async def test_trace_from_payment_reaches_every_stage(settled_pipeline) -> None:
    async with settled_pipeline["session_factory"]() as session:
        lineage = await LineageTracker(session).trace(settled_pipeline["payment_id"])

    assert lineage["origin"] == {"id": settled_pipeline["payment_id"], "type": "payment"}
    assert [batch["batch_id"] for batch in lineage["prep"]] == [settled_pipeline["batch_id"]]
    assert len(lineage["staged"]) == 3
    assert len(lineage["orders"]) == 3
    assert [sweep["batch_id"] for sweep in lineage["sweeps"]] == [settled_pipeline["sweep_id"]]
    assert len(lineage["dispatches"]) == 1
    assert {record["basket_id"] for record in lineage["executions"]} == {
        f"{settled_pipeline['batch_id']}-m-001",
        f"{settled_pipeline['batch_id']}-m-004",
    }
    payment = lineage["payments"][0]
    assert payment["batch_id"] == settled_pipeline["payment_id"]
    assert sorted(entry["member_id"] for entry in payment["ledger_entries"]) == ["m-001", "m-004"]
    baskets = {basket["basket_id"]: basket for basket in lineage["baskets"]}
    assert baskets[f"{settled_pipeline['batch_id']}-m-004"]["statuses"] == {"settled": 2}


@pytest.mark.asyncio
async def test_trace_detects_id_types(settled_pipeline) -> None:
    batch_id = settled_pipeline["batch_id"]
    async with settled_pipeline["session_factory"]() as session:
        tracker = LineageTracker(session)
        order_id = (await session.execute(select(Order.order_id).where(Order.symbol == "MSFT"))).scalar_one()

        by_batch = await tracker.trace(batch_id)
        by_basket = await tracker.trace(f"{batch_id}-m-001")
        by_order = await tracker.trace(str(order_id))
        by_sweep = await tracker.trace(settled_pipeline["sweep_id"])
        by_exec = await tracker.trace(settled_pipeline["exec_id"])

    assert by_batch["origin"]["type"] == "batch"
    assert len(by_batch["orders"]) == 4
    assert len(by_batch["staged"]) == 4

    assert by_basket["origin"]["type"] == "basket"
    assert sorted(order["symbol"] for order in by_basket["orders"]) == ["AAPL", "MSFT"]

    assert by_order["origin"]["type"] == "order"
    assert by_order["orders"][0]["status"] == "pending"
    assert by_order["sweeps"] == []
    assert by_order["payments"] == []

    assert by_sweep["origin"]["type"] == "sweep"
    assert len(by_sweep["orders"]) == 3
    assert by_exec["origin"]["type"] == "exec"
    assert len(by_exec["executions"]) == 2


@pytest.mark.asyncio
async def test_trace_rejects_unknown_ids_and_types(settled_pipeline) -> None:
    async with settled_pipeline["session_factory"]() as session:
        tracker = LineageTracker(session)

        with pytest.raises(LineageNotFoundError):
            await tracker.trace("   ")
        with pytest.raises(LineageNotFoundError):
            await tracker.trace("SWP-20200101-000000-ffffff")
        with pytest.raises(LineageNotFoundError):
            await tracker.trace("abc", "order")
        with pytest.raises(UnknownLineageTypeError):
            await tracker.trace(settled_pipeline["batch_id"], "shipment")
