import json
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import select

from stockloyal_api.models import ExecutionEventEnum, ExecutionRecord, Order, OrderStatusEnum, SweepLog
from stockloyal_api.services.brokers import BrokerRegistry, FillSimulator
from stockloyal_api.services.sweep import SweepDispatcher


def _order(basket_id: str, member_id: str, symbol: str, amount: str, price: str | None, **extra) -> Order:
    values = {
        "basket_id": basket_id,
        "member_id": member_id,
        "merchant_id": "acme",
        "broker": "acme-broker",
        "symbol": symbol,
        "amount": Decimal(amount),
        "price": Decimal(price) if price else None,
        "price_missing": price is None,
        "shares": (Decimal(amount) / Decimal(price)) if price else Decimal("0"),
        "points_used": 10000,
        "status": OrderStatusEnum.PENDING,
    }
    values.update(extra)
    return Order(**values)


@pytest_asyncio.fixture
async def pending_orders(seeded_program):
    """Acme: three sweepable orders worth $300 in two baskets, plus rows the sweep must leave alone."""

    async with seeded_program() as session:
        session.add_all(
            [
                _order("B-1", "m-001", "AAPL", "100.00", "250"),
                _order("B-1", "m-001", "MSFT", "100.00", "400"),
                _order("B-2", "m-004", "NVDA", "100.00", "125"),
                _order("B-2", "m-004", "TSLA", "50.00", None),
                _order("B-3", "m-004", "AMZN", "20.00", "100", status=OrderStatusEnum.PLACED, sweep_batch_id="SWP-old"),
                _order("G-1", "g-001", "AAPL", "50.00", "250", merchant_id="globex"),
            ]
        )
        await session.commit()
    return seeded_program


def _dispatcher(session, client, market, pipeline_now) -> SweepDispatcher:
    registry = BrokerRegistry(session, http_client=client, simulator=FillSimulator(variance=0))
    return SweepDispatcher(session, registry=registry, market=market, clock=lambda: pipeline_now)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def _statuses(session_factory) -> dict[str, OrderStatusEnum]:
    async with session_factory() as session:
        rows = (await session.execute(select(Order.basket_id, Order.symbol, Order.status))).all()
    return {f"{basket}:{symbol}": status for basket, symbol, status in rows}


@pytest.mark.asyncio
async def test_sweep_places_due_merchant_orders(pending_orders, open_market, pipeline_now, broker_webhook_url) -> None:
    payloads: list[dict] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == broker_webhook_url
        payloads.append(json.loads(request.content))
        return httpx.Response(200, json={"acknowledged": True, "reference_id": "BRK-REF-1"})

    async with pending_orders() as session, _client(handler) as client:
        result = await _dispatcher(session, client, open_market, pipeline_now).run()

    assert result["market_closed"] is False
    results = result["results"]
    assert results["sweep_batch_id"].startswith("SWP-20261019-150000-")
    assert results["orders_placed"] == 3
    assert results["orders_failed"] == 0
    assert results["merchants_processed"] == 1
    assert results["baskets_processed"] == 2
    assert results["errors"] == []
    assert open_market.calls[0] is True

    assert len(payloads) == 1
    assert payloads[0]["total_orders"] == 3
    assert payloads[0]["total_amount"] == 300.0
    assert payloads[0]["sweep_date"] == "2026-10-19"

    statuses = await _statuses(pending_orders)
    assert statuses["B-1:AAPL"] == OrderStatusEnum.PLACED
    assert statuses["B-1:MSFT"] == OrderStatusEnum.PLACED
    assert statuses["B-2:NVDA"] == OrderStatusEnum.PLACED
    assert statuses["B-2:TSLA"] == OrderStatusEnum.PENDING
    assert statuses["G-1:AAPL"] == OrderStatusEnum.PENDING

    async with pending_orders() as session:
        placed = (
            await session.execute(select(Order).where(Order.sweep_batch_id == results["sweep_batch_id"]))
        ).scalars().all()
        dispatch = (await session.execute(select(ExecutionRecord))).scalars().one()
        log = await session.get(SweepLog, results["sweep_batch_id"])
        untouched = (await session.execute(select(Order).where(Order.symbol == "AMZN"))).scalars().one()

    assert {order.broker_ref for order in placed} == {"BRK-REF-1"}
    assert all(order.placed_at is not None for order in placed)
    assert dispatch.event_type == ExecutionEventEnum.SWEEP_DISPATCH
    assert dispatch.acknowledged is True
    assert dispatch.http_status == 200
    assert log.orders_placed == 3
    assert log.brokers_notified == ["acme-broker"]
    assert untouched.sweep_batch_id == "SWP-old"


@pytest.mark.asyncio
async def test_sweep_skips_when_market_closed(pending_orders, closed_market, pipeline_now) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover - must not be called
        raise AssertionError("broker called while market closed")

    async with pending_orders() as session, _client(handler) as client:
        result = await _dispatcher(session, client, closed_market, pipeline_now).run(merchant_id="acme")
        logs = (await session.execute(select(SweepLog))).scalars().all()

    assert result["market_closed"] is True
    assert result["next_market_open"] is not None
    assert result["results"]["orders_placed"] == 0
    assert logs == []
    statuses = await _statuses(pending_orders)
    assert statuses["B-1:AAPL"] == OrderStatusEnum.PENDING


@pytest.mark.asyncio
async def test_unacknowledged_feed_leaves_orders_pending_for_retry(pending_orders, open_market, pipeline_now) -> None:
    replies = iter([httpx.Response(503, text="maintenance"), httpx.Response(200, json={"acknowledged": True})])

    async def handler(request: httpx.Request) -> httpx.Response:
        return next(replies)

    async with pending_orders() as session, _client(handler) as client:
        failed = await _dispatcher(session, client, open_market, pipeline_now).run(merchant_id="acme")

    assert failed["results"]["orders_placed"] == 0
    assert failed["results"]["orders_failed"] == 3
    assert failed["results"]["errors"] == [
        {"merchant_id": "acme", "broker": "acme-broker", "error": "Broker responded with HTTP 503"}
    ]
    assert (await _statuses(pending_orders))["B-1:AAPL"] == OrderStatusEnum.PENDING

    async with pending_orders() as session, _client(handler) as client:
        retried = await _dispatcher(session, client, open_market, pipeline_now).run(merchant_id="acme")
        records = (await session.execute(select(ExecutionRecord).order_by(ExecutionRecord.id))).scalars().all()

    assert retried["results"]["orders_placed"] == 3
    assert [record.acknowledged for record in records] == [False, True]
    assert records[0].response_payload == "maintenance"


@pytest.mark.asyncio
async def test_unconfigured_broker_fails_only_its_feed(pending_orders, open_market, pipeline_now) -> None:
    async with pending_orders() as session:
        session.add(_order("B-9", "m-001", "AMD", "40.00", "160", broker="ghost-broker"))
        await session.commit()

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"acknowledged": True})

    async with pending_orders() as session, _client(handler) as client:
        result = await _dispatcher(session, client, open_market, pipeline_now).run(merchant_id="acme")

    results = result["results"]
    assert results["orders_placed"] == 3
    assert results["orders_failed"] == 1
    assert results["errors"][0]["broker"] == "ghost-broker"
    assert "not configured" in results["errors"][0]["error"]
    assert (await _statuses(pending_orders))["B-9:AMD"] == OrderStatusEnum.PENDING


@pytest.mark.asyncio
async def test_explicit_merchant_bypasses_sweep_day(pending_orders, open_market, pipeline_now) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"acknowledged": True})

    async with pending_orders() as session, _client(handler) as client:
        result = await _dispatcher(session, client, open_market, pipeline_now).run(merchant_id="globex")

    assert result["results"]["orders_placed"] == 1
    assert (await _statuses(pending_orders))["G-1:AAPL"] == OrderStatusEnum.PLACED


@pytest.mark.asyncio
async def test_preview_and_history(pending_orders, open_market, pipeline_now) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"acknowledged": True})

    async with pending_orders() as session, _client(handler) as client:
        dispatcher = _dispatcher(session, client, open_market, pipeline_now)
        preview = await dispatcher.preview()
        assert await dispatcher.history() == []
        run = await dispatcher.run()
        history = await dispatcher.history()

    assert preview["total_orders"] == 3
    assert preview["total_amount"] == 300.0
    assert preview["merchants"] == 1
    assert [basket["basket_id"] for basket in preview["feeds"][0]["baskets"]] == ["B-1", "B-2"]
    assert preview["feeds"][0]["baskets"][0]["symbols"] == ["AAPL", "MSFT"]
    assert [entry["batch_id"] for entry in history] == [run["results"]["sweep_batch_id"]]


@pytest.mark.asyncio
async def test_second_sweep_finds_nothing_left_to_place(pending_orders, open_market, pipeline_now) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"acknowledged": True})

    async with pending_orders() as session, _client(handler) as client:
        first = await _dispatcher(session, client, open_market, pipeline_now).run(merchant_id="acme")
    async with pending_orders() as session, _client(handler) as client:
        second = await _dispatcher(session, client, open_market, pipeline_now).run(merchant_id="acme")

    assert first["results"]["orders_placed"] == 3
    assert second["results"]["orders_placed"] == 0
    assert second["results"]["orders_failed"] == 0
    assert (await _statuses(pending_orders))["B-2:TSLA"] == OrderStatusEnum.PENDING
