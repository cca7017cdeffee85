import json
import random
from datetime import date, datetime, timezone
from decimal import Decimal

import httpx
import pytest

from stockloyal_api.models import Broker, BrokerTypeEnum
from stockloyal_api.services.brokers import (
    AlpacaBrokerAdapter,
    BrokerConfig,
    BrokerFeed,
    BrokerRegistry,
    FeedOrder,
    FillRequest,
    FillSimulator,
    FillStatus,
    WebhookBrokerAdapter,
)
from stockloyal_api.services.errors import BrokerDispatchError, BrokerNotConfiguredError


def _feed(*accounts: str | None) -> BrokerFeed:
    orders = [
        FeedOrder(
            order_id=index,
            member_id=f"m-00{index}",
            basket_id=f"PREP-202610-ACME-01-m-00{index}",
            symbol="AAPL",
            shares=Decimal("0.4"),
            amount=Decimal("100.00"),
            price=Decimal("250"),
            points_used=10000,
            broker_account_id=account,
        )
        for index, account in enumerate(accounts, start=1)
    ]
    return BrokerFeed(
        sweep_batch_id="SWP-20261019-150000-abc123",
        merchant_id="acme",
        broker="acme-broker",
        sweep_date=date(2026, 10, 19),
        orders=orders,
    )


def _webhook_config(**overrides) -> BrokerConfig:
    options = {
        "broker_id": "BRK-1",
        "broker_name": "acme-broker",
        "broker_type": BrokerTypeEnum.WEBHOOK,
        "webhook_url": "https://broker.test/sweeps",
        "api_key": "broker-secret",
    }
    options.update(overrides)
    return BrokerConfig(**options)


def test_feed_payload_groups_orders_by_member() -> None:
    payload = _feed("acct-1", "acct-2").build_payload(timestamp=datetime(2026, 10, 19, 15, tzinfo=timezone.utc))

    assert payload["event_type"] == "sweep_batch"
    assert payload["batch_id"] == "SWP-20261019-150000-abc123"
    assert payload["sweep_date"] == "2026-10-19"
    assert payload["total_orders"] == 2
    assert payload["total_amount"] == 200.0
    assert [member["member_id"] for member in payload["members"]] == ["m-001", "m-002"]
    assert payload["members"][0]["orders"][0]["shares"] == pytest.approx(0.4)


@pytest.mark.asyncio
async def test_webhook_dispatch_acknowledges_on_success() -> None:
    captured: list[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"acknowledged": True, "reference_id": "BRK-REF-9"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = WebhookBrokerAdapter(_webhook_config(), http_client=client, simulator=FillSimulator(variance=0))
        ack = await adapter.dispatch(_feed("acct-1"))

    assert ack.acknowledged is True
    assert ack.http_status == 200
    assert ack.external_ref == "BRK-REF-9"
    assert captured[0].headers["X-Event-Type"] == "sweep_batch"
    assert captured[0].headers["Authorization"] == "Bearer broker-secret"
    assert json.loads(captured[0].content)["merchant_id"] == "acme"


@pytest.mark.asyncio
async def test_webhook_dispatch_treats_declines_and_errors_as_unacknowledged() -> None:
    responses = iter(
        [
            httpx.Response(200, json={"acknowledged": False}),
            httpx.Response(500, text="boom"),
        ]
    )

    async def handler(request: httpx.Request) -> httpx.Response:
        return next(responses)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = WebhookBrokerAdapter(_webhook_config(), http_client=client, simulator=FillSimulator(variance=0))
        declined = await adapter.dispatch(_feed("acct-1"))
        failed = await adapter.dispatch(_feed("acct-1"))
        unconfigured = await WebhookBrokerAdapter(
            _webhook_config(webhook_url=None), http_client=client, simulator=FillSimulator(variance=0)
        ).dispatch(_feed("acct-1"))

    assert declined.acknowledged is False
    assert declined.error == "Broker declined the batch"
    assert failed.acknowledged is False
    assert failed.http_status == 500
    assert failed.response == "boom"
    assert unconfigured.acknowledged is False
    assert "webhook_url" in unconfigured.error


@pytest.mark.asyncio
async def test_webhook_dispatch_survives_transport_errors() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = WebhookBrokerAdapter(_webhook_config(), http_client=client, simulator=FillSimulator(variance=0))
        ack = await adapter.dispatch(_feed("acct-1"))

    assert ack.acknowledged is False
    assert ack.request["batch_id"] == "SWP-20261019-150000-abc123"
    assert ack.error.startswith("Webhook request failed")


def test_fill_simulator_stays_within_variance() -> None:
    simulator = FillSimulator(variance=0.02, rng=random.Random(7))
    request = FillRequest(
        order_id=1,
        symbol="AAPL",
        shares=Decimal("0.4"),
        amount=Decimal("100.00"),
        target_price=Decimal("250"),
    )

    fills = [simulator.fill(request) for _ in range(25)]

    assert all(fill.status is FillStatus.FILLED for fill in fills)
    assert all(Decimal("245") <= fill.price <= Decimal("255") for fill in fills)
    assert all(fill.shares == Decimal("0.4") for fill in fills)
    assert all(fill.amount == (fill.price * fill.shares).quantize(Decimal("0.01")) for fill in fills)


def test_fill_simulator_fails_without_a_price() -> None:
    simulator = FillSimulator(variance=0)
    request = FillRequest(order_id=1, symbol="MSFT", shares=Decimal("0"), amount=Decimal("25.00"), target_price=None)

    fill = simulator.fill(request)

    assert fill.status is FillStatus.FAILED
    assert "MSFT" in fill.error


@pytest.mark.asyncio
async def test_alpaca_dispatch_places_one_order_per_pipeline_order() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if "acct-bad" in request.url.path:
            return httpx.Response(422, json={"message": "insufficient buying power"})
        return httpx.Response(200, json={"id": f"alp-{body['client_order_id']}", "status": "accepted"})

    config = BrokerConfig(broker_id="BRK-2", broker_name="alpaca", broker_type=BrokerTypeEnum.ALPACA)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = AlpacaBrokerAdapter(
            config,
            http_client=client,
            base_url="https://alpaca.test/",
            api_key="key",
            api_secret="secret",
        )
        ack = await adapter.dispatch(_feed("acct-1", None, "acct-bad"))

    assert ack.acknowledged is True
    assert ack.order_refs == {1: "alp-SWP-20261019-150000-abc123-1"}
    assert ack.rejected == {2: "Member has no broker_account_id", 3: "insufficient buying power"}


@pytest.mark.asyncio
async def test_alpaca_fetch_fill_maps_venue_status() -> None:
    statuses = {
        "ord-filled": {"status": "filled", "filled_avg_price": "251.5", "filled_qty": "0.4"},
        "ord-rejected": {"status": "rejected"},
        "ord-new": {"status": "new"},
    }

    async def handler(request: httpx.Request) -> httpx.Response:
        order_ref = request.url.path.rsplit("/", 1)[-1]
        if order_ref not in statuses:
            return httpx.Response(404, json={"message": "not found"})
        return httpx.Response(200, json=statuses[order_ref])

    config = BrokerConfig(broker_id="BRK-2", broker_name="alpaca", broker_type=BrokerTypeEnum.ALPACA)
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = AlpacaBrokerAdapter(config, http_client=client, base_url="https://alpaca.test", api_key="k", api_secret="s")

        def request(ref: str | None) -> FillRequest:
            return FillRequest(
                order_id=1,
                symbol="AAPL",
                shares=Decimal("0.4"),
                amount=Decimal("100.00"),
                target_price=Decimal("250"),
                broker_ref=ref,
                broker_account_id="acct-1",
            )

        filled = await adapter.fetch_fill(request("ord-filled"))
        rejected = await adapter.fetch_fill(request("ord-rejected"))
        working = await adapter.fetch_fill(request("ord-new"))
        unreferenced = await adapter.fetch_fill(request(None))
        with pytest.raises(BrokerDispatchError):
            await adapter.fetch_fill(request("ord-missing"))

    assert filled.status is FillStatus.FILLED
    assert filled.amount == Decimal("100.60")
    assert rejected.status is FillStatus.FAILED
    assert working.status is FillStatus.PENDING
    assert unreferenced.status is FillStatus.FAILED


@pytest.mark.asyncio
async def test_registry_resolves_by_name_or_id_and_rejects_inactive(session_factory) -> None:
    async with session_factory() as session:
        session.add_all(
            [
                Broker(broker_id="BRK-1", broker_name="acme-broker", broker_type=BrokerTypeEnum.WEBHOOK, webhook_url="https://b"),
                Broker(broker_id="BRK-2", broker_name="alpaca", broker_type=BrokerTypeEnum.ALPACA),
                Broker(broker_id="BRK-3", broker_name="retired", broker_type=BrokerTypeEnum.WEBHOOK, is_active=False),
            ]
        )
        await session.commit()

        async with httpx.AsyncClient() as client:
            registry = BrokerRegistry(session, http_client=client)
            by_name = await registry.resolve("acme-broker")
            by_id = await registry.resolve("BRK-1")
            alpaca = await registry.resolve("alpaca")

            with pytest.raises(BrokerNotConfiguredError):
                await registry.resolve("retired")
            with pytest.raises(BrokerNotConfiguredError):
                await registry.resolve(None)

    assert by_name is by_id
    assert isinstance(by_name, WebhookBrokerAdapter)
    assert isinstance(alpaca, AlpacaBrokerAdapter)
