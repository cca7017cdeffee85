import asyncio
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import func, select

from stockloyal_api.models import PrepareBatch, PreparedOrder, PrepareStatusEnum
from stockloyal_api.services.errors import BatchNotFoundError, BatchNotStagedError
from stockloyal_api.services.staging import BatchStagingEngine, StagingScope
from stockloyal_api.services.staging.engine import scope_locks


def _engine(session, price_feed, pipeline_now, **overrides) -> BatchStagingEngine:
    options = {"min_sweep_points": 500, "max_orders_per_basket": 2}
    options.update(overrides)
    return BatchStagingEngine(session, price_feed=price_feed, clock=lambda: pipeline_now, **options)


def test_scope_key_and_slug() -> None:
    assert StagingScope().key == "*|*"
    assert StagingScope(merchant_id="acme").key == "acme|*"
    assert StagingScope(merchant_id="acme", member_id="m-001").slug == "ACME-M001"
    assert StagingScope().slug == "ALL"


@pytest.mark.asyncio
async def test_preview_applies_eligibility_rules(seeded_program, price_feed, pipeline_now) -> None:
    async with seeded_program() as session:
        preview = await _engine(session, price_feed, pipeline_now).preview(StagingScope(merchant_id="acme"))

        assert preview["eligible_members"] == 2
        assert preview["total_picks"] == 4
        assert preview["est_total_amount"] == pytest.approx(450.0)
        assert preview["est_total_points"] == 25000
        assert preview["bypassed_below_min"] == 1
        assert preview["capped_at_max"] == 1
        assert preview["members_skipped"] == 1
        assert preview["unique_symbols"] == 4
        assert preview["by_merchant"] == [{"merchant_id": "acme", "members": 2, "picks": 4}]

        staged = (await session.execute(select(func.count(PrepareBatch.batch_id)))).scalar_one()
        assert staged == 0
    assert price_feed.requested == []


@pytest.mark.asyncio
async def test_prepare_stages_rows_with_prices_and_missing_flags(seeded_program, price_feed, pipeline_now) -> None:
    async with seeded_program() as session:
        result = await _engine(session, price_feed, pipeline_now).prepare(StagingScope(merchant_id="acme"))

    assert result["batch_id"] == "PREP-202610-ACME-01"
    assert result["is_refresh"] is False
    assert result["refresh_count"] == 0
    results = result["results"]
    assert results["total_orders"] == 4
    assert results["total_members"] == 2
    assert results["total_amount"] == pytest.approx(450.0)
    assert results["total_shares"] == pytest.approx(2.7)
    assert results["missing_prices"] == 1

    async with seeded_program() as session:
        rows = (
            await session.execute(
                select(PreparedOrder).where(PreparedOrder.batch_id == result["batch_id"]).order_by(PreparedOrder.id)
            )
        ).scalars().all()

    by_symbol = {row.symbol: row for row in rows}
    assert set(by_symbol) == {"AAPL", "MSFT", "NVDA", "TSLA"}
    assert by_symbol["AAPL"].basket_id == "PREP-202610-ACME-01-m-001"
    assert by_symbol["AAPL"].amount == Decimal("25.00")
    assert by_symbol["AAPL"].points_used == 2500
    assert by_symbol["AAPL"].shares == Decimal("0.1")
    assert by_symbol["MSFT"].price is None
    assert by_symbol["MSFT"].shares == 0
    assert by_symbol["NVDA"].amount == Decimal("200.00")
    assert by_symbol["NVDA"].conversion_rate == Decimal("0.02")
    assert by_symbol["NVDA"].member_tier == "gold"
    assert all(row.status == PrepareStatusEnum.STAGED for row in rows)


@pytest.mark.asyncio
async def test_prepare_twice_refreshes_the_same_batch(seeded_program, price_feed, pipeline_now) -> None:
    scope = StagingScope(merchant_id="acme")
    async with seeded_program() as session:
        first = await _engine(session, price_feed, pipeline_now).prepare(scope)
    async with seeded_program() as session:
        second = await _engine(session, price_feed, pipeline_now).prepare(scope)

    assert second["batch_id"] == first["batch_id"]
    assert second["is_refresh"] is True
    assert second["refresh_count"] == 1

    async with seeded_program() as session:
        batches = (await session.execute(select(PrepareBatch))).scalars().all()
        rows = (await session.execute(select(func.count(PreparedOrder.id)))).scalar_one()

    assert len(batches) == 1
    assert batches[0].refreshed_at is not None
    assert rows == 4


@pytest.mark.asyncio
async def test_scopes_hold_independent_batches(seeded_program, price_feed, pipeline_now) -> None:
    async with seeded_program() as session:
        engine = _engine(session, price_feed, pipeline_now)
        acme = await engine.prepare(StagingScope(merchant_id="acme"))
        everyone = await engine.prepare(StagingScope())
        member = await engine.prepare(StagingScope(merchant_id="globex", member_id="g-001"))

    assert acme["batch_id"] == "PREP-202610-ACME-01"
    assert everyone["batch_id"] == "PREP-202610-ALL-01"
    assert member["batch_id"] == "PREP-202610-GLOBEX-G001-01"
    assert everyone["results"]["total_members"] == 3
    assert member["results"]["total_orders"] == 1


@pytest.mark.asyncio
async def test_price_feed_failure_stages_without_prices(seeded_program, pipeline_now) -> None:
    class BrokenFeed:
        async def fetch_prices(self, symbols):
            raise httpx.ConnectError("quote service down")

    async with seeded_program() as session:
        result = await _engine(session, BrokenFeed(), pipeline_now).prepare(StagingScope(merchant_id="acme"))

    assert result["results"]["total_orders"] == 4
    assert result["results"]["missing_prices"] == 4
    assert result["results"]["total_shares"] == 0


@pytest.mark.asyncio
async def test_discard_retains_rows_and_frees_the_scope(seeded_program, price_feed, pipeline_now) -> None:
    scope = StagingScope(merchant_id="acme")
    async with seeded_program() as session:
        engine = _engine(session, price_feed, pipeline_now)
        staged = await engine.prepare(scope)
        discarded = await engine.discard(staged["batch_id"])

        assert discarded == {"batch_id": staged["batch_id"], "status": "discarded", "rows_retained": 4}
        with pytest.raises(BatchNotStagedError):
            await engine.discard(staged["batch_id"])

        replacement = await engine.prepare(scope)

    assert replacement["batch_id"] == "PREP-202610-ACME-02"
    assert replacement["is_refresh"] is False


@pytest.mark.asyncio
async def test_stats_and_drilldown(seeded_program, price_feed, pipeline_now) -> None:
    async with seeded_program() as session:
        engine = _engine(session, price_feed, pipeline_now)
        staged = await engine.prepare(StagingScope(merchant_id="acme"))
        stats = await engine.stats(staged["batch_id"])
        page = await engine.drilldown(staged["batch_id"], page=1, per_page=1)
        listed = await engine.list_batches()

        with pytest.raises(BatchNotFoundError):
            await engine.stats("PREP-missing")

    assert stats["batch"]["total_orders"] == 4
    assert stats["by_broker"] == [
        {"broker": "acme-broker", "members": 2, "orders": 4, "amount": 450.0, "points": 25000}
    ]
    tiers = {entry["member_tier"]: entry for entry in stats["by_tier"]}
    assert tiers["gold"]["amount"] == pytest.approx(400.0)
    assert tiers[None]["conversion_rate"] == pytest.approx(0.01)
    assert stats["top_symbols"][0]["amount"] == pytest.approx(200.0)

    assert page["total_members"] == 2
    assert page["total_pages"] == 2
    assert page["members"][0]["member_id"] == "m-001"
    assert page["members"][0]["symbols"] == ["AAPL", "MSFT"]
    assert page["members"][0]["missing_prices"] == 1

    assert [batch["batch_id"] for batch in listed] == [staged["batch_id"]]


@pytest.mark.asyncio
async def test_prepare_records_pipeline_run(seeded_program, price_feed, pipeline_now, reset_pipeline_store) -> None:
    async with seeded_program() as session:
        staged = await _engine(session, price_feed, pipeline_now).prepare(StagingScope(merchant_id="acme"))

    snapshot = reset_pipeline_store.snapshot()
    assert snapshot.totals["prepare"] == {"succeeded": 1}
    assert snapshot.stages["prepare"].last_run_id == staged["batch_id"]


@pytest.mark.asyncio
async def test_discard_waits_for_the_scope_lock(seeded_program, price_feed, pipeline_now) -> None:
    scope = StagingScope(merchant_id="acme")
    async with seeded_program() as session:
        staged = await _engine(session, price_feed, pipeline_now).prepare(scope)

    async with seeded_program() as session:
        engine = _engine(session, price_feed, pipeline_now)
        async with scope_locks.hold(scope.key):
            pending = asyncio.create_task(engine.discard(staged["batch_id"]))
            await asyncio.sleep(0.05)
            assert not pending.done()
        discarded = await pending

    assert discarded["status"] == "discarded"


@pytest.mark.asyncio
async def test_discard_and_refresh_never_leave_staged_rows_behind(seeded_program, price_feed, pipeline_now) -> None:
    scope = StagingScope(merchant_id="acme")
    async with seeded_program() as session:
        staged = await _engine(session, price_feed, pipeline_now).prepare(scope)

    async def discard() -> dict:
        async with seeded_program() as session:
            return await _engine(session, price_feed, pipeline_now).discard(staged["batch_id"])

    async def refresh() -> dict:
        async with seeded_program() as session:
            return await _engine(session, price_feed, pipeline_now).prepare(scope)

    await asyncio.gather(discard(), refresh())

    async with seeded_program() as session:
        statuses = (
            await session.execute(select(PreparedOrder.status).where(PreparedOrder.batch_id == staged["batch_id"]))
        ).scalars().all()
        batch = await session.get(PrepareBatch, staged["batch_id"])

    assert batch.status == PrepareStatusEnum.DISCARDED
    assert statuses
    assert all(status == PrepareStatusEnum.DISCARDED for status in statuses)
