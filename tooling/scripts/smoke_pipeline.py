#!/usr/bin/env python3
"""Smoke test for the order pipeline read paths.

Usage (HTTP):
    python tooling/scripts/smoke_pipeline.py --base-url http://localhost:8000 --api-key <ADMIN_API_KEY>

Usage (in-process, no network sockets required):
    python tooling/scripts/smoke_pipeline.py --in-process

The script checks:
1. API health (`/healthz`)
2. Staging preview (`POST /api/v1/staging/preview`)
3. Sweep preview (`POST /api/v1/sweep/preview`)
4. Market status (`GET /api/v1/market/status`)
5. Pending payments (`POST /api/v1/payments/pending`)
6. Pipeline observability snapshot (`/api/v1/observability/pipeline`)

None of these calls write pipeline state.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from decimal import Decimal
from pathlib import Path
from typing import Any

import httpx
from httpx import ASGITransport, Response

SMOKE_MERCHANT = "smoke-merchant"


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="StockLoyal pipeline smoke test")
    parser.add_argument(
        "--base-url",
        default="http://localhost:8000",
        help="Base URL of the FastAPI service (ignored with --in-process)",
    )
    parser.add_argument(
        "--api-key",
        help="Value for X-API-Key when admin endpoints are protected.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=10.0,
        help="Request timeout in seconds",
    )
    parser.add_argument(
        "--in-process",
        action="store_true",
        help="Run requests directly against the ASGI app without binding network sockets.",
    )
    return parser.parse_args()


async def _get_json(client: httpx.AsyncClient, path: str, headers: dict[str, str]) -> dict[str, Any]:
    response: Response = await client.get(path, headers=headers)
    response.raise_for_status()
    return response.json()


async def _post_json(
    client: httpx.AsyncClient,
    path: str,
    payload: dict[str, Any],
    headers: dict[str, str],
) -> dict[str, Any]:
    response: Response = await client.post(path, json=payload, headers=headers)
    response.raise_for_status()
    body = response.json()
    if not body.get("success"):
        raise RuntimeError(f"{path} returned an error envelope: {body}")
    return body


async def _run_checks(client: httpx.AsyncClient, api_key: str | None) -> dict[str, Any]:
    headers = {"X-API-Key": api_key} if api_key else {}

    health = await _get_json(client, "/healthz", headers)
    if health.get("status") != "ok":
        raise RuntimeError(f"Unexpected health response: {health}")

    staging = await _post_json(client, "/api/v1/staging/preview", {}, headers)
    for key in ("eligible_members", "total_picks", "est_total_amount", "by_merchant"):
        if key not in staging:
            raise RuntimeError(f"Staging preview missing {key}: {staging}")

    sweep = await _post_json(client, "/api/v1/sweep/preview", {}, headers)
    if "total_orders" not in sweep:
        raise RuntimeError(f"Sweep preview missing total_orders: {sweep}")

    market = await _get_json(client, "/api/v1/market/status", headers)
    if "is_open" not in market:
        raise RuntimeError(f"Market status missing is_open: {market}")

    pending = await _post_json(client, "/api/v1/payments/pending", {}, headers)
    if "merchants" not in pending:
        raise RuntimeError(f"Pending payments missing merchants: {pending}")

    observability = await _get_json(client, "/api/v1/observability/pipeline", headers)
    if "totals" not in observability:
        raise RuntimeError(f"Pipeline observability missing totals: {observability}")

    return {"staging": staging, "sweep": sweep, "market": market}


async def _ensure_member_fixture() -> None:
    from stockloyal_api.db.base import Base  # type: ignore import-position
    from stockloyal_api.db.session import async_session, engine  # type: ignore import-position
    from stockloyal_api.models import Merchant, MemberStockPick, Wallet  # type: ignore import-position

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with async_session() as session:
        if await session.get(Merchant, SMOKE_MERCHANT):
            return
        session.add(Merchant(merchant_id=SMOKE_MERCHANT, merchant_name="Smoke Merchant", conversion_rate=Decimal("0.01")))
        session.add(
            Wallet(
                member_id="smoke-member",
                merchant_id=SMOKE_MERCHANT,
                points=10000,
                sweep_percentage=Decimal("50"),
                broker="smoke-broker",
            )
        )
        session.add_all(
            [
                MemberStockPick(member_id="smoke-member", symbol="AAPL"),
                MemberStockPick(member_id="smoke-member", symbol="MSFT"),
            ]
        )
        await session.commit()


async def run_http(base_url: str, timeout: float, api_key: str | None) -> dict[str, Any]:
    async with httpx.AsyncClient(base_url=base_url, timeout=timeout) as client:
        return await _run_checks(client, api_key)


async def run_in_process(timeout: float, api_key: str | None) -> dict[str, Any]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from stockloyal_api.app import create_app  # type: ignore import-position

    app = create_app()
    lifespan = app.router.lifespan_context(app)
    await lifespan.__aenter__()
    try:
        await _ensure_member_fixture()
        transport = ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver", timeout=timeout) as client:
            return await _run_checks(client, api_key)
    finally:
        await lifespan.__aexit__(None, None, None)


def main() -> int:
    args = parse_args()
    api_key = args.api_key or os.environ.get("ADMIN_API_KEY")

    if args.in_process:
        summary = asyncio.run(run_in_process(args.timeout, api_key))
    else:
        summary = asyncio.run(run_http(args.base_url, args.timeout, api_key))

    staging = summary["staging"]
    market_state = "open" if summary["market"]["is_open"] else "closed"
    print(
        "Pipeline smoke test passed: "
        f"{staging['eligible_members']} eligible members, {staging['total_picks']} picks, "
        f"{summary['sweep']['total_orders']} pending orders, market {market_state}"
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
