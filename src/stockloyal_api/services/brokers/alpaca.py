"""Alpaca Broker API adapter: one notional market order per pipeline order."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
from loguru import logger

from stockloyal_api.services.errors import BrokerDispatchError
from .base import AckResult, BrokerConfig, BrokerFeed, FillRequest, FillResult, FillStatus

_FILLED = {"filled", "done_for_day"}
_FAILED = {"canceled", "cancelled", "expired", "rejected", "suspended"}


def _decimal(value: Any) -> Decimal | None:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


class AlpacaBrokerAdapter:
    def __init__(
        self,
        config: BrokerConfig,
        *,
        http_client: httpx.AsyncClient,
        base_url: str,
        api_key: str,
        api_secret: str,
        timeout_seconds: float = 30.0,
    ) -> None:
        self.config = config
        self._http_client = http_client
        self._base_url = base_url.rstrip("/")
        self._auth = (api_key, api_secret)
        self._timeout = timeout_seconds

    def _orders_url(self, account_id: str) -> str:
        return f"{self._base_url}/v1/trading/accounts/{account_id}/orders"

    async def dispatch(self, feed: BrokerFeed) -> AckResult:
        order_refs: dict[int, str] = {}
        rejected: dict[int, str] = {}
        results: list[dict[str, Any]] = []
        requests: list[dict[str, Any]] = []
        last_status: int | None = None

        for order in feed.orders:
            if not order.broker_account_id:
                rejected[order.order_id] = "Member has no broker_account_id"
                results.append({"order_id": order.order_id, "error": rejected[order.order_id]})
                continue

            body = {
                "symbol": order.symbol,
                "notional": str(order.amount),
                "side": "buy",
                "type": "market",
                "time_in_force": "day",
                "client_order_id": f"{feed.sweep_batch_id}-{order.order_id}",
            }
            requests.append({"account_id": order.broker_account_id, **body})
            try:
                response = await self._http_client.post(
                    self._orders_url(order.broker_account_id),
                    json=body,
                    auth=self._auth,
                    timeout=self._timeout,
                )
            except httpx.HTTPError as exc:
                rejected[order.order_id] = f"Order request failed: {exc}"
                results.append({"order_id": order.order_id, "error": rejected[order.order_id]})
                continue

            last_status = response.status_code
            try:
                payload = response.json()
            except ValueError:
                payload = {"raw": response.text}

            if response.is_success and isinstance(payload, dict) and payload.get("id"):
                order_refs[order.order_id] = str(payload["id"])
                results.append({"order_id": order.order_id, "alpaca_order_id": payload["id"], "status": payload.get("status")})
            else:
                message = payload.get("message") if isinstance(payload, dict) else None
                rejected[order.order_id] = message or f"HTTP {response.status_code}"
                results.append({"order_id": order.order_id, "error": rejected[order.order_id], "http_status": response.status_code})

        if rejected:
            logger.warning(
                "Alpaca rejected sweep orders",
                broker=self.config.broker_name,
                sweep_batch_id=feed.sweep_batch_id,
                rejected=len(rejected),
                accepted=len(order_refs),
            )

        acknowledged = bool(order_refs)
        return AckResult(
            acknowledged=acknowledged,
            http_status=last_status,
            request={"orders": requests},
            response={"orders": results},
            error=None if acknowledged else "No orders accepted by Alpaca",
            external_ref=feed.sweep_batch_id if acknowledged else None,
            order_refs=order_refs,
            rejected=rejected,
        )

    async def fetch_fill(self, request: FillRequest) -> FillResult:
        if not request.broker_ref or not request.broker_account_id:
            return FillResult(status=FillStatus.FAILED, error="Order has no Alpaca reference")

        url = f"{self._orders_url(request.broker_account_id)}/{request.broker_ref}"
        try:
            response = await self._http_client.get(url, auth=self._auth, timeout=self._timeout)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise BrokerDispatchError(f"Alpaca order lookup failed: {exc}", url=url) from exc

        venue_status = str(payload.get("status") or "").lower()
        if venue_status in _FILLED:
            price = _decimal(payload.get("filled_avg_price"))
            shares = _decimal(payload.get("filled_qty"))
            if price is None or shares is None:
                return FillResult(status=FillStatus.PENDING, venue_status=venue_status)
            amount = (price * shares).quantize(Decimal("0.01"))
            return FillResult(status=FillStatus.FILLED, price=price, shares=shares, amount=amount, venue_status=venue_status)
        if venue_status in _FAILED:
            return FillResult(status=FillStatus.FAILED, error=f"Alpaca order {venue_status}", venue_status=venue_status)
        return FillResult(status=FillStatus.PENDING, venue_status=venue_status or None)


__all__ = ["AlpacaBrokerAdapter"]
