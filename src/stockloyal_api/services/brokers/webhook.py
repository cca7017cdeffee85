"""Generic webhook broker: one JSON POST per feed, fills simulated locally."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Mapping

import httpx
from loguru import logger

from .base import AckResult, BrokerConfig, BrokerFeed, FillRequest, FillResult
from .simulator import FillSimulator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _decode_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text or None


class WebhookBrokerAdapter:
    def __init__(
        self,
        config: BrokerConfig,
        *,
        http_client: httpx.AsyncClient,
        simulator: FillSimulator,
        timeout_seconds: float = 30.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.config = config
        self._http_client = http_client
        self._simulator = simulator
        self._timeout = timeout_seconds
        self._clock = clock or _utcnow

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "X-Event-Type": "sweep_batch"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
            headers["X-API-Key"] = self.config.api_key
        return headers

    async def dispatch(self, feed: BrokerFeed) -> AckResult:
        url = (self.config.webhook_url or "").strip()
        if not url:
            return AckResult(acknowledged=False, error=f"Broker {self.config.broker_name} has no webhook_url configured")

        payload = feed.build_payload(timestamp=self._clock())
        try:
            response = await self._http_client.post(url, json=payload, headers=self._headers(), timeout=self._timeout)
        except httpx.HTTPError as exc:
            logger.warning("Broker webhook request failed", broker=self.config.broker_name, url=url, error=str(exc))
            return AckResult(acknowledged=False, request=payload, error=f"Webhook request failed: {exc}")

        body = _decode_body(response)
        acknowledged = response.is_success
        if isinstance(body, Mapping) and body.get("acknowledged") is False:
            acknowledged = False

        error = None
        if not acknowledged:
            error = f"Broker responded with HTTP {response.status_code}" if not response.is_success else "Broker declined the batch"

        external_ref = feed.sweep_batch_id
        if isinstance(body, Mapping):
            external_ref = str(body.get("reference_id") or body.get("batch_id") or feed.sweep_batch_id)

        return AckResult(
            acknowledged=acknowledged,
            http_status=response.status_code,
            request=payload,
            response=body,
            error=error,
            external_ref=external_ref if acknowledged else None,
        )

    async def fetch_fill(self, request: FillRequest) -> FillResult:
        return self._simulator.fill(request)


__all__ = ["WebhookBrokerAdapter"]
