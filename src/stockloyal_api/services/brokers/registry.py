"""Broker registry: resolves a broker name to the adapter variant for its type.

Broker rows are loaded from the database on first use and cached for the
lifetime of the registry, which is scoped to one request or job run.
"""

from __future__ import annotations

from typing import Callable

import httpx
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from stockloyal_api.core.settings import settings
from stockloyal_api.models.merchant import Broker, BrokerTypeEnum
from stockloyal_api.services.errors import BrokerNotConfiguredError
from .alpaca import AlpacaBrokerAdapter
from .base import BrokerAdapter, BrokerConfig
from .simulator import FillSimulator
from .webhook import WebhookBrokerAdapter

AdapterFactory = Callable[[BrokerConfig], BrokerAdapter]


class BrokerRegistry:
    def __init__(
        self,
        session: AsyncSession,
        *,
        http_client: httpx.AsyncClient,
        simulator: FillSimulator | None = None,
        factories: dict[BrokerTypeEnum, AdapterFactory] | None = None,
    ) -> None:
        self._session = session
        self._http_client = http_client
        self._simulator = simulator or FillSimulator()
        self._configs: dict[str, BrokerConfig] = {}
        self._adapters: dict[str, BrokerAdapter] = {}
        self._factories: dict[BrokerTypeEnum, AdapterFactory] = {
            BrokerTypeEnum.WEBHOOK: self._build_webhook,
            BrokerTypeEnum.ALPACA: self._build_alpaca,
        }
        if factories:
            self._factories.update(factories)

    def _build_webhook(self, config: BrokerConfig) -> BrokerAdapter:
        return WebhookBrokerAdapter(
            config,
            http_client=self._http_client,
            simulator=self._simulator,
            timeout_seconds=settings.broker_dispatch_timeout_seconds,
        )

    def _build_alpaca(self, config: BrokerConfig) -> BrokerAdapter:
        return AlpacaBrokerAdapter(
            config,
            http_client=self._http_client,
            base_url=settings.alpaca_broker_base_url,
            api_key=settings.alpaca_api_key,
            api_secret=settings.alpaca_api_secret,
            timeout_seconds=settings.broker_dispatch_timeout_seconds,
        )

    async def get_config(self, broker: str | None) -> BrokerConfig:
        if not broker:
            raise BrokerNotConfiguredError(broker)
        cached = self._configs.get(broker)
        if cached is not None:
            return cached

        stmt = select(Broker).where(or_(Broker.broker_name == broker, Broker.broker_id == broker))
        row = (await self._session.execute(stmt)).scalars().first()
        if row is None or not row.is_active:
            raise BrokerNotConfiguredError(broker)
        config = BrokerConfig.from_model(row)
        self._configs[broker] = config
        return config

    async def resolve(self, broker: str | None) -> BrokerAdapter:
        config = await self.get_config(broker)
        adapter = self._adapters.get(config.broker_id)
        if adapter is None:
            adapter = self._factories[config.broker_type](config)
            self._adapters[config.broker_id] = adapter
        return adapter


__all__ = ["BrokerRegistry"]
