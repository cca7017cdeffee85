"""Collaborator dependencies shared by the pipeline routers."""

from __future__ import annotations

from collections.abc import AsyncIterator

import httpx
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from stockloyal_api.core.settings import settings
from stockloyal_api.db.session import get_session
from stockloyal_api.services.brokers import BrokerRegistry
from stockloyal_api.services.market import MarketCalendar, MarketClock
from stockloyal_api.services.pricing import PriceFeed, QuotePriceFeed


async def get_http_client(request: Request) -> AsyncIterator[httpx.AsyncClient]:
    """Reuse the application's client when the lifespan created one."""

    client = getattr(request.app.state, "http_client", None)
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(timeout=settings.broker_dispatch_timeout_seconds) as scoped_client:
        yield scoped_client


async def get_price_feed(client: httpx.AsyncClient = Depends(get_http_client)) -> PriceFeed:
    return QuotePriceFeed(http_client=client)


async def get_market_calendar(
    request: Request,
    client: httpx.AsyncClient = Depends(get_http_client),
) -> MarketClock:
    calendar = getattr(request.app.state, "market_calendar", None)
    if calendar is not None:
        return calendar
    return MarketCalendar(http_client=client)


async def get_broker_registry(
    session: AsyncSession = Depends(get_session),
    client: httpx.AsyncClient = Depends(get_http_client),
) -> BrokerRegistry:
    return BrokerRegistry(session, http_client=client)
