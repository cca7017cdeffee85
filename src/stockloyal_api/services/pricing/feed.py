"""Quote lookups for staging and missing-price repair."""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, Protocol

import httpx
from loguru import logger

from stockloyal_api.core.settings import settings


class PriceFeed(Protocol):
    async def fetch_prices(self, symbols: Iterable[str]) -> dict[str, Decimal]:
        ...


def clean_symbols(symbols: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for symbol in symbols:
        cleaned = (symbol or "").strip().upper()
        if cleaned:
            seen.setdefault(cleaned, None)
    return list(seen)


def _positive_price(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return price if price > 0 else None


class QuotePriceFeed:
    """Batch quote endpoint with a per-symbol chart fallback.

    Symbols the feed cannot price are left out of the result; callers treat
    absence as a missing price rather than an error.
    """

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient | None = None,
        quote_url: str | None = None,
        chart_url: str | None = None,
        timeout_seconds: float | None = None,
        chunk_size: int | None = None,
    ) -> None:
        self._http_client = http_client
        self._quote_url = quote_url or settings.price_feed_quote_url
        self._chart_url = (chart_url or settings.price_feed_chart_url).rstrip("/")
        self._timeout = timeout_seconds or settings.price_feed_timeout_seconds
        self._chunk_size = max(chunk_size or settings.price_feed_chunk_size, 1)

    async def fetch_prices(self, symbols: Iterable[str]) -> dict[str, Decimal]:
        wanted = clean_symbols(symbols)
        if not wanted:
            return {}

        client = self._http_client or httpx.AsyncClient(timeout=self._timeout)
        owns_client = self._http_client is None
        prices: dict[str, Decimal] = {}
        try:
            for start in range(0, len(wanted), self._chunk_size):
                chunk = wanted[start : start + self._chunk_size]
                prices.update(await self._fetch_quote_chunk(client, chunk))

            for symbol in wanted:
                if symbol in prices:
                    continue
                fallback = await self._fetch_chart_price(client, symbol)
                if fallback is not None:
                    prices[symbol] = fallback
        finally:
            if owns_client:
                await client.aclose()

        missing = [symbol for symbol in wanted if symbol not in prices]
        if missing:
            logger.warning("Price feed could not resolve symbols", missing=missing, requested=len(wanted))
        return prices

    async def _fetch_quote_chunk(self, client: httpx.AsyncClient, symbols: list[str]) -> dict[str, Decimal]:
        try:
            response = await client.get(self._quote_url, params={"symbols": ",".join(symbols)})
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Quote request failed", symbols=len(symbols), error=str(exc))
            return {}

        results = (payload.get("quoteResponse") or {}).get("result") if isinstance(payload, Mapping) else None
        prices: dict[str, Decimal] = {}
        for quote in results or []:
            if not isinstance(quote, Mapping):
                continue
            symbol = str(quote.get("symbol") or "").upper()
            price = _positive_price(quote.get("regularMarketPrice"))
            if symbol and price is not None:
                prices[symbol] = price
        return prices

    async def _fetch_chart_price(self, client: httpx.AsyncClient, symbol: str) -> Decimal | None:
        try:
            response = await client.get(f"{self._chart_url}/{symbol}", params={"interval": "1d", "range": "1d"})
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Chart fallback failed", symbol=symbol, error=str(exc))
            return None

        try:
            meta = payload["chart"]["result"][0]["meta"]
        except (KeyError, IndexError, TypeError):
            return None
        return _positive_price(meta.get("regularMarketPrice") if isinstance(meta, Mapping) else None)


__all__ = ["PriceFeed", "QuotePriceFeed", "clean_symbols"]
