"""Market open/closed evaluation used to gate sweep dispatch."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Callable, Iterable, Mapping, Protocol
from zoneinfo import ZoneInfo

import httpx
from loguru import logger

from stockloyal_api.core.settings import settings

_LOOKAHEAD_DAYS = 14

Session = tuple[datetime, datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_clock_time(value: str) -> time:
    hours, _, minutes = value.strip().partition(":")
    return time(int(hours), int(minutes or 0))


@dataclass(slots=True)
class MarketStatus:
    is_open: bool
    is_trading_day: bool
    checked_at: datetime
    next_open: datetime | None = None
    next_close: datetime | None = None
    delay_reason: str | None = None
    source: str = "schedule"

    def as_dict(self) -> dict[str, Any]:
        return {
            "is_open": self.is_open,
            "is_trading_day": self.is_trading_day,
            "checked_at": self.checked_at.isoformat(),
            "next_open": self.next_open.isoformat() if self.next_open else None,
            "next_close": self.next_close.isoformat() if self.next_close else None,
            "delay_reason": self.delay_reason,
            "source": self.source,
        }


class MarketClock(Protocol):
    async def status(self, *, now: datetime | None = None, refresh: bool = False) -> MarketStatus:
        ...

    def is_stale(self, status: MarketStatus, *, now: datetime | None = None) -> bool:
        ...


class MarketCalendar:
    """Regular-session calendar with an optional remote trading calendar.

    Without ``calendar_url`` the market trades Monday to Friday between the
    configured open and close times, skipping ``holidays``. With it, the
    remote calendar decides which days trade; any fetch failure falls back to
    the weekday schedule.
    """

    def __init__(
        self,
        *,
        timezone_name: str | None = None,
        open_time: str | None = None,
        close_time: str | None = None,
        holidays: Iterable[str] | None = None,
        calendar_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        ttl_seconds: int | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._tz = ZoneInfo(timezone_name or settings.market_timezone)
        self._open = parse_clock_time(open_time or settings.market_open_time)
        self._close = parse_clock_time(close_time or settings.market_close_time)
        self._holidays = set(holidays if holidays is not None else settings.market_holidays)
        self._calendar_url = calendar_url if calendar_url is not None else settings.market_calendar_url
        self._http_client = http_client
        self._ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.market_status_ttl_seconds
        self._clock = clock or _utcnow
        self._cached: MarketStatus | None = None

    def is_stale(self, status: MarketStatus, *, now: datetime | None = None) -> bool:
        current = now or self._clock()
        age = (current - status.checked_at).total_seconds()
        return age < 0 or age >= self._ttl_seconds

    async def status(self, *, now: datetime | None = None, refresh: bool = False) -> MarketStatus:
        current = now or self._clock()
        cached = self._cached
        if not refresh and cached is not None and not self.is_stale(cached, now=current):
            return cached

        local_today = current.astimezone(self._tz).date()
        remote_sessions = await self._load_remote_sessions(local_today)
        status = self._evaluate(current, remote_sessions)
        self._cached = status
        return status

    def _scheduled_session(self, day: date) -> Session | None:
        if day.weekday() >= 5 or day.isoformat() in self._holidays:
            return None
        return (
            datetime.combine(day, self._open, tzinfo=self._tz),
            datetime.combine(day, self._close, tzinfo=self._tz),
        )

    def _evaluate(self, now: datetime, remote: Mapping[date, Session] | None) -> MarketStatus:
        local = now.astimezone(self._tz)
        today = local.date()
        horizon = today + timedelta(days=_LOOKAHEAD_DAYS)

        def session_for(day: date) -> Session | None:
            if remote is not None and day <= horizon:
                return remote.get(day)
            return self._scheduled_session(day)

        today_session = session_for(today)
        is_open = bool(today_session and today_session[0] <= local < today_session[1])

        delay_reason: str | None = None
        if today_session is None:
            delay_reason = "weekend" if today.weekday() >= 5 else "holiday"
        elif local < today_session[0]:
            delay_reason = "before_open"
        elif local >= today_session[1]:
            delay_reason = "after_close"

        next_open: datetime | None = None
        next_close: datetime | None = today_session[1] if is_open and today_session else None
        if today_session and local < today_session[0]:
            next_open = today_session[0]
            next_close = today_session[1]
        else:
            for offset in range(1, _LOOKAHEAD_DAYS + 1):
                upcoming = session_for(today + timedelta(days=offset))
                if upcoming is not None:
                    next_open = upcoming[0]
                    if next_close is None:
                        next_close = upcoming[1]
                    break

        return MarketStatus(
            is_open=is_open,
            is_trading_day=today_session is not None,
            checked_at=now,
            next_open=next_open,
            next_close=next_close,
            delay_reason=delay_reason,
            source="calendar" if remote is not None else "schedule",
        )

    async def _load_remote_sessions(self, today: date) -> dict[date, Session] | None:
        if not self._calendar_url:
            return None

        client = self._http_client or httpx.AsyncClient(timeout=10.0)
        owns_client = self._http_client is None
        auth = None
        if settings.alpaca_api_key and settings.alpaca_api_secret:
            auth = (settings.alpaca_api_key, settings.alpaca_api_secret)
        try:
            response = await client.get(
                self._calendar_url,
                params={"start": today.isoformat(), "end": (today + timedelta(days=_LOOKAHEAD_DAYS)).isoformat()},
                auth=auth,
            )
            response.raise_for_status()
            entries = response.json()
            sessions: dict[date, Session] = {}
            for entry in entries:
                day = date.fromisoformat(str(entry["date"]))
                sessions[day] = (
                    datetime.combine(day, parse_clock_time(str(entry["open"])), tzinfo=self._tz),
                    datetime.combine(day, parse_clock_time(str(entry["close"])), tzinfo=self._tz),
                )
            return sessions
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Market calendar unavailable; using regular schedule", url=self._calendar_url, error=str(exc))
            return None
        finally:
            if owns_client:
                await client.aclose()


__all__ = ["MarketCalendar", "MarketClock", "MarketStatus", "parse_clock_time"]
