from datetime import date, datetime, timedelta, timezone

import httpx
import pytest

from stockloyal_api.services.market import MarketCalendar
from stockloyal_api.services.market.calendar import parse_clock_time
from stockloyal_api.services.sweep import DayOfMonthSchedule


def _calendar(**overrides) -> MarketCalendar:
    options = {
        "timezone_name": "America/New_York",
        "open_time": "09:30",
        "close_time": "16:00",
        "holidays": ["2026-11-26"],
        "calendar_url": "",
        "ttl_seconds": 60,
    }
    options.update(overrides)
    return MarketCalendar(**options)


def test_parse_clock_time() -> None:
    assert parse_clock_time("09:30").hour == 9
    assert parse_clock_time("16").minute == 0


@pytest.mark.asyncio
async def test_regular_session_is_open_midday() -> None:
    status = await _calendar().status(now=datetime(2026, 10, 19, 15, 0, tzinfo=timezone.utc))

    assert status.is_open is True
    assert status.is_trading_day is True
    assert status.delay_reason is None
    assert status.source == "schedule"
    assert status.next_close.hour == 16


@pytest.mark.asyncio
async def test_before_open_reports_todays_open() -> None:
    status = await _calendar().status(now=datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc))

    assert status.is_open is False
    assert status.delay_reason == "before_open"
    assert status.next_open.date() == date(2026, 10, 19)
    assert (status.next_open.hour, status.next_open.minute) == (9, 30)


@pytest.mark.asyncio
async def test_weekend_and_holiday_point_to_next_session() -> None:
    saturday = await _calendar().status(now=datetime(2026, 10, 17, 15, 0, tzinfo=timezone.utc))
    assert saturday.is_open is False
    assert saturday.delay_reason == "weekend"
    assert saturday.next_open.date() == date(2026, 10, 19)

    thanksgiving = await _calendar().status(now=datetime(2026, 11, 26, 16, 0, tzinfo=timezone.utc))
    assert thanksgiving.is_trading_day is False
    assert thanksgiving.delay_reason == "holiday"
    assert thanksgiving.next_open.date() == date(2026, 11, 27)


@pytest.mark.asyncio
async def test_status_is_cached_until_stale() -> None:
    calendar = _calendar()
    first_now = datetime(2026, 10, 19, 15, 0, tzinfo=timezone.utc)

    first = await calendar.status(now=first_now)
    cached = await calendar.status(now=first_now + timedelta(seconds=30))
    expired = await calendar.status(now=first_now + timedelta(seconds=61))
    forced = await calendar.status(now=first_now + timedelta(seconds=62), refresh=True)

    assert cached is first
    assert expired is not first
    assert forced is not expired
    assert calendar.is_stale(first, now=first_now + timedelta(seconds=60)) is True


@pytest.mark.asyncio
async def test_remote_calendar_overrides_schedule() -> None:
    requests: list[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        # early close on the 19th
        return httpx.Response(
            200,
            json=[
                {"date": "2026-10-19", "open": "09:30", "close": "10:30"},
                {"date": "2026-10-20", "open": "09:30", "close": "16:00"},
            ],
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        calendar = _calendar(calendar_url="https://calendar.test/v1/calendar", http_client=client)
        status = await calendar.status(now=datetime(2026, 10, 19, 15, 0, tzinfo=timezone.utc))

    assert status.source == "calendar"
    assert status.is_open is False
    assert status.delay_reason == "after_close"
    assert status.next_open.date() == date(2026, 10, 20)
    assert requests[0].url.params["start"] == "2026-10-19"


@pytest.mark.asyncio
async def test_remote_calendar_failure_falls_back_to_schedule() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"message": "unavailable"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        calendar = _calendar(calendar_url="https://calendar.test/v1/calendar", http_client=client)
        status = await calendar.status(now=datetime(2026, 10, 19, 15, 0, tzinfo=timezone.utc))

    assert status.source == "schedule"
    assert status.is_open is True


@pytest.mark.parametrize(
    ("sweep_day", "today", "expected"),
    [
        (19, date(2026, 10, 19), True),
        (18, date(2026, 10, 19), False),
        (-1, date(2026, 10, 31), True),
        (-1, date(2026, 10, 30), False),
        (31, date(2026, 4, 30), True),
        (30, date(2026, 2, 28), True),
        (None, date(2026, 10, 19), False),
        (0, date(2026, 10, 19), False),
        (-5, date(2026, 10, 19), False),
    ],
)
def test_day_of_month_schedule(sweep_day, today, expected) -> None:
    assert DayOfMonthSchedule().is_due(sweep_day, today) is expected
