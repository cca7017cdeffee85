from .calendar import MarketCalendar, MarketClock, MarketStatus

__all__ = ["MarketCalendar", "MarketClock", "MarketStatus"]
