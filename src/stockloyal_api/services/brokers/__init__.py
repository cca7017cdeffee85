"""Broker adapters and the registry that selects them."""

from .alpaca import AlpacaBrokerAdapter
from .base import AckResult, BrokerAdapter, BrokerConfig, BrokerFeed, FeedOrder, FillRequest, FillResult, FillStatus
from .registry import BrokerRegistry
from .simulator import FillSimulator
from .webhook import WebhookBrokerAdapter

__all__ = [
    "AckResult",
    "AlpacaBrokerAdapter",
    "BrokerAdapter",
    "BrokerConfig",
    "BrokerFeed",
    "BrokerRegistry",
    "FeedOrder",
    "FillRequest",
    "FillResult",
    "FillSimulator",
    "FillStatus",
    "WebhookBrokerAdapter",
]
