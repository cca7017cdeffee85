"""SQLAlchemy models package."""

# Import all models
from .merchant import Broker, BrokerTypeEnum, Merchant  # noqa: F401
from .member import MemberStockPick, Wallet  # noqa: F401
from .prepare import PrepareBatch, PreparedOrder, PrepareStatusEnum  # noqa: F401
from .order import SETTLEABLE_STATUSES, Order, OrderStatusEnum  # noqa: F401
from .sweep import ExecutionEventEnum, ExecutionRecord, SweepLog  # noqa: F401
from .payment import LedgerEntry, PaymentBatch, PaymentBatchStatusEnum  # noqa: F401

__all__ = [
    "Broker",
    "BrokerTypeEnum",
    "ExecutionEventEnum",
    "ExecutionRecord",
    "LedgerEntry",
    "MemberStockPick",
    "Merchant",
    "Order",
    "OrderStatusEnum",
    "PaymentBatch",
    "PaymentBatchStatusEnum",
    "PrepareBatch",
    "PrepareStatusEnum",
    "PreparedOrder",
    "SETTLEABLE_STATUSES",
    "SweepLog",
    "Wallet",
]
