from enum import Enum

from sqlalchemy import JSON, Boolean, Column, DateTime, Enum as SqlEnum, Float, Integer, String, Text, func

from stockloyal_api.db.base import Base
from .common import as_iso, enum_value


class ExecutionEventEnum(str, Enum):
    SWEEP_DISPATCH = "sweep.dispatch"
    ORDER_CONFIRMED = "order.confirmed"


class SweepLog(Base):
    """Summary row written once per sweep run."""

    __tablename__ = "sweep_log"

    batch_id = Column(String, primary_key=True)
    merchant_filter = Column(String, nullable=True)
    broker_filter = Column(String, nullable=True)
    orders_processed = Column(Integer, nullable=False, default=0)
    orders_placed = Column(Integer, nullable=False, default=0)
    orders_failed = Column(Integer, nullable=False, default=0)
    merchants_processed = Column(Integer, nullable=False, default=0)
    baskets_processed = Column(Integer, nullable=False, default=0)
    brokers_notified = Column(JSON, nullable=True)
    errors = Column(JSON, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_seconds = Column(Float, nullable=True)

    def as_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "merchant_filter": self.merchant_filter,
            "broker_filter": self.broker_filter,
            "orders_processed": self.orders_processed,
            "orders_placed": self.orders_placed,
            "orders_failed": self.orders_failed,
            "merchants_processed": self.merchants_processed,
            "baskets_processed": self.baskets_processed,
            "brokers_notified": self.brokers_notified or [],
            "errors": self.errors or [],
            "started_at": as_iso(self.started_at),
            "completed_at": as_iso(self.completed_at),
            "duration_seconds": self.duration_seconds,
        }


class ExecutionRecord(Base):
    """Append-only record of one broker dispatch or execution attempt."""

    __tablename__ = "execution_records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    exec_id = Column(String, nullable=False, index=True)
    event_type = Column(
        SqlEnum(
            ExecutionEventEnum,
            name="execution_event_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
    )
    sweep_batch_id = Column(String, nullable=True, index=True)
    merchant_id = Column(String, nullable=True)
    broker = Column(String, nullable=True)
    basket_id = Column(String, nullable=True, index=True)
    member_id = Column(String, nullable=True)
    request_payload = Column(JSON, nullable=True)
    response_payload = Column(JSON, nullable=True)
    http_status = Column(Integer, nullable=True)
    acknowledged = Column(Boolean, nullable=False, default=False)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "exec_id": self.exec_id,
            "event_type": enum_value(self.event_type),
            "sweep_batch_id": self.sweep_batch_id,
            "merchant_id": self.merchant_id,
            "broker": self.broker,
            "basket_id": self.basket_id,
            "member_id": self.member_id,
            "request": self.request_payload,
            "response": self.response_payload,
            "http_status": self.http_status,
            "acknowledged": self.acknowledged,
            "error": self.error_message,
            "created_at": as_iso(self.created_at),
        }
