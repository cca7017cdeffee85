from enum import Enum

from sqlalchemy import Column, DateTime, Enum as SqlEnum, Integer, Numeric, String, Text, func

from stockloyal_api.db.base import Base
from .common import as_float, as_iso, enum_value


class PaymentBatchStatusEnum(str, Enum):
    SETTLED = "settled"
    CANCELLED = "cancelled"


class PaymentBatch(Base):
    """ACH payment batch for one merchant and broker pair."""

    __tablename__ = "payment_batches"

    batch_id = Column(String, primary_key=True)
    merchant_id = Column(String, nullable=False, index=True)
    broker = Column(String, nullable=False)
    order_count = Column(Integer, nullable=False, default=0)
    total_amount = Column(Numeric(14, 2), nullable=False, default=0)
    status = Column(
        SqlEnum(
            PaymentBatchStatusEnum,
            name="payment_batch_status_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=PaymentBatchStatusEnum.SETTLED,
    )
    detail_csv = Column(Text, nullable=True)
    ach_csv = Column(Text, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=False)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def as_dict(self, *, include_exports: bool = False) -> dict:
        payload = {
            "batch_id": self.batch_id,
            "merchant_id": self.merchant_id,
            "broker": self.broker,
            "order_count": self.order_count,
            "total_amount": as_float(self.total_amount),
            "status": enum_value(self.status),
            "paid_at": as_iso(self.paid_at),
            "cancelled_at": as_iso(self.cancelled_at),
        }
        if include_exports:
            payload["detail_csv"] = self.detail_csv
            payload["ach_csv"] = self.ach_csv
        return payload


class LedgerEntry(Base):
    """Cash-out ledger row written at settlement, one per member per payment batch."""

    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    member_id = Column(String, nullable=False, index=True)
    merchant_id = Column(String, nullable=True)
    broker = Column(String, nullable=True)
    client_tx_id = Column(String, nullable=False, unique=True)
    external_ref = Column(String, nullable=False, index=True)
    tx_type = Column(String, nullable=False, default="cash_out")
    direction = Column(String, nullable=False, default="outbound")
    channel = Column(String, nullable=False, default="ACH")
    status = Column(String, nullable=False, default="confirmed")
    amount_cash = Column(Numeric(12, 2), nullable=False)
    order_count = Column(Integer, nullable=False, default=0)
    note = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "member_id": self.member_id,
            "merchant_id": self.merchant_id,
            "broker": self.broker,
            "client_tx_id": self.client_tx_id,
            "external_ref": self.external_ref,
            "tx_type": self.tx_type,
            "direction": self.direction,
            "channel": self.channel,
            "amount_cash": as_float(self.amount_cash),
            "order_count": self.order_count,
            "note": self.note,
            "created_at": as_iso(self.created_at),
        }
