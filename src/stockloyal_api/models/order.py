from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, Enum as SqlEnum, ForeignKey, Integer, Numeric, String, Text, func

from stockloyal_api.db.base import Base
from .common import as_float, as_iso, enum_value


class OrderStatusEnum(str, Enum):
    PENDING = "pending"
    PLACED = "placed"
    CONFIRMED = "confirmed"
    EXECUTED = "executed"
    SETTLED = "settled"
    FAILED = "failed"
    CANCELLED = "cancelled"


SETTLEABLE_STATUSES = (OrderStatusEnum.CONFIRMED, OrderStatusEnum.EXECUTED)


class Order(Base):
    """Live investment order. Created by approval, owned downstream by sweep, execution and settlement."""

    __tablename__ = "orders"

    order_id = Column(Integer, primary_key=True, autoincrement=True)
    batch_id = Column(String, ForeignKey("prepare_batches.batch_id", ondelete="SET NULL"), nullable=True, index=True)
    prepared_order_id = Column(Integer, ForeignKey("prepared_orders.id", ondelete="SET NULL"), nullable=True, unique=True)
    basket_id = Column(String, nullable=False, index=True)
    member_id = Column(String, nullable=False, index=True)
    merchant_id = Column(String, nullable=True, index=True)
    broker = Column(String, nullable=True)
    symbol = Column(String, nullable=False)
    order_type = Column(String, nullable=False, default="sweep")
    price = Column(Numeric(14, 4), nullable=True)
    price_missing = Column(Boolean, nullable=False, default=False)
    shares = Column(Numeric(18, 6), nullable=False, default=0)
    amount = Column(Numeric(12, 2), nullable=False)
    points_used = Column(Integer, nullable=False, default=0)
    status = Column(
        SqlEnum(
            OrderStatusEnum,
            name="order_status_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=OrderStatusEnum.PENDING,
        index=True,
    )
    placed_at = Column(DateTime(timezone=True), nullable=True)
    sweep_batch_id = Column(String, nullable=True, index=True)
    broker_ref = Column(String, nullable=True)
    exec_id = Column(String, nullable=True, index=True)
    executed_price = Column(Numeric(14, 4), nullable=True)
    executed_shares = Column(Numeric(18, 6), nullable=True)
    executed_amount = Column(Numeric(12, 2), nullable=True)
    executed_at = Column(DateTime(timezone=True), nullable=True)
    paid_flag = Column(Boolean, nullable=False, default=False)
    paid_batch_id = Column(String, nullable=True, index=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    failure_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def settlement_amount(self):
        return self.executed_amount if self.executed_amount is not None else self.amount

    def as_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "batch_id": self.batch_id,
            "basket_id": self.basket_id,
            "member_id": self.member_id,
            "merchant_id": self.merchant_id,
            "broker": self.broker,
            "symbol": self.symbol,
            "price": as_float(self.price),
            "price_missing": self.price_missing,
            "shares": as_float(self.shares),
            "amount": as_float(self.amount),
            "points_used": self.points_used,
            "status": enum_value(self.status),
            "placed_at": as_iso(self.placed_at),
            "sweep_batch_id": self.sweep_batch_id,
            "broker_ref": self.broker_ref,
            "exec_id": self.exec_id,
            "executed_price": as_float(self.executed_price),
            "executed_shares": as_float(self.executed_shares),
            "executed_amount": as_float(self.executed_amount),
            "executed_at": as_iso(self.executed_at),
            "paid_flag": self.paid_flag,
            "paid_batch_id": self.paid_batch_id,
            "paid_at": as_iso(self.paid_at),
            "failure_reason": self.failure_reason,
        }
