from enum import Enum

from sqlalchemy import Column, DateTime, Enum as SqlEnum, Float, ForeignKey, Integer, Numeric, String, func

from stockloyal_api.db.base import Base
from .common import as_float, as_iso, enum_value


class PrepareStatusEnum(str, Enum):
    STAGED = "staged"
    APPROVED = "approved"
    DISCARDED = "discarded"


class PrepareBatch(Base):
    """Staged dry-run batch. ``staged_scope_key`` is unique so one scope holds at most one staged batch."""

    __tablename__ = "prepare_batches"

    batch_id = Column(String, primary_key=True)
    status = Column(
        SqlEnum(
            PrepareStatusEnum,
            name="prepare_status_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=PrepareStatusEnum.STAGED,
    )
    scope_key = Column(String, nullable=False, index=True)
    staged_scope_key = Column(String, nullable=True, unique=True)
    filter_merchant = Column(String, nullable=True)
    filter_member = Column(String, nullable=True)
    total_members = Column(Integer, nullable=False, default=0)
    total_orders = Column(Integer, nullable=False, default=0)
    total_amount = Column(Numeric(14, 2), nullable=False, default=0)
    total_points = Column(Integer, nullable=False, default=0)
    total_shares = Column(Numeric(20, 6), nullable=False, default=0)
    members_skipped = Column(Integer, nullable=False, default=0)
    bypassed_below_min = Column(Integer, nullable=False, default=0)
    capped_at_max = Column(Integer, nullable=False, default=0)
    missing_prices = Column(Integer, nullable=False, default=0)
    orders_created = Column(Integer, nullable=True)
    refresh_count = Column(Integer, nullable=False, default=0)
    duration_seconds = Column(Float, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    refreshed_at = Column(DateTime(timezone=True), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    discarded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def as_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "status": enum_value(self.status),
            "scope_key": self.scope_key,
            "filter_merchant": self.filter_merchant,
            "filter_member": self.filter_member,
            "total_members": self.total_members,
            "total_orders": self.total_orders,
            "total_amount": as_float(self.total_amount),
            "total_points": self.total_points,
            "total_shares": as_float(self.total_shares),
            "members_skipped": self.members_skipped,
            "bypassed_below_min": self.bypassed_below_min,
            "capped_at_max": self.capped_at_max,
            "missing_prices": self.missing_prices,
            "orders_created": self.orders_created,
            "refresh_count": self.refresh_count,
            "duration_seconds": self.duration_seconds,
            "created_at": as_iso(self.created_at),
            "started_at": as_iso(self.started_at),
            "refreshed_at": as_iso(self.refreshed_at),
            "approved_at": as_iso(self.approved_at),
            "discarded_at": as_iso(self.discarded_at),
        }


class PreparedOrder(Base):
    """One staged order row inside a prepare batch."""

    __tablename__ = "prepared_orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    batch_id = Column(String, ForeignKey("prepare_batches.batch_id", ondelete="CASCADE"), nullable=False, index=True)
    basket_id = Column(String, nullable=False, index=True)
    member_id = Column(String, nullable=False)
    merchant_id = Column(String, nullable=True)
    broker = Column(String, nullable=True)
    symbol = Column(String, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    price = Column(Numeric(14, 4), nullable=True)
    shares = Column(Numeric(18, 6), nullable=False, default=0)
    points_used = Column(Integer, nullable=False)
    member_tier = Column(String, nullable=True)
    conversion_rate = Column(Numeric(12, 6), nullable=False)
    sweep_percentage = Column(Numeric(5, 2), nullable=False)
    status = Column(
        SqlEnum(
            PrepareStatusEnum,
            name="prepare_status_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=PrepareStatusEnum.STAGED,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "batch_id": self.batch_id,
            "basket_id": self.basket_id,
            "member_id": self.member_id,
            "merchant_id": self.merchant_id,
            "broker": self.broker,
            "symbol": self.symbol,
            "amount": as_float(self.amount),
            "price": as_float(self.price),
            "shares": as_float(self.shares),
            "points_used": self.points_used,
            "member_tier": self.member_tier,
            "conversion_rate": as_float(self.conversion_rate),
            "sweep_percentage": as_float(self.sweep_percentage),
            "status": enum_value(self.status),
        }
