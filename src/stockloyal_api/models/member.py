from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String, func

from stockloyal_api.db.base import Base


class Wallet(Base):
    """Member wallet snapshot; read by staging, never written by the pipeline."""

    __tablename__ = "wallets"

    member_id = Column(String, primary_key=True)
    merchant_id = Column(String, ForeignKey("merchants.merchant_id", ondelete="SET NULL"), nullable=True, index=True)
    points = Column(Integer, nullable=False, default=0)
    member_tier = Column(String, nullable=True)
    sweep_percentage = Column(Numeric(5, 2), nullable=True)
    broker = Column(String, nullable=True)
    broker_account_id = Column(String, nullable=True)
    member_timezone = Column(String, nullable=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class MemberStockPick(Base):
    """One symbol in a member's basket election."""

    __tablename__ = "member_stock_picks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    member_id = Column(String, ForeignKey("wallets.member_id", ondelete="CASCADE"), nullable=False, index=True)
    symbol = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
