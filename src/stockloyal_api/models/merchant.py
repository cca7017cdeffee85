from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, Enum as SqlEnum, Integer, Numeric, String, func

from stockloyal_api.db.base import Base


class BrokerTypeEnum(str, Enum):
    WEBHOOK = "webhook"
    ALPACA = "alpaca"


class Merchant(Base):
    """Merchant registry row: base conversion rate, up to six named tiers and the sweep schedule."""

    __tablename__ = "merchants"

    merchant_id = Column(String, primary_key=True)
    merchant_name = Column(String, nullable=True)
    conversion_rate = Column(Numeric(12, 6), nullable=False, default=0)
    tier1_name = Column(String, nullable=True)
    tier1_conversion_rate = Column(Numeric(12, 6), nullable=True)
    tier2_name = Column(String, nullable=True)
    tier2_conversion_rate = Column(Numeric(12, 6), nullable=True)
    tier3_name = Column(String, nullable=True)
    tier3_conversion_rate = Column(Numeric(12, 6), nullable=True)
    tier4_name = Column(String, nullable=True)
    tier4_conversion_rate = Column(Numeric(12, 6), nullable=True)
    tier5_name = Column(String, nullable=True)
    tier5_conversion_rate = Column(Numeric(12, 6), nullable=True)
    tier6_name = Column(String, nullable=True)
    tier6_conversion_rate = Column(Numeric(12, 6), nullable=True)
    # 1-31 day of month, -1 for the last day, NULL when never swept on schedule
    sweep_day = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def tiers(self) -> list[tuple[str | None, object]]:
        return [
            (getattr(self, f"tier{index}_name"), getattr(self, f"tier{index}_conversion_rate"))
            for index in range(1, 7)
        ]


class Broker(Base):
    __tablename__ = "brokers"

    broker_id = Column(String, primary_key=True)
    broker_name = Column(String, nullable=False, unique=True)
    broker_type = Column(
        SqlEnum(
            BrokerTypeEnum,
            name="broker_type_enum",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=BrokerTypeEnum.WEBHOOK,
    )
    webhook_url = Column(String, nullable=True)
    api_key = Column(String, nullable=True)
    ach_bank_name = Column(String, nullable=True)
    ach_routing_num = Column(String, nullable=True)
    ach_account_num = Column(String, nullable=True)
    ach_account_type = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
