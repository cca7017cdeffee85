from .exports import build_ach_csv, build_detail_csv
from .settlement import PaymentSettlementEngine

__all__ = ["PaymentSettlementEngine", "build_ach_csv", "build_detail_csv"]
