from .approval import ApprovalLock
from .engine import BatchStagingEngine, StagingScope

__all__ = ["ApprovalLock", "BatchStagingEngine", "StagingScope"]
