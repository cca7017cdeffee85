from .service import ExecutionService

__all__ = ["ExecutionService"]
