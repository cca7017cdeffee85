"""Exception taxonomy for pipeline stage operations."""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Base exception for pipeline failures rendered through the error envelope."""

    status_code: int = 400

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        if status_code is not None:
            self.status_code = status_code


class PipelineOperationError(PipelineError):
    """Raised when a stage operation fails as a whole after rolling back its writes."""

    status_code = 500


class BatchNotFoundError(PipelineError):
    status_code = 404

    def __init__(self, batch_id: str) -> None:
        super().__init__(f"Batch {batch_id} not found")
        self.batch_id = batch_id


class BatchNotStagedError(PipelineError):
    """Raised when a prepare batch is no longer staged (approved or discarded)."""

    status_code = 409

    def __init__(self, batch_id: str, status: str | None = None) -> None:
        detail = f" (status: {status})" if status else ""
        super().__init__(f"Batch {batch_id} is not staged{detail}")
        self.batch_id = batch_id
        self.status = status


class NoPlacedOrdersError(PipelineError):
    status_code = 404


class PaymentBatchNotFoundError(PipelineError):
    status_code = 404

    def __init__(self, batch_id: str) -> None:
        super().__init__(f"Payment batch {batch_id} not found")
        self.batch_id = batch_id


class PaymentBatchAlreadyCancelledError(PipelineError):
    status_code = 409

    def __init__(self, batch_id: str) -> None:
        super().__init__(f"Payment batch {batch_id} is already cancelled")
        self.batch_id = batch_id


class LineageNotFoundError(PipelineError):
    status_code = 404


class UnknownLineageTypeError(PipelineError):
    status_code = 400


class BrokerNotConfiguredError(PipelineError):
    status_code = 404

    def __init__(self, broker: str | None) -> None:
        super().__init__(f"Broker {broker or '<none>'} is not configured")
        self.broker = broker


class BrokerDispatchError(PipelineError):
    """Raised by broker adapters when a venue call cannot be completed."""

    status_code = 502

    def __init__(self, message: str, *, url: str | None = None, http_status: int | None = None) -> None:
        super().__init__(message)
        self.url = url
        self.http_status = http_status


class PriceFeedError(PipelineError):
    status_code = 502


__all__ = [
    "BatchNotFoundError",
    "BatchNotStagedError",
    "BrokerDispatchError",
    "BrokerNotConfiguredError",
    "LineageNotFoundError",
    "NoPlacedOrdersError",
    "PaymentBatchAlreadyCancelledError",
    "PaymentBatchNotFoundError",
    "PipelineError",
    "PipelineOperationError",
    "PriceFeedError",
    "UnknownLineageTypeError",
]
