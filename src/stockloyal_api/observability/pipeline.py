"""In-memory run counters for pipeline stage operations."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Dict


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class StageRunLog:
    last_run_at: datetime | None = None
    last_run_id: str | None = None
    last_duration_seconds: float | None = None
    last_failure_at: datetime | None = None
    last_error: str | None = None

    def as_dict(self) -> Dict[str, object]:
        return {
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_run_id": self.last_run_id,
            "last_duration_seconds": self.last_duration_seconds,
            "last_failure_at": self.last_failure_at.isoformat() if self.last_failure_at else None,
            "last_error": self.last_error,
        }


@dataclass
class PipelineSnapshot:
    totals: Dict[str, Dict[str, int]]
    stages: Dict[str, StageRunLog]

    def as_dict(self) -> Dict[str, object]:
        return {
            "totals": self.totals,
            "stages": {stage: log.as_dict() for stage, log in self.stages.items()},
        }


@dataclass
class PipelineObservabilityStore:
    """Succeeded/failed totals and the latest outcome per stage (prepare, approve, sweep, ...)."""

    _lock: Lock = field(default_factory=Lock)
    _totals: Dict[str, Counter] = field(default_factory=dict)
    _stages: Dict[str, StageRunLog] = field(default_factory=dict)

    def record(
        self,
        stage: str,
        *,
        success: bool,
        run_id: str | None = None,
        duration_seconds: float | None = None,
        error: str | None = None,
    ) -> None:
        with self._lock:
            counter = self._totals.setdefault(stage, Counter())
            counter["succeeded" if success else "failed"] += 1
            log = self._stages.setdefault(stage, StageRunLog())
            now = _utcnow()
            log.last_run_at = now
            log.last_run_id = run_id
            log.last_duration_seconds = duration_seconds
            if not success:
                log.last_failure_at = now
                log.last_error = error

    def snapshot(self) -> PipelineSnapshot:
        with self._lock:
            totals = {stage: dict(counter) for stage, counter in self._totals.items()}
            stages = {
                stage: StageRunLog(
                    last_run_at=log.last_run_at,
                    last_run_id=log.last_run_id,
                    last_duration_seconds=log.last_duration_seconds,
                    last_failure_at=log.last_failure_at,
                    last_error=log.last_error,
                )
                for stage, log in self._stages.items()
            }
        return PipelineSnapshot(totals=totals, stages=stages)

    def reset(self) -> None:
        with self._lock:
            self._totals.clear()
            self._stages.clear()


_PIPELINE_STORE = PipelineObservabilityStore()


def get_pipeline_store() -> PipelineObservabilityStore:
    return _PIPELINE_STORE


__all__ = ["PipelineObservabilityStore", "PipelineSnapshot", "get_pipeline_store"]
