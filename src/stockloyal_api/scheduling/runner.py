"""APScheduler runtime for the sweep, execution and settlement jobs."""

from __future__ import annotations

import asyncio
import inspect
import random
import time
from importlib import import_module
from pathlib import Path
from typing import Any, Awaitable, Callable
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger

from stockloyal_api.observability.pipeline import get_pipeline_store
from stockloyal_api.observability.scheduler import get_scheduler_store
from .config import JobDefinition, ScheduleConfig, load_job_definitions

SessionFactory = Callable[[], Awaitable[Any]] | Callable[[], Any]


def _backoff_delay(job: JobDefinition, attempt: int) -> float:
    delay = job.base_backoff_seconds * (job.backoff_multiplier ** (attempt - 1))
    if job.max_backoff_seconds:
        delay = min(delay, job.max_backoff_seconds)
    if job.jitter_seconds:
        delay += random.uniform(0, job.jitter_seconds)
    return max(delay, 0.0)


class PipelineJobScheduler:
    """Register pipeline jobs from a TOML schedule and run them with retries."""

    def __init__(self, *, session_factory: SessionFactory, config_path: Path) -> None:
        self._session_factory = session_factory
        self._config_path = config_path
        self._config: ScheduleConfig | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._is_running = False
        self._observability = get_scheduler_store()

    @property
    def is_running(self) -> bool:
        return self._is_running

    def start(self) -> None:
        config = load_job_definitions(self._config_path)
        timezone = ZoneInfo(config.timezone)
        scheduler = AsyncIOScheduler(timezone=timezone)

        for job in config.jobs:
            trigger = CronTrigger.from_crontab(job.cron, timezone=timezone)
            scheduler.add_job(
                self._wrap_callable(self._resolve_callable(job), job),
                trigger=trigger,
                id=job.id,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            logger.info("Registered pipeline job", job_id=job.id, task=job.task, cron=job.cron)

        scheduler.start()
        self._config = config
        self._scheduler = scheduler
        self._is_running = True
        logger.info("Pipeline job scheduler started", jobs=len(config.jobs), timezone=config.timezone)

    async def stop(self) -> None:
        if not self._scheduler:
            return
        result = self._scheduler.shutdown(wait=False)
        if inspect.isawaitable(result):
            await result
        self._scheduler = None
        self._is_running = False
        logger.info("Pipeline job scheduler stopped")

    def _resolve_callable(self, job: JobDefinition) -> Callable[..., Awaitable[Any]]:
        module_name, _, attr = job.task.rpartition(".")
        if not module_name:
            raise ValueError(f"Invalid task path: {job.task}")
        func = getattr(import_module(module_name), attr, None)
        if func is None:
            raise AttributeError(f"Task {job.task} not found")
        if not asyncio.iscoroutinefunction(func):
            raise TypeError(f"Task {job.task} must be an async function")
        return func

    def _wrap_callable(self, func: Callable[..., Awaitable[Any]], job: JobDefinition) -> Callable[[], Awaitable[None]]:
        async def _runner() -> None:
            pipeline_store = get_pipeline_store()
            self._observability.record_dispatch(job.id, job.task)
            started_at = time.perf_counter()
            max_attempts = max(job.max_attempts, 1)

            for attempt in range(1, max_attempts + 1):
                try:
                    result = await func(session_factory=self._session_factory, **job.kwargs)
                except Exception as exc:
                    error = str(exc)
                    self._observability.record_attempt_failure(job.id, job.task, attempts=attempt, error=error)
                    if attempt >= max_attempts:
                        runtime = time.perf_counter() - started_at
                        self._observability.record_run_failure(
                            job.id, job.task, runtime_seconds=runtime, attempts=attempt, error=error
                        )
                        pipeline_store.record(f"job.{job.id}", success=False, duration_seconds=runtime, error=error)
                        logger.exception(
                            "Scheduled job failed after retries",
                            job_id=job.id,
                            task=job.task,
                            attempts=attempt,
                            error=error,
                        )
                        return

                    delay = _backoff_delay(job, attempt)
                    self._observability.record_retry(job.id, job.task, delay_seconds=delay, attempts=attempt + 1)
                    logger.warning(
                        "Scheduled job retrying",
                        job_id=job.id,
                        task=job.task,
                        attempt=attempt + 1,
                        delay_seconds=delay,
                    )
                    if delay:
                        await asyncio.sleep(delay)
                    continue

                runtime = time.perf_counter() - started_at
                self._observability.record_success(
                    job.id,
                    job.task,
                    runtime_seconds=runtime,
                    attempts=attempt,
                    result=result if isinstance(result, dict) else None,
                )
                pipeline_store.record(f"job.{job.id}", success=True, duration_seconds=runtime)
                logger.info(
                    "Scheduled job completed",
                    job_id=job.id,
                    task=job.task,
                    attempts=attempt,
                    runtime_seconds=runtime,
                )
                return

        return _runner

    def health(self) -> dict[str, object]:
        snapshot = self._observability.snapshot()
        jobs = []
        for job in self._config.jobs if self._config else []:
            metrics = snapshot.jobs.get(job.id)
            jobs.append(
                {
                    "id": job.id,
                    "task": job.task,
                    "cron": job.cron,
                    "kwargs": job.kwargs,
                    "max_attempts": job.max_attempts,
                    "metrics": metrics.as_dict() if metrics else None,
                }
            )
        return {
            "running": self._is_running,
            "configured_jobs": len(jobs),
            "totals": snapshot.totals,
            "jobs": jobs,
        }


__all__ = ["PipelineJobScheduler"]
