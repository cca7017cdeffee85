from pathlib import Path

import pytest

from stockloyal_api.observability.pipeline import get_pipeline_store
from stockloyal_api.observability.scheduler import get_scheduler_store
from stockloyal_api.scheduling.config import JobDefinition, ScheduleConfig, load_job_definitions
from stockloyal_api.scheduling.runner import PipelineJobScheduler


def _job(job_id: str, *, max_attempts: int) -> JobDefinition:
    return JobDefinition(
        id=job_id,
        task=f"tests.{job_id}",
        cron="* * * * *",
        kwargs={},
        max_attempts=max_attempts,
        base_backoff_seconds=0.0,
        backoff_multiplier=1.0,
        max_backoff_seconds=0.0,
        jitter_seconds=0.0,
    )


@pytest.fixture
def scheduler_store():
    store = get_scheduler_store()
    store.reset()
    yield store
    store.reset()


@pytest.mark.asyncio
async def test_scheduler_retries_and_records_metrics(tmp_path: Path, scheduler_store) -> None:
    scheduler = PipelineJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    attempts = 0

    async def flaky_job(*, session_factory) -> dict:
        nonlocal attempts
        attempts += 1
        if attempts < 2:
            raise RuntimeError("broker unavailable")
        return {"orders_placed": 3}

    job = _job("sweep-flaky", max_attempts=3)
    await scheduler._wrap_callable(flaky_job, job)()

    snapshot = scheduler_store.snapshot()
    assert snapshot.totals["runs"] == 1
    assert snapshot.totals["success"] == 1
    assert snapshot.totals["attempt_failures"] == 1
    assert snapshot.totals["retries"] == 1
    job_snapshot = snapshot.jobs[job.id]
    assert job_snapshot.last_success_at is not None
    assert job_snapshot.last_error is None
    assert job_snapshot.last_result == {"orders_placed": 3}
    assert attempts == 2

    pipeline = get_pipeline_store().snapshot()
    assert pipeline.totals["job.sweep-flaky"] == {"succeeded": 1}


@pytest.mark.asyncio
async def test_scheduler_records_final_failure(tmp_path: Path, scheduler_store) -> None:
    scheduler = PipelineJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    async def failing_job(*, session_factory) -> None:
        raise RuntimeError("settlement database unavailable")

    job = _job("settle-failure", max_attempts=2)
    await scheduler._wrap_callable(failing_job, job)()

    snapshot = scheduler_store.snapshot()
    assert snapshot.totals["run_failures"] == 1
    job_snapshot = snapshot.jobs[job.id]
    assert job_snapshot.totals["consecutive_failures"] == 2
    assert job_snapshot.last_error == "settlement database unavailable"
    assert job_snapshot.last_error_at is not None

    pipeline = get_pipeline_store().snapshot()
    assert pipeline.totals["job.settle-failure"] == {"failed": 1}
    assert pipeline.stages["job.settle-failure"].last_error == "settlement database unavailable"


@pytest.mark.asyncio
async def test_scheduler_passes_job_kwargs(tmp_path: Path, scheduler_store) -> None:
    factory = object()
    scheduler = PipelineJobScheduler(session_factory=lambda: factory, config_path=tmp_path / "noop.toml")
    received: dict = {}

    async def job_with_kwargs(*, session_factory, merchant_id: str) -> None:
        received["session"] = session_factory()
        received["merchant_id"] = merchant_id

    job = _job("settle-acme", max_attempts=1)
    job.kwargs = {"merchant_id": "acme"}
    await scheduler._wrap_callable(job_with_kwargs, job)()

    assert received == {"session": factory, "merchant_id": "acme"}


@pytest.mark.asyncio
async def test_scheduler_health_snapshot(tmp_path: Path, scheduler_store) -> None:
    scheduler = PipelineJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    async def successful_job(*, session_factory) -> None:
        return None

    job = _job("execution", max_attempts=1)
    await scheduler._wrap_callable(successful_job, job)()

    scheduler._config = ScheduleConfig(timezone="UTC", jobs=[job])
    scheduler._is_running = True

    health = scheduler.health()
    assert health["running"] is True
    assert health["configured_jobs"] == 1
    assert health["totals"]["runs"] == 1
    assert health["jobs"][0]["metrics"]["totals"]["runs"] == 1
    assert health["jobs"][0]["metrics"]["last_success_at"] is not None


@pytest.mark.asyncio
async def test_scheduler_tracks_consecutive_failures_and_resets(tmp_path: Path, scheduler_store) -> None:
    scheduler = PipelineJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    run_count = 0

    async def sometimes_failing_job(*, session_factory) -> None:
        nonlocal run_count
        run_count += 1
        if run_count < 3:
            raise RuntimeError("market calendar unreachable")

    job = _job("missing-price-repair", max_attempts=1)
    runner = scheduler._wrap_callable(sometimes_failing_job, job)

    await runner()
    await runner()

    job_snapshot = scheduler_store.snapshot().jobs[job.id]
    assert job_snapshot.totals["consecutive_failures"] == 2
    assert job_snapshot.last_success_at is None

    await runner()

    snapshot = scheduler_store.snapshot()
    job_snapshot = snapshot.jobs[job.id]
    assert snapshot.totals["runs"] == 3
    assert snapshot.totals["run_failures"] == 2
    assert snapshot.totals["success"] == 1
    assert job_snapshot.totals["consecutive_failures"] == 0
    assert job_snapshot.last_error is None


def test_load_job_definitions_parses_retry_fields(tmp_path: Path) -> None:
    config_path = tmp_path / "schedules.toml"
    config_path.write_text(
        """
        timezone = "America/New_York"

        [jobs.sweep]
        task = "stockloyal_api.jobs.pipeline.run_scheduled_sweep"
        cron = "45 9 * * 1-5"
        max_attempts = 5
        base_backoff_seconds = 2
        backoff_multiplier = 3
        max_backoff_seconds = 30
        jitter_seconds = 1.5

        [jobs.settlement]
        task = "stockloyal_api.jobs.pipeline.run_settlement"
        cron = "0 18 * * 1-5"
        enabled = false

        [jobs.broken]
        cron = "0 * * * *"
        """
    )

    config = load_job_definitions(config_path)
    assert config.timezone == "America/New_York"
    assert [job.id for job in config.jobs] == ["sweep"]
    job = config.jobs[0]
    assert job.max_attempts == 5
    assert job.base_backoff_seconds == 2.0
    assert job.backoff_multiplier == 3.0
    assert job.max_backoff_seconds == 30.0
    assert job.jitter_seconds == 1.5


def test_load_job_definitions_requires_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_job_definitions(tmp_path / "missing.toml")


def test_shipped_schedule_resolves_every_task() -> None:
    config_path = Path(__file__).resolve().parents[1] / "config" / "schedules.toml"
    scheduler = PipelineJobScheduler(session_factory=lambda: None, config_path=config_path)

    config = load_job_definitions(config_path)

    assert {job.id for job in config.jobs} == {"missing_price_repair", "sweep", "execution", "settlement"}
    for job in config.jobs:
        assert callable(scheduler._resolve_callable(job))
