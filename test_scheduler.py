import asyncio
import threading
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from core.errors import ConfigurationError, NotFoundError
from pipeline.scheduler import (
    DataPipelineScheduler, SchedulerConfig, METRICS_JOB, POLLING_JOB,
)

OK = {"success": True, "data": {"sites": 0, "succeeded": 0, "failed": []}}


def _scheduler(poll_result=OK, metrics_result=OK):
    poller = MagicMock()
    poller.poll_all_sites.return_value = poll_result
    metrics = MagicMock()
    metrics.update_all_site_metrics.return_value = metrics_result
    return DataPipelineScheduler(poller=poller, metrics=metrics)


@pytest.fixture
def idle_scheduler():
    return _scheduler()


@pytest_asyncio.fixture
async def running_scheduler():
    sched = _scheduler()
    sched.start_data_pipeline(SchedulerConfig(polling_interval_seconds=300, metrics_interval_seconds=600))
    yield sched
    sched.shutdown()


# --- Configuration ---

@pytest.mark.parametrize("config", [
    SchedulerConfig(polling_interval_seconds=30),
    SchedulerConfig(metrics_interval_seconds=0),
    SchedulerConfig(metrics_interval_seconds=-10),
])
def test_invalid_config_schedules_nothing(idle_scheduler, config):
    with pytest.raises(ConfigurationError):
        idle_scheduler.start_data_pipeline(config)
    assert idle_scheduler.is_running() is False
    assert idle_scheduler.scheduler.get_jobs() == []


def test_polling_interval_message(idle_scheduler):
    with pytest.raises(ConfigurationError) as exc:
        idle_scheduler.start_data_pipeline(SchedulerConfig(polling_interval_seconds=59))
    assert exc.value.message == "Invalid configuration: USGS polling interval must be at least 1 minute"


def test_default_configuration_when_idle(idle_scheduler):
    config = idle_scheduler.get_job_configuration()
    assert config[POLLING_JOB]["interval_seconds"] == 300
    assert config[METRICS_JOB]["interval_seconds"] == 600
    assert config[POLLING_JOB]["execution_count"] == 0


def test_idle_jobs_report_unhealthy(idle_scheduler):
    health = idle_scheduler.get_health_status()
    assert health[POLLING_JOB]["status"] == "unhealthy"
    assert health[METRICS_JOB]["status"] == "unhealthy"


# --- Lifecycle ---

@pytest.mark.asyncio
async def test_start_registers_both_jobs(running_scheduler):
    status = running_scheduler.get_job_status()
    assert status["total_jobs"] == 2
    assert status["running_jobs"] == 2
    assert {job.id for job in running_scheduler.scheduler.get_jobs()} == {POLLING_JOB, METRICS_JOB}
    assert running_scheduler.get_health_status()[POLLING_JOB]["status"] == "healthy"


@pytest.mark.asyncio
async def test_start_twice_is_a_no_op(running_scheduler):
    running_scheduler.start_data_pipeline(SchedulerConfig(polling_interval_seconds=120))
    assert len(running_scheduler.scheduler.get_jobs()) == 2
    assert running_scheduler.get_job_configuration()[POLLING_JOB]["interval_seconds"] == 300


@pytest.mark.asyncio
async def test_start_fills_missing_intervals_with_defaults():
    sched = _scheduler()
    sched.start_data_pipeline(SchedulerConfig(polling_interval_seconds=120))
    try:
        config = sched.get_job_configuration()
        assert config[POLLING_JOB]["interval_seconds"] == 120
        assert config[METRICS_JOB]["interval_seconds"] == 600
    finally:
        sched.shutdown()


@pytest.mark.asyncio
async def test_stop_clears_jobs_and_stats(running_scheduler):
    await running_scheduler.run_usgs_polling_once()
    running_scheduler.stop_all_jobs()

    assert running_scheduler.is_running() is False
    assert running_scheduler.scheduler.get_jobs() == []
    assert running_scheduler.get_job_status()["total_jobs"] == 0
    assert running_scheduler.get_job_configuration()[POLLING_JOB]["execution_count"] == 0


# --- Execution ---

@pytest.mark.asyncio
async def test_run_once_returns_action_result(running_scheduler):
    result = await running_scheduler.run_metrics_calculation_once()
    assert result["success"] is True
    assert result["job_name"] == METRICS_JOB
    assert result["duration_ms"] >= 0
    running_scheduler.metrics.update_all_site_metrics.assert_called_once()

    info = running_scheduler.get_job_configuration()[METRICS_JOB]
    assert info["execution_count"] == 1
    assert info["consecutive_failures"] == 0
    assert info["last_execution"] is not None
    assert info["executing"] is False


@pytest.mark.asyncio
async def test_run_once_when_idle_leaves_stats_untouched(idle_scheduler):
    result = await idle_scheduler.run_usgs_polling_once()
    assert result["success"] is True
    assert idle_scheduler.get_job_configuration()[POLLING_JOB]["execution_count"] == 0


@pytest.mark.asyncio
async def test_unknown_job_raises(idle_scheduler):
    with pytest.raises(NotFoundError):
        await idle_scheduler.run_job_once("reindex")


@pytest.mark.asyncio
async def test_three_failures_mark_job_unhealthy(running_scheduler):
    running_scheduler.poller.poll_all_sites.side_effect = RuntimeError("connection refused")

    for expected in (1, 2):
        result = await running_scheduler.run_usgs_polling_once()
        assert result["success"] is False
        assert running_scheduler.get_health_status()[POLLING_JOB]["consecutive_failures"] == expected
        assert running_scheduler.get_health_status()[POLLING_JOB]["status"] == "healthy"

    await running_scheduler.run_usgs_polling_once()
    health = running_scheduler.get_health_status()
    assert health[POLLING_JOB]["consecutive_failures"] == 3
    assert health[POLLING_JOB]["status"] == "unhealthy"
    assert health[METRICS_JOB]["status"] == "healthy"

    running_scheduler.poller.poll_all_sites.side_effect = None
    await running_scheduler.run_usgs_polling_once()
    health = running_scheduler.get_health_status()
    assert health[POLLING_JOB]["consecutive_failures"] == 0
    assert health[POLLING_JOB]["status"] == "healthy"


@pytest.mark.asyncio
async def test_failed_result_counts_as_failure(running_scheduler):
    running_scheduler.metrics.update_all_site_metrics.return_value = {
        "success": False, "error": {"code": "database_error", "message": "locked", "details": None},
    }
    result = await running_scheduler.run_metrics_calculation_once()
    assert result["error"]["code"] == "database_error"
    assert running_scheduler.get_health_status()[METRICS_JOB]["consecutive_failures"] == 1


@pytest.mark.asyncio
async def test_scheduled_firing_swallows_exceptions(running_scheduler):
    running_scheduler.poller.poll_all_sites.side_effect = RuntimeError("boom")
    await running_scheduler._run_scheduled(POLLING_JOB)
    assert running_scheduler.get_health_status()[POLLING_JOB]["consecutive_failures"] == 1
    assert running_scheduler.scheduler.get_job(POLLING_JOB) is not None


@pytest.mark.asyncio
async def test_average_execution_time_blends(running_scheduler):
    for duration in (100.0, 200.0, 100.0):
        running_scheduler._update_job_stats(POLLING_JOB, duration, is_failure=False)

    info = running_scheduler.get_job_configuration()[POLLING_JOB]
    assert info["execution_count"] == 3
    assert info["average_execution_time_ms"] == pytest.approx(125.0)


@pytest.mark.asyncio
async def test_executing_stays_set_while_an_overlapping_run_is_active(running_scheduler):
    release = threading.Event()
    started = []

    def poll():
        started.append(True)
        if len(started) == 1:
            release.wait(5)
        return OK

    running_scheduler.poller.poll_all_sites.side_effect = poll
    slow = asyncio.create_task(running_scheduler.run_usgs_polling_once())
    while not started:
        await asyncio.sleep(0.01)

    await running_scheduler.run_usgs_polling_once()
    info = running_scheduler.get_job_configuration()[POLLING_JOB]
    assert info["executing"] is True
    assert info["active_runs"] == 1

    release.set()
    await slow
    info = running_scheduler.get_job_configuration()[POLLING_JOB]
    assert info["executing"] is False
    assert info["execution_count"] == 2
