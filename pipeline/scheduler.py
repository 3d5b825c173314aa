"""
Pipeline scheduler — drives USGS polling and derived-metrics calculation on
independent intervals and tracks per-job execution health.
Uses APScheduler's AsyncIOScheduler; blocking job bodies run in worker threads.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from apscheduler.job import Job
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger
from pydantic import BaseModel

from core.errors import ConfigurationError, NotFoundError, error_result
from services.metrics_service import MetricsService
from services.telemetry_service import TelemetryService

logger = logging.getLogger(__name__)

POLLING_JOB = "usgs_polling"
METRICS_JOB = "metrics_calculation"
JOB_NAMES = (POLLING_JOB, METRICS_JOB)

DEFAULT_POLLING_INTERVAL_SECONDS = 5 * 60
DEFAULT_METRICS_INTERVAL_SECONDS = 10 * 60
MIN_POLLING_INTERVAL_SECONDS = 60
UNHEALTHY_AFTER_FAILURES = 3


class SchedulerConfig(BaseModel):
    polling_interval_seconds: Optional[float] = None
    metrics_interval_seconds: Optional[float] = None


@dataclass
class JobRuntimeInfo:
    job_id: str
    interval_seconds: float
    execution_count: int = 0
    consecutive_failures: int = 0
    average_execution_time_ms: float = 0.0
    last_execution: Optional[datetime] = None
    active_runs: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["executing"] = self.active_runs > 0
        data["last_execution"] = self.last_execution.isoformat() if self.last_execution else None
        return data


@dataclass
class RegisteredJob:
    handle: Job
    info: JobRuntimeInfo


def validate_config(config: SchedulerConfig):
    """Reject settings before anything is scheduled."""
    polling = config.polling_interval_seconds
    metrics = config.metrics_interval_seconds
    if polling is not None and polling < MIN_POLLING_INTERVAL_SECONDS:
        raise ConfigurationError(
            "Invalid configuration: USGS polling interval must be at least 1 minute",
            details={"polling_interval_seconds": polling},
        )
    if metrics is not None and metrics <= 0:
        raise ConfigurationError(
            "Invalid configuration: Metrics calculation interval must be positive",
            details={"metrics_interval_seconds": metrics},
        )


class DataPipelineScheduler:
    """Owns the two recurring pipeline jobs and their runtime statistics."""

    def __init__(self, poller: Optional[TelemetryService] = None, metrics: Optional[MetricsService] = None):
        self.scheduler = AsyncIOScheduler()
        self.poller = poller or TelemetryService()
        self.metrics = metrics or MetricsService()
        self.config = self.default_config()
        self._jobs: Dict[str, RegisteredJob] = {}
        self._actions: Dict[str, Callable[[], Dict[str, Any]]] = {
            POLLING_JOB: self.poller.poll_all_sites,
            METRICS_JOB: self.metrics.update_all_site_metrics,
        }

    @staticmethod
    def default_config() -> SchedulerConfig:
        return SchedulerConfig(
            polling_interval_seconds=DEFAULT_POLLING_INTERVAL_SECONDS,
            metrics_interval_seconds=DEFAULT_METRICS_INTERVAL_SECONDS,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start_data_pipeline(self, config: Optional[SchedulerConfig] = None):
        """Validate the configuration and register both recurring jobs. No-op when already running."""
        config = config or SchedulerConfig()
        validate_config(config)

        if self.is_running():
            logger.info("[SCHEDULER] Data pipeline is already running")
            return

        defaults = self.default_config()
        self.config = SchedulerConfig(
            polling_interval_seconds=config.polling_interval_seconds or defaults.polling_interval_seconds,
            metrics_interval_seconds=config.metrics_interval_seconds or defaults.metrics_interval_seconds,
        )

        if not self.scheduler.running:
            self.scheduler.start()

        self._add_job(POLLING_JOB, "usgs-polling", self.config.polling_interval_seconds)
        self._add_job(METRICS_JOB, "metrics-calculation", self.config.metrics_interval_seconds)
        logger.info("[SCHEDULER] Data pipeline scheduler started with %d jobs", len(self._jobs))

    def stop_all_jobs(self):
        """Cancel both timers and discard their runtime statistics."""
        for job_name, registered in list(self._jobs.items()):
            try:
                registered.handle.remove()
            except JobLookupError:
                pass
            logger.info(f"[SCHEDULER] Stopped job: {job_name}")
        self._jobs.clear()
        logger.info("[SCHEDULER] All jobs stopped")

    def shutdown(self):
        """Gracefully shut down the scheduler."""
        self.stop_all_jobs()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("[SCHEDULER] Shutdown complete")

    def is_running(self) -> bool:
        return bool(self._jobs)

    def _add_job(self, job_name: str, prefix: str, interval_seconds: float):
        handle = self.scheduler.add_job(
            self._run_scheduled,
            trigger=IntervalTrigger(seconds=interval_seconds),
            id=job_name,
            name=job_name,
            args=[job_name],
            replace_existing=True,
            misfire_grace_time=60,
            coalesce=True,
            max_instances=1,
        )
        info = JobRuntimeInfo(job_id=f"{prefix}-{int(time.time() * 1000)}", interval_seconds=interval_seconds)
        self._jobs[job_name] = RegisteredJob(handle=handle, info=info)
        logger.info(f"[SCHEDULER] Registered job '{job_name}' (every {interval_seconds:g}s)")

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _run_scheduled(self, job_name: str):
        """APScheduler callback. Failures end here and never cancel the timer."""
        try:
            result = await self.run_job_once(job_name)
            if not result["success"]:
                logger.error(f"[SCHEDULER] Error in {job_name} job: {result['error']['message']}")
        except Exception as e:
            logger.error(f"[SCHEDULER] Error in {job_name} job: {e}")

    async def run_job_once(self, job_name: str) -> Dict[str, Any]:
        """Run a job's action once, measure it and update its statistics."""
        action = self._actions.get(job_name)
        if action is None:
            raise NotFoundError(f"Unknown job: {job_name}", details={"job_name": job_name})

        registered = self._jobs.get(job_name)
        if registered:
            registered.info.active_runs += 1

        start_time = time.perf_counter()
        try:
            result = await asyncio.to_thread(action)
            if not isinstance(result, dict):
                result = {"success": True, "data": result}
        except Exception as e:
            logger.error(f"[SCHEDULER] Job {job_name} raised: {e}")
            result = error_result("job_failed", str(e), {"job_name": job_name})
        finally:
            if registered:
                registered.info.active_runs -= 1

        duration_ms = (time.perf_counter() - start_time) * 1000
        self._update_job_stats(job_name, duration_ms, is_failure=not result.get("success"))
        logger.info(f"[SCHEDULER] Job {job_name} finished: success={result.get('success')}, duration={duration_ms:.0f}ms")
        return {**result, "job_name": job_name, "duration_ms": duration_ms}

    async def run_usgs_polling_once(self) -> Dict[str, Any]:
        return await self.run_job_once(POLLING_JOB)

    async def run_metrics_calculation_once(self) -> Dict[str, Any]:
        return await self.run_job_once(METRICS_JOB)

    def _update_job_stats(self, job_name: str, execution_time_ms: float, is_failure: bool):
        registered = self._jobs.get(job_name)
        if not registered:
            return

        info = registered.info
        info.last_execution = datetime.utcnow()
        info.execution_count += 1

        # Seed with the first sample, then blend each new sample 50/50
        if info.average_execution_time_ms == 0:
            info.average_execution_time_ms = execution_time_ms
        else:
            info.average_execution_time_ms = (info.average_execution_time_ms + execution_time_ms) / 2

        if is_failure:
            info.consecutive_failures += 1
        else:
            info.consecutive_failures = 0

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _default_job_info(self, job_name: str) -> JobRuntimeInfo:
        defaults = self.default_config()
        interval = (
            defaults.polling_interval_seconds if job_name == POLLING_JOB
            else defaults.metrics_interval_seconds
        )
        return JobRuntimeInfo(job_id=f"{job_name}-default", interval_seconds=interval)

    def get_job_configuration(self) -> Dict[str, Dict[str, Any]]:
        result = {}
        for job_name in JOB_NAMES:
            registered = self._jobs.get(job_name)
            info = registered.info if registered else self._default_job_info(job_name)
            result[job_name] = info.to_dict()
        return result

    def get_job_status(self) -> Dict[str, Any]:
        return {
            "total_jobs": len(self._jobs),
            "running_jobs": sum(1 for name in self._jobs if self.scheduler.get_job(name) is not None),
            "jobs": {name: registered.info.to_dict() for name, registered in self._jobs.items()},
        }

    def _get_job_health(self, job_name: str) -> Dict[str, Any]:
        registered = self._jobs.get(job_name)
        if not registered:
            return {"status": "unhealthy", "consecutive_failures": 0, "average_execution_time_ms": 0.0}

        info = registered.info
        status = "unhealthy" if info.consecutive_failures >= UNHEALTHY_AFTER_FAILURES else "healthy"
        return {
            "status": status,
            "consecutive_failures": info.consecutive_failures,
            "average_execution_time_ms": info.average_execution_time_ms,
        }

    def get_health_status(self) -> Dict[str, Dict[str, Any]]:
        return {job_name: self._get_job_health(job_name) for job_name in JOB_NAMES}

    def get_next_runs(self) -> list[dict]:
        """Get upcoming scheduled runs."""
        result = []
        for job in self.scheduler.get_jobs():
            next_run = job.next_run_time
            result.append({
                "job_key": job.id,
                "name": job.name,
                "next_run": next_run.isoformat() if next_run else None,
            })
        return result


# Global instance
scheduler = DataPipelineScheduler()
