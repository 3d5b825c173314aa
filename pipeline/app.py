"""
FastAPI application — operations API for the stream conditions pipeline.
Exposes the scheduler control surface and on-demand quality checks.
Run with: python -m pipeline
"""
import logging
import os
import secrets
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, Depends, Header

from core.connection import usgs_conn
from core.errors import ConfigurationError, NotFoundError
from pipeline.database import SessionLocal, init_db
from pipeline.models import ObservationCurrent
from pipeline.scheduler import scheduler, SchedulerConfig, JOB_NAMES
from services.data_quality_service import DataQualityService

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Stream Conditions Pipeline", version="1.0.0")

API_KEY = os.environ.get("PIPELINE_API_KEY")
ALLOW_INSECURE = os.environ.get("PIPELINE_ALLOW_INSECURE", "false").lower() == "true"
AUTOSTART = os.environ.get("PIPELINE_AUTOSTART", "true").lower() in {"1", "true", "yes", "on"}
POLLING_INTERVAL_SECONDS = float(os.environ.get("POLLING_INTERVAL_SECONDS", "300"))
METRICS_INTERVAL_SECONDS = float(os.environ.get("METRICS_INTERVAL_SECONDS", "600"))

quality = DataQualityService()


def require_admin_api_key(x_api_key: Optional[str] = Header(default=None, alias="X-API-Key")):
    """Protect administrative endpoints with API key."""
    if ALLOW_INSECURE:
        return

    if not API_KEY:
        raise HTTPException(
            status_code=503,
            detail="PIPELINE_API_KEY is not configured. Set it or enable PIPELINE_ALLOW_INSECURE=true only for development.",
        )

    if not x_api_key or not secrets.compare_digest(x_api_key, API_KEY):
        raise HTTPException(status_code=401, detail="Invalid API key")


# ============================================================================
# Lifecycle
# ============================================================================

@app.on_event("startup")
async def startup():
    init_db()
    if AUTOSTART:
        try:
            scheduler.start_data_pipeline(SchedulerConfig(
                polling_interval_seconds=POLLING_INTERVAL_SECONDS,
                metrics_interval_seconds=METRICS_INTERVAL_SECONDS,
            ))
        except ConfigurationError as e:
            logger.error(f"[SCHEDULER] Autostart skipped: {e.message}")
    if ALLOW_INSECURE:
        logger.warning("[SECURITY] PIPELINE_ALLOW_INSECURE=true. API key checks are disabled.")
    elif not API_KEY:
        logger.error("[SECURITY] PIPELINE_API_KEY is not set. Administrative API endpoints will reject requests.")
    logger.info("[APP] Pipeline started on http://0.0.0.0:8001")


@app.on_event("shutdown")
async def shutdown():
    scheduler.shutdown()
    usgs_conn.close()


# ============================================================================
# API: Scheduler
# ============================================================================

@app.get("/api/health")
def health():
    """Liveness plus scheduler and upstream health."""
    return {
        "scheduler_running": scheduler.is_running(),
        "jobs": scheduler.get_health_status(),
        "upstream": usgs_conn.check_health(),
        "rate_limiter": usgs_conn.rate_limiter.snapshot(),
    }


@app.get("/api/scheduler/status")
def get_scheduler_status(_auth: None = Depends(require_admin_api_key)):
    return {
        "running": scheduler.is_running(),
        **scheduler.get_job_status(),
        "next_runs": scheduler.get_next_runs(),
    }


@app.get("/api/scheduler/health")
def get_scheduler_health(_auth: None = Depends(require_admin_api_key)):
    return scheduler.get_health_status()


@app.get("/api/scheduler/config")
def get_scheduler_config(_auth: None = Depends(require_admin_api_key)):
    return scheduler.get_job_configuration()


@app.post("/api/scheduler/start")
async def start_scheduler(config: Optional[SchedulerConfig] = None, _auth: None = Depends(require_admin_api_key)):
    """Start both recurring jobs. Already running is not an error."""
    already_running = scheduler.is_running()
    try:
        scheduler.start_data_pipeline(config)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    return {"running": scheduler.is_running(), "already_running": already_running}


@app.post("/api/scheduler/stop")
async def stop_scheduler(_auth: None = Depends(require_admin_api_key)):
    scheduler.stop_all_jobs()
    return {"running": scheduler.is_running()}


@app.post("/api/scheduler/jobs/{job_name}/run")
async def run_job(job_name: str, _auth: None = Depends(require_admin_api_key)):
    """Manually run one job to completion and return its result."""
    if job_name not in JOB_NAMES:
        raise HTTPException(404, f"Unknown job '{job_name}'. Expected one of: {', '.join(JOB_NAMES)}")
    try:
        return await scheduler.run_job_once(job_name)
    except NotFoundError as e:
        raise HTTPException(404, e.message)


# ============================================================================
# API: Data Quality
# ============================================================================

@app.get("/api/sites/{site_id}/quality/{parameter_code}")
def get_parameter_quality(site_id: int, parameter_code: str, _auth: None = Depends(require_admin_api_key)):
    """Sensor status, validation, anomaly check and quality score of the current reading."""
    session = SessionLocal()
    try:
        row = session.query(ObservationCurrent).filter_by(
            site_id=site_id, parameter_code=parameter_code
        ).first()
        if not row or row.value is None:
            raise HTTPException(404, "No current observation for this site and parameter")
        observation = row.to_observation()
    finally:
        session.close()

    return {
        "site_id": site_id,
        "parameter_code": parameter_code,
        "value": observation["value"],
        "timestamp": observation["timestamp"].isoformat(),
        "sensor": quality.get_sensor_status(site_id, parameter_code),
        "freshness": quality.check_data_freshness(observation["timestamp"]),
        "validation": quality.validate_observation(observation),
        "anomaly": quality.detect_anomalies(site_id, parameter_code, observation["value"]),
        "quality_score": quality.calculate_quality_score(observation),
    }


@app.get("/api/quality/issues")
def get_quality_issues(limit: int = Query(50, ge=1, le=500), _auth: None = Depends(require_admin_api_key)):
    data = quality.get_recent_issues(limit=limit)
    return {"data": data, "count": len(data)}


# ============================================================================
# Main
# ============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
