import logging
import json
from datetime import datetime, timedelta
from typing import Optional, Any, Dict, List

import numpy as np

from core import parameters
from pipeline.database import SessionLocal
from pipeline.models import DataQualityLog, ObservationCurrent, ObservationHistory

logger = logging.getLogger(__name__)

# Validation thresholds per parameter. Unlisted parameters always validate.
THRESHOLDS = {
    parameters.FLOW: {            # cfs
        "min": 0,
        "max": 100000,
        "extreme_high": 10000,
    },
    parameters.TEMPERATURE: {     # deg F
        "min": 32,
        "max": 85,
        "extreme_low": 28,
        "extreme_high": 90,
    },
    parameters.TURBIDITY_FNU: {   # FNU
        "min": 0,
        "max": 4000,
    },
}

STALE_MINUTES = 60
OFFLINE_MINUTES = 120

ANOMALY_WINDOW = timedelta(hours=2)
ANOMALY_MAX_POINTS = 10
ANOMALY_MIN_POINTS = 3
ANOMALY_Z_THRESHOLD = 3

SEVERITY_RANK = {"LOW": 1, "MEDIUM": 2, "HIGH": 3}

QUALITY_CODE_FACTORS = {"A": 1.0, "P": 0.8, "E": 0.6}
UNKNOWN_QUALITY_FACTOR = 0.4
FRESHNESS_FACTORS = {"current": 1.0, "stale": 0.7, "offline": 0.2}
SEVERITY_FACTORS = {"HIGH": 0.1, "MEDIUM": 0.4, "LOW": 0.8}


def _worst(current: Optional[str], candidate: str) -> str:
    if current is None or SEVERITY_RANK[candidate] > SEVERITY_RANK[current]:
        return candidate
    return current


class DataQualityService:
    """
    Validation, freshness, anomaly and scoring rules for observations.

    An observation is a dict with ``parameter_code``, ``value``, ``unit``,
    ``quality_code`` and ``timestamp`` (naive UTC datetime).
    """

    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    def validate_observation(self, observation: Dict[str, Any]) -> Dict[str, Any]:
        code = observation["parameter_code"]
        value = observation["value"]
        thresholds = THRESHOLDS.get(code)

        if not thresholds:
            return {"is_valid": True, "flags": [], "severity": None}

        flags: List[str] = []
        severity: Optional[str] = None

        if code == parameters.FLOW:
            if value < 0:
                flags.append("NEGATIVE_FLOW")
                severity = _worst(severity, "HIGH")
            if value > thresholds["extreme_high"]:
                flags.append("EXTREME_HIGH_FLOW")
                severity = _worst(severity, "HIGH")

        elif code == parameters.TEMPERATURE:
            if value < thresholds["extreme_low"] or value > thresholds["extreme_high"]:
                flags.append("EXTREME_TEMPERATURE")
                severity = _worst(severity, "HIGH")

        elif code == parameters.TURBIDITY_FNU:
            if value < 0:
                flags.append("NEGATIVE_TURBIDITY")
                severity = _worst(severity, "HIGH")

        if value < thresholds["min"] or value > thresholds["max"]:
            flags.append("OUT_OF_RANGE")
            severity = _worst(severity, "MEDIUM")

        return {"is_valid": not flags, "flags": flags, "severity": severity}

    def check_data_freshness(self, timestamp: datetime, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.utcnow()
        age_minutes = int((now - timestamp).total_seconds() // 60)

        if age_minutes <= STALE_MINUTES:
            status = "current"
        elif age_minutes <= OFFLINE_MINUTES:
            status = "stale"
        else:
            status = "offline"

        return {"status": status, "age_minutes": age_minutes}

    def detect_anomalies(
        self,
        site_id: int,
        parameter_code: str,
        current_value: float,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Flag the value against the 3-sigma band of the last two hours of readings."""
        now = now or datetime.utcnow()
        session = self.session_factory()
        try:
            rows = session.query(ObservationHistory.value).filter(
                ObservationHistory.site_id == site_id,
                ObservationHistory.parameter_code == parameter_code,
                ObservationHistory.timestamp >= now - ANOMALY_WINDOW,
                ObservationHistory.value.isnot(None),
            ).order_by(ObservationHistory.timestamp.desc()).limit(ANOMALY_MAX_POINTS).all()
        except Exception as e:
            logger.error(f"[QUALITY] Error detecting anomalies for site {site_id}/{parameter_code}: {e}")
            return {"is_anomaly": False, "note": "error during anomaly detection"}
        finally:
            session.close()

        if len(rows) < ANOMALY_MIN_POINTS:
            return {
                "is_anomaly": False,
                "note": "insufficient historical data for anomaly detection",
            }

        values = np.array([r.value for r in rows], dtype=float)
        average = float(np.mean(values))
        std_dev = float(np.std(values)) or 1.0
        z_score = abs((current_value - average) / std_dev)

        if z_score > ANOMALY_Z_THRESHOLD:
            anomaly_type = "SUDDEN_SPIKE" if current_value > average else "SUDDEN_DROP"
            if z_score > 5:
                severity = "HIGH"
            elif z_score > 4:
                severity = "MEDIUM"
            else:
                severity = "LOW"
            return {
                "is_anomaly": True,
                "anomaly_type": anomaly_type,
                "severity": severity,
                "z_score": z_score,
            }

        return {"is_anomaly": False, "z_score": z_score}

    def get_sensor_status(self, site_id: int, parameter_code: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        session = self.session_factory()
        try:
            row = session.query(ObservationCurrent).filter_by(
                site_id=site_id, parameter_code=parameter_code
            ).first()
            if not row:
                return {"status": "unknown", "last_value": None, "data_age": None}

            freshness = self.check_data_freshness(row.timestamp, now=now)
            return {
                "status": "offline" if freshness["status"] == "offline" else "online",
                "last_value": row.value,
                "data_age": freshness["age_minutes"],
                "quality_code": row.data_quality_code,
            }
        except Exception as e:
            logger.error(f"[QUALITY] Error getting sensor status for site {site_id}/{parameter_code}: {e}")
            return {"status": "unknown", "last_value": None, "data_age": None}
        finally:
            session.close()

    def calculate_quality_score(self, observation: Dict[str, Any], now: Optional[datetime] = None) -> float:
        score = QUALITY_CODE_FACTORS.get(observation.get("quality_code"), UNKNOWN_QUALITY_FACTOR)

        freshness = self.check_data_freshness(observation["timestamp"], now=now)
        score *= FRESHNESS_FACTORS[freshness["status"]]

        validation = self.validate_observation(observation)
        if not validation["is_valid"]:
            score *= SEVERITY_FACTORS[validation["severity"]]

        return max(0.0, min(1.0, score))

    def log_issue(
        self,
        issue_type: str,
        description: str,
        site_id: Optional[int] = None,
        parameter_code: Optional[str] = None,
        severity: str = "MEDIUM",
        payload: Optional[Any] = None
    ):
        """Log a data quality issue to the database."""
        session = self.session_factory()
        try:
            payload_str = None
            if payload is not None:
                if isinstance(payload, (dict, list)):
                    payload_str = json.dumps(payload, default=str)
                else:
                    payload_str = str(payload)

            session.add(DataQualityLog(
                site_id=site_id,
                parameter_code=parameter_code,
                issue_type=issue_type,
                severity=severity,
                description=description,
                payload=payload_str,
                created_at=datetime.utcnow()
            ))
            session.commit()

            log_msg = f"[DQ][{severity}] Site {site_id} | {parameter_code} | {issue_type}: {description}"
            if severity == "HIGH":
                logger.error(log_msg)
            else:
                logger.warning(log_msg)

        except Exception as e:
            logger.error(f"Failed to log Data Quality issue: {e}")
            session.rollback()
        finally:
            session.close()

    def record_validation(self, site_id: Optional[int], observation: Dict[str, Any]) -> Dict[str, Any]:
        """Validate an incoming observation and log one issue per raised flag."""
        validation = self.validate_observation(observation)
        for flag in validation["flags"]:
            self.log_issue(
                issue_type=flag,
                description=f"value {observation['value']} {observation.get('unit') or ''}".strip(),
                site_id=site_id,
                parameter_code=observation["parameter_code"],
                severity=validation["severity"],
                payload=observation,
            )
        return validation

    def get_recent_issues(self, limit: int = 50):
        """Get the most recent data quality issues."""
        session = self.session_factory()
        try:
            results = session.query(DataQualityLog).order_by(
                DataQualityLog.created_at.desc(), DataQualityLog.id.desc()
            ).limit(limit).all()

            data = []
            for log in results:
                data.append({
                    "id": log.id,
                    "site_code": log.site.usgs_site_code if log.site else None,
                    "parameter_code": log.parameter_code,
                    "issue_type": log.issue_type,
                    "severity": log.severity,
                    "description": log.description,
                    "created_at": log.created_at.isoformat(),
                    "payload": log.payload
                })
            return data
        finally:
            session.close()
