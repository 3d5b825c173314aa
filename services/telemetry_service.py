"""
Telemetry Service — polls the USGS instantaneous-values service and stores
the latest reading per site and parameter.
"""
import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from core import parameters
from core.connection import usgs_conn, IV_PATH
from core.errors import NotFoundError, PipelineError, error_result
from pipeline.database import SessionLocal
from pipeline.models import ObservationCurrent, ObservationHistory, Site
from services.data_quality_service import DataQualityService

logger = logging.getLogger(__name__)


def _to_utc_naive(value: str) -> datetime:
    """Parse a USGS ISO timestamp (with offset) into naive UTC."""
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed
    return parsed.astimezone(timezone.utc).replace(tzinfo=None)


class TelemetryService:
    def __init__(self, session_factory=None, connection=None, quality: Optional[DataQualityService] = None):
        self.session_factory = session_factory or SessionLocal
        self.connection = connection or usgs_conn
        self.quality = quality or DataQualityService(self.session_factory)

    def fetch_instantaneous_data(self, site_code: str) -> Dict[str, Any]:
        """
        Fetch the latest reading of every polled parameter for one site.

        Returns ``{"site_code", "timestamp", "parameters"}`` where parameters maps
        a parameter code to ``{"value", "unit", "quality_code"}``. Parameters the
        site does not report are simply absent. Raises FetchError.
        """
        data = self.connection.get_json(IV_PATH, {
            "sites": site_code,
            "parameterCd": ",".join(parameters.POLLED_PARAMETERS),
            "format": "json",
            "siteStatus": "active",
        })
        time_series = (data.get("value") or {}).get("timeSeries") or []

        readings: Dict[str, Dict[str, Any]] = {}
        for series in time_series:
            variable = series.get("variable") or {}
            codes = variable.get("variableCode") or []
            param_code = codes[0].get("value") if codes else None
            values = (series.get("values") or [{}])[0].get("value") or []
            if not param_code or not values:
                continue

            latest = values[-1]
            try:
                value = float(latest.get("value"))
            except (TypeError, ValueError):
                logger.warning(f"[POLLER] {site_code}/{param_code}: non-numeric value {latest.get('value')!r}")
                continue

            no_data = variable.get("noDataValue")
            if math.isnan(value) or (no_data is not None and value == no_data):
                logger.warning(f"[POLLER] {site_code}/{param_code}: no-data value reported")
                continue

            qualifiers = latest.get("qualifiers") or []
            readings[param_code] = {
                "value": value,
                "unit": (variable.get("unit") or {}).get("unitCode") or "",
                "quality_code": qualifiers[0] if qualifiers else "",
            }

        # Timestamp of the first series' most recent point, else now
        timestamp = datetime.utcnow()
        if time_series:
            first_values = (time_series[0].get("values") or [{}])[0].get("value") or []
            if first_values and first_values[-1].get("dateTime"):
                timestamp = _to_utc_naive(first_values[-1]["dateTime"])

        return {
            "site_code": site_code,
            "timestamp": timestamp,
            "parameters": readings,
        }

    def store_observations(self, observations: Dict[str, Any]) -> int:
        """
        Upsert the current row and append the history row for every parameter.
        All parameters of the site commit or roll back together.
        """
        session = self.session_factory()
        try:
            site = session.query(Site).filter_by(usgs_site_code=observations["site_code"]).first()
            if not site:
                raise NotFoundError(
                    f"Site not found: {observations['site_code']}",
                    details={"site_code": observations["site_code"]},
                )

            timestamp = observations["timestamp"]
            for param_code, reading in observations["parameters"].items():
                existing = session.query(ObservationCurrent).filter_by(
                    site_id=site.id, parameter_code=param_code
                ).first()
                if existing:
                    existing.value = reading["value"]
                    existing.unit = reading["unit"]
                    existing.timestamp = timestamp
                    existing.data_quality_code = reading["quality_code"]
                else:
                    session.add(ObservationCurrent(
                        site_id=site.id,
                        parameter_code=param_code,
                        value=reading["value"],
                        unit=reading["unit"],
                        timestamp=timestamp,
                        data_quality_code=reading["quality_code"],
                    ))

                already_recorded = session.query(ObservationHistory.id).filter_by(
                    site_id=site.id, parameter_code=param_code, timestamp=timestamp
                ).first()
                if not already_recorded:
                    session.add(ObservationHistory(
                        site_id=site.id,
                        parameter_code=param_code,
                        value=reading["value"],
                        unit=reading["unit"],
                        timestamp=timestamp,
                        data_quality_code=reading["quality_code"],
                    ))

            session.commit()
            return len(observations["parameters"])
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _site_id(self, site_code: str) -> Optional[int]:
        session = self.session_factory()
        try:
            row = session.query(Site.id).filter_by(usgs_site_code=site_code).first()
            return row.id if row else None
        finally:
            session.close()

    def poll_site(self, site_code: str) -> Dict[str, Any]:
        """Fetch, validate and store one site. Never raises."""
        try:
            observations = self.fetch_instantaneous_data(site_code)

            site_id = self._site_id(site_code)
            flagged = 0
            for param_code, reading in observations["parameters"].items():
                validation = self.quality.record_validation(site_id, {
                    "parameter_code": param_code,
                    "value": reading["value"],
                    "unit": reading["unit"],
                    "quality_code": reading["quality_code"],
                    "timestamp": observations["timestamp"],
                })
                if not validation["is_valid"]:
                    flagged += 1

            stored = self.store_observations(observations)
            return {
                "success": True,
                "data": {
                    "site_code": site_code,
                    "timestamp": observations["timestamp"].isoformat(),
                    "parameters_stored": stored,
                    "parameters_flagged": flagged,
                },
            }
        except PipelineError as e:
            logger.error(f"[POLLER] Error polling site {site_code}: {e.message}")
            return e.to_result()
        except Exception as e:
            logger.exception(f"[POLLER] Unexpected error polling site {site_code}")
            return error_result("internal_error", str(e), {"site_code": site_code})

    def poll_all_sites(self) -> Dict[str, Any]:
        """Poll every active site. A failing site is logged and skipped until the next cycle."""
        session = self.session_factory()
        try:
            site_codes = [
                row.usgs_site_code
                for row in session.query(Site.usgs_site_code).filter(Site.active == True).order_by(Site.id).all()
            ]
        except Exception as e:
            logger.error(f"[POLLER] Could not list active sites: {e}")
            return error_result("database_error", str(e))
        finally:
            session.close()

        succeeded = 0
        failed = []
        for site_code in site_codes:
            result = self.poll_site(site_code)
            if result["success"]:
                succeeded += 1
            else:
                failed.append({"site_code": site_code, "error": result["error"]})

        logger.info(f"[POLLER] Polled {len(site_codes)} sites: {succeeded} ok, {len(failed)} failed")
        return {
            "success": True,
            "data": {"sites": len(site_codes), "succeeded": succeeded, "failed": failed},
        }
