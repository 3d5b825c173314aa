"""
Metrics Service — derived flow indicators per site.

Percentile z-score against the historical daily baseline, plus a Theil-Sen
trend over the last six hours of readings. One derived_metrics row per site.
"""
import logging
import os
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

import numpy as np
from sqlalchemy.exc import IntegrityError

from core import parameters
from core.errors import error_result
from pipeline.database import SessionLocal
from pipeline.models import DailyStatistic, DerivedMetric, ObservationCurrent, ObservationHistory, Site

logger = logging.getLogger(__name__)

SITE_TIMEZONE = os.environ.get("SITE_TIMEZONE", "America/Denver")

TREND_WINDOW = timedelta(hours=6)
STEADY_PERCENT = 5.0


def classify_z_score(z_score: float) -> str:
    if z_score <= -2:
        return "Very Low"
    if z_score < -1:
        return "Below Normal"
    if z_score >= 2:
        return "Very High"
    if z_score >= 1:
        return "Above Normal"
    return "Normal"


def theil_sen_estimator(points: List[Tuple[float, float]]) -> float:
    """Median of the slopes between every pair of points with distinct x."""
    if len(points) < 2:
        return 0.0

    x = np.array([p[0] for p in points], dtype=float)
    y = np.array([p[1] for p in points], dtype=float)
    i, j = np.triu_indices(len(points), k=1)
    dx = x[j] - x[i]
    mask = dx != 0
    if not mask.any():
        return 0.0

    slopes = (y[j] - y[i])[mask] / dx[mask]
    return float(np.median(slopes))


def day_of_year(timestamp: datetime, tz_name: Optional[str] = None) -> int:
    """
    Day of year on a leap-year calendar, in the site's local time.
    Matches the numbering of statistics_daily (Feb 29 = 60, Mar 1 = 61).
    """
    local = timestamp.replace(tzinfo=timezone.utc).astimezone(ZoneInfo(tz_name or SITE_TIMEZONE))
    return date(2000, local.month, local.day).timetuple().tm_yday


class MetricsService:
    def __init__(self, session_factory=None):
        self.session_factory = session_factory or SessionLocal

    def calculate_flow_z_score(self, site_id: int, current_flow: float, day_of_year: int) -> Dict[str, Any]:
        session = self.session_factory()
        try:
            stats = session.query(DailyStatistic).filter_by(
                site_id=site_id, day_of_year=day_of_year
            ).first()
        except Exception as e:
            logger.error(f"[METRICS] Error calculating z-score for site {site_id}: {e}")
            return {"z_score": None, "status": "Unknown", "note": "error calculating z-score"}
        finally:
            session.close()

        if not stats or None in (stats.flow_p25, stats.flow_p50, stats.flow_p75):
            return {
                "z_score": None,
                "status": "Unknown",
                "note": "statistics not available for this day of year",
            }

        percentile_range = {"p25": stats.flow_p25, "p50": stats.flow_p50, "p75": stats.flow_p75}
        iqr = stats.flow_p75 - stats.flow_p25

        if iqr == 0:
            return {
                "z_score": None,
                "status": "Normal",
                "percentile_range": percentile_range,
                "note": "no variability in historical data",
            }

        z_score = (current_flow - stats.flow_p50) / iqr
        return {
            "z_score": z_score,
            "status": classify_z_score(z_score),
            "percentile_range": percentile_range,
        }

    def calculate_flow_trend(self, site_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.utcnow()
        session = self.session_factory()
        try:
            rows = session.query(ObservationHistory.timestamp, ObservationHistory.value).filter(
                ObservationHistory.site_id == site_id,
                ObservationHistory.parameter_code == parameters.FLOW,
                ObservationHistory.timestamp >= now - TREND_WINDOW,
                ObservationHistory.value.isnot(None),
            ).order_by(ObservationHistory.timestamp.asc()).all()
        except Exception as e:
            logger.error(f"[METRICS] Error calculating flow trend for site {site_id}: {e}")
            return {
                "trend": "Unknown", "slope": None, "change_percent": 0.0,
                "method": "Theil-Sen", "note": "error calculating trend",
            }
        finally:
            session.close()

        if len(rows) < 2:
            return {
                "trend": "Unknown",
                "slope": None,
                "change_percent": 0.0,
                "method": "Theil-Sen",
                "note": "insufficient data for trend calculation",
            }

        start = rows[0].timestamp
        points = [((r.timestamp - start).total_seconds() / 3600.0, r.value) for r in rows]
        slope = theil_sen_estimator(points)

        first_value = points[0][1]
        last_value = points[-1][1]
        if first_value == 0:
            # Percent change is undefined from a dry channel; fall back to the slope sign
            change_percent = None
            if slope > 0:
                trend = "Rising"
            elif slope < 0:
                trend = "Falling"
            else:
                trend = "Steady"
        else:
            change_percent = ((last_value - first_value) / first_value) * 100
            if abs(change_percent) <= STEADY_PERCENT:
                trend = "Steady"
            elif change_percent > 0:
                trend = "Rising"
            else:
                trend = "Falling"

        return {
            "trend": trend,
            "slope": slope,
            "change_percent": change_percent,
            "method": "Theil-Sen",
        }

    def update_derived_metrics(self, site_id: int) -> Dict[str, Any]:
        """Recompute and upsert the derived_metrics row of one site. Raises on database errors."""
        session = self.session_factory()
        try:
            flow = session.query(ObservationCurrent).filter_by(
                site_id=site_id, parameter_code=parameters.FLOW
            ).first()
            site_tz = session.query(Site.timezone).filter_by(id=site_id).scalar()

            z_score = None
            status = "Unknown"
            trend = "Unknown"
            slope = None

            if flow is not None and flow.value is not None:
                doy = day_of_year(flow.timestamp, site_tz)

                z_result = self.calculate_flow_z_score(site_id, flow.value, doy)
                z_score = z_result["z_score"]
                status = z_result["status"]

                trend_result = self.calculate_flow_trend(site_id)
                trend = trend_result["trend"]
                slope = trend_result["slope"]

            values = {
                "calculated_at": datetime.utcnow(),
                "flow_z_score": z_score,
                "flow_status": status,
                "flow_trend": trend,
                "flow_trend_6h_slope": slope,
            }
            metric = session.query(DerivedMetric).filter_by(site_id=site_id).first()
            if metric is None:
                session.add(DerivedMetric(site_id=site_id, **values))
            else:
                for key, value in values.items():
                    setattr(metric, key, value)

            try:
                session.commit()
            except IntegrityError:
                # A concurrent run inserted the row first; overwrite it
                session.rollback()
                metric = session.query(DerivedMetric).filter_by(site_id=site_id).one()
                for key, value in values.items():
                    setattr(metric, key, value)
                session.commit()
            return {
                "site_id": site_id,
                "flow_z_score": z_score,
                "flow_status": status,
                "flow_trend": trend,
                "flow_trend_6h_slope": slope,
            }
        except Exception:
            session.rollback()
            logger.error(f"[METRICS] Error updating derived metrics for site {site_id}")
            raise
        finally:
            session.close()

    def update_all_site_metrics(self) -> Dict[str, Any]:
        """Update every active, flow-capable site. One site's failure does not stop the batch."""
        session = self.session_factory()
        try:
            site_ids = [
                row.id for row in session.query(Site.id).filter(
                    Site.active == True, Site.has_flow == True
                ).order_by(Site.id).all()
            ]
        except Exception as e:
            logger.error(f"[METRICS] Error listing sites for metrics update: {e}")
            return error_result("database_error", str(e))
        finally:
            session.close()

        logger.info(f"[METRICS] Updating derived metrics for {len(site_ids)} sites")

        succeeded = 0
        failed = []
        for site_id in site_ids:
            try:
                self.update_derived_metrics(site_id)
                succeeded += 1
            except Exception as e:
                logger.error(f"[METRICS] Error updating metrics for site {site_id}: {e}")
                failed.append({"site_id": site_id, "error": str(e)})

        logger.info("[METRICS] Completed derived metrics update")
        return {
            "success": True,
            "data": {"sites": len(site_ids), "succeeded": succeeded, "failed": failed},
        }
