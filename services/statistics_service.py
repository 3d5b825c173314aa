"""
Statistics Service — loads the USGS daily flow statistics (RDB format) that
serve as the percentile baseline for the flow z-score.
"""
import logging
import re
from datetime import date
from typing import Any, Dict, List, Optional

import pandas as pd

from core import parameters
from core.connection import usgs_conn, STAT_PATH
from core.errors import NotFoundError, ParseError, PipelineError, error_result
from pipeline.database import SessionLocal
from pipeline.models import DailyStatistic, Site

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ["month_nu", "day_nu", "count_nu"]

# RDB column -> statistics_daily attribute
VALUE_COLUMNS = {
    "mean_va": "flow_mean",
    "min_va": "flow_min",
    "max_va": "flow_max",
    "p05_va": "flow_p05",
    "p10_va": "flow_p10",
    "p20_va": "flow_p20",
    "p25_va": "flow_p25",
    "p50_va": "flow_p50",
    "p75_va": "flow_p75",
    "p80_va": "flow_p80",
    "p90_va": "flow_p90",
    "p95_va": "flow_p95",
}
YEAR_COLUMNS = {
    "begin_yr": "period_begin_year",
    "end_yr": "period_end_year",
    "max_va_yr": "max_value_year",
    "min_va_yr": "min_value_year",
}

FORMAT_FIELD_RE = re.compile(r"^\d+[sndt]$")

# Leap-year calendar so Feb 29 always has a slot
DAYS_IN_MONTH = [31, 29, 31, 30, 31, 30, 31, 31, 30, 31, 30, 31]


def month_day_to_day_of_year(month: int, day: int) -> int:
    if month < 1 or month > 12:
        raise ValueError(f"Invalid month: {month}")
    if day < 1 or day > DAYS_IN_MONTH[month - 1]:
        raise ValueError(f"Invalid day {day} for month {month}")
    return sum(DAYS_IN_MONTH[:month - 1]) + day


def _is_format_line(fields: List[str]) -> bool:
    return all(FORMAT_FIELD_RE.match(f.strip()) for f in fields if f.strip())


def _optional(value: Any, cast=float) -> Optional[Any]:
    if value is None or pd.isna(value):
        return None
    return cast(value)


def parse_rdb_response(rdb_data: str, site_code: str) -> List[Dict[str, Any]]:
    """
    Parse a daily statistics RDB document into one dict per day of year.

    Comment lines, blank lines and the column-format line are skipped; ``na``
    and empty cells become None. Raises ParseError on an empty document,
    missing required columns, or when no data row is usable.
    """
    if not rdb_data or not rdb_data.strip():
        raise ParseError("Empty RDB response received", details={"site_code": site_code})

    header: Optional[List[str]] = None
    rows: List[List[str]] = []
    for line in rdb_data.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue

        fields = [f.strip() for f in line.rstrip("\r\n").split("\t")]
        if _is_format_line(fields):
            continue

        if header is None:
            if "agency_cd" in fields:
                header = fields
            continue

        if fields[0] == "USGS":
            rows.append(fields)

    if header is None:
        logger.warning(f"[STATS] No header found in RDB response for site {site_code}")
        return []

    missing = [col for col in REQUIRED_COLUMNS if col not in header]
    if missing:
        raise ParseError(
            f"Invalid RDB format: missing required columns: {', '.join(missing)}",
            details={"site_code": site_code, "missing": missing},
        )

    known = [c for c in REQUIRED_COLUMNS + list(VALUE_COLUMNS) + list(YEAR_COLUMNS) if c in header]
    min_width = max(header.index(c) for c in known) + 1
    usable = []
    for fields in rows:
        if len(fields) < min_width:
            logger.warning(f"[STATS] Skipping malformed data row for site {site_code}: insufficient columns")
            continue
        usable.append(fields[:len(header)] + [""] * (len(header) - len(fields)))

    results: List[Dict[str, Any]] = []
    if usable:
        frame = pd.DataFrame(usable, columns=header)
        numeric = frame[known].apply(pd.to_numeric, errors="coerce")

        for _, row in numeric.iterrows():
            month = _optional(row["month_nu"], int)
            day = _optional(row["day_nu"], int)
            try:
                doy = month_day_to_day_of_year(month, day)
            except (TypeError, ValueError):
                logger.warning(f"[STATS] Invalid month/day values for site {site_code}: {month}/{day}")
                continue

            stat = {
                "site_code": site_code,
                "day_of_year": doy,
                "observation_count": _optional(row["count_nu"], int) or 0,
            }
            for column, attr in VALUE_COLUMNS.items():
                stat[attr] = _optional(row[column]) if column in numeric else None
            for column, attr in YEAR_COLUMNS.items():
                stat[attr] = _optional(row[column], int) if column in numeric else None
            results.append(stat)

    if not results and rows:
        raise ParseError(
            f"No valid data rows found in RDB response for site {site_code}",
            details={"site_code": site_code, "rows": len(rows)},
        )

    return results


class StatisticsService:
    def __init__(self, session_factory=None, connection=None):
        self.session_factory = session_factory or SessionLocal
        self.connection = connection or usgs_conn

    def fetch_site_statistics(self, site_code: str) -> List[Dict[str, Any]]:
        logger.info(f"[STATS] Fetching USGS statistics for site {site_code}")
        text = self.connection.get_text(STAT_PATH, {
            "sites": site_code,
            "parameterCd": parameters.FLOW,
            "statReportType": "daily",
            "statType": "all",
            "format": "rdb",
        })
        results = parse_rdb_response(text, site_code)
        logger.info(f"[STATS] Parsed {len(results)} daily statistics for site {site_code}")
        return results

    def store_statistics(self, stats: List[Dict[str, Any]]) -> int:
        if not stats:
            logger.info("[STATS] No statistics to store")
            return 0

        site_code = stats[0]["site_code"]
        session = self.session_factory()
        try:
            site = session.query(Site).filter_by(usgs_site_code=site_code).first()
            if not site:
                raise NotFoundError(f"Site not found: {site_code}", details={"site_code": site_code})

            today = date.today()
            for stat in stats:
                values = {k: v for k, v in stat.items() if k not in ("site_code", "day_of_year")}
                existing = session.query(DailyStatistic).filter_by(
                    site_id=site.id, day_of_year=stat["day_of_year"]
                ).first()
                if existing:
                    for key, value in values.items():
                        setattr(existing, key, value)
                    existing.last_updated = today
                else:
                    session.add(DailyStatistic(
                        site_id=site.id,
                        day_of_year=stat["day_of_year"],
                        last_updated=today,
                        **values
                    ))

            session.commit()
            logger.info(f"[STATS] Stored {len(stats)} daily statistics for site {site_code}")
            return len(stats)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def load_site(self, site_code: str) -> Dict[str, Any]:
        try:
            stored = self.store_statistics(self.fetch_site_statistics(site_code))
            return {"success": True, "data": {"site_code": site_code, "days_stored": stored}}
        except PipelineError as e:
            logger.error(f"[STATS] Failed to load statistics for {site_code}: {e.message}")
            return e.to_result()
        except Exception as e:
            logger.exception(f"[STATS] Unexpected error loading statistics for {site_code}")
            return error_result("internal_error", str(e), {"site_code": site_code})

    def populate_all_site_statistics(self) -> Dict[str, Any]:
        session = self.session_factory()
        try:
            site_codes = [
                row.usgs_site_code
                for row in session.query(Site.usgs_site_code).filter(Site.active == True).order_by(Site.id).all()
            ]
        except Exception as e:
            logger.error(f"[STATS] Could not list active sites: {e}")
            return error_result("database_error", str(e))
        finally:
            session.close()

        succeeded = 0
        failed = []
        for site_code in site_codes:
            result = self.load_site(site_code)
            if result["success"]:
                succeeded += 1
            else:
                failed.append({"site_code": site_code, "error": result["error"]})

        return {
            "success": True,
            "data": {"sites": len(site_codes), "succeeded": succeeded, "failed": failed},
        }
