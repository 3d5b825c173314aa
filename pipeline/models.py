"""
SQLAlchemy models for the stream conditions store.
"""
from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Float, Text, DateTime, Date,
    Boolean, ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


# ============================================================================
# Site Registry (populated by the metadata utility, read-only here)
# ============================================================================

class Site(Base):
    """A monitored USGS gauging station."""
    __tablename__ = "sites"

    id = Column(Integer, primary_key=True, autoincrement=True)
    usgs_site_code = Column(String(20), nullable=False, unique=True)   # e.g. 08279500
    name = Column(String(200), nullable=False)
    river = Column(String(120))
    latitude = Column(Float)
    longitude = Column(Float)
    timezone = Column(String(60), default="America/Denver")
    has_flow = Column(Boolean, default=True, nullable=False)
    has_turbidity = Column(Boolean, default=False, nullable=False)
    has_ph = Column(Boolean, default=False, nullable=False)
    has_do = Column(Boolean, default=False, nullable=False)
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    current_observations = relationship("ObservationCurrent", back_populates="site", cascade="all, delete-orphan")
    derived_metric = relationship("DerivedMetric", back_populates="site", uselist=False, cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Site {self.usgs_site_code} ({self.name})>"


# ============================================================================
# Observations
# ============================================================================

class ObservationCurrent(Base):
    """Latest reading per site and parameter. Overwritten on every poll."""
    __tablename__ = "observations_current"

    site_id = Column(Integer, ForeignKey("sites.id", ondelete="CASCADE"), primary_key=True)
    parameter_code = Column(String(10), primary_key=True)   # e.g. 00060
    value = Column(Float)
    unit = Column(String(20))
    timestamp = Column(DateTime, nullable=False)             # UTC
    data_quality_code = Column(String(10))                   # A, P, E, ...

    site = relationship("Site", back_populates="current_observations")

    def to_observation(self) -> dict:
        return {
            "parameter_code": self.parameter_code,
            "value": self.value,
            "unit": self.unit,
            "quality_code": self.data_quality_code,
            "timestamp": self.timestamp,
        }


class ObservationHistory(Base):
    """Append-only readings used for trend and anomaly windows."""
    __tablename__ = "observations_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    site_id = Column(Integer, ForeignKey("sites.id", ondelete="CASCADE"), nullable=False)
    parameter_code = Column(String(10), nullable=False)
    value = Column(Float)
    unit = Column(String(20))
    timestamp = Column(DateTime, nullable=False)             # UTC
    data_quality_code = Column(String(10))

    __table_args__ = (
        UniqueConstraint("site_id", "parameter_code", "timestamp", name="uq_observation_history_point"),
        Index("ix_observation_history_site_param_ts", "site_id", "parameter_code", "timestamp"),
    )


# ============================================================================
# Reference Statistics & Derived Metrics
# ============================================================================

class DailyStatistic(Base):
    """Historical daily flow percentiles by day of year (leap-year calendar)."""
    __tablename__ = "statistics_daily"

    site_id = Column(Integer, ForeignKey("sites.id", ondelete="CASCADE"), primary_key=True)
    day_of_year = Column(Integer, primary_key=True)          # 1..366

    flow_mean = Column(Float)
    flow_min = Column(Float)
    flow_max = Column(Float)

    flow_p05 = Column(Float)
    flow_p10 = Column(Float)
    flow_p20 = Column(Float)
    flow_p25 = Column(Float)
    flow_p50 = Column(Float)                                 # median
    flow_p75 = Column(Float)
    flow_p80 = Column(Float)
    flow_p90 = Column(Float)
    flow_p95 = Column(Float)

    period_begin_year = Column(Integer)
    period_end_year = Column(Integer)
    max_value_year = Column(Integer)
    min_value_year = Column(Integer)

    observation_count = Column(Integer, default=0)
    last_updated = Column(Date)


class DerivedMetric(Base):
    """Current flow classification for a site. One row per site."""
    __tablename__ = "derived_metrics"

    site_id = Column(Integer, ForeignKey("sites.id", ondelete="CASCADE"), primary_key=True)
    calculated_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    flow_z_score = Column(Float)
    flow_status = Column(String(20), default="Unknown")      # Very Low .. Very High, Unknown
    flow_trend = Column(String(20), default="Unknown")       # Rising, Falling, Steady, Unknown
    flow_trend_6h_slope = Column(Float)                      # cfs per hour

    site = relationship("Site", back_populates="derived_metric")


# ============================================================================
# Data Quality
# ============================================================================

class DataQualityLog(Base):
    """Validation issues raised while ingesting observations."""
    __tablename__ = "data_quality_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    site_id = Column(Integer, ForeignKey("sites.id", ondelete="SET NULL"), nullable=True)
    parameter_code = Column(String(10))
    issue_type = Column(String(50), nullable=False)          # NEGATIVE_FLOW, OUT_OF_RANGE, ...
    severity = Column(String(10), default="MEDIUM")          # LOW, MEDIUM, HIGH
    description = Column(Text)
    payload = Column(Text)                                   # JSON observation snapshot
    created_at = Column(DateTime, default=datetime.utcnow)

    site = relationship("Site")

    __table_args__ = (
        Index("ix_data_quality_log_created", "created_at"),
    )
