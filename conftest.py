from datetime import datetime

import pytest
from sqlalchemy.orm import sessionmaker

from pipeline.database import build_engine, init_db
from pipeline.models import Site, ObservationHistory


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'pipeline_test.db'}")
    init_db(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def add_site(session_factory):
    def _add(code, name=None, active=True, has_flow=True, timezone="America/Denver"):
        session = session_factory()
        try:
            site = Site(
                usgs_site_code=code,
                name=name or f"Gauge {code}",
                active=active,
                has_flow=has_flow,
                timezone=timezone,
            )
            session.add(site)
            session.commit()
            return site.id
        finally:
            session.close()
    return _add


@pytest.fixture
def add_history(session_factory):
    def _add(site_id, parameter_code, points):
        session = session_factory()
        try:
            for timestamp, value in points:
                session.add(ObservationHistory(
                    site_id=site_id,
                    parameter_code=parameter_code,
                    value=value,
                    unit="ft3/s",
                    timestamp=timestamp,
                    data_quality_code="P",
                ))
            session.commit()
        finally:
            session.close()
    return _add


@pytest.fixture
def now():
    return datetime(2024, 6, 1, 12, 0, 0)
