from unittest.mock import MagicMock

import pytest

from core.errors import FetchError, ParseError
from pipeline.models import DailyStatistic
from services.statistics_service import (
    StatisticsService, month_day_to_day_of_year, parse_rdb_response,
)

HEADER = [
    "agency_cd", "site_no", "parameter_cd", "ts_id", "loc_web_ds", "month_nu", "day_nu",
    "begin_yr", "end_yr", "count_nu", "max_va_yr", "max_va", "min_va_yr", "min_va", "mean_va",
    "p05_va", "p10_va", "p20_va", "p25_va", "p50_va", "p75_va", "p80_va", "p90_va", "p95_va",
]
FORMATS = [
    "5s", "15s", "5s", "10n", "15s", "3n", "3n", "6n", "6n", "8n", "6n", "12s", "6n", "12s", "12n",
    "12s", "12s", "12s", "12s", "12s", "12s", "12s", "12s", "12s",
]


def _row(month, day, p05="150", p25="200", p50="280", p75="350"):
    return [
        "USGS", "09085000", "00060", "144166", "", str(month), str(day),
        "1990", "2023", "34", "1997", "850", "2002", "120", "300",
        p05, "160", "180", p25, p50, p75, "380", "450", "520",
    ]


def _rdb(*rows, header=HEADER):
    lines = [
        "# //UNITED STATES GEOLOGICAL SURVEY       https://waterdata.usgs.gov/nwis/",
        "#",
        "\t".join(header),
        "\t".join(FORMATS[:len(header)]),
    ]
    lines += ["\t".join(r) for r in rows]
    return "\n".join(lines) + "\n"


def test_parse_rdb_skips_comments_and_format_line():
    stats = parse_rdb_response(_rdb(_row(1, 1), _row(3, 1)), "09085000")
    assert [s["day_of_year"] for s in stats] == [1, 61]

    first = stats[0]
    assert first["site_code"] == "09085000"
    assert first["observation_count"] == 34
    assert first["flow_p25"] == 200.0
    assert first["flow_p50"] == 280.0
    assert first["flow_p75"] == 350.0
    assert first["flow_mean"] == 300.0
    assert first["period_begin_year"] == 1990
    assert first["max_value_year"] == 1997


def test_parse_rdb_na_cells_become_none():
    stats = parse_rdb_response(_rdb(_row(7, 4, p05="na", p25="")), "09085000")
    assert stats[0]["flow_p05"] is None
    assert stats[0]["flow_p25"] is None
    assert stats[0]["flow_p50"] == 280.0


def test_parse_rdb_feb_29_has_its_own_slot():
    stats = parse_rdb_response(_rdb(_row(2, 29)), "09085000")
    assert stats[0]["day_of_year"] == 60


def test_parse_rdb_skips_invalid_dates():
    stats = parse_rdb_response(_rdb(_row(2, 30), _row(12, 31)), "09085000")
    assert [s["day_of_year"] for s in stats] == [366]


def test_parse_rdb_empty_response_raises():
    with pytest.raises(ParseError):
        parse_rdb_response("   \n", "09085000")


def test_parse_rdb_missing_columns_raises():
    header = [c for c in HEADER if c != "count_nu"]
    row = _row(1, 1)
    del row[HEADER.index("count_nu")]
    with pytest.raises(ParseError) as exc:
        parse_rdb_response(_rdb(row, header=header), "09085000")
    assert "count_nu" in exc.value.message


def test_parse_rdb_without_header_is_empty():
    assert parse_rdb_response("# no data for this site\n", "09085000") == []


def test_parse_rdb_without_valid_rows_raises():
    with pytest.raises(ParseError):
        parse_rdb_response(_rdb(_row(13, 1), _row(0, 5)), "09085000")


@pytest.mark.parametrize("month,day,expected", [(1, 1, 1), (2, 29, 60), (3, 1, 61), (12, 31, 366)])
def test_month_day_to_day_of_year(month, day, expected):
    assert month_day_to_day_of_year(month, day) == expected


# --- Service ---

def test_store_statistics_upserts(session_factory, add_site):
    site_id = add_site("09085000")
    connection = MagicMock()
    service = StatisticsService(session_factory, connection)

    connection.get_text.return_value = _rdb(_row(1, 1), _row(1, 2))
    assert service.load_site("09085000") == {
        "success": True, "data": {"site_code": "09085000", "days_stored": 2},
    }

    connection.get_text.return_value = _rdb(_row(1, 1, p50="999"))
    service.load_site("09085000")

    session = session_factory()
    rows = session.query(DailyStatistic).filter_by(site_id=site_id).order_by(DailyStatistic.day_of_year).all()
    session.close()
    assert [r.day_of_year for r in rows] == [1, 2]
    assert rows[0].flow_p50 == 999.0
    assert rows[1].flow_p50 == 280.0


def test_load_site_unknown_site(session_factory):
    connection = MagicMock()
    connection.get_text.return_value = _rdb(_row(1, 1))
    result = StatisticsService(session_factory, connection).load_site("00000000")
    assert result["success"] is False
    assert result["error"]["code"] == "not_found"


def test_populate_all_isolates_failures(session_factory, add_site):
    add_site("09085000")
    add_site("09085100")
    connection = MagicMock()

    def get_text(path, params):
        if params["sites"] == "09085100":
            raise FetchError("HTTP 503 from USGS", details={"status": 503})
        return _rdb(_row(1, 1))

    connection.get_text.side_effect = get_text
    result = StatisticsService(session_factory, connection).populate_all_site_statistics()
    assert result["success"] is True
    assert result["data"]["succeeded"] == 1
    assert result["data"]["failed"][0]["site_code"] == "09085100"
    assert result["data"]["failed"][0]["error"]["code"] == "fetch_error"
