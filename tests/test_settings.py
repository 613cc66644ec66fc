from __future__ import annotations

import datetime
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import Base, get_setting, set_setting  # noqa: E402
from errors import InvalidMonth  # noqa: E402
from months import current_month, month_bounds, month_days, parse_month, sunday_weekday  # noqa: E402
from settings import (  # noqa: E402
    DEFAULT_WORKDAYS,
    MonthSettings,
    ensure_default_settings,
    load_month_settings,
    parse_slots_per_day,
    parse_workdays,
    save_settings,
)


@pytest.fixture()
def session_factory():
    engine = create_engine("sqlite:///:memory:", future=True)
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, expire_on_commit=False, future=True)
    engine.dispose()


def test_defaults_when_nothing_is_stored(session_factory):
    with session_factory() as session:
        settings = load_month_settings(session)

    assert settings == MonthSettings(slots_per_day=2, workdays=frozenset({1, 2, 3, 4, 5}))
    assert settings.is_working_day(datetime.date(2025, 9, 5))
    assert not settings.is_working_day(datetime.date(2025, 9, 6))
    assert not settings.is_working_day(datetime.date(2025, 9, 7))


def test_ensure_default_settings_keeps_existing_values(session_factory):
    with session_factory() as session:
        set_setting(session, "slots_per_day", "4")

    ensure_default_settings(session_factory)

    with session_factory() as session:
        assert get_setting(session, "slots_per_day") == "4"
        assert get_setting(session, "workdays") == "1,2,3,4,5"


def test_stored_values_are_read_leniently(session_factory):
    with session_factory() as session:
        set_setting(session, "slots_per_day", "zero")
        set_setting(session, "workdays", "1; 3, 9, x")
        settings = load_month_settings(session)

    assert settings.slots_per_day == 2
    assert settings.workdays == frozenset({1, 3})


@pytest.mark.parametrize(
    "raw, expected",
    [("3", 3), (" 1 ", 1), ("0", 2), ("-4", 2), (None, 2), ("", 2)],
)
def test_parse_slots_per_day(raw, expected):
    assert parse_slots_per_day(raw) == expected


def test_parse_workdays_accepts_lists_and_falls_back():
    assert parse_workdays([0, 6]) == frozenset({0, 6})
    assert parse_workdays("") == DEFAULT_WORKDAYS
    assert parse_workdays(None) == DEFAULT_WORKDAYS


def test_save_settings_validates_input(session_factory):
    with session_factory() as session:
        saved = save_settings(session, slots_per_day="3", workdays=[6, 1, 1])
        assert saved.as_dict() == {"slots_per_day": 3, "workdays": [1, 6]}
        assert get_setting(session, "workdays") == "1,6"

        with pytest.raises(ValueError):
            save_settings(session, slots_per_day=0)
        with pytest.raises(ValueError):
            save_settings(session, workdays="1,8")
        with pytest.raises(ValueError):
            save_settings(session, workdays=[])
        assert load_month_settings(session).slots_per_day == 3


def test_parse_month_accepts_canonical_form():
    assert parse_month("2025-09") == (2025, 9)
    assert parse_month("1999-12") == (1999, 12)


@pytest.mark.parametrize("value", ["2025-13", "2025-00", "2025-9", "2025/09", "", None, 202509])
def test_parse_month_rejects_malformed(value):
    with pytest.raises(InvalidMonth):
        parse_month(value)


def test_invalid_month_is_a_value_error():
    with pytest.raises(ValueError):
        parse_month("nope")


def test_month_helpers():
    assert month_bounds(2024, 2) == (datetime.date(2024, 2, 1), datetime.date(2024, 2, 29))
    assert len(month_days(2025, 9)) == 30
    assert current_month(datetime.date(2025, 1, 31)) == "2025-01"
    assert sunday_weekday(datetime.date(2025, 9, 7)) == 0
    assert sunday_weekday(datetime.date(2025, 9, 3)) == 3
    assert sunday_weekday(datetime.date(2025, 9, 6)) == 6
