from __future__ import annotations

import datetime
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable

from database import get_setting, set_setting
from months import sunday_weekday


SLOTS_PER_DAY_KEY = "slots_per_day"
WORKDAYS_KEY = "workdays"
DEFAULT_SLOTS_PER_DAY = 2
DEFAULT_WORKDAYS: FrozenSet[int] = frozenset({1, 2, 3, 4, 5})
DEFAULT_SETTINGS: Dict[str, str] = {
    SLOTS_PER_DAY_KEY: str(DEFAULT_SLOTS_PER_DAY),
    WORKDAYS_KEY: "1,2,3,4,5",
}


@dataclass(frozen=True)
class MonthSettings:
    """Settings captured once at the start of a generation call."""

    slots_per_day: int = DEFAULT_SLOTS_PER_DAY
    workdays: FrozenSet[int] = field(default_factory=lambda: DEFAULT_WORKDAYS)

    def is_working_day(self, day: datetime.date) -> bool:
        return sunday_weekday(day) in self.workdays

    def as_dict(self) -> Dict[str, Any]:
        return {
            SLOTS_PER_DAY_KEY: self.slots_per_day,
            WORKDAYS_KEY: sorted(self.workdays),
        }


def parse_slots_per_day(value: Any) -> int:
    """Lenient parse used when reading stored values; bad input means the default."""
    try:
        slots = int(str(value).strip())
    except (TypeError, ValueError):
        return DEFAULT_SLOTS_PER_DAY
    return slots if slots >= 1 else DEFAULT_SLOTS_PER_DAY


def parse_workdays(value: Any) -> FrozenSet[int]:
    """Parse ``"1,2,3,4,5"`` style values, dropping tokens outside 0..6."""
    if value is None:
        return DEFAULT_WORKDAYS
    if isinstance(value, str):
        tokens: Iterable[Any] = value.replace(";", ",").split(",")
    else:
        tokens = value
    days = set()
    for token in tokens:
        try:
            day = int(str(token).strip())
        except (TypeError, ValueError):
            continue
        if 0 <= day <= 6:
            days.add(day)
    return frozenset(days) if days else DEFAULT_WORKDAYS


def format_workdays(days: Iterable[int]) -> str:
    return ",".join(str(day) for day in sorted(set(days)))


def load_month_settings(session) -> MonthSettings:
    return MonthSettings(
        slots_per_day=parse_slots_per_day(get_setting(session, SLOTS_PER_DAY_KEY, DEFAULT_SETTINGS[SLOTS_PER_DAY_KEY])),
        workdays=parse_workdays(get_setting(session, WORKDAYS_KEY, DEFAULT_SETTINGS[WORKDAYS_KEY])),
    )


def save_settings(session, *, slots_per_day: Any = None, workdays: Any = None) -> MonthSettings:
    """Validate and persist administrator-supplied settings."""
    if slots_per_day is not None:
        try:
            slots = int(str(slots_per_day).strip())
        except (TypeError, ValueError) as exc:
            raise ValueError(f"slots_per_day must be a positive integer, got {slots_per_day!r}.") from exc
        if slots < 1:
            raise ValueError("slots_per_day must be at least 1.")
        set_setting(session, SLOTS_PER_DAY_KEY, slots)
    if workdays is not None:
        raw = workdays.split(",") if isinstance(workdays, str) else list(workdays)
        days = set()
        for token in raw:
            try:
                day = int(str(token).strip())
            except (TypeError, ValueError) as exc:
                raise ValueError(f"Workday {token!r} is not an integer.") from exc
            if not 0 <= day <= 6:
                raise ValueError(f"Workday {day} is outside 0..6 (Sunday=0).")
            days.add(day)
        if not days:
            raise ValueError("At least one workday is required.")
        set_setting(session, WORKDAYS_KEY, format_workdays(days))
    return load_month_settings(session)


def ensure_default_settings(session_factory) -> None:
    """Seed missing settings exactly once so generation can run end-to-end."""

    with session_factory() as session:
        for key, value in DEFAULT_SETTINGS.items():
            if get_setting(session, key) is None:
                set_setting(session, key, value)
