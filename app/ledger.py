from __future__ import annotations

import datetime
from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from database import (
    Attendance,
    Assignment,
    Replacement,
    get_assignment,
    load_assignment_rows,
    people_by_id,
    upsert_assignment,
)
from errors import storage_guard
from months import format_month, month_bounds, month_days, parse_month, sunday_weekday
from settings import load_month_settings


@dataclass(frozen=True)
class AssignmentRow:
    date: datetime.date
    slot_index: int
    person_id: Optional[int]


class AssignmentLedger:
    """In-memory view of the assignment rows for a date range, written through to the store."""

    def __init__(self, session, start: datetime.date, end: datetime.date) -> None:
        self.session = session
        self.start = start
        self.end = end
        self._days: Dict[datetime.date, Dict[int, Optional[int]]] = {}
        self.writes = 0

    @classmethod
    def load(cls, session, start: datetime.date, end: datetime.date) -> "AssignmentLedger":
        ledger = cls(session, start, end)
        with storage_guard("Loading assignments"):
            rows = load_assignment_rows(session, start, end)
        for row in rows:
            ledger._days.setdefault(row.date, {})[row.slot_index] = row.person_id
        return ledger

    def rows(self) -> List[AssignmentRow]:
        return [
            AssignmentRow(date=day, slot_index=slot, person_id=person_id)
            for day in sorted(self._days)
            for slot, person_id in sorted(self._days[day].items())
        ]

    def day_rows(self, day: datetime.date) -> Dict[int, Optional[int]]:
        return dict(self._days.get(day, {}))

    def filled_people(self, day: datetime.date) -> List[int]:
        """Non-empty person ids on a day, in slot order."""
        return [person_id for _, person_id in sorted(self._days.get(day, {}).items()) if person_id is not None]

    def person_counts(self, include: Optional[Callable[[datetime.date], bool]] = None) -> Counter:
        """Filled slots per person, optionally only on days accepted by ``include``."""
        counts: Counter = Counter()
        for day, slots in self._days.items():
            if include is not None and not include(day):
                continue
            for person_id in slots.values():
                if person_id is not None:
                    counts[person_id] += 1
        return counts

    def upsert(self, day: datetime.date, slot_index: int, person_id: Optional[int]) -> None:
        current = self._days.get(day, {})
        if slot_index in current and current[slot_index] == person_id:
            return
        with storage_guard(f"Writing {day.isoformat()} slot {slot_index}"):
            upsert_assignment(self.session, day, slot_index, person_id)
        self._days.setdefault(day, {})[slot_index] = person_id
        self.writes += 1


def save_manual_assignments(
    session,
    entries: Mapping[Tuple[datetime.date, int], Optional[int]],
) -> int:
    """Apply administrator edits keyed by (date, slot); returns the number of rows written."""
    written = 0
    for (day, slot), person_id in sorted(entries.items(), key=lambda item: (item[0][0], item[0][1])):
        if int(slot) < 1:
            raise ValueError(f"Slot index must start at 1, got {slot}.")
        upsert_assignment(session, day, int(slot), person_id)
        written += 1
    return written


def replace_assignment(
    session,
    date_value: datetime.date,
    slot_index: int,
    replacement_id: Optional[int],
    reason: str = "",
) -> Replacement:
    """Put ``replacement_id`` on a slot and keep a record of who was replaced."""
    existing = get_assignment(session, date_value, slot_index)
    replaced_id = existing.person_id if existing is not None else None
    row = upsert_assignment(session, date_value, slot_index, replacement_id)
    record = Replacement(
        assignment_id=row.id,
        replaced_id=replaced_id,
        replacement_id=replacement_id,
        reason=(reason or "").strip(),
    )
    session.add(record)
    session.commit()
    session.refresh(record)
    return record


def mark_attendance(session, assignment_id: int, person_id: int, status: str, note: str = "") -> Attendance:
    cleaned = (status or "").strip()
    if not cleaned:
        raise ValueError("Attendance status is required.")
    if session.get(Assignment, assignment_id) is None:
        raise LookupError(f"Assignment {assignment_id} was not found.")
    mark = Attendance(assignment_id=assignment_id, person_id=person_id, status=cleaned, note=(note or "").strip())
    session.add(mark)
    session.commit()
    session.refresh(mark)
    return mark


def month_schedule(session, month: str) -> Dict[str, Any]:
    """Every day of the month with its slots resolved to people."""
    year, month_number = parse_month(month)
    start, end = month_bounds(year, month_number)
    settings = load_month_settings(session)
    ledger = AssignmentLedger.load(session, start, end)
    rows = ledger.rows()
    people = people_by_id(session, (row.person_id for row in rows))
    slot_count = max([settings.slots_per_day] + [row.slot_index for row in rows])
    days: List[Dict[str, Any]] = []
    for day in month_days(year, month_number):
        slots = ledger.day_rows(day)
        days.append(
            {
                "date": day.isoformat(),
                "weekday": sunday_weekday(day),
                "working_day": settings.is_working_day(day),
                "slots": [
                    _slot_payload(index, slots.get(index), people)
                    for index in range(1, slot_count + 1)
                ],
            }
        )
    return {
        "month": format_month(year, month_number),
        "slots_per_day": settings.slots_per_day,
        "workdays": sorted(settings.workdays),
        "days": days,
    }


def _slot_payload(index: int, person_id: Optional[int], people: Dict[int, Any]) -> Dict[str, Any]:
    person = people.get(person_id) if person_id is not None else None
    return {
        "slot": index,
        "person_id": person_id,
        "person_name": person.name if person is not None else None,
    }


def parse_assignment_entries(items: Iterable[Mapping[str, Any]]) -> Dict[Tuple[datetime.date, int], Optional[int]]:
    """Turn ``[{date, slot, person_id}]`` payloads into ledger keys."""
    entries: Dict[Tuple[datetime.date, int], Optional[int]] = {}
    for item in items:
        try:
            day = datetime.date.fromisoformat(str(item.get("date")))
            slot = int(item.get("slot"))
        except (TypeError, ValueError) as exc:
            raise ValueError(f"Invalid assignment entry {dict(item)!r}.") from exc
        raw_person = item.get("person_id")
        person_id = int(raw_person) if raw_person not in (None, "") else None
        entries[(day, slot)] = person_id
    return entries
