from __future__ import annotations

import datetime
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from sqlalchemy import select

from database import DateException, Person, WeekdayOff
from months import sunday_weekday


@dataclass(frozen=True)
class RosterEntry:
    id: int
    weight: int = 1
    name: str = ""


@dataclass
class RosterSnapshot:
    """Active people ordered by id."""

    people: List[RosterEntry] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.people)


@dataclass
class ConstraintSnapshot:
    exceptions: Dict[datetime.date, Set[int]] = field(default_factory=dict)
    weekday_offs: Dict[int, Set[int]] = field(default_factory=dict)

    def is_available(self, person_id: int, day: datetime.date) -> bool:
        if person_id in self.exceptions.get(day, ()):
            return False
        return sunday_weekday(day) not in self.weekday_offs.get(person_id, ())


def load_roster_snapshot(session) -> RosterSnapshot:
    stmt = select(Person).where(Person.active.is_(True)).order_by(Person.id.asc())
    people = [
        RosterEntry(id=person.id, weight=max(1, int(person.weight or 1)), name=person.name)
        for person in session.scalars(stmt)
    ]
    return RosterSnapshot(people=people)


def load_constraint_snapshot(
    session,
    start: Optional[datetime.date] = None,
    end: Optional[datetime.date] = None,
) -> ConstraintSnapshot:
    exceptions: Dict[datetime.date, Set[int]] = defaultdict(set)
    stmt = select(DateException.person_id, DateException.date)
    if start is not None:
        stmt = stmt.where(DateException.date >= start)
    if end is not None:
        stmt = stmt.where(DateException.date <= end)
    for person_id, date_value in session.execute(stmt):
        exceptions[date_value].add(person_id)

    weekday_offs: Dict[int, Set[int]] = defaultdict(set)
    for person_id, weekday in session.execute(select(WeekdayOff.person_id, WeekdayOff.weekday)):
        weekday_offs[person_id].add(int(weekday))
    return ConstraintSnapshot(exceptions=dict(exceptions), weekday_offs=dict(weekday_offs))
