from __future__ import annotations

import argparse
import datetime
import sys
from pathlib import Path
from typing import Dict, List, Tuple

from sqlalchemy import select

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from database import (  # noqa: E402
    Person,
    SessionLocal,
    add_date_exception,
    add_person,
    add_weekday_off,
    init_database,
)
from settings import ensure_default_settings  # noqa: E402


DAY_INDEX = {
    "Sun": 0,
    "Mon": 1,
    "Tue": 2,
    "Wed": 3,
    "Thu": 4,
    "Fri": 5,
    "Sat": 6,
}

# name, weight, weekday offs, date exceptions (day of month in the seeded month)
DEMO_PEOPLE: List[Tuple[str, int, List[str], List[int]]] = [
    ("Anna Petrova", 1, [], [3]),
    ("Boris Ivanov", 1, ["Mon"], []),
    ("Clara Smirnova", 2, [], []),
    ("Dmitri Volkov", 1, ["Fri"], [10, 11]),
    ("Elena Sokolova", 1, [], []),
    ("Fyodor Morozov", 1, ["Wed"], [24]),
]


def seed_people(session, month_start: datetime.date) -> Dict[str, int]:
    """Insert the demo roster once; returns name -> id for every demo person."""
    existing = {person.name: person.id for person in session.scalars(select(Person))}
    seeded: Dict[str, int] = {}
    for name, weight, offs, exception_days in DEMO_PEOPLE:
        if name in existing:
            seeded[name] = existing[name]
            continue
        person = add_person(session, name, weight=weight, notes="demo")
        for token in offs:
            add_weekday_off(session, person.id, DAY_INDEX[token])
        for day in exception_days:
            add_date_exception(session, person.id, month_start.replace(day=day), reason="demo exception")
        seeded[name] = person.id
    return seeded


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed a demo duty roster with weights, weekday offs and exceptions.")
    parser.add_argument(
        "--month",
        help="Month (YYYY-MM) the demo exceptions fall into. Defaults to the current month.",
    )
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    init_database()
    ensure_default_settings(SessionLocal)
    today = datetime.date.today()
    if args.month:
        try:
            month_start = datetime.date.fromisoformat(f"{args.month}-01")
        except ValueError as exc:
            raise SystemExit(f"Invalid --month value: {exc}") from exc
    else:
        month_start = today.replace(day=1)
    with SessionLocal() as session:
        seeded = seed_people(session, month_start)
    print(f"[seed] Roster has {len(seeded)} demo people.")


if __name__ == "__main__":
    main()
