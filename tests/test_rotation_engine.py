from __future__ import annotations

import datetime
import gc
import sys
import threading
from collections import Counter
from pathlib import Path
from typing import Dict, Optional
import unittest
from unittest import mock

from sqlalchemy import create_engine, func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from database import (  # noqa: E402
    Assignment,
    AuditLog,
    Base,
    Person,
    add_date_exception,
    add_person,
    add_weekday_off,
    set_setting,
    upsert_assignment,
)
import database as db  # noqa: E402
from errors import InvalidMonth, NoEligiblePeople, StorageFailure  # noqa: E402
from months import month_days  # noqa: E402
import rotation.api as rotation_api  # noqa: E402
from rotation.api import generate_month_schedule, month_lock  # noqa: E402
from rotation.engine import RotationEngine  # noqa: E402
from settings import MonthSettings  # noqa: E402

SEPTEMBER = "2025-09"


class RotationEngineTests(unittest.TestCase):
    """Regression tests for the month allocation heuristics."""

    def setUp(self) -> None:
        self.engine = create_engine("sqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False, future=True)
        self.session = self.session_factory()
        self.days = month_days(2025, 9)
        self.working_days = [day for day in self.days if day.weekday() < 5]
        self.weekend_days = [day for day in self.days if day.weekday() >= 5]

    def tearDown(self) -> None:
        self.session.close()
        self.engine.dispose()

    def test_fills_every_working_day_and_skips_weekends(self) -> None:
        for name in ("A", "B", "C", "D"):
            self._add_person(name)

        result = self._run()

        self.assertEqual(len(self.working_days), 22)
        self.assertEqual(result["generatedDays"], 22)
        self.assertEqual(result["skippedDays"], 8)
        rows = self._rows()
        for day in self.weekend_days:
            self.assertNotIn(day, rows)
        for day in self.working_days:
            picks = [rows[day][1], rows[day][2]]
            self.assertNotIn(None, picks)
            self.assertEqual(len(set(picks)), 2)

    def test_alternates_pairs_to_avoid_back_to_back_duty(self) -> None:
        a, b, c, d = (self._add_person(name) for name in ("A", "B", "C", "D"))

        self._run()

        rows = self._rows()
        self.assertEqual(self._day_set(rows, datetime.date(2025, 9, 1)), {a.id, b.id})
        self.assertEqual(self._day_set(rows, datetime.date(2025, 9, 2)), {c.id, d.id})
        self.assertEqual(self._day_set(rows, datetime.date(2025, 9, 3)), {a.id, b.id})
        for previous, current in zip(self.working_days, self.working_days[1:]):
            self.assertFalse(self._day_set(rows, previous) & self._day_set(rows, current))
        self.assertEqual(set(self._counts(rows).values()), {11})

    def test_friday_picks_are_avoided_on_monday(self) -> None:
        for name in ("A", "B", "C", "D"):
            self._add_person(name)

        self._run()

        rows = self._rows()
        friday = datetime.date(2025, 9, 5)
        monday = datetime.date(2025, 9, 8)
        self.assertFalse(self._day_set(rows, friday) & self._day_set(rows, monday))

    def test_uniform_weights_keep_counts_within_one(self) -> None:
        for name in ("A", "B", "C", "D", "E"):
            self._add_person(name)

        self._run()

        counts = self._counts(self._rows())
        self.assertEqual(sum(counts.values()), 44)
        self.assertEqual(len(counts), 5)
        self.assertLessEqual(max(counts.values()) - min(counts.values()), 1)

    def test_heavier_weight_is_picked_more_often(self) -> None:
        a = self._add_person("A", weight=1)
        b = self._add_person("B", weight=1)
        c = self._add_person("C", weight=2)

        self._run(settings=MonthSettings(slots_per_day=1))

        rows = self._rows()
        counts = self._counts(rows)
        self.assertEqual(counts[a.id], 6)
        self.assertEqual(counts[b.id], 6)
        self.assertEqual(counts[c.id], 10)
        for previous, current in zip(self.working_days, self.working_days[1:]):
            self.assertNotEqual(rows[previous][1], rows[current][1])

    def test_first_week_with_weights_never_repeats(self) -> None:
        a = self._add_person("A", weight=1)
        b = self._add_person("B", weight=1)
        c = self._add_person("C", weight=2)

        self._run(settings=MonthSettings(slots_per_day=1))

        rows = self._rows()
        first_week = [rows[datetime.date(2025, 9, day)][1] for day in range(1, 6)]
        self.assertEqual(first_week, [a.id, b.id, c.id, a.id, c.id])

    def test_date_exception_is_respected(self) -> None:
        a = self._add_person("A")
        b = self._add_person("B")
        blocked = datetime.date(2025, 9, 3)
        add_date_exception(self.session, a.id, blocked, "dentist")

        self._run(settings=MonthSettings(slots_per_day=1))

        rows = self._rows()
        self.assertEqual(rows[blocked], {1: b.id})
        self.assertEqual(rows[datetime.date(2025, 9, 4)], {1: a.id})

    def test_date_exception_holds_with_prior_rows_on_other_days(self) -> None:
        a = self._add_person("A")
        b = self._add_person("B")
        c = self._add_person("C")
        blocked = datetime.date(2025, 9, 3)
        add_date_exception(self.session, a.id, blocked, "")
        upsert_assignment(self.session, datetime.date(2025, 9, 2), 1, b.id)
        upsert_assignment(self.session, datetime.date(2025, 9, 2), 2, c.id)

        self._run()

        self.assertNotIn(a.id, self._rows()[blocked].values())

    def test_weekday_off_is_respected(self) -> None:
        self._add_person("A")
        b = self._add_person("B")
        self._add_person("C")
        add_weekday_off(self.session, b.id, 1)  # Monday

        self._run()

        rows = self._rows()
        mondays = [day for day in self.working_days if day.weekday() == 0]
        self.assertTrue(mondays)
        for day in mondays:
            self.assertNotIn(b.id, rows[day].values())
        self.assertIn(b.id, self._counts(rows))

    def test_inactive_people_are_not_scheduled(self) -> None:
        a = self._add_person("A")
        b = self._add_person("B")
        retired = self._add_person("Retired", active=False)

        self._run()

        counts = self._counts(self._rows())
        self.assertNotIn(retired.id, counts)
        self.assertEqual(set(counts), {a.id, b.id})

    def test_preserves_manual_rows_without_overwrite(self) -> None:
        a, b, c, d = (self._add_person(name) for name in ("A", "B", "C", "D"))
        manual_day = datetime.date(2025, 9, 2)
        upsert_assignment(self.session, manual_day, 1, c.id)
        upsert_assignment(self.session, manual_day, 2, None)

        result = self._run()

        rows = self._rows()
        self.assertEqual(rows[manual_day], {1: c.id, 2: None})
        self.assertEqual(result["preservedDays"], 1)
        self.assertEqual(result["generatedDays"], 21)
        # Seeded count pushes C behind the others on the first day.
        self.assertEqual(self._day_set(rows, datetime.date(2025, 9, 1)), {a.id, b.id})
        # The kept day still drives the anti-repeat rule for the next day.
        self.assertEqual(self._day_set(rows, datetime.date(2025, 9, 3)), {d.id, a.id})

    def test_day_with_only_empty_rows_is_regenerated(self) -> None:
        a = self._add_person("A")
        b = self._add_person("B")
        day = datetime.date(2025, 9, 1)
        upsert_assignment(self.session, day, 1, None)
        upsert_assignment(self.session, day, 2, None)

        result = self._run()

        self.assertEqual(result["generatedDays"], 22)
        self.assertEqual(self._day_set(self._rows(), day), {a.id, b.id})

    def test_second_run_is_idempotent(self) -> None:
        for name in ("A", "B", "C"):
            self._add_person(name)
        add_date_exception(self.session, 1, datetime.date(2025, 9, 10), "")

        self._run()
        first = self._rows()
        second_result = self._run()

        self.assertEqual(self._rows(), first)
        self.assertEqual(second_result["generatedDays"], 0)
        self.assertEqual(second_result["preservedDays"], 22)
        self.assertEqual(second_result["writes"], 0)

    def test_overwrite_replaces_manually_filled_month(self) -> None:
        a, b, c, d = (self._add_person(name) for name in ("A", "B", "C", "D"))
        for day in self.working_days:
            upsert_assignment(self.session, day, 1, a.id)
            upsert_assignment(self.session, day, 2, b.id)

        result = self._run(overwrite=True)

        rows = self._rows()
        self.assertEqual(result["generatedDays"], 22)
        self.assertEqual(self._day_set(rows, datetime.date(2025, 9, 1)), {a.id, b.id})
        self.assertEqual(self._day_set(rows, datetime.date(2025, 9, 2)), {c.id, d.id})
        self.assertEqual(set(self._counts(rows).values()), {11})
        for day in self.weekend_days:
            self.assertNotIn(day, rows)

    def test_overwrite_ignores_rows_it_is_replacing(self) -> None:
        a, b, c, d = (self._add_person(name) for name in ("A", "B", "C", "D"))
        for day in self.working_days:
            upsert_assignment(self.session, day, 1, a.id)

        self._run(overwrite=True, settings=MonthSettings(slots_per_day=1))

        rows = self._rows()
        counts = self._counts(rows)
        first_week = [rows[datetime.date(2025, 9, day)][1] for day in range(1, 5)]
        self.assertEqual(first_week, [a.id, b.id, c.id, d.id])
        self.assertLessEqual(max(counts.values()) - min(counts.values()), 1, dict(counts))
        self.assertEqual(counts[a.id], 6)

    def test_overwrite_still_counts_weekend_rows(self) -> None:
        a = self._add_person("A")
        b = self._add_person("B")
        upsert_assignment(self.session, datetime.date(2025, 9, 6), 1, a.id)
        upsert_assignment(self.session, datetime.date(2025, 9, 1), 1, a.id)

        self._run(overwrite=True, settings=MonthSettings(slots_per_day=1))

        self.assertEqual(self._rows()[datetime.date(2025, 9, 1)], {1: b.id})

    def test_overwrite_keeps_weekend_rows(self) -> None:
        a = self._add_person("A")
        self._add_person("B")
        saturday = datetime.date(2025, 9, 6)
        upsert_assignment(self.session, saturday, 1, a.id)

        self._run(overwrite=True)

        self.assertEqual(self._rows()[saturday], {1: a.id})

    def test_overwrite_clears_slots_beyond_slots_per_day(self) -> None:
        a = self._add_person("A")
        self._add_person("B")
        self._add_person("C")
        day = datetime.date(2025, 9, 1)
        upsert_assignment(self.session, day, 3, a.id)

        self._run(overwrite=True)

        rows = self._rows()
        self.assertIsNone(rows[day][3])
        self.assertEqual(len([pid for pid in rows[day].values() if pid is not None]), 2)

    def test_fewer_candidates_than_slots_leaves_slots_empty(self) -> None:
        a = self._add_person("A")

        result = self._run()

        rows = self._rows()
        self.assertEqual(result["generatedDays"], 22)
        for day in self.working_days:
            self.assertEqual(rows[day], {1: a.id, 2: None})

    def test_day_without_candidates_is_written_empty(self) -> None:
        a = self._add_person("A")
        blocked = datetime.date(2025, 9, 3)
        add_date_exception(self.session, a.id, blocked, "")

        result = self._run()

        rows = self._rows()
        self.assertEqual(rows[blocked], {1: None, 2: None})
        self.assertEqual(result["generatedDays"], 21)
        self.assertEqual(result["emptyDays"], 1)
        self.assertEqual(rows[datetime.date(2025, 9, 4)][1], a.id)

    def test_slots_per_day_setting_is_read_from_store(self) -> None:
        for name in ("A", "B", "C", "D"):
            self._add_person(name)
        set_setting(self.session, "slots_per_day", "3")

        result = self._run()

        rows = self._rows()
        self.assertEqual(result["slotsPerDay"], 3)
        self.assertEqual(len(rows[datetime.date(2025, 9, 1)]), 3)
        self.assertEqual(len(set(rows[datetime.date(2025, 9, 1)].values())), 3)

    def test_workdays_setting_controls_skipped_days(self) -> None:
        for name in ("A", "B", "C"):
            self._add_person(name)
        set_setting(self.session, "workdays", "1,2,3,4,5,6")

        result = self._run()

        saturdays = [day for day in self.days if day.weekday() == 5]
        rows = self._rows()
        self.assertEqual(result["generatedDays"], 22 + len(saturdays))
        for day in saturdays:
            self.assertIn(day, rows)
        self.assertNotIn(datetime.date(2025, 9, 7), rows)

    def test_empty_roster_fails_before_writing(self) -> None:
        self._add_person("Retired", active=False)

        with self.assertRaises(NoEligiblePeople):
            self._run()

        self.assertEqual(self._rows(), {})

    def test_rejects_malformed_month(self) -> None:
        self._add_person("A")
        engine = RotationEngine(self.session)
        for value in ("2025-13", "2025/09", "", "25-09", "2025-9"):
            with self.assertRaises(InvalidMonth):
                engine.generate_month(value)
        self.assertEqual(self._rows(), {})

    def test_storage_failure_keeps_committed_days(self) -> None:
        for name in ("A", "B", "C", "D"):
            self._add_person(name)
        calls = {"count": 0}
        real_upsert = db.upsert_assignment

        def flaky_upsert(session, date_value, slot_index, person_id):
            calls["count"] += 1
            if calls["count"] > 4:
                raise OperationalError("INSERT INTO assignments", {}, Exception("disk I/O error"))
            return real_upsert(session, date_value, slot_index, person_id)

        with mock.patch("ledger.upsert_assignment", side_effect=flaky_upsert):
            with self.assertRaises(StorageFailure):
                self._run()

        rows = self._rows()
        self.assertEqual(sorted(rows), [datetime.date(2025, 9, 1), datetime.date(2025, 9, 2)])

    def test_generation_is_audited(self) -> None:
        self._add_person("A")

        generate_month_schedule(self.session_factory, SEPTEMBER, actor="admin")

        log = self.session.scalars(select(AuditLog).where(AuditLog.action == "schedule.generate")).one()
        self.assertEqual(log.user_id, "admin")
        self.assertEqual(log.payload_dict()["generatedDays"], 22)

    def test_month_lock_is_shared_per_month(self) -> None:
        self.assertIs(month_lock("2025-09"), month_lock("2025-09"))
        self.assertIsNot(month_lock("2025-09"), month_lock("2025-10"))

    def test_month_lock_registry_drops_unused_locks(self) -> None:
        lock = month_lock("2030-01")
        self.assertIn("2030-01", rotation_api._MONTH_LOCKS)
        del lock
        gc.collect()
        self.assertNotIn("2030-01", rotation_api._MONTH_LOCKS)

    def test_generation_waits_for_month_lock(self) -> None:
        shared_engine = create_engine(
            "sqlite://",
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        Base.metadata.create_all(shared_engine)
        factory = sessionmaker(bind=shared_engine, expire_on_commit=False, future=True)
        with factory() as session:
            add_person(session, "A")
            add_person(session, "B")
        results: Dict = {}

        def worker() -> None:
            results.update(generate_month_schedule(factory, "2031-03", actor="worker"))

        lock = month_lock("2031-03")
        lock.acquire()
        try:
            thread = threading.Thread(target=worker)
            thread.start()
            thread.join(timeout=0.3)
            self.assertTrue(thread.is_alive())
            with factory() as session:
                self.assertEqual(session.scalar(select(func.count()).select_from(Assignment)), 0)
        finally:
            lock.release()
        thread.join(timeout=10)

        self.assertFalse(thread.is_alive())
        self.assertEqual(results["generatedDays"], 21)
        with factory() as session:
            self.assertGreater(session.scalar(select(func.count()).select_from(Assignment)), 0)
        shared_engine.dispose()

    # Helpers

    def _add_person(self, name: str, *, weight: int = 1, active: bool = True) -> Person:
        person = Person(name=name, weight=weight, active=active, notes="")
        self.session.add(person)
        self.session.commit()
        self.session.refresh(person)
        return person

    def _run(self, *, overwrite: bool = False, settings: Optional[MonthSettings] = None) -> Dict:
        engine = RotationEngine(self.session, settings=settings, actor="tests")
        return engine.generate_month(SEPTEMBER, overwrite=overwrite)

    def _rows(self) -> Dict[datetime.date, Dict[int, Optional[int]]]:
        self.session.expire_all()
        rows: Dict[datetime.date, Dict[int, Optional[int]]] = {}
        for row in self.session.scalars(select(Assignment)):
            rows.setdefault(row.date, {})[row.slot_index] = row.person_id
        return rows

    @staticmethod
    def _day_set(rows: Dict[datetime.date, Dict[int, Optional[int]]], day: datetime.date) -> set:
        return {pid for pid in rows.get(day, {}).values() if pid is not None}

    @staticmethod
    def _counts(rows: Dict[datetime.date, Dict[int, Optional[int]]]) -> Counter:
        counts: Counter = Counter()
        for slots in rows.values():
            for pid in slots.values():
                if pid is not None:
                    counts[pid] += 1
        return counts


if __name__ == "__main__":
    unittest.main()
