from __future__ import annotations

import datetime
import logging
from collections import Counter
from dataclasses import dataclass, field
from fractions import Fraction
from typing import Any, Dict, List, Optional, Set

from database import record_audit_log
from errors import NoEligiblePeople, storage_guard
from ledger import AssignmentLedger
from months import format_month, month_bounds, month_days, parse_month
from roster import ConstraintSnapshot, RosterEntry, load_constraint_snapshot, load_roster_snapshot
from settings import MonthSettings, load_month_settings

logger = logging.getLogger("duty.rotation")


@dataclass
class GenerationRun:
    """Call-scoped fairness and recency state; never persisted."""

    counts: Counter = field(default_factory=Counter)
    recent: Set[int] = field(default_factory=set)
    generated_days: int = 0
    preserved_days: int = 0
    empty_days: int = 0
    skipped_days: int = 0

    def load(self, entry: RosterEntry) -> Fraction:
        return Fraction(self.counts.get(entry.id, 0), entry.weight)

    def take(self, person_id: int) -> None:
        self.counts[person_id] += 1


class RotationEngine:
    """Greedy month allocator.

    Working days are filled in date order. Each slot goes to the eligible person
    with the lowest weighted load (assigned slots divided by weight, ties by id)
    who was not on duty the previous working day; that restriction is dropped
    when nobody else is left. Days that already hold picks are kept unless
    ``overwrite`` is set.
    """

    def __init__(
        self,
        session,
        *,
        settings: Optional[MonthSettings] = None,
        actor: str = "system",
    ) -> None:
        self.session = session
        self.settings = settings
        self.actor = actor or "system"

    def generate_month(self, month: str, overwrite: bool = False) -> Dict[str, Any]:
        year, month_number = parse_month(month)
        month_key = format_month(year, month_number)
        start, end = month_bounds(year, month_number)

        with storage_guard("Loading roster"):
            settings = self.settings or load_month_settings(self.session)
            roster = load_roster_snapshot(self.session)
        if not roster:
            raise NoEligiblePeople(f"No active people to schedule for {month_key}.")
        with storage_guard("Loading constraints"):
            constraints = load_constraint_snapshot(self.session, start, end)
        ledger = AssignmentLedger.load(self.session, start, end)

        if overwrite:
            # Working-day rows are about to be recomputed; only kept rows count.
            counts = ledger.person_counts(lambda day: not settings.is_working_day(day))
        else:
            counts = ledger.person_counts()
        run = GenerationRun(counts=counts)
        logger.info(
            "Generating %s (overwrite=%s, slots_per_day=%d, people=%d)",
            month_key,
            overwrite,
            settings.slots_per_day,
            len(roster.people),
        )
        for day in month_days(year, month_number):
            self._process_day(day, roster.people, constraints, ledger, run, settings, overwrite)

        summary = {
            "month": month_key,
            "overwrite": bool(overwrite),
            "generatedDays": run.generated_days,
            "preservedDays": run.preserved_days,
            "emptyDays": run.empty_days,
            "skippedDays": run.skipped_days,
            "slotsPerDay": settings.slots_per_day,
            "writes": ledger.writes,
        }
        logger.info(
            "Generated %d day(s) for %s; preserved=%d empty=%d writes=%d",
            run.generated_days,
            month_key,
            run.preserved_days,
            run.empty_days,
            ledger.writes,
        )
        with storage_guard("Recording audit log"):
            record_audit_log(
                self.session,
                self.actor,
                "schedule.generate",
                target_type="Month",
                payload=summary,
            )
        return summary

    def _process_day(
        self,
        day: datetime.date,
        people: List[RosterEntry],
        constraints: ConstraintSnapshot,
        ledger: AssignmentLedger,
        run: GenerationRun,
        settings: MonthSettings,
        overwrite: bool,
    ) -> None:
        if not settings.is_working_day(day):
            run.skipped_days += 1
            return

        filled = ledger.filled_people(day)
        if filled and not overwrite:
            run.recent = set(filled)
            run.preserved_days += 1
            logger.debug("Keeping %s as recorded: %s", day.isoformat(), filled)
            return

        candidates = [entry for entry in people if constraints.is_available(entry.id, day)]
        if candidates:
            picks = self._pick(candidates, run, settings.slots_per_day)
            run.generated_days += 1
        else:
            picks = [None] * settings.slots_per_day
            run.empty_days += 1
            logger.warning("Nobody is available on %s; writing empty slots.", day.isoformat())

        for index, person_id in enumerate(picks, start=1):
            ledger.upsert(day, index, person_id)
        for index, person_id in ledger.day_rows(day).items():
            if index > settings.slots_per_day and person_id is not None:
                ledger.upsert(day, index, None)
        run.recent = {person_id for person_id in picks if person_id is not None}

    @staticmethod
    def _pick(candidates: List[RosterEntry], run: GenerationRun, slots: int) -> List[Optional[int]]:
        ranked = sorted(candidates, key=lambda entry: (run.load(entry), entry.id))
        picks: List[Optional[int]] = []
        taken: Set[int] = set()
        for _ in range(slots):
            choice = next(
                (entry.id for entry in ranked if entry.id not in taken and entry.id not in run.recent),
                None,
            )
            if choice is None:
                choice = next((entry.id for entry in ranked if entry.id not in taken), None)
            picks.append(choice)
            if choice is not None:
                taken.add(choice)
                run.take(choice)
        return picks
