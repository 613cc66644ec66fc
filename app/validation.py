from __future__ import annotations

import datetime
from collections import Counter, defaultdict
from fractions import Fraction
from typing import Any, Dict, List, Optional

from database import people_by_id
from ledger import AssignmentLedger
from months import WEEKDAY_TOKENS, format_month, month_bounds, month_days, parse_month, sunday_weekday
from roster import ConstraintSnapshot, RosterSnapshot, load_constraint_snapshot, load_roster_snapshot
from settings import MonthSettings, load_month_settings


def validate_month_schedule(session, month: str) -> Dict[str, Any]:
    """Return validation findings for the requested month."""
    year, month_number = parse_month(month)
    start, end = month_bounds(year, month_number)
    settings = load_month_settings(session)
    roster = load_roster_snapshot(session)
    constraints = load_constraint_snapshot(session, start, end)
    ledger = AssignmentLedger.load(session, start, end)
    names = {pid: person.name for pid, person in people_by_id(session, ledger.person_counts()).items()}
    days = month_days(year, month_number)

    issues: List[Dict[str, Any]] = []
    warnings: List[Dict[str, Any]] = []
    issues.extend(_constraint_issues(ledger, constraints, days, names))
    issues.extend(_duplicate_issues(ledger, days, names))
    warnings.extend(_non_working_day_warnings(ledger, settings, days))
    warnings.extend(_adjacent_repeat_warnings(ledger, settings, days, names))
    warnings.extend(_empty_slot_warnings(ledger, settings, days))
    warnings.extend(_fairness_warnings(ledger, roster))
    counts = ledger.person_counts()
    return {
        "month": format_month(year, month_number),
        "checks": _build_validation_checklist(issues, warnings),
        "issues": issues,
        "warnings": warnings,
        "counts": {str(entry.id): counts.get(entry.id, 0) for entry in roster.people},
    }


def _label(person_id: int, names: Dict[int, str]) -> str:
    return names.get(person_id) or f"person #{person_id}"


def _constraint_issues(
    ledger: AssignmentLedger,
    constraints: ConstraintSnapshot,
    days: List[datetime.date],
    names: Dict[int, str],
) -> List[Dict[str, Any]]:
    issues: List[Dict[str, Any]] = []
    for day in days:
        for slot, person_id in sorted(ledger.day_rows(day).items()):
            if person_id is None:
                continue
            if person_id in constraints.exceptions.get(day, ()):
                issues.append(
                    {
                        "type": "exception_violation",
                        "severity": "error",
                        "date": day.isoformat(),
                        "slot": slot,
                        "person_id": person_id,
                        "message": f"{_label(person_id, names)} has an exception on {day.isoformat()}.",
                    }
                )
            weekday = sunday_weekday(day)
            if weekday in constraints.weekday_offs.get(person_id, ()):
                issues.append(
                    {
                        "type": "weekday_off_violation",
                        "severity": "error",
                        "date": day.isoformat(),
                        "slot": slot,
                        "person_id": person_id,
                        "message": f"{_label(person_id, names)} is off on {WEEKDAY_TOKENS[weekday]}.",
                    }
                )
    return issues


def _duplicate_issues(
    ledger: AssignmentLedger,
    days: List[datetime.date],
    names: Dict[int, str],
) -> List[Dict[str, Any]]:
    issues: List[Dict[str, Any]] = []
    for day in days:
        seen = Counter(ledger.filled_people(day))
        for person_id, count in sorted(seen.items()):
            if count > 1:
                issues.append(
                    {
                        "type": "duplicate_person_in_day",
                        "severity": "error",
                        "date": day.isoformat(),
                        "person_id": person_id,
                        "message": f"{_label(person_id, names)} holds {count} slots on {day.isoformat()}.",
                    }
                )
    return issues


def _non_working_day_warnings(
    ledger: AssignmentLedger,
    settings: MonthSettings,
    days: List[datetime.date],
) -> List[Dict[str, Any]]:
    warnings: List[Dict[str, Any]] = []
    for day in days:
        if settings.is_working_day(day) or not ledger.filled_people(day):
            continue
        warnings.append(
            {
                "type": "non_working_day_assignment",
                "severity": "warning",
                "date": day.isoformat(),
                "message": f"{day.isoformat()} is not a working day but has assignments.",
            }
        )
    return warnings


def _adjacent_repeat_warnings(
    ledger: AssignmentLedger,
    settings: MonthSettings,
    days: List[datetime.date],
    names: Dict[int, str],
) -> List[Dict[str, Any]]:
    warnings: List[Dict[str, Any]] = []
    previous: Optional[datetime.date] = None
    for day in days:
        if not settings.is_working_day(day):
            continue
        if previous is not None:
            repeated = set(ledger.filled_people(previous)) & set(ledger.filled_people(day))
            for person_id in sorted(repeated):
                warnings.append(
                    {
                        "type": "adjacent_repeat",
                        "severity": "warning",
                        "date": day.isoformat(),
                        "person_id": person_id,
                        "message": f"{_label(person_id, names)} is on duty {previous.isoformat()} "
                        f"and {day.isoformat()}.",
                    }
                )
        previous = day
    return warnings


def _empty_slot_warnings(
    ledger: AssignmentLedger,
    settings: MonthSettings,
    days: List[datetime.date],
) -> List[Dict[str, Any]]:
    warnings: List[Dict[str, Any]] = []
    for day in days:
        if not settings.is_working_day(day):
            continue
        slots = ledger.day_rows(day)
        for slot in range(1, settings.slots_per_day + 1):
            if slots.get(slot) is None:
                warnings.append(
                    {
                        "type": "empty_slot",
                        "severity": "warning",
                        "date": day.isoformat(),
                        "slot": slot,
                        "message": f"Slot {slot} on {day.isoformat()} has nobody assigned.",
                    }
                )
    return warnings


def _fairness_warnings(ledger: AssignmentLedger, roster: RosterSnapshot) -> List[Dict[str, Any]]:
    if len(roster.people) < 2:
        return []
    counts = ledger.person_counts()
    loads = {entry.id: Fraction(counts.get(entry.id, 0), entry.weight) for entry in roster.people}
    spread = max(loads.values()) - min(loads.values())
    if spread <= 1:
        return []
    return [
        {
            "type": "fairness_spread",
            "severity": "warning",
            "spread": float(spread),
            "message": f"Weighted duty load differs by {float(spread):.2f} between people.",
        }
    ]


def _build_validation_checklist(
    issues: List[Dict[str, Any]],
    warnings: List[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """
    Produce a concise, UI-friendly checklist:
    - `status`: ok|fail
    - `label`: human readable prompt
    - `details`: optional context for failures
    """
    checks: List[Dict[str, Any]] = []
    by_type: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
    for entry in issues + warnings:
        by_type[entry["type"]].append(entry)

    def summarize(items: List[Dict[str, Any]], *, limit: int = 5) -> str:
        parts = [str(entry.get("message") or "").strip() for entry in items[:limit]]
        if len(items) > limit:
            parts.append(f"+{len(items) - limit} more")
        return "; ".join(part for part in parts if part)

    def add_check(label: str, type_name: str) -> None:
        found = by_type.get(type_name, [])
        checks.append(
            {
                "label": label,
                "status": "ok" if not found else "fail",
                "details": summarize(found) if found else "",
            }
        )

    add_check("Date exceptions respected?", "exception_violation")
    add_check("Weekday offs respected?", "weekday_off_violation")
    add_check("One slot per person per day?", "duplicate_person_in_day")
    add_check("Non-working days left free?", "non_working_day_assignment")
    add_check("No back-to-back duty?", "adjacent_repeat")
    add_check("All slots filled?", "empty_slot")
    add_check("Load balanced?", "fairness_spread")
    return checks
