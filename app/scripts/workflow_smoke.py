from __future__ import annotations

import argparse
import datetime
import sys
from pathlib import Path
from typing import Dict, List

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from database import SessionLocal, init_database  # noqa: E402
from errors import RotationError  # noqa: E402
from ledger import month_schedule  # noqa: E402
from logging_config import setup_logging  # noqa: E402
from months import current_month, parse_month  # noqa: E402
from rotation.api import generate_month_schedule  # noqa: E402
from scripts.seed_people import seed_people  # noqa: E402
from settings import ensure_default_settings  # noqa: E402
from validation import validate_month_schedule  # noqa: E402


def _print_schedule(schedule: Dict[str, object]) -> None:
    for day in schedule["days"]:
        if not day["working_day"]:
            continue
        names: List[str] = [slot["person_name"] or "-" for slot in day["slots"]]
        print(f"[workflow] {day['date']}: {', '.join(names)}")


def run_workflow(month: str, actor: str, overwrite: bool) -> None:
    ensure_default_settings(SessionLocal)
    year, month_number = parse_month(month)
    with SessionLocal() as session:
        seed_people(session, datetime.date(year, month_number, 1))

    try:
        result = generate_month_schedule(SessionLocal, month, overwrite=overwrite, actor=actor)
    except RotationError as exc:
        raise SystemExit(f"[workflow][error] {exc}") from exc
    print(
        f"[workflow] Generated {result['generatedDays']} day(s) for {month} "
        f"(preserved {result['preservedDays']}, empty {result['emptyDays']})."
    )

    with SessionLocal() as session:
        _print_schedule(month_schedule(session, month))
        report = validate_month_schedule(session, month)
    for issue in report["issues"]:
        print(f"[workflow][validation-error] {issue['message']}")
    for warning in report["warnings"]:
        print(f"[workflow][warning] {warning['message']}")
    if report["issues"]:
        raise SystemExit(1)
    print("[workflow] Validation passed.")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Run an end-to-end smoke test that seeds a demo roster, generates a month, "
            "prints the schedule and validates it."
        )
    )
    parser.add_argument("--month", help="Target month (YYYY-MM). Defaults to the current month.")
    parser.add_argument("--overwrite", action="store_true", help="Recompute days that already have assignments.")
    parser.add_argument("--actor", default="workflow_smoke", help="Audit trail actor name.")
    return parser.parse_args()


def main() -> None:
    setup_logging()
    init_database()
    args = parse_args()
    month = args.month or current_month()
    print(f"[workflow] Target month: {month}")
    run_workflow(month, actor=args.actor, overwrite=args.overwrite)


if __name__ == "__main__":
    main()
