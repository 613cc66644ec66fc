"""FastAPI wrapper around the duty rotation database and month generator.

Authentication, permissions and HTML rendering live in front of this service;
every endpoint accepts an optional ``actor`` used for the audit trail.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import datetime
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

# Ensure absolute imports (e.g., "import database") resolve when served from the repo root.
APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import database  # noqa: E402
from database import (  # noqa: E402
    add_date_exception,
    add_person,
    add_weekday_off,
    delete_date_exception,
    delete_person,
    delete_weekday_off,
    edit_person,
    init_database,
    list_audit_logs,
    list_date_exceptions,
    list_people,
    list_weekday_offs,
    record_audit_log,
    toggle_person,
)
from errors import InvalidMonth, NoEligiblePeople, StorageFailure  # noqa: E402
from ledger import (  # noqa: E402
    mark_attendance,
    month_schedule,
    parse_assignment_entries,
    replace_assignment,
    save_manual_assignments,
)
from logging_config import get_logger, setup_logging  # noqa: E402
from months import current_month, format_month, month_bounds, parse_month  # noqa: E402
from rotation.api import generate_month_schedule  # noqa: E402
from settings import ensure_default_settings, load_month_settings, save_settings  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402
from validation import validate_month_schedule  # noqa: E402

logger = get_logger("duty.api")


@asynccontextmanager
async def lifespan(_: FastAPI):
    setup_logging()
    init_database()
    ensure_default_settings(database.SessionLocal)
    yield


app = FastAPI(title="Duty Rotation API", version="0.1", lifespan=lifespan)


def get_db():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory():
    return database.SessionLocal


def _parse_month(value: str) -> str:
    try:
        return format_month(*parse_month(value))
    except InvalidMonth as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _parse_date(value: Any, field: str = "date") -> datetime.date:
    try:
        return datetime.date.fromisoformat(str(value))
    except ValueError:
        raise HTTPException(status_code=400, detail=f"{field} must be YYYY-MM-DD")


def _actor(payload: Optional[Dict[str, Any]]) -> str:
    return str((payload or {}).get("actor") or "api").strip() or "api"


def _audit(db: Session, actor: str, action: str, target: Optional[int] = None, payload: Optional[Dict[str, Any]] = None) -> None:
    record_audit_log(db, user_id=actor, action=action, target_type="API", target_id=target, payload=payload)


def _person_payload(person) -> Dict[str, Any]:
    return {
        "id": person.id,
        "name": person.name,
        "notes": person.notes,
        "weight": person.weight,
        "active": bool(person.active),
    }


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.post("/api/v1/schedules/generate")
def generate_schedule(payload: Optional[Dict[str, Any]] = None, session_factory=Depends(get_session_factory)) -> JSONResponse:
    payload = payload or {}
    # Accept a full date as well as YYYY-MM.
    month = _parse_month(str(payload.get("ym") or current_month())[:7])
    overwrite = bool(payload.get("overwrite"))
    try:
        result = generate_month_schedule(session_factory, month, overwrite=overwrite, actor=_actor(payload))
    except NoEligiblePeople as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except StorageFailure as exc:
        logger.exception("Generation of %s failed", month)
        raise HTTPException(status_code=500, detail=f"schedule generation failed: {exc}") from exc
    result.update({"ok": True, "message": f"Generated days: {result['generatedDays']}"})
    return JSONResponse(content=jsonable_encoder(result))


@app.get("/api/v1/months/{ym}/schedule")
def get_month_schedule(ym: str, db=Depends(get_db)) -> JSONResponse:
    return JSONResponse(content=jsonable_encoder(month_schedule(db, _parse_month(ym))))


@app.get("/api/v1/months/{ym}/validate")
def validate_month_endpoint(ym: str, db=Depends(get_db)) -> JSONResponse:
    return JSONResponse(content=jsonable_encoder(validate_month_schedule(db, _parse_month(ym))))


@app.post("/api/v1/months/{ym}/assignments")
def save_month_assignments(ym: str, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    month = _parse_month(ym)
    start, end = month_bounds(*parse_month(month))
    try:
        entries = parse_assignment_entries(payload.get("assignments") or [])
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    outside = [day.isoformat() for day, _ in entries if not start <= day <= end]
    if outside:
        raise HTTPException(status_code=400, detail=f"Dates outside {month}: {', '.join(sorted(outside))}")
    try:
        written = save_manual_assignments(db, entries)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    _audit(db, _actor(payload), "schedule.save", payload={"ym": month, "rows": written})
    return JSONResponse(content=jsonable_encoder({"ym": month, "written": written}))


@app.post("/api/v1/assignments/replace")
def replace_assignment_endpoint(payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    date_value = _parse_date(payload.get("date"))
    raw_replacement = payload.get("replacement_id")
    try:
        slot = int(payload.get("slot"))
        replacement_id = int(raw_replacement) if raw_replacement not in (None, "") else None
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="slot and replacement_id must be integers")
    try:
        record = replace_assignment(db, date_value, slot, replacement_id, payload.get("reason") or "")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    _audit(
        db,
        _actor(payload),
        "schedule.replace",
        target=record.assignment_id,
        payload={"date": date_value.isoformat(), "slot": slot, "from": record.replaced_id, "to": replacement_id},
    )
    return JSONResponse(
        content=jsonable_encoder(
            {
                "assignment_id": record.assignment_id,
                "replaced_id": record.replaced_id,
                "replacement_id": record.replacement_id,
                "reason": record.reason,
            }
        )
    )


@app.post("/api/v1/attendance")
def attendance_endpoint(payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    assignment_id = payload.get("assignment_id")
    person_id = payload.get("person_id")
    status = payload.get("status")
    if not assignment_id or not person_id or not status:
        raise HTTPException(status_code=400, detail="assignment_id, person_id and status are required")
    try:
        mark = mark_attendance(db, int(assignment_id), int(person_id), str(status), payload.get("note") or "")
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    _audit(
        db,
        _actor(payload),
        "attendance.mark",
        target=mark.assignment_id,
        payload={"person_id": mark.person_id, "status": mark.status},
    )
    return JSONResponse(content={"ok": True, "id": mark.id})


@app.get("/api/v1/people")
def people_index(active: bool = Query(False), db=Depends(get_db)) -> JSONResponse:
    return JSONResponse(content=jsonable_encoder({"people": list_people(db, only_active=active)}))


@app.post("/api/v1/people")
def people_add(payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    try:
        person = add_person(db, payload.get("name") or "", payload.get("weight", 1), payload.get("notes") or "")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    _audit(db, _actor(payload), "people.add", target=person.id, payload={"name": person.name})
    return JSONResponse(status_code=201, content=jsonable_encoder(_person_payload(person)))


@app.put("/api/v1/people/{person_id}")
def people_edit(person_id: int, payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    try:
        person = edit_person(db, person_id, payload.get("name") or "", payload.get("weight", 1))
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    _audit(db, _actor(payload), "people.edit", target=person.id, payload={"name": person.name, "weight": person.weight})
    return JSONResponse(content=jsonable_encoder(_person_payload(person)))


@app.post("/api/v1/people/{person_id}/toggle")
def people_toggle(person_id: int, payload: Optional[Dict[str, Any]] = None, db=Depends(get_db)) -> JSONResponse:
    try:
        person = toggle_person(db, person_id)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    _audit(db, _actor(payload), "people.toggle", target=person.id, payload={"active": bool(person.active)})
    return JSONResponse(content=jsonable_encoder(_person_payload(person)))


@app.delete("/api/v1/people/{person_id}")
def people_delete(person_id: int, actor: str = Query("api"), db=Depends(get_db)) -> JSONResponse:
    delete_person(db, person_id)
    _audit(db, actor or "api", "people.delete", target=person_id)
    return JSONResponse(content={"ok": True})


@app.get("/api/v1/exceptions")
def exceptions_index(ym: Optional[str] = Query(None), db=Depends(get_db)) -> JSONResponse:
    start = end = None
    if ym:
        start, end = month_bounds(*parse_month(_parse_month(ym)))
    return JSONResponse(content=jsonable_encoder({"exceptions": list_date_exceptions(db, start, end)}))


@app.post("/api/v1/exceptions")
def exceptions_add(payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    date_value = _parse_date(payload.get("date"))
    try:
        person_id = int(payload.get("person_id"))
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="person_id must be an integer")
    try:
        exception = add_date_exception(db, person_id, date_value, payload.get("reason") or "")
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    _audit(db, _actor(payload), "exceptions.add", target=exception.id, payload={"person_id": person_id, "date": date_value.isoformat()})
    return JSONResponse(
        status_code=201,
        content=jsonable_encoder(
            {"id": exception.id, "person_id": person_id, "date": exception.date, "reason": exception.reason}
        ),
    )


@app.delete("/api/v1/exceptions/{exception_id}")
def exceptions_delete(exception_id: int, actor: str = Query("api"), db=Depends(get_db)) -> JSONResponse:
    delete_date_exception(db, exception_id)
    _audit(db, actor or "api", "exceptions.delete", target=exception_id)
    return JSONResponse(content={"ok": True})


@app.get("/api/v1/weekday-offs")
def weekday_offs_index(db=Depends(get_db)) -> JSONResponse:
    return JSONResponse(content=jsonable_encoder({"weekday_offs": list_weekday_offs(db)}))


@app.post("/api/v1/weekday-offs")
def weekday_offs_add(payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    try:
        person_id = int(payload.get("person_id"))
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail="person_id must be an integer")
    try:
        rule = add_weekday_off(db, person_id, payload.get("weekday"))
    except LookupError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    _audit(db, _actor(payload), "weekday.add", target=rule.id, payload={"person_id": person_id, "weekday": rule.weekday})
    return JSONResponse(status_code=201, content={"id": rule.id, "person_id": rule.person_id, "weekday": rule.weekday})


@app.delete("/api/v1/weekday-offs/{rule_id}")
def weekday_offs_delete(rule_id: int, actor: str = Query("api"), db=Depends(get_db)) -> JSONResponse:
    delete_weekday_off(db, rule_id)
    _audit(db, actor or "api", "weekday.delete", target=rule_id)
    return JSONResponse(content={"ok": True})


@app.get("/api/v1/settings")
def settings_show(db=Depends(get_db)) -> JSONResponse:
    return JSONResponse(content=jsonable_encoder(load_month_settings(db).as_dict()))


@app.put("/api/v1/settings")
def settings_update(payload: Dict[str, Any], db=Depends(get_db)) -> JSONResponse:
    try:
        settings = save_settings(
            db,
            slots_per_day=payload.get("slots_per_day"),
            workdays=payload.get("workdays"),
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    _audit(db, _actor(payload), "settings.update", payload=settings.as_dict())
    return JSONResponse(content=jsonable_encoder(settings.as_dict()))


@app.get("/api/v1/logs")
def logs_index(limit: int = Query(200, ge=1, le=1000), db=Depends(get_db)) -> JSONResponse:
    return JSONResponse(content=jsonable_encoder({"logs": list_audit_logs(db, limit=limit)}))
