from __future__ import annotations

import datetime
import json
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    delete,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship, sessionmaker


DATA_DIR = Path(__file__).resolve().parent / "data"
DATA_DIR.mkdir(parents=True, exist_ok=True)
DATABASE_URL = os.environ.get("DUTY_DATABASE_URL") or f"sqlite:///{(DATA_DIR / 'duty.db').as_posix()}"


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class Base(DeclarativeBase):
    """Metadata for every duty rotation table."""

    pass


class Person(Base):
    __tablename__ = "people"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    notes: Mapped[str] = mapped_column(Text, nullable=False, default="")
    weight: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    exceptions: Mapped[List["DateException"]] = relationship(
        back_populates="person", cascade="all, delete-orphan"
    )
    weekday_offs: Mapped[List["WeekdayOff"]] = relationship(
        back_populates="person", cascade="all, delete-orphan"
    )


class DateException(Base):
    __tablename__ = "person_exceptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    person_id: Mapped[int] = mapped_column(ForeignKey("people.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False, default="")

    person: Mapped[Person] = relationship(back_populates="exceptions")


class WeekdayOff(Base):
    __tablename__ = "person_weekday_off"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    person_id: Mapped[int] = mapped_column(ForeignKey("people.id", ondelete="CASCADE"), nullable=False)
    weekday: Mapped[int] = mapped_column(Integer, nullable=False)  # 0 = Sunday

    person: Mapped[Person] = relationship(back_populates="weekday_offs")

    __table_args__ = (UniqueConstraint("person_id", "weekday", name="uq_weekday_off_person_day"),)


class Assignment(Base):
    __tablename__ = "assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    slot_index: Mapped[int] = mapped_column(Integer, nullable=False)
    person_id: Mapped[int | None] = mapped_column(
        ForeignKey("people.id", ondelete="SET NULL"), nullable=True
    )

    __table_args__ = (UniqueConstraint("date", "slot_index", name="uq_assignment_date_slot"),)


class Setting(Base):
    __tablename__ = "settings"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False, default="")


class Replacement(Base):
    __tablename__ = "replacements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    assignment_id: Mapped[int] = mapped_column(ForeignKey("assignments.id", ondelete="CASCADE"), nullable=False)
    replaced_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    replacement_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Attendance(Base):
    __tablename__ = "attendance"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    assignment_id: Mapped[int] = mapped_column(ForeignKey("assignments.id", ondelete="CASCADE"), nullable=False)
    person_id: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    note: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(60), nullable=False)
    action: Mapped[str] = mapped_column(String(60), nullable=False)
    target_type: Mapped[str] = mapped_column(String(32), nullable=False, default="Assignment")
    target_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    payloadJSON: Mapped[str] = mapped_column(String(2000), nullable=False, default="{}")
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def payload_dict(self) -> Dict[str, Any]:
        try:
            value = json.loads(self.payloadJSON or "{}")
            if isinstance(value, dict):
                return value
        except json.JSONDecodeError:
            pass
        return {}


engine = create_engine(
    DATABASE_URL,
    echo=False,
    future=True,
)
SessionLocal = sessionmaker(bind=engine, expire_on_commit=False, future=True)


def init_database() -> None:
    Base.metadata.create_all(engine)


# People


def _person_to_dict(person: Person) -> Dict[str, Any]:
    return {
        "id": person.id,
        "name": person.name,
        "notes": person.notes,
        "weight": person.weight,
        "active": bool(person.active),
    }


def _coerce_weight(weight: Any) -> int:
    try:
        value = int(weight)
    except (TypeError, ValueError):
        return 1
    return value if value >= 1 else 1


def _require_person(session, person_id: int) -> Person:
    person = session.get(Person, person_id)
    if person is None:
        raise LookupError(f"Person {person_id} was not found.")
    return person


def list_people(session, only_active: bool = False) -> List[Dict[str, Any]]:
    stmt = select(Person)
    if only_active:
        stmt = stmt.where(Person.active.is_(True))
    stmt = stmt.order_by(Person.name.asc(), Person.id.asc())
    return [_person_to_dict(person) for person in session.scalars(stmt)]


def add_person(session, name: str, weight: Any = 1, notes: str = "") -> Person:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValueError("Person name is required.")
    person = Person(name=cleaned, notes=(notes or "").strip(), weight=_coerce_weight(weight), active=True)
    session.add(person)
    session.commit()
    session.refresh(person)
    return person


def edit_person(session, person_id: int, name: str, weight: Any = 1) -> Person:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValueError("Person name is required.")
    person = _require_person(session, person_id)
    person.name = cleaned
    person.weight = _coerce_weight(weight)
    session.commit()
    session.refresh(person)
    return person


def toggle_person(session, person_id: int) -> Person:
    person = _require_person(session, person_id)
    person.active = not person.active
    session.commit()
    session.refresh(person)
    return person


def delete_person(session, person_id: int) -> None:
    """Delete a person, keeping their assignment rows with the person cleared."""
    person = session.get(Person, person_id)
    if person is None:
        return
    session.execute(update(Assignment).where(Assignment.person_id == person_id).values(person_id=None))
    session.delete(person)
    session.commit()


# Constraints


def add_date_exception(session, person_id: int, date_value: datetime.date, reason: str = "") -> DateException:
    if not isinstance(date_value, datetime.date):
        raise TypeError("date_value must be a date instance.")
    _require_person(session, person_id)
    exception = DateException(person_id=person_id, date=date_value, reason=(reason or "").strip())
    session.add(exception)
    session.commit()
    session.refresh(exception)
    return exception


def delete_date_exception(session, exception_id: int) -> None:
    session.execute(delete(DateException).where(DateException.id == exception_id))
    session.commit()


def list_date_exceptions(
    session,
    start: Optional[datetime.date] = None,
    end: Optional[datetime.date] = None,
) -> List[Dict[str, Any]]:
    stmt = select(DateException, Person.name).join(Person, Person.id == DateException.person_id)
    if start is not None:
        stmt = stmt.where(DateException.date >= start)
    if end is not None:
        stmt = stmt.where(DateException.date <= end)
    stmt = stmt.order_by(DateException.date.asc(), DateException.id.asc())
    return [
        {
            "id": exception.id,
            "person_id": exception.person_id,
            "person_name": name,
            "date": exception.date,
            "reason": exception.reason,
        }
        for exception, name in session.execute(stmt)
    ]


def add_weekday_off(session, person_id: int, weekday: int) -> WeekdayOff:
    try:
        weekday = int(weekday)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Weekday must be an integer 0..6, got {weekday!r}.") from exc
    if not 0 <= weekday <= 6:
        raise ValueError(f"Weekday must be in 0..6 (Sunday=0), got {weekday}.")
    _require_person(session, person_id)
    existing = session.scalars(
        select(WeekdayOff).where(WeekdayOff.person_id == person_id, WeekdayOff.weekday == weekday)
    ).first()
    if existing:
        return existing
    rule = WeekdayOff(person_id=person_id, weekday=weekday)
    session.add(rule)
    session.commit()
    session.refresh(rule)
    return rule


def delete_weekday_off(session, rule_id: int) -> None:
    session.execute(delete(WeekdayOff).where(WeekdayOff.id == rule_id))
    session.commit()


def list_weekday_offs(session) -> List[Dict[str, Any]]:
    stmt = (
        select(WeekdayOff, Person.name)
        .join(Person, Person.id == WeekdayOff.person_id)
        .order_by(WeekdayOff.person_id.asc(), WeekdayOff.weekday.asc())
    )
    return [
        {"id": rule.id, "person_id": rule.person_id, "person_name": name, "weekday": rule.weekday}
        for rule, name in session.execute(stmt)
    ]


# Settings


def get_setting(session, key: str, default: Optional[str] = None) -> Optional[str]:
    row = session.get(Setting, key)
    return row.value if row is not None else default


def set_setting(session, key: str, value: Any) -> Setting:
    row = session.get(Setting, key)
    if row is None:
        row = Setting(key=key, value=str(value))
        session.add(row)
    else:
        row.value = str(value)
    session.commit()
    return row


# Assignments


def load_assignment_rows(session, start: datetime.date, end: datetime.date) -> List[Assignment]:
    stmt = (
        select(Assignment)
        .where(Assignment.date >= start, Assignment.date <= end)
        .order_by(Assignment.date.asc(), Assignment.slot_index.asc())
    )
    return list(session.scalars(stmt))


def upsert_assignment(
    session,
    date_value: datetime.date,
    slot_index: int,
    person_id: Optional[int],
) -> Assignment:
    """Write one (date, slot) row; repeating the same call leaves the row unchanged."""
    if not isinstance(date_value, datetime.date):
        raise TypeError("date_value must be a date instance.")
    if int(slot_index) < 1:
        raise ValueError("Slot index starts at 1.")
    stmt = select(Assignment).where(Assignment.date == date_value, Assignment.slot_index == int(slot_index))
    existing = session.scalars(stmt).first()
    if existing is not None:
        if existing.person_id != person_id:
            existing.person_id = person_id
            session.commit()
        return existing
    row = Assignment(date=date_value, slot_index=int(slot_index), person_id=person_id)
    session.add(row)
    try:
        session.commit()
    except IntegrityError:
        # Another writer created the key first; fall back to updating its row.
        session.rollback()
        existing = session.scalars(stmt).one()
        existing.person_id = person_id
        session.commit()
        return existing
    session.refresh(row)
    return row


def get_assignment(session, date_value: datetime.date, slot_index: int) -> Optional[Assignment]:
    stmt = select(Assignment).where(Assignment.date == date_value, Assignment.slot_index == int(slot_index))
    return session.scalars(stmt).first()


# Audit


def record_audit_log(
    session,
    user_id: str,
    action: str,
    target_type: str = "Assignment",
    target_id: Optional[int] = None,
    payload: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    log = AuditLog(
        user_id=user_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        payloadJSON=json.dumps(payload or {}, default=str),
    )
    session.add(log)
    session.commit()
    return log


def list_audit_logs(session, limit: int = 200) -> List[Dict[str, Any]]:
    stmt = select(AuditLog).order_by(AuditLog.id.desc()).limit(max(1, int(limit)))
    return [
        {
            "id": log.id,
            "actor": log.user_id,
            "action": log.action,
            "target_type": log.target_type,
            "target_id": log.target_id,
            "payload": log.payload_dict(),
            "created_at": log.created_at,
        }
        for log in session.scalars(stmt)
    ]


def people_by_id(session, person_ids: Iterable[int]) -> Dict[int, Person]:
    ids = {pid for pid in person_ids if pid is not None}
    if not ids:
        return {}
    return {person.id: person for person in session.scalars(select(Person).where(Person.id.in_(ids)))}
