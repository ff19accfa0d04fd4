"""
Attendance record store.
One record per (employee, project, date). Creation goes through an
insert-or-ignore on the natural key and every state change is a single
guarded UPDATE, so concurrent requests for the same day cannot both win.
"""
from datetime import date, datetime
from typing import Optional, List, Tuple

from sqlalchemy import and_, or_, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models.models import AttendanceRecord, TaskAssignment
from ..schemas.attendance import AttendanceAction
from .time_rules import ensure_utc


NATURAL_KEY = ("employee_id", "project_id", "date")

# Preconditions that must still hold when the UPDATE runs
_GUARDS = {
    AttendanceAction.clock_in: and_(
        AttendanceRecord.check_in.is_(None),
        AttendanceRecord.check_out.is_(None),
    ),
    AttendanceAction.lunch_start: and_(
        AttendanceRecord.check_in.isnot(None),
        AttendanceRecord.check_out.is_(None),
        AttendanceRecord.lunch_start_time.is_(None),
    ),
    AttendanceAction.lunch_end: and_(
        AttendanceRecord.check_out.is_(None),
        AttendanceRecord.lunch_start_time.isnot(None),
        AttendanceRecord.lunch_end_time.is_(None),
    ),
    AttendanceAction.clock_out: and_(
        AttendanceRecord.check_in.isnot(None),
        AttendanceRecord.check_out.is_(None),
        or_(
            AttendanceRecord.lunch_start_time.is_(None),
            AttendanceRecord.lunch_end_time.isnot(None),
        ),
    ),
}


def _insert_ignore_conflict(db: Session, values: dict) -> None:
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        stmt = postgresql.insert(AttendanceRecord).values(**values)
    elif dialect == "sqlite":
        stmt = sqlite.insert(AttendanceRecord).values(**values)
    else:
        # Generic path: let the unique constraint arbitrate inside a savepoint
        try:
            with db.begin_nested():
                db.add(AttendanceRecord(**values))
        except IntegrityError:
            pass
        return
    db.execute(stmt.on_conflict_do_nothing(index_elements=list(NATURAL_KEY)))


def get_record(
    db: Session,
    employee_id: int,
    project_id: int,
    date_val: date,
) -> Optional[AttendanceRecord]:
    return db.query(AttendanceRecord).filter(
        AttendanceRecord.employee_id == employee_id,
        AttendanceRecord.project_id == project_id,
        AttendanceRecord.date == date_val,
    ).first()


def find_or_create(
    db: Session,
    employee_id: int,
    project_id: int,
    date_val: date,
    now: datetime,
) -> AttendanceRecord:
    """
    Return the day's record, creating it if absent, locked for update.

    Two concurrent callers both end up holding the same row; neither
    creates a duplicate.
    """
    _insert_ignore_conflict(db, {
        "employee_id": employee_id,
        "project_id": project_id,
        "date": date_val,
        "inside_geofence_at_checkin": False,
        "inside_geofence_at_checkout": False,
        "pending_checkout": False,
        "created_at": ensure_utc(now),
    })
    return lock_record(db, employee_id, project_id, date_val)


def lock_record(
    db: Session,
    employee_id: int,
    project_id: int,
    date_val: date,
) -> Optional[AttendanceRecord]:
    return db.query(AttendanceRecord).filter(
        AttendanceRecord.employee_id == employee_id,
        AttendanceRecord.project_id == project_id,
        AttendanceRecord.date == date_val,
    ).populate_existing().with_for_update().first()


def apply_transition(
    db: Session,
    record: AttendanceRecord,
    action: AttendanceAction,
    at: datetime,
    inside_geofence: bool,
    latitude: Optional[float] = None,
    longitude: Optional[float] = None,
) -> bool:
    """
    Apply one transition as a compare-and-set UPDATE.

    Returns:
        True if the row was updated, False if its state no longer matched
        the transition's precondition (a concurrent writer got there first).
    """
    at = ensure_utc(at)
    values = {"updated_at": at}
    if latitude is not None and longitude is not None:
        values["last_latitude"] = latitude
        values["last_longitude"] = longitude

    if action == AttendanceAction.clock_in:
        values.update(check_in=at, pending_checkout=True, inside_geofence_at_checkin=inside_geofence)
    elif action == AttendanceAction.lunch_start:
        values.update(lunch_start_time=at)
    elif action == AttendanceAction.lunch_end:
        values.update(lunch_end_time=at)
    elif action == AttendanceAction.clock_out:
        values.update(check_out=at, pending_checkout=False, inside_geofence_at_checkout=inside_geofence)
    else:
        raise ValueError(f"Unknown attendance action: {action}")

    stmt = (
        update(AttendanceRecord)
        .where(AttendanceRecord.id == record.id, _GUARDS[action])
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(stmt)
    if result.rowcount != 1:
        return False
    db.refresh(record)
    return True


def get_today_record(
    db: Session,
    employee_id: int,
    date_val: date,
    project_id: Optional[int] = None,
) -> Optional[AttendanceRecord]:
    """Day's record for one project, or the most recently touched one across projects."""
    query = db.query(AttendanceRecord).filter(
        AttendanceRecord.employee_id == employee_id,
        AttendanceRecord.date == date_val,
    )
    if project_id is not None:
        query = query.filter(AttendanceRecord.project_id == project_id)
    return query.order_by(AttendanceRecord.check_in.desc(), AttendanceRecord.id.desc()).first()


def list_history(
    db: Session,
    employee_id: int,
    project_id: Optional[int] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    limit: Optional[int] = None,
    page: int = 1,
) -> Tuple[List[AttendanceRecord], int]:
    """
    Attendance history, newest day first.

    Returns:
        Tuple of (records for the requested page, total matching records)
    """
    query = db.query(AttendanceRecord).filter(AttendanceRecord.employee_id == employee_id)
    if project_id is not None:
        query = query.filter(AttendanceRecord.project_id == project_id)
    if start_date is not None:
        query = query.filter(AttendanceRecord.date >= start_date)
    if end_date is not None:
        query = query.filter(AttendanceRecord.date <= end_date)

    total = query.count()
    query = query.order_by(AttendanceRecord.date.desc(), AttendanceRecord.id.desc())
    if limit is not None:
        query = query.limit(limit).offset((max(page, 1) - 1) * limit)
    return query.all(), total


def list_records_for_date(db: Session, date_val: date) -> List[AttendanceRecord]:
    return db.query(AttendanceRecord).filter(AttendanceRecord.date == date_val).all()


def list_assignments(db: Session, date_val: date) -> List[TaskAssignment]:
    return db.query(TaskAssignment).filter(TaskAssignment.date == date_val).all()


def find_assignment(
    db: Session,
    employee_id: int,
    project_id: int,
    date_val: date,
) -> Optional[TaskAssignment]:
    return db.query(TaskAssignment).filter(
        TaskAssignment.employee_id == employee_id,
        TaskAssignment.project_id == project_id,
        TaskAssignment.date == date_val,
    ).first()


def assigned_project_ids(db: Session, employee_id: int, date_val: date) -> List[int]:
    rows = db.query(TaskAssignment.project_id).filter(
        TaskAssignment.employee_id == employee_id,
        TaskAssignment.date == date_val,
    ).distinct().all()
    return [row[0] for row in rows]
