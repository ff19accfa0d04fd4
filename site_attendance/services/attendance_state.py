"""
Attendance state machine.
The session state of a worker's day is derived from the timestamps on the
AttendanceRecord; there is no stored status column. Every transition is
geofence gated and persisted through the store's guarded update.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import AttendanceRecord, Employee, LocationLog, Project
from ..schemas.attendance import AttendanceAction, AttendanceErrorCode, SessionState
from .attendance_alerts import geofence_violation_alerts
from .attendance_store import (
    apply_transition,
    assigned_project_ids,
    find_assignment,
    find_or_create,
    get_record,
    get_today_record,
    lock_record,
)
from .audit import compute_diff, create_audit_log
from .geofence import (
    Geofence,
    GeoPoint,
    GeofenceValidation,
    effective_radius,
    validate_geofence,
)
from .notifications import AlertDispatcher
from .time_rules import ensure_utc, isoformat_utc, local_today, utc_to_local


logger = structlog.get_logger(__name__)

# action -> (required state, resulting state)
TRANSITIONS = {
    AttendanceAction.clock_in: (SessionState.not_logged_in, SessionState.checked_in),
    AttendanceAction.lunch_start: (SessionState.checked_in, SessionState.on_lunch),
    AttendanceAction.lunch_end: (SessionState.on_lunch, SessionState.checked_in),
    AttendanceAction.clock_out: (SessionState.checked_in, SessionState.checked_out),
}

LOCATION_LOG_TYPES = {
    AttendanceAction.clock_in: "CHECK_IN",
    AttendanceAction.lunch_start: "LUNCH_START",
    AttendanceAction.lunch_end: "LUNCH_END",
    AttendanceAction.clock_out: "CHECK_OUT",
}

SUCCESS_MESSAGES = {
    AttendanceAction.clock_in: "Clocked in successfully",
    AttendanceAction.lunch_start: "Lunch break started",
    AttendanceAction.lunch_end: "Lunch break ended",
    AttendanceAction.clock_out: "Clocked out successfully",
}

HTTP_STATUS_BY_CODE = {
    AttendanceErrorCode.outside_geofence: 400,
    AttendanceErrorCode.invalid_transition: 400,
    AttendanceErrorCode.not_clocked_in: 400,
    AttendanceErrorCode.no_task_assigned: 400,
    AttendanceErrorCode.unauthorized_employee: 403,
    AttendanceErrorCode.lookup_failure: 404,
    AttendanceErrorCode.storage_unavailable: 503,
}


@dataclass
class TransitionResult:
    ok: bool
    code: Optional[AttendanceErrorCode] = None
    message: str = ""
    record: Optional[AttendanceRecord] = None
    validation: Optional[GeofenceValidation] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def session(self) -> SessionState:
        return derive_session(self.record)

    @property
    def status_code(self) -> int:
        if self.ok:
            return 200
        return HTTP_STATUS_BY_CODE.get(self.code, 400)


def derive_session(record: Optional[AttendanceRecord]) -> SessionState:
    """The one canonical session derivation, a function of the timestamps only."""
    if record is None:
        return SessionState.not_logged_in
    if record.check_out is not None:
        return SessionState.checked_out
    if record.lunch_start_time is not None and record.lunch_end_time is None:
        return SessionState.on_lunch
    if record.check_in is not None:
        return SessionState.checked_in
    return SessionState.not_logged_in


def lunch_duration(record: Optional[AttendanceRecord], now: datetime) -> timedelta:
    if record is None or record.lunch_start_time is None:
        return timedelta(0)
    end = record.lunch_end_time or now
    return max(timedelta(0), ensure_utc(end) - ensure_utc(record.lunch_start_time))


def worked_duration(record: Optional[AttendanceRecord], now: datetime) -> timedelta:
    """(checkOut or now) - checkIn - lunch; zero before check-in."""
    if record is None or record.check_in is None:
        return timedelta(0)
    end = record.check_out or now
    total = ensure_utc(end) - ensure_utc(record.check_in) - lunch_duration(record, now)
    return max(timedelta(0), total)


def worked_hours(record: Optional[AttendanceRecord], now: datetime) -> float:
    return round(worked_duration(record, now).total_seconds() / 3600, 2)


def _latest_timestamp(record: AttendanceRecord) -> Optional[datetime]:
    stamps = [
        ensure_utc(value)
        for value in (record.check_in, record.lunch_start_time, record.lunch_end_time, record.check_out)
        if value is not None
    ]
    return max(stamps) if stamps else None


def check_transition(
    record: Optional[AttendanceRecord],
    action: AttendanceAction,
    at: Optional[datetime] = None,
) -> Optional[Tuple[AttendanceErrorCode, str]]:
    """
    Check a requested action against the record's current state.

    Returns:
        None if the action is allowed, otherwise (error code, message)
    """
    state = derive_session(record)
    clocked_in = record is not None and record.check_in is not None

    if action == AttendanceAction.clock_in:
        if state == SessionState.checked_out:
            return AttendanceErrorCode.invalid_transition, "Already checked out today"
        if state != SessionState.not_logged_in:
            return AttendanceErrorCode.invalid_transition, "Already checked in today"
    elif action == AttendanceAction.lunch_start:
        if not clocked_in:
            return AttendanceErrorCode.not_clocked_in, "Must be clocked in to start lunch break"
        if state == SessionState.checked_out:
            return AttendanceErrorCode.invalid_transition, "Cannot start lunch break after clocking out"
        if state == SessionState.on_lunch:
            return AttendanceErrorCode.invalid_transition, "Lunch break already started"
        if record.lunch_end_time is not None:
            return AttendanceErrorCode.invalid_transition, "Lunch break already taken today"
    elif action == AttendanceAction.lunch_end:
        if not clocked_in:
            return AttendanceErrorCode.not_clocked_in, "Must be clocked in to end lunch break"
        if state == SessionState.checked_out:
            return AttendanceErrorCode.invalid_transition, "Cannot end lunch break after clocking out"
        if record.lunch_start_time is None:
            return AttendanceErrorCode.invalid_transition, "Lunch break not started"
        if record.lunch_end_time is not None:
            return AttendanceErrorCode.invalid_transition, "Lunch break already ended"
    elif action == AttendanceAction.clock_out:
        if not clocked_in:
            return AttendanceErrorCode.not_clocked_in, "Cannot clock out before clocking in"
        if state == SessionState.checked_out:
            return AttendanceErrorCode.invalid_transition, "Already checked out today"
        if state == SessionState.on_lunch:
            return AttendanceErrorCode.invalid_transition, "End lunch break before clocking out"
    else:
        return AttendanceErrorCode.invalid_transition, f"Unknown attendance action: {action}"

    required_state, _ = TRANSITIONS[action]
    if state != required_state:
        return AttendanceErrorCode.invalid_transition, f"Cannot {action.value} while {state.value}"

    # Timestamps on a record only ever move forward
    if at is not None and record is not None:
        latest = _latest_timestamp(record)
        if latest is not None and ensure_utc(at) <= latest:
            return AttendanceErrorCode.invalid_transition, "Attendance time must be later than the previous attendance event"
    return None


def project_geofence(project: Project) -> Optional[Geofence]:
    """Geofence for a project, or None if the project has no location configured."""
    if project.lat is None or project.lng is None:
        return None
    radius = float(project.geofence_radius_m) if project.geofence_radius_m else 0.0
    if radius <= 0:
        radius = float(settings.geo_radius_m_default)
    variance = project.geofence_allowed_variance_m
    if variance is None:
        variance = settings.geo_allowed_variance_m_default
    strict = True if project.geofence_strict_mode is None else bool(project.geofence_strict_mode)
    return Geofence(
        center=GeoPoint(float(project.lat), float(project.lng)),
        radius_meters=radius,
        strict_mode=strict,
        allowed_variance_meters=float(variance),
    )


def load_project(db: Session, employee: Employee, project_id: int) -> Optional[Project]:
    """Project visible to the employee's company, or None."""
    project = db.get(Project, project_id)
    if project is None or project.company_id != employee.company_id:
        return None
    return project


def _reject(
    employee: Employee,
    project_id: int,
    action: str,
    code: AttendanceErrorCode,
    message: str,
    validation: Optional[GeofenceValidation] = None,
    record: Optional[AttendanceRecord] = None,
    details: Optional[Dict[str, Any]] = None,
) -> TransitionResult:
    logger.info(
        "attendance_rejected",
        code=code.value,
        action=action,
        employee_id=employee.id,
        project_id=project_id,
        reason=message,
    )
    return TransitionResult(
        ok=False,
        code=code,
        message=message,
        record=record,
        validation=validation,
        details=details or {},
    )


def _snapshot(record: Optional[AttendanceRecord]) -> Dict[str, Any]:
    if record is None:
        return {}
    return {
        "check_in": isoformat_utc(record.check_in),
        "lunch_start_time": isoformat_utc(record.lunch_start_time),
        "lunch_end_time": isoformat_utc(record.lunch_end_time),
        "check_out": isoformat_utc(record.check_out),
        "pending_checkout": record.pending_checkout,
    }


def is_hard_violation(validation: GeofenceValidation, fence: Geofence) -> bool:
    """Outside the allowed boundary, as opposed to a low-confidence GPS fix."""
    return validation.distance > effective_radius(fence)


def send_violation_alerts(
    db: Session,
    dispatcher: Optional[AlertDispatcher],
    employee: Employee,
    project: Project,
    location: GeoPoint,
    accuracy: Optional[float],
    fence: Geofence,
    validation: GeofenceValidation,
    now: datetime,
) -> int:
    """Dispatch worker and supervisor violation alerts. Failures are logged, never raised."""
    if dispatcher is None:
        return 0
    assignment = find_assignment(db, employee.id, project.id, local_today(now))
    supervisor_id = assignment.supervisor_id if assignment else None
    sent = 0
    alerts = geofence_violation_alerts(
        db, employee, project, supervisor_id, location, accuracy, fence, validation, utc_to_local(now),
    )
    for alert in alerts:
        try:
            dispatcher.dispatch(alert)
            sent += 1
        except Exception:
            logger.exception(
                "alert_dispatch_failed",
                alert_type=alert.alert_type.value,
                worker_id=employee.id,
                recipients=alert.recipients,
            )
    return sent


def perform_action(
    db: Session,
    employee: Employee,
    project_id: int,
    action: AttendanceAction,
    location: GeoPoint,
    accuracy: Optional[float],
    now: datetime,
    dispatcher: Optional[AlertDispatcher] = None,
) -> TransitionResult:
    """
    Run one attendance transition for the employee on the project.

    Checks run in order: project lookup, task assignment (clock-in only),
    state guard, geofence, then the atomic persist. Rejections come back as
    a TransitionResult; only storage errors raise.
    """
    now = ensure_utc(now)
    today = local_today(now)
    act = action.value

    project = load_project(db, employee, project_id)
    if project is None:
        return _reject(employee, project_id, act, AttendanceErrorCode.lookup_failure, "Project not found")
    fence = project_geofence(project)
    if fence is None:
        return _reject(employee, project_id, act, AttendanceErrorCode.lookup_failure, "Project location is not configured")

    if action == AttendanceAction.clock_in:
        assignment = find_assignment(db, employee.id, project_id, today)
        if assignment is None:
            return _reject(
                employee, project_id, act,
                AttendanceErrorCode.no_task_assigned,
                "No task assigned for this project today",
                details={"availableProjects": assigned_project_ids(db, employee.id, today)},
            )

    record = get_record(db, employee.id, project_id, today)
    refusal = check_transition(record, action, now)
    if refusal is not None:
        return _reject(employee, project_id, act, refusal[0], refusal[1], record=record)

    validation = validate_geofence(location, fence, accuracy)
    if not validation.is_valid:
        if is_hard_violation(validation, fence):
            send_violation_alerts(db, dispatcher, employee, project, location, accuracy, fence, validation, now)
        return _reject(
            employee, project_id, act,
            AttendanceErrorCode.outside_geofence,
            validation.message,
            validation=validation,
            record=record,
            details={"distance": round(validation.distance, 2), "insideGeofence": validation.inside_geofence},
        )

    if action == AttendanceAction.clock_in:
        record = find_or_create(db, employee.id, project_id, today, now)
    else:
        record = lock_record(db, employee.id, project_id, today)

    # The row may have moved on between the first read and the lock
    refusal = check_transition(record, action, now)
    if refusal is not None:
        db.rollback()
        return _reject(employee, project_id, act, refusal[0], refusal[1])

    before = _snapshot(record)
    if not apply_transition(
        db, record, action, now, validation.inside_geofence,
        latitude=location.latitude, longitude=location.longitude,
    ):
        db.rollback()
        return _reject(
            employee, project_id, act,
            AttendanceErrorCode.invalid_transition,
            "Attendance was updated by another request",
        )

    db.add(LocationLog(
        employee_id=employee.id,
        project_id=project_id,
        latitude=location.latitude,
        longitude=location.longitude,
        accuracy_m=accuracy,
        inside_geofence=validation.inside_geofence,
        log_type=LOCATION_LOG_TYPES[action],
        created_at=now,
    ))
    create_audit_log(
        db,
        entity_type="attendance",
        entity_id=record.id,
        action=act,
        actor_id=employee.id,
        actor_role=employee.role,
        source="app",
        changes_json=compute_diff(before, _snapshot(record)),
        context={
            "project_id": project_id,
            "worker_id": employee.id,
            "gps_lat": location.latitude,
            "gps_lng": location.longitude,
            "gps_accuracy_m": accuracy,
            "inside_geofence": validation.inside_geofence,
            "distance_m": round(validation.distance, 2),
        },
        commit=False,
    )
    db.commit()
    db.refresh(record)

    session = derive_session(record)
    logger.info(
        "attendance_transition",
        action=act,
        employee_id=employee.id,
        project_id=project_id,
        record_id=record.id,
        session=session.value,
        inside_geofence=validation.inside_geofence,
        distance_m=round(validation.distance, 2),
    )
    return TransitionResult(ok=True, message=SUCCESS_MESSAGES[action], record=record, validation=validation)


def log_location(
    db: Session,
    employee: Employee,
    project_id: int,
    location: GeoPoint,
    accuracy: Optional[float],
    now: datetime,
    dispatcher: Optional[AlertDispatcher] = None,
) -> TransitionResult:
    """
    Record a location sample (TRACK) and alert when the worker has left
    the project boundary.
    """
    now = ensure_utc(now)
    project = load_project(db, employee, project_id)
    if project is None:
        return _reject(employee, project_id, "TRACK", AttendanceErrorCode.lookup_failure, "Project not found")
    fence = project_geofence(project)
    if fence is None:
        return _reject(employee, project_id, "TRACK", AttendanceErrorCode.lookup_failure, "Project location is not configured")

    validation = validate_geofence(location, fence, accuracy)
    db.add(LocationLog(
        employee_id=employee.id,
        project_id=project_id,
        latitude=location.latitude,
        longitude=location.longitude,
        accuracy_m=accuracy,
        inside_geofence=validation.inside_geofence,
        log_type="TRACK",
        created_at=now,
    ))
    record = get_today_record(db, employee.id, local_today(now), project_id)
    if record is not None:
        record.last_latitude = location.latitude
        record.last_longitude = location.longitude
        record.updated_at = now
    db.commit()

    if is_hard_violation(validation, fence):
        send_violation_alerts(db, dispatcher, employee, project, location, accuracy, fence, validation, now)
    return TransitionResult(ok=True, message=validation.message, record=record, validation=validation)


def serialize_record(
    record: AttendanceRecord,
    now: datetime,
    project_name: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "id": record.id,
        "employeeId": record.employee_id,
        "projectId": record.project_id,
        "projectName": project_name,
        "date": record.date.isoformat(),
        "checkIn": isoformat_utc(record.check_in),
        "checkOut": isoformat_utc(record.check_out),
        "lunchStartTime": isoformat_utc(record.lunch_start_time),
        "lunchEndTime": isoformat_utc(record.lunch_end_time),
        "insideGeofenceAtCheckin": bool(record.inside_geofence_at_checkin),
        "insideGeofenceAtCheckout": bool(record.inside_geofence_at_checkout),
        "pendingCheckout": bool(record.pending_checkout),
        "session": derive_session(record).value,
        "workDuration": round(worked_duration(record, now).total_seconds() / 60),
        "lunchDuration": round(lunch_duration(record, now).total_seconds() / 60),
        "totalHours": worked_hours(record, now),
    }
