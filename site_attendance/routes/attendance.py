"""
Attendance API routes.
Geofence pre-check, check-in/check-out submission, location tracking,
history and the alert scheduler controls.
"""
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterable, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..auth.security import get_current_employee, require_any_role
from ..db import get_db
from ..models.models import Employee, Project
from ..schemas.attendance import (
    AttendanceAction,
    AttendanceErrorCode,
    LocationPayload,
    LunchReminderPayload,
    OvertimeAlertPayload,
    SubmitAttendancePayload,
)
from ..services.alert_scheduler import AlertScheduler
from ..services.attendance_alerts import lunch_reminder_alert, overtime_alert
from ..services.attendance_state import (
    TransitionResult,
    derive_session,
    load_project,
    log_location,
    perform_action,
    project_geofence,
    serialize_record,
)
from ..services.attendance_store import find_assignment, get_today_record, list_history
from ..services.geofence import GeoPoint, Geofence, GeofenceValidation, validate_geofence
from ..services.notifications import AlertDispatcher, AlertRequest
from ..services.time_rules import format_clock, isoformat_utc, local_today, request_time, utc_to_local
from ..config import settings


logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/attendance", tags=["attendance"])

SUPERVISOR_ROLES = ("supervisor", "admin")


def error_detail(code: AttendanceErrorCode, message: str, **extra) -> Dict:
    return {"success": False, "code": code.value, "message": message, **extra}


def rejection_exception(result: TransitionResult) -> HTTPException:
    """HTTPException for a rejected TransitionResult."""
    return HTTPException(
        status_code=result.status_code,
        detail=error_detail(result.code, result.message, **result.details),
    )


@contextmanager
def storage_guard(db: Session, operation: str):
    """Surface storage failures as STORAGE_UNAVAILABLE with the operation name."""
    try:
        yield
    except SQLAlchemyError:
        db.rollback()
        logger.exception("storage_unavailable", operation=operation)
        raise HTTPException(
            status_code=503,
            detail=error_detail(
                AttendanceErrorCode.storage_unavailable,
                "Attendance service is temporarily unavailable, please retry",
                operation=operation,
            ),
        )


def get_alert_dispatcher(request: Request) -> AlertDispatcher:
    return request.app.state.alert_dispatcher


def get_alert_scheduler(request: Request) -> AlertScheduler:
    return request.app.state.alert_scheduler


def project_or_404(db: Session, employee: Employee, project_id: int) -> Project:
    project = load_project(db, employee, project_id)
    if project is None:
        raise HTTPException(
            status_code=404,
            detail=error_detail(AttendanceErrorCode.lookup_failure, "Project not found", projectId=project_id),
        )
    return project


def geofence_or_404(project: Project) -> Geofence:
    fence = project_geofence(project)
    if fence is None:
        raise HTTPException(
            status_code=404,
            detail=error_detail(
                AttendanceErrorCode.lookup_failure,
                "Project location is not configured",
                projectId=project.id,
            ),
        )
    return fence


def validation_body(validation: GeofenceValidation, accuracy: Optional[float]) -> Dict:
    return {
        "insideGeofence": validation.inside_geofence,
        "distance": round(validation.distance, 2),
        "canProceed": validation.is_valid,
        "message": validation.message,
        "accuracy": accuracy,
    }


def project_names(db: Session, project_ids: Iterable[int]) -> Dict[int, str]:
    ids = set(project_ids)
    if not ids:
        return {}
    rows = db.query(Project.id, Project.name).filter(Project.id.in_(ids)).all()
    return {row[0]: row[1] for row in rows}


def today_body(db: Session, employee: Employee, now: datetime, project_id: Optional[int] = None) -> Dict:
    today = local_today(now)
    record = get_today_record(db, employee.id, today, project_id)
    return {
        "session": derive_session(record).value,
        "checkInTime": isoformat_utc(record.check_in) if record else None,
        "checkOutTime": isoformat_utc(record.check_out) if record else None,
        "lunchStartTime": isoformat_utc(record.lunch_start_time) if record else None,
        "lunchEndTime": isoformat_utc(record.lunch_end_time) if record else None,
        "date": today.isoformat(),
        "projectId": record.project_id if record else project_id,
    }


def dispatch_or_503(dispatcher: AlertDispatcher, alert: AlertRequest, operation: str) -> Dict:
    try:
        return dispatcher.dispatch(alert)
    except Exception:
        logger.exception(
            "alert_dispatch_failed",
            operation=operation,
            alert_type=alert.alert_type.value,
            worker_id=alert.worker_id,
        )
        raise HTTPException(
            status_code=503,
            detail=error_detail(
                AttendanceErrorCode.storage_unavailable,
                "Notification service is unavailable, please retry",
                operation=operation,
            ),
        )


def company_worker_or_404(db: Session, supervisor: Employee, worker_id: int) -> Employee:
    worker = db.get(Employee, worker_id)
    if worker is None or worker.company_id != supervisor.company_id:
        raise HTTPException(
            status_code=404,
            detail=error_detail(AttendanceErrorCode.lookup_failure, "Worker not found", workerId=worker_id),
        )
    return worker


@router.post("/validate-geofence")
def validate_geofence_endpoint(
    payload: LocationPayload,
    db: Session = Depends(get_db),
    employee: Employee = Depends(get_current_employee),
):
    with storage_guard(db, "validate_geofence"):
        project = project_or_404(db, employee, payload.project_id)
    fence = geofence_or_404(project)
    validation = validate_geofence(GeoPoint(payload.latitude, payload.longitude), fence, payload.accuracy)
    return validation_body(validation, payload.accuracy)


@router.post("/submit")
def submit_attendance(
    payload: SubmitAttendancePayload,
    db: Session = Depends(get_db),
    employee: Employee = Depends(get_current_employee),
    dispatcher: AlertDispatcher = Depends(get_alert_dispatcher),
    now: datetime = Depends(request_time),
):
    """Legacy check-in/check-out entry point used by older mobile builds."""
    session_actions = {
        "checkin": (AttendanceAction.clock_in, "Check-in successful"),
        "checkout": (AttendanceAction.clock_out, "Check-out successful"),
    }
    if payload.session not in session_actions:
        raise HTTPException(status_code=400, detail="Invalid session type")
    action, message = session_actions[payload.session]

    with storage_guard(db, f"submit_{payload.session}"):
        result = perform_action(
            db, employee, payload.project_id, action,
            GeoPoint(payload.latitude, payload.longitude), payload.accuracy, now, dispatcher,
        )
    if not result.ok:
        raise rejection_exception(result)
    return {"success": True, "message": message, "session": result.session.value}


@router.post("/log-location")
def log_location_endpoint(
    payload: LocationPayload,
    db: Session = Depends(get_db),
    employee: Employee = Depends(get_current_employee),
    dispatcher: AlertDispatcher = Depends(get_alert_dispatcher),
    now: datetime = Depends(request_time),
):
    with storage_guard(db, "log_location"):
        result = log_location(
            db, employee, payload.project_id,
            GeoPoint(payload.latitude, payload.longitude), payload.accuracy, now, dispatcher,
        )
    if not result.ok:
        raise rejection_exception(result)
    return {
        "success": True,
        "message": result.message,
        "insideGeofence": result.validation.inside_geofence,
        "distance": round(result.validation.distance, 2),
    }


@router.get("/history")
def attendance_history(
    project_id: Optional[int] = Query(None, alias="projectId"),
    db: Session = Depends(get_db),
    employee: Employee = Depends(get_current_employee),
    now: datetime = Depends(request_time),
):
    with storage_guard(db, "attendance_history"):
        records, _ = list_history(db, employee.id, project_id)
        names = project_names(db, (r.project_id for r in records))
    return {"records": [serialize_record(r, now, names.get(r.project_id)) for r in records]}


@router.get("/today")
def attendance_today(
    project_id: Optional[int] = Query(None, alias="projectId"),
    db: Session = Depends(get_db),
    employee: Employee = Depends(get_current_employee),
    now: datetime = Depends(request_time),
):
    with storage_guard(db, "attendance_today"):
        return today_body(db, employee, now, project_id)


@router.post("/check-alerts")
def check_alerts(
    supervisor: Employee = Depends(require_any_role(*SUPERVISOR_ROLES)),
    scheduler: AlertScheduler = Depends(get_alert_scheduler),
    now: datetime = Depends(request_time),
):
    """Run one alert scheduler pass immediately."""
    results = scheduler.run_once(now)
    if results.get("skipped"):
        message = results["message"]
    elif results["success"]:
        message = "Attendance alert check completed"
    else:
        message = "Attendance alert check failed"
    logger.info("alert_check_triggered", triggered_by=supervisor.id, success=results["success"])
    return {"success": results["success"], "message": message, "results": results}


@router.get("/scheduler/status")
def scheduler_status(
    employee: Employee = Depends(get_current_employee),
    scheduler: AlertScheduler = Depends(get_alert_scheduler),
):
    return scheduler.status()


@router.post("/send-lunch-reminder")
def send_lunch_reminder(
    payload: LunchReminderPayload,
    db: Session = Depends(get_db),
    supervisor: Employee = Depends(require_any_role(*SUPERVISOR_ROLES)),
    dispatcher: AlertDispatcher = Depends(get_alert_dispatcher),
    now: datetime = Depends(request_time),
):
    with storage_guard(db, "send_lunch_reminder"):
        worker = company_worker_or_404(db, supervisor, payload.worker_id)
        project_or_404(db, supervisor, payload.project_id)
        assignment = find_assignment(db, worker.id, payload.project_id, local_today(now))
        alert = lunch_reminder_alert(
            db, worker.id, payload.project_id,
            assignment.supervisor_id if assignment else supervisor.id,
            format_clock(settings.lunch_time), settings.lunch_break_duration_label,
            settings.lunch_reminder_lead_min, utc_to_local(now),
        )
    result = dispatch_or_503(dispatcher, alert, "send_lunch_reminder")
    return {"success": True, "message": "Lunch break reminder sent", "result": result}


@router.post("/send-overtime-alert")
def send_overtime_alert(
    payload: OvertimeAlertPayload,
    db: Session = Depends(get_db),
    supervisor: Employee = Depends(require_any_role(*SUPERVISOR_ROLES)),
    dispatcher: AlertDispatcher = Depends(get_alert_dispatcher),
    now: datetime = Depends(request_time),
):
    if payload.overtime_type not in ("START", "END"):
        raise HTTPException(status_code=400, detail="Invalid overtime type. Must be START or END")
    with storage_guard(db, "send_overtime_alert"):
        worker = company_worker_or_404(db, supervisor, payload.worker_id)
        alert = overtime_alert(
            db, worker.id, supervisor.id, payload.overtime_type, payload.overtime_info, utc_to_local(now),
        )
    result = dispatch_or_503(dispatcher, alert, "send_overtime_alert")
    label = "started" if payload.overtime_type == "START" else "ended"
    return {"success": True, "message": f"Overtime {label} alert sent", "result": result}
