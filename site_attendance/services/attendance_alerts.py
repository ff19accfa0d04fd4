"""
Attendance alert builders.
Turns an alert condition into an AlertRequest with the worker-facing text
and the context payload (project, supervisor contact, schedule).
Supervisor and project lookups degrade to placeholders so one missing
record never blocks alerting for the rest of a batch.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models.models import Employee, Project
from ..schemas.attendance import AlertPriority, AlertType, AttendanceErrorCode
from .geofence import Geofence, GeoPoint, GeofenceValidation
from .notifications import AlertRequest
from .time_rules import format_clock


logger = structlog.get_logger(__name__)

ACTION_URL_WORKER = "/worker/attendance"
ACTION_URL_SUPERVISOR = "/supervisor/worker-tracking"

PLACEHOLDER_SUPERVISOR = {"name": "Supervisor", "phone": "N/A", "email": "N/A"}
PLACEHOLDER_PROJECT_NAME = "N/A"


def resolve_supervisor_contact(db: Session, supervisor_id: Optional[int]) -> Dict[str, str]:
    """Supervisor name/phone/email, or placeholder values if it cannot be found."""
    if not supervisor_id:
        return dict(PLACEHOLDER_SUPERVISOR)
    try:
        supervisor = db.get(Employee, supervisor_id)
    except SQLAlchemyError:
        db.rollback()
        logger.warning("supervisor_lookup_failed", code=AttendanceErrorCode.lookup_failure.value,
                       supervisor_id=supervisor_id, exc_info=True)
        return dict(PLACEHOLDER_SUPERVISOR)
    if supervisor is None:
        logger.info("supervisor_not_found", code=AttendanceErrorCode.lookup_failure.value, supervisor_id=supervisor_id)
        return dict(PLACEHOLDER_SUPERVISOR)
    return {
        "name": supervisor.full_name or PLACEHOLDER_SUPERVISOR["name"],
        "phone": supervisor.phone or "N/A",
        "email": supervisor.email or "N/A",
    }


def resolve_project_name(db: Session, project_id: Optional[int]) -> str:
    if not project_id:
        return PLACEHOLDER_PROJECT_NAME
    try:
        project = db.get(Project, project_id)
    except SQLAlchemyError:
        db.rollback()
        logger.warning("project_lookup_failed", code=AttendanceErrorCode.lookup_failure.value,
                       project_id=project_id, exc_info=True)
        return PLACEHOLDER_PROJECT_NAME
    if project is None:
        return PLACEHOLDER_PROJECT_NAME
    return project.name


def _clock_label(now_local: datetime) -> str:
    return format_clock(now_local.time())


def _base_payload(db: Session, now_local: datetime, project_id: Optional[int], supervisor_id: Optional[int]) -> Dict[str, Any]:
    return {
        "timestamp": now_local.isoformat(),
        "projectId": project_id,
        "projectName": resolve_project_name(db, project_id),
        "supervisorContact": resolve_supervisor_contact(db, supervisor_id),
        "actionUrl": ACTION_URL_WORKER,
    }


def missed_login_alert(
    db: Session,
    worker_id: int,
    project_id: int,
    supervisor_id: Optional[int],
    scheduled_start_label: str,
    now_local: datetime,
) -> AlertRequest:
    current_time = _clock_label(now_local)
    payload = _base_payload(db, now_local, project_id, supervisor_id)
    payload.update(scheduledStartTime=scheduled_start_label, currentTime=current_time)
    return AlertRequest(
        alert_type=AlertType.missed_login,
        worker_id=worker_id,
        supervisor_id=supervisor_id,
        priority=AlertPriority.high,
        requires_acknowledgment=True,
        title="Missed Login Alert",
        message=(
            f"You missed your scheduled login time ({scheduled_start_label}). Current time: {current_time}. "
            "Please check in immediately to avoid attendance issues."
        ),
        payload=payload,
    )


def missed_logout_alert(
    db: Session,
    worker_id: int,
    project_id: int,
    supervisor_id: Optional[int],
    scheduled_end_label: str,
    now_local: datetime,
) -> AlertRequest:
    current_time = _clock_label(now_local)
    payload = _base_payload(db, now_local, project_id, supervisor_id)
    payload.update(scheduledEndTime=scheduled_end_label, currentTime=current_time)
    return AlertRequest(
        alert_type=AlertType.missed_logout,
        worker_id=worker_id,
        supervisor_id=supervisor_id,
        priority=AlertPriority.high,
        requires_acknowledgment=True,
        title="Logout Reminder",
        message=(
            f"You haven't logged out yet. Scheduled end time was {scheduled_end_label}. "
            f"Current time: {current_time}. Please log out to complete your attendance."
        ),
        payload=payload,
    )


def lunch_reminder_alert(
    db: Session,
    worker_id: int,
    project_id: int,
    supervisor_id: Optional[int],
    lunch_time_label: str,
    break_duration_label: str,
    lead_minutes: int,
    now_local: datetime,
) -> AlertRequest:
    payload = _base_payload(db, now_local, project_id, supervisor_id)
    payload.update(lunchBreakTime=lunch_time_label, breakDuration=break_duration_label)
    return AlertRequest(
        alert_type=AlertType.lunch_break_reminder,
        worker_id=worker_id,
        supervisor_id=supervisor_id,
        priority=AlertPriority.normal,
        requires_acknowledgment=False,
        title="Lunch Break Reminder",
        message=(
            f"Lunch break starts in {lead_minutes} minutes at {lunch_time_label}. "
            f"Duration: {break_duration_label}. Remember to log your break time."
        ),
        payload=payload,
    )


def overtime_alert(
    db: Session,
    worker_id: int,
    supervisor_id: Optional[int],
    overtime_type: str,
    overtime_info: Dict[str, Any],
    now_local: datetime,
) -> AlertRequest:
    """
    Overtime START/END notice.

    Raises:
        ValueError: if overtime_type is not START or END
    """
    if overtime_type == "START":
        alert_type = AlertType.overtime_start
        title = "Overtime Period Started"
        message = (
            "Your overtime period has started. Please ensure proper time tracking. "
            f"Expected duration: {overtime_info.get('expectedDuration') or 'TBD'}."
        )
    elif overtime_type == "END":
        alert_type = AlertType.overtime_end
        title = "Overtime Period Ended"
        message = "Your overtime period has ended. Please log out and submit your overtime hours for approval."
    else:
        raise ValueError(f"Invalid overtime type: {overtime_type}")

    project_id = overtime_info.get("projectId")
    payload = _base_payload(db, now_local, project_id, supervisor_id)
    payload.update(
        overtimeStartTime=overtime_info.get("startTime"),
        overtimeEndTime=overtime_info.get("endTime"),
        expectedDuration=overtime_info.get("expectedDuration"),
        overtimeReason=overtime_info.get("reason"),
    )
    return AlertRequest(
        alert_type=alert_type,
        worker_id=worker_id,
        supervisor_id=supervisor_id,
        priority=AlertPriority.normal,
        requires_acknowledgment=False,
        title=title,
        message=message,
        payload=payload,
    )


def geofence_violation_alerts(
    db: Session,
    worker: Employee,
    project: Project,
    supervisor_id: Optional[int],
    location: GeoPoint,
    accuracy_m: Optional[float],
    fence: Geofence,
    validation: GeofenceValidation,
    now_local: datetime,
) -> List[AlertRequest]:
    """Worker alert (acknowledgment required) plus a companion notice to the supervisor."""
    distance = round(validation.distance)
    project_name = project.name or "work site"
    payload = _base_payload(db, now_local, project.id, supervisor_id)
    payload.update(
        currentLocation={
            "latitude": location.latitude,
            "longitude": location.longitude,
            "accuracy": accuracy_m,
        },
        projectLocation={
            "latitude": fence.center.latitude,
            "longitude": fence.center.longitude,
            "radius": fence.radius_meters,
        },
        distance=validation.distance,
    )
    alerts = [
        AlertRequest(
            alert_type=AlertType.geofence_violation,
            worker_id=worker.id,
            supervisor_id=supervisor_id,
            priority=AlertPriority.high,
            requires_acknowledgment=True,
            title="Geofence Violation Alert",
            message=(
                f"You are outside the authorized work area for {project_name}. Distance: {distance}m. "
                "Please return to the designated area immediately."
            ),
            payload=payload,
        )
    ]
    if supervisor_id:
        alerts.append(
            AlertRequest(
                alert_type=AlertType.geofence_violation,
                worker_id=worker.id,
                supervisor_id=supervisor_id,
                priority=AlertPriority.high,
                requires_acknowledgment=False,
                title="Worker Geofence Violation",
                message=f"{worker.full_name} is outside the authorized work area for {project_name}. Distance: {distance}m.",
                payload={
                    **payload,
                    "workerName": worker.full_name,
                    "workerId": worker.id,
                    "actionUrl": ACTION_URL_SUPERVISOR,
                },
                recipients=[supervisor_id],
                sender_id=worker.id,
            )
        )
    return alerts
