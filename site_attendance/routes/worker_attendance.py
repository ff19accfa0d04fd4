"""
Worker attendance API routes.
Dedicated clock-in, lunch and clock-out endpoints used by the worker app,
plus today's status and paginated history.
"""
import math
from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from ..auth.security import get_current_employee
from ..db import get_db
from ..models.models import Employee
from ..schemas.attendance import AttendanceAction, LocationPayload, SessionState
from ..services.attendance_state import (
    derive_session,
    lunch_duration,
    perform_action,
    serialize_record,
    worked_duration,
    worked_hours,
)
from ..services.attendance_store import get_today_record, list_history
from ..services.geofence import GeoPoint, validate_geofence
from ..services.notifications import AlertDispatcher
from ..services.time_rules import isoformat_utc, local_today, request_time
from .attendance import (
    geofence_or_404,
    get_alert_dispatcher,
    project_names,
    project_or_404,
    rejection_exception,
    storage_guard,
    today_body,
    validation_body,
)


router = APIRouter(prefix="/worker/attendance", tags=["worker-attendance"])


def _run_action(
    action: AttendanceAction,
    payload: LocationPayload,
    db: Session,
    employee: Employee,
    dispatcher: AlertDispatcher,
    now: datetime,
):
    with storage_guard(db, action.value.lower()):
        result = perform_action(
            db, employee, payload.project_id, action,
            GeoPoint(payload.latitude, payload.longitude), payload.accuracy, now, dispatcher,
        )
    if not result.ok:
        raise rejection_exception(result)
    return result


def _success_body(result, payload: LocationPayload) -> dict:
    return {
        "success": True,
        "message": result.message,
        "session": result.session.value,
        "projectId": payload.project_id,
        "insideGeofence": result.validation.inside_geofence,
        "distance": round(result.validation.distance, 2),
    }


@router.post("/validate-location")
def validate_location(
    payload: LocationPayload,
    db: Session = Depends(get_db),
    employee: Employee = Depends(get_current_employee),
):
    with storage_guard(db, "validate_location"):
        project = project_or_404(db, employee, payload.project_id)
    fence = geofence_or_404(project)
    validation = validate_geofence(GeoPoint(payload.latitude, payload.longitude), fence, payload.accuracy)
    body = validation_body(validation, payload.accuracy)
    body.update(
        valid=validation.is_valid,
        projectGeofence={
            "center": {"latitude": fence.center.latitude, "longitude": fence.center.longitude},
            "radius": fence.radius_meters,
            "strictMode": fence.strict_mode,
            "allowedVariance": fence.allowed_variance_meters,
        },
    )
    return body


@router.post("/clock-in")
def clock_in(
    payload: LocationPayload,
    db: Session = Depends(get_db),
    employee: Employee = Depends(get_current_employee),
    dispatcher: AlertDispatcher = Depends(get_alert_dispatcher),
    now: datetime = Depends(request_time),
):
    result = _run_action(AttendanceAction.clock_in, payload, db, employee, dispatcher, now)
    body = _success_body(result, payload)
    body["checkInTime"] = isoformat_utc(result.record.check_in)
    return body


@router.post("/lunch-start")
def lunch_start(
    payload: LocationPayload,
    db: Session = Depends(get_db),
    employee: Employee = Depends(get_current_employee),
    dispatcher: AlertDispatcher = Depends(get_alert_dispatcher),
    now: datetime = Depends(request_time),
):
    result = _run_action(AttendanceAction.lunch_start, payload, db, employee, dispatcher, now)
    body = _success_body(result, payload)
    body["lunchStartTime"] = isoformat_utc(result.record.lunch_start_time)
    return body


@router.post("/lunch-end")
def lunch_end(
    payload: LocationPayload,
    db: Session = Depends(get_db),
    employee: Employee = Depends(get_current_employee),
    dispatcher: AlertDispatcher = Depends(get_alert_dispatcher),
    now: datetime = Depends(request_time),
):
    result = _run_action(AttendanceAction.lunch_end, payload, db, employee, dispatcher, now)
    body = _success_body(result, payload)
    body["lunchEndTime"] = isoformat_utc(result.record.lunch_end_time)
    body["lunchDuration"] = round(lunch_duration(result.record, now).total_seconds() / 60)
    return body


@router.post("/clock-out")
def clock_out(
    payload: LocationPayload,
    db: Session = Depends(get_db),
    employee: Employee = Depends(get_current_employee),
    dispatcher: AlertDispatcher = Depends(get_alert_dispatcher),
    now: datetime = Depends(request_time),
):
    result = _run_action(AttendanceAction.clock_out, payload, db, employee, dispatcher, now)
    body = _success_body(result, payload)
    body["checkOutTime"] = isoformat_utc(result.record.check_out)
    body["totalHours"] = worked_hours(result.record, now)
    return body


@router.get("/today")
def today(
    project_id: Optional[int] = Query(None, alias="projectId"),
    db: Session = Depends(get_db),
    employee: Employee = Depends(get_current_employee),
    now: datetime = Depends(request_time),
):
    with storage_guard(db, "attendance_today"):
        return today_body(db, employee, now, project_id)


@router.get("/status")
def status(
    project_id: Optional[int] = Query(None, alias="projectId"),
    db: Session = Depends(get_db),
    employee: Employee = Depends(get_current_employee),
    now: datetime = Depends(request_time),
):
    with storage_guard(db, "attendance_status"):
        record = get_today_record(db, employee.id, local_today(now), project_id)
    session = derive_session(record)
    return {
        "currentStatus": session.value,
        "session": session.value,
        "isOnLunchBreak": session == SessionState.on_lunch,
        "hoursWorked": worked_hours(record, now),
        "workDuration": round(worked_duration(record, now).total_seconds() / 60),
        "lunchDuration": round(lunch_duration(record, now).total_seconds() / 60),
        "pendingCheckout": bool(record.pending_checkout) if record else False,
        "checkInTime": isoformat_utc(record.check_in) if record else None,
        "checkOutTime": isoformat_utc(record.check_out) if record else None,
        "projectId": record.project_id if record else project_id,
        "date": local_today(now).isoformat(),
    }


@router.get("/history")
def history(
    project_id: Optional[int] = Query(None, alias="projectId"),
    start_date: Optional[date] = Query(None, alias="startDate"),
    end_date: Optional[date] = Query(None, alias="endDate"),
    limit: int = Query(30, ge=1, le=200),
    page: int = Query(1, ge=1),
    db: Session = Depends(get_db),
    employee: Employee = Depends(get_current_employee),
    now: datetime = Depends(request_time),
):
    if start_date and end_date and start_date > end_date:
        raise HTTPException(status_code=400, detail="startDate must not be after endDate")
    with storage_guard(db, "attendance_history"):
        records, total = list_history(db, employee.id, project_id, start_date, end_date, limit, page)
        names = project_names(db, (r.project_id for r in records))
    return {
        "records": [serialize_record(r, now, names.get(r.project_id)) for r in records],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "totalPages": math.ceil(total / limit) if total else 0,
        },
    }
