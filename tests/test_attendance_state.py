from datetime import timedelta

import pytest

from site_attendance.models.models import AttendanceRecord, AuditLog, Employee, LocationLog
from site_attendance.schemas.attendance import AttendanceAction, AttendanceErrorCode, SessionState
from site_attendance.services.attendance_state import (
    check_transition,
    derive_session,
    log_location,
    lunch_duration,
    perform_action,
    project_geofence,
    serialize_record,
    worked_duration,
    worked_hours,
)
from site_attendance.services.geofence import GeoPoint
from site_attendance.services.time_rules import ensure_utc

from conftest import SITE_CENTER, WORK_DAY


ON_SITE = GeoPoint(*SITE_CENTER)
OFF_SITE = GeoPoint(1.4000, 103.9000)


def act(db, seed, action, now, location=ON_SITE, accuracy=None, dispatcher=None, employee_id=None, project_id=None):
    employee = db.get(Employee, employee_id or seed.worker_id)
    return perform_action(
        db, employee, project_id or seed.project_id, action, location, accuracy, now, dispatcher,
    )


def records(db):
    return db.query(AttendanceRecord).all()


# Derivation

def test_no_record_is_not_logged_in():
    assert derive_session(None) == SessionState.not_logged_in


@pytest.mark.parametrize("fields,expected", [
    ({}, SessionState.not_logged_in),
    ({"check_in": 8}, SessionState.checked_in),
    ({"check_in": 8, "lunch_start_time": 12}, SessionState.on_lunch),
    ({"check_in": 8, "lunch_start_time": 12, "lunch_end_time": 13}, SessionState.checked_in),
    ({"check_in": 8, "check_out": 17}, SessionState.checked_out),
    ({"check_in": 8, "lunch_start_time": 12, "lunch_end_time": 13, "check_out": 17}, SessionState.checked_out),
])
def test_session_is_derived_from_timestamps(at, fields, expected):
    record = AttendanceRecord(**{name: at(hour) for name, hour in fields.items()})
    assert derive_session(record) == expected


def test_derivation_depends_only_on_timestamps(at):
    stamps = {"check_in": at(8), "lunch_start_time": at(12)}
    a = AttendanceRecord(employee_id=1, project_id=1, date=WORK_DAY, pending_checkout=True, **stamps)
    b = AttendanceRecord(employee_id=2, project_id=9, date=WORK_DAY, pending_checkout=False, **stamps)
    assert derive_session(a).value == derive_session(b).value == "ON_LUNCH"


def test_worked_duration_subtracts_lunch(at):
    record = AttendanceRecord(
        check_in=at(8), lunch_start_time=at(12), lunch_end_time=at(13), check_out=at(17),
    )
    assert worked_duration(record, at(20)) == timedelta(hours=8)
    assert worked_hours(record, at(20)) == 8.0
    assert lunch_duration(record, at(20)) == timedelta(hours=1)


def test_open_lunch_and_open_shift_run_to_now(at):
    record = AttendanceRecord(check_in=at(8), lunch_start_time=at(12))
    assert lunch_duration(record, at(12, 30)) == timedelta(minutes=30)
    assert worked_duration(record, at(12, 30)) == timedelta(hours=4)


def test_worked_duration_before_check_in_is_zero(at):
    assert worked_duration(None, at(9)) == timedelta(0)
    assert worked_hours(AttendanceRecord(), at(9)) == 0.0


def test_check_transition_orders_not_clocked_in_before_other_guards():
    code, message = check_transition(None, AttendanceAction.clock_out)
    assert code == AttendanceErrorCode.not_clocked_in
    assert message == "Cannot clock out before clocking in"


# Transitions against the store

def test_full_day_yields_eight_hours(db, seed, at):
    assert act(db, seed, AttendanceAction.clock_in, at(8)).ok
    assert act(db, seed, AttendanceAction.lunch_start, at(12)).ok
    assert act(db, seed, AttendanceAction.lunch_end, at(13)).ok
    result = act(db, seed, AttendanceAction.clock_out, at(17))

    assert result.ok
    assert result.session == SessionState.checked_out
    record = result.record
    assert ensure_utc(record.check_out) > ensure_utc(record.check_in)
    assert ensure_utc(record.lunch_end_time) > ensure_utc(record.lunch_start_time)
    assert worked_hours(record, at(23)) == 8.0
    assert record.inside_geofence_at_checkin is True
    assert record.inside_geofence_at_checkout is True
    assert record.pending_checkout is False


def test_double_clock_in_is_rejected_and_keeps_first_timestamp(db, seed, at):
    first = act(db, seed, AttendanceAction.clock_in, at(8))
    second = act(db, seed, AttendanceAction.clock_in, at(8, 1))

    assert first.ok
    assert not second.ok
    assert second.code == AttendanceErrorCode.invalid_transition
    assert second.message == "Already checked in today"
    rows = records(db)
    assert len(rows) == 1
    assert ensure_utc(rows[0].check_in) == at(8)


def test_clock_in_outside_geofence_is_rejected(db, seed, at, dispatcher, notifier):
    result = act(db, seed, AttendanceAction.clock_in, at(8), location=OFF_SITE, dispatcher=dispatcher)

    assert not result.ok
    assert result.code == AttendanceErrorCode.outside_geofence
    assert result.validation.inside_geofence is False
    assert result.details["distance"] > 100
    assert records(db) == []
    # Worker alert plus the supervisor's companion notice
    assert notifier.alert_types() == ["GEOFENCE_VIOLATION", "GEOFENCE_VIOLATION"]
    assert notifier.calls[0]["recipients"] == [seed.worker_id]
    assert notifier.calls[0]["requires_acknowledgment"] is True
    assert notifier.calls[1]["recipients"] == [seed.supervisor_id]
    assert notifier.calls[1]["requires_acknowledgment"] is False


def test_violation_alert_failure_does_not_change_rejection(db, seed, at, dispatcher, notifier):
    notifier.fail_for = {seed.worker_id, seed.supervisor_id}
    result = act(db, seed, AttendanceAction.clock_in, at(8), location=OFF_SITE, dispatcher=dispatcher)
    assert result.code == AttendanceErrorCode.outside_geofence
    assert notifier.calls == []


def test_low_accuracy_rejection_does_not_raise_violation(db, seed, at, dispatcher, notifier):
    result = act(db, seed, AttendanceAction.clock_in, at(8), accuracy=250, dispatcher=dispatcher)
    assert result.code == AttendanceErrorCode.outside_geofence
    assert "GPS accuracy too low" in result.message
    assert notifier.calls == []


def test_clock_in_without_assignment(db, seed, at):
    result = act(db, seed, AttendanceAction.clock_in, at(8), project_id=seed.other_project_id)
    assert result.code == AttendanceErrorCode.no_task_assigned
    assert result.details["availableProjects"] == [seed.project_id]
    assert records(db) == []


def test_project_of_another_company_is_not_found(db, seed, at):
    result = act(db, seed, AttendanceAction.clock_in, at(8), project_id=seed.foreign_project_id)
    assert result.code == AttendanceErrorCode.lookup_failure
    assert result.status_code == 404


@pytest.mark.parametrize("action", [
    AttendanceAction.lunch_start, AttendanceAction.lunch_end, AttendanceAction.clock_out,
])
def test_actions_before_clock_in_need_a_check_in(db, seed, at, action):
    result = act(db, seed, action, at(9))
    assert result.code == AttendanceErrorCode.not_clocked_in
    assert records(db) == []


def test_clock_out_during_lunch_is_rejected(db, seed, at):
    act(db, seed, AttendanceAction.clock_in, at(8))
    act(db, seed, AttendanceAction.lunch_start, at(12))
    result = act(db, seed, AttendanceAction.clock_out, at(12, 30))
    assert result.code == AttendanceErrorCode.invalid_transition
    assert result.message == "End lunch break before clocking out"


def test_only_one_lunch_break_per_day(db, seed, at):
    act(db, seed, AttendanceAction.clock_in, at(8))
    act(db, seed, AttendanceAction.lunch_start, at(12))
    act(db, seed, AttendanceAction.lunch_end, at(13))
    result = act(db, seed, AttendanceAction.lunch_start, at(15))
    assert result.code == AttendanceErrorCode.invalid_transition
    assert result.message == "Lunch break already taken today"


def test_ending_lunch_that_never_started(db, seed, at):
    act(db, seed, AttendanceAction.clock_in, at(8))
    result = act(db, seed, AttendanceAction.lunch_end, at(13))
    assert result.code == AttendanceErrorCode.invalid_transition
    assert result.message == "Lunch break not started"


def test_nothing_after_clock_out(db, seed, at):
    act(db, seed, AttendanceAction.clock_in, at(8))
    act(db, seed, AttendanceAction.clock_out, at(17))
    for action in AttendanceAction:
        result = act(db, seed, action, at(18))
        assert result.code == AttendanceErrorCode.invalid_transition


def test_timestamps_never_move_backwards(db, seed, at):
    act(db, seed, AttendanceAction.clock_in, at(8))
    result = act(db, seed, AttendanceAction.lunch_start, at(7, 59))
    assert result.code == AttendanceErrorCode.invalid_transition
    record = records(db)[0]
    assert record.lunch_start_time is None


def test_transition_writes_location_and_audit_entries(db, seed, at):
    result = act(db, seed, AttendanceAction.clock_in, at(8), accuracy=12)
    logs = db.query(LocationLog).all()
    audits = db.query(AuditLog).filter(AuditLog.entity_type == "attendance").all()

    assert [log.log_type for log in logs] == ["CHECK_IN"]
    assert len(audits) == 1
    assert audits[0].action == "CLOCK_IN"
    assert audits[0].entity_id == result.record.id
    assert audits[0].integrity_hash
    assert audits[0].changes_json["check_in"]["before"] is None


def test_log_location_records_track_sample_and_alerts_when_outside(db, seed, at, dispatcher, notifier):
    act(db, seed, AttendanceAction.clock_in, at(8))
    employee = db.get(Employee, seed.worker_id)

    inside = log_location(db, employee, seed.project_id, ON_SITE, 5, at(10), dispatcher)
    outside = log_location(db, employee, seed.project_id, OFF_SITE, 5, at(11), dispatcher)

    assert inside.ok and inside.validation.inside_geofence
    assert outside.ok and not outside.validation.inside_geofence
    assert db.query(LocationLog).filter(LocationLog.log_type == "TRACK").count() == 2
    assert notifier.alert_types() == ["GEOFENCE_VIOLATION", "GEOFENCE_VIOLATION"]
    record = records(db)[0]
    assert float(record.last_latitude) == pytest.approx(OFF_SITE.latitude)


def test_project_geofence_uses_defaults_for_missing_values(db, seed):
    from site_attendance.models.models import Project

    project = db.get(Project, seed.foreign_project_id)
    fence = project_geofence(project)
    assert fence.radius_meters == 100
    assert fence.strict_mode is True
    assert fence.allowed_variance_meters == 10


def test_serialize_record_reports_durations(db, seed, at):
    act(db, seed, AttendanceAction.clock_in, at(8))
    act(db, seed, AttendanceAction.lunch_start, at(12))
    act(db, seed, AttendanceAction.lunch_end, at(12, 45))
    record = act(db, seed, AttendanceAction.clock_out, at(17)).record

    data = serialize_record(record, at(18), "Marina Bay Tower")
    assert data["session"] == "CHECKED_OUT"
    assert data["lunchDuration"] == 45
    assert data["workDuration"] == 8 * 60 + 15
    assert data["totalHours"] == 8.25
    assert data["date"] == WORK_DAY.isoformat()
    assert data["projectName"] == "Marina Bay Tower"
