"""
Attendance alert scheduler.
Wakes on a fixed interval and recomputes, from today's assignments and
attendance records, which workers need a missed-login, missed-logout,
lunch-reminder or overtime alert. Nothing is remembered between wakes;
de-duplication of repeats is left to the notification service.
"""
import math
import threading
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

import pytz
import structlog
from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import AttendanceRecord, TaskAssignment
from ..schemas.attendance import AlertType
from .attendance_alerts import (
    lunch_reminder_alert,
    missed_login_alert,
    missed_logout_alert,
    overtime_alert,
)
from .attendance_store import list_assignments, list_records_for_date
from .notifications import AlertDispatcher, AlertRequest
from .time_rules import ensure_utc, format_clock, utc_now, utc_to_local


logger = structlog.get_logger(__name__)

JOB_ID = "attendance_alert_check"

RESULT_KEYS = {
    AlertType.missed_login: "missedLoginAlerts",
    AlertType.missed_logout: "missedLogoutAlerts",
    AlertType.lunch_break_reminder: "lunchBreakReminders",
    AlertType.overtime_start: "overtimeAlerts",
}


@dataclass(frozen=True)
class AlertRules:
    """Deployment business hours, all in local wall-clock time."""
    scheduled_start: time
    scheduled_end: time
    missed_login_grace_min: int
    missed_logout_grace_min: int
    lunch_time: time
    lunch_reminder_lead_min: int
    lunch_reminder_window_min: int
    lunch_break_duration_label: str
    overtime_start_hour: int

    @classmethod
    def from_settings(cls) -> "AlertRules":
        return cls(
            scheduled_start=settings.scheduled_start_default,
            scheduled_end=settings.scheduled_end_default,
            missed_login_grace_min=settings.missed_login_grace_min,
            missed_logout_grace_min=settings.missed_logout_grace_min,
            lunch_time=settings.lunch_time,
            lunch_reminder_lead_min=settings.lunch_reminder_lead_min,
            lunch_reminder_window_min=settings.lunch_reminder_window_min,
            lunch_break_duration_label=settings.lunch_break_duration_label,
            overtime_start_hour=settings.overtime_start_hour,
        )


@dataclass(frozen=True)
class AlertCandidate:
    alert_type: AlertType
    worker_id: int
    project_id: int
    supervisor_id: Optional[int]
    reference_time: Optional[time] = None  # scheduled start/end the alert refers to


def _at(day: date, value: time) -> datetime:
    return datetime.combine(day, value)


def wake_anchor(tz, now_local: datetime, rules: AlertRules, interval_minutes: int) -> datetime:
    """
    Start date of the interval job.

    Wakes are phased on the lunch reminder's center time (lunch time minus
    lead) so one wake always lands in the reminder window, whatever the
    window width. The anchor is moved back whole intervals to not be later
    than now_local.
    """
    anchor = tz.localize(datetime.combine(now_local.date(), rules.lunch_time))
    anchor -= timedelta(minutes=rules.lunch_reminder_lead_min)
    step = timedelta(minutes=interval_minutes)
    if anchor > now_local:
        anchor -= step * math.ceil((anchor - now_local) / step)
    return anchor


def in_lunch_reminder_window(wall_clock: datetime, rules: AlertRules) -> bool:
    """Window of lunch_reminder_window_min centered lunch_reminder_lead_min before lunch, bounds inclusive."""
    center = _at(wall_clock.date(), rules.lunch_time) - timedelta(minutes=rules.lunch_reminder_lead_min)
    half = timedelta(minutes=rules.lunch_reminder_window_min / 2)
    return center - half <= wall_clock <= center + half


def evaluate_alerts(
    now_local: datetime,
    assignments: Iterable[TaskAssignment],
    records: Iterable[AttendanceRecord],
    rules: AlertRules,
) -> List[AlertCandidate]:
    """
    Decide which alerts are due at now_local.

    Pure function of its inputs: assignments and records are today's rows,
    now_local is the deployment wall-clock time.
    """
    today = now_local.date()
    wall_clock = now_local.replace(tzinfo=None)
    assignments = [a for a in assignments if a.date == today]
    records = [r for r in records if r.date == today]

    by_key = {}
    for assignment in assignments:
        by_key.setdefault((assignment.employee_id, assignment.project_id), assignment)

    # Any check-in today, on any project, suppresses the missed-login alert
    checked_in_workers = {r.employee_id for r in records if r.check_in is not None}
    open_records = [r for r in records if r.check_in is not None and r.check_out is None]

    candidates = []

    login_grace = timedelta(minutes=rules.missed_login_grace_min)
    for (worker_id, project_id), assignment in by_key.items():
        if worker_id in checked_in_workers:
            continue
        start = assignment.scheduled_start or rules.scheduled_start
        if wall_clock >= _at(today, start) + login_grace:
            candidates.append(AlertCandidate(
                alert_type=AlertType.missed_login,
                worker_id=worker_id,
                project_id=project_id,
                supervisor_id=assignment.supervisor_id,
                reference_time=start,
            ))

    logout_grace = timedelta(minutes=rules.missed_logout_grace_min)
    for record in open_records:
        assignment = by_key.get((record.employee_id, record.project_id))
        end = assignment.scheduled_end if assignment and assignment.scheduled_end else rules.scheduled_end
        if wall_clock >= _at(today, end) + logout_grace:
            candidates.append(AlertCandidate(
                alert_type=AlertType.missed_logout,
                worker_id=record.employee_id,
                project_id=record.project_id,
                supervisor_id=assignment.supervisor_id if assignment else None,
                reference_time=end,
            ))

    if in_lunch_reminder_window(wall_clock, rules):
        for record in open_records:
            assignment = by_key.get((record.employee_id, record.project_id))
            candidates.append(AlertCandidate(
                alert_type=AlertType.lunch_break_reminder,
                worker_id=record.employee_id,
                project_id=record.project_id,
                supervisor_id=assignment.supervisor_id if assignment else None,
                reference_time=rules.lunch_time,
            ))

    if now_local.hour == rules.overtime_start_hour:
        for record in open_records:
            assignment = by_key.get((record.employee_id, record.project_id))
            candidates.append(AlertCandidate(
                alert_type=AlertType.overtime_start,
                worker_id=record.employee_id,
                project_id=record.project_id,
                supervisor_id=assignment.supervisor_id if assignment else None,
            ))

    return candidates


def build_alert(db: Session, candidate: AlertCandidate, now_local: datetime, rules: AlertRules) -> AlertRequest:
    if candidate.alert_type == AlertType.missed_login:
        return missed_login_alert(
            db, candidate.worker_id, candidate.project_id, candidate.supervisor_id,
            format_clock(candidate.reference_time), now_local,
        )
    if candidate.alert_type == AlertType.missed_logout:
        return missed_logout_alert(
            db, candidate.worker_id, candidate.project_id, candidate.supervisor_id,
            format_clock(candidate.reference_time), now_local,
        )
    if candidate.alert_type == AlertType.lunch_break_reminder:
        return lunch_reminder_alert(
            db, candidate.worker_id, candidate.project_id, candidate.supervisor_id,
            format_clock(rules.lunch_time), rules.lunch_break_duration_label,
            rules.lunch_reminder_lead_min, now_local,
        )
    if candidate.alert_type == AlertType.overtime_start:
        return overtime_alert(
            db, candidate.worker_id, candidate.supervisor_id, "START",
            {"projectId": candidate.project_id, "startTime": now_local.isoformat()},
            now_local,
        )
    raise ValueError(f"Unsupported scheduled alert type: {candidate.alert_type}")


class AlertScheduler:
    """
    Process-wide alert loop with an explicit start/stop/status lifecycle.

    The interval job runs with max_instances=1 and run_once holds a
    non-blocking lock, so a manual check and a timer wake never overlap.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        dispatcher: AlertDispatcher,
        rules: Optional[AlertRules] = None,
        clock: Callable[[], datetime] = utc_now,
        timezone_str: Optional[str] = None,
    ):
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self.rules = rules or AlertRules.from_settings()
        self._clock = clock
        self.timezone_str = timezone_str or settings.tz_default
        self._scheduler: Optional[BackgroundScheduler] = None
        self._interval_minutes = settings.alert_check_interval_min
        self._state_lock = threading.Lock()
        self._wake_lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self, interval_minutes: Optional[int] = None, run_immediately: bool = True) -> bool:
        """Start the recurring check. Returns False (with a warning) if already running."""
        with self._state_lock:
            if self.is_running:
                logger.warning("alert_scheduler_already_running", interval_minutes=self._interval_minutes)
                return False
            interval = interval_minutes or settings.alert_check_interval_min
            tz = pytz.timezone(self.timezone_str)
            now_local = datetime.now(tz)
            scheduler = BackgroundScheduler(timezone=tz)
            scheduler.add_job(
                self._wake,
                "interval",
                minutes=interval,
                start_date=wake_anchor(tz, now_local, self.rules, interval),
                id=JOB_ID,
                max_instances=1,
                coalesce=True,
                misfire_grace_time=60,
            )
            if run_immediately:
                scheduler.add_job(
                    self._wake,
                    "date",
                    run_date=now_local,
                    id=f"{JOB_ID}_initial",
                    misfire_grace_time=60,
                )
            scheduler.start()
            self._scheduler = scheduler
            self._interval_minutes = interval
            logger.info("alert_scheduler_started", interval_minutes=interval, timezone=self.timezone_str)
            return True

    def stop(self) -> bool:
        """Stop the recurring check. Returns False (with a warning) if not running."""
        with self._state_lock:
            if not self.is_running:
                logger.warning("alert_scheduler_not_running")
                return False
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("alert_scheduler_stopped")
            return True

    def status(self) -> Dict[str, Any]:
        next_check = None
        if self.is_running:
            job = self._scheduler.get_job(JOB_ID)
            if job is not None and job.next_run_time is not None:
                next_check = ensure_utc(job.next_run_time).isoformat()
        return {
            "isRunning": self.is_running,
            "checkIntervalMinutes": self._interval_minutes,
            "nextCheckAt": next_check,
        }

    def _wake(self) -> None:
        try:
            self.run_once()
        except Exception:
            logger.exception("alert_scheduler_wake_crashed")

    def run_once(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        One scheduler pass.

        Returns:
            Counts per alert rule, failures, total sent and the wake timestamp;
            success is False when candidates could not be loaded or a
            previous pass is still running.
        """
        if not self._wake_lock.acquire(blocking=False):
            logger.warning("alert_scheduler_wake_skipped", reason="previous wake still running")
            return {
                "success": False,
                "skipped": True,
                "message": "Previous alert check is still running",
            }
        try:
            return self._run(ensure_utc(now or self._clock()))
        finally:
            self._wake_lock.release()

    def _run(self, now: datetime) -> Dict[str, Any]:
        now_local = utc_to_local(now, self.timezone_str)
        results = {
            "success": True,
            "missedLoginAlerts": 0,
            "missedLogoutAlerts": 0,
            "lunchBreakReminders": 0,
            "overtimeAlerts": 0,
            "failures": 0,
            "totalNotificationsSent": 0,
            "timestamp": now.isoformat(),
        }

        db = self._session_factory()
        try:
            try:
                today = now_local.date()
                assignments = list_assignments(db, today)
                records = list_records_for_date(db, today)
            except SQLAlchemyError:
                db.rollback()
                logger.exception("alert_scheduler_wake_failed", operation="load_alert_candidates")
                results["success"] = False
                results["message"] = "Storage unavailable while loading alert candidates"
                return results

            for candidate in evaluate_alerts(now_local, assignments, records, self.rules):
                try:
                    alert = build_alert(db, candidate, now_local, self.rules)
                    self._dispatcher.dispatch(alert)
                except Exception:
                    results["failures"] += 1
                    logger.exception(
                        "alert_dispatch_failed",
                        alert_type=candidate.alert_type.value,
                        worker_id=candidate.worker_id,
                        project_id=candidate.project_id,
                    )
                    continue
                results[RESULT_KEYS[candidate.alert_type]] += 1
                results["totalNotificationsSent"] += 1
        finally:
            db.close()

        logger.info(
            "alert_scheduler_wake",
            local_time=now_local.isoformat(),
            missed_login=results["missedLoginAlerts"],
            missed_logout=results["missedLogoutAlerts"],
            lunch_reminders=results["lunchBreakReminders"],
            overtime=results["overtimeAlerts"],
            failures=results["failures"],
        )
        return results
