import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["ALERT_SCHEDULER_ENABLED"] = "false"
os.environ["TZ_DEFAULT"] = "Asia/Singapore"

from datetime import date, datetime, time
from types import SimpleNamespace

import pytest
import pytz
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from site_attendance.auth.security import create_access_token
from site_attendance.db import Base, get_db
from site_attendance.main import create_app
from site_attendance.models.models import Employee, Project, TaskAssignment
from site_attendance.services.notifications import AlertDispatcher
from site_attendance.config import settings
from site_attendance.services.time_rules import request_time


WORK_DAY = date(2025, 3, 10)
SITE_CENTER = (1.3521, 103.8198)
COMPANY_ID = 1


class RecordingNotificationService:
    """Stands in for the push/notification backend and records every request."""

    def __init__(self):
        self.calls = []
        self.fail_for = set()

    def create_notification(self, **kwargs):
        if set(kwargs["recipients"]) & self.fail_for:
            raise RuntimeError("push gateway unavailable")
        self.calls.append(kwargs)
        return {
            "notifications": [{"recipientId": r, "status": "pending"} for r in kwargs["recipients"]],
            "audit_records": [],
        }

    def alert_types(self):
        return [c["action_data"]["alertType"] for c in self.calls]


@pytest.fixture
def at():
    """UTC instant for a local wall-clock time on the work day."""
    def _at(hour, minute=0, second=0, day=WORK_DAY):
        local = pytz.timezone(settings.tz_default).localize(datetime.combine(day, time(hour, minute, second)))
        return local.astimezone(pytz.UTC)
    return _at


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def seed(db):
    supervisor = Employee(
        user_id=100, company_id=COMPANY_ID, full_name="Sam Supervisor", role="supervisor",
        status="active", phone="+65 6555 0100", email="sam.supervisor@example.com",
    )
    worker = Employee(user_id=101, company_id=COMPANY_ID, full_name="Wei Worker", role="worker", status="active")
    worker2 = Employee(user_id=102, company_id=COMPANY_ID, full_name="Ravi Worker", role="worker", status="active")
    inactive = Employee(user_id=103, company_id=COMPANY_ID, full_name="Old Worker", role="worker", status="terminated")
    db.add_all([supervisor, worker, worker2, inactive])
    db.flush()

    project = Project(
        company_id=COMPANY_ID, code="SG-MARINA", name="Marina Bay Tower",
        lat=SITE_CENTER[0], lng=SITE_CENTER[1],
        geofence_radius_m=100, geofence_strict_mode=True, geofence_allowed_variance_m=10,
    )
    other_project = Project(
        company_id=COMPANY_ID, code="SG-JURONG", name="Jurong Depot",
        lat=1.3329, lng=103.7436, geofence_radius_m=150, geofence_strict_mode=False,
        geofence_allowed_variance_m=20,
    )
    foreign_project = Project(company_id=2, code="MY-KL", name="KL Sentral", lat=3.1340, lng=101.6860)
    db.add_all([project, other_project, foreign_project])
    db.flush()

    db.add_all([
        TaskAssignment(
            employee_id=worker.id, project_id=project.id, supervisor_id=supervisor.id,
            date=WORK_DAY, task_name="Formwork", scheduled_start=time(8, 0), scheduled_end=time(17, 0),
        ),
        TaskAssignment(
            employee_id=worker2.id, project_id=project.id, supervisor_id=supervisor.id,
            date=WORK_DAY, task_name="Rebar",
        ),
    ])
    db.commit()

    return SimpleNamespace(
        supervisor_id=supervisor.id,
        worker_id=worker.id,
        worker2_id=worker2.id,
        inactive_id=inactive.id,
        project_id=project.id,
        other_project_id=other_project.id,
        foreign_project_id=foreign_project.id,
    )


@pytest.fixture
def notifier():
    return RecordingNotificationService()


@pytest.fixture
def dispatcher(notifier):
    d = AlertDispatcher(notifier, timeout_s=5)
    yield d
    d.shutdown()


@pytest.fixture
def clock(at):
    return SimpleNamespace(now=at(8, 0))


@pytest.fixture
def app(session_factory, notifier, clock):
    application = create_app(session_factory=session_factory, notification_service=notifier)

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    application.dependency_overrides[get_db] = _get_db
    application.dependency_overrides[request_time] = lambda: clock.now
    yield application
    application.state.alert_dispatcher.shutdown()


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def auth_headers(db):
    def _headers(employee_id, roles=None, company_id=None):
        emp = db.get(Employee, employee_id)
        token = create_access_token(
            emp.user_id,
            company_id if company_id is not None else emp.company_id,
            roles if roles is not None else [emp.role],
        )
        return {"Authorization": f"Bearer {token}"}
    return _headers
