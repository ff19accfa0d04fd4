"""
Seed the local database with a demo company: one supervisor, two workers,
one project with a geofence and today's task assignments.

Usage:
  python scripts/seed_test_data.py

This script is idempotent: running it multiple times will upsert the same
records based on unique fields (user_id/company_id for employees, code for
projects, employee/project/date for assignments).
"""

from datetime import datetime, time, timezone

from site_attendance.auth.security import create_access_token
from site_attendance.config import settings
from site_attendance.db import SessionLocal, Base, engine
from site_attendance.models.models import Employee, Project, TaskAssignment
from site_attendance.services.time_rules import local_today, utc_now


DEMO_COMPANY_ID = 1


def ensure_employee(session, user_id: int, full_name: str, role: str, **kwargs) -> Employee:
    emp = (
        session.query(Employee)
        .filter(Employee.user_id == user_id, Employee.company_id == DEMO_COMPANY_ID)
        .first()
    )
    if emp:
        emp.full_name = full_name
        emp.role = role
        for k, v in kwargs.items():
            if hasattr(emp, k):
                setattr(emp, k, v)
        session.add(emp)
        session.flush()
        return emp
    emp = Employee(
        user_id=user_id,
        company_id=DEMO_COMPANY_ID,
        full_name=full_name,
        role=role,
        status="active",
        created_at=datetime.now(timezone.utc),
        **{k: v for k, v in kwargs.items() if hasattr(Employee, k)}
    )
    session.add(emp)
    session.flush()
    return emp


def ensure_project(session, code: str, name: str, **kwargs) -> Project:
    proj = session.query(Project).filter(Project.code == code, Project.company_id == DEMO_COMPANY_ID).first()
    if proj:
        proj.name = name
        for k, v in kwargs.items():
            if hasattr(proj, k):
                setattr(proj, k, v)
        session.add(proj)
        session.flush()
        return proj
    proj = Project(
        code=code,
        name=name,
        company_id=DEMO_COMPANY_ID,
        created_at=datetime.now(timezone.utc),
        **{k: v for k, v in kwargs.items() if hasattr(Project, k)}
    )
    session.add(proj)
    session.flush()
    return proj


def ensure_assignment(session, employee: Employee, project: Project, supervisor: Employee, day, **kwargs) -> TaskAssignment:
    row = (
        session.query(TaskAssignment)
        .filter(
            TaskAssignment.employee_id == employee.id,
            TaskAssignment.project_id == project.id,
            TaskAssignment.date == day,
        )
        .first()
    )
    if row:
        row.supervisor_id = supervisor.id
        for k, v in kwargs.items():
            if hasattr(row, k):
                setattr(row, k, v)
        session.add(row)
        session.flush()
        return row
    row = TaskAssignment(
        employee_id=employee.id,
        project_id=project.id,
        supervisor_id=supervisor.id,
        date=day,
        **{k: v for k, v in kwargs.items() if hasattr(TaskAssignment, k)}
    )
    session.add(row)
    session.flush()
    return row


def main() -> None:
    # Ensure tables exist (safe for SQLite dev)
    Base.metadata.create_all(bind=engine)

    session = SessionLocal()
    try:
        supervisor = ensure_employee(
            session, 100, "Sam Supervisor", "supervisor",
            phone="+65 6555 0100", email="sam.supervisor@example.com",
        )
        workers = [
            ensure_employee(session, 101, "Wei Worker", "worker", phone="+65 6555 0101"),
            ensure_employee(session, 102, "Ravi Worker", "worker", phone="+65 6555 0102"),
        ]

        marina = ensure_project(
            session,
            code="SG-MARINA",
            name="Marina Bay Tower",
            address="10 Bayfront Avenue, Singapore",
            lat=1.3521,
            lng=103.8198,
            geofence_radius_m=100,
            geofence_strict_mode=True,
            geofence_allowed_variance_m=10,
        )

        today = local_today(utc_now())
        for worker in workers:
            ensure_assignment(
                session, worker, marina, supervisor, today,
                task_name="Formwork, level 12",
                scheduled_start=time(8, 0),
                scheduled_end=time(17, 0),
            )

        # Commit all changes
        session.commit()
        print(f"Seed completed for {today.isoformat()} ({settings.tz_default}).")
        for emp in [supervisor, *workers]:
            roles = [emp.role]
            print(f"  {emp.full_name}: {create_access_token(emp.user_id, DEMO_COMPANY_ID, roles)}")
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


if __name__ == "__main__":
    main()
