from datetime import datetime, time
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Date,
    Time,
    Boolean,
    ForeignKey,
    Integer,
    Numeric,
    JSON,
    UniqueConstraint,
    Text,
    Index,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..db import Base


ACTIVE_EMPLOYEE_STATUSES = ("active", "ACTIVE")


class Employee(Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)  # Identity from the auth provider
    company_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(100))
    email: Mapped[Optional[str]] = mapped_column(String(255))
    role: Mapped[str] = mapped_column(String(50), default="worker")  # worker|supervisor|driver|admin
    status: Mapped[str] = mapped_column(String(50), default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "company_id", name="uq_employee_user_company"),
    )


class Project(Base):
    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    code: Mapped[Optional[str]] = mapped_column(String(50), index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    address: Mapped[Optional[str]] = mapped_column(String(500))
    lat: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))  # Geofence center latitude
    lng: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))  # Geofence center longitude
    geofence_radius_m: Mapped[Optional[float]] = mapped_column(Numeric(10, 2))
    geofence_strict_mode: Mapped[bool] = mapped_column(Boolean, default=True)
    geofence_allowed_variance_m: Mapped[Optional[float]] = mapped_column(Numeric(10, 2))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class TaskAssignment(Base):
    """Daily worker-to-project assignment, written by the scheduling system"""
    __tablename__ = "task_assignments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    employee_id: Mapped[int] = mapped_column(Integer, ForeignKey("employees.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    supervisor_id: Mapped[Optional[int]] = mapped_column(Integer, ForeignKey("employees.id", ondelete="SET NULL"))
    date: Mapped[Date] = mapped_column(Date, nullable=False)  # Local date
    task_name: Mapped[Optional[str]] = mapped_column(String(255))
    scheduled_start: Mapped[Optional[time]] = mapped_column(Time(timezone=False))  # Local time
    scheduled_end: Mapped[Optional[time]] = mapped_column(Time(timezone=False))  # Local time
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        Index("idx_assignments_date", "date"),
        Index("idx_assignments_employee_project_date", "employee_id", "project_id", "date"),
    )


class AttendanceRecord(Base):
    """One attendance day per (employee, project, date); mutated in place, never deleted"""
    __tablename__ = "attendance_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    employee_id: Mapped[int] = mapped_column(Integer, ForeignKey("employees.id", ondelete="CASCADE"), nullable=False)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    date: Mapped[Date] = mapped_column(Date, nullable=False)  # Local date
    check_in: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    check_out: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    lunch_start_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    lunch_end_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    inside_geofence_at_checkin: Mapped[bool] = mapped_column(Boolean, default=False)
    inside_geofence_at_checkout: Mapped[bool] = mapped_column(Boolean, default=False)
    pending_checkout: Mapped[bool] = mapped_column(Boolean, default=False)
    last_latitude: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    last_longitude: Mapped[Optional[float]] = mapped_column(Numeric(10, 7))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        UniqueConstraint("employee_id", "project_id", "date", name="uq_attendance_employee_project_date"),
        Index("idx_attendance_date_open", "date", "check_in", "check_out"),
    )


class LocationLog(Base):
    """GPS samples submitted with attendance actions and location pings"""
    __tablename__ = "location_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    employee_id: Mapped[int] = mapped_column(Integer, ForeignKey("employees.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id: Mapped[int] = mapped_column(Integer, ForeignKey("projects.id", ondelete="CASCADE"), nullable=False)
    latitude: Mapped[float] = mapped_column(Numeric(10, 7), nullable=False)
    longitude: Mapped[float] = mapped_column(Numeric(10, 7), nullable=False)
    accuracy_m: Mapped[Optional[float]] = mapped_column(Numeric(10, 2))
    inside_geofence: Mapped[bool] = mapped_column(Boolean, default=False)
    log_type: Mapped[str] = mapped_column(String(20), nullable=False)  # CHECK_IN|CHECK_OUT|LUNCH_START|LUNCH_END|TRACK
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)


class AuditLog(Base):
    """Append-only audit log for attendance actions and dispatched notifications"""
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # attendance|notification
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)  # CLOCK_IN|LUNCH_START|LUNCH_END|CLOCK_OUT|NOTIFY
    actor_id: Mapped[Optional[int]] = mapped_column(Integer, index=True)
    actor_role: Mapped[Optional[str]] = mapped_column(String(50))  # worker|supervisor|system
    source: Mapped[Optional[str]] = mapped_column(String(50))  # app|scheduler|system
    changes_json: Mapped[Optional[dict]] = mapped_column(JSON)
    timestamp_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow, nullable=False, index=True)
    context: Mapped[Optional[dict]] = mapped_column(JSON)  # {project_id, worker_id, gps_lat, gps_lng, gps_accuracy_m, ...}
    integrity_hash: Mapped[Optional[str]] = mapped_column(String(64))  # SHA256 hash for integrity verification

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
    )


class Notification(Base):
    """Notification records created by the attendance alerting"""
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    recipient_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    sender_id: Mapped[Optional[int]] = mapped_column(Integer)
    type: Mapped[str] = mapped_column(String(50), nullable=False)  # ATTENDANCE_ALERT
    priority: Mapped[str] = mapped_column(String(20), default="NORMAL")  # HIGH|NORMAL
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    action_data: Mapped[Optional[dict]] = mapped_column(JSON)
    requires_acknowledgment: Mapped[bool] = mapped_column(Boolean, default=False)
    language: Mapped[str] = mapped_column(String(10), default="en")
    channel: Mapped[str] = mapped_column(String(20), default="push")
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending|sent|failed|acknowledged
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=datetime.utcnow)

    __table_args__ = (
        Index("idx_notifications_recipient_status", "recipient_id", "status"),
    )
