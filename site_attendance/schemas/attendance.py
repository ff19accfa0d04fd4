from enum import Enum
from typing import Optional, Dict, Any

from pydantic import BaseModel, ConfigDict, Field


# Enums
class SessionState(str, Enum):
    not_logged_in = "NOT_LOGGED_IN"
    checked_in = "CHECKED_IN"
    on_lunch = "ON_LUNCH"
    checked_out = "CHECKED_OUT"


class AttendanceAction(str, Enum):
    clock_in = "CLOCK_IN"
    lunch_start = "LUNCH_START"
    lunch_end = "LUNCH_END"
    clock_out = "CLOCK_OUT"


class AttendanceErrorCode(str, Enum):
    outside_geofence = "OUTSIDE_GEOFENCE"
    invalid_transition = "INVALID_TRANSITION"
    not_clocked_in = "NOT_CLOCKED_IN"
    no_task_assigned = "NO_TASK_ASSIGNED"
    unauthorized_employee = "UNAUTHORIZED_EMPLOYEE"
    lookup_failure = "LOOKUP_FAILURE"
    storage_unavailable = "STORAGE_UNAVAILABLE"


class AlertType(str, Enum):
    missed_login = "MISSED_LOGIN"
    missed_logout = "MISSED_LOGOUT"
    lunch_break_reminder = "LUNCH_BREAK_REMINDER"
    overtime_start = "OVERTIME_START"
    overtime_end = "OVERTIME_END"
    geofence_violation = "GEOFENCE_VIOLATION"


class AlertPriority(str, Enum):
    high = "HIGH"
    normal = "NORMAL"


# Request bodies (mobile client sends camelCase)
class LocationPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    project_id: int = Field(alias="projectId")
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    accuracy: Optional[float] = None


class SubmitAttendancePayload(LocationPayload):
    session: str  # checkin|checkout


class LunchReminderPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    worker_id: int = Field(alias="workerId")
    project_id: int = Field(alias="projectId")


class OvertimeAlertPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    worker_id: int = Field(alias="workerId")
    overtime_type: str = Field(alias="overtimeType")  # START|END
    overtime_info: Dict[str, Any] = Field(default_factory=dict, alias="overtimeInfo")
