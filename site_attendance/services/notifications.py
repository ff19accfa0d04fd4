"""
Notification dispatch boundary.
The attendance core only builds alert requests; delivery, de-duplication
and audit belong to the NotificationService implementation behind it.
"""
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol

import structlog
from sqlalchemy.orm import Session

from ..config import settings
from ..models.models import Notification
from ..schemas.attendance import AlertPriority, AlertType
from .audit import create_audit_log


logger = structlog.get_logger(__name__)

NOTIFICATION_TYPE = "ATTENDANCE_ALERT"


class NotificationService(Protocol):
    def create_notification(
        self,
        *,
        type: str,
        priority: str,
        title: str,
        message: str,
        sender_id: int,
        recipients: List[int],
        action_data: Dict[str, Any],
        requires_acknowledgment: bool,
        language: str = "en",
    ) -> Dict[str, Any]:
        ...


class NotificationTimeout(Exception):
    pass


@dataclass
class AlertRequest:
    alert_type: AlertType
    worker_id: int
    supervisor_id: Optional[int]
    priority: AlertPriority
    requires_acknowledgment: bool
    title: str
    message: str
    payload: Dict[str, Any] = field(default_factory=dict)
    recipients: Optional[List[int]] = None
    sender_id: Optional[int] = None

    def to_notification_kwargs(self) -> Dict[str, Any]:
        return {
            "type": NOTIFICATION_TYPE,
            "priority": self.priority.value,
            "title": self.title,
            "message": self.message,
            "sender_id": self.sender_id or self.supervisor_id or settings.system_sender_id,
            "recipients": self.recipients or [self.worker_id],
            "action_data": {"alertType": self.alert_type.value, **self.payload},
            "requires_acknowledgment": self.requires_acknowledgment,
            "language": "en",
        }


class DatabaseNotificationService:
    """
    Persists one Notification per recipient plus an audit record.
    Push transport picks pending rows up from the notifications table.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def create_notification(
        self,
        *,
        type: str,
        priority: str,
        title: str,
        message: str,
        sender_id: int,
        recipients: List[int],
        action_data: Dict[str, Any],
        requires_acknowledgment: bool,
        language: str = "en",
    ) -> Dict[str, Any]:
        if not settings.enable_push:
            logger.info("notification_skipped", reason="push_disabled", recipients=recipients, title=title)
            return {"notifications": [], "audit_records": []}

        db = self._session_factory()
        try:
            notifications = []
            audit_records = []
            for recipient_id in recipients:
                notification = Notification(
                    recipient_id=recipient_id,
                    sender_id=sender_id,
                    type=type,
                    priority=priority,
                    title=title,
                    message=message,
                    action_data=action_data,
                    requires_acknowledgment=requires_acknowledgment,
                    language=language,
                    channel="push",
                    status="pending",
                    created_at=datetime.now(timezone.utc),
                )
                db.add(notification)
                db.flush()
                audit = create_audit_log(
                    db,
                    entity_type="notification",
                    entity_id=notification.id,
                    action="NOTIFY",
                    actor_id=sender_id,
                    actor_role="system",
                    source="scheduler",
                    context={
                        "recipient_id": recipient_id,
                        "alert_type": action_data.get("alertType"),
                        "priority": priority,
                    },
                    commit=False,
                )
                notifications.append(notification)
                audit_records.append(audit)
            db.commit()
            return {
                "notifications": [{"id": n.id, "recipientId": n.recipient_id, "status": n.status} for n in notifications],
                "audit_records": [{"id": a.id, "integrityHash": a.integrity_hash} for a in audit_records],
            }
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class AlertDispatcher:
    """Hands alert requests to the NotificationService with a bounded wait."""

    def __init__(
        self,
        service: NotificationService,
        timeout_s: Optional[float] = None,
        max_workers: int = 4,
    ):
        self.service = service
        self.timeout_s = timeout_s if timeout_s is not None else settings.notification_timeout_s
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="alert-dispatch")

    def dispatch(self, alert: AlertRequest) -> Dict[str, Any]:
        future = self._executor.submit(self.service.create_notification, **alert.to_notification_kwargs())
        try:
            result = future.result(timeout=self.timeout_s)
        except FuturesTimeoutError:
            future.cancel()
            raise NotificationTimeout(
                f"Notification dispatch for {alert.alert_type.value} to worker {alert.worker_id} "
                f"timed out after {self.timeout_s}s"
            )
        logger.info(
            "alert_dispatched",
            alert_type=alert.alert_type.value,
            worker_id=alert.worker_id,
            supervisor_id=alert.supervisor_id,
            priority=alert.priority.value,
        )
        return result

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)
