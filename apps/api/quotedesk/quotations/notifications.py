from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from sqlalchemy.orm import Session

from quotedesk import events
from quotedesk.metrics import observe_notification
from quotedesk.quotations.models import Notification, Quotation, utcnow

logger = logging.getLogger("quotedesk.notifications")

STATUS_TITLE = "Quotation Status Update"

STATUS_COPY: dict[str, str] = {
    "processing": "Your quotation {number} is being processed.",
    "quoted": "Your quotation {number} is ready! Please check your account for details.",
    "accepted": "Your quotation {number} has been accepted. We will contact you soon.",
    "rejected": "Your quotation request {number} has been declined.",
    "expired": "Your quotation {number} has expired. Please submit a new request if still interested.",
}

URGENCY_PRIORITY = {"asap": "urgent", "urgent": "high"}


@dataclass(slots=True)
class NotificationRecord:
    notification_type: str
    title: str
    message: str
    recipient_type: str
    recipient_id: str | None = None
    priority: str = "medium"
    related_entity_type: str | None = "quotation"
    related_entity_id: str | None = None


class NotificationSink(Protocol):
    def deliver(self, session: Session, record: NotificationRecord) -> None: ...


@dataclass(slots=True)
class DatabaseNotificationSink:
    clock: Callable[[], datetime] = utcnow

    def deliver(self, session: Session, record: NotificationRecord) -> None:
        row = Notification(
            notification_type=record.notification_type,
            title=record.title,
            message=record.message,
            recipient_type=record.recipient_type,
            recipient_id=record.recipient_id,
            priority=record.priority,
            related_entity_type=record.related_entity_type,
            related_entity_id=record.related_entity_id,
            created_at=self.clock(),
        )
        session.add(row)
        session.flush()
        events.publish(
            {
                "event_type": "quotation.notification",
                "notification_id": str(row.id),
                "notification_type": record.notification_type,
                "recipient_type": record.recipient_type,
                "recipient_id": record.recipient_id,
                "priority": record.priority,
                "related_entity_id": record.related_entity_id,
            }
        )


def status_notification(quotation: Quotation, new_status: str) -> NotificationRecord | None:
    template = STATUS_COPY.get(new_status)
    if template is None:
        return None
    return NotificationRecord(
        notification_type="order_notification",
        title=STATUS_TITLE,
        message=template.format(number=quotation.quotation_number),
        recipient_type="specific_user",
        recipient_id=quotation.user_id,
        priority="high" if new_status == "quoted" else "medium",
        related_entity_id=str(quotation.id),
    )


def new_request_notification(quotation: Quotation) -> NotificationRecord:
    count = len(quotation.line_items or [])
    return NotificationRecord(
        notification_type="order_notification",
        title="New Quotation Request",
        message=f"New quotation request {quotation.quotation_number} from {quotation.user_name} ({quotation.user_email}) for {count} product(s).",
        recipient_type="all_admins",
        priority=URGENCY_PRIORITY.get(quotation.urgency, "medium"),
        related_entity_id=str(quotation.id),
    )


def new_message_notification(quotation: Quotation, author_role: str, author_name: str) -> NotificationRecord:
    if author_role == "user":
        recipient_type, recipient_id = "all_admins", None
    else:
        recipient_type, recipient_id = "specific_user", quotation.user_id
    return NotificationRecord(
        notification_type="order_notification",
        title="New Message in Quotation",
        message=f"New message from {author_name} in quotation thread {quotation.quotation_number}",
        recipient_type=recipient_type,
        recipient_id=recipient_id,
        related_entity_id=str(quotation.id),
    )


@dataclass(slots=True)
class NotificationEmitter:
    """Delivers notifications after the owning transition has committed.

    Failures are logged and counted, never raised: the state change they
    describe is already durable.
    """

    sink: NotificationSink = field(default_factory=DatabaseNotificationSink)

    def emit(self, session: Session, record: NotificationRecord | None) -> bool:
        if record is None:
            return False
        try:
            self.sink.deliver(session, record)
            session.commit()
        except Exception as exc:
            session.rollback()
            logger.exception(
                "notification.failed",
                extra={
                    "notification_type": record.notification_type,
                    "recipient_type": record.recipient_type,
                    "quotation_id": record.related_entity_id,
                    "error": str(exc),
                },
            )
            observe_notification(record.notification_type, "failed")
            return False

        logger.info(
            "notification.emitted",
            extra={
                "notification_type": record.notification_type,
                "recipient_type": record.recipient_type,
                "quotation_id": record.related_entity_id,
            },
        )
        observe_notification(record.notification_type, "emitted")
        return True

