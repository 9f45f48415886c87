from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from opentelemetry import trace
from sqlalchemy import and_, func, select, update
from sqlalchemy.orm import Session

from quotedesk import events
from quotedesk.core.config import get_settings
from quotedesk.metrics import observe_thread_transition
from quotedesk.quotations.context import ActorContext
from quotedesk.quotations.errors import (
    InvalidStateError,
    MessageNotFoundError,
    PermissionDeniedError,
    QuotationNotFoundError,
)
from quotedesk.quotations.models import Quotation, QuotationMessage, as_utc, utcnow
from quotedesk.quotations.notifications import NotificationEmitter, new_message_notification
from quotedesk.quotations.repository import MessageRepository, QuotationRepository
from quotedesk.quotations.schemas import (
    ClosureRejection,
    ClosureRequest,
    MarkReadRequest,
    MarkReadResult,
    MessageCreate,
    MessageRead,
    ThreadTransitionResult,
    UnreadCount,
    UnreadThread,
)
from quotedesk.quotations.service import QuotationService

logger = logging.getLogger("quotedesk.threads")
tracer = trace.get_tracer("quotedesk.threads")

# step -> (expected thread status, new thread status, system message type)
THREAD_STEPS: dict[str, tuple[str, str, str]] = {
    "request_closure": ("active", "awaiting_user_permission", "closure_request"),
    "grant_closure": ("awaiting_user_permission", "user_approved_closure", "closure_permission_granted"),
    "reject_closure": ("awaiting_user_permission", "active", "closure_permission_rejected"),
    "close": ("user_approved_closure", "closed", "thread_closed"),
}


def to_message_read(message: QuotationMessage) -> MessageRead:
    payload: dict[str, Any] = {}
    for column in QuotationMessage.__table__.columns:
        value = getattr(message, column.key)
        payload[column.key] = as_utc(value) if isinstance(value, datetime) else value
    return MessageRead.model_validate(payload)


@dataclass(slots=True)
class ThreadService:
    """Message thread of a quotation and the two-party closure handshake.

    Every protocol step is a compare-and-set on ``thread_status`` plus the
    matching system message, committed together.
    """

    repository: QuotationRepository = QuotationRepository()
    message_repository: MessageRepository = MessageRepository()
    emitter: NotificationEmitter = field(default_factory=NotificationEmitter)
    clock: Callable[[], datetime] = utcnow

    def request_closure(
        self,
        session: Session,
        actor: ActorContext,
        quotation_id: uuid.UUID,
        payload: ClosureRequest | None = None,
    ) -> ThreadTransitionResult:
        self._require_admin(actor, "request thread closure")
        reason = payload.reason if payload is not None else None
        now = self.clock()
        content = "Admin has requested to close this thread."
        if reason:
            content = f"{content} Reason: {reason}"
        return self._transition(
            session,
            actor,
            quotation_id,
            "request_closure",
            {
                "closure_requested_by": actor.user_id,
                "closure_requested_at": now,
                "closure_reason": reason,
            },
            content,
            now,
        )

    def grant_closure_permission(self, session: Session, actor: ActorContext, quotation_id: uuid.UUID) -> ThreadTransitionResult:
        self._require_owner(session, actor, quotation_id, "grant thread closure")
        now = self.clock()
        return self._transition(
            session,
            actor,
            quotation_id,
            "grant_closure",
            {"user_permission_to_close": True, "user_permission_granted_at": now},
            "User has approved the thread closure request.",
            now,
        )

    def reject_closure_request(
        self,
        session: Session,
        actor: ActorContext,
        quotation_id: uuid.UUID,
        payload: ClosureRejection | None = None,
    ) -> ThreadTransitionResult:
        self._require_owner(session, actor, quotation_id, "reject thread closure")
        reason = payload.reason if payload is not None else None
        now = self.clock()
        content = "User has rejected the thread closure request."
        if reason:
            content = f"{content} Reason: {reason}"
        return self._transition(
            session,
            actor,
            quotation_id,
            "reject_closure",
            {
                "user_permission_to_close": False,
                "closure_rejected_at": now,
                "closure_rejection_reason": reason,
            },
            content,
            now,
        )

    def close_thread(self, session: Session, actor: ActorContext, quotation_id: uuid.UUID) -> ThreadTransitionResult:
        self._require_admin(actor, "close threads")
        now = self.clock()
        return self._transition(
            session,
            actor,
            quotation_id,
            "close",
            {"closed_by": actor.user_id, "closed_at": now},
            "Thread has been closed by admin.",
            now,
        )

    def create_message(
        self,
        session: Session,
        actor: ActorContext,
        quotation_id: uuid.UUID,
        payload: MessageCreate,
    ) -> MessageRead:
        quotation = self._get_row(session, quotation_id)
        self._ensure_participant(actor, quotation)
        if quotation.thread_status != "active":
            raise InvalidStateError(
                "messages can only be sent while the thread is active",
                details={"quotation_id": str(quotation.id), "thread_status": quotation.thread_status},
            )

        now = self.clock()
        # the thread must still be active when the message row lands
        touched = self.repository.compare_and_set(
            session,
            quotation_id,
            {"updated_at": now},
            thread_status="active",
            bump_version=False,
        )
        if not touched:
            self._raise_moved(session, quotation_id, "active")

        role = "admin" if actor.is_admin else "user"
        message = self._message(quotation_id, actor, role, payload.content, "message", now)
        session.add(message)
        session.commit()
        session.refresh(message)

        logger.info(
            "thread.message_created",
            extra={"quotation_id": str(quotation_id), "message_id": str(message.id), "performed_by": actor.user_id},
        )
        events.publish(
            {
                "event_type": "quotation.message_created",
                "quotation_id": str(quotation_id),
                "message_id": str(message.id),
                "author_role": role,
            }
        )
        result = to_message_read(message)
        self.emitter.emit(session, new_message_notification(quotation, role, message.author_name))
        return result

    def list_messages(
        self,
        session: Session,
        actor: ActorContext,
        quotation_id: uuid.UUID,
        *,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[MessageRead]:
        quotation = self._get_row(session, quotation_id)
        self._ensure_participant(actor, quotation)
        rows = self.message_repository.list_for_quotation(
            session,
            quotation_id,
            offset=offset,
            limit=limit or get_settings().message_page_size,
        )
        return [to_message_read(row) for row in rows]

    def mark_messages_read(
        self,
        session: Session,
        actor: ActorContext,
        quotation_id: uuid.UUID,
        payload: MarkReadRequest,
    ) -> MarkReadResult:
        quotation = self._get_row(session, quotation_id)
        self._ensure_participant(actor, quotation)
        now = self.clock()

        if actor.is_admin:
            flag, stamp = QuotationMessage.is_read_by_admin, "read_by_admin_at"
        else:
            flag, stamp = QuotationMessage.is_read_by_user, "read_by_user_at"

        conditions = [QuotationMessage.quotation_id == quotation_id, flag.is_(False)]
        if payload.message_ids:
            requested = set(payload.message_ids)
            found = set(
                session.scalars(
                    select(QuotationMessage.id).where(
                        QuotationMessage.quotation_id == quotation_id,
                        QuotationMessage.id.in_(list(requested)),
                    )
                ).all()
            )
            missing = sorted(requested - found, key=str)
            if missing:
                raise MessageNotFoundError(missing)
            conditions.append(QuotationMessage.id.in_(list(requested)))

        result = session.execute(
            update(QuotationMessage)
            .where(and_(*conditions))
            .values({flag.key: True, stamp: now, "updated_at": now})
            .execution_options(synchronize_session=False)
        )
        session.commit()
        return MarkReadResult(updated=result.rowcount)

    def get_unread_count(self, session: Session, actor: ActorContext, quotation_id: uuid.UUID) -> UnreadCount:
        quotation = self._get_row(session, quotation_id)
        self._ensure_participant(actor, quotation)
        role = "admin" if actor.is_admin else "user"
        return UnreadCount(
            quotation_id=quotation_id,
            reader_role=role,
            count=self.message_repository.count_unread(session, quotation_id, role),
        )

    def list_quotations_with_unread(self, session: Session, actor: ActorContext, *, limit: int | None = None) -> list[UnreadThread]:
        self._require_admin(actor, "list unread threads")
        limit = limit or get_settings().default_page_size
        unread = self.message_repository.unread_condition("admin")
        rows = session.execute(
            select(QuotationMessage.quotation_id, func.count(), func.max(QuotationMessage.created_at))
            .join(Quotation, Quotation.id == QuotationMessage.quotation_id)
            .where(Quotation.thread_status == "active", unread)
            .group_by(QuotationMessage.quotation_id)
            .order_by(func.max(QuotationMessage.created_at).desc())
            .limit(limit)
        ).all()

        threads: list[UnreadThread] = []
        for quotation_id, count, _ in rows:
            quotation = self.repository.get(session, quotation_id)
            last_message = session.scalar(
                select(QuotationMessage)
                .where(QuotationMessage.quotation_id == quotation_id, unread)
                .order_by(QuotationMessage.created_at.desc())
                .limit(1)
            )
            if quotation is None or last_message is None:
                continue
            threads.append(
                UnreadThread(
                    quotation=QuotationService.to_read(quotation),
                    unread_count=int(count),
                    last_message=to_message_read(last_message),
                )
            )
        return threads

    def _transition(
        self,
        session: Session,
        actor: ActorContext,
        quotation_id: uuid.UUID,
        step: str,
        changes: dict[str, Any],
        content: str,
        now: datetime,
    ) -> ThreadTransitionResult:
        expected, target, message_type = THREAD_STEPS[step]
        quotation = self._get_row(session, quotation_id)
        if quotation.thread_status != expected:
            raise InvalidStateError(
                f"thread is {quotation.thread_status}, expected {expected}",
                details={"quotation_id": str(quotation.id), "thread_status": quotation.thread_status, "step": step},
            )

        with tracer.start_as_current_span(f"thread.{step}") as span:
            span.set_attribute("quotation_id", str(quotation_id))
            span.set_attribute("correlation_id", actor.correlation_id or "")
            applied = self.repository.compare_and_set(
                session,
                quotation_id,
                {**changes, "thread_status": target, "updated_at": now},
                thread_status=expected,
            )
            if not applied:
                self._raise_moved(session, quotation_id, expected)

            role = "admin" if actor.is_admin else "user"
            message = self._message(quotation_id, actor, role, content, message_type, now)
            session.add(message)
            session.commit()
            span.set_attribute("thread_status", target)

        observe_thread_transition(expected, target)
        logger.info(
            "thread.transition",
            extra={
                "quotation_id": str(quotation_id),
                "from_status": expected,
                "to_status": target,
                "thread_status": target,
                "message_id": str(message.id),
                "performed_by": actor.user_id,
            },
        )
        events.publish(
            {
                "event_type": "quotation.thread_status_changed",
                "quotation_id": str(quotation_id),
                "from_status": expected,
                "to_status": target,
                "message_id": str(message.id),
            }
        )
        return ThreadTransitionResult(quotation_id=quotation_id, thread_status=target, message_id=message.id)

    def _message(
        self,
        quotation_id: uuid.UUID,
        actor: ActorContext,
        role: str,
        content: str,
        message_type: str,
        now: datetime,
    ) -> QuotationMessage:
        return QuotationMessage(
            id=uuid.uuid4(),
            quotation_id=quotation_id,
            author_id=actor.user_id,
            author_name=actor.display_name,
            author_role=role,
            content=content,
            message_type=message_type,
            is_read_by_user=role == "user",
            is_read_by_admin=role == "admin",
            created_at=now,
            updated_at=now,
        )

    def _raise_moved(self, session: Session, quotation_id: uuid.UUID, expected: str) -> None:
        session.rollback()
        current = self.repository.get(session, quotation_id)
        if current is None:
            raise QuotationNotFoundError(quotation_id)
        raise InvalidStateError(
            f"thread is {current.thread_status}, expected {expected}",
            details={"quotation_id": str(quotation_id), "thread_status": current.thread_status},
        )

    def _get_row(self, session: Session, quotation_id: uuid.UUID) -> Quotation:
        quotation = self.repository.get(session, quotation_id)
        if quotation is None:
            raise QuotationNotFoundError(quotation_id)
        return quotation

    @staticmethod
    def _require_admin(actor: ActorContext, action: str) -> None:
        if not actor.is_admin:
            raise PermissionDeniedError(f"only staff may {action}")

    @staticmethod
    def _ensure_participant(actor: ActorContext, quotation: Quotation) -> None:
        if not actor.is_admin and actor.user_id != quotation.user_id:
            raise PermissionDeniedError("buyers may only access their own quotation threads")

    def _require_owner(self, session: Session, actor: ActorContext, quotation_id: uuid.UUID, action: str) -> None:
        if actor.is_admin:
            raise PermissionDeniedError(f"only the buyer may {action}")
        quotation = self._get_row(session, quotation_id)
        if quotation.user_id != actor.user_id:
            raise PermissionDeniedError(f"only the buyer may {action}")


thread_service = ThreadService()
