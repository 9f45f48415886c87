from __future__ import annotations

import logging
import math
import re
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from opentelemetry import trace
from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session

from quotedesk import events
from quotedesk.context import get_correlation_id
from quotedesk.core.config import Settings, get_settings
from quotedesk.metrics import (
    observe_concurrency_conflict,
    observe_expired,
    observe_quotation_transition,
    observe_revision,
)
from quotedesk.quotations.context import ActorContext
from quotedesk.quotations.errors import (
    ConcurrencyConflictError,
    InvalidStateError,
    PermissionDeniedError,
    QuotationNotFoundError,
    QuotationValidationError,
)
from quotedesk.quotations.financials import compute_financials
from quotedesk.quotations.models import Quotation, as_utc, utcnow
from quotedesk.quotations.notifications import (
    NotificationEmitter,
    new_request_notification,
    status_notification,
)
from quotedesk.quotations.repository import MessageRepository, QuotationRepository
from quotedesk.quotations.schemas import (
    AcceptCommand,
    AdminResponse,
    BuyerInfo,
    DigitalSignature,
    DocumentInfo,
    ExpirySweepResult,
    LineItem,
    QuotationCreate,
    QuotationCreated,
    QuotationPage,
    QuotationRead,
    QuotationResponseUpdate,
    QuotationStats,
    QuotationUpdate,
    QuoteCommand,
    RejectCommand,
    ReopenRequest,
    RevisionCreate,
    RevisionCreated,
    SignatureRequest,
    StatusCommand,
)

logger = logging.getLogger("quotedesk.quotations")
tracer = trace.get_tracer("quotedesk.quotations")

QUOTATION_STATUSES = ("draft", "pending", "processing", "quoted", "accepted", "rejected", "expired", "closed", "revised")
_OPEN_STATUSES = frozenset({"draft", "pending", "processing", "quoted", "accepted", "rejected", "expired"})

VALID_STATUS_SOURCES: dict[str, frozenset[str]] = {
    "processing": frozenset({"draft", "pending", "processing"}),
    "quoted": _OPEN_STATUSES,
    "accepted": frozenset({"quoted"}),
    "rejected": frozenset({"quoted"}),
    "expired": frozenset({"quoted"}),
    "closed": _OPEN_STATUSES,
}

# buyers may only answer a quote; everything else is staff work
BUYER_COMMANDS = frozenset({"accepted", "rejected"})

_FROZEN_STATUSES = ("revised", "closed")

_REVISION_COPY_FIELDS = (
    "quotation_number",
    "user_id",
    "user_email",
    "user_name",
    "user_phone",
    "business_name",
    "vendor_info",
    "billing_address",
    "shipping_address",
    "line_items",
    "financial_summary",
    "tax_details",
    "payment_terms",
    "delivery_terms",
    "terms_and_conditions",
    "warranty_info",
    "admin_response",
    "additional_requirements",
    "urgency",
    "created_by",
)


def generate_quotation_number(now: datetime, prefix: str = "QT") -> str:
    millis = str(int(now.timestamp() * 1000))
    return f"{prefix}-{now.year}-{millis[-6:]}"


_LEADING_NUMBER = re.compile(r"\s*[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")


def legacy_quantity(raw: str) -> float:
    """Read the leading number of a free-text quantity such as ``"500 kg"``, falling back to 1."""
    match = _LEADING_NUMBER.match(raw or "")
    if match is None:
        return 1.0
    value = float(match.group(0))
    if not math.isfinite(value) or value <= 0:
        return 1.0
    return value


@dataclass(slots=True)
class QuotationService:
    repository: QuotationRepository = QuotationRepository()
    message_repository: MessageRepository = MessageRepository()
    emitter: NotificationEmitter = field(default_factory=NotificationEmitter)
    clock: Callable[[], datetime] = utcnow

    # creation

    def create_quotation(self, session: Session, actor: ActorContext, payload: QuotationCreate) -> QuotationCreated:
        self._ensure_acting_for(actor, payload.buyer.user_id)
        settings = get_settings()
        now = self.clock()

        items = self._requested_line_items(payload, settings)
        quotation = self._new_quotation(payload.buyer, items, now, settings, status="pending" if items else "draft")
        quotation.billing_address = payload.billing_address.model_dump(mode="json") if payload.billing_address else None
        quotation.shipping_address = payload.shipping_address.model_dump(mode="json") if payload.shipping_address else None
        if payload.delivery_terms is not None:
            quotation.delivery_terms = payload.delivery_terms.model_dump(mode="json", exclude_none=True)
        elif payload.delivery_location:
            quotation.delivery_terms = {"delivery_location": payload.delivery_location}
        quotation.additional_requirements = payload.additional_requirements
        quotation.urgency = payload.urgency

        session.add(quotation)
        session.commit()
        session.refresh(quotation)

        logger.info(
            "quotation.created",
            extra={
                "quotation_id": str(quotation.id),
                "quotation_number": quotation.quotation_number,
                "to_status": quotation.status,
                "performed_by": actor.user_id,
                "count": len(items),
            },
        )
        events.publish(
            {
                "event_type": "quotation.created",
                "quotation_id": str(quotation.id),
                "quotation_number": quotation.quotation_number,
                "status": quotation.status,
                "user_id": quotation.user_id,
            }
        )
        if quotation.status == "pending":
            self.emitter.emit(session, new_request_notification(quotation))
        return QuotationCreated(id=quotation.id, quotation_number=quotation.quotation_number, status=quotation.status)

    def create_draft_quotation(self, session: Session, actor: ActorContext, buyer: BuyerInfo) -> QuotationCreated:
        self._ensure_acting_for(actor, buyer.user_id)
        settings = get_settings()
        quotation = self._new_quotation(buyer, [], self.clock(), settings, status="draft")
        session.add(quotation)
        session.commit()
        session.refresh(quotation)
        logger.info(
            "quotation.draft_created",
            extra={"quotation_id": str(quotation.id), "quotation_number": quotation.quotation_number, "performed_by": actor.user_id},
        )
        return QuotationCreated(id=quotation.id, quotation_number=quotation.quotation_number, status=quotation.status)

    # queries

    def get_quotation(self, session: Session, actor: ActorContext, quotation_id: uuid.UUID) -> QuotationRead:
        quotation = self._get_row(session, quotation_id)
        self._ensure_can_view(actor, quotation)
        return self.to_read(quotation)

    def get_by_number(self, session: Session, actor: ActorContext, quotation_number: str) -> QuotationRead:
        quotation = self.repository.get_latest_by_number(session, quotation_number)
        if quotation is None:
            raise QuotationNotFoundError(quotation_number)
        self._ensure_can_view(actor, quotation)
        return self.to_read(quotation)

    def get_current_draft(self, session: Session, actor: ActorContext, user_id: str) -> QuotationRead | None:
        self._ensure_acting_for(actor, user_id)
        quotation = session.scalar(
            select(Quotation)
            .where(Quotation.user_id == user_id, Quotation.status == "draft")
            .order_by(Quotation.created_at.desc())
            .limit(1)
        )
        return self.to_read(quotation) if quotation is not None else None

    def list_by_user(
        self,
        session: Session,
        actor: ActorContext,
        user_id: str,
        *,
        offset: int = 0,
        limit: int | None = None,
        include_unread_count: bool = False,
    ) -> QuotationPage:
        self._ensure_acting_for(actor, user_id)
        limit = limit or get_settings().default_page_size
        rows, total = self.repository.page(
            session,
            select(Quotation).where(Quotation.user_id == user_id),
            offset=offset,
            limit=limit,
        )
        quotations = [
            self.to_read(
                row,
                unread_message_count=self.message_repository.count_unread(session, row.id, "user") if include_unread_count else None,
            )
            for row in rows
        ]
        return QuotationPage(quotations=quotations, total=total, has_more=offset + limit < total)

    def list_all(
        self,
        session: Session,
        actor: ActorContext,
        *,
        status: str | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> QuotationPage:
        self._require_admin(actor, "list quotations")
        limit = limit or get_settings().admin_page_size
        stmt: Select[tuple[Quotation]] = select(Quotation)
        if status is not None:
            stmt = stmt.where(Quotation.status == status)
        rows, total = self.repository.page(session, stmt, offset=offset, limit=limit)
        return QuotationPage(quotations=[self.to_read(row) for row in rows], total=total, has_more=offset + limit < total)

    def get_expiring(self, session: Session, actor: ActorContext, days_ahead: int | None = None) -> list[QuotationRead]:
        self._require_admin(actor, "list expiring quotations")
        now = self.clock()
        threshold = now + timedelta(days=days_ahead or get_settings().expiring_window_days)
        rows = session.scalars(
            select(Quotation)
            .where(
                Quotation.status == "quoted",
                Quotation.valid_until.is_not(None),
                Quotation.valid_until > now,
                Quotation.valid_until < threshold,
            )
            .order_by(Quotation.valid_until.asc())
        ).all()
        return [self.to_read(row) for row in rows]

    def get_stats(self, session: Session, actor: ActorContext) -> QuotationStats:
        self._require_admin(actor, "read quotation statistics")
        now = self.clock()
        by_status = {name: 0 for name in QUOTATION_STATUSES}
        for status_name, count in session.execute(select(Quotation.status, func.count()).group_by(Quotation.status)).all():
            by_status[status_name] = int(count)
        total = sum(by_status.values())

        def created_since(days: int) -> int:
            return int(
                session.scalar(
                    select(func.count()).select_from(Quotation).where(Quotation.created_at > now - timedelta(days=days))
                )
                or 0
            )

        accepted = session.scalars(select(Quotation.financial_summary).where(Quotation.status == "accepted")).all()
        total_value = sum((Decimal(str((summary or {}).get("grand_total", 0))) for summary in accepted), start=Decimal("0"))
        accepted_count = by_status["accepted"]

        expiring = session.scalar(
            select(func.count())
            .select_from(Quotation)
            .where(
                Quotation.status == "quoted",
                Quotation.valid_until > now,
                Quotation.valid_until < now + timedelta(days=get_settings().expiring_window_days),
            )
        )
        return QuotationStats(
            total=total,
            by_status=by_status,
            recent_requests=created_since(7),
            monthly_requests=created_since(30),
            total_value=float(total_value),
            average_value=float(total_value / accepted_count) if accepted_count else 0.0,
            conversion_rate=(accepted_count / total * 100) if total else 0.0,
            expiring_quotations=int(expiring or 0),
        )

    def get_latest_revision(self, session: Session, actor: ActorContext, quotation_id: uuid.UUID) -> QuotationRead:
        quotation = self._get_row(session, quotation_id)
        self._ensure_can_view(actor, quotation)
        latest = self.repository.latest_in_chain(session, quotation.root_quotation_id or quotation.id)
        return self.to_read(latest or quotation)

    # pricing and terms

    def update_quotation_response(
        self,
        session: Session,
        actor: ActorContext,
        quotation_id: uuid.UUID,
        payload: QuotationResponseUpdate,
    ) -> QuotationRead:
        self._require_admin(actor, "price quotations")
        quotation = self._get_row(session, quotation_id)
        self._ensure_not_frozen(quotation)
        now = self.clock()

        changes: dict[str, Any] = {"updated_at": now, "last_modified_by": actor.user_id}
        if payload.line_items is not None or payload.currency is not None:
            items = payload.line_items
            if items is None:
                items = [LineItem.model_validate(item) for item in quotation.line_items or []]
            changes.update(self._financial_changes(items, payload.currency or self._currency_of(quotation)))
        if payload.payment_terms is not None:
            changes["payment_terms"] = payload.payment_terms.model_dump(mode="json")
        if payload.delivery_terms is not None:
            changes["delivery_terms"] = payload.delivery_terms.model_dump(mode="json")
        if payload.terms_and_conditions is not None:
            changes["terms_and_conditions"] = payload.terms_and_conditions.model_dump(mode="json")
        if payload.warranty_info is not None:
            changes["warranty_info"] = payload.warranty_info.model_dump(mode="json")
        if payload.valid_until is not None:
            changes["valid_until"] = self._future_validity(payload.valid_until, now)
        changes["admin_response"] = AdminResponse(
            quoted_by=actor.user_id,
            quoted_at=now,
            processing_notes=payload.admin_notes,
        ).model_dump(mode="json")

        self._apply(
            session,
            quotation,
            changes,
            operation="update_response",
            row_version=payload.row_version,
            status_not_in=_FROZEN_STATUSES,
        )
        session.commit()
        updated = self._get_row(session, quotation_id)
        logger.info(
            "quotation.response_updated",
            extra={"quotation_id": str(updated.id), "quotation_number": updated.quotation_number, "performed_by": actor.user_id},
        )
        events.publish(
            {
                "event_type": "quotation.response_updated",
                "quotation_id": str(updated.id),
                "row_version": updated.row_version,
            }
        )
        return self.to_read(updated)

    # status machine

    def update_quotation_status(
        self,
        session: Session,
        actor: ActorContext,
        quotation_id: uuid.UUID,
        command: StatusCommand,
    ) -> QuotationRead:
        target = command.status
        quotation = self._get_row(session, quotation_id)
        self._authorize_command(actor, quotation, target)

        allowed = VALID_STATUS_SOURCES[target]
        from_status = quotation.status
        if from_status not in allowed:
            raise InvalidStateError(
                f"cannot move quotation from {from_status} to {target}",
                details={"from_status": from_status, "to_status": target},
            )

        now = self.clock()
        if isinstance(command, (AcceptCommand, RejectCommand)):
            valid_until = as_utc(quotation.valid_until)
            if valid_until is not None and valid_until <= now:
                raise InvalidStateError(
                    "quotation validity has lapsed",
                    details={"valid_until": valid_until.isoformat(), "to_status": target},
                )

        changes: dict[str, Any] = {"status": target, "updated_at": now, "last_modified_by": actor.user_id}
        if isinstance(command, QuoteCommand):
            changes.update(self._quote_changes(quotation, command, actor, now))
        elif command.notes:
            changes["admin_response"] = self._noted_response(quotation, actor, now, command.notes)

        self._apply(
            session,
            quotation,
            changes,
            operation=f"status:{target}",
            row_version=command.row_version,
            status_in=allowed,
        )
        session.commit()
        updated = self._get_row(session, quotation_id)
        self._after_transition(session, updated, from_status, target, actor.user_id)
        return self.to_read(updated)

    def reopen(self, session: Session, actor: ActorContext, quotation_id: uuid.UUID, payload: ReopenRequest) -> QuotationRead:
        self._require_admin(actor, "reopen quotations")
        quotation = self._get_row(session, quotation_id)
        if quotation.status != "rejected":
            raise InvalidStateError(
                "only rejected quotations can be reopened",
                details={"from_status": quotation.status, "to_status": "processing"},
            )

        now = self.clock()
        changes: dict[str, Any] = {"status": "processing", "updated_at": now, "last_modified_by": actor.user_id}
        if payload.notes:
            changes["admin_response"] = self._noted_response(quotation, actor, now, payload.notes)

        self._apply(
            session,
            quotation,
            changes,
            operation="reopen",
            row_version=payload.row_version,
            status_in=("rejected",),
        )
        session.commit()
        updated = self._get_row(session, quotation_id)
        self._after_transition(session, updated, "rejected", "processing", actor.user_id)
        return self.to_read(updated)

    def expire_overdue(self, session: Session, *, performed_by: str = "system") -> ExpirySweepResult:
        """Move every quoted quotation past its validity to ``expired``.

        Re-running the sweep is a no-op for rows it already expired.
        """
        now = self.clock()
        with tracer.start_as_current_span("quotations.expire_overdue") as span:
            span.set_attribute("correlation_id", get_correlation_id() or "")
            candidates = session.execute(
                select(Quotation.id, Quotation.row_version).where(
                    Quotation.status == "quoted",
                    Quotation.valid_until.is_not(None),
                    Quotation.valid_until < now,
                )
            ).all()

            expired: list[uuid.UUID] = []
            for quotation_id, row_version in candidates:
                # a re-quote landing after the read moves row_version and valid_until
                applied = self.repository.compare_and_set(
                    session,
                    quotation_id,
                    {"status": "expired", "updated_at": now, "last_modified_by": performed_by},
                    row_version=row_version,
                    status_in=("quoted",),
                    valid_before=now,
                )
                if applied:
                    expired.append(quotation_id)
            session.commit()
            span.set_attribute("expired_count", len(expired))

        if expired:
            observe_expired(len(expired))
        logger.info("quotation.expiry_sweep", extra={"count": len(expired), "performed_by": performed_by})
        for quotation_id in expired:
            quotation = self.repository.get(session, quotation_id)
            if quotation is not None:
                self._after_transition(session, quotation, "quoted", "expired", performed_by)
        return ExpirySweepResult(expired_ids=expired, count=len(expired))

    # revisions

    def create_revision(
        self,
        session: Session,
        actor: ActorContext,
        quotation_id: uuid.UUID,
        payload: RevisionCreate | None = None,
    ) -> RevisionCreated:
        self._require_admin(actor, "revise quotations")
        original = self._get_row(session, quotation_id)
        if original.status == "revised":
            raise InvalidStateError(
                "quotation has already been revised",
                details={"quotation_id": str(original.id), "from_status": original.status},
            )

        now = self.clock()
        from_status = original.status
        self._apply(
            session,
            original,
            {"status": "revised", "updated_at": now, "last_modified_by": actor.user_id},
            operation="revise",
            status_not_in=("revised",),
        )

        revision = Quotation(id=uuid.uuid4())
        for name in _REVISION_COPY_FIELDS:
            setattr(revision, name, getattr(original, name))
        revision.version = original.version + 1
        revision.parent_quotation_id = original.id
        revision.root_quotation_id = original.root_quotation_id or original.id
        revision.status = "draft"
        revision.thread_status = "active"
        revision.valid_from = None
        revision.valid_until = None
        revision.created_at = now
        revision.updated_at = now
        revision.last_modified_by = actor.user_id
        if payload is not None and payload.revision_notes:
            admin_response = dict(original.admin_response or {})
            admin_response.update({"quoted_by": actor.user_id, "quoted_at": now.isoformat(), "processing_notes": payload.revision_notes})
            revision.admin_response = admin_response
        session.add(revision)
        session.commit()

        observe_revision()
        observe_quotation_transition(from_status, "revised")
        logger.info(
            "quotation.revised",
            extra={
                "quotation_id": str(original.id),
                "quotation_number": original.quotation_number,
                "from_status": from_status,
                "to_status": "revised",
                "version": revision.version,
                "performed_by": actor.user_id,
            },
        )
        events.publish(
            {
                "event_type": "quotation.revised",
                "quotation_id": str(original.id),
                "revision_id": str(revision.id),
                "version": revision.version,
            }
        )
        return RevisionCreated(revision_id=revision.id, version=revision.version, parent_quotation_id=original.id)

    # generic and document updates

    def update_quotation(
        self,
        session: Session,
        actor: ActorContext,
        quotation_id: uuid.UUID,
        payload: QuotationUpdate,
    ) -> QuotationRead:
        quotation = self._get_row(session, quotation_id)
        self._ensure_can_view(actor, quotation)
        self._ensure_not_frozen(quotation)

        changes = payload.model_dump(mode="json", exclude_unset=True, exclude={"row_version"})
        if not changes:
            raise QuotationValidationError("no updatable fields supplied")
        changes.update({"updated_at": self.clock(), "last_modified_by": actor.user_id})

        self._apply(
            session,
            quotation,
            changes,
            operation="update",
            row_version=payload.row_version,
            status_not_in=_FROZEN_STATUSES,
        )
        session.commit()
        updated = self._get_row(session, quotation_id)
        logger.info(
            "quotation.updated",
            extra={"quotation_id": str(updated.id), "count": len(changes) - 2, "performed_by": actor.user_id},
        )
        return self.to_read(updated)

    def generate_document(self, session: Session, actor: ActorContext, quotation_id: uuid.UUID) -> DocumentInfo:
        self._require_admin(actor, "generate quotation documents")
        quotation = self._get_row(session, quotation_id)
        existing = DocumentInfo.model_validate(quotation.document_info or {})
        document = DocumentInfo(
            pdf_generated=True,
            pdf_url=f"/api/quotations/{quotation.quotation_number}/pdf",
            digital_signature=DigitalSignature(signed=False),
            attachments=existing.attachments,
        )
        self._apply(
            session,
            quotation,
            {"document_info": document.model_dump(mode="json"), "updated_at": self.clock(), "last_modified_by": actor.user_id},
            operation="generate_document",
        )
        session.commit()
        return document

    def sign_document(
        self,
        session: Session,
        actor: ActorContext,
        quotation_id: uuid.UUID,
        payload: SignatureRequest,
    ) -> DocumentInfo:
        quotation = self._get_row(session, quotation_id)
        self._ensure_can_view(actor, quotation)
        now = self.clock()
        existing = DocumentInfo.model_validate(quotation.document_info or {})
        document = existing.model_copy(
            update={
                "digital_signature": DigitalSignature(
                    signed=True,
                    signed_by=actor.user_id,
                    signed_at=now,
                    signature_hash=payload.signature_hash,
                )
            }
        )
        self._apply(
            session,
            quotation,
            {"document_info": document.model_dump(mode="json"), "updated_at": now, "last_modified_by": actor.user_id},
            operation="sign_document",
        )
        session.commit()
        return document

    # read model

    @staticmethod
    def to_read(quotation: Quotation, *, unread_message_count: int | None = None) -> QuotationRead:
        payload: dict[str, Any] = {}
        for column in Quotation.__table__.columns:
            value = getattr(quotation, column.key)
            payload[column.key] = as_utc(value) if isinstance(value, datetime) else value
        payload["line_items"] = payload["line_items"] or []
        payload["unread_message_count"] = unread_message_count
        return QuotationRead.model_validate(payload)

    # internals

    def _get_row(self, session: Session, quotation_id: uuid.UUID) -> Quotation:
        quotation = self.repository.get(session, quotation_id)
        if quotation is None:
            raise QuotationNotFoundError(quotation_id)
        return quotation

    def _apply(
        self,
        session: Session,
        quotation: Quotation,
        changes: dict[str, Any],
        *,
        operation: str,
        row_version: int | None = None,
        status_in: frozenset[str] | tuple[str, ...] | None = None,
        status_not_in: tuple[str, ...] | None = None,
    ) -> None:
        applied = self.repository.compare_and_set(
            session,
            quotation.id,
            changes,
            row_version=row_version or quotation.row_version,
            status_in=status_in,
            status_not_in=status_not_in,
        )
        if applied:
            return

        session.rollback()
        current = self.repository.get(session, quotation.id)
        if current is None:
            raise QuotationNotFoundError(quotation.id)
        if (status_in is not None and current.status not in status_in) or (
            status_not_in is not None and current.status in status_not_in
        ):
            raise InvalidStateError(
                f"quotation is {current.status}",
                details={"quotation_id": str(current.id), "from_status": current.status, "operation": operation},
            )
        observe_concurrency_conflict(operation)
        logger.warning(
            "quotation.conflict",
            extra={"quotation_id": str(quotation.id), "operation": operation},
        )
        raise ConcurrencyConflictError(quotation.id, operation)

    def _after_transition(self, session: Session, quotation: Quotation, from_status: str, to_status: str, performed_by: str) -> None:
        observe_quotation_transition(from_status, to_status)
        logger.info(
            "quotation.status_changed",
            extra={
                "quotation_id": str(quotation.id),
                "quotation_number": quotation.quotation_number,
                "from_status": from_status,
                "to_status": to_status,
                "performed_by": performed_by,
            },
        )
        events.publish(
            {
                "event_type": "quotation.status_changed",
                "quotation_id": str(quotation.id),
                "quotation_number": quotation.quotation_number,
                "from_status": from_status,
                "to_status": to_status,
                "performed_by": performed_by,
            }
        )
        self.emitter.emit(session, status_notification(quotation, to_status))

    def _quote_changes(self, quotation: Quotation, command: QuoteCommand, actor: ActorContext, now: datetime) -> dict[str, Any]:
        """Build the update for a quote command.

        Without an explicit ``valid_until`` a still-running validity window is kept;
        a missing or lapsed one restarts at ``now`` for the configured number of days.
        """
        items = [LineItem.model_validate(item) for item in quotation.line_items or []]
        if not items:
            raise QuotationValidationError("cannot quote a quotation without line items")
        if command.total_amount is None:
            raise QuotationValidationError("total_amount is required to quote")
        if command.valid_until is not None:
            valid_until = self._future_validity(command.valid_until, now)
        else:
            current = as_utc(quotation.valid_until)
            if current is not None and current > now:
                valid_until = current
            else:
                valid_until = now + timedelta(days=get_settings().default_validity_days)

        changes = self._financial_changes(items, self._currency_of(quotation))
        changes.update(
            {
                "valid_from": now,
                "valid_until": valid_until,
                "admin_response": AdminResponse(
                    quoted_by=actor.user_id,
                    quoted_at=now,
                    total_amount=command.total_amount,
                    valid_until=valid_until,
                    terms=command.terms,
                    notes=command.notes,
                    gst_details=command.gst_details,
                ).model_dump(mode="json"),
            }
        )
        return changes

    @staticmethod
    def _noted_response(quotation: Quotation, actor: ActorContext, now: datetime, notes: str) -> dict[str, Any]:
        admin_response = dict(quotation.admin_response or {})
        admin_response.setdefault("quoted_by", actor.user_id)
        admin_response.setdefault("quoted_at", now.isoformat())
        admin_response["processing_notes"] = notes
        return admin_response

    @staticmethod
    def _financial_changes(items: list[LineItem], currency: str) -> dict[str, Any]:
        result = compute_financials(items, currency)
        return {
            "line_items": [item.model_dump(mode="json") for item in result.line_items],
            "financial_summary": result.summary.model_dump(mode="json"),
            "tax_details": [detail.model_dump(mode="json") for detail in result.tax_details],
        }

    @staticmethod
    def _future_validity(value: datetime, now: datetime) -> datetime:
        valid_until = as_utc(value)
        if valid_until <= now:
            raise QuotationValidationError(
                "valid_until must be in the future",
                details={"valid_until": valid_until.isoformat()},
            )
        return valid_until

    @staticmethod
    def _currency_of(quotation: Quotation) -> str:
        return (quotation.financial_summary or {}).get("currency") or get_settings().default_currency

    def _new_quotation(
        self,
        buyer: BuyerInfo,
        items: list[LineItem],
        now: datetime,
        settings: Settings,
        *,
        status: str,
    ) -> Quotation:
        quotation_id = uuid.uuid4()
        financials = self._financial_changes(items, settings.default_currency)
        return Quotation(
            id=quotation_id,
            quotation_number=generate_quotation_number(now, settings.quotation_number_prefix),
            version=1,
            root_quotation_id=quotation_id,
            user_id=buyer.user_id,
            user_email=buyer.user_email,
            user_name=buyer.user_name,
            user_phone=buyer.user_phone,
            business_name=buyer.business_name,
            vendor_info=settings.vendor.model_dump(mode="json"),
            status=status,
            thread_status="active",
            urgency="standard",
            created_by=buyer.user_id,
            created_at=now,
            updated_at=now,
            row_version=1,
            **financials,
        )

    @staticmethod
    def _requested_line_items(payload: QuotationCreate, settings: Settings) -> list[LineItem]:
        if payload.products is not None:
            requested = [
                {
                    "product_id": product.product_id,
                    "product_name": product.product_name,
                    "specifications": product.specifications,
                    "quantity": legacy_quantity(product.quantity),
                    "unit": product.unit,
                }
                for product in payload.products
            ]
        else:
            requested = [item.model_dump() for item in payload.line_items or []]
        return [
            LineItem(
                **item,
                item_id=f"item_{index}",
                unit_price=0,
                tax_rate=settings.default_tax_rate,
                line_total=0,
            )
            for index, item in enumerate(requested, start=1)
        ]

    @staticmethod
    def _require_admin(actor: ActorContext, action: str) -> None:
        if not actor.is_admin:
            raise PermissionDeniedError(f"only staff may {action}")

    @staticmethod
    def _ensure_acting_for(actor: ActorContext, user_id: str) -> None:
        if not actor.is_admin and actor.user_id != user_id:
            raise PermissionDeniedError("buyers may only act on their own quotations")

    def _ensure_can_view(self, actor: ActorContext, quotation: Quotation) -> None:
        self._ensure_acting_for(actor, quotation.user_id)

    def _authorize_command(self, actor: ActorContext, quotation: Quotation, target: str) -> None:
        if actor.is_admin:
            return
        if target not in BUYER_COMMANDS:
            raise PermissionDeniedError(f"only staff may move a quotation to {target}")
        self._ensure_can_view(actor, quotation)

    @staticmethod
    def _ensure_not_frozen(quotation: Quotation) -> None:
        if quotation.status in _FROZEN_STATUSES:
            raise InvalidStateError(
                f"quotation is {quotation.status}",
                details={"quotation_id": str(quotation.id), "from_status": quotation.status},
            )


quotation_service = QuotationService()
