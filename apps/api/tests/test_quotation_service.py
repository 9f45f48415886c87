from __future__ import annotations

import logging
import uuid
from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine, select, update
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from quotedesk import events
from quotedesk.core.config import get_settings
from quotedesk.core.database import Base
from quotedesk.quotations.context import ActorContext
from quotedesk.quotations.errors import (
    ConcurrencyConflictError,
    InvalidStateError,
    PermissionDeniedError,
    QuotationNotFoundError,
    QuotationValidationError,
)
from quotedesk.quotations.models import Notification, Quotation
from quotedesk.quotations.notifications import NotificationEmitter, NotificationRecord
from quotedesk.quotations.repository import QuotationRepository
from quotedesk.quotations.schemas import (
    AcceptCommand,
    BuyerInfo,
    Discount,
    LegacyProduct,
    LineItem,
    QuotationCreate,
    QuotationResponseUpdate,
    QuotationUpdate,
    QuoteCommand,
    RejectCommand,
    ReopenRequest,
    RequestedLineItem,
    RevisionCreate,
    SignatureRequest,
    StartProcessingCommand,
)
from quotedesk.quotations.service import QuotationService, generate_quotation_number, legacy_quantity


FIXED_NOW = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)

ADMIN = ActorContext(user_id="admin-1", role="admin", name="Ops Admin", correlation_id="corr-quotes")
BUYER = ActorContext(user_id="buyer-1", role="user", name="Asha Buyer", correlation_id="corr-quotes")
OTHER_BUYER = ActorContext(user_id="buyer-2", role="user", name="Ravi Buyer")


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


class FailingSink:
    def deliver(self, session: Session, record: NotificationRecord) -> None:
        raise RuntimeError("notification store unavailable")


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def clock() -> FrozenClock:
    return FrozenClock(FIXED_NOW)


@pytest.fixture()
def service(clock: FrozenClock) -> QuotationService:
    return QuotationService(clock=clock)


def _buyer(user_id: str = "buyer-1") -> BuyerInfo:
    return BuyerInfo(user_id=user_id, user_email="asha@example.com", user_name="Asha Buyer", business_name="Asha Chemicals")


def _request(**overrides: object) -> QuotationCreate:
    payload: dict[str, object] = {
        "buyer": _buyer(),
        "line_items": [RequestedLineItem(product_id="BZ-100", product_name="Benzene", quantity=2, unit="drum")],
    }
    payload.update(overrides)
    return QuotationCreate(**payload)


def _priced_items() -> list[LineItem]:
    return [
        LineItem(
            item_id="item_1",
            product_id="BZ-100",
            product_name="Benzene",
            quantity=2,
            unit="drum",
            unit_price=100,
            tax_rate=18,
            discount=Discount(type="percentage", value=10),
        )
    ]


def _priced_quotation(service: QuotationService, session: Session) -> Quotation:
    created = service.create_quotation(session, BUYER, _request())
    service.update_quotation_response(session, ADMIN, created.id, QuotationResponseUpdate(line_items=_priced_items()))
    row = session.get(Quotation, created.id)
    assert row is not None
    return row


def _quote(service: QuotationService, session: Session, quotation_id, **kwargs):  # type: ignore[no-untyped-def]
    return service.update_quotation_status(
        session,
        ADMIN,
        quotation_id,
        QuoteCommand(status="quoted", total_amount=212.4, **kwargs),
    )


def test_quotation_number_format() -> None:
    number = generate_quotation_number(FIXED_NOW)
    assert number.startswith("QT-2026-")
    assert len(number.split("-")[-1]) == 6


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("5", 5.0),
        (" 2.5 ", 2.5),
        ("500 kg", 500.0),
        ("2.5L", 2.5),
        (".5 t", 0.5),
        ("abc", 1.0),
        ("kg 500", 1.0),
        ("", 1.0),
        ("-2", 1.0),
        ("0", 1.0),
        ("nan", 1.0),
    ],
)
def test_legacy_quantity_parsing(raw: str, expected: float) -> None:
    assert legacy_quantity(raw) == expected


def test_create_with_items_is_pending_and_notifies_admins(service: QuotationService, db_session: Session) -> None:
    created = service.create_quotation(db_session, BUYER, _request(urgency="asap"))
    assert created.status == "pending"

    row = db_session.get(Quotation, created.id)
    assert row is not None
    assert row.version == 1
    assert row.root_quotation_id == row.id
    assert row.thread_status == "active"
    assert row.line_items[0]["item_id"] == "item_1"
    assert row.line_items[0]["unit_price"] == 0
    assert row.line_items[0]["tax_rate"] == 18
    assert row.vendor_info["company_name"] == get_settings().vendor.company_name

    notifications = db_session.scalars(select(Notification)).all()
    assert len(notifications) == 1
    assert notifications[0].recipient_type == "all_admins"
    assert notifications[0].priority == "urgent"
    assert created.quotation_number in notifications[0].message

    created_events = [item for item in events.published_events if item.get("event_type") == "quotation.created"]
    assert created_events
    assert created_events[-1]["quotation_number"] == created.quotation_number
    assert created_events[-1]["status"] == "pending"


def test_create_without_items_is_draft_without_notification(service: QuotationService, db_session: Session) -> None:
    created = service.create_quotation(db_session, BUYER, _request(line_items=[]))
    assert created.status == "draft"
    assert db_session.scalars(select(Notification)).all() == []

    draft = service.get_current_draft(db_session, BUYER, "buyer-1")
    assert draft is not None
    assert draft.id == created.id


def test_create_from_legacy_products(service: QuotationService, db_session: Session) -> None:
    created = service.create_quotation(
        db_session,
        BUYER,
        _request(
            line_items=None,
            products=[
                LegacyProduct(product_id="TOL-1", product_name="Toluene", quantity="12", unit="litre"),
                LegacyProduct(product_id="XYL-1", product_name="Xylene", quantity="lots", unit="litre"),
            ],
            delivery_location="Pune",
        ),
    )

    read = service.get_quotation(db_session, BUYER, created.id)
    assert [item.quantity for item in read.line_items] == [12.0, 1.0]
    assert [item.item_id for item in read.line_items] == ["item_1", "item_2"]
    assert read.delivery_terms is not None
    assert read.delivery_terms.delivery_location == "Pune"


def test_buyer_cannot_create_for_someone_else(service: QuotationService, db_session: Session) -> None:
    with pytest.raises(PermissionDeniedError) as exc_info:
        service.create_quotation(db_session, OTHER_BUYER, _request())
    assert exc_info.value.status_code == 403


def test_buyer_cannot_read_foreign_quotation(service: QuotationService, db_session: Session) -> None:
    created = service.create_quotation(db_session, BUYER, _request())
    with pytest.raises(PermissionDeniedError):
        service.get_quotation(db_session, OTHER_BUYER, created.id)


def test_quote_without_line_items_fails_and_leaves_record_unchanged(service: QuotationService, db_session: Session) -> None:
    created = service.create_draft_quotation(db_session, BUYER, _buyer())

    with pytest.raises(QuotationValidationError) as exc_info:
        _quote(service, db_session, created.id)
    assert exc_info.value.status_code == 422

    row = db_session.get(Quotation, created.id, populate_existing=True)
    assert row is not None
    assert row.status == "draft"
    assert row.row_version == 1
    assert row.valid_until is None


def test_quote_without_total_amount_fails_and_leaves_record_unchanged(service: QuotationService, db_session: Session) -> None:
    row = _priced_quotation(service, db_session)
    version_before = row.row_version
    summary_before = dict(row.financial_summary)

    with pytest.raises(QuotationValidationError):
        service.update_quotation_status(db_session, ADMIN, row.id, QuoteCommand(status="quoted"))

    row = db_session.get(Quotation, row.id, populate_existing=True)
    assert row is not None
    assert row.status == "pending"
    assert row.row_version == version_before
    assert row.financial_summary == summary_before
    assert row.valid_until is None


def test_quote_defaults_validity_to_thirty_days(service: QuotationService, db_session: Session) -> None:
    row = _priced_quotation(service, db_session)

    quoted = _quote(service, db_session, row.id, terms="Ex-works Mumbai")
    assert quoted.status == "quoted"
    assert quoted.valid_from == FIXED_NOW
    assert quoted.valid_until == FIXED_NOW + timedelta(days=30)
    assert quoted.financial_summary is not None
    assert quoted.financial_summary.grand_total == pytest.approx(212.4)
    assert quoted.admin_response is not None
    assert quoted.admin_response.total_amount == pytest.approx(212.4)
    assert quoted.admin_response.quoted_by == "admin-1"

    notification = db_session.scalars(
        select(Notification).where(Notification.recipient_type == "specific_user")
    ).one()
    assert notification.recipient_id == "buyer-1"
    assert notification.priority == "high"
    assert notification.message == f"Your quotation {quoted.quotation_number} is ready! Please check your account for details."


def test_quote_rejects_validity_in_the_past(service: QuotationService, db_session: Session) -> None:
    row = _priced_quotation(service, db_session)
    with pytest.raises(QuotationValidationError):
        _quote(service, db_session, row.id, valid_until=FIXED_NOW - timedelta(hours=1))

    row = db_session.get(Quotation, row.id, populate_existing=True)
    assert row is not None
    assert row.status == "pending"


def test_negotiation_to_acceptance(service: QuotationService, db_session: Session) -> None:
    row = _priced_quotation(service, db_session)

    processing = service.update_quotation_status(
        db_session, ADMIN, row.id, StartProcessingCommand(status="processing", notes="checking stock")
    )
    assert processing.status == "processing"
    assert processing.admin_response is not None
    assert processing.admin_response.processing_notes == "checking stock"

    _quote(service, db_session, row.id)
    accepted = service.update_quotation_status(db_session, BUYER, row.id, AcceptCommand(status="accepted"))
    assert accepted.status == "accepted"
    assert accepted.last_modified_by == "buyer-1"

    transitions = [
        (item["from_status"], item["to_status"])
        for item in events.published_events
        if item.get("event_type") == "quotation.status_changed"
    ]
    assert transitions == [("pending", "processing"), ("processing", "quoted"), ("quoted", "accepted")]


def test_buyer_cannot_issue_staff_commands(service: QuotationService, db_session: Session) -> None:
    row = _priced_quotation(service, db_session)
    with pytest.raises(PermissionDeniedError):
        service.update_quotation_status(db_session, BUYER, row.id, QuoteCommand(status="quoted", total_amount=10))

    _quote(service, db_session, row.id)
    with pytest.raises(PermissionDeniedError):
        service.update_quotation_status(db_session, OTHER_BUYER, row.id, AcceptCommand(status="accepted"))


def test_illegal_transition_is_invalid_state(service: QuotationService, db_session: Session) -> None:
    created = service.create_quotation(db_session, BUYER, _request())
    with pytest.raises(InvalidStateError) as exc_info:
        service.update_quotation_status(db_session, BUYER, created.id, AcceptCommand(status="accepted"))
    assert exc_info.value.status_code == 409
    assert exc_info.value.details == {"from_status": "pending", "to_status": "accepted"}


def test_accept_after_validity_lapsed_is_invalid_state(
    service: QuotationService,
    db_session: Session,
    clock: FrozenClock,
) -> None:
    row = _priced_quotation(service, db_session)
    _quote(service, db_session, row.id)

    clock.advance(days=31)
    with pytest.raises(InvalidStateError):
        service.update_quotation_status(db_session, BUYER, row.id, AcceptCommand(status="accepted"))


def test_reopen_keeps_financial_summary(service: QuotationService, db_session: Session) -> None:
    row = _priced_quotation(service, db_session)
    quoted = _quote(service, db_session, row.id)
    service.update_quotation_status(db_session, BUYER, row.id, RejectCommand(status="rejected", notes="too expensive"))

    reopened = service.reopen(db_session, ADMIN, row.id, ReopenRequest(notes="revisiting price"))
    assert reopened.status == "processing"
    assert reopened.financial_summary == quoted.financial_summary
    assert reopened.admin_response is not None
    assert reopened.admin_response.processing_notes == "revisiting price"


def test_reopen_requires_rejected(service: QuotationService, db_session: Session) -> None:
    created = service.create_quotation(db_session, BUYER, _request())
    with pytest.raises(InvalidStateError):
        service.reopen(db_session, ADMIN, created.id, ReopenRequest())


def test_revision_creates_next_version_in_chain(service: QuotationService, db_session: Session) -> None:
    row = _priced_quotation(service, db_session)
    _quote(service, db_session, row.id)

    revision = service.create_revision(db_session, ADMIN, row.id, RevisionCreate(revision_notes="new freight rates"))
    assert revision.version == 2
    assert revision.parent_quotation_id == row.id

    original = service.get_quotation(db_session, ADMIN, row.id)
    assert original.status == "revised"

    latest = service.get_latest_revision(db_session, BUYER, row.id)
    assert latest.id == revision.revision_id
    assert latest.status == "draft"
    assert latest.version == original.version + 1
    assert latest.root_quotation_id == row.id
    assert latest.quotation_number == original.quotation_number
    assert latest.valid_until is None
    assert latest.financial_summary == original.financial_summary

    by_number = service.get_by_number(db_session, BUYER, original.quotation_number)
    assert by_number.id == revision.revision_id

    with pytest.raises(InvalidStateError):
        service.create_revision(db_session, ADMIN, row.id)
    with pytest.raises(InvalidStateError):
        service.update_quotation(db_session, ADMIN, row.id, QuotationUpdate(business_name="Renamed"))


def test_only_staff_create_revisions(service: QuotationService, db_session: Session) -> None:
    row = _priced_quotation(service, db_session)
    with pytest.raises(PermissionDeniedError):
        service.create_revision(db_session, BUYER, row.id)


def test_expiry_sweep_is_idempotent(service: QuotationService, db_session: Session, clock: FrozenClock) -> None:
    row = _priced_quotation(service, db_session)
    _quote(service, db_session, row.id, valid_until=FIXED_NOW + timedelta(days=1))

    assert service.expire_overdue(db_session).count == 0

    clock.advance(days=2)
    first = service.expire_overdue(db_session)
    assert first.count == 1
    assert first.expired_ids == [row.id]

    second = service.expire_overdue(db_session)
    assert second.count == 0

    expired = service.get_quotation(db_session, ADMIN, row.id)
    assert expired.status == "expired"
    assert expired.last_modified_by == "system"


class RequotingRepository(QuotationRepository):
    """Lands a fresh quote on the row right before the sweep writes to it."""

    def __init__(self, requoted_until: datetime) -> None:
        self.requoted_until = requoted_until

    def compare_and_set(self, session: Session, quotation_id: uuid.UUID, changes: dict, **guards: object) -> bool:  # type: ignore[override]
        if changes.get("status") == "expired":
            session.execute(
                update(Quotation)
                .where(Quotation.id == quotation_id)
                .values(valid_until=self.requoted_until, row_version=Quotation.row_version + 1)
                .execution_options(synchronize_session=False)
            )
        return super().compare_and_set(session, quotation_id, changes, **guards)  # type: ignore[arg-type]


def test_expiry_sweep_skips_a_row_requoted_mid_sweep(db_session: Session, clock: FrozenClock) -> None:
    service = QuotationService(clock=clock)
    row = _priced_quotation(service, db_session)
    _quote(service, db_session, row.id, valid_until=FIXED_NOW + timedelta(days=1))
    events.published_events.clear()

    clock.advance(days=2)
    racing = QuotationService(clock=clock, repository=RequotingRepository(clock.now + timedelta(days=30)))
    result = racing.expire_overdue(db_session)
    assert result.count == 0
    assert result.expired_ids == []

    stored = db_session.get(Quotation, row.id, populate_existing=True)
    assert stored is not None
    assert stored.status == "quoted"
    assert stored.last_modified_by != "system"
    assert [item for item in events.published_events if item.get("to_status") == "expired"] == []


def test_requote_keeps_running_validity_window(service: QuotationService, db_session: Session, clock: FrozenClock) -> None:
    row = _priced_quotation(service, db_session)
    _quote(service, db_session, row.id, valid_until=FIXED_NOW + timedelta(days=10))

    clock.advance(days=2)
    requoted = _quote(service, db_session, row.id)
    assert requoted.valid_until == FIXED_NOW + timedelta(days=10)
    assert requoted.valid_from == clock.now


def test_requote_after_lapse_restarts_validity(service: QuotationService, db_session: Session, clock: FrozenClock) -> None:
    row = _priced_quotation(service, db_session)
    _quote(service, db_session, row.id, valid_until=FIXED_NOW + timedelta(days=1))

    clock.advance(days=3)
    requoted = _quote(service, db_session, row.id)
    assert requoted.valid_until == clock.now + timedelta(days=30)


def test_stale_row_version_is_a_conflict(service: QuotationService, db_session: Session) -> None:
    row = _priced_quotation(service, db_session)
    assert row.row_version == 2

    with pytest.raises(ConcurrencyConflictError) as exc_info:
        service.update_quotation_status(
            db_session,
            ADMIN,
            row.id,
            StartProcessingCommand(status="processing", row_version=1),
        )
    assert exc_info.value.code == "row_version_conflict"

    current = service.get_quotation(db_session, ADMIN, row.id)
    assert current.status == "pending"
    assert current.row_version == 2


def test_notification_failure_does_not_roll_back_transition(
    clock: FrozenClock,
    db_session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    service = QuotationService(clock=clock, emitter=NotificationEmitter(sink=FailingSink()))

    row = _priced_quotation(service, db_session)
    quoted = _quote(service, db_session, row.id)
    assert quoted.status == "quoted"

    stored = db_session.get(Quotation, row.id, populate_existing=True)
    assert stored is not None
    assert stored.status == "quoted"
    assert db_session.scalars(select(Notification)).all() == []

    failures = [
        record
        for record in caplog.records
        if record.name == "quotedesk.notifications" and record.getMessage() == "notification.failed"
    ]
    assert failures
    assert any(getattr(record, "quotation_id", None) == str(row.id) for record in failures)


def test_update_quotation_is_a_closed_schema(service: QuotationService, db_session: Session) -> None:
    with pytest.raises(ValidationError):
        QuotationUpdate.model_validate({"status": "accepted"})

    created = service.create_quotation(db_session, BUYER, _request())
    with pytest.raises(QuotationValidationError):
        service.update_quotation(db_session, BUYER, created.id, QuotationUpdate())

    updated = service.update_quotation(db_session, BUYER, created.id, QuotationUpdate(user_phone="+91-9000000000", urgency="urgent"))
    assert updated.user_phone == "+91-9000000000"
    assert updated.urgency == "urgent"
    assert updated.status == "pending"


def test_response_update_sets_terms_and_admin_response(service: QuotationService, db_session: Session) -> None:
    created = service.create_quotation(db_session, BUYER, _request())
    updated = service.update_quotation_response(
        db_session,
        ADMIN,
        created.id,
        QuotationResponseUpdate.model_validate(
            {
                "line_items": [item.model_dump() for item in _priced_items()],
                "payment_terms": {"payment_method": "NEFT", "credit_days": 30},
                "warranty_info": {"warranty_period": "6 months"},
                "admin_notes": "priced at list",
            }
        ),
    )
    assert updated.financial_summary is not None
    assert updated.financial_summary.grand_total == pytest.approx(212.4)
    assert updated.tax_details is not None
    assert [detail.tax_type for detail in updated.tax_details] == ["GST"]
    assert updated.line_items[0].line_total == 180
    assert updated.payment_terms is not None
    assert updated.payment_terms.credit_days == 30
    assert updated.admin_response is not None
    assert updated.admin_response.processing_notes == "priced at list"

    with pytest.raises(PermissionDeniedError):
        service.update_quotation_response(db_session, BUYER, created.id, QuotationResponseUpdate(admin_notes="x"))


def test_queries_and_statistics(service: QuotationService, db_session: Session, clock: FrozenClock) -> None:
    accepted = _priced_quotation(service, db_session)
    _quote(service, db_session, accepted.id)
    service.update_quotation_status(db_session, BUYER, accepted.id, AcceptCommand(status="accepted"))

    clock.advance(minutes=1)
    expiring = _priced_quotation(service, db_session)
    _quote(service, db_session, expiring.id, valid_until=FIXED_NOW + timedelta(days=3))

    clock.advance(minutes=1)
    service.create_quotation(db_session, BUYER, _request(line_items=[]))

    stats = service.get_stats(db_session, ADMIN)
    assert stats.total == 3
    assert stats.by_status["accepted"] == 1
    assert stats.by_status["quoted"] == 1
    assert stats.by_status["draft"] == 1
    assert stats.by_status["revised"] == 0
    assert stats.recent_requests == 3
    assert stats.total_value == pytest.approx(212.4)
    assert stats.average_value == pytest.approx(212.4)
    assert stats.conversion_rate == pytest.approx(100 / 3)
    assert stats.expiring_quotations == 1

    soon = service.get_expiring(db_session, ADMIN)
    assert [item.id for item in soon] == [expiring.id]

    page = service.list_by_user(db_session, BUYER, "buyer-1", limit=2, include_unread_count=True)
    assert page.total == 3
    assert page.has_more is True
    assert len(page.quotations) == 2
    assert all(item.unread_message_count == 0 for item in page.quotations)

    quoted_only = service.list_all(db_session, ADMIN, status="quoted")
    assert [item.id for item in quoted_only.quotations] == [expiring.id]

    with pytest.raises(PermissionDeniedError):
        service.get_stats(db_session, BUYER)


def test_document_generation_and_signature(service: QuotationService, db_session: Session) -> None:
    row = _priced_quotation(service, db_session)

    document = service.generate_document(db_session, ADMIN, row.id)
    assert document.pdf_generated is True
    assert document.pdf_url == f"/api/quotations/{row.quotation_number}/pdf"

    signed = service.sign_document(db_session, BUYER, row.id, SignatureRequest(signature_hash="sha256:abc"))
    assert signed.pdf_generated is True
    assert signed.digital_signature is not None
    assert signed.digital_signature.signed is True
    assert signed.digital_signature.signed_by == "buyer-1"


def test_missing_quotation_is_not_found(service: QuotationService, db_session: Session) -> None:
    with pytest.raises(QuotationNotFoundError) as exc_info:
        service.get_quotation(db_session, ADMIN, uuid.uuid4())
    assert exc_info.value.status_code == 404
