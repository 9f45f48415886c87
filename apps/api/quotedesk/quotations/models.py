from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, Uuid, false
from sqlalchemy.orm import Mapped, mapped_column, relationship

from quotedesk.core.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; every stored value is UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class Quotation(Base):
    __tablename__ = "quotations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    quotation_number: Mapped[str] = mapped_column(String(32), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    parent_quotation_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("quotations.id", ondelete="SET NULL"),
        nullable=True,
    )
    root_quotation_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)

    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    user_email: Mapped[str] = mapped_column(String(255), nullable=False)
    user_name: Mapped[str] = mapped_column(String(255), nullable=False)
    user_phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    business_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    vendor_info: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    billing_address: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    shipping_address: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    line_items: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    financial_summary: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    tax_details: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)

    payment_terms: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    delivery_terms: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    terms_and_conditions: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    warranty_info: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default="pending", server_default="pending")
    valid_from: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    admin_response: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    document_info: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    thread_status: Mapped[str] = mapped_column(String(32), nullable=False, default="active", server_default="active")
    closure_requested_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    closure_requested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    user_permission_to_close: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    user_permission_granted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closure_rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    closure_rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    closed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    additional_requirements: Mapped[str | None] = mapped_column(Text, nullable=True)
    urgency: Mapped[str] = mapped_column(String(16), nullable=False, default="standard", server_default="standard")

    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_modified_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    messages: Mapped[list[QuotationMessage]] = relationship(
        "QuotationMessage",
        back_populates="quotation",
        order_by="QuotationMessage.created_at",
        passive_deletes=True,
    )

    __table_args__ = (
        Index("ix_quotations_number_version", "quotation_number", "version"),
        Index("ix_quotations_user_id", "user_id"),
        Index("ix_quotations_status", "status"),
        Index("ix_quotations_thread_status", "thread_status"),
        Index("ix_quotations_valid_until", "valid_until"),
        Index("ix_quotations_created_at", "created_at"),
        Index("ix_quotations_root_id", "root_quotation_id"),
    )


class QuotationMessage(Base):
    __tablename__ = "quotation_messages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    quotation_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("quotations.id", ondelete="CASCADE"),
        nullable=False,
    )
    author_id: Mapped[str] = mapped_column(String(128), nullable=False)
    author_name: Mapped[str] = mapped_column(String(255), nullable=False)
    author_role: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    message_type: Mapped[str] = mapped_column(String(48), nullable=False, default="message", server_default="message")
    is_read_by_user: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    is_read_by_admin: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    read_by_user_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    read_by_admin_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    quotation: Mapped[Quotation] = relationship("Quotation", back_populates="messages")

    __table_args__ = (
        Index("ix_quotation_messages_quotation_id", "quotation_id"),
        Index("ix_quotation_messages_author", "author_id", "author_role"),
        Index("ix_quotation_messages_type", "message_type"),
    )


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    notification_type: Mapped[str] = mapped_column(String(48), nullable=False)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    recipient_type: Mapped[str] = mapped_column(String(32), nullable=False)
    recipient_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="medium", server_default="medium")
    related_entity_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    related_entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=false())
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_notifications_recipient", "recipient_type", "recipient_id"),
        Index("ix_notifications_related", "related_entity_type", "related_entity_id"),
    )
