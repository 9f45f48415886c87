"""create quotation tables

Revision ID: 202610190001
Revises:
Create Date: 2026-10-19 00:00:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610190001"
down_revision: str | None = None
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "quotations",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("quotation_number", sa.String(length=32), nullable=False),
        sa.Column("version", sa.Integer(), server_default="1", nullable=False),
        sa.Column("parent_quotation_id", sa.Uuid(), nullable=True),
        sa.Column("root_quotation_id", sa.Uuid(), nullable=True),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("user_email", sa.String(length=255), nullable=False),
        sa.Column("user_name", sa.String(length=255), nullable=False),
        sa.Column("user_phone", sa.String(length=64), nullable=True),
        sa.Column("business_name", sa.String(length=255), nullable=True),
        sa.Column("vendor_info", sa.JSON(), nullable=False),
        sa.Column("billing_address", sa.JSON(), nullable=True),
        sa.Column("shipping_address", sa.JSON(), nullable=True),
        sa.Column("line_items", sa.JSON(), nullable=False),
        sa.Column("financial_summary", sa.JSON(), nullable=True),
        sa.Column("tax_details", sa.JSON(), nullable=True),
        sa.Column("payment_terms", sa.JSON(), nullable=True),
        sa.Column("delivery_terms", sa.JSON(), nullable=True),
        sa.Column("terms_and_conditions", sa.JSON(), nullable=True),
        sa.Column("warranty_info", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(length=32), server_default="pending", nullable=False),
        sa.Column("valid_from", sa.DateTime(timezone=True), nullable=True),
        sa.Column("valid_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("admin_response", sa.JSON(), nullable=True),
        sa.Column("document_info", sa.JSON(), nullable=True),
        sa.Column("thread_status", sa.String(length=32), server_default="active", nullable=False),
        sa.Column("closure_requested_by", sa.String(length=128), nullable=True),
        sa.Column("closure_requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closure_reason", sa.Text(), nullable=True),
        sa.Column("user_permission_to_close", sa.Boolean(), nullable=True),
        sa.Column("user_permission_granted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closure_rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closure_rejection_reason", sa.Text(), nullable=True),
        sa.Column("closed_by", sa.String(length=128), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("additional_requirements", sa.Text(), nullable=True),
        sa.Column("urgency", sa.String(length=16), server_default="standard", nullable=False),
        sa.Column("created_by", sa.String(length=128), nullable=True),
        sa.Column("last_modified_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("row_version", sa.Integer(), server_default="1", nullable=False),
        sa.ForeignKeyConstraint(["parent_quotation_id"], ["quotations.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_quotations_number_version", "quotations", ["quotation_number", "version"], unique=False)
    op.create_index("ix_quotations_user_id", "quotations", ["user_id"], unique=False)
    op.create_index("ix_quotations_status", "quotations", ["status"], unique=False)
    op.create_index("ix_quotations_thread_status", "quotations", ["thread_status"], unique=False)
    op.create_index("ix_quotations_valid_until", "quotations", ["valid_until"], unique=False)
    op.create_index("ix_quotations_created_at", "quotations", ["created_at"], unique=False)
    op.create_index("ix_quotations_root_id", "quotations", ["root_quotation_id"], unique=False)

    op.create_table(
        "quotation_messages",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("quotation_id", sa.Uuid(), nullable=False),
        sa.Column("author_id", sa.String(length=128), nullable=False),
        sa.Column("author_name", sa.String(length=255), nullable=False),
        sa.Column("author_role", sa.String(length=16), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("message_type", sa.String(length=48), server_default="message", nullable=False),
        sa.Column("is_read_by_user", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("is_read_by_admin", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("read_by_user_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("read_by_admin_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["quotation_id"], ["quotations.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_quotation_messages_quotation_id", "quotation_messages", ["quotation_id"], unique=False)
    op.create_index("ix_quotation_messages_author", "quotation_messages", ["author_id", "author_role"], unique=False)
    op.create_index("ix_quotation_messages_type", "quotation_messages", ["message_type"], unique=False)

    op.create_table(
        "notifications",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("notification_type", sa.String(length=48), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("recipient_type", sa.String(length=32), nullable=False),
        sa.Column("recipient_id", sa.String(length=128), nullable=True),
        sa.Column("priority", sa.String(length=16), server_default="medium", nullable=False),
        sa.Column("related_entity_type", sa.String(length=32), nullable=True),
        sa.Column("related_entity_id", sa.String(length=64), nullable=True),
        sa.Column("is_read", sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_notifications_recipient", "notifications", ["recipient_type", "recipient_id"], unique=False)
    op.create_index("ix_notifications_related", "notifications", ["related_entity_type", "related_entity_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_notifications_related", table_name="notifications")
    op.drop_index("ix_notifications_recipient", table_name="notifications")
    op.drop_table("notifications")

    op.drop_index("ix_quotation_messages_type", table_name="quotation_messages")
    op.drop_index("ix_quotation_messages_author", table_name="quotation_messages")
    op.drop_index("ix_quotation_messages_quotation_id", table_name="quotation_messages")
    op.drop_table("quotation_messages")

    op.drop_index("ix_quotations_root_id", table_name="quotations")
    op.drop_index("ix_quotations_created_at", table_name="quotations")
    op.drop_index("ix_quotations_valid_until", table_name="quotations")
    op.drop_index("ix_quotations_thread_status", table_name="quotations")
    op.drop_index("ix_quotations_status", table_name="quotations")
    op.drop_index("ix_quotations_user_id", table_name="quotations")
    op.drop_index("ix_quotations_number_version", table_name="quotations")
    op.drop_table("quotations")
