from __future__ import annotations

import uuid
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import Select, and_, func, select, update
from sqlalchemy.orm import Session

from quotedesk.quotations.models import Quotation, QuotationMessage


class QuotationRepository:
    def get(self, session: Session, quotation_id: uuid.UUID) -> Quotation | None:
        return session.get(Quotation, quotation_id, populate_existing=True)

    def get_latest_by_number(self, session: Session, quotation_number: str) -> Quotation | None:
        return session.scalar(
            select(Quotation)
            .where(Quotation.quotation_number == quotation_number)
            .order_by(Quotation.version.desc())
            .limit(1)
        )

    def latest_in_chain(self, session: Session, root_id: uuid.UUID) -> Quotation | None:
        return session.scalar(
            select(Quotation)
            .where(Quotation.root_quotation_id == root_id)
            .order_by(Quotation.version.desc(), Quotation.created_at.desc())
            .limit(1)
        )

    def page(self, session: Session, stmt: Select[tuple[Quotation]], *, offset: int, limit: int) -> tuple[list[Quotation], int]:
        total = session.scalar(select(func.count()).select_from(stmt.order_by(None).subquery())) or 0
        rows = session.scalars(stmt.order_by(Quotation.created_at.desc()).offset(offset).limit(limit)).all()
        return list(rows), int(total)

    def compare_and_set(
        self,
        session: Session,
        quotation_id: uuid.UUID,
        changes: dict[str, Any],
        *,
        row_version: int | None = None,
        status_in: Sequence[str] | None = None,
        status_not_in: Sequence[str] | None = None,
        thread_status: str | None = None,
        valid_before: datetime | None = None,
        bump_version: bool = True,
    ) -> bool:
        """Apply ``changes`` only if the row still matches the expected state."""
        conditions = [Quotation.id == quotation_id]
        if row_version is not None:
            conditions.append(Quotation.row_version == row_version)
        if status_in is not None:
            conditions.append(Quotation.status.in_(list(status_in)))
        if status_not_in is not None:
            conditions.append(Quotation.status.not_in(list(status_not_in)))
        if thread_status is not None:
            conditions.append(Quotation.thread_status == thread_status)
        if valid_before is not None:
            conditions.append(Quotation.valid_until < valid_before)

        if bump_version:
            changes = {**changes, "row_version": Quotation.row_version + 1}

        result = session.execute(
            update(Quotation)
            .where(and_(*conditions))
            .values(**changes)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class MessageRepository:
    def list_for_quotation(self, session: Session, quotation_id: uuid.UUID, *, offset: int, limit: int) -> list[QuotationMessage]:
        rows = session.scalars(
            select(QuotationMessage)
            .where(QuotationMessage.quotation_id == quotation_id)
            .order_by(QuotationMessage.created_at.asc(), QuotationMessage.id.asc())
            .offset(offset)
            .limit(limit)
        ).all()
        return list(rows)

    def unread_condition(self, reader_role: str):
        if reader_role == "admin":
            return and_(QuotationMessage.is_read_by_admin.is_(False), QuotationMessage.author_role == "user")
        return and_(QuotationMessage.is_read_by_user.is_(False), QuotationMessage.author_role == "admin")

    def count_unread(self, session: Session, quotation_id: uuid.UUID, reader_role: str) -> int:
        total = session.scalar(
            select(func.count())
            .select_from(QuotationMessage)
            .where(QuotationMessage.quotation_id == quotation_id, self.unread_condition(reader_role))
        )
        return int(total or 0)
