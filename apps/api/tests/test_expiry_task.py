from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from quotedesk.core import celery_app as celery_module
from quotedesk.core.config import get_settings
from quotedesk.core.database import Base
from quotedesk.quotations.models import Quotation, utcnow


@pytest.fixture()
def session_factory() -> Generator[sessionmaker, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    try:
        yield SessionLocal
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def _seed_quoted(session: Session, valid_for: timedelta) -> uuid.UUID:
    now = utcnow()
    quotation_id = uuid.uuid4()
    session.add(
        Quotation(
            id=quotation_id,
            quotation_number="QT-2026-000123",
            root_quotation_id=quotation_id,
            user_id="buyer-1",
            user_email="asha@example.com",
            user_name="Asha Buyer",
            vendor_info={},
            line_items=[],
            status="quoted",
            valid_from=now - timedelta(days=30),
            valid_until=now + valid_for,
            created_at=now - timedelta(days=30),
            updated_at=now - timedelta(days=30),
        )
    )
    session.commit()
    return quotation_id


def test_expire_task_sweeps_overdue_quotations(session_factory: sessionmaker, monkeypatch: pytest.MonkeyPatch) -> None:
    with session_factory() as session:
        overdue = _seed_quoted(session, timedelta(hours=-1))
        current = _seed_quoted(session, timedelta(days=5))

    monkeypatch.setattr(celery_module, "SessionLocal", session_factory)

    result = celery_module.expire_overdue_task()
    assert result == {"count": 1, "expired_ids": [str(overdue)]}

    with session_factory() as session:
        assert session.get(Quotation, overdue).status == "expired"
        assert session.get(Quotation, overdue).last_modified_by == "scheduler"
        assert session.get(Quotation, current).status == "quoted"

    assert celery_module.expire_overdue_task()["count"] == 0


def test_beat_schedule_uses_configured_interval() -> None:
    schedule = celery_module.celery_app.conf.beat_schedule["quotations-expire-overdue"]
    assert schedule["task"] == "quotations.expire_overdue"
    assert schedule["schedule"] == float(celery_module.settings.expiry_sweep_interval_seconds)
