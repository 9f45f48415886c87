from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from quotedesk.core.auth import AuthUser, get_current_user as auth_get_current_user
from quotedesk.core.config import get_settings
from quotedesk.core.database import Base, get_db
from quotedesk.main import app


METRICS_ADMIN = AuthUser(sub="metrics-admin", roles=["admin", "system.metrics.read"])


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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def current_user() -> dict[str, AuthUser]:
    return {"user": METRICS_ADMIN}


@pytest.fixture()
def client(db_session: Session, current_user: dict[str, AuthUser]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_auth_user() -> AuthUser:
        return current_user["user"]

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_workflow_metrics(client: TestClient, current_user: dict[str, AuthUser]) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    current_user["user"] = AuthUser(sub="buyer-1", roles=["user"])
    created = client.post(
        "/api/quotations",
        json={
            "buyer": {"user_id": "buyer-1", "user_email": "asha@example.com", "user_name": "Asha Buyer"},
            "line_items": [{"product_id": "BZ-100", "product_name": "Benzene", "quantity": 2, "unit": "drum"}],
        },
    )
    assert created.status_code == 201
    quotation_id = created.json()["id"]

    current_user["user"] = METRICS_ADMIN
    processing = client.post(f"/api/quotations/{quotation_id}/status", json={"status": "processing"})
    assert processing.status_code == 200

    closure = client.post(f"/api/quotations/{quotation_id}/thread/request-closure")
    assert closure.status_code == 200

    stale = client.post(f"/api/quotations/{quotation_id}/status", json={"status": "processing", "row_version": 1})
    assert stale.status_code == 409

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "quotation_transitions_total" in body
    assert "quotation_thread_transitions_total" in body
    assert "notifications_emitted_total" in body
    assert "quotation_concurrency_conflicts_total" in body

    assert 'path="/health"' in body
    assert 'path="/api/quotations/{id}/status"' in body
    assert 'from_status="pending",to_status="processing"' in body
    assert 'to_status="awaiting_user_permission"' in body
    assert 'operation="status:processing"' in body


def test_metrics_requires_permission(client: TestClient, current_user: dict[str, AuthUser]) -> None:
    current_user["user"] = AuthUser(sub="buyer-1", roles=["user"])
    response = client.get("/metrics")
    assert response.status_code == 403


def test_metrics_disabled_returns_not_found(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()
    response = client.get("/metrics")
    assert response.status_code == 404
