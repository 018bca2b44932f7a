from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from pipeline_crm import audit, events
from pipeline_crm.core.config import get_settings
from pipeline_crm.core.database import Base, get_db
from pipeline_crm.crm.api import get_current_user as crm_get_current_user
from pipeline_crm.crm.service import ActorUser
from pipeline_crm.main import app
from pipeline_crm.middleware.rate_limit import reset_rate_limiter


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
def clear_stubs(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="admin-1",
            role="admin",
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _save_pipeline(client: TestClient, correlation_id: str) -> dict:
    response = client.put(
        "/api/crm/pipeline",
        json={"name": "Sales", "stages": [{"name": "Lead", "color": "#3B82F6", "position": 0}]},
        headers={"X-Correlation-Id": correlation_id},
    )
    assert response.status_code == 200
    return response.json()


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get("/api/crm/pipeline")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value
    assert response.headers.get("x-request-id") == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get("/api/crm/pipeline", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_correlation_id_propagates_to_audit_and_events(client: TestClient) -> None:
    snapshot = _save_pipeline(client, "save-corr-1")

    deal = client.post(
        "/api/crm/deals",
        json={"title": "ACME", "stage_id": snapshot["stages"][0]["id"]},
        headers={"X-Correlation-Id": "deal-corr-1"},
    )
    assert deal.status_code == 201

    saved = next(event for event in events.published_events if event["event_type"] == "crm.pipeline.saved")
    created = next(event for event in events.published_events if event["event_type"] == "crm.deal.created")
    assert saved["correlation_id"] == "save-corr-1"
    assert created["correlation_id"] == "deal-corr-1"

    assert audit.entries_for("pipeline")[0]["correlation_id"] == "save-corr-1"
    assert audit.entries_for("deal", deal.json()["id"])[0]["correlation_id"] == "deal-corr-1"
