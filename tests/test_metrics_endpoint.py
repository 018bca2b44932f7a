from __future__ import annotations

from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from pipeline_crm.core.config import get_settings
from pipeline_crm.core.database import Base, get_db
from pipeline_crm.crm.api import get_current_user as crm_get_current_user
from pipeline_crm.crm.repositories import deal_repository
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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {
        "admin": ActorUser(user_id="metrics-admin", role="admin", correlation_id="metrics-corr-1"),
        "seller": ActorUser(user_id="metrics-seller", role="vendedor", correlation_id="metrics-corr-1"),
    }
    state = {"current": "admin"}

    def override_crm_user() -> ActorUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[crm_get_current_user] = override_crm_user

    with TestClient(app) as test_client:
        yield test_client, set_actor

    app.dependency_overrides.clear()


def _pipeline_with_gate(client: TestClient) -> tuple[str, str]:
    response = client.put(
        "/api/crm/pipeline",
        json={
            "name": "Metrics Pipeline",
            "stages": [
                {"name": "Lead", "color": "#3B82F6", "position": 0},
                {
                    "name": "Proposal",
                    "color": "#06B6D4",
                    "position": 1,
                    "fields": [{"name": "Budget", "field_type": "number", "is_required": True}],
                },
            ],
        },
    )
    assert response.status_code == 200
    lead, proposal = response.json()["stages"]
    return lead["id"], proposal["id"]


def test_metrics_endpoint_exposes_http_and_crm_metrics(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client
    assert test_client.get("/health").status_code == 200

    lead_id, proposal_id = _pipeline_with_gate(test_client)
    deal = test_client.post("/api/crm/deals", json={"title": "Metrics Deal", "stage_id": lead_id})
    assert deal.status_code == 201
    blocked = test_client.post(f"/api/crm/deals/{deal.json()['id']}/move", json={"stage_id": proposal_id})
    assert blocked.status_code == 422
    moved = test_client.post(f"/api/crm/deals/{deal.json()['id']}/move", json={"stage_id": lead_id})
    assert moved.status_code == 200

    metrics = test_client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "crm_snapshot_load_seconds" in body
    assert 'crm_deal_moves_total{outcome="blocked"}' in body
    assert 'crm_deal_moves_total{outcome="moved"}' in body
    assert 'crm_pipeline_saves_total{status="saved"}' in body

    assert 'path="/health"' in body
    assert 'path="/api/crm/deals/{id}/move"' in body


def test_store_failures_surface_as_503_and_are_counted(
    client: tuple[TestClient, Callable[[str], None]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, _ = client
    lead_id, _ = _pipeline_with_gate(test_client)

    def failing_insert(*args, **kwargs):  # type: ignore[no-untyped-def]
        raise OperationalError("INSERT INTO deals", {}, Exception("connection reset"))

    monkeypatch.setattr(deal_repository, "insert", failing_insert)

    response = test_client.post("/api/crm/deals", json={"title": "Lost", "stage_id": lead_id})

    assert response.status_code == 503
    body = response.json()
    assert body["code"] == "crm_store_error"
    assert body["details"] == {"operation": "create_deal"}
    assert body["correlation_id"]

    metrics = test_client.get("/metrics")
    assert 'crm_store_errors_total{operation="create_deal"}' in metrics.text


def test_metrics_require_admin(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("seller")

    assert test_client.get("/metrics").status_code == 403


def test_metrics_disabled_returns_404(
    client: tuple[TestClient, Callable[[str], None]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    test_client, _ = client
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    assert test_client.get("/metrics").status_code == 404
