from __future__ import annotations

from collections.abc import Generator
from types import SimpleNamespace

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from pipeline_crm.core.config import get_settings
from pipeline_crm.core.database import Base, get_db
from pipeline_crm.crm.api import get_current_user as crm_get_current_user
from pipeline_crm.crm.editor import draft_store
from pipeline_crm.crm.service import ActorUser
from pipeline_crm.main import app
from pipeline_crm.middleware import rate_limit
from pipeline_crm.middleware.rate_limit import WriteBudget, reset_rate_limiter


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
def configure_rate_limiter_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "false")
    monkeypatch.setenv("RATE_LIMIT_CRM_MUTATIONS_PER_MINUTE", "3")
    monkeypatch.setenv("JWT_SECRET", "rate-limit-secret")
    get_settings.cache_clear()
    reset_rate_limiter()
    draft_store.clear()
    yield
    reset_rate_limiter()
    draft_store.clear()
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


def _bearer(sub: str) -> dict[str, str]:
    token = jwt.encode({"sub": sub, "aud": "authenticated"}, "rate-limit-secret", algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


def test_mutating_crm_endpoints_are_rate_limited(client: TestClient) -> None:
    responses = [client.post("/api/crm/deals", json={"title": f"Deal {index}"}) for index in range(5)]

    assert [response.status_code for response in responses[:3]] == [422, 422, 422]
    limited = [response for response in responses if response.status_code == 429]
    assert limited

    first_limited = limited[0]
    body = first_limited.json()
    assert body["code"] == "crm_rate_limited"
    assert body["details"]["route_group"] == "deals"
    assert body["correlation_id"] is not None
    assert first_limited.headers.get("Retry-After") is not None


def test_buckets_are_per_user_and_route_group(client: TestClient) -> None:
    for _ in range(3):
        assert client.post("/api/crm/deals", json={"title": "x"}, headers=_bearer("user-a")).status_code != 429
    assert client.post("/api/crm/deals", json={"title": "x"}, headers=_bearer("user-a")).status_code == 429

    assert client.post("/api/crm/deals", json={"title": "x"}, headers=_bearer("user-b")).status_code != 429
    assert client.post("/api/crm/pipeline/draft", headers=_bearer("user-a")).status_code == 201


def test_get_endpoints_are_not_rate_limited(client: TestClient) -> None:
    responses = [client.get("/api/crm/pipeline") for _ in range(10)]
    assert all(response.status_code != 429 for response in responses)


def test_idle_buckets_are_evicted_once_refilled(monkeypatch: pytest.MonkeyPatch) -> None:
    clock = {"now": 1000.0}
    monkeypatch.setattr(rate_limit, "time", SimpleNamespace(monotonic=lambda: clock["now"]))
    budget = WriteBudget(window_seconds=60)

    assert budget.spend("user-a", "deals", 1) == (True, 0)
    allowed, retry_after = budget.spend("user-a", "deals", 1)
    assert not allowed
    assert retry_after >= 1
    assert budget.spend("user-b", "pipeline", 1) == (True, 0)
    assert budget.tracked() == 2

    clock["now"] += 30
    assert budget.spend("user-b", "pipeline", 5)[0]
    assert budget.tracked() == 2

    clock["now"] += 45
    assert budget.spend("user-c", "deals", 1) == (True, 0)
    assert budget.tracked() == 2
    assert budget.spend("user-a", "deals", 1) == (True, 0)
