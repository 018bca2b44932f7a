from __future__ import annotations

from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from prometheus_client import REGISTRY
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from pipeline_crm.core.config import get_settings
from pipeline_crm.core.database import Base, get_db
from pipeline_crm.crm.models import CRMProfile, CRMUserRole
from pipeline_crm.crm.repositories import user_role_repository
from pipeline_crm.main import app
from pipeline_crm.middleware.rate_limit import reset_rate_limiter

SECRET = "test-secret"


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
    monkeypatch.setenv("JWT_SECRET", SECRET)
    monkeypatch.setenv("JWT_AUDIENCE", "authenticated")
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _token(sub: str | None, *, audience: str = "authenticated", secret: str = SECRET) -> str:
    claims = {"aud": audience, "email": "user@example.com"}
    if sub is not None:
        claims["sub"] = sub
    return jwt.encode(claims, secret, algorithm="HS256")


def _auth(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def test_missing_token_is_rejected(client: TestClient) -> None:
    response = client.get("/me")
    assert response.status_code == 401


@pytest.mark.parametrize(
    "token",
    [
        _token("user-1", secret="other-secret"),
        _token("user-1", audience="anon"),
        _token(None),
        "not-a-jwt",
    ],
)
def test_invalid_tokens_are_rejected(client: TestClient, token: str) -> None:
    response = client.get("/me", headers=_auth(token))
    assert response.status_code == 401


def test_role_defaults_to_salesperson_and_follows_role_rows(client: TestClient, db_session: Session) -> None:
    db_session.add(CRMProfile(id="user-1", full_name="Ana Souza"))
    db_session.commit()

    me = client.get("/me", headers=_auth(_token("user-1")))
    assert me.status_code == 200
    assert me.json() == {"id": "user-1", "email": "user@example.com", "full_name": "Ana Souza", "role": "vendedor"}
    assert client.get("/api/crm/users", headers=_auth(_token("user-1"))).status_code == 403

    db_session.add(CRMUserRole(user_id="user-1", role="admin"))
    db_session.commit()

    assert client.get("/me", headers=_auth(_token("user-1"))).json()["role"] == "admin"
    assert client.get("/api/crm/users", headers=_auth(_token("user-1"))).status_code == 200


def test_role_lookup_failure_returns_store_error_envelope(
    client: TestClient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def failing_find(*args, **kwargs):  # type: ignore[no-untyped-def]
        raise OperationalError("SELECT user_roles", {}, Exception("connection reset"))

    monkeypatch.setattr(user_role_repository, "find_for_user", failing_find)
    labels = {"operation": "resolve_role"}
    before = REGISTRY.get_sample_value("crm_store_errors_total", labels) or 0.0

    response = client.get(
        "/api/crm/pipeline",
        headers={**_auth(_token("user-1")), "X-Correlation-Id": "role-lookup-corr"},
    )

    assert response.status_code == 503
    body = response.json()
    assert body["code"] == "crm_store_error"
    assert body["details"] == {"operation": "resolve_role"}
    assert body["correlation_id"] == "role-lookup-corr"
    assert REGISTRY.get_sample_value("crm_store_errors_total", labels) == before + 1

    assert client.get("/me", headers=_auth(_token("user-1"))).json()["code"] == "crm_store_error"
