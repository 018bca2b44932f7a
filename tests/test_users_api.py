from __future__ import annotations

from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from pipeline_crm import audit, events
from pipeline_crm.core.config import get_settings
from pipeline_crm.core.database import Base, get_db
from pipeline_crm.crm.api import get_current_user
from pipeline_crm.crm.models import CRMProfile, CRMUserRole
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
    get_settings.cache_clear()
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()
    reset_rate_limiter()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[tuple[TestClient, Callable[[str], None]], None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    actors = {
        "admin": ActorUser(user_id="admin-1", role="admin", email="admin@example.com", correlation_id="corr-users"),
        "seller": ActorUser(user_id="seller-1", role="vendedor", correlation_id="corr-users"),
    }
    state = {"current": "admin"}

    def override_get_current_user() -> ActorUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    db_session.add_all(
        [
            CRMProfile(id="admin-1", full_name="Carla Admin"),
            CRMProfile(id="seller-1", full_name="Bruno Lima"),
            CRMProfile(id="new-1", full_name=None),
            CRMUserRole(user_id="admin-1", role="admin"),
        ]
    )
    db_session.commit()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def test_users_without_role_rows_are_salespeople(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    response = test_client.get("/api/crm/users")

    assert response.status_code == 200
    assert {item["id"]: (item["full_name"], item["role"]) for item in response.json()} == {
        "admin-1": ("Carla Admin", "admin"),
        "seller-1": ("Bruno Lima", "vendedor"),
        "new-1": ("Unnamed", "vendedor"),
    }


def test_change_role_replaces_the_role_row(
    client: tuple[TestClient, Callable[[str], None]],
    db_session: Session,
) -> None:
    test_client, _ = client

    promoted = test_client.put("/api/crm/users/seller-1/role", json={"role": "admin"})
    assert promoted.status_code == 200
    assert promoted.json() == {"id": "seller-1", "full_name": "Bruno Lima", "role": "admin"}

    demoted = test_client.put("/api/crm/users/seller-1/role", json={"role": "vendedor"})
    assert demoted.status_code == 200

    rows = db_session.scalars(select(CRMUserRole).where(CRMUserRole.user_id == "seller-1")).all()
    assert [row.role for row in rows] == ["vendedor"]

    changes = [event for event in events.published_events if event["event_type"] == "crm.user.role_changed"]
    assert [(event["payload"]["previous_role"], event["payload"]["role"]) for event in changes] == [
        ("vendedor", "admin"),
        ("admin", "vendedor"),
    ]
    assert len(audit.entries_for("user_role", "seller-1")) == 2


def test_change_role_rejects_unknown_values_and_users(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    assert test_client.put("/api/crm/users/seller-1/role", json={"role": "manager"}).status_code == 422

    missing = test_client.put("/api/crm/users/ghost/role", json={"role": "admin"})
    assert missing.status_code == 404
    assert missing.json()["code"] == "crm_user_not_found"


def test_user_management_requires_admin(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("seller")

    listing = test_client.get("/api/crm/users")
    assert listing.status_code == 403
    assert listing.json()["code"] == "crm_user_list_failed"
    assert test_client.put("/api/crm/users/seller-1/role", json={"role": "admin"}).status_code == 403


def test_me_reports_identity_and_role(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client

    admin = test_client.get("/me")
    assert admin.json() == {
        "id": "admin-1",
        "email": "admin@example.com",
        "full_name": "Carla Admin",
        "role": "admin",
    }

    set_actor("seller")
    seller = test_client.get("/me")
    assert seller.json()["role"] == "vendedor"
    assert seller.json()["full_name"] == "Bruno Lima"
