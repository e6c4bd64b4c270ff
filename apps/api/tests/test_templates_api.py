from __future__ import annotations

from collections.abc import Callable, Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salesflow.core.auth import AuthUser, get_current_user
from salesflow.core.config import get_settings
from salesflow.core.database import Base, get_db
from salesflow.main import app
from salesflow.messaging.templates import DEFAULT_TEMPLATES
from salesflow.middleware.rate_limit import reset_rate_limiter


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
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
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
        "sales": AuthUser(sub="user-1", roles=["sales"]),
        "admin": AuthUser(sub="admin-1", roles=["admin"]),
    }
    state = {"current": "admin"}

    def override_get_current_user() -> AuthUser:
        return actors[state["current"]]

    def set_actor(name: str) -> None:
        state["current"] = name

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client, set_actor
    app.dependency_overrides.clear()


def test_seed_is_idempotent_and_listed(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client

    first = test_client.post("/api/crm/templates/seed")
    assert first.status_code == 200
    assert len(first.json()) == len(DEFAULT_TEMPLATES)
    second = test_client.post("/api/crm/templates/seed")
    assert second.json() == []

    set_actor("sales")
    listed = test_client.get("/api/crm/templates")
    assert listed.status_code == 200
    assert {item["slug"] for item in listed.json()} == {item["slug"] for item in DEFAULT_TEMPLATES}


def test_template_admin_requires_admin_role(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, set_actor = client
    set_actor("sales")

    response = test_client.post(
        "/api/crm/templates",
        json={"slug": "spring_offer", "name": "Spring offer", "body": "Hi {{first_name}}", "channels": ["sms"]},
    )

    assert response.status_code == 403
    assert response.json()["code"] == "forbidden"
    assert response.json()["details"]["operation"] == "create_template"


def test_create_update_and_preview_template(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    created = test_client.post(
        "/api/crm/templates",
        json={
            "slug": "spring_offer",
            "name": "Spring offer",
            "subject": "An offer for {{first_name}}",
            "body": "Hi {{first_name}}, book at {{booking_link}}",
            "channels": ["email"],
            "trigger_stage": "qualified",
        },
    )
    assert created.status_code == 201
    template_id = created.json()["id"]
    assert created.json()["trigger_stage"] == "qualified"

    updated = test_client.patch(f"/api/crm/templates/{template_id}", json={"active": False})
    assert updated.status_code == 200
    assert updated.json()["active"] is False

    preview = test_client.post(f"/api/crm/templates/{template_id}/preview", json={"variables": {"first_name": "Sam"}})
    assert preview.status_code == 200
    assert preview.json() == {
        "subject": "An offer for Sam",
        "body": "Hi Sam, book at {{booking_link}}",
        "missing": ["booking_link"],
    }


def test_template_schema_rejects_unknown_stage(client: tuple[TestClient, Callable[[str], None]]) -> None:
    test_client, _ = client

    response = test_client.post(
        "/api/crm/templates",
        json={"slug": "bad", "name": "Bad", "body": "x", "channels": ["email"], "trigger_stage": "won"},
    )

    assert response.status_code == 422
