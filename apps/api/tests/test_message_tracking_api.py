from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salesflow.core.config import get_settings
from salesflow.core.database import Base, get_db
from salesflow.main import app
from salesflow.messaging.api import TRACKING_PIXEL
from salesflow.messaging.models import MessageLogEntry
from salesflow.middleware.rate_limit import reset_rate_limiter
from salesflow.pipeline.models import Lead


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
    monkeypatch.setenv("SITE_URL", "https://crm.example.com")
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


@pytest.fixture()
def sent_message(db_session: Session) -> uuid.UUID:
    lead = Lead(name="Jordan Smith", email="jordan@example.com")
    db_session.add(lead)
    db_session.flush()
    entry = MessageLogEntry(lead_id=lead.id, channel="email", status="sent", payload={"template_slug": "enquiry_received"})
    db_session.add(entry)
    db_session.commit()
    return entry.id


def test_open_pixel_records_first_open(client: TestClient, db_session: Session, sent_message: uuid.UUID) -> None:
    response = client.get("/api/track/open", params={"mid": str(sent_message)})

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/gif"
    assert response.content == TRACKING_PIXEL
    db_session.expire_all()
    entry = db_session.get(MessageLogEntry, sent_message)
    assert entry is not None
    assert entry.opened_at is not None
    assert entry.clicked_at is None


def test_open_pixel_for_unknown_message_still_serves_image(client: TestClient) -> None:
    response = client.get("/api/track/open", params={"mid": str(uuid.uuid4())})

    assert response.status_code == 200
    assert response.content == TRACKING_PIXEL


def test_click_records_engagement_and_redirects(client: TestClient, db_session: Session, sent_message: uuid.UUID) -> None:
    response = client.get(
        "/api/track/click",
        params={"mid": str(sent_message), "url": "https://example.com/portfolio"},
        follow_redirects=False,
    )

    assert response.status_code == 302
    assert response.headers["location"] == "https://example.com/portfolio"
    db_session.expire_all()
    entry = db_session.get(MessageLogEntry, sent_message)
    assert entry is not None
    assert entry.clicked_at is not None
    assert entry.opened_at is not None


@pytest.mark.parametrize("target", ["javascript:alert(1)", "//evil.example.com", "/relative/path"])
def test_click_never_redirects_off_http(client: TestClient, target: str) -> None:
    response = client.get("/api/track/click", params={"url": target}, follow_redirects=False)

    assert response.status_code == 302
    assert response.headers["location"] == "https://crm.example.com"
