from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from advisor_crm import events
from advisor_crm.core.config import get_settings
from advisor_crm.core.database import Base, get_db
from advisor_crm.main import app
from advisor_crm.pipeline.api import get_current_user
from advisor_crm.pipeline.service import ActorUser


ALL_PERMISSIONS = {
    "pipeline.funnels.manage",
    "pipeline.funnels.read",
    "pipeline.opportunities.read",
    "pipeline.opportunities.write",
}


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
def clear_stubs() -> Generator[None, None, None]:
    events.published_events.clear()
    get_settings.cache_clear()
    yield
    events.published_events.clear()
    get_settings.cache_clear()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user(request: Request) -> ActorUser:
        return ActorUser(
            user_id="user-1",
            permissions=ALL_PERMISSIONS,
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_funnel_with_stage(client: TestClient) -> tuple[str, str]:
    funnel = client.post("/api/pipeline/funnels", json={"name": "Correlation Funnel"})
    assert funnel.status_code == 201
    stage = client.post(f"/api/pipeline/funnels/{funnel.json()['id']}/stages", json={"name": "Prospect"})
    assert stage.status_code == 201
    return funnel.json()["id"], stage.json()["id"]


def test_generated_correlation_id_returned_in_header_and_error_envelope(client: TestClient) -> None:
    response = client.get(f"/api/pipeline/opportunities/{uuid.uuid4()}")
    assert response.status_code == 404
    header_value = response.headers.get("x-correlation-id")
    assert header_value
    body = response.json()
    assert body["correlation_id"] == header_value


def test_correlation_id_respected_when_provided(client: TestClient) -> None:
    response = client.get(f"/api/pipeline/funnels/{uuid.uuid4()}", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404
    assert response.headers.get("x-correlation-id") == "abc-123"
    assert response.json()["correlation_id"] == "abc-123"


def test_event_envelope_includes_correlation_id(client: TestClient) -> None:
    funnel_id, _ = _create_funnel_with_stage(client)

    response = client.post(
        "/api/pipeline/opportunities",
        json={"contact_id": str(uuid.uuid4()), "current_funnel_id": funnel_id},
        headers={"X-Correlation-Id": "corr-event-1"},
    )
    assert response.status_code == 201

    created_events = [
        item for item in events.published_events if item.get("event_type") == "pipeline.opportunity.created"
    ]
    assert created_events
    assert created_events[-1].get("correlation_id") == "corr-event-1"
    assert created_events[-1]["actor_user_id"] == "user-1"


def test_malformed_correlation_id_is_replaced(client: TestClient) -> None:
    response = client.get(
        f"/api/pipeline/funnels/{uuid.uuid4()}",
        headers={"X-Correlation-Id": "bad id with spaces" + "x" * 200},
    )
    assert response.status_code == 404
    generated = response.headers.get("x-correlation-id")
    assert generated
    assert uuid.UUID(generated)
    assert response.json()["correlation_id"] == generated
