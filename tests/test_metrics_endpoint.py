from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from advisor_crm.core.auth import AuthUser, get_current_user as auth_get_current_user
from advisor_crm.core.config import get_settings
from advisor_crm.core.database import Base, get_db
from advisor_crm.main import app
from advisor_crm.pipeline.api import get_current_user as pipeline_get_current_user
from advisor_crm.pipeline.service import ActorUser


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
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_pipeline_user() -> ActorUser:
        return ActorUser(
            user_id="metrics-user",
            permissions={
                "pipeline.funnels.manage",
                "pipeline.funnels.read",
                "pipeline.opportunities.read",
                "pipeline.opportunities.write",
            },
            correlation_id="metrics-corr-1",
        )

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", roles=["system.metrics.read"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[pipeline_get_current_user] = override_pipeline_user
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_pipeline_metrics(client: TestClient) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    funnel = client.post("/api/pipeline/funnels", json={"name": "Metrics Funnel"}).json()
    first = client.post(f"/api/pipeline/funnels/{funnel['id']}/stages", json={"name": "First"}).json()
    second = client.post(f"/api/pipeline/funnels/{funnel['id']}/stages", json={"name": "Second"}).json()
    assert first["order_position"] == 1

    opportunity = client.post(
        "/api/pipeline/opportunities",
        json={"contact_id": str(uuid.uuid4()), "current_funnel_id": funnel["id"]},
    ).json()
    moved = client.post(
        f"/api/pipeline/opportunities/{opportunity['id']}/move-stage",
        json={"to_stage_id": second["id"], "row_version": opportunity["row_version"]},
    )
    assert moved.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "pipeline_opportunity_transitions_total" in body
    assert 'path="/health"' in body
    assert 'path="/api/pipeline/opportunities/{id}/move-stage"' in body
    assert 'action="stage_change"' in body


def test_gate_blocks_are_counted(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    funnel = client.post("/api/pipeline/funnels", json={"name": "Gated Funnel"}).json()
    client.post(f"/api/pipeline/funnels/{funnel['id']}/stages", json={"name": "Open"})
    proposal = client.post(f"/api/pipeline/funnels/{funnel['id']}/stages", json={"name": "Proposal"}).json()

    monkeypatch.setenv("PROPOSAL_VALUE_GATES", f'{{"{funnel["id"]}": 2}}')
    get_settings.cache_clear()

    blocked = client.post(
        "/api/pipeline/opportunities",
        json={
            "contact_id": str(uuid.uuid4()),
            "current_funnel_id": funnel["id"],
            "current_stage_id": proposal["id"],
        },
    )
    assert blocked.status_code == 422

    body = client.get("/metrics").text
    assert "pipeline_stage_gate_blocks_total" in body
    assert 'operation="create"' in body
    assert 'field="proposal_value"' in body


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")
    assert response.status_code == 404


def test_metrics_endpoint_requires_role(client: TestClient) -> None:
    app.dependency_overrides[auth_get_current_user] = lambda: AuthUser(sub="someone", roles=["user"])

    response = client.get("/metrics")
    assert response.status_code == 403
