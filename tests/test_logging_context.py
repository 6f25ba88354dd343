from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from advisor_crm.context import reset_correlation_id, set_correlation_id
from advisor_crm.core.config import get_settings
from advisor_crm.core.database import Base, get_db
from advisor_crm.logging import JsonLogFormatter
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
def clear_settings() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
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


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    funnel_id = uuid.uuid4()
    response = client.get(f"/api/pipeline/funnels/{funnel_id}/stages", headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [
        record
        for record in caplog.records
        if record.name == "advisor_crm.request" and record.getMessage() == "http.request"
    ]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/pipeline/funnels/{id}/stages"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_stage_change_logged_with_stage_ids(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    funnel = client.post("/api/pipeline/funnels", json={"name": "Logged Funnel"}).json()
    first = client.post(f"/api/pipeline/funnels/{funnel['id']}/stages", json={"name": "First"}).json()
    second = client.post(f"/api/pipeline/funnels/{funnel['id']}/stages", json={"name": "Second"}).json()
    opportunity = client.post(
        "/api/pipeline/opportunities",
        json={"contact_id": str(uuid.uuid4()), "current_funnel_id": funnel["id"]},
    ).json()

    moved = client.post(
        f"/api/pipeline/opportunities/{opportunity['id']}/move-stage",
        json={"to_stage_id": second["id"], "row_version": opportunity["row_version"]},
        headers={"X-Correlation-Id": "corr-move-1"},
    )
    assert moved.status_code == 200

    records = [
        record
        for record in caplog.records
        if record.name == "advisor_crm.pipeline" and record.getMessage() == "opportunity.stage_changed"
    ]
    assert records
    record = records[-1]
    assert getattr(record, "correlation_id", None) == "corr-move-1"
    assert getattr(record, "opportunity_id", None) == opportunity["id"]
    assert getattr(record, "from_stage_id", None) == first["id"]
    assert getattr(record, "to_stage_id", None) == second["id"]


def test_json_formatter_emits_known_fields_only() -> None:
    token = set_correlation_id("fmt-1")
    try:
        record = logging.getLogger("advisor_crm.pipeline").makeRecord(
            "advisor_crm.pipeline",
            logging.INFO,
            __file__,
            1,
            "opportunity.gate_blocked",
            (),
            None,
            extra={"gated_field": "proposal_value", "funnel_id": "f-1", "unrelated": "dropped"},
        )
    finally:
        reset_correlation_id(token)

    payload = json.loads(JsonLogFormatter().format(record))
    assert payload["msg"] == "opportunity.gate_blocked"
    assert payload["logger"] == "advisor_crm.pipeline"
    assert payload["correlation_id"] == "fmt-1"
    assert payload["fields"] == {"gated_field": "proposal_value", "funnel_id": "f-1"}
