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

from atelier.context import client_scope
from atelier.core.config import get_settings
from atelier.core.database import Base, get_db
from atelier.logging import CorrelationIdFilter, JsonLogFormatter
from atelier.main import app
from atelier.projects.api import get_current_user as projects_get_current_user
from atelier.projects.models import ProjectClient
from atelier.projects.service import ActorUser


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
def setup_env() -> Generator[None, None, None]:
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
            name="Salma",
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[projects_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_logs_include_correlation_id_for_http(client: TestClient, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO)

    path = f"/api/clients/{uuid.uuid4()}/quotes"
    response = client.get(path, headers={"X-Correlation-Id": "abc-123"})
    assert response.status_code == 404

    records = [record for record in caplog.records if record.name == "atelier.request" and record.getMessage() == "http.request"]
    assert records
    assert any(
        getattr(record, "correlation_id", None) == "abc-123"
        and getattr(record, "method", None) == "GET"
        and getattr(record, "path", None) == "/api/clients/{client_id}/quotes"
        and getattr(record, "status_code", None) == 404
        and isinstance(getattr(record, "duration_ms", None), float)
        for record in records
    )


def test_stage_change_log_carries_transition_context(
    client: TestClient,
    db_session: Session,
    caplog: pytest.LogCaptureFixture,
) -> None:
    caplog.set_level(logging.INFO)
    project = ProjectClient(id=uuid.uuid4(), name="Log Client", stage="design")
    db_session.add(project)
    db_session.commit()

    response = client.post(
        f"/api/clients/{project.id}/quotes",
        json={"title": "Facade", "montant": 12000, "statut": "accepte"},
        headers={"X-Correlation-Id": "abc-456"},
    )
    assert response.status_code == 201

    stage_records = [record for record in caplog.records if record.name == "atelier.projects"]
    assert any(
        record.getMessage() == "project.stage_changed"
        and getattr(record, "client_id", None) == str(project.id)
        and getattr(record, "previous_stage", None) == "design"
        and getattr(record, "new_stage", None) == "accepted"
        and getattr(record, "rule", None) == "quote_accepted"
        and getattr(record, "operation", None) == "quote.create"
        and getattr(record, "correlation_id", None) == "abc-456"
        for record in stage_records
    )


def test_json_formatter_keeps_known_fields_only() -> None:
    record = logging.makeLogRecord(
        {
            "name": "atelier.projects",
            "levelname": "INFO",
            "msg": "project.stage_changed",
            "client_id": "c-1",
            "new_stage": "accepted",
            "secret": "do-not-log",
            "correlation_id": "corr-json-1",
            "error": "x" * 800,
        }
    )

    payload = json.loads(JsonLogFormatter().format(record))

    assert payload["msg"] == "project.stage_changed"
    assert payload["correlation_id"] == "corr-json-1"
    assert payload["fields"]["client_id"] == "c-1"
    assert payload["fields"]["new_stage"] == "accepted"
    assert "secret" not in payload["fields"]
    assert len(payload["fields"]["error"]) == 500


def test_filter_stamps_client_scope_without_overriding_extra() -> None:
    scoped = logging.makeLogRecord({"msg": "project.persistence_failed"})
    explicit = logging.makeLogRecord({"msg": "project.stage_changed", "client_id": "explicit"})

    with client_scope("client-9"):
        CorrelationIdFilter().filter(scoped)
        CorrelationIdFilter().filter(explicit)

    assert scoped.client_id == "client-9"
    assert explicit.client_id == "explicit"
