from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from atelier.core.auth import AuthUser, get_current_user as auth_get_current_user
from atelier.core.config import get_settings
from atelier.core.database import Base, get_db
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
def configure_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("METRICS_ENABLED", "true")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def roles() -> list[str]:
    return ["system.metrics.read"]


@pytest.fixture()
def client(db_session: Session, roles: list[str]) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_projects_user() -> ActorUser:
        return ActorUser(user_id="metrics-user", name="Metrics", correlation_id="metrics-corr-1")

    def override_auth_user() -> AuthUser:
        return AuthUser(sub="metrics-admin", name="Metrics Admin", roles=roles)

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[projects_get_current_user] = override_projects_user
    app.dependency_overrides[auth_get_current_user] = override_auth_user

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def test_metrics_endpoint_exposes_http_and_stage_metrics(client: TestClient, db_session: Session) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    project = ProjectClient(id=uuid.uuid4(), name="Metrics Client", stage="qualified")
    db_session.add(project)
    db_session.commit()

    created = client.post(
        f"/api/clients/{project.id}/quotes",
        json={"title": "Metrics Quote", "montant": 1000, "statut": "accepte"},
    )
    assert created.status_code == 201
    assert created.json()["newStage"] == "accepted"

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text

    assert "http_requests_total" in body
    assert "http_request_duration_seconds" in body
    assert "project_quote_mutations_total" in body
    assert "project_stage_transitions_total" in body
    assert "project_stage_evaluations_total" in body
    assert "project_client_lock_wait_seconds" in body

    assert 'path="/health"' in body
    assert 'path="/api/clients/{client_id}/quotes"' in body
    assert 'from_stage="qualified",to_stage="accepted",rule="quote_accepted"' in body


@pytest.mark.parametrize("roles", [["user"]])
def test_metrics_endpoint_requires_metrics_role(client: TestClient) -> None:
    response = client.get("/metrics")
    assert response.status_code == 403
    assert response.json()["code"] == "forbidden"


def test_metrics_endpoint_hidden_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("METRICS_ENABLED", "false")
    get_settings.cache_clear()

    response = client.get("/metrics")
    assert response.status_code == 404
