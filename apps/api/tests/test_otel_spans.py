from __future__ import annotations

import os
import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

os.environ.setdefault("OTEL_ENABLED", "true")

from atelier.core.config import get_settings
from atelier.core.database import Base, get_db
from atelier.main import app
from atelier.otel import setup_inmemory_otel
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
def span_exporter() -> InMemorySpanExporter:
    exporter = setup_inmemory_otel("atelier-api")
    exporter.clear()
    return exporter


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


def _seed_client(session: Session, *, stage: str) -> uuid.UUID:
    project = ProjectClient(id=uuid.uuid4(), name="OTel Client", stage=stage)
    session.add(project)
    session.commit()
    return project.id


def test_request_span_contains_correlation_id(
    client: TestClient,
    db_session: Session,
    span_exporter: InMemorySpanExporter,
) -> None:
    client_id = _seed_client(db_session, stage="negotiation")

    response = client.post(
        f"/api/clients/{client_id}/quotes",
        json={"title": "Pool house", "montant": 5400},
        headers={"X-Correlation-Id": "otel-corr-1"},
    )
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    assert spans
    assert any(span.attributes.get("correlation_id") == "otel-corr-1" for span in spans)


def test_stage_evaluation_span_describes_decision(
    client: TestClient,
    db_session: Session,
    span_exporter: InMemorySpanExporter,
) -> None:
    client_id = _seed_client(db_session, stage="qualified")

    response = client.post(f"/api/clients/{client_id}/payments", json={"montant": 3000})
    assert response.status_code == 201

    spans = span_exporter.get_finished_spans()
    evaluation_spans = [span for span in spans if span.name == "project.stage.evaluate"]
    assert evaluation_spans
    assert any(
        span.attributes.get("client_id") == str(client_id)
        and span.attributes.get("current_stage") == "qualified"
        and span.attributes.get("progressed") is True
        and span.attributes.get("rule") == "deposit_received"
        and tuple(span.attributes.get("triggers") or ()) == ("payment_received",)
        for span in evaluation_spans
    )
