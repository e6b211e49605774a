from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from fastapi import Request
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from atelier import events
from atelier.core.config import get_settings
from atelier.core.database import Base, get_db
from atelier.main import app
from atelier.projects.api import get_current_user as projects_get_current_user
from atelier.projects.models import AuditEntry, ProjectClient, StageHistoryEntry
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
            user_id="user-2",
            name="Youssef",
            correlation_id=getattr(request.state, "correlation_id", None),
        )

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[projects_get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _seed_client(session: Session, *, stage: str = "qualified") -> uuid.UUID:
    project = ProjectClient(id=uuid.uuid4(), name="Riad Medina", stage=stage)
    session.add(project)
    session.commit()
    return project.id


def _audits(session: Session, client_id: uuid.UUID, audit_type: str) -> list[AuditEntry]:
    session.expire_all()
    return list(session.scalars(select(AuditEntry).where(AuditEntry.client_id == client_id, AuditEntry.type == audit_type)))


def test_first_deposit_moves_qualified_client_to_deposit_received(client: TestClient, db_session: Session) -> None:
    client_id = _seed_client(db_session, stage="qualified")

    response = client.post(
        f"/api/clients/{client_id}/payments",
        json={"montant": 15000, "reference": "VIR-2291", "createdBy": "Youssef"},
        headers={"X-Correlation-Id": "corr-pay-1"},
    )

    assert response.status_code == 201
    body = response.json()
    assert body["success"] is True
    assert body["stageProgressed"] is True
    assert body["newStage"] == "deposit_received"
    assert body["data"]["methode"] == "virement"
    assert body["data"]["montant"] == 15000.0
    assert body["data"]["date"]

    deposits = _audits(db_session, client_id, "deposit")
    assert len(deposits) == 1
    assert deposits[0].description == "Deposit received: 15 000.00 MAD (virement) - Ref: VIR-2291"
    assert deposits[0].author == "Youssef"
    assert deposits[0].correlation_id == "corr-pay-1"
    assert deposits[0].event_metadata == {"payment_id": body["data"]["id"]}

    stage_changes = _audits(db_session, client_id, "stage_change")
    assert len(stage_changes) == 1
    assert stage_changes[0].previous_status == "qualified"
    assert stage_changes[0].new_status == "deposit_received"

    history = list(db_session.scalars(select(StageHistoryEntry).where(StageHistoryEntry.client_id == client_id)))
    assert len(history) == 1
    assert history[0].stage_name == "deposit_received"
    assert history[0].ended_at is None


def test_later_deposit_does_not_move_stage(client: TestClient, db_session: Session) -> None:
    client_id = _seed_client(db_session, stage="design")

    response = client.post(f"/api/clients/{client_id}/payments", json={"montant": 500, "methode": "cheque"})

    assert response.status_code == 201
    assert response.json()["stageProgressed"] is False
    assert response.json()["newStage"] is None
    assert _audits(db_session, client_id, "stage_change") == []
    deposits = _audits(db_session, client_id, "deposit")
    assert deposits[0].description == "Deposit received: 500.00 MAD (cheque)"
    assert deposits[0].author == "User"


def test_list_and_delete_payments(client: TestClient, db_session: Session) -> None:
    client_id = _seed_client(db_session, stage="design")
    first = client.post(f"/api/clients/{client_id}/payments", json={"montant": 100, "date": "2026-03-01"})
    second = client.post(f"/api/clients/{client_id}/payments", json={"montant": 200, "date": "2026-04-01"})
    assert first.status_code == 201 and second.status_code == 201

    listing = client.get(f"/api/clients/{client_id}/payments")
    assert listing.status_code == 200
    assert [item["montant"] for item in listing.json()["data"]] == [200.0, 100.0]

    deleted = client.delete(f"/api/clients/{client_id}/payments", params={"paymentId": first.json()["data"]["id"]})
    assert deleted.status_code == 200
    assert deleted.json() == {"success": True}

    listing = client.get(f"/api/clients/{client_id}/payments")
    assert [item["montant"] for item in listing.json()["data"]] == [200.0]

    modifications = _audits(db_session, client_id, "modification")
    assert len(modifications) == 1
    assert modifications[0].description == "Payment deleted"
    assert modifications[0].author == "Youssef"

    deleted_events = [item for item in events.published_events if item.get("event_type") == "project.payment.deleted"]
    assert deleted_events
    assert deleted_events[-1]["payload"]["payment_id"] == first.json()["data"]["id"]


def test_payment_errors(client: TestClient, db_session: Session) -> None:
    client_id = _seed_client(db_session)

    not_found = client.delete(f"/api/clients/{client_id}/payments", params={"paymentId": str(uuid.uuid4())})
    assert not_found.status_code == 404
    assert not_found.json()["code"] == "project_payment_delete_failed"

    missing_id = client.delete(f"/api/clients/{client_id}/payments")
    assert missing_id.status_code == 400

    negative = client.post(f"/api/clients/{client_id}/payments", json={"montant": -5})
    assert negative.status_code == 422
    assert negative.json()["code"] == "validation_error"

    unknown_client = client.get(f"/api/clients/{uuid.uuid4()}/payments")
    assert unknown_client.status_code == 404
