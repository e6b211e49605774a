from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from atelier.context import get_correlation_id
from atelier.projects.models import AuditEntry, StageHistoryEntry


AUDIT_STAGE_CHANGE = "stage_change"
AUDIT_DEPOSIT = "deposit"
AUDIT_MODIFICATION = "modification"
AUDIT_NOTE = "note"
AUDIT_TYPES = frozenset({AUDIT_STAGE_CHANGE, AUDIT_DEPOSIT, AUDIT_MODIFICATION, AUDIT_NOTE})


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timezone-aware columns back naive.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def duration_seconds(started_at: datetime, ended_at: datetime) -> int:
    elapsed = (_as_utc(ended_at) - _as_utc(started_at)).total_seconds()
    return max(0, math.floor(elapsed))


class StageHistoryLedger:
    def open_entry(self, session: Session, client_id: uuid.UUID) -> StageHistoryEntry | None:
        stmt = (
            select(StageHistoryEntry)
            .where(StageHistoryEntry.client_id == client_id, StageHistoryEntry.ended_at.is_(None))
            .order_by(StageHistoryEntry.started_at.desc())
        )
        return session.scalars(stmt).first()

    def close_open(self, session: Session, client_id: uuid.UUID, *, now: datetime) -> list[StageHistoryEntry]:
        """Close every open row; more than one only exists in legacy data."""
        stmt = select(StageHistoryEntry).where(
            StageHistoryEntry.client_id == client_id,
            StageHistoryEntry.ended_at.is_(None),
        )
        closed = list(session.scalars(stmt))
        for entry in closed:
            entry.ended_at = now
            entry.duration_seconds = duration_seconds(entry.started_at, now)
            entry.updated_at = now
            session.add(entry)
        return closed

    def open(
        self,
        session: Session,
        client_id: uuid.UUID,
        stage: str,
        *,
        changed_by: str,
        now: datetime,
    ) -> StageHistoryEntry:
        entry = StageHistoryEntry(
            id=uuid.uuid4(),
            client_id=client_id,
            stage_name=stage,
            started_at=now,
            changed_by=changed_by,
            created_at=now,
            updated_at=now,
        )
        session.add(entry)
        return entry

    def transition(
        self,
        session: Session,
        client_id: uuid.UUID,
        stage: str,
        *,
        changed_by: str,
        now: datetime,
    ) -> StageHistoryEntry:
        self.close_open(session, client_id, now=now)
        session.flush()
        return self.open(session, client_id, stage, changed_by=changed_by, now=now)

    def list(self, session: Session, client_id: uuid.UUID) -> list[StageHistoryEntry]:
        stmt = (
            select(StageHistoryEntry)
            .where(StageHistoryEntry.client_id == client_id)
            .order_by(StageHistoryEntry.started_at.desc(), StageHistoryEntry.created_at.desc())
        )
        return list(session.scalars(stmt))


class AuditTrail:
    def append(
        self,
        session: Session,
        client_id: uuid.UUID,
        *,
        type: str,
        description: str,
        author: str,
        now: datetime,
        previous_status: str | None = None,
        new_status: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> AuditEntry:
        if type not in AUDIT_TYPES:
            raise ValueError(f"unknown audit entry type: {type}")
        entry = AuditEntry(
            id=uuid.uuid4(),
            client_id=client_id,
            date=now,
            type=type,
            description=description,
            author=author,
            previous_status=previous_status,
            new_status=new_status,
            correlation_id=get_correlation_id(),
            event_metadata=metadata or {},
        )
        session.add(entry)
        return entry

    def list(self, session: Session, client_id: uuid.UUID, *, type: str | None = None) -> list[AuditEntry]:
        stmt = select(AuditEntry).where(AuditEntry.client_id == client_id)
        if type is not None:
            stmt = stmt.where(AuditEntry.type == type)
        return list(session.scalars(stmt.order_by(AuditEntry.date.desc())))


stage_history_ledger = StageHistoryLedger()
audit_trail = AuditTrail()
