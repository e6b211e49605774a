from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from atelier.projects.engine import QuoteSnapshot
from atelier.projects.models import Payment, ProjectClient, Quote
from atelier.projects.schemas import PaymentCreate, QuoteCreate
from atelier.projects.stages import QUOTE_ACCEPTED, QUOTE_PENDING, QUOTE_REFUSED, VALIDATED_QUOTE_STATUSES


# Columns that reject an explicit null in a patch; a null value leaves them untouched.
_REQUIRED_QUOTE_FIELDS = {"title", "montant", "statut", "facture_reglee"}
_PATCHABLE_QUOTE_FIELDS = {
    "title",
    "montant",
    "description",
    "statut",
    "facture_reglee",
    "notes",
    "fichier",
}


def snapshot(quote: Quote) -> QuoteSnapshot:
    return QuoteSnapshot(
        id=str(quote.id),
        title=quote.title,
        status=quote.statut,
        invoice_settled=bool(quote.facture_reglee),
    )


def load_client(session: Session, client_id: uuid.UUID, *, for_update: bool = False) -> ProjectClient:
    stmt = select(ProjectClient).where(ProjectClient.id == client_id)
    if for_update:
        stmt = stmt.with_for_update()
    client = session.scalar(stmt)
    if client is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="client not found")
    return client


class QuoteLedger:
    def list(self, session: Session, client_id: uuid.UUID) -> list[Quote]:
        stmt = (
            select(Quote)
            .where(Quote.client_id == client_id)
            .order_by(Quote.created_at.desc(), Quote.id.desc())
        )
        return list(session.scalars(stmt))

    def get(self, session: Session, client_id: uuid.UUID, quote_id: uuid.UUID) -> Quote:
        quote = session.scalar(select(Quote).where(Quote.id == quote_id, Quote.client_id == client_id))
        if quote is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="quote not found")
        return quote

    def create(
        self,
        session: Session,
        client_id: uuid.UUID,
        payload: QuoteCreate,
        *,
        author: str,
        now: datetime,
    ) -> Quote:
        quote = Quote(
            id=uuid.uuid4(),
            client_id=client_id,
            title=payload.title,
            montant=payload.montant,
            description=payload.description,
            statut=payload.statut,
            facture_reglee=False,
            validated_at=now if payload.statut in VALIDATED_QUOTE_STATUSES else None,
            created_by=payload.created_by or author,
            notes=payload.notes,
            fichier=payload.fichier,
            created_at=now,
            updated_at=now,
        )
        session.add(quote)
        session.flush()
        return quote

    def update(
        self,
        session: Session,
        client_id: uuid.UUID,
        quote_id: uuid.UUID,
        changes: dict[str, Any],
        *,
        now: datetime,
    ) -> tuple[QuoteSnapshot, Quote]:
        """Apply a partial patch and return the pre-patch snapshot with the updated row."""
        quote = self.get(session, client_id, quote_id)
        previous = snapshot(quote)

        applied = {
            key: value
            for key, value in changes.items()
            if key in _PATCHABLE_QUOTE_FIELDS and not (value is None and key in _REQUIRED_QUOTE_FIELDS)
        }

        target_status = applied.get("statut", quote.statut)
        if applied.get("facture_reglee") and target_status != QUOTE_ACCEPTED:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="facture_reglee requires an accepted quote",
            )

        for key, value in applied.items():
            setattr(quote, key, value)

        if "statut" in applied:
            if target_status in VALIDATED_QUOTE_STATUSES and quote.validated_at is None:
                quote.validated_at = now
            if target_status in {QUOTE_PENDING, QUOTE_REFUSED}:
                quote.facture_reglee = False

        quote.updated_at = now
        session.add(quote)
        session.flush()
        return previous, quote

    def delete(self, session: Session, client_id: uuid.UUID, quote_id: uuid.UUID) -> Quote:
        quote = self.get(session, client_id, quote_id)
        session.delete(quote)
        session.flush()
        return quote


class PaymentLedger:
    def list(self, session: Session, client_id: uuid.UUID) -> list[Payment]:
        stmt = (
            select(Payment)
            .where(Payment.client_id == client_id)
            .order_by(Payment.date.desc(), Payment.created_at.desc())
        )
        return list(session.scalars(stmt))

    def create(
        self,
        session: Session,
        client_id: uuid.UUID,
        payload: PaymentCreate,
        *,
        author: str,
        now: datetime,
    ) -> Payment:
        payment = Payment(
            id=uuid.uuid4(),
            client_id=client_id,
            montant=payload.montant,
            date=payload.date or now.date(),
            methode=payload.methode,
            reference=payload.reference,
            description=payload.description,
            created_by=payload.created_by or author,
            created_at=now,
        )
        session.add(payment)
        session.flush()
        return payment

    def delete(self, session: Session, client_id: uuid.UUID, payment_id: uuid.UUID) -> Payment:
        payment = session.scalar(select(Payment).where(Payment.id == payment_id, Payment.client_id == client_id))
        if payment is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="payment not found")
        session.delete(payment)
        session.flush()
        return payment


quote_ledger = QuoteLedger()
payment_ledger = PaymentLedger()
