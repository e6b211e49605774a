from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone

from fastapi import HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from atelier import events
from atelier.context import client_scope
from atelier.core.config import get_settings
from atelier.metrics import observe_quote_mutation, observe_stage_evaluation, observe_stage_transition
from atelier.otel import get_tracer
from atelier.projects.engine import (
    StageDecision,
    Trigger,
    decide,
    triggers_for_create,
    triggers_for_payment,
    triggers_for_update,
)
from atelier.projects.history import (
    AUDIT_DEPOSIT,
    AUDIT_MODIFICATION,
    AUDIT_STAGE_CHANGE,
    AuditTrail,
    StageHistoryLedger,
    audit_trail,
    stage_history_ledger,
)
from atelier.projects.ledger import PaymentLedger, QuoteLedger, load_client, payment_ledger, quote_ledger, snapshot
from atelier.projects.locks import ClientLockRegistry, client_locks
from atelier.projects.models import Payment, ProjectClient
from atelier.projects.schemas import (
    AuditEntryCreate,
    AuditEntryRead,
    AuditEntryResponse,
    AuditTrailResponse,
    DeleteResponse,
    PaymentCreate,
    PaymentListResponse,
    PaymentMutationResponse,
    PaymentRead,
    QuoteCreate,
    QuoteListResponse,
    QuoteMutationResponse,
    QuoteRead,
    QuoteUpdate,
    SettlementSummaryResponse,
    StageChangeRequest,
    StageChangeResponse,
    StageHistoryRead,
    StageHistoryResponse,
)
from atelier.projects.settlement import can_move_to_stage, summarize
from atelier.projects.stages import stage_label


logger = logging.getLogger("atelier.projects")
tracer = get_tracer("atelier.projects")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ActorUser:
    user_id: str
    name: str
    correlation_id: str | None = None


@dataclass(slots=True)
class UnitOfWork:
    session: Session
    client: ProjectClient
    now: datetime
    operation: str
    _after_commit: list[Callable[[], None]] = field(default_factory=list)

    def on_commit(self, callback: Callable[[], None]) -> None:
        self._after_commit.append(callback)

    def run_after_commit(self) -> None:
        for callback in self._after_commit:
            callback()


@dataclass(slots=True)
class ProjectStageService:
    """Mutation handlers keeping a client's stage in line with its quotes and payments.

    Each mutating call runs as one unit of work: the per-client lock is taken,
    the client row is locked for update, the mutation is applied and flushed,
    the full quote set is re-read and handed to the decision engine, and the
    resulting history/stage/audit writes are committed together. Any failure
    rolls the whole request back.
    """

    quote_ledger: QuoteLedger = quote_ledger
    payment_ledger: PaymentLedger = payment_ledger
    history: StageHistoryLedger = stage_history_ledger
    audit: AuditTrail = audit_trail
    locks: ClientLockRegistry = client_locks

    # Quotes

    def list_quotes(self, session: Session, client_id: uuid.UUID) -> QuoteListResponse:
        load_client(session, client_id)
        quotes = self.quote_ledger.list(session, client_id)
        return QuoteListResponse(data=[QuoteRead.model_validate(quote) for quote in quotes])

    def create_quote(
        self,
        session: Session,
        actor_user: ActorUser,
        client_id: uuid.UUID,
        payload: QuoteCreate,
    ) -> QuoteMutationResponse:
        settings = get_settings()
        with self._unit_of_work(session, client_id, operation="quote.create") as work:
            quote = self.quote_ledger.create(
                session,
                client_id,
                payload,
                author=settings.default_quote_author,
                now=work.now,
            )
            triggers = triggers_for_create(snapshot(quote))
            decision = self._evaluate(work, triggers, author=payload.created_by or settings.system_author)
            self._on_quote_committed(work, "project.quote.created", actor_user, quote.id)

        return QuoteMutationResponse(
            data=QuoteRead.model_validate(quote),
            stage_progressed=decision.progressed,
            new_stage=decision.new_stage,
        )

    def update_quote(
        self,
        session: Session,
        actor_user: ActorUser,
        client_id: uuid.UUID,
        payload: QuoteUpdate,
    ) -> QuoteMutationResponse:
        settings = get_settings()
        changes = payload.changes()
        with self._unit_of_work(session, client_id, operation="quote.update") as work:
            previous, quote = self.quote_ledger.update(session, client_id, payload.devis_id, changes, now=work.now)
            triggers = triggers_for_update(
                previous,
                snapshot(quote),
                status_requested=changes.get("statut") is not None,
                settlement_requested=changes.get("facture_reglee") is not None,
            )
            decision = self._evaluate(work, triggers, author=payload.created_by or settings.system_author)
            self._on_quote_committed(work, "project.quote.updated", actor_user, quote.id)

        return QuoteMutationResponse(
            data=QuoteRead.model_validate(quote),
            stage_progressed=decision.progressed,
            new_stage=decision.new_stage,
        )

    def delete_quote(
        self,
        session: Session,
        actor_user: ActorUser,
        client_id: uuid.UUID,
        quote_id: uuid.UUID,
    ) -> DeleteResponse:
        # Deleting a quote leaves the stage as it is; only the client's modification time moves.
        with self._unit_of_work(session, client_id, operation="quote.delete") as work:
            self.quote_ledger.delete(session, client_id, quote_id)
            work.client.last_modified_at = work.now
            self._on_quote_committed(work, "project.quote.deleted", actor_user, quote_id)
        return DeleteResponse()

    def quote_summary(self, session: Session, client_id: uuid.UUID) -> SettlementSummaryResponse:
        client = load_client(session, client_id)
        quotes = self.quote_ledger.list(session, client_id)
        return SettlementSummaryResponse(data=summarize(quotes, client.stage))

    # Payments

    def list_payments(self, session: Session, client_id: uuid.UUID) -> PaymentListResponse:
        load_client(session, client_id)
        payments = self.payment_ledger.list(session, client_id)
        return PaymentListResponse(data=[PaymentRead.model_validate(payment) for payment in payments])

    def record_payment(
        self,
        session: Session,
        actor_user: ActorUser,
        client_id: uuid.UUID,
        payload: PaymentCreate,
    ) -> PaymentMutationResponse:
        settings = get_settings()
        with self._unit_of_work(session, client_id, operation="payment.create") as work:
            payment = self.payment_ledger.create(
                session,
                client_id,
                payload,
                author=settings.default_quote_author,
                now=work.now,
            )
            self.audit.append(
                session,
                client_id,
                type=AUDIT_DEPOSIT,
                description=_deposit_description(payment, settings.currency_code),
                author=payment.created_by,
                now=work.now,
                metadata={"payment_id": str(payment.id)},
            )
            decision = self._evaluate(work, triggers_for_payment(), author=payload.created_by or settings.system_author)
            self._on_payment_committed(work, "project.payment.recorded", actor_user, payment.id)

        return PaymentMutationResponse(
            data=PaymentRead.model_validate(payment),
            stage_progressed=decision.progressed,
            new_stage=decision.new_stage,
        )

    def delete_payment(
        self,
        session: Session,
        actor_user: ActorUser,
        client_id: uuid.UUID,
        payment_id: uuid.UUID,
    ) -> DeleteResponse:
        with self._unit_of_work(session, client_id, operation="payment.delete") as work:
            self.payment_ledger.delete(session, client_id, payment_id)
            self.audit.append(
                session,
                client_id,
                type=AUDIT_MODIFICATION,
                description="Payment deleted",
                author=actor_user.name,
                now=work.now,
                metadata={"payment_id": str(payment_id)},
            )
            work.client.last_modified_at = work.now
            self._on_payment_committed(work, "project.payment.deleted", actor_user, payment_id)
        return DeleteResponse()

    # Stage

    def stage_history(self, session: Session, client_id: uuid.UUID) -> StageHistoryResponse:
        load_client(session, client_id)
        entries = self.history.list(session, client_id)
        return StageHistoryResponse(data=[StageHistoryRead.model_validate(entry) for entry in entries])

    def audit_history(self, session: Session, client_id: uuid.UUID, *, type: str | None = None) -> AuditTrailResponse:
        load_client(session, client_id)
        entries = self.audit.list(session, client_id, type=type)
        return AuditTrailResponse(data=[AuditEntryRead.model_validate(entry) for entry in entries])

    def append_history(
        self,
        session: Session,
        actor_user: ActorUser,
        client_id: uuid.UUID,
        payload: AuditEntryCreate,
    ) -> AuditEntryResponse:
        with self._unit_of_work(session, client_id, operation="history.append") as work:
            entry = self.audit.append(
                session,
                client_id,
                type=payload.type,
                description=payload.description,
                author=payload.author or actor_user.name,
                now=work.now,
                previous_status=payload.previous_status,
                new_status=payload.new_status,
                metadata=payload.metadata,
            )
            work.client.last_modified_at = work.now
            session.flush()
        return AuditEntryResponse(data=AuditEntryRead.model_validate(entry))

    def change_stage(
        self,
        session: Session,
        actor_user: ActorUser,
        client_id: uuid.UUID,
        payload: StageChangeRequest,
    ) -> StageChangeResponse:
        author = payload.changed_by or actor_user.name
        with self._unit_of_work(session, client_id, operation="stage.change") as work:
            previous_stage = work.client.stage
            if payload.new_stage == previous_stage:
                work.client.last_modified_at = work.now
                return StageChangeResponse(previous_stage=previous_stage, new_stage=previous_stage, stage_progressed=False)

            if not payload.force:
                check = can_move_to_stage(self.quote_ledger.list(session, client_id), payload.new_stage)
                if not check.allowed:
                    raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=check.reason)

            description = f'Stage changed from "{stage_label(previous_stage)}" to "{stage_label(payload.new_stage)}"'
            self._record_transition(
                work,
                payload.new_stage,
                rule="manual",
                description=description,
                author=author,
            )
            work.client.last_modified_at = work.now

        return StageChangeResponse(previous_stage=previous_stage, new_stage=payload.new_stage, stage_progressed=True)

    # Internals

    @contextmanager
    def _unit_of_work(self, session: Session, client_id: uuid.UUID, *, operation: str) -> Iterator[UnitOfWork]:
        timeout = get_settings().stage_lock_timeout_seconds
        with client_scope(str(client_id)), self.locks.hold(client_id, timeout=timeout):
            try:
                client = load_client(session, client_id, for_update=True)
                work = UnitOfWork(session=session, client=client, now=utcnow(), operation=operation)
                yield work
                session.flush()
                session.commit()
            except SQLAlchemyError as exc:
                session.rollback()
                logger.exception(
                    "project.persistence_failed",
                    extra={"client_id": str(client_id), "operation": operation, "error": str(exc)},
                )
                raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="persistence error") from exc
            except Exception:
                session.rollback()
                raise

        work.run_after_commit()

    def _evaluate(self, work: UnitOfWork, triggers: Sequence[Trigger], *, author: str) -> StageDecision:
        client = work.client
        quotes = self.quote_ledger.list(work.session, client.id)
        with tracer.start_as_current_span("project.stage.evaluate") as span:
            span.set_attribute("client_id", str(client.id))
            span.set_attribute("current_stage", client.stage)
            span.set_attribute("triggers", [trigger.event for trigger in triggers])
            span.set_attribute("quote_count", len(quotes))
            decision = decide(client.stage, [snapshot(quote) for quote in quotes], triggers)
            span.set_attribute("progressed", decision.progressed)
            if decision.rule is not None:
                span.set_attribute("rule", decision.rule.name)

        work.on_commit(lambda: observe_stage_evaluation(decision.progressed))
        if decision.progressed and decision.new_stage is not None and decision.rule is not None:
            self._record_transition(
                work,
                decision.new_stage,
                rule=decision.rule.name,
                description=decision.describe() or "",
                author=author,
            )
        else:
            logger.debug(
                "project.stage_unchanged",
                extra={
                    "client_id": str(client.id),
                    "operation": work.operation,
                    "triggers": [trigger.event for trigger in triggers],
                },
            )
        client.last_modified_at = work.now
        return decision

    def _record_transition(
        self,
        work: UnitOfWork,
        new_stage: str,
        *,
        rule: str,
        description: str,
        author: str,
    ) -> None:
        session = work.session
        client = work.client
        previous_stage = client.stage

        self.history.transition(session, client.id, new_stage, changed_by=author, now=work.now)
        client.stage = new_stage
        client.updated_at = work.now
        session.add(client)
        self.audit.append(
            session,
            client.id,
            type=AUDIT_STAGE_CHANGE,
            description=description,
            author=author,
            now=work.now,
            previous_status=previous_stage,
            new_status=new_stage,
            metadata={"rule": rule, "operation": work.operation},
        )
        logger.info(
            "project.stage_changed",
            extra={
                "client_id": str(client.id),
                "operation": work.operation,
                "previous_stage": previous_stage,
                "new_stage": new_stage,
                "rule": rule,
            },
        )

        client_id = str(client.id)
        changed_at = work.now.isoformat()

        def _after_commit() -> None:
            observe_stage_transition(previous_stage, new_stage, rule)
            events.publish(
                {
                    "event_type": "project.stage_changed",
                    "payload": {
                        "client_id": client_id,
                        "previous_stage": previous_stage,
                        "new_stage": new_stage,
                        "rule": rule,
                        "changed_by": author,
                        "changed_at": changed_at,
                    },
                }
            )

        work.on_commit(_after_commit)

    def _on_quote_committed(self, work: UnitOfWork, event_type: str, actor_user: ActorUser, quote_id: uuid.UUID) -> None:
        operation = work.operation.split(".", 1)[1]
        client_id = str(work.client.id)

        def _after_commit() -> None:
            observe_quote_mutation(operation)
            events.publish(
                {
                    "event_type": event_type,
                    "actor_user_id": actor_user.user_id,
                    "correlation_id": actor_user.correlation_id,
                    "payload": {"client_id": client_id, "quote_id": str(quote_id)},
                }
            )

        work.on_commit(_after_commit)

    def _on_payment_committed(self, work: UnitOfWork, event_type: str, actor_user: ActorUser, payment_id: uuid.UUID) -> None:
        client_id = str(work.client.id)

        def _after_commit() -> None:
            events.publish(
                {
                    "event_type": event_type,
                    "actor_user_id": actor_user.user_id,
                    "correlation_id": actor_user.correlation_id,
                    "payload": {"client_id": client_id, "payment_id": str(payment_id)},
                }
            )

        work.on_commit(_after_commit)


def _deposit_description(payment: Payment, currency_code: str) -> str:
    amount = f"{payment.montant:,.2f}".replace(",", " ")
    description = f"Deposit received: {amount} {currency_code} ({payment.methode})"
    if payment.reference:
        description += f" - Ref: {payment.reference}"
    return description


project_stage_service = ProjectStageService()
