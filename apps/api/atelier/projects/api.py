from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from atelier.context import get_correlation_id
from atelier.core.auth import AuthUser, get_current_user as get_auth_user
from atelier.core.database import get_db
from atelier.projects.schemas import (
    AuditEntryCreate,
    AuditEntryResponse,
    AuditTrailResponse,
    DeleteResponse,
    PaymentCreate,
    PaymentListResponse,
    PaymentMutationResponse,
    QuoteCreate,
    QuoteListResponse,
    QuoteMutationResponse,
    QuoteUpdate,
    SettlementSummaryResponse,
    StageChangeRequest,
    StageChangeResponse,
    StageHistoryResponse,
)
from atelier.projects.service import ActorUser, project_stage_service as service

quotes_router = APIRouter(prefix="/api/clients", tags=["projects.quotes"])
payments_router = APIRouter(prefix="/api/clients", tags=["projects.payments"])
stage_router = APIRouter(prefix="/api/clients", tags=["projects.stage"])


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def _failed(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=code,
        message=str(exc.detail),
        details=exc.detail,
    )


def _parse_id(raw: str | None, name: str) -> uuid.UUID:
    if not raw:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{name} is required")
    try:
        return uuid.UUID(raw)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"{name} is not a valid id")


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(request.state, "correlation_id", None)
    return ActorUser(user_id=auth_user.sub, name=auth_user.name, correlation_id=correlation_id)


@quotes_router.get("/{client_id}/quotes", response_model=QuoteListResponse)
def list_quotes(
    request: Request,
    client_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QuoteListResponse | JSONResponse:
    try:
        return service.list_quotes(db, client_id)
    except HTTPException as exc:
        return _failed(request, exc, "project_quote_list_failed")


@quotes_router.post("/{client_id}/quotes", response_model=QuoteMutationResponse, status_code=status.HTTP_201_CREATED)
def create_quote(
    request: Request,
    client_id: uuid.UUID,
    dto: QuoteCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QuoteMutationResponse | JSONResponse:
    try:
        return service.create_quote(db, user, client_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "project_quote_create_failed")


@quotes_router.patch("/{client_id}/quotes", response_model=QuoteMutationResponse)
def update_quote(
    request: Request,
    client_id: uuid.UUID,
    dto: QuoteUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> QuoteMutationResponse | JSONResponse:
    try:
        return service.update_quote(db, user, client_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "project_quote_update_failed")


@quotes_router.delete("/{client_id}/quotes", response_model=DeleteResponse)
def delete_quote(
    request: Request,
    client_id: uuid.UUID,
    devis_id: str | None = Query(default=None, alias="devisId"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DeleteResponse | JSONResponse:
    try:
        quote_id = _parse_id(devis_id, "devisId")
        return service.delete_quote(db, user, client_id, quote_id)
    except HTTPException as exc:
        return _failed(request, exc, "project_quote_delete_failed")


@quotes_router.get("/{client_id}/quotes/summary", response_model=SettlementSummaryResponse)
def quote_summary(
    request: Request,
    client_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> SettlementSummaryResponse | JSONResponse:
    try:
        return service.quote_summary(db, client_id)
    except HTTPException as exc:
        return _failed(request, exc, "project_quote_summary_failed")


@payments_router.get("/{client_id}/payments", response_model=PaymentListResponse)
def list_payments(
    request: Request,
    client_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PaymentListResponse | JSONResponse:
    try:
        return service.list_payments(db, client_id)
    except HTTPException as exc:
        return _failed(request, exc, "project_payment_list_failed")


@payments_router.post("/{client_id}/payments", response_model=PaymentMutationResponse, status_code=status.HTTP_201_CREATED)
def record_payment(
    request: Request,
    client_id: uuid.UUID,
    dto: PaymentCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PaymentMutationResponse | JSONResponse:
    try:
        return service.record_payment(db, user, client_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "project_payment_create_failed")


@payments_router.delete("/{client_id}/payments", response_model=DeleteResponse)
def delete_payment(
    request: Request,
    client_id: uuid.UUID,
    payment_id: str | None = Query(default=None, alias="paymentId"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DeleteResponse | JSONResponse:
    try:
        parsed_id = _parse_id(payment_id, "paymentId")
        return service.delete_payment(db, user, client_id, parsed_id)
    except HTTPException as exc:
        return _failed(request, exc, "project_payment_delete_failed")


@stage_router.get("/{client_id}/stage", response_model=StageHistoryResponse)
def stage_history(
    request: Request,
    client_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageHistoryResponse | JSONResponse:
    try:
        return service.stage_history(db, client_id)
    except HTTPException as exc:
        return _failed(request, exc, "project_stage_history_failed")


@stage_router.post("/{client_id}/stage", response_model=StageChangeResponse)
def change_stage(
    request: Request,
    client_id: uuid.UUID,
    dto: StageChangeRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StageChangeResponse | JSONResponse:
    try:
        return service.change_stage(db, user, client_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "project_stage_change_failed")


@stage_router.get("/{client_id}/history", response_model=AuditTrailResponse)
def audit_history(
    request: Request,
    client_id: uuid.UUID,
    type_filter: Literal["stage_change", "deposit", "modification", "note"] | None = Query(default=None, alias="type"),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AuditTrailResponse | JSONResponse:
    try:
        return service.audit_history(db, client_id, type=type_filter)
    except HTTPException as exc:
        return _failed(request, exc, "project_audit_history_failed")


@stage_router.post("/{client_id}/history", response_model=AuditEntryResponse, status_code=status.HTTP_201_CREATED)
def append_history(
    request: Request,
    client_id: uuid.UUID,
    dto: AuditEntryCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> AuditEntryResponse | JSONResponse:
    try:
        return service.append_history(db, user, client_id, dto)
    except HTTPException as exc:
        return _failed(request, exc, "project_audit_append_failed")
