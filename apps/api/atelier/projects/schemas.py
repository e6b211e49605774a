from __future__ import annotations

from datetime import date as date_type, datetime
from decimal import Decimal
from typing import Any, Literal
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from atelier.projects.stages import QuoteStatus, Stage


class QuoteCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    title: str = Field(min_length=1, max_length=255)
    montant: Decimal = Field(ge=Decimal("0"))
    description: str | None = None
    statut: QuoteStatus = "en_attente"
    created_by: str | None = Field(default=None, alias="createdBy")
    notes: str | None = None
    fichier: str | None = None

    @field_validator("title", mode="before")
    @classmethod
    def strip_title(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


class QuoteUpdate(BaseModel):
    """Partial patch; only fields present in the request body are applied."""

    model_config = ConfigDict(populate_by_name=True)

    devis_id: UUID = Field(alias="devisId")
    title: str | None = Field(default=None, min_length=1, max_length=255)
    montant: Decimal | None = Field(default=None, ge=Decimal("0"))
    description: str | None = None
    statut: QuoteStatus | None = None
    facture_reglee: bool | None = None
    notes: str | None = None
    fichier: str | None = None
    created_by: str | None = Field(default=None, alias="createdBy")

    @field_validator("title", mode="before")
    @classmethod
    def strip_title(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    def changes(self) -> dict[str, Any]:
        # createdBy names the author of the resulting history rows; the stored creator never changes.
        return {name: getattr(self, name) for name in self.model_fields_set if name not in {"devis_id", "created_by"}}


class QuoteRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    client_id: UUID
    title: str
    montant: float
    description: str | None
    statut: QuoteStatus | str
    facture_reglee: bool
    validated_at: datetime | None
    created_by: str
    notes: str | None
    fichier: str | None
    date: datetime = Field(validation_alias=AliasChoices("date", "created_at"))
    updated_at: datetime


class QuoteListResponse(BaseModel):
    success: bool = True
    data: list[QuoteRead] = Field(default_factory=list)


class QuoteMutationResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    data: QuoteRead
    stage_progressed: bool = Field(default=False, alias="stageProgressed")
    new_stage: str | None = Field(default=None, alias="newStage")


class DeleteResponse(BaseModel):
    success: bool = True


class PaymentCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    montant: Decimal = Field(gt=Decimal("0"))
    date: date_type | None = None
    methode: str = Field(default="virement", min_length=1, max_length=32)
    reference: str | None = Field(default=None, max_length=128)
    description: str | None = None
    created_by: str | None = Field(default=None, alias="createdBy")


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    client_id: UUID
    montant: float
    date: date_type
    methode: str
    reference: str | None
    description: str | None
    created_by: str
    created_at: datetime


class PaymentListResponse(BaseModel):
    success: bool = True
    data: list[PaymentRead] = Field(default_factory=list)


class PaymentMutationResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    data: PaymentRead
    stage_progressed: bool = Field(default=False, alias="stageProgressed")
    new_stage: str | None = Field(default=None, alias="newStage")


class StageChangeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    new_stage: Stage = Field(alias="newStage")
    changed_by: str | None = Field(default=None, alias="changedBy")
    force: bool = False


class StageChangeResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    previous_stage: str = Field(alias="previousStage")
    new_stage: str = Field(alias="newStage")
    stage_progressed: bool = Field(default=False, alias="stageProgressed")


class StageHistoryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    client_id: UUID
    stage_name: str
    started_at: datetime
    ended_at: datetime | None
    duration_seconds: int | None
    changed_by: str


class StageHistoryResponse(BaseModel):
    success: bool = True
    data: list[StageHistoryRead] = Field(default_factory=list)


class AuditEntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    client_id: UUID
    date: datetime
    type: str
    description: str
    author: str
    previous_status: str | None
    new_status: str | None
    correlation_id: str | None
    # ORM models expose the declarative MetaData as ``metadata``.
    metadata: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("event_metadata", "metadata"),
    )


class AuditEntryCreate(BaseModel):
    """Manually appended trail entry; stage changes and deposits are only written by their mutations."""

    model_config = ConfigDict(populate_by_name=True)

    type: Literal["note", "modification"] = "note"
    description: str = Field(min_length=1, max_length=2000)
    author: str | None = Field(default=None, max_length=255, validation_alias=AliasChoices("auteur", "author"))
    previous_status: str | None = Field(default=None, max_length=64, alias="previousStatus")
    new_status: str | None = Field(default=None, max_length=64, alias="newStatus")
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("description", mode="before")
    @classmethod
    def strip_description(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


class AuditEntryResponse(BaseModel):
    success: bool = True
    data: AuditEntryRead


class AuditTrailResponse(BaseModel):
    success: bool = True
    data: list[AuditEntryRead] = Field(default_factory=list)


class SettlementSummaryRead(BaseModel):
    total_accepted: float
    total_paid: float
    progress: int
    all_paid: bool
    has_accepted_quotes: bool
    warnings: list[str] = Field(default_factory=list)


class SettlementSummaryResponse(BaseModel):
    success: bool = True
    data: SettlementSummaryRead
