from atelier.projects.api import payments_router, quotes_router, stage_router
from atelier.projects.engine import QuoteSnapshot, StageDecision, Trigger, decide
from atelier.projects.models import AuditEntry, Payment, ProjectClient, Quote, StageHistoryEntry
from atelier.projects.service import ActorUser, ProjectStageService, project_stage_service

__all__ = [
    "quotes_router",
    "payments_router",
    "stage_router",
    "QuoteSnapshot",
    "StageDecision",
    "Trigger",
    "decide",
    "ProjectClient",
    "Quote",
    "Payment",
    "StageHistoryEntry",
    "AuditEntry",
    "ActorUser",
    "ProjectStageService",
    "project_stage_service",
]
