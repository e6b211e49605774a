"""Settlement summary and the manual stage-move guard derived from quote facts."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from atelier.projects.models import Quote
from atelier.projects.schemas import SettlementSummaryRead
from atelier.projects.stages import COMPLETION_STAGES, LOCKED_STAGES, QUOTE_ACCEPTED, QUOTE_REFUSED


@dataclass(frozen=True, slots=True)
class MoveCheck:
    allowed: bool
    reason: str | None = None


def _accepted(quotes: Sequence[Quote]) -> list[Quote]:
    return [quote for quote in quotes if quote.statut == QUOTE_ACCEPTED]


def invoice_settled(quotes: Sequence[Quote]) -> bool:
    """True when at least one quote is accepted and every accepted quote is settled."""
    accepted = _accepted(quotes)
    return bool(accepted) and all(quote.facture_reglee for quote in accepted)


def can_move_to_stage(quotes: Sequence[Quote], target_stage: str) -> MoveCheck:
    accepted = _accepted(quotes)
    if target_stage in COMPLETION_STAGES and accepted and not invoice_settled(quotes):
        return MoveCheck(
            allowed=False,
            reason="every accepted quote must be settled before the project is marked as finished",
        )
    if target_stage in LOCKED_STAGES and not accepted:
        return MoveCheck(allowed=False, reason="at least one quote must be accepted to move the project forward")
    return MoveCheck(allowed=True)


def settlement_warnings(quotes: Sequence[Quote], current_stage: str) -> list[str]:
    if not quotes:
        return ["no quote has been created for this project"]

    warnings: list[str] = []
    accepted = _accepted(quotes)
    if all(quote.statut == QUOTE_REFUSED for quote in quotes):
        warnings.append("every quote was refused; the project should be marked as refused")
    if current_stage in LOCKED_STAGES and not accepted:
        warnings.append("the project is moving forward without an accepted quote")
    unpaid = [quote for quote in accepted if not quote.facture_reglee]
    if current_stage in COMPLETION_STAGES and unpaid:
        warnings.append(f"{len(unpaid)} unsettled invoice(s); check before closing the project")
    return warnings


def summarize(quotes: Sequence[Quote], current_stage: str) -> SettlementSummaryRead:
    accepted = _accepted(quotes)
    total_accepted = sum((Decimal(quote.montant) for quote in accepted), Decimal("0"))
    total_paid = sum((Decimal(quote.montant) for quote in accepted if quote.facture_reglee), Decimal("0"))
    progress = int((total_paid / total_accepted * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)) if total_accepted > 0 else 0
    return SettlementSummaryRead(
        total_accepted=float(total_accepted),
        total_paid=float(total_paid),
        progress=progress,
        all_paid=invoice_settled(quotes),
        has_accepted_quotes=bool(accepted),
        warnings=settlement_warnings(quotes, current_stage),
    )
