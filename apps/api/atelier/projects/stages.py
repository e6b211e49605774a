"""Project lifecycle vocabulary shared by the engine, the ledgers and reporting.

Stage values are persisted verbatim in ``project_client.stage`` and
``project_stage_history.stage_name``; reporting collaborators match on them.
"""

from __future__ import annotations

from typing import Literal

Stage = Literal[
    "qualified",
    "needs_assessment",
    "deposit_received",
    "design",
    "negotiation",
    "accepted",
    "deposit_1",
    "in_progress",
    "site_work",
    "invoice_settled",
    "delivery",
    "delivery_done",
    "completed",
    "refused",
    "lost",
    "cancelled",
    "suspended",
]

QUALIFIED = "qualified"
NEEDS_ASSESSMENT = "needs_assessment"
DEPOSIT_RECEIVED = "deposit_received"
DESIGN = "design"
NEGOTIATION = "negotiation"
ACCEPTED = "accepted"
DEPOSIT_1 = "deposit_1"
IN_PROGRESS = "in_progress"
SITE_WORK = "site_work"
INVOICE_SETTLED = "invoice_settled"
DELIVERY = "delivery"
DELIVERY_DONE = "delivery_done"
COMPLETED = "completed"
REFUSED = "refused"
LOST = "lost"
CANCELLED = "cancelled"
SUSPENDED = "suspended"

# Pipeline order; terminal/side stages last.
STAGES: tuple[str, ...] = (
    QUALIFIED,
    NEEDS_ASSESSMENT,
    DEPOSIT_RECEIVED,
    DESIGN,
    NEGOTIATION,
    ACCEPTED,
    DEPOSIT_1,
    IN_PROGRESS,
    SITE_WORK,
    INVOICE_SETTLED,
    DELIVERY,
    DELIVERY_DONE,
    COMPLETED,
    REFUSED,
    LOST,
    CANCELLED,
    SUSPENDED,
)

STAGE_LABELS: dict[str, str] = {
    QUALIFIED: "Qualified",
    NEEDS_ASSESSMENT: "Needs assessment",
    DEPOSIT_RECEIVED: "Deposit received",
    DESIGN: "Design",
    NEGOTIATION: "Quote / Negotiation",
    ACCEPTED: "Accepted",
    DEPOSIT_1: "First deposit",
    IN_PROGRESS: "Project in progress",
    SITE_WORK: "Site work",
    INVOICE_SETTLED: "Invoice settled",
    DELIVERY: "Delivery",
    DELIVERY_DONE: "Delivered & done",
    COMPLETED: "Completed",
    REFUSED: "Refused",
    LOST: "Lost",
    CANCELLED: "Cancelled",
    SUSPENDED: "Suspended",
}

EARLY_STAGES = frozenset({QUALIFIED, DEPOSIT_RECEIVED, DESIGN, NEGOTIATION, REFUSED})
REVERTIBLE_STAGES = frozenset({ACCEPTED, REFUSED})
LOCKED_STAGES = frozenset({DEPOSIT_1, IN_PROGRESS, SITE_WORK, INVOICE_SETTLED, DELIVERY, DELIVERY_DONE, COMPLETED})
PRE_SETTLEMENT_STAGES = frozenset(
    {QUALIFIED, NEEDS_ASSESSMENT, DEPOSIT_RECEIVED, DESIGN, NEGOTIATION, ACCEPTED, DEPOSIT_1, IN_PROGRESS}
)
COMPLETION_STAGES = frozenset({DELIVERY_DONE, COMPLETED})


def stage_label(value: str | None) -> str:
    if value is None:
        return "-"
    return STAGE_LABELS.get(value, value)


# Quote statuses as stored and exchanged on the wire.
QuoteStatus = Literal["en_attente", "accepte", "refuse"]

QUOTE_PENDING = "en_attente"
QUOTE_ACCEPTED = "accepte"
QUOTE_REFUSED = "refuse"

VALIDATED_QUOTE_STATUSES = frozenset({QUOTE_ACCEPTED, QUOTE_REFUSED})
