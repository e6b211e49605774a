"""Stage transition decision table.

Everything in this module is pure: callers hand over the project's current
stage, the complete freshly-persisted quote set and the triggers raised by the
mutation, and receive a :class:`StageDecision`. Persisting the decision is the
job of :mod:`atelier.projects.service`.

Rules are grouped by triggering event and listed in priority order. For a
single trigger the first rule whose guard matches wins. When a request raises
several triggers (a patch touching both ``statut`` and ``facture_reglee``) they
are evaluated in order, each one against the stage produced by the previous
one, and the last rule that moved the stage wins.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field

from atelier.projects.stages import (
    ACCEPTED,
    DEPOSIT_RECEIVED,
    EARLY_STAGES,
    INVOICE_SETTLED,
    LOCKED_STAGES,
    NEGOTIATION,
    PRE_SETTLEMENT_STAGES,
    QUALIFIED,
    QUOTE_ACCEPTED,
    QUOTE_PENDING,
    QUOTE_REFUSED,
    REFUSED,
    REVERTIBLE_STAGES,
)


QUOTE_ACCEPTED_EVENT = "quote_accepted"
QUOTE_REFUSED_EVENT = "quote_refused"
QUOTE_REVERTED_EVENT = "quote_reverted"
SETTLEMENT_CLEARED_EVENT = "settlement_cleared"
SETTLEMENT_SET_EVENT = "settlement_set"
PAYMENT_RECEIVED_EVENT = "payment_received"


@dataclass(frozen=True, slots=True)
class QuoteSnapshot:
    id: str
    title: str | None
    status: str
    invoice_settled: bool = False

    @property
    def display_title(self) -> str:
        if self.title:
            return self.title
        return f"Quote no. {self.id[-6:]}"


@dataclass(frozen=True, slots=True)
class Trigger:
    event: str
    quote: QuoteSnapshot | None = None
    previous: QuoteSnapshot | None = None


@dataclass(frozen=True, slots=True)
class EvaluationContext:
    current_stage: str
    quotes: tuple[QuoteSnapshot, ...]
    trigger: Trigger

    @property
    def accepted(self) -> tuple[QuoteSnapshot, ...]:
        return tuple(quote for quote in self.quotes if quote.status == QUOTE_ACCEPTED)

    @property
    def refused(self) -> tuple[QuoteSnapshot, ...]:
        return tuple(quote for quote in self.quotes if quote.status == QUOTE_REFUSED)

    @property
    def all_refused(self) -> bool:
        return bool(self.quotes) and len(self.refused) == len(self.quotes)

    @property
    def all_pending(self) -> bool:
        return not self.accepted and not self.refused

    @property
    def all_accepted_settled(self) -> bool:
        accepted = self.accepted
        return bool(accepted) and all(quote.invoice_settled for quote in accepted)


@dataclass(frozen=True, slots=True)
class StageRule:
    name: str
    event: str
    guard: Callable[[EvaluationContext], bool]
    target: Callable[[EvaluationContext], str]
    description: str


@dataclass(frozen=True, slots=True)
class StageDecision:
    previous_stage: str
    new_stage: str | None = None
    rule: StageRule | None = None
    trigger: Trigger | None = None
    fired: tuple[str, ...] = field(default_factory=tuple)

    @property
    def progressed(self) -> bool:
        return self.new_stage is not None and self.new_stage != self.previous_stage

    def describe(self) -> str | None:
        if self.rule is None:
            return None
        quote = self.trigger.quote if self.trigger is not None else None
        title = quote.display_title if quote is not None else ""
        return self.rule.description.format(title=title, stage=self.new_stage)


def _to(stage: str) -> Callable[[EvaluationContext], str]:
    return lambda ctx: stage


def _settled_quote_reverted(ctx: EvaluationContext) -> bool:
    previous = ctx.trigger.previous
    if previous is None or previous.status != QUOTE_ACCEPTED or not previous.invoice_settled:
        return False
    if ctx.current_stage != INVOICE_SETTLED:
        return False
    return not ctx.accepted or not ctx.all_accepted_settled


def _accepted_or_negotiation(ctx: EvaluationContext) -> str:
    return ACCEPTED if ctx.accepted else NEGOTIATION


def _all_quotes_pending(ctx: EvaluationContext) -> bool:
    return (
        ctx.all_pending
        and ctx.current_stage in REVERTIBLE_STAGES
        and ctx.current_stage not in LOCKED_STAGES
    )


def _last_accepted_reverted(ctx: EvaluationContext) -> bool:
    previous = ctx.trigger.previous
    if previous is None or previous.status != QUOTE_ACCEPTED:
        return False
    return ctx.all_pending and ctx.current_stage == ACCEPTED


def _settlement_cleared(ctx: EvaluationContext) -> bool:
    return bool(ctx.accepted) and not ctx.all_accepted_settled and ctx.current_stage == INVOICE_SETTLED


def _all_invoices_settled(ctx: EvaluationContext) -> bool:
    return ctx.all_accepted_settled and ctx.current_stage in PRE_SETTLEMENT_STAGES


STAGE_RULES: tuple[StageRule, ...] = (
    StageRule(
        name="quote_accepted",
        event=QUOTE_ACCEPTED_EVENT,
        guard=lambda ctx: ctx.current_stage in EARLY_STAGES,
        target=_to(ACCEPTED),
        description='Stage updated automatically following acceptance of quote "{title}"',
    ),
    StageRule(
        name="all_quotes_refused",
        event=QUOTE_REFUSED_EVENT,
        guard=lambda ctx: ctx.all_refused and ctx.current_stage not in LOCKED_STAGES,
        target=_to(REFUSED),
        description='Stage updated automatically after every quote was refused. Last refused: "{title}"',
    ),
    StageRule(
        name="settled_quote_reverted",
        event=QUOTE_REVERTED_EVENT,
        guard=_settled_quote_reverted,
        target=_accepted_or_negotiation,
        description='Stage reverted automatically: settled quote "{title}" went back to pending',
    ),
    StageRule(
        name="all_quotes_pending",
        event=QUOTE_REVERTED_EVENT,
        guard=_all_quotes_pending,
        target=_to(NEGOTIATION),
        description='Stage reverted automatically: every quote is pending again after "{title}" was reset',
    ),
    StageRule(
        name="last_accepted_reverted",
        event=QUOTE_REVERTED_EVENT,
        guard=_last_accepted_reverted,
        target=_to(NEGOTIATION),
        description='Stage reverted automatically: last accepted quote "{title}" went back to pending',
    ),
    StageRule(
        name="settlement_cleared",
        event=SETTLEMENT_CLEARED_EVENT,
        guard=_settlement_cleared,
        target=_to(ACCEPTED),
        description='Stage reverted automatically: invoice of quote "{title}" is no longer settled',
    ),
    StageRule(
        name="all_invoices_settled",
        event=SETTLEMENT_SET_EVENT,
        guard=_all_invoices_settled,
        target=_to(INVOICE_SETTLED),
        description='Stage updated automatically: every accepted quote is settled (last: "{title}")',
    ),
    StageRule(
        name="deposit_received",
        event=PAYMENT_RECEIVED_EVENT,
        guard=lambda ctx: ctx.current_stage == QUALIFIED,
        target=_to(DEPOSIT_RECEIVED),
        description="Stage changed automatically to {stage} (deposit received)",
    ),
)


def rules_for(event: str, rules: Iterable[StageRule] = STAGE_RULES) -> list[StageRule]:
    return [rule for rule in rules if rule.event == event]


def triggers_for_create(quote: QuoteSnapshot) -> list[Trigger]:
    """A newly created quote only drives the acceptance progression."""
    if quote.status == QUOTE_ACCEPTED:
        return [Trigger(event=QUOTE_ACCEPTED_EVENT, quote=quote)]
    return []


def triggers_for_update(
    previous: QuoteSnapshot,
    quote: QuoteSnapshot,
    *,
    status_requested: bool,
    settlement_requested: bool,
) -> list[Trigger]:
    triggers: list[Trigger] = []
    if status_requested:
        if quote.status == QUOTE_ACCEPTED:
            triggers.append(Trigger(event=QUOTE_ACCEPTED_EVENT, quote=quote, previous=previous))
        elif quote.status == QUOTE_REFUSED:
            triggers.append(Trigger(event=QUOTE_REFUSED_EVENT, quote=quote, previous=previous))
        elif quote.status == QUOTE_PENDING and previous.status != QUOTE_PENDING:
            triggers.append(Trigger(event=QUOTE_REVERTED_EVENT, quote=quote, previous=previous))

    if settlement_requested and quote.status == QUOTE_ACCEPTED:
        event = SETTLEMENT_SET_EVENT if quote.invoice_settled else SETTLEMENT_CLEARED_EVENT
        triggers.append(Trigger(event=event, quote=quote, previous=previous))
    return triggers


def triggers_for_payment() -> list[Trigger]:
    return [Trigger(event=PAYMENT_RECEIVED_EVENT)]


def decide(
    current_stage: str,
    quotes: Sequence[QuoteSnapshot],
    triggers: Sequence[Trigger],
    *,
    rules: Sequence[StageRule] = STAGE_RULES,
) -> StageDecision:
    snapshot = tuple(quotes)
    stage = current_stage
    fired: list[str] = []
    winner: tuple[StageRule, Trigger] | None = None

    for trigger in triggers:
        ctx = EvaluationContext(current_stage=stage, quotes=snapshot, trigger=trigger)
        rule = next((candidate for candidate in rules_for(trigger.event, rules) if candidate.guard(ctx)), None)
        if rule is None:
            continue
        target = rule.target(ctx)
        if target == stage:
            continue
        fired.append(rule.name)
        stage = target
        winner = (rule, trigger)

    if winner is None or stage == current_stage:
        return StageDecision(previous_stage=current_stage, fired=tuple(fired))
    return StageDecision(
        previous_stage=current_stage,
        new_stage=stage,
        rule=winner[0],
        trigger=winner[1],
        fired=tuple(fired),
    )
