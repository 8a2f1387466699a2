from __future__ import annotations

from enum import StrEnum


class PlanStatus(StrEnum):
    ACTIVE = "ACTIVE"
    QUOTE_PENDING = "QUOTE_PENDING"
    OVERRIDDEN = "OVERRIDDEN"


ALLOWED_PLAN_TRANSITIONS: dict[PlanStatus, set[PlanStatus]] = {
    PlanStatus.ACTIVE: {
        PlanStatus.ACTIVE,
        PlanStatus.QUOTE_PENDING,
        PlanStatus.OVERRIDDEN,
    },
    PlanStatus.QUOTE_PENDING: {
        PlanStatus.ACTIVE,
        PlanStatus.OVERRIDDEN,
    },
    # Leaving OVERRIDDEN is reserved to override deactivation, which restores the snapshot.
    PlanStatus.OVERRIDDEN: {
        PlanStatus.ACTIVE,
        PlanStatus.QUOTE_PENDING,
    },
}


def can_plan_transition(source: PlanStatus, target: PlanStatus) -> bool:
    return target in ALLOWED_PLAN_TRANSITIONS.get(source, set())


class QuoteRequestStatus(StrEnum):
    OPEN = "OPEN"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"


QUOTE_ALLOWED_TRANSITIONS: dict[QuoteRequestStatus, set[QuoteRequestStatus]] = {
    QuoteRequestStatus.OPEN: {
        QuoteRequestStatus.APPROVED,
        QuoteRequestStatus.REJECTED,
        QuoteRequestStatus.CANCELLED,
    },
    QuoteRequestStatus.APPROVED: set(),
    QuoteRequestStatus.REJECTED: set(),
    QuoteRequestStatus.CANCELLED: set(),
}


def can_quote_transition(source: QuoteRequestStatus, target: QuoteRequestStatus) -> bool:
    return target in QUOTE_ALLOWED_TRANSITIONS.get(source, set())
