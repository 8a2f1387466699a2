from __future__ import annotations

from collections.abc import Callable
from typing import Protocol

from sqlmodel import Session, col, select

from app.domain.models import Plan, PlanTier, TierKind
from app.services.errors import ConflictError, NotFoundError


class PlanCatalog(Protocol):
    def get(self, plan_id: str) -> Plan: ...

    def get_by_tier(self, tier: PlanTier) -> Plan: ...

    def get_free_plan(self) -> Plan: ...

    def list_plans(self, *, active_only: bool = True) -> list[Plan]: ...


CatalogFactory = Callable[[Session], PlanCatalog]


class SqlPlanCatalog:
    def __init__(self, session: Session) -> None:
        self._session = session

    def get(self, plan_id: str) -> Plan:
        row = self._session.get(Plan, plan_id)
        if row is None:
            raise NotFoundError("plan not found")
        return row

    def get_by_tier(self, tier: PlanTier) -> Plan:
        row = self._session.exec(select(Plan).where(Plan.tier == tier)).first()
        if row is None:
            raise NotFoundError(f"plan tier not found: {tier}")
        return row

    def get_free_plan(self) -> Plan:
        for plan in self.list_plans():
            if plan.kind == TierKind.FREE:
                return plan
        raise ConflictError("free plan is not configured")

    def list_plans(self, *, active_only: bool = True) -> list[Plan]:
        statement = select(Plan)
        if active_only:
            statement = statement.where(col(Plan.is_active).is_(True))
        rows = list(self._session.exec(statement).all())
        return sorted(rows, key=lambda item: (item.monthly_price_cents, item.tier.value))


def sql_catalog_factory(session: Session) -> PlanCatalog:
    return SqlPlanCatalog(session)
