from __future__ import annotations

from datetime import datetime

from sqlmodel import Session, col, select

from app.domain.models import PlanHistoryEntry, PlanOverride, Tenant, TenantPlanState, now_utc
from app.domain.state_machine import PlanStatus, can_plan_transition
from app.services.errors import ConflictError, NotFoundError

REASON_ACTIVATION = "initial/self-serve activation"
REASON_PAYMENT_COMPLETED = "payment completed"
REASON_SUBSCRIPTION_CANCELLED = "subscription cancelled"
REASON_OVERRIDE_MANUAL = "override ended (manual)"
REASON_OVERRIDE_AUTOMATIC = "override ended (automatic)"


def get_tenant(session: Session, tenant_id: str) -> Tenant:
    row = session.get(Tenant, tenant_id)
    if row is None:
        raise NotFoundError("tenant not found")
    return row


def get_plan_state(
    session: Session,
    tenant_id: str,
    *,
    for_update: bool = False,
) -> TenantPlanState | None:
    statement = select(TenantPlanState).where(TenantPlanState.tenant_id == tenant_id)
    if for_update:
        statement = statement.with_for_update().execution_options(populate_existing=True)
    return session.exec(statement).first()


def require_plan_state(
    session: Session,
    tenant_id: str,
    *,
    for_update: bool = False,
) -> TenantPlanState:
    row = get_plan_state(session, tenant_id, for_update=for_update)
    if row is None:
        raise NotFoundError("plan state not found")
    return row


def get_active_override(
    session: Session,
    tenant_id: str,
    *,
    for_update: bool = False,
) -> PlanOverride | None:
    statement = (
        select(PlanOverride)
        .where(PlanOverride.tenant_id == tenant_id)
        .where(col(PlanOverride.is_active).is_(True))
    )
    if for_update:
        statement = statement.with_for_update().execution_options(populate_existing=True)
    return session.exec(statement).first()


def open_plan_state(
    session: Session,
    tenant_id: str,
    *,
    plan_id: str,
    status: PlanStatus,
    reason: str,
    actor_id: str | None,
    now: datetime | None = None,
) -> TenantPlanState:
    ts = now or now_utc()
    state = TenantPlanState(
        tenant_id=tenant_id,
        plan_id=plan_id,
        status=status,
        created_at=ts,
        updated_at=ts,
    )
    session.add(state)
    session.add(
        PlanHistoryEntry(
            tenant_id=tenant_id,
            old_plan_id=None,
            new_plan_id=plan_id,
            reason=reason,
            actor_id=actor_id,
            created_at=ts,
        )
    )
    return state


def transition_plan(
    session: Session,
    state: TenantPlanState,
    *,
    plan_id: str,
    status: PlanStatus,
    reason: str,
    actor_id: str | None,
    now: datetime | None = None,
) -> PlanHistoryEntry | None:
    """Move a tenant's plan state and append the matching history entry.

    This is the only writer of ``plan_id`` and ``status`` on an existing
    state row. A history entry is written only when the plan reference
    actually changes; status-only moves (quote resolution, override of the
    same plan) leave the ledger untouched.
    """
    if not can_plan_transition(state.status, status):
        raise ConflictError(f"plan state cannot move from {state.status} to {status}")

    ts = now or now_utc()
    previous_plan_id = state.plan_id
    state.plan_id = plan_id
    state.status = status
    state.updated_at = ts
    session.add(state)

    if previous_plan_id == plan_id:
        return None
    entry = PlanHistoryEntry(
        tenant_id=state.tenant_id,
        old_plan_id=previous_plan_id,
        new_plan_id=plan_id,
        reason=reason,
        actor_id=actor_id,
        created_at=ts,
    )
    session.add(entry)
    return entry


def list_history(session: Session, tenant_id: str) -> list[PlanHistoryEntry]:
    rows = list(
        session.exec(select(PlanHistoryEntry).where(PlanHistoryEntry.tenant_id == tenant_id)).all()
    )
    return sorted(rows, key=lambda item: item.created_at)
