from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine, select

from app.adapters.fake_adapter import FakePaymentGateway
from app.domain.models import (
    BillingCycle,
    OverrideCreateRequest,
    Plan,
    PlanChangeRequest,
    PlanTier,
    Tenant,
    UpgradeOutcome,
    UpgradeRequest,
)
from app.domain.state_machine import PlanStatus, QuoteRequestStatus, can_plan_transition
from app.infra import db
from app.infra.seed import seed_default_plans
from app.services.errors import ConflictError, GatewayError, NotFoundError, ValidationFailedError
from app.services.override_service import OverrideService
from app.services.plan_ledger import get_plan_state
from app.services.plan_state_service import PlanStateService
from app.services.quote_service import QuoteService


@pytest.fixture()
def billing_engine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Engine:
    db_path = tmp_path / "plan_state_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(test_engine, "connect")
    def _enable_foreign_keys(dbapi_connection: object, _connection_record: object) -> None:
        cursor = dbapi_connection.cursor()  # type: ignore[attr-defined]
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    SQLModel.metadata.create_all(test_engine)
    monkeypatch.setattr(db, "engine", test_engine)
    with Session(test_engine) as session:
        seed_default_plans(session)
    return test_engine


def _create_tenant(engine: Engine, name: str) -> str:
    tenant = Tenant(name=name, billing_email=f"{name}@example.com")
    with Session(engine) as session:
        session.add(tenant)
        session.commit()
        return tenant.id


def _plans(engine: Engine) -> dict[PlanTier, Plan]:
    with Session(engine) as session:
        return {row.tier: row for row in session.exec(select(Plan)).all()}


def _current_plan_id(engine: Engine, tenant_id: str) -> str | None:
    with Session(engine) as session:
        state = get_plan_state(session, tenant_id)
        return state.plan_id if state is not None else None


def test_plan_status_transition_table() -> None:
    assert can_plan_transition(PlanStatus.ACTIVE, PlanStatus.QUOTE_PENDING)
    assert can_plan_transition(PlanStatus.QUOTE_PENDING, PlanStatus.ACTIVE)
    assert can_plan_transition(PlanStatus.ACTIVE, PlanStatus.OVERRIDDEN)
    assert can_plan_transition(PlanStatus.OVERRIDDEN, PlanStatus.QUOTE_PENDING)
    assert not can_plan_transition(PlanStatus.QUOTE_PENDING, PlanStatus.QUOTE_PENDING)
    assert not can_plan_transition(PlanStatus.OVERRIDDEN, PlanStatus.OVERRIDDEN)


def test_activate_free_at_signup_writes_single_history_entry(billing_engine: Engine) -> None:
    tenant_id = _create_tenant(billing_engine, "signup-free")
    plans = _plans(billing_engine)
    service = PlanStateService(gateway=FakePaymentGateway())

    state = service.activate_free(tenant_id, None, "user-1")
    assert state.plan_id == plans[PlanTier.DECOUVERTE].id
    assert state.status == PlanStatus.ACTIVE
    assert state.quote_pending is False

    current = service.get_current_plan(tenant_id)
    assert current.status == "active"
    assert current.quote_pending is False
    assert current.plan.tier == PlanTier.DECOUVERTE
    assert current.external_subscription_id is None

    history = service.list_history(tenant_id)
    assert len(history) == 1
    assert history[0].old_plan_id is None
    assert history[0].new_plan_id == plans[PlanTier.DECOUVERTE].id
    assert history[0].reason == "initial/self-serve activation"
    assert history[0].actor_id == "user-1"


def test_activate_free_rejects_paid_plan_and_unknown_tenant(billing_engine: Engine) -> None:
    tenant_id = _create_tenant(billing_engine, "free-validation")
    plans = _plans(billing_engine)
    service = PlanStateService(gateway=FakePaymentGateway())

    with pytest.raises(ValidationFailedError):
        service.activate_free(tenant_id, plans[PlanTier.ESSENTIEL].id, "user-1")
    with pytest.raises(NotFoundError):
        service.activate_free("missing-tenant", None, "user-1")
    with pytest.raises(NotFoundError):
        service.get_current_plan(tenant_id)


def test_self_serve_upgrade_only_creates_checkout_session(billing_engine: Engine) -> None:
    tenant_id = _create_tenant(billing_engine, "self-serve")
    plans = _plans(billing_engine)
    gateway = FakePaymentGateway()
    service = PlanStateService(gateway=gateway)
    service.activate_free(tenant_id, None, "user-1")

    result = service.request_upgrade(
        tenant_id,
        UpgradeRequest(plan_id=plans[PlanTier.ESSENTIEL].id, billing_cycle=BillingCycle.ANNUAL),
        "user-1",
    )
    assert result.outcome == UpgradeOutcome.CHECKOUT_REQUIRED
    assert result.checkout_session_id is not None
    assert result.checkout_url is not None
    assert result.checkout_url.endswith(result.checkout_session_id)

    assert len(gateway.checkout_requests) == 1
    checkout = gateway.checkout_requests[0]
    assert checkout.unit_amount_cents == 49000
    assert checkout.billing_cycle == BillingCycle.ANNUAL
    assert checkout.tenant_email == "self-serve@example.com"
    assert checkout.flow == "upgrade"

    current = service.get_current_plan(tenant_id)
    assert current.plan.tier == PlanTier.DECOUVERTE
    assert len(service.list_history(tenant_id)) == 1


def test_self_serve_upgrade_before_any_plan_is_a_registration(billing_engine: Engine) -> None:
    tenant_id = _create_tenant(billing_engine, "registration")
    plans = _plans(billing_engine)
    gateway = FakePaymentGateway()
    service = PlanStateService(gateway=gateway)

    result = service.request_upgrade(
        tenant_id,
        UpgradeRequest(plan_id=plans[PlanTier.ESSENTIEL].id),
        "user-1",
    )
    assert result.outcome == UpgradeOutcome.CHECKOUT_REQUIRED
    assert gateway.checkout_requests[0].flow == "registration"
    assert gateway.checkout_requests[0].unit_amount_cents == 4900
    assert _current_plan_id(billing_engine, tenant_id) is None


def test_checkout_gateway_failure_leaves_state_untouched(billing_engine: Engine) -> None:
    tenant_id = _create_tenant(billing_engine, "gateway-down")
    plans = _plans(billing_engine)
    service = PlanStateService(gateway=FakePaymentGateway(fail_checkout=True))
    service.activate_free(tenant_id, None, "user-1")

    with pytest.raises(GatewayError):
        service.request_upgrade(tenant_id, UpgradeRequest(plan_id=plans[PlanTier.ESSENTIEL].id), "user-1")
    assert _current_plan_id(billing_engine, tenant_id) == plans[PlanTier.DECOUVERTE].id


def test_quote_gated_upgrade_then_admin_approval(billing_engine: Engine) -> None:
    tenant_id = _create_tenant(billing_engine, "quote-flow")
    plans = _plans(billing_engine)
    service = PlanStateService(gateway=FakePaymentGateway())
    quotes = QuoteService()

    result = service.request_upgrade(tenant_id, UpgradeRequest(plan_id=plans[PlanTier.PRO].id), "user-1")
    assert result.outcome == UpgradeOutcome.QUOTE_REQUESTED
    assert result.quote_request_id is not None

    pending = service.get_current_plan(tenant_id)
    assert pending.plan.tier == PlanTier.DECOUVERTE
    assert pending.status == "quote_pending"
    assert pending.quote_pending is True

    state = quotes.approve_quote(tenant_id, plans[PlanTier.PRO].id, "admin-1")
    assert state.plan_id == plans[PlanTier.PRO].id
    assert state.status == PlanStatus.ACTIVE
    assert state.quote_approved_by == "admin-1"
    assert state.quote_approved_at is not None

    approved = service.get_current_plan(tenant_id)
    assert approved.status == "active"
    assert approved.quote_pending is False
    assert approved.plan.tier == PlanTier.PRO

    history = service.list_history(tenant_id)
    assert len(history) == 2
    assert history[0].reason == "quote requested for Pro"
    assert history[1].reason == "quote approved by admin-1"
    assert history[1].old_plan_id == plans[PlanTier.DECOUVERTE].id

    requests = quotes.list_quote_requests(tenant_id=tenant_id)
    assert len(requests) == 1
    assert requests[0].status == QuoteRequestStatus.APPROVED
    assert requests[0].resolved_by == "admin-1"


def test_approve_quote_requires_pending_quote_and_quote_gated_plan(billing_engine: Engine) -> None:
    tenant_id = _create_tenant(billing_engine, "quote-exclusion")
    plans = _plans(billing_engine)
    service = PlanStateService(gateway=FakePaymentGateway())
    quotes = QuoteService()

    with pytest.raises(ConflictError):
        quotes.approve_quote(tenant_id, plans[PlanTier.PRO].id, "admin-1")

    service.activate_free(tenant_id, None, "user-1")
    with pytest.raises(ConflictError):
        quotes.approve_quote(tenant_id, plans[PlanTier.PRO].id, "admin-1")

    quotes.open_quote_request(tenant_id, plans[PlanTier.PREMIUM].id, "user-1")
    with pytest.raises(ConflictError):
        quotes.approve_quote(tenant_id, plans[PlanTier.ESSENTIEL].id, "admin-1")
    assert service.get_current_plan(tenant_id).quote_pending is True

    quotes.approve_quote(tenant_id, plans[PlanTier.PREMIUM].id, "admin-1")
    with pytest.raises(ConflictError):
        quotes.approve_quote(tenant_id, plans[PlanTier.PREMIUM].id, "admin-1")


def test_only_one_open_quote_per_tenant(billing_engine: Engine) -> None:
    tenant_id = _create_tenant(billing_engine, "quote-single")
    plans = _plans(billing_engine)
    quotes = QuoteService()

    quotes.open_quote_request(tenant_id, plans[PlanTier.PRO].id, "user-1")
    with pytest.raises(ConflictError):
        quotes.open_quote_request(tenant_id, plans[PlanTier.PREMIUM].id, "user-1")
    with pytest.raises(ValidationFailedError):
        quotes.open_quote_request(tenant_id, plans[PlanTier.ESSENTIEL].id, "user-1")

    open_rows = quotes.list_quote_requests(status=QuoteRequestStatus.OPEN)
    assert [row.requested_plan_id for row in open_rows] == [plans[PlanTier.PRO].id]


def test_reject_quote_returns_tenant_to_active_without_history(billing_engine: Engine) -> None:
    tenant_id = _create_tenant(billing_engine, "quote-reject")
    plans = _plans(billing_engine)
    service = PlanStateService(gateway=FakePaymentGateway())
    quotes = QuoteService()
    service.activate_free(tenant_id, None, "user-1")
    quotes.open_quote_request(tenant_id, plans[PlanTier.PRO].id, "user-1")

    rejected = quotes.reject_quote(tenant_id, "admin-1", "budget not approved")
    assert rejected.status == QuoteRequestStatus.REJECTED
    assert rejected.resolution_note == "budget not approved"

    current = service.get_current_plan(tenant_id)
    assert current.status == "active"
    assert current.plan.tier == PlanTier.DECOUVERTE
    assert len(service.list_history(tenant_id)) == 1

    with pytest.raises(ConflictError):
        quotes.reject_quote(tenant_id, "admin-1", None)


def test_paying_tenant_keeps_plan_while_quote_is_pending(billing_engine: Engine) -> None:
    tenant_id = _create_tenant(billing_engine, "quote-paying")
    plans = _plans(billing_engine)
    service = PlanStateService(gateway=FakePaymentGateway())
    service.change_plan(tenant_id, PlanChangeRequest(plan_id=plans[PlanTier.ESSENTIEL].id), "admin-1")

    result = service.request_upgrade(tenant_id, UpgradeRequest(plan_id=plans[PlanTier.PRO].id), "user-1")
    assert result.outcome == UpgradeOutcome.QUOTE_REQUESTED

    current = service.get_current_plan(tenant_id)
    assert current.plan.tier == PlanTier.ESSENTIEL
    assert current.quote_pending is True


def test_downgrade_to_free_through_upgrade_is_rejected(billing_engine: Engine) -> None:
    tenant_id = _create_tenant(billing_engine, "no-silent-downgrade")
    plans = _plans(billing_engine)
    service = PlanStateService(gateway=FakePaymentGateway())
    free_request = UpgradeRequest(plan_id=plans[PlanTier.DECOUVERTE].id)

    first = service.request_upgrade(tenant_id, free_request, "user-1")
    assert first.outcome == UpgradeOutcome.ACTIVATED
    again = service.request_upgrade(tenant_id, free_request, "user-1")
    assert again.outcome == UpgradeOutcome.UNCHANGED

    service.change_plan(tenant_id, PlanChangeRequest(plan_id=plans[PlanTier.ESSENTIEL].id), "admin-1")
    with pytest.raises(ConflictError):
        service.request_upgrade(tenant_id, free_request, "user-1")
    with pytest.raises(ConflictError):
        service.activate_free(tenant_id, None, "user-1")
    assert _current_plan_id(billing_engine, tenant_id) == plans[PlanTier.ESSENTIEL].id


def test_change_plan_cancels_pending_quote(billing_engine: Engine) -> None:
    tenant_id = _create_tenant(billing_engine, "admin-change")
    plans = _plans(billing_engine)
    service = PlanStateService(gateway=FakePaymentGateway())
    quotes = QuoteService()
    quotes.open_quote_request(tenant_id, plans[PlanTier.PRO].id, "user-1")

    state = service.change_plan(
        tenant_id,
        PlanChangeRequest(plan_id=plans[PlanTier.ESSENTIEL].id),
        "admin-1",
    )
    assert state.status == PlanStatus.ACTIVE
    assert state.plan_id == plans[PlanTier.ESSENTIEL].id

    rows = quotes.list_quote_requests(tenant_id=tenant_id)
    assert rows[0].status == QuoteRequestStatus.CANCELLED
    assert service.list_history(tenant_id)[-1].reason == "plan changed by admin admin-1"

    service.change_plan(
        tenant_id,
        PlanChangeRequest(plan_id=plans[PlanTier.PREMIUM].id, notes="partner agreement"),
        "admin-1",
    )
    assert service.list_history(tenant_id)[-1].reason == "partner agreement"


def test_history_count_matches_distinct_plan_changes(billing_engine: Engine) -> None:
    tenant_id = _create_tenant(billing_engine, "history-complete")
    plans = _plans(billing_engine)
    service = PlanStateService(gateway=FakePaymentGateway())
    quotes = QuoteService()
    overrides = OverrideService()

    observed: list[str | None] = [_current_plan_id(billing_engine, tenant_id)]

    def _record() -> None:
        observed.append(_current_plan_id(billing_engine, tenant_id))

    service.activate_free(tenant_id, None, "user-1")
    _record()
    quotes.open_quote_request(tenant_id, plans[PlanTier.PRO].id, "user-1")
    _record()
    quotes.reject_quote(tenant_id, "admin-1", None)
    _record()
    service.change_plan(tenant_id, PlanChangeRequest(plan_id=plans[PlanTier.ESSENTIEL].id), "admin-1")
    _record()
    service.change_plan(tenant_id, PlanChangeRequest(plan_id=plans[PlanTier.ESSENTIEL].id), "admin-1")
    _record()
    override = overrides.create_override(
        tenant_id,
        OverrideCreateRequest(plan_id=plans[PlanTier.PREMIUM].id, duration_days=7, reason="trial"),
        "admin-1",
    )
    _record()
    overrides.deactivate_override(override.id, "admin-1")
    _record()

    changes = sum(1 for before, after in zip(observed, observed[1:]) if before != after)
    history = service.list_history(tenant_id)
    assert changes == 4
    assert len(history) == changes
    assert [entry.new_plan_id for entry in history] == [
        plans[PlanTier.DECOUVERTE].id,
        plans[PlanTier.ESSENTIEL].id,
        plans[PlanTier.PREMIUM].id,
        plans[PlanTier.ESSENTIEL].id,
    ]


def test_cancel_subscription_requires_external_subscription(billing_engine: Engine) -> None:
    tenant_id = _create_tenant(billing_engine, "cancel-none")
    service = PlanStateService(gateway=FakePaymentGateway())
    service.activate_free(tenant_id, None, "user-1")

    with pytest.raises(NotFoundError):
        service.cancel_subscription(tenant_id, "user-1")
