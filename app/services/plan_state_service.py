from __future__ import annotations

import logging
import os
from typing import assert_never

from sqlmodel import Session, col, select

from app.adapters.base import CheckoutRequest, PaymentGateway, PaymentGatewayError
from app.adapters.factory import build_payment_gateway
from app.domain.models import (
    BillingCycle,
    BillingStatsRead,
    Plan,
    PlanChangeRequest,
    PlanHistoryEntry,
    PlanOverride,
    PlanRead,
    PlanStateRead,
    QuoteRequest,
    SubscriptionCancelRead,
    TenantPlanState,
    TierCountRead,
    TierKind,
    UpgradeOutcome,
    UpgradeRequest,
    UpgradeResult,
    now_utc,
)
from app.domain.state_machine import PlanStatus, QuoteRequestStatus
from app.infra.db import get_engine
from app.services.errors import ConflictError, GatewayError, NotFoundError, ValidationFailedError
from app.services.plan_catalog import CatalogFactory, sql_catalog_factory
from app.services.plan_ledger import (
    REASON_ACTIVATION,
    get_active_override,
    get_plan_state,
    get_tenant,
    list_history,
    open_plan_state,
    require_plan_state,
    transition_plan,
)
from app.services.quote_service import QuoteService, cancel_open_quote

logger = logging.getLogger(__name__)


class PlanStateService:
    def __init__(
        self,
        *,
        gateway: PaymentGateway | None = None,
        catalog_factory: CatalogFactory | None = None,
        quotes: QuoteService | None = None,
    ) -> None:
        self._gateway = gateway
        self._catalog_factory = catalog_factory or sql_catalog_factory
        self._quotes = quotes or QuoteService(catalog_factory=self._catalog_factory, gateway=gateway)
        self.currency = os.getenv("BILLING_CURRENCY", "EUR").upper()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _payment_gateway(self) -> PaymentGateway:
        if self._gateway is None:
            self._gateway = build_payment_gateway()
        return self._gateway

    def list_plans(self, *, active_only: bool = True) -> list[Plan]:
        with self._session() as session:
            return self._catalog_factory(session).list_plans(active_only=active_only)

    def activate_free(
        self,
        tenant_id: str,
        plan_id: str | None,
        actor_id: str | None,
    ) -> TenantPlanState:
        now = now_utc()
        with self._session() as session:
            get_tenant(session, tenant_id)
            catalog = self._catalog_factory(session)
            plan = catalog.get(plan_id) if plan_id else catalog.get_free_plan()
            if plan.kind != TierKind.FREE:
                raise ValidationFailedError("plan is not a free tier")

            state = get_plan_state(session, tenant_id, for_update=True)
            if state is None:
                state = open_plan_state(
                    session,
                    tenant_id,
                    plan_id=plan.id,
                    status=PlanStatus.ACTIVE,
                    reason=REASON_ACTIVATION,
                    actor_id=actor_id,
                    now=now,
                )
            else:
                if state.status == PlanStatus.OVERRIDDEN:
                    raise ConflictError("an override is active for tenant; deactivate it first")
                if catalog.get(state.plan_id).kind != TierKind.FREE:
                    raise ConflictError(
                        "tenant is on a paid plan; cancel the subscription or ask an admin to change the plan"
                    )
                if state.status == PlanStatus.QUOTE_PENDING:
                    cancel_open_quote(
                        session,
                        tenant_id,
                        actor_id=actor_id,
                        note="free plan activated",
                        now=now,
                    )
                transition_plan(
                    session,
                    state,
                    plan_id=plan.id,
                    status=PlanStatus.ACTIVE,
                    reason=REASON_ACTIVATION,
                    actor_id=actor_id,
                    now=now,
                )
            session.commit()
            session.refresh(state)

        logger.info("tenant %s activated on free plan %s", tenant_id, plan.tier)
        return state

    def request_upgrade(
        self,
        tenant_id: str,
        payload: UpgradeRequest,
        actor_id: str | None,
    ) -> UpgradeResult:
        with self._session() as session:
            tenant = get_tenant(session, tenant_id)
            catalog = self._catalog_factory(session)
            plan = catalog.get(payload.plan_id)
            if not plan.is_active:
                raise ValidationFailedError("plan is not available")
            state = get_plan_state(session, tenant_id)
            current = catalog.get(state.plan_id) if state is not None else None

        kind = plan.kind
        match kind:
            case TierKind.QUOTE_GATED:
                quote = self._quotes.open_quote_request(tenant_id, plan.id, actor_id)
                return UpgradeResult(
                    outcome=UpgradeOutcome.QUOTE_REQUESTED,
                    plan_id=plan.id,
                    quote_request_id=quote.id,
                )
            case TierKind.SELF_SERVE:
                if (
                    state is not None
                    and state.status == PlanStatus.ACTIVE
                    and state.plan_id == plan.id
                    and state.external_subscription_id is not None
                ):
                    raise ConflictError("tenant already subscribes to this plan")
                checkout = CheckoutRequest(
                    tenant_id=tenant_id,
                    tenant_email=tenant.billing_email,
                    plan_id=plan.id,
                    plan_name=plan.name,
                    unit_amount_cents=plan.price_for(payload.billing_cycle),
                    currency=plan.currency,
                    billing_cycle=payload.billing_cycle,
                    actor_id=actor_id,
                    flow="registration" if state is None else "upgrade",
                )
                try:
                    session_handle = self._payment_gateway().create_checkout_session(checkout)
                except PaymentGatewayError as exc:
                    logger.error("checkout session creation failed for tenant %s: %s", tenant_id, exc)
                    raise GatewayError(str(exc)) from exc
                logger.info(
                    "checkout session %s created for tenant %s plan %s",
                    session_handle.session_id,
                    tenant_id,
                    plan.tier,
                )
                return UpgradeResult(
                    outcome=UpgradeOutcome.CHECKOUT_REQUIRED,
                    plan_id=plan.id,
                    checkout_session_id=session_handle.session_id,
                    checkout_url=session_handle.url,
                )
            case TierKind.FREE:
                if state is not None and current is not None:
                    if state.status == PlanStatus.OVERRIDDEN:
                        raise ConflictError("an override is active for tenant; deactivate it first")
                    if current.kind != TierKind.FREE:
                        raise ConflictError(
                            "downgrading to the free plan is not available through upgrade; "
                            "cancel the subscription instead"
                        )
                    if state.status == PlanStatus.ACTIVE and state.plan_id == plan.id:
                        return UpgradeResult(outcome=UpgradeOutcome.UNCHANGED, plan_id=plan.id)
                self.activate_free(tenant_id, plan.id, actor_id)
                return UpgradeResult(outcome=UpgradeOutcome.ACTIVATED, plan_id=plan.id)
            case _:
                assert_never(kind)

    def get_current_plan(self, tenant_id: str) -> PlanStateRead:
        with self._session() as session:
            get_tenant(session, tenant_id)
            state = require_plan_state(session, tenant_id)
            plan = self._catalog_factory(session).get(state.plan_id)
            effective = state.status
            if effective == PlanStatus.OVERRIDDEN:
                override = get_active_override(session, tenant_id)
                effective = override.original_status if override is not None else PlanStatus.ACTIVE

        return PlanStateRead(
            tenant_id=state.tenant_id,
            plan=PlanRead.model_validate(plan),
            status=effective.value.lower(),
            quote_pending=effective == PlanStatus.QUOTE_PENDING,
            billing_cycle=state.billing_cycle,
            external_customer_id=state.external_customer_id,
            external_subscription_id=state.external_subscription_id,
            current_period_start=state.current_period_start,
            current_period_end=state.current_period_end,
            cancel_at_period_end=state.cancel_at_period_end,
            quote_approved_at=state.quote_approved_at,
            quote_approved_by=state.quote_approved_by,
            updated_at=state.updated_at,
        )

    def change_plan(
        self,
        tenant_id: str,
        payload: PlanChangeRequest,
        actor_id: str,
    ) -> TenantPlanState:
        now = now_utc()
        reason = (payload.notes or "").strip() or f"plan changed by admin {actor_id}"
        with self._session() as session:
            get_tenant(session, tenant_id)
            plan = self._catalog_factory(session).get(payload.plan_id)
            state = get_plan_state(session, tenant_id, for_update=True)
            if state is None:
                state = open_plan_state(
                    session,
                    tenant_id,
                    plan_id=plan.id,
                    status=PlanStatus.ACTIVE,
                    reason=reason,
                    actor_id=actor_id,
                    now=now,
                )
            else:
                if state.status == PlanStatus.OVERRIDDEN:
                    raise ConflictError("an override is active for tenant; deactivate it first")
                if state.status == PlanStatus.QUOTE_PENDING:
                    cancel_open_quote(
                        session,
                        tenant_id,
                        actor_id=actor_id,
                        note="superseded by manual plan change",
                        now=now,
                    )
                transition_plan(
                    session,
                    state,
                    plan_id=plan.id,
                    status=PlanStatus.ACTIVE,
                    reason=reason,
                    actor_id=actor_id,
                    now=now,
                )
            session.commit()
            session.refresh(state)

        logger.info("tenant %s moved to %s by admin %s", tenant_id, plan.tier, actor_id)
        return state

    def cancel_subscription(self, tenant_id: str, actor_id: str | None) -> SubscriptionCancelRead:
        with self._session() as session:
            get_tenant(session, tenant_id)
            state = get_plan_state(session, tenant_id)
            if state is None or state.external_subscription_id is None:
                raise NotFoundError("no active subscription for tenant")
            subscription_id = state.external_subscription_id

        try:
            cancel_at = self._payment_gateway().cancel_at_period_end(subscription_id)
        except PaymentGatewayError as exc:
            logger.error("subscription cancellation failed for tenant %s: %s", tenant_id, exc)
            raise GatewayError(str(exc)) from exc

        with self._session() as session:
            state = require_plan_state(session, tenant_id, for_update=True)
            if state.external_subscription_id != subscription_id:
                raise ConflictError("subscription changed while cancelling; retry")
            state.cancel_at_period_end = True
            state.updated_at = now_utc()
            session.add(state)
            session.commit()
            session.refresh(state)

        logger.info(
            "subscription %s of tenant %s set to cancel at period end by %s",
            subscription_id,
            tenant_id,
            actor_id,
        )
        return SubscriptionCancelRead(
            tenant_id=tenant_id,
            external_subscription_id=subscription_id,
            cancel_at_period_end=True,
            cancel_at=cancel_at or state.current_period_end,
        )

    def list_history(self, tenant_id: str) -> list[PlanHistoryEntry]:
        with self._session() as session:
            get_tenant(session, tenant_id)
            return list_history(session, tenant_id)

    def billing_stats(self) -> BillingStatsRead:
        with self._session() as session:
            plans = {row.id: row for row in session.exec(select(Plan)).all()}
            states = list(session.exec(select(TenantPlanState)).all())
            overrides = {
                row.tenant_id: row
                for row in session.exec(
                    select(PlanOverride).where(col(PlanOverride.is_active).is_(True))
                ).all()
            }
            pending_quotes = len(
                session.exec(
                    select(QuoteRequest.id).where(QuoteRequest.status == QuoteRequestStatus.OPEN)
                ).all()
            )

        tier_counts: dict[str, int] = {}
        recurring_cents = 0
        for state in states:
            plan = plans[state.plan_id]
            tier_counts[plan.tier] = tier_counts.get(plan.tier, 0) + 1
            if state.external_subscription_id is None:
                continue
            override = overrides.get(state.tenant_id)
            billed = plans[override.original_plan_id] if override is not None else plan
            if state.billing_cycle == BillingCycle.ANNUAL:
                recurring_cents += billed.annual_price_cents // 12
            else:
                recurring_cents += billed.monthly_price_cents

        ordered_tiers = sorted(plans.values(), key=lambda item: item.monthly_price_cents)
        return BillingStatsRead(
            tenants_by_tier=[
                TierCountRead(tier=item.tier, tenant_count=tier_counts.get(item.tier, 0))
                for item in ordered_tiers
            ],
            pending_quotes=pending_quotes,
            active_overrides=len(overrides),
            monthly_recurring_revenue_cents=recurring_cents,
            currency=self.currency,
        )
