from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.adapters.base import PaymentGateway
from app.adapters.factory import build_payment_gateway
from app.domain.models import QuoteRequest, TenantPlanState, TierKind, now_utc
from app.domain.state_machine import PlanStatus, QuoteRequestStatus, can_quote_transition
from app.infra.db import get_engine
from app.infra.outbox import PostCommitOutbox
from app.services.errors import ConflictError, ValidationFailedError
from app.services.notification_service import BillingNotifier
from app.services.plan_catalog import CatalogFactory, sql_catalog_factory
from app.services.plan_ledger import get_plan_state, get_tenant, open_plan_state, transition_plan

logger = logging.getLogger(__name__)


def get_open_quote(session: Session, tenant_id: str) -> QuoteRequest | None:
    return session.exec(
        select(QuoteRequest)
        .where(QuoteRequest.tenant_id == tenant_id)
        .where(QuoteRequest.status == QuoteRequestStatus.OPEN)
    ).first()


def resolve_quote(
    session: Session,
    quote: QuoteRequest,
    target: QuoteRequestStatus,
    *,
    actor_id: str | None,
    note: str | None = None,
    now: datetime | None = None,
) -> QuoteRequest:
    if not can_quote_transition(quote.status, target):
        raise ConflictError(f"quote request cannot move from {quote.status} to {target}")
    quote.status = target
    quote.resolved_by = actor_id
    quote.resolution_note = note
    quote.resolved_at = now or now_utc()
    session.add(quote)
    return quote


def cancel_open_quote(
    session: Session,
    tenant_id: str,
    *,
    actor_id: str | None,
    note: str,
    now: datetime | None = None,
) -> QuoteRequest | None:
    quote = get_open_quote(session, tenant_id)
    if quote is None:
        return None
    return resolve_quote(
        session,
        quote,
        QuoteRequestStatus.CANCELLED,
        actor_id=actor_id,
        note=note,
        now=now,
    )


class QuoteService:
    def __init__(
        self,
        *,
        catalog_factory: CatalogFactory | None = None,
        notifier: BillingNotifier | None = None,
        gateway: PaymentGateway | None = None,
    ) -> None:
        self._catalog_factory = catalog_factory or sql_catalog_factory
        self._notifier = notifier or BillingNotifier()
        self._gateway = gateway

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _payment_gateway(self) -> PaymentGateway:
        if self._gateway is None:
            self._gateway = build_payment_gateway()
        return self._gateway

    def open_quote_request(self, tenant_id: str, plan_id: str, actor_id: str | None) -> QuoteRequest:
        outbox = PostCommitOutbox()
        now = now_utc()
        with self._session() as session:
            get_tenant(session, tenant_id)
            catalog = self._catalog_factory(session)
            plan = catalog.get(plan_id)
            if plan.kind != TierKind.QUOTE_GATED:
                raise ValidationFailedError("plan does not require a quote")
            free_plan = catalog.get_free_plan()

            if get_open_quote(session, tenant_id) is not None:
                raise ConflictError("a quote request is already pending for tenant")

            reason = f"quote requested for {plan.name}"
            state = get_plan_state(session, tenant_id, for_update=True)
            if state is None:
                state = open_plan_state(
                    session,
                    tenant_id,
                    plan_id=free_plan.id,
                    status=PlanStatus.QUOTE_PENDING,
                    reason=reason,
                    actor_id=actor_id,
                    now=now,
                )
            else:
                if state.status == PlanStatus.OVERRIDDEN:
                    raise ConflictError("an override is active for tenant; deactivate it first")
                current = catalog.get(state.plan_id)
                # A paying tenant keeps its plan while sales prepares the quote.
                waiting_plan_id = free_plan.id if current.kind == TierKind.FREE else current.id
                transition_plan(
                    session,
                    state,
                    plan_id=waiting_plan_id,
                    status=PlanStatus.QUOTE_PENDING,
                    reason=reason,
                    actor_id=actor_id,
                    now=now,
                )

            quote = QuoteRequest(
                tenant_id=tenant_id,
                requested_plan_id=plan.id,
                requested_by=actor_id,
                created_at=now,
            )
            session.add(quote)
            outbox.enqueue(
                "notify.quote_requested",
                lambda: self._notifier.quote_requested(
                    tenant_id,
                    quote_request_id=quote.id,
                    plan_id=quote.requested_plan_id,
                    actor_id=actor_id,
                ),
            )
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                outbox.discard()
                raise ConflictError("a quote request is already pending for tenant") from exc
            session.refresh(quote)

        logger.info("quote requested for tenant %s plan %s", tenant_id, plan.tier)
        outbox.drain()
        return quote

    def approve_quote(self, tenant_id: str, plan_id: str, actor_id: str) -> TenantPlanState:
        outbox = PostCommitOutbox()
        now = now_utc()
        with self._session() as session:
            get_tenant(session, tenant_id)
            catalog = self._catalog_factory(session)
            plan = catalog.get(plan_id)
            state = get_plan_state(session, tenant_id, for_update=True)
            if state is None or state.status == PlanStatus.ACTIVE:
                raise ConflictError("no quote is pending for tenant")
            if state.status == PlanStatus.OVERRIDDEN:
                raise ConflictError("an override is active for tenant; deactivate it first")
            if plan.kind != TierKind.QUOTE_GATED:
                raise ConflictError("plan does not require a quote; use the payment flow instead")

            quote = get_open_quote(session, tenant_id)
            if quote is not None:
                resolve_quote(
                    session,
                    quote,
                    QuoteRequestStatus.APPROVED,
                    actor_id=actor_id,
                    note=f"approved into {plan.tier}",
                    now=now,
                )
            transition_plan(
                session,
                state,
                plan_id=plan.id,
                status=PlanStatus.ACTIVE,
                reason=f"quote approved by {actor_id}",
                actor_id=actor_id,
                now=now,
            )
            state.quote_approved_at = now
            state.quote_approved_by = actor_id
            superseded_subscription_id = state.external_subscription_id
            if superseded_subscription_id is not None:
                # The quoted contract replaces the self-serve subscription, which stops renewing.
                state.external_subscription_id = None
                state.billing_cycle = None
                state.current_period_start = None
                state.current_period_end = None
                state.cancel_at_period_end = False
            session.add(state)
            outbox.enqueue(
                "notify.quote_approved",
                lambda: self._notifier.quote_approved(tenant_id, plan_id=plan.id, actor_id=actor_id),
            )
            if superseded_subscription_id is not None:
                outbox.enqueue(
                    f"gateway.cancel_superseded.{superseded_subscription_id}",
                    lambda: self._payment_gateway().cancel_at_period_end(superseded_subscription_id),
                )
            session.commit()
            session.refresh(state)

        logger.info("quote approved for tenant %s into %s by %s", tenant_id, plan.tier, actor_id)
        outbox.drain()
        return state

    def reject_quote(self, tenant_id: str, actor_id: str, note: str | None) -> QuoteRequest:
        outbox = PostCommitOutbox()
        now = now_utc()
        with self._session() as session:
            get_tenant(session, tenant_id)
            state = get_plan_state(session, tenant_id, for_update=True)
            if state is None or state.status != PlanStatus.QUOTE_PENDING:
                raise ConflictError("no quote is pending for tenant")
            quote = get_open_quote(session, tenant_id)
            if quote is None:
                raise ConflictError("no quote is pending for tenant")

            resolve_quote(
                session,
                quote,
                QuoteRequestStatus.REJECTED,
                actor_id=actor_id,
                note=note,
                now=now,
            )
            transition_plan(
                session,
                state,
                plan_id=state.plan_id,
                status=PlanStatus.ACTIVE,
                reason="quote rejected",
                actor_id=actor_id,
                now=now,
            )
            outbox.enqueue(
                "notify.quote_rejected",
                lambda: self._notifier.quote_rejected(
                    tenant_id,
                    quote_request_id=quote.id,
                    note=note,
                    actor_id=actor_id,
                ),
            )
            session.commit()
            session.refresh(quote)

        logger.info("quote rejected for tenant %s by %s", tenant_id, actor_id)
        outbox.drain()
        return quote

    def list_quote_requests(
        self,
        *,
        status: QuoteRequestStatus | None = None,
        tenant_id: str | None = None,
    ) -> list[QuoteRequest]:
        with self._session() as session:
            statement = select(QuoteRequest)
            if status is not None:
                statement = statement.where(QuoteRequest.status == status)
            if tenant_id is not None:
                statement = statement.where(QuoteRequest.tenant_id == tenant_id)
            return list(session.exec(statement.order_by(col(QuoteRequest.created_at).desc())).all())
