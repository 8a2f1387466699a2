from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, assert_never

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.adapters.base import PaymentGateway, PaymentGatewayError
from app.adapters.factory import build_payment_gateway
from app.domain.models import (
    BillingCycle,
    BillingTransaction,
    PaymentWebhookEvent,
    ProcessedWebhookEvent,
    Tenant,
    TenantPlanState,
    WebhookEventKind,
    WebhookOutcome,
    now_utc,
)
from app.domain.state_machine import PlanStatus
from app.infra.db import get_engine
from app.infra.outbox import PostCommitOutbox
from app.services.errors import NotFoundError, ValidationFailedError
from app.services.notification_service import BillingNotifier
from app.services.plan_catalog import CatalogFactory, sql_catalog_factory
from app.services.plan_ledger import (
    REASON_PAYMENT_COMPLETED,
    REASON_SUBSCRIPTION_CANCELLED,
    get_active_override,
    get_plan_state,
    open_plan_state,
    transition_plan,
)
from app.services.quote_service import cancel_open_quote
from app.services.transaction_service import TransactionService, add_completed_transaction

logger = logging.getLogger(__name__)

INITIAL_INVOICE_REASON = "subscription_create"


def _epoch(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def _text(value: Any) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, dict):
        nested = value.get("id")
        return str(nested) if nested else None
    return str(value)


def _invoice_subscription(invoice: dict[str, Any]) -> str | None:
    direct = _text(invoice.get("subscription"))
    if direct is not None:
        return direct
    details = ((invoice.get("parent") or {}).get("subscription_details")) or {}
    return _text(details.get("subscription"))


def _invoice_period(invoice: dict[str, Any]) -> tuple[datetime | None, datetime | None]:
    lines = (invoice.get("lines") or {}).get("data") or []
    if lines:
        period = lines[0].get("period") or {}
        if period.get("start") is not None and period.get("end") is not None:
            return _epoch(period.get("start")), _epoch(period.get("end"))
    return _epoch(invoice.get("period_start")), _epoch(invoice.get("period_end"))


def normalize_event(raw: dict[str, Any]) -> PaymentWebhookEvent:
    event_id = _text(raw.get("id"))
    event_type = _text(raw.get("type"))
    if event_id is None or event_type is None:
        raise ValidationFailedError("webhook event id or type is missing")

    obj: dict[str, Any] = (raw.get("data") or {}).get("object") or {}
    metadata = {str(key): str(value) for key, value in (obj.get("metadata") or {}).items() if value is not None}
    currency = _text(obj.get("currency"))
    event = PaymentWebhookEvent(
        event_id=event_id,
        event_type=event_type,
        metadata=metadata,
        customer_id=_text(obj.get("customer")),
        currency=currency.upper() if currency else None,
    )

    if event.event_type == WebhookEventKind.CHECKOUT_COMPLETED:
        event.session_id = _text(obj.get("id"))
        event.subscription_id = _text(obj.get("subscription"))
        event.amount_paid_cents = obj.get("amount_total")
    elif event.event_type in (
        WebhookEventKind.INVOICE_PAYMENT_SUCCEEDED,
        WebhookEventKind.INVOICE_PAYMENT_FAILED,
    ):
        event.invoice_id = _text(obj.get("id"))
        event.subscription_id = _invoice_subscription(obj)
        event.billing_reason = _text(obj.get("billing_reason"))
        event.period_start, event.period_end = _invoice_period(obj)
        event.attempt_count = obj.get("attempt_count")
        if event.event_type == WebhookEventKind.INVOICE_PAYMENT_SUCCEEDED:
            event.amount_paid_cents = obj.get("amount_paid")
        else:
            event.amount_paid_cents = obj.get("amount_due")
            error = obj.get("last_finalization_error") or {}
            event.failure_message = _text(error.get("message")) if isinstance(error, dict) else None
    elif event.event_type == WebhookEventKind.SUBSCRIPTION_DELETED:
        event.subscription_id = _text(obj.get("id"))
        event.period_start = _epoch(obj.get("current_period_start"))
        event.period_end = _epoch(obj.get("current_period_end"))
    return event


class PaymentWebhookService:
    def __init__(
        self,
        *,
        gateway: PaymentGateway | None = None,
        catalog_factory: CatalogFactory | None = None,
        transactions: TransactionService | None = None,
        notifier: BillingNotifier | None = None,
    ) -> None:
        self._gateway = gateway
        self._catalog_factory = catalog_factory or sql_catalog_factory
        self._notifier = notifier or BillingNotifier()
        self._transactions = transactions or TransactionService(notifier=self._notifier)

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _payment_gateway(self) -> PaymentGateway:
        if self._gateway is None:
            self._gateway = build_payment_gateway()
        return self._gateway

    @staticmethod
    def _is_processed(session: Session, event_id: str) -> bool:
        row = session.exec(
            select(ProcessedWebhookEvent.id).where(ProcessedWebhookEvent.external_event_id == event_id)
        ).first()
        return row is not None

    @staticmethod
    def _resolve_tenant(session: Session, event: PaymentWebhookEvent) -> str | None:
        if event.subscription_id is not None:
            state = session.exec(
                select(TenantPlanState).where(
                    TenantPlanState.external_subscription_id == event.subscription_id
                )
            ).first()
            if state is not None:
                return state.tenant_id
            transaction = session.exec(
                select(BillingTransaction)
                .where(BillingTransaction.external_subscription_id == event.subscription_id)
                .order_by(col(BillingTransaction.created_at).desc())
            ).first()
            if transaction is not None:
                return transaction.tenant_id
        tenant_id = event.metadata.get("tenant_id")
        if tenant_id and session.get(Tenant, tenant_id) is not None:
            return tenant_id
        return None

    @staticmethod
    def _subscription_plan_id(session: Session, subscription_id: str) -> str | None:
        return session.exec(
            select(BillingTransaction.plan_id)
            .where(BillingTransaction.external_subscription_id == subscription_id)
            .order_by(col(BillingTransaction.created_at).desc())
        ).first()

    def _commit_once(self, session: Session, event: PaymentWebhookEvent) -> bool:
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            if self._is_processed(session, event.event_id):
                logger.info("webhook %s applied concurrently, treating as duplicate", event.event_id)
                return False
            conditions = []
            if event.session_id is not None:
                conditions.append(col(BillingTransaction.external_session_id) == event.session_id)
            if event.invoice_id is not None:
                conditions.append(col(BillingTransaction.external_invoice_id) == event.invoice_id)
            recorded = (
                session.exec(select(BillingTransaction.id).where(or_(*conditions))).first()
                if conditions
                else None
            )
            if recorded is not None:
                logger.warning(
                    "webhook %s carries a payment already recorded as transaction %s",
                    event.event_id,
                    recorded,
                )
                return False
            raise
        return True

    @staticmethod
    def _mark_processed(
        session: Session,
        event: PaymentWebhookEvent,
        **detail: Any,
    ) -> None:
        session.add(
            ProcessedWebhookEvent(
                external_event_id=event.event_id,
                event_type=event.event_type,
                detail={key: value for key, value in detail.items() if value is not None},
            )
        )

    def process(self, event: PaymentWebhookEvent) -> WebhookOutcome:
        kind = event.kind
        if kind is None:
            logger.debug("ignoring webhook %s of type %s", event.event_id, event.event_type)
            return WebhookOutcome.IGNORED

        match kind:
            case WebhookEventKind.CHECKOUT_COMPLETED:
                return self._checkout_completed(event)
            case WebhookEventKind.INVOICE_PAYMENT_SUCCEEDED:
                return self._invoice_payment_succeeded(event)
            case WebhookEventKind.INVOICE_PAYMENT_FAILED:
                return self._invoice_payment_failed(event)
            case WebhookEventKind.SUBSCRIPTION_DELETED:
                return self._subscription_deleted(event)
            case _:
                assert_never(kind)

    def _checkout_completed(self, event: PaymentWebhookEvent) -> WebhookOutcome:
        tenant_id = event.metadata.get("tenant_id")
        plan_id = event.metadata.get("plan_id")
        if not tenant_id or not plan_id:
            logger.error(
                "checkout webhook %s has no tenant_id/plan_id metadata and cannot be applied",
                event.event_id,
            )
            return WebhookOutcome.SKIPPED
        try:
            billing_cycle = BillingCycle(event.metadata.get("billing_cycle", BillingCycle.MONTHLY).upper())
        except ValueError:
            logger.warning(
                "checkout webhook %s has unknown billing cycle %r, assuming monthly",
                event.event_id,
                event.metadata.get("billing_cycle"),
            )
            billing_cycle = BillingCycle.MONTHLY

        with self._session() as session:
            if self._is_processed(session, event.event_id):
                logger.info("duplicate webhook %s ignored", event.event_id)
                return WebhookOutcome.DUPLICATE

        period_start, period_end = event.period_start, event.period_end
        if (period_start is None or period_end is None) and event.subscription_id is not None:
            try:
                period = self._payment_gateway().retrieve_subscription_period(event.subscription_id)
            except PaymentGatewayError as exc:
                logger.warning("subscription period lookup failed for %s: %s", event.subscription_id, exc)
                period = None
            if period is not None:
                period_start, period_end = period.start, period.end

        outbox = PostCommitOutbox()
        now = now_utc()
        with self._session() as session:
            if self._is_processed(session, event.event_id):
                logger.info("duplicate webhook %s ignored", event.event_id)
                return WebhookOutcome.DUPLICATE
            if session.get(Tenant, tenant_id) is None:
                logger.error("checkout webhook %s references unknown tenant %s", event.event_id, tenant_id)
                return WebhookOutcome.SKIPPED
            try:
                plan = self._catalog_factory(session).get(plan_id)
            except NotFoundError:
                logger.error("checkout webhook %s references unknown plan %s", event.event_id, plan_id)
                return WebhookOutcome.SKIPPED

            state = get_plan_state(session, tenant_id, for_update=True)
            if state is None:
                state = open_plan_state(
                    session,
                    tenant_id,
                    plan_id=plan.id,
                    status=PlanStatus.ACTIVE,
                    reason=REASON_PAYMENT_COMPLETED,
                    actor_id=event.metadata.get("actor_id") or None,
                    now=now,
                )
            elif state.status == PlanStatus.OVERRIDDEN:
                override = get_active_override(session, tenant_id, for_update=True)
                if override is not None:
                    # The paid plan takes effect once the override ends.
                    override.original_plan_id = plan.id
                    override.original_status = PlanStatus.ACTIVE
                    session.add(override)
                cancel_open_quote(session, tenant_id, actor_id=None, note="paid checkout completed", now=now)
            else:
                cancel_open_quote(session, tenant_id, actor_id=None, note="paid checkout completed", now=now)
                transition_plan(
                    session,
                    state,
                    plan_id=plan.id,
                    status=PlanStatus.ACTIVE,
                    reason=REASON_PAYMENT_COMPLETED,
                    actor_id=event.metadata.get("actor_id") or None,
                    now=now,
                )
            state.external_customer_id = event.customer_id or state.external_customer_id
            state.external_subscription_id = event.subscription_id
            state.billing_cycle = billing_cycle
            state.current_period_start = period_start
            state.current_period_end = period_end
            state.cancel_at_period_end = False
            state.updated_at = now
            session.add(state)

            # Gate rows go in last so no read above autoflushes them before the commit.
            self._mark_processed(
                session,
                event,
                tenant_id=tenant_id,
                plan_id=plan.id,
                session_id=event.session_id,
                subscription_id=event.subscription_id,
            )
            transaction = add_completed_transaction(
                session,
                tenant_id=tenant_id,
                plan_id=plan.id,
                amount_cents=(
                    event.amount_paid_cents
                    if event.amount_paid_cents is not None
                    else plan.price_for(billing_cycle)
                ),
                currency=event.currency or plan.currency,
                billing_cycle=billing_cycle,
                external_session_id=event.session_id,
                external_subscription_id=event.subscription_id,
                paid_at=now,
            )

            transaction_id = transaction.id
            outbox.enqueue("invoice.issue", lambda: self._transactions.issue_invoice(transaction_id))
            if not self._commit_once(session, event):
                outbox.discard()
                return WebhookOutcome.DUPLICATE

        logger.info("checkout %s completed: tenant %s now on %s", event.session_id, tenant_id, plan.tier)
        outbox.drain()
        return WebhookOutcome.PROCESSED

    def _invoice_payment_succeeded(self, event: PaymentWebhookEvent) -> WebhookOutcome:
        if event.billing_reason == INITIAL_INVOICE_REASON:
            logger.debug("invoice webhook %s covers the initial payment, already recorded", event.event_id)
            return WebhookOutcome.SKIPPED
        if event.subscription_id is None:
            logger.warning("invoice webhook %s has no subscription id", event.event_id)
            return WebhookOutcome.SKIPPED

        outbox = PostCommitOutbox()
        now = now_utc()
        with self._session() as session:
            if self._is_processed(session, event.event_id):
                logger.info("duplicate webhook %s ignored", event.event_id)
                return WebhookOutcome.DUPLICATE
            tenant_id = self._resolve_tenant(session, event)
            if tenant_id is None:
                logger.warning(
                    "invoice webhook %s: no tenant for subscription %s",
                    event.event_id,
                    event.subscription_id,
                )
                return WebhookOutcome.SKIPPED
            state = get_plan_state(session, tenant_id, for_update=True)
            if state is None:
                logger.error("invoice webhook %s: tenant %s has no plan state", event.event_id, tenant_id)
                return WebhookOutcome.SKIPPED

            current_subscription = state.external_subscription_id == event.subscription_id
            if current_subscription:
                billed_plan_id = state.plan_id
                if state.status == PlanStatus.OVERRIDDEN:
                    override = get_active_override(session, tenant_id)
                    if override is not None:
                        billed_plan_id = override.original_plan_id
            else:
                # A superseded subscription still renews until the gateway ends it.
                billed_plan_id = self._subscription_plan_id(session, event.subscription_id) or state.plan_id
                logger.warning(
                    "renewal %s for subscription %s that no longer bills tenant %s",
                    event.invoice_id,
                    event.subscription_id,
                    tenant_id,
                )

            self._mark_processed(
                session,
                event,
                tenant_id=tenant_id,
                subscription_id=event.subscription_id,
                invoice_id=event.invoice_id,
            )
            transaction = add_completed_transaction(
                session,
                tenant_id=tenant_id,
                plan_id=billed_plan_id,
                amount_cents=event.amount_paid_cents or 0,
                currency=event.currency or self._transactions.currency,
                billing_cycle=state.billing_cycle,
                external_subscription_id=event.subscription_id,
                external_invoice_id=event.invoice_id,
                paid_at=now,
            )
            if current_subscription and event.period_start is not None and event.period_end is not None:
                state.current_period_start = event.period_start
                state.current_period_end = event.period_end
            state.updated_at = now
            session.add(state)

            transaction_id = transaction.id
            outbox.enqueue("invoice.issue", lambda: self._transactions.issue_invoice(transaction_id))
            if not self._commit_once(session, event):
                outbox.discard()
                return WebhookOutcome.DUPLICATE

        logger.info("renewal recorded for tenant %s (subscription %s)", tenant_id, event.subscription_id)
        outbox.drain()
        return WebhookOutcome.PROCESSED

    def _invoice_payment_failed(self, event: PaymentWebhookEvent) -> WebhookOutcome:
        if event.subscription_id is None:
            logger.warning("payment failure webhook %s has no subscription id", event.event_id)
            return WebhookOutcome.SKIPPED

        outbox = PostCommitOutbox()
        with self._session() as session:
            if self._is_processed(session, event.event_id):
                logger.info("duplicate webhook %s ignored", event.event_id)
                return WebhookOutcome.DUPLICATE
            tenant_id = self._resolve_tenant(session, event)
            if tenant_id is None:
                logger.warning(
                    "payment failure webhook %s: no tenant for subscription %s",
                    event.event_id,
                    event.subscription_id,
                )
                return WebhookOutcome.SKIPPED

            self._mark_processed(
                session,
                event,
                tenant_id=tenant_id,
                subscription_id=event.subscription_id,
                invoice_id=event.invoice_id,
                amount_due_cents=event.amount_paid_cents,
                attempt_count=event.attempt_count,
                failure_message=event.failure_message,
            )
            outbox.enqueue(
                "notify.payment_failed",
                lambda: self._notifier.payment_failed(
                    tenant_id,
                    subscription_id=event.subscription_id,
                    invoice_id=event.invoice_id,
                    reason=event.failure_message,
                ),
            )
            if not self._commit_once(session, event):
                outbox.discard()
                return WebhookOutcome.DUPLICATE

        logger.warning(
            "payment failed for tenant %s (subscription %s, attempt %s)",
            tenant_id,
            event.subscription_id,
            event.attempt_count,
        )
        outbox.drain()
        return WebhookOutcome.PROCESSED

    def _subscription_deleted(self, event: PaymentWebhookEvent) -> WebhookOutcome:
        if event.subscription_id is None:
            logger.warning("subscription webhook %s has no subscription id", event.event_id)
            return WebhookOutcome.SKIPPED

        outbox = PostCommitOutbox()
        now = now_utc()
        with self._session() as session:
            if self._is_processed(session, event.event_id):
                logger.info("duplicate webhook %s ignored", event.event_id)
                return WebhookOutcome.DUPLICATE
            tenant_id = self._resolve_tenant(session, event)
            if tenant_id is None:
                logger.warning(
                    "subscription webhook %s: no tenant for subscription %s",
                    event.event_id,
                    event.subscription_id,
                )
                return WebhookOutcome.SKIPPED
            state = get_plan_state(session, tenant_id, for_update=True)
            if state is None:
                logger.error("subscription webhook %s: tenant %s has no plan state", event.event_id, tenant_id)
                return WebhookOutcome.SKIPPED

            if state.external_subscription_id != event.subscription_id:
                logger.info(
                    "subscription %s deleted but tenant %s is billed through %s",
                    event.subscription_id,
                    tenant_id,
                    state.external_subscription_id,
                )
                self._mark_processed(
                    session,
                    event,
                    tenant_id=tenant_id,
                    subscription_id=event.subscription_id,
                    stale=True,
                )
                if not self._commit_once(session, event):
                    return WebhookOutcome.DUPLICATE
                return WebhookOutcome.PROCESSED

            free_plan = self._catalog_factory(session).get_free_plan()
            if state.status == PlanStatus.OVERRIDDEN:
                override = get_active_override(session, tenant_id, for_update=True)
                if override is not None:
                    override.original_plan_id = free_plan.id
                    override.original_status = PlanStatus.ACTIVE
                    session.add(override)
                cancel_open_quote(session, tenant_id, actor_id=None, note="subscription cancelled", now=now)
            else:
                cancel_open_quote(session, tenant_id, actor_id=None, note="subscription cancelled", now=now)
                transition_plan(
                    session,
                    state,
                    plan_id=free_plan.id,
                    status=PlanStatus.ACTIVE,
                    reason=REASON_SUBSCRIPTION_CANCELLED,
                    actor_id=None,
                    now=now,
                )
            state.external_subscription_id = None
            state.billing_cycle = None
            state.current_period_start = None
            state.current_period_end = None
            state.cancel_at_period_end = False
            state.updated_at = now
            session.add(state)
            self._mark_processed(
                session,
                event,
                tenant_id=tenant_id,
                subscription_id=event.subscription_id,
            )

            subscription_id = event.subscription_id
            outbox.enqueue(
                "notify.subscription_cancelled",
                lambda: self._notifier.subscription_cancelled(tenant_id, subscription_id=subscription_id),
            )
            if not self._commit_once(session, event):
                outbox.discard()
                return WebhookOutcome.DUPLICATE

        logger.info("subscription %s cancelled: tenant %s back on free plan", event.subscription_id, tenant_id)
        outbox.drain()
        return WebhookOutcome.PROCESSED
