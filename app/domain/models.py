from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import JSON, Column, Index, UniqueConstraint, text
from sqlmodel import Field, SQLModel

from app.domain.state_machine import PlanStatus, QuoteRequestStatus


def now_utc() -> datetime:
    return datetime.now(UTC)


class EventRecord(SQLModel, table=True):
    __tablename__ = "events"

    event_id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    event_type: str = Field(index=True)
    tenant_id: str = Field(index=True)
    ts: datetime = Field(default_factory=now_utc, index=True)
    actor_id: str | None = Field(default=None, index=True)
    correlation_id: str | None = Field(default=None, index=True)
    payload: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )


class Tenant(SQLModel, table=True):
    __tablename__ = "tenants"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    name: str = Field(index=True, unique=True)
    billing_email: str
    created_at: datetime = Field(default_factory=now_utc, index=True)


class PlanTier(StrEnum):
    DECOUVERTE = "DECOUVERTE"
    ESSENTIEL = "ESSENTIEL"
    PRO = "PRO"
    PREMIUM = "PREMIUM"


class TierKind(StrEnum):
    FREE = "FREE"
    SELF_SERVE = "SELF_SERVE"
    QUOTE_GATED = "QUOTE_GATED"


class BillingCycle(StrEnum):
    MONTHLY = "MONTHLY"
    ANNUAL = "ANNUAL"


class TransactionStatus(StrEnum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class WebhookEventKind(StrEnum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"


class Plan(SQLModel, table=True):
    __tablename__ = "plans"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tier: PlanTier = Field(index=True, unique=True)
    name: str
    description: str | None = None
    monthly_price_cents: int = Field(default=0, ge=0)
    annual_price_cents: int = Field(default=0, ge=0)
    currency: str = Field(default="EUR", max_length=3)
    limits: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    requires_quote: bool = Field(default=False)
    is_active: bool = Field(default=True, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)

    @property
    def kind(self) -> TierKind:
        if self.requires_quote:
            return TierKind.QUOTE_GATED
        if self.monthly_price_cents == 0 and self.annual_price_cents == 0:
            return TierKind.FREE
        return TierKind.SELF_SERVE

    def price_for(self, cycle: BillingCycle) -> int:
        if cycle == BillingCycle.ANNUAL:
            return self.annual_price_cents
        return self.monthly_price_cents


class TenantPlanState(SQLModel, table=True):
    __tablename__ = "tenant_plan_states"
    __table_args__ = (Index("ix_tenant_plan_states_tenant_status", "tenant_id", "status"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True, unique=True)
    plan_id: str = Field(foreign_key="plans.id", index=True)
    status: PlanStatus = Field(default=PlanStatus.ACTIVE, index=True)
    billing_cycle: BillingCycle | None = None
    external_customer_id: str | None = Field(default=None, index=True)
    external_subscription_id: str | None = Field(default=None, index=True)
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = Field(default=False)
    quote_approved_at: datetime | None = None
    quote_approved_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    updated_at: datetime = Field(default_factory=now_utc, index=True)

    @property
    def quote_pending(self) -> bool:
        return self.status == PlanStatus.QUOTE_PENDING


class PlanHistoryEntry(SQLModel, table=True):
    __tablename__ = "plan_history"
    __table_args__ = (Index("ix_plan_history_tenant_created", "tenant_id", "created_at"),)

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    old_plan_id: str | None = Field(default=None, foreign_key="plans.id")
    new_plan_id: str = Field(foreign_key="plans.id")
    reason: str
    actor_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=now_utc, index=True)


class QuoteRequest(SQLModel, table=True):
    __tablename__ = "quote_requests"
    __table_args__ = (
        Index(
            "uq_quote_requests_tenant_open",
            "tenant_id",
            unique=True,
            sqlite_where=text("status = 'OPEN'"),
            postgresql_where=text("status = 'OPEN'"),
        ),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    requested_plan_id: str = Field(foreign_key="plans.id")
    status: QuoteRequestStatus = Field(default=QuoteRequestStatus.OPEN, index=True)
    requested_by: str | None = None
    resolved_by: str | None = None
    resolution_note: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)
    resolved_at: datetime | None = None


class PlanOverride(SQLModel, table=True):
    __tablename__ = "plan_overrides"
    __table_args__ = (
        Index(
            "uq_plan_overrides_tenant_active",
            "tenant_id",
            unique=True,
            sqlite_where=text("is_active"),
            postgresql_where=text("is_active"),
        ),
        Index("ix_plan_overrides_active_end", "is_active", "end_at"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    original_plan_id: str = Field(foreign_key="plans.id")
    original_status: PlanStatus = Field(default=PlanStatus.ACTIVE)
    override_plan_id: str = Field(foreign_key="plans.id")
    start_at: datetime = Field(default_factory=now_utc)
    end_at: datetime
    reason: str
    created_by: str | None = None
    is_active: bool = Field(default=True)
    ended_at: datetime | None = None
    ended_by: str | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class ProcessedWebhookEvent(SQLModel, table=True):
    __tablename__ = "processed_webhook_events"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    external_event_id: str = Field(index=True, unique=True)
    event_type: str = Field(index=True)
    detail: dict[str, Any] = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
    )
    processed_at: datetime = Field(default_factory=now_utc, index=True)


class BillingTransaction(SQLModel, table=True):
    __tablename__ = "billing_transactions"
    __table_args__ = (
        UniqueConstraint("external_session_id", name="uq_billing_transactions_session"),
        UniqueConstraint("external_invoice_id", name="uq_billing_transactions_invoice"),
    )

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    plan_id: str = Field(foreign_key="plans.id")
    amount_cents: int
    currency: str = Field(default="EUR", max_length=3)
    status: TransactionStatus = Field(default=TransactionStatus.PENDING, index=True)
    external_session_id: str | None = None
    external_subscription_id: str | None = Field(default=None, index=True)
    external_invoice_id: str | None = None
    payment_method: str | None = None
    billing_cycle: BillingCycle | None = None
    paid_at: datetime | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class BillingInvoice(SQLModel, table=True):
    __tablename__ = "billing_invoices"

    id: str = Field(default_factory=lambda: str(uuid4()), primary_key=True)
    tenant_id: str = Field(foreign_key="tenants.id", index=True)
    transaction_id: str = Field(foreign_key="billing_transactions.id", unique=True)
    invoice_number: str = Field(unique=True)
    document_locator: str | None = None
    sent_at: datetime | None = None
    created_at: datetime = Field(default_factory=now_utc, index=True)


class EventEnvelope(BaseModel):
    event_id: str = PydanticField(default_factory=lambda: str(uuid4()))
    event_type: str
    tenant_id: str
    ts: datetime = PydanticField(default_factory=now_utc)
    actor_id: str | None = None
    correlation_id: str | None = None
    payload: dict[str, Any]


class PaymentWebhookEvent(BaseModel):
    event_id: str
    event_type: str
    metadata: dict[str, str] = PydanticField(default_factory=dict)
    customer_id: str | None = None
    subscription_id: str | None = None
    session_id: str | None = None
    invoice_id: str | None = None
    amount_paid_cents: int | None = None
    currency: str | None = None
    billing_reason: str | None = None
    period_start: datetime | None = None
    period_end: datetime | None = None
    attempt_count: int | None = None
    failure_message: str | None = None

    @property
    def kind(self) -> WebhookEventKind | None:
        try:
            return WebhookEventKind(self.event_type)
        except ValueError:
            return None


class ORMReadModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class PlanRead(ORMReadModel):
    id: str
    tier: PlanTier
    kind: TierKind
    name: str
    description: str | None
    monthly_price_cents: int
    annual_price_cents: int
    currency: str
    limits: dict[str, Any]
    requires_quote: bool
    is_active: bool


class PlanStateRead(BaseModel):
    tenant_id: str
    plan: PlanRead
    status: str
    quote_pending: bool
    billing_cycle: BillingCycle | None
    external_customer_id: str | None
    external_subscription_id: str | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    quote_approved_at: datetime | None
    quote_approved_by: str | None
    updated_at: datetime


class PlanHistoryRead(ORMReadModel):
    id: str
    tenant_id: str
    old_plan_id: str | None
    new_plan_id: str
    reason: str
    actor_id: str | None
    created_at: datetime


class QuoteRequestRead(ORMReadModel):
    id: str
    tenant_id: str
    requested_plan_id: str
    status: QuoteRequestStatus
    requested_by: str | None
    resolved_by: str | None
    resolution_note: str | None
    created_at: datetime
    resolved_at: datetime | None


class PlanOverrideRead(ORMReadModel):
    id: str
    tenant_id: str
    original_plan_id: str
    original_status: PlanStatus
    override_plan_id: str
    start_at: datetime
    end_at: datetime
    reason: str
    created_by: str | None
    is_active: bool
    ended_at: datetime | None
    ended_by: str | None


class TransactionRead(ORMReadModel):
    id: str
    tenant_id: str
    plan_id: str
    amount_cents: int
    currency: str
    status: TransactionStatus
    external_session_id: str | None
    external_subscription_id: str | None
    external_invoice_id: str | None
    payment_method: str | None
    billing_cycle: BillingCycle | None
    paid_at: datetime | None
    created_at: datetime


class InvoiceRead(ORMReadModel):
    id: str
    tenant_id: str
    transaction_id: str
    invoice_number: str
    document_locator: str | None
    sent_at: datetime | None
    created_at: datetime


class ActivateFreeRequest(BaseModel):
    plan_id: str | None = None


class UpgradeRequest(BaseModel):
    plan_id: str
    billing_cycle: BillingCycle = BillingCycle.MONTHLY


class UpgradeOutcome(StrEnum):
    ACTIVATED = "activated"
    UNCHANGED = "unchanged"
    QUOTE_REQUESTED = "quote_requested"
    CHECKOUT_REQUIRED = "checkout_required"


class UpgradeResult(BaseModel):
    outcome: UpgradeOutcome
    plan_id: str
    checkout_session_id: str | None = None
    checkout_url: str | None = None
    quote_request_id: str | None = None


class QuoteApproveRequest(BaseModel):
    plan_id: str


class QuoteRejectRequest(BaseModel):
    note: str | None = None


class PlanChangeRequest(BaseModel):
    plan_id: str
    notes: str | None = None


class OverrideCreateRequest(BaseModel):
    plan_id: str
    duration_days: int
    reason: str


class OverrideSweepRequest(BaseModel):
    now: datetime | None = None


class OverrideSweepRead(BaseModel):
    swept_at: datetime
    restored_override_ids: list[str]


class WebhookOutcome(StrEnum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    SKIPPED = "skipped"


class WebhookAckRead(BaseModel):
    received: bool = True
    status: WebhookOutcome


class SubscriptionCancelRead(BaseModel):
    tenant_id: str
    external_subscription_id: str
    cancel_at_period_end: bool
    cancel_at: datetime | None


class TierCountRead(BaseModel):
    tier: PlanTier
    tenant_count: int


class BillingStatsRead(BaseModel):
    tenants_by_tier: list[TierCountRead]
    pending_quotes: int
    active_overrides: int
    monthly_recurring_revenue_cents: int
    currency: str
