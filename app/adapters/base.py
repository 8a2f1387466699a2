from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from app.domain.models import BillingCycle, BillingTransaction


class PaymentGatewayError(Exception):
    pass


class WebhookSignatureError(PaymentGatewayError):
    pass


@dataclass(frozen=True)
class CheckoutRequest:
    tenant_id: str
    tenant_email: str
    plan_id: str
    plan_name: str
    unit_amount_cents: int
    currency: str
    billing_cycle: BillingCycle
    actor_id: str | None = None
    flow: str = "upgrade"


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: str


@dataclass(frozen=True)
class SubscriptionPeriod:
    start: datetime
    end: datetime


class PaymentGateway(Protocol):
    def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSession: ...

    def retrieve_subscription_period(self, subscription_id: str) -> SubscriptionPeriod | None: ...

    def cancel_at_period_end(self, subscription_id: str) -> datetime | None: ...

    def construct_event(self, payload: bytes, signature: str | None) -> dict[str, Any]: ...


class InvoiceRenderer(Protocol):
    def render(self, invoice_number: str, transaction: BillingTransaction) -> str: ...
