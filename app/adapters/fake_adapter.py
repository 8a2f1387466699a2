from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from hashlib import sha1
from typing import Any

from app.adapters.base import (
    CheckoutRequest,
    CheckoutSession,
    PaymentGatewayError,
    SubscriptionPeriod,
    WebhookSignatureError,
)


@dataclass
class FakeSubscription:
    subscription_id: str
    period: SubscriptionPeriod | None = None
    cancel_at_period_end: bool = False
    extra: dict[str, Any] = field(default_factory=dict)


class FakePaymentGateway:
    def __init__(
        self,
        *,
        webhook_signature: str | None = None,
        fail_checkout: bool = False,
        checkout_base_url: str = "https://checkout.fake.local/pay",
    ) -> None:
        self._webhook_signature = webhook_signature
        self._fail_checkout = fail_checkout
        self._checkout_base_url = checkout_base_url.rstrip("/")
        self.checkout_requests: list[CheckoutRequest] = []
        self.subscriptions: dict[str, FakeSubscription] = {}

    def _session_id_for(self, request: CheckoutRequest) -> str:
        seed = f"{request.tenant_id}:{request.plan_id}:{len(self.checkout_requests)}"
        digest = sha1(seed.encode(), usedforsecurity=False).hexdigest()
        return f"cs_fake_{digest[:16]}"

    def add_subscription(
        self,
        subscription_id: str,
        *,
        start: datetime | None = None,
        days: int = 30,
    ) -> FakeSubscription:
        period_start = start or datetime.now(UTC)
        created = FakeSubscription(
            subscription_id=subscription_id,
            period=SubscriptionPeriod(start=period_start, end=period_start + timedelta(days=days)),
        )
        self.subscriptions[subscription_id] = created
        return created

    def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSession:
        if self._fail_checkout:
            raise PaymentGatewayError("fake checkout unavailable")
        session_id = self._session_id_for(request)
        self.checkout_requests.append(request)
        return CheckoutSession(session_id=session_id, url=f"{self._checkout_base_url}/{session_id}")

    def retrieve_subscription_period(self, subscription_id: str) -> SubscriptionPeriod | None:
        existing = self.subscriptions.get(subscription_id)
        if existing is None:
            return None
        return existing.period

    def cancel_at_period_end(self, subscription_id: str) -> datetime | None:
        existing = self.subscriptions.get(subscription_id)
        if existing is None:
            existing = FakeSubscription(subscription_id=subscription_id)
            self.subscriptions[subscription_id] = existing
        existing.cancel_at_period_end = True
        return existing.period.end if existing.period is not None else None

    def construct_event(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        if self._webhook_signature is not None and signature != self._webhook_signature:
            raise WebhookSignatureError("webhook signature verification failed")
        try:
            decoded = json.loads(payload)
        except ValueError as exc:
            raise WebhookSignatureError("invalid webhook payload") from exc
        if not isinstance(decoded, dict):
            raise WebhookSignatureError("invalid webhook payload")
        return decoded
