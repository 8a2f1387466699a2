from __future__ import annotations

import json
import logging
import os
from datetime import UTC, datetime
from typing import Any

import stripe

from app.adapters.base import (
    CheckoutRequest,
    CheckoutSession,
    PaymentGatewayError,
    SubscriptionPeriod,
    WebhookSignatureError,
)
from app.domain.models import BillingCycle

logger = logging.getLogger(__name__)


def _from_epoch(value: Any) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


class StripeGateway:
    def __init__(
        self,
        *,
        secret_key: str | None = None,
        webhook_secret: str | None = None,
        app_url: str | None = None,
    ) -> None:
        self._secret_key = secret_key if secret_key is not None else os.getenv("STRIPE_SECRET_KEY", "")
        self._webhook_secret = (
            webhook_secret if webhook_secret is not None else os.getenv("STRIPE_WEBHOOK_SECRET", "")
        )
        self._app_url = (app_url or os.getenv("APP_URL", "http://localhost:8000")).rstrip("/")

    def _configure(self) -> None:
        if not self._secret_key:
            raise PaymentGatewayError("STRIPE_SECRET_KEY is not configured")
        stripe.api_key = self._secret_key

    def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSession:
        self._configure()
        interval = "year" if request.billing_cycle == BillingCycle.ANNUAL else "month"
        metadata = {
            "tenant_id": request.tenant_id,
            "plan_id": request.plan_id,
            "billing_cycle": request.billing_cycle.value,
            "actor_id": request.actor_id or "",
            "flow": request.flow,
        }
        try:
            session = stripe.checkout.Session.create(
                mode="subscription",
                customer_email=request.tenant_email,
                client_reference_id=request.tenant_id,
                line_items=[
                    {
                        "price_data": {
                            "currency": request.currency.lower(),
                            "unit_amount": request.unit_amount_cents,
                            "recurring": {"interval": interval},
                            "product_data": {"name": request.plan_name},
                        },
                        "quantity": 1,
                    }
                ],
                metadata=metadata,
                subscription_data={"metadata": metadata},
                success_url=f"{self._app_url}/billing/success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{self._app_url}/billing/cancel",
            )
        except stripe.StripeError as exc:
            raise PaymentGatewayError(f"checkout session creation failed: {exc}") from exc
        return CheckoutSession(session_id=session.id, url=session.url or "")

    def retrieve_subscription_period(self, subscription_id: str) -> SubscriptionPeriod | None:
        self._configure()
        try:
            subscription = stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as exc:
            raise PaymentGatewayError(f"subscription lookup failed: {exc}") from exc

        start = subscription.get("current_period_start")
        end = subscription.get("current_period_end")
        if start is None or end is None:
            # Newer API versions carry the period on the subscription items.
            items = (subscription.get("items") or {}).get("data") or []
            if items:
                start = items[0].get("current_period_start")
                end = items[0].get("current_period_end")
        period_start = _from_epoch(start)
        period_end = _from_epoch(end)
        if period_start is None or period_end is None:
            return None
        return SubscriptionPeriod(start=period_start, end=period_end)

    def cancel_at_period_end(self, subscription_id: str) -> datetime | None:
        self._configure()
        try:
            subscription = stripe.Subscription.modify(
                subscription_id,
                cancel_at_period_end=True,
            )
        except stripe.StripeError as exc:
            raise PaymentGatewayError(f"subscription cancellation failed: {exc}") from exc
        return _from_epoch(subscription.get("cancel_at") or subscription.get("current_period_end"))

    def construct_event(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        if not self._webhook_secret:
            logger.warning("STRIPE_WEBHOOK_SECRET is not configured, accepting unverified webhook payload")
        else:
            if not signature:
                raise WebhookSignatureError("missing webhook signature")
            try:
                stripe.WebhookSignature.verify_header(
                    payload.decode("utf-8"),
                    signature,
                    self._webhook_secret,
                    tolerance=stripe.Webhook.DEFAULT_TOLERANCE,
                )
            except (UnicodeDecodeError, stripe.SignatureVerificationError) as exc:
                raise WebhookSignatureError("webhook signature verification failed") from exc

        try:
            decoded = json.loads(payload)
        except ValueError as exc:
            raise WebhookSignatureError("invalid webhook payload") from exc
        if not isinstance(decoded, dict):
            raise WebhookSignatureError("invalid webhook payload")
        return decoded
