from __future__ import annotations

import hashlib
import hmac
import json
import time
from datetime import UTC, datetime

import pytest

from app.adapters.base import CheckoutRequest, PaymentGatewayError, WebhookSignatureError
from app.adapters.factory import build_payment_gateway
from app.adapters.fake_adapter import FakePaymentGateway
from app.adapters.invoice_renderer import LocatorInvoiceRenderer
from app.adapters.stripe_adapter import StripeGateway
from app.domain.models import BillingCycle, BillingTransaction

WEBHOOK_SECRET = "whsec_test_secret"


def _checkout_request(tenant_id: str = "tenant-a") -> CheckoutRequest:
    return CheckoutRequest(
        tenant_id=tenant_id,
        tenant_email="owner@example.com",
        plan_id="plan-essentiel",
        plan_name="Essentiel",
        unit_amount_cents=4900,
        currency="EUR",
        billing_cycle=BillingCycle.MONTHLY,
        actor_id="user-1",
    )


def _stripe_signature(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    ts = timestamp if timestamp is not None else int(time.time())
    signed = f"{ts}.{payload.decode('utf-8')}".encode()
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


def test_fake_gateway_checkout_and_subscription_lifecycle() -> None:
    gateway = FakePaymentGateway()
    first = gateway.create_checkout_session(_checkout_request())
    second = gateway.create_checkout_session(_checkout_request())
    assert first.session_id.startswith("cs_fake_")
    assert first.session_id != second.session_id
    assert first.url == f"https://checkout.fake.local/pay/{first.session_id}"
    assert len(gateway.checkout_requests) == 2

    start = datetime(2026, 10, 1, tzinfo=UTC)
    gateway.add_subscription("sub_fake", start=start, days=31)
    period = gateway.retrieve_subscription_period("sub_fake")
    assert period is not None
    assert period.end == datetime(2026, 11, 1, tzinfo=UTC)
    assert gateway.retrieve_subscription_period("sub_unknown") is None

    assert gateway.cancel_at_period_end("sub_fake") == period.end
    assert gateway.subscriptions["sub_fake"].cancel_at_period_end is True


def test_fake_gateway_failures() -> None:
    with pytest.raises(PaymentGatewayError):
        FakePaymentGateway(fail_checkout=True).create_checkout_session(_checkout_request())

    signed = FakePaymentGateway(webhook_signature="sig-ok")
    assert signed.construct_event(b'{"id": "evt_1"}', "sig-ok") == {"id": "evt_1"}
    with pytest.raises(WebhookSignatureError):
        signed.construct_event(b'{"id": "evt_1"}', "sig-bad")
    with pytest.raises(WebhookSignatureError):
        FakePaymentGateway().construct_event(b"[1, 2]", None)


def test_stripe_gateway_verifies_webhook_signature() -> None:
    gateway = StripeGateway(secret_key="sk_test_unused", webhook_secret=WEBHOOK_SECRET)
    payload = json.dumps({"id": "evt_signed", "type": "checkout.session.completed"}).encode()

    event = gateway.construct_event(payload, _stripe_signature(payload))
    assert event["id"] == "evt_signed"

    with pytest.raises(WebhookSignatureError):
        gateway.construct_event(payload, _stripe_signature(payload, secret="whsec_other"))
    with pytest.raises(WebhookSignatureError):
        gateway.construct_event(payload, None)
    with pytest.raises(WebhookSignatureError):
        gateway.construct_event(payload, _stripe_signature(payload, timestamp=int(time.time()) - 3600))


def test_stripe_gateway_without_webhook_secret_accepts_unverified_payload() -> None:
    gateway = StripeGateway(secret_key="", webhook_secret="")
    assert gateway.construct_event(b'{"id": "evt_plain"}', None) == {"id": "evt_plain"}
    with pytest.raises(WebhookSignatureError):
        gateway.construct_event(b"not json", None)


def test_stripe_gateway_requires_secret_key_for_api_calls() -> None:
    gateway = StripeGateway(secret_key="", webhook_secret="")
    with pytest.raises(PaymentGatewayError):
        gateway.create_checkout_session(_checkout_request())
    with pytest.raises(PaymentGatewayError):
        gateway.retrieve_subscription_period("sub_1")
    with pytest.raises(PaymentGatewayError):
        gateway.cancel_at_period_end("sub_1")


def test_gateway_factory_selects_implementation(monkeypatch: pytest.MonkeyPatch) -> None:
    assert isinstance(build_payment_gateway("fake"), FakePaymentGateway)
    assert isinstance(build_payment_gateway(" Stripe "), StripeGateway)
    monkeypatch.setenv("PAYMENT_GATEWAY", "fake")
    assert isinstance(build_payment_gateway(), FakePaymentGateway)
    with pytest.raises(ValueError):
        build_payment_gateway("paypal")


def test_locator_renderer_builds_document_path() -> None:
    transaction = BillingTransaction(tenant_id="tenant-a", plan_id="plan-essentiel", amount_cents=4900)
    renderer = LocatorInvoiceRenderer(base_path="/docs/invoices/")
    assert renderer.render("INV-20261016-00001", transaction) == "/docs/invoices/INV-20261016-00001"
