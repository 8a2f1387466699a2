from __future__ import annotations

import os
from collections.abc import Callable

from app.adapters.base import PaymentGateway
from app.adapters.fake_adapter import FakePaymentGateway
from app.adapters.stripe_adapter import StripeGateway

GatewayFactory = Callable[[], PaymentGateway]

GATEWAY_FACTORIES: dict[str, GatewayFactory] = {
    "stripe": lambda: StripeGateway(),
    "fake": lambda: FakePaymentGateway(),
}


def build_payment_gateway(kind: str | None = None) -> PaymentGateway:
    name = (kind or os.getenv("PAYMENT_GATEWAY", "stripe")).strip().lower()
    factory = GATEWAY_FACTORIES.get(name)
    if factory is None:
        raise ValueError(f"unsupported payment gateway: {name}")
    return factory()
