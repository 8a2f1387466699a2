from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from app.adapters.base import PaymentGateway, WebhookSignatureError
from app.api.deps import get_payment_gateway
from app.domain.models import WebhookAckRead
from app.services.errors import ValidationFailedError
from app.services.payment_webhook_service import PaymentWebhookService, normalize_event

logger = logging.getLogger(__name__)

router = APIRouter()


def get_payment_webhook_service(
    gateway: Annotated[PaymentGateway, Depends(get_payment_gateway)],
) -> PaymentWebhookService:
    return PaymentWebhookService(gateway=gateway)


Gateway = Annotated[PaymentGateway, Depends(get_payment_gateway)]
Service = Annotated[PaymentWebhookService, Depends(get_payment_webhook_service)]


@router.post("/stripe", response_model=WebhookAckRead)
async def receive_stripe_webhook(
    request: Request,
    gateway: Gateway,
    service: Service,
    stripe_signature: Annotated[str | None, Header(alias="Stripe-Signature")] = None,
) -> WebhookAckRead:
    raw_body = await request.body()
    try:
        raw_event = gateway.construct_event(raw_body, stripe_signature)
        event = normalize_event(raw_event)
    except (WebhookSignatureError, ValidationFailedError) as exc:
        logger.warning("rejected payment webhook: %s", exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    outcome = service.process(event)
    return WebhookAckRead(status=outcome)
