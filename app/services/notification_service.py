from __future__ import annotations

from typing import Any

from app.domain.models import EventEnvelope
from app.infra.events import EventBus, event_bus

EVENT_QUOTE_REQUESTED = "billing.quote.requested"
EVENT_QUOTE_APPROVED = "billing.quote.approved"
EVENT_QUOTE_REJECTED = "billing.quote.rejected"
EVENT_PAYMENT_FAILED = "billing.payment.failed"
EVENT_SUBSCRIPTION_CANCELLED = "billing.subscription.cancelled"
EVENT_OVERRIDE_STARTED = "billing.override.started"
EVENT_OVERRIDE_ENDED = "billing.override.ended"
EVENT_INVOICE_ISSUED = "billing.invoice.issued"


class BillingNotifier:
    def __init__(self, bus: EventBus | None = None) -> None:
        self._bus = bus or event_bus

    def _publish(
        self,
        event_type: str,
        tenant_id: str,
        payload: dict[str, Any],
        actor_id: str | None = None,
    ) -> EventEnvelope:
        return self._bus.publish_dict(event_type, tenant_id, payload, actor_id=actor_id)

    def quote_requested(
        self,
        tenant_id: str,
        *,
        quote_request_id: str,
        plan_id: str,
        actor_id: str | None,
    ) -> EventEnvelope:
        return self._publish(
            EVENT_QUOTE_REQUESTED,
            tenant_id,
            {"quote_request_id": quote_request_id, "plan_id": plan_id},
            actor_id,
        )

    def quote_approved(self, tenant_id: str, *, plan_id: str, actor_id: str) -> EventEnvelope:
        return self._publish(EVENT_QUOTE_APPROVED, tenant_id, {"plan_id": plan_id}, actor_id)

    def quote_rejected(
        self,
        tenant_id: str,
        *,
        quote_request_id: str,
        note: str | None,
        actor_id: str,
    ) -> EventEnvelope:
        return self._publish(
            EVENT_QUOTE_REJECTED,
            tenant_id,
            {"quote_request_id": quote_request_id, "note": note},
            actor_id,
        )

    def payment_failed(
        self,
        tenant_id: str,
        *,
        subscription_id: str | None,
        invoice_id: str | None,
        reason: str | None,
    ) -> EventEnvelope:
        return self._publish(
            EVENT_PAYMENT_FAILED,
            tenant_id,
            {"subscription_id": subscription_id, "invoice_id": invoice_id, "reason": reason},
        )

    def subscription_cancelled(self, tenant_id: str, *, subscription_id: str) -> EventEnvelope:
        return self._publish(
            EVENT_SUBSCRIPTION_CANCELLED,
            tenant_id,
            {"subscription_id": subscription_id},
        )

    def override_started(
        self,
        tenant_id: str,
        *,
        override_id: str,
        plan_id: str,
        end_at: str,
        actor_id: str,
    ) -> EventEnvelope:
        return self._publish(
            EVENT_OVERRIDE_STARTED,
            tenant_id,
            {"override_id": override_id, "plan_id": plan_id, "end_at": end_at},
            actor_id,
        )

    def override_ended(
        self,
        tenant_id: str,
        *,
        override_id: str,
        restored_plan_id: str,
        automatic: bool,
        actor_id: str | None,
    ) -> EventEnvelope:
        return self._publish(
            EVENT_OVERRIDE_ENDED,
            tenant_id,
            {
                "override_id": override_id,
                "restored_plan_id": restored_plan_id,
                "automatic": automatic,
            },
            actor_id,
        )

    def invoice_issued(
        self,
        tenant_id: str,
        *,
        invoice_number: str,
        transaction_id: str,
        locator: str | None,
    ) -> EventEnvelope:
        return self._publish(
            EVENT_INVOICE_ISSUED,
            tenant_id,
            {"invoice_number": invoice_number, "transaction_id": transaction_id, "locator": locator},
        )
