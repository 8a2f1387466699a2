from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.api.deps import get_current_claims, require_perm
from app.api.routers.billing import (
    Overrides,
    PlanService,
    Quotes,
    Transactions,
)
from app.domain.models import (
    BillingStatsRead,
    InvoiceRead,
    OverrideCreateRequest,
    OverrideSweepRead,
    OverrideSweepRequest,
    PlanChangeRequest,
    PlanOverrideRead,
    PlanStateRead,
    QuoteApproveRequest,
    QuoteRejectRequest,
    QuoteRequestRead,
)
from app.domain.permissions import PERM_BILLING_ADMIN
from app.domain.state_machine import QuoteRequestStatus
from app.services.errors import (
    BillingError,
    ConflictError,
    GatewayError,
    NotFoundError,
    ValidationFailedError,
)

router = APIRouter(dependencies=[Depends(require_perm(PERM_BILLING_ADMIN))])

Claims = Annotated[dict[str, Any], Depends(get_current_claims)]


def _handle_billing_error(exc: BillingError) -> None:
    if isinstance(exc, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, ConflictError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    if isinstance(exc, ValidationFailedError):
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    if isinstance(exc, GatewayError):
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc)) from exc
    raise exc


@router.post("/tenants/{tenant_id}/quote/approve", response_model=PlanStateRead)
def approve_quote(
    tenant_id: str,
    payload: QuoteApproveRequest,
    claims: Claims,
    quotes: Quotes,
    plans: PlanService,
) -> PlanStateRead:
    try:
        quotes.approve_quote(tenant_id, payload.plan_id, claims["sub"])
        return plans.get_current_plan(tenant_id)
    except BillingError as exc:
        _handle_billing_error(exc)
        raise


@router.post("/tenants/{tenant_id}/quote/reject", response_model=QuoteRequestRead)
def reject_quote(
    tenant_id: str,
    payload: QuoteRejectRequest,
    claims: Claims,
    quotes: Quotes,
) -> QuoteRequestRead:
    try:
        return QuoteRequestRead.model_validate(quotes.reject_quote(tenant_id, claims["sub"], payload.note))
    except BillingError as exc:
        _handle_billing_error(exc)
        raise


@router.post("/tenants/{tenant_id}/plan/change", response_model=PlanStateRead)
def change_plan(
    tenant_id: str,
    payload: PlanChangeRequest,
    claims: Claims,
    plans: PlanService,
) -> PlanStateRead:
    try:
        plans.change_plan(tenant_id, payload, claims["sub"])
        return plans.get_current_plan(tenant_id)
    except BillingError as exc:
        _handle_billing_error(exc)
        raise


@router.post(
    "/tenants/{tenant_id}/overrides",
    response_model=PlanOverrideRead,
    status_code=status.HTTP_201_CREATED,
)
def create_override(
    tenant_id: str,
    payload: OverrideCreateRequest,
    claims: Claims,
    overrides: Overrides,
) -> PlanOverrideRead:
    try:
        return PlanOverrideRead.model_validate(overrides.create_override(tenant_id, payload, claims["sub"]))
    except BillingError as exc:
        _handle_billing_error(exc)
        raise


@router.post("/overrides/sweep", response_model=OverrideSweepRead)
def sweep_overrides(
    overrides: Overrides,
    payload: OverrideSweepRequest | None = None,
) -> OverrideSweepRead:
    return overrides.sweep_expired_overrides(payload.now if payload else None)


@router.post("/overrides/{override_id}/deactivate", response_model=PlanOverrideRead)
def deactivate_override(override_id: str, claims: Claims, overrides: Overrides) -> PlanOverrideRead:
    try:
        return PlanOverrideRead.model_validate(overrides.deactivate_override(override_id, claims["sub"]))
    except BillingError as exc:
        _handle_billing_error(exc)
        raise


@router.get("/quotes", response_model=list[QuoteRequestRead])
def list_quotes(
    quotes: Quotes,
    status_filter: Annotated[QuoteRequestStatus | None, Query(alias="status")] = None,
) -> list[QuoteRequestRead]:
    rows = quotes.list_quote_requests(status=status_filter)
    return [QuoteRequestRead.model_validate(item) for item in rows]


@router.get("/stats", response_model=BillingStatsRead)
def billing_stats(plans: PlanService) -> BillingStatsRead:
    return plans.billing_stats()


@router.post("/transactions/{transaction_id}/invoice", response_model=InvoiceRead)
def regenerate_invoice(transaction_id: str, transactions: Transactions) -> InvoiceRead:
    try:
        return InvoiceRead.model_validate(transactions.issue_invoice(transaction_id))
    except BillingError as exc:
        _handle_billing_error(exc)
        raise
