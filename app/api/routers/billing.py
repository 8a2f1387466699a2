from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, status

from app.adapters.base import PaymentGateway
from app.api.deps import ensure_tenant_scope, get_current_claims, get_payment_gateway, require_any_perm
from app.domain.models import (
    ActivateFreeRequest,
    InvoiceRead,
    PlanHistoryRead,
    PlanOverrideRead,
    PlanRead,
    PlanStateRead,
    QuoteRequestRead,
    SubscriptionCancelRead,
    TransactionRead,
    UpgradeRequest,
    UpgradeResult,
)
from app.domain.permissions import PERM_BILLING_ADMIN, PERM_BILLING_READ, PERM_BILLING_WRITE
from app.services.errors import (
    BillingError,
    ConflictError,
    GatewayError,
    NotFoundError,
    ValidationFailedError,
)
from app.services.override_service import OverrideService
from app.services.plan_state_service import PlanStateService
from app.services.quote_service import QuoteService
from app.services.transaction_service import TransactionService

router = APIRouter()

READ_DEPENDENCIES = [Depends(require_any_perm(PERM_BILLING_READ, PERM_BILLING_ADMIN))]
WRITE_DEPENDENCIES = [Depends(require_any_perm(PERM_BILLING_WRITE, PERM_BILLING_ADMIN))]


def get_plan_state_service(
    gateway: Annotated[PaymentGateway, Depends(get_payment_gateway)],
) -> PlanStateService:
    return PlanStateService(gateway=gateway)


def get_override_service() -> OverrideService:
    return OverrideService()


def get_quote_service(
    gateway: Annotated[PaymentGateway, Depends(get_payment_gateway)],
) -> QuoteService:
    return QuoteService(gateway=gateway)


def get_transaction_service() -> TransactionService:
    return TransactionService()


Claims = Annotated[dict[str, Any], Depends(get_current_claims)]
PlanService = Annotated[PlanStateService, Depends(get_plan_state_service)]
Overrides = Annotated[OverrideService, Depends(get_override_service)]
Quotes = Annotated[QuoteService, Depends(get_quote_service)]
Transactions = Annotated[TransactionService, Depends(get_transaction_service)]


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


@router.get("/plans", response_model=list[PlanRead], dependencies=READ_DEPENDENCIES)
def list_plans(service: PlanService) -> list[PlanRead]:
    return [PlanRead.model_validate(item) for item in service.list_plans()]


@router.get(
    "/tenants/{tenant_id}/plan",
    response_model=PlanStateRead,
    dependencies=READ_DEPENDENCIES,
)
def get_current_plan(tenant_id: str, claims: Claims, service: PlanService) -> PlanStateRead:
    ensure_tenant_scope(tenant_id, claims)
    try:
        return service.get_current_plan(tenant_id)
    except BillingError as exc:
        _handle_billing_error(exc)
        raise


@router.post(
    "/tenants/{tenant_id}/plan/activate-free",
    response_model=PlanStateRead,
    dependencies=WRITE_DEPENDENCIES,
)
def activate_free(
    tenant_id: str,
    claims: Claims,
    service: PlanService,
    payload: ActivateFreeRequest | None = None,
) -> PlanStateRead:
    ensure_tenant_scope(tenant_id, claims)
    try:
        service.activate_free(tenant_id, payload.plan_id if payload else None, claims["sub"])
        return service.get_current_plan(tenant_id)
    except BillingError as exc:
        _handle_billing_error(exc)
        raise


@router.post(
    "/tenants/{tenant_id}/plan/upgrade",
    response_model=UpgradeResult,
    dependencies=WRITE_DEPENDENCIES,
)
def request_upgrade(
    tenant_id: str,
    payload: UpgradeRequest,
    claims: Claims,
    service: PlanService,
) -> UpgradeResult:
    ensure_tenant_scope(tenant_id, claims)
    try:
        return service.request_upgrade(tenant_id, payload, claims["sub"])
    except BillingError as exc:
        _handle_billing_error(exc)
        raise


@router.post(
    "/tenants/{tenant_id}/subscription/cancel",
    response_model=SubscriptionCancelRead,
    dependencies=WRITE_DEPENDENCIES,
)
def cancel_subscription(tenant_id: str, claims: Claims, service: PlanService) -> SubscriptionCancelRead:
    ensure_tenant_scope(tenant_id, claims)
    try:
        return service.cancel_subscription(tenant_id, claims["sub"])
    except BillingError as exc:
        _handle_billing_error(exc)
        raise


@router.get(
    "/tenants/{tenant_id}/plan/history",
    response_model=list[PlanHistoryRead],
    dependencies=READ_DEPENDENCIES,
)
def list_plan_history(tenant_id: str, claims: Claims, service: PlanService) -> list[PlanHistoryRead]:
    ensure_tenant_scope(tenant_id, claims)
    try:
        return [PlanHistoryRead.model_validate(item) for item in service.list_history(tenant_id)]
    except BillingError as exc:
        _handle_billing_error(exc)
        raise


@router.get(
    "/tenants/{tenant_id}/quotes",
    response_model=list[QuoteRequestRead],
    dependencies=READ_DEPENDENCIES,
)
def list_tenant_quotes(tenant_id: str, claims: Claims, service: Quotes) -> list[QuoteRequestRead]:
    ensure_tenant_scope(tenant_id, claims)
    rows = service.list_quote_requests(tenant_id=tenant_id)
    return [QuoteRequestRead.model_validate(item) for item in rows]


@router.get(
    "/tenants/{tenant_id}/transactions",
    response_model=list[TransactionRead],
    dependencies=READ_DEPENDENCIES,
)
def list_transactions(tenant_id: str, claims: Claims, service: Transactions) -> list[TransactionRead]:
    ensure_tenant_scope(tenant_id, claims)
    return [TransactionRead.model_validate(item) for item in service.list_transactions(tenant_id)]


@router.get(
    "/tenants/{tenant_id}/invoices",
    response_model=list[InvoiceRead],
    dependencies=READ_DEPENDENCIES,
)
def list_invoices(tenant_id: str, claims: Claims, service: Transactions) -> list[InvoiceRead]:
    ensure_tenant_scope(tenant_id, claims)
    return [InvoiceRead.model_validate(item) for item in service.list_invoices(tenant_id)]


@router.get(
    "/invoices/{invoice_number}",
    response_model=InvoiceRead,
    dependencies=READ_DEPENDENCIES,
)
def get_invoice(invoice_number: str, claims: Claims, service: Transactions) -> InvoiceRead:
    try:
        return InvoiceRead.model_validate(service.get_invoice_by_number(claims["tenant_id"], invoice_number))
    except BillingError as exc:
        _handle_billing_error(exc)
        raise


@router.get(
    "/tenants/{tenant_id}/overrides",
    response_model=list[PlanOverrideRead],
    dependencies=READ_DEPENDENCIES,
)
def list_overrides(tenant_id: str, claims: Claims, service: Overrides) -> list[PlanOverrideRead]:
    ensure_tenant_scope(tenant_id, claims)
    try:
        return [PlanOverrideRead.model_validate(item) for item in service.list_overrides(tenant_id)]
    except BillingError as exc:
        _handle_billing_error(exc)
        raise


@router.get(
    "/tenants/{tenant_id}/overrides/active",
    response_model=PlanOverrideRead | None,
    dependencies=READ_DEPENDENCIES,
)
def get_active_override(tenant_id: str, claims: Claims, service: Overrides) -> PlanOverrideRead | None:
    ensure_tenant_scope(tenant_id, claims)
    try:
        row = service.get_active_override(tenant_id)
    except BillingError as exc:
        _handle_billing_error(exc)
        raise
    return PlanOverrideRead.model_validate(row) if row is not None else None
