from __future__ import annotations

import logging
import os
from datetime import datetime

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.adapters.base import InvoiceRenderer
from app.adapters.invoice_renderer import LocatorInvoiceRenderer
from app.domain.models import (
    BillingCycle,
    BillingInvoice,
    BillingTransaction,
    TransactionStatus,
    now_utc,
)
from app.infra.db import get_engine
from app.services.errors import ConflictError, GatewayError, NotFoundError
from app.services.notification_service import BillingNotifier

logger = logging.getLogger(__name__)

INVOICE_NUMBER_ATTEMPTS = 3


def add_completed_transaction(
    session: Session,
    *,
    tenant_id: str,
    plan_id: str,
    amount_cents: int,
    currency: str,
    billing_cycle: BillingCycle | None,
    external_session_id: str | None = None,
    external_subscription_id: str | None = None,
    external_invoice_id: str | None = None,
    payment_method: str | None = "card",
    paid_at: datetime | None = None,
) -> BillingTransaction:
    ts = paid_at or now_utc()
    row = BillingTransaction(
        tenant_id=tenant_id,
        plan_id=plan_id,
        amount_cents=amount_cents,
        currency=currency.upper(),
        status=TransactionStatus.COMPLETED,
        external_session_id=external_session_id,
        external_subscription_id=external_subscription_id,
        external_invoice_id=external_invoice_id,
        payment_method=payment_method,
        billing_cycle=billing_cycle,
        paid_at=ts,
        created_at=ts,
    )
    session.add(row)
    return row


class TransactionService:
    def __init__(
        self,
        *,
        renderer: InvoiceRenderer | None = None,
        notifier: BillingNotifier | None = None,
    ) -> None:
        self._renderer = renderer or LocatorInvoiceRenderer()
        self._notifier = notifier or BillingNotifier()
        self.currency = os.getenv("BILLING_CURRENCY", "EUR").upper()

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_transaction(self, session: Session, transaction_id: str) -> BillingTransaction:
        row = session.get(BillingTransaction, transaction_id)
        if row is None:
            raise NotFoundError("transaction not found")
        return row

    @staticmethod
    def _get_invoice_for(session: Session, transaction_id: str) -> BillingInvoice | None:
        return session.exec(
            select(BillingInvoice).where(BillingInvoice.transaction_id == transaction_id)
        ).first()

    @staticmethod
    def _next_invoice_number(session: Session, now: datetime, offset: int = 0) -> str:
        prefix = f"INV-{now:%Y%m%d}-"
        issued_today = session.exec(
            select(func.count())
            .select_from(BillingInvoice)
            .where(col(BillingInvoice.invoice_number).startswith(prefix))
        ).one()
        return f"{prefix}{int(issued_today) + 1 + offset:05d}"

    def list_transactions(self, tenant_id: str) -> list[BillingTransaction]:
        with self._session() as session:
            rows = list(
                session.exec(
                    select(BillingTransaction).where(BillingTransaction.tenant_id == tenant_id)
                ).all()
            )
            return sorted(rows, key=lambda item: item.created_at, reverse=True)

    def list_invoices(self, tenant_id: str) -> list[BillingInvoice]:
        with self._session() as session:
            rows = list(
                session.exec(select(BillingInvoice).where(BillingInvoice.tenant_id == tenant_id)).all()
            )
            return sorted(rows, key=lambda item: item.created_at, reverse=True)

    def get_invoice_by_number(self, tenant_id: str, invoice_number: str) -> BillingInvoice:
        with self._session() as session:
            row = session.exec(
                select(BillingInvoice)
                .where(BillingInvoice.tenant_id == tenant_id)
                .where(BillingInvoice.invoice_number == invoice_number)
            ).first()
            if row is None:
                raise NotFoundError("invoice not found")
            return row

    def generate_invoice(self, transaction_id: str) -> BillingInvoice:
        for attempt in range(INVOICE_NUMBER_ATTEMPTS):
            with self._session() as session:
                transaction = self._get_transaction(session, transaction_id)
                if transaction.status != TransactionStatus.COMPLETED:
                    raise ConflictError("invoice requires a completed transaction")
                existing = self._get_invoice_for(session, transaction_id)
                if existing is not None:
                    return existing

                now = now_utc()
                invoice_number = self._next_invoice_number(session, now, attempt)
                try:
                    locator = self._renderer.render(invoice_number, transaction)
                except Exception as exc:
                    raise GatewayError(f"invoice rendering failed: {exc}") from exc

                invoice = BillingInvoice(
                    tenant_id=transaction.tenant_id,
                    transaction_id=transaction.id,
                    invoice_number=invoice_number,
                    document_locator=locator,
                    created_at=now,
                )
                session.add(invoice)
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    dedup = self._get_invoice_for(session, transaction_id)
                    if dedup is not None:
                        return dedup
                    logger.info("invoice number %s already taken, retrying", invoice_number)
                    continue
                session.refresh(invoice)
                logger.info("invoice %s generated for transaction %s", invoice_number, transaction_id)
                return invoice
        raise ConflictError("could not allocate an invoice number")

    def issue_invoice(self, transaction_id: str) -> BillingInvoice:
        invoice = self.generate_invoice(transaction_id)
        if invoice.sent_at is not None:
            return invoice

        self._notifier.invoice_issued(
            invoice.tenant_id,
            invoice_number=invoice.invoice_number,
            transaction_id=invoice.transaction_id,
            locator=invoice.document_locator,
        )
        with self._session() as session:
            row = session.get(BillingInvoice, invoice.id)
            if row is None:
                raise NotFoundError("invoice not found")
            row.sent_at = now_utc()
            session.add(row)
            session.commit()
            session.refresh(row)
            return row
