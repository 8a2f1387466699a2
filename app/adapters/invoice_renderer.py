from __future__ import annotations

from app.domain.models import BillingTransaction


class LocatorInvoiceRenderer:
    def __init__(self, *, base_path: str = "/api/billing/invoices") -> None:
        self._base_path = base_path.rstrip("/")

    def render(self, invoice_number: str, transaction: BillingTransaction) -> str:
        _ = transaction
        return f"{self._base_path}/{invoice_number}"
