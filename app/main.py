from __future__ import annotations

from fastapi import FastAPI, HTTPException

from app.api.routers import billing, billing_admin, payment_webhooks
from app.infra.db import check_db_ready
from app.infra.logging_config import configure_logging

configure_logging()

app = FastAPI(
    title="billing-lifecycle-engine",
    description="Subscription plan state, payment webhooks, quotes and temporary overrides.",
    version="0.1.0",
)

app.include_router(billing.router, prefix="/api/billing", tags=["billing"])
app.include_router(billing_admin.router, prefix="/api/billing/admin", tags=["billing-admin"])
app.include_router(payment_webhooks.router, prefix="/api/billing/webhooks", tags=["billing-webhooks"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    checks = {"db": "ok" if db_ok else "fail"}
    if not db_ok:
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
