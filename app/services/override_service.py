from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from app.domain.models import (
    OverrideCreateRequest,
    OverrideSweepRead,
    PlanOverride,
    now_utc,
)
from app.domain.state_machine import PlanStatus
from app.infra.db import get_engine
from app.infra.outbox import PostCommitOutbox
from app.services.errors import ConflictError, NotFoundError, ValidationFailedError
from app.services.notification_service import BillingNotifier
from app.services.plan_catalog import CatalogFactory, sql_catalog_factory
from app.services.plan_ledger import (
    REASON_OVERRIDE_AUTOMATIC,
    REASON_OVERRIDE_MANUAL,
    get_active_override,
    get_tenant,
    require_plan_state,
    transition_plan,
)

logger = logging.getLogger(__name__)


class OverrideService:
    def __init__(
        self,
        *,
        catalog_factory: CatalogFactory | None = None,
        notifier: BillingNotifier | None = None,
        min_days: int | None = None,
        max_days: int | None = None,
    ) -> None:
        self._catalog_factory = catalog_factory or sql_catalog_factory
        self._notifier = notifier or BillingNotifier()
        self._min_days = min_days if min_days is not None else int(os.getenv("OVERRIDE_MIN_DAYS", "7"))
        self._max_days = max_days if max_days is not None else int(os.getenv("OVERRIDE_MAX_DAYS", "30"))

    def _session(self) -> Session:
        return Session(get_engine(), expire_on_commit=False)

    def _get_override(self, session: Session, override_id: str) -> PlanOverride:
        row = session.get(PlanOverride, override_id)
        if row is None:
            raise NotFoundError("override not found")
        return row

    def _validate(self, payload: OverrideCreateRequest) -> str:
        if not self._min_days <= payload.duration_days <= self._max_days:
            raise ValidationFailedError(
                f"duration_days must be between {self._min_days} and {self._max_days}"
            )
        reason = payload.reason.strip()
        if not reason:
            raise ValidationFailedError("reason cannot be empty")
        return reason

    def _restore(
        self,
        session: Session,
        override: PlanOverride,
        *,
        actor_id: str | None,
        reason: str,
        now: datetime,
    ) -> bool:
        # Plan state first, then the override: the same lock order as the payment webhooks.
        state = require_plan_state(session, override.tenant_id, for_update=True)
        # Webhooks rewrite the original plan snapshot, so restore from the committed row.
        current = session.exec(
            select(PlanOverride)
            .where(PlanOverride.id == override.id)
            .where(col(PlanOverride.is_active).is_(True))
            .with_for_update()
            .execution_options(populate_existing=True)
        ).first()
        if current is None:
            return False

        # Conditional on is_active so that only one of several racing callers restores the row.
        result = session.execute(
            update(PlanOverride)
            .where(col(PlanOverride.id) == current.id)
            .where(col(PlanOverride.is_active).is_(True))
            .values(is_active=False, ended_at=now, ended_by=actor_id)
        )
        if int(getattr(result, "rowcount", 0) or 0) == 0:
            return False

        transition_plan(
            session,
            state,
            plan_id=current.original_plan_id,
            status=current.original_status,
            reason=reason,
            actor_id=actor_id,
            now=now,
        )
        return True

    def create_override(
        self,
        tenant_id: str,
        payload: OverrideCreateRequest,
        actor_id: str,
    ) -> PlanOverride:
        reason = self._validate(payload)
        outbox = PostCommitOutbox()
        now = now_utc()
        with self._session() as session:
            get_tenant(session, tenant_id)
            plan = self._catalog_factory(session).get(payload.plan_id)
            state = require_plan_state(session, tenant_id, for_update=True)
            if get_active_override(session, tenant_id) is not None:
                raise ConflictError("an override is already active for tenant; deactivate it first")

            override = PlanOverride(
                tenant_id=tenant_id,
                original_plan_id=state.plan_id,
                original_status=state.status,
                override_plan_id=plan.id,
                start_at=now,
                end_at=now + timedelta(days=payload.duration_days),
                reason=reason,
                created_by=actor_id,
                created_at=now,
            )
            session.add(override)
            transition_plan(
                session,
                state,
                plan_id=plan.id,
                status=PlanStatus.OVERRIDDEN,
                reason=f"temporary override for {payload.duration_days} days: {reason}",
                actor_id=actor_id,
                now=now,
            )
            outbox.enqueue(
                "notify.override_started",
                lambda: self._notifier.override_started(
                    tenant_id,
                    override_id=override.id,
                    plan_id=override.override_plan_id,
                    end_at=override.end_at.isoformat(),
                    actor_id=actor_id,
                ),
            )
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                outbox.discard()
                raise ConflictError("an override is already active for tenant; deactivate it first") from exc
            session.refresh(override)

        logger.info(
            "override %s started for tenant %s on %s until %s",
            override.id,
            tenant_id,
            plan.tier,
            override.end_at,
        )
        outbox.drain()
        return override

    def deactivate_override(self, override_id: str, actor_id: str) -> PlanOverride:
        outbox = PostCommitOutbox()
        now = now_utc()
        with self._session() as session:
            override = self._get_override(session, override_id)
            if not override.is_active:
                raise ConflictError("override is not active")
            if not self._restore(
                session,
                override,
                actor_id=actor_id,
                reason=REASON_OVERRIDE_MANUAL,
                now=now,
            ):
                session.rollback()
                raise ConflictError("override is not active")
            outbox.enqueue(
                "notify.override_ended",
                lambda: self._notifier.override_ended(
                    override.tenant_id,
                    override_id=override.id,
                    restored_plan_id=override.original_plan_id,
                    automatic=False,
                    actor_id=actor_id,
                ),
            )
            session.commit()
            session.refresh(override)

        logger.info("override %s ended manually by %s", override_id, actor_id)
        outbox.drain()
        return override

    def sweep_expired_overrides(self, now: datetime | None = None) -> OverrideSweepRead:
        swept_at = now or now_utc()
        with self._session() as session:
            expired_ids = list(
                session.exec(
                    select(PlanOverride.id)
                    .where(col(PlanOverride.is_active).is_(True))
                    .where(col(PlanOverride.end_at) <= swept_at)
                    .order_by(col(PlanOverride.end_at))
                ).all()
            )

        outbox = PostCommitOutbox()
        restored: list[str] = []
        for override_id in expired_ids:
            with self._session() as session:
                override = self._get_override(session, override_id)
                if not self._restore(
                    session,
                    override,
                    actor_id=None,
                    reason=REASON_OVERRIDE_AUTOMATIC,
                    now=swept_at,
                ):
                    session.rollback()
                    logger.debug("override %s already ended by another caller", override_id)
                    continue
                session.commit()
            restored.append(override_id)
            outbox.enqueue(
                f"notify.override_ended.{override_id}",
                lambda row=override: self._notifier.override_ended(
                    row.tenant_id,
                    override_id=row.id,
                    restored_plan_id=row.original_plan_id,
                    automatic=True,
                    actor_id=None,
                ),
            )

        if restored:
            logger.info("override sweep restored %d tenant plan(s)", len(restored))
        outbox.drain()
        return OverrideSweepRead(swept_at=swept_at, restored_override_ids=restored)

    def get_active_override(self, tenant_id: str) -> PlanOverride | None:
        with self._session() as session:
            get_tenant(session, tenant_id)
            return get_active_override(session, tenant_id)

    def list_overrides(self, tenant_id: str) -> list[PlanOverride]:
        with self._session() as session:
            get_tenant(session, tenant_id)
            rows = list(
                session.exec(select(PlanOverride).where(PlanOverride.tenant_id == tenant_id)).all()
            )
            return sorted(rows, key=lambda item: item.created_at, reverse=True)
