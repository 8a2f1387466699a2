from __future__ import annotations

import logging
from typing import Any

from sqlmodel import Session, select

from app.domain.models import Plan, PlanTier
from app.infra.db import get_engine

logger = logging.getLogger(__name__)

UNLIMITED = -1

DEFAULT_PLANS: list[dict[str, Any]] = [
    {
        "tier": PlanTier.DECOUVERTE,
        "name": "Decouverte",
        "description": "Free tier to discover the platform",
        "monthly_price_cents": 0,
        "annual_price_cents": 0,
        "requires_quote": False,
        "limits": {
            "max_events": 2,
            "max_participants": 10,
            "max_vehicles": 0,
            "custom_branding": False,
            "api_access": False,
        },
    },
    {
        "tier": PlanTier.ESSENTIEL,
        "name": "Essentiel",
        "description": "Self-serve plan for regular event organizers",
        "monthly_price_cents": 4900,
        "annual_price_cents": 49000,
        "requires_quote": False,
        "limits": {
            "max_events": UNLIMITED,
            "max_participants": 500,
            "max_vehicles": 50,
            "custom_branding": False,
            "api_access": False,
        },
    },
    {
        "tier": PlanTier.PRO,
        "name": "Pro",
        "description": "Advanced features, activated after a sales quote",
        "monthly_price_cents": 19900,
        "annual_price_cents": 199000,
        "requires_quote": True,
        "limits": {
            "max_events": UNLIMITED,
            "max_participants": 5000,
            "max_vehicles": 100,
            "custom_branding": True,
            "api_access": False,
        },
    },
    {
        "tier": PlanTier.PREMIUM,
        "name": "Premium",
        "description": "Unlimited usage with dedicated support, activated after a sales quote",
        "monthly_price_cents": 49900,
        "annual_price_cents": 499000,
        "requires_quote": True,
        "limits": {
            "max_events": UNLIMITED,
            "max_participants": UNLIMITED,
            "max_vehicles": UNLIMITED,
            "custom_branding": True,
            "api_access": True,
        },
    },
]


def seed_default_plans(session: Session, *, currency: str = "EUR") -> list[Plan]:
    existing = {row.tier: row for row in session.exec(select(Plan)).all()}
    created: list[Plan] = []
    for item in DEFAULT_PLANS:
        if item["tier"] in existing:
            continue
        row = Plan(currency=currency, **item)
        session.add(row)
        created.append(row)
    session.commit()
    for row in created:
        session.refresh(row)
    return created


def main() -> None:
    with Session(get_engine()) as session:
        created = seed_default_plans(session)
    logger.info("seeded %d plan(s)", len(created))


if __name__ == "__main__":
    from app.infra.logging_config import configure_logging

    configure_logging()
    main()
