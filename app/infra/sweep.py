from __future__ import annotations

import logging

from app.infra.logging_config import configure_logging
from app.services.override_service import OverrideService

logger = logging.getLogger(__name__)


def run_sweep() -> list[str]:
    result = OverrideService().sweep_expired_overrides()
    logger.info(
        "override sweep at %s restored %d override(s)",
        result.swept_at.isoformat(),
        len(result.restored_override_ids),
    )
    return result.restored_override_ids


if __name__ == "__main__":
    configure_logging()
    run_sweep()
