from __future__ import annotations

import logging
import os

from alembic import command
from alembic.config import Config

logger = logging.getLogger(__name__)


def run_upgrade_head(config_path: str | None = None) -> None:
    path = config_path or os.getenv("ALEMBIC_CONFIG", "alembic.ini")
    logger.info("upgrading database schema to head using %s", path)
    command.upgrade(Config(path), "head")


if __name__ == "__main__":
    from app.infra.logging_config import configure_logging

    configure_logging()
    run_upgrade_head()
