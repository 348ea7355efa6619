from __future__ import annotations

import logging

from alembic import command
from alembic.config import Config

from cms_access.infra.logging_setup import setup_logging

logger = logging.getLogger(__name__)


def run_upgrade_head(config_path: str = "alembic.ini") -> None:
    logger.info("applying migrations", extra={"config": config_path})
    command.upgrade(Config(config_path), "head")


if __name__ == "__main__":
    setup_logging()
    run_upgrade_head()
