"""Programmatic Alembic migration runner.

Lets ``estate-agenda serve`` and ``estate-agenda migrate`` bring the schema to
head without shelling out to the Alembic CLI.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from alembic.config import Config

from alembic import command

logger = logging.getLogger(__name__)

# Root of the alembic directory (sibling to src/)
ALEMBIC_DIR = Path(__file__).resolve().parent.parent.parent / "alembic"

CHAIN = "core"


def _build_alembic_config(db_url: str) -> Config:
    """Build an Alembic Config pointing at the core version directory."""
    config = Config(str(ALEMBIC_DIR / "alembic.ini"))
    config.set_main_option("script_location", str(ALEMBIC_DIR))
    # configparser interpolation: percent-encoded URLs must escape '%'
    config.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    config.set_main_option("version_locations", str(ALEMBIC_DIR / "versions" / CHAIN))
    return config


def upgrade_to_head(db_url: str) -> None:
    """Synchronously upgrade the core chain to head."""
    logger.info("Running migration chain to head (chain=%s)", CHAIN)
    command.upgrade(_build_alembic_config(db_url), f"{CHAIN}@head")


async def run_migrations(db_url: str) -> None:
    """Upgrade the schema to head from async code.

    Alembic drives a synchronous SQLAlchemy engine, so the upgrade runs in a
    worker thread to keep the event loop free.
    """
    await asyncio.to_thread(upgrade_to_head, db_url)
