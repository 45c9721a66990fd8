"""Cron trigger for the weekly draw."""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Optional

from apscheduler.schedulers.blocking import BlockingScheduler
from sqlalchemy.orm import sessionmaker

from .config import DrawConfig
from .workflows import recover_abandoned_status, run_draw

if TYPE_CHECKING:
    from apscheduler.schedulers.base import BaseScheduler

    from .blockchain.api import LedgerClient

logger = logging.getLogger(__name__)

JOB_ID = "weekly_draw"


def build_scheduler(
    config: DrawConfig,
    session_factory: sessionmaker,
    ledger: "LedgerClient",
    *,
    scheduler: Optional["BaseScheduler"] = None,
) -> "BaseScheduler":
    """Register the draw job on ``scheduler`` (a UTC blocking scheduler by default).

    ``max_instances=1`` keeps the scheduler from starting a second draw while
    one is running; the engine's own status guard covers other processes.
    """
    scheduler = scheduler or BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        run_draw,
        "cron",
        args=[session_factory, ledger, config],
        day_of_week=config.schedule_day_of_week,
        hour=config.schedule_hour,
        minute=config.schedule_minute,
        timezone="UTC",
        id=JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    logger.info(
        "Draw scheduled every %s at %02d:%02d UTC",
        config.schedule_day_of_week,
        config.schedule_hour,
        config.schedule_minute,
    )
    return scheduler


def main() -> int:
    """Start the blocking scheduler with settings from the environment."""
    from .blockchain.api import LedgerClient
    from .db.engine import get_sessionmaker, make_engine

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = DrawConfig.from_env()
    engine = make_engine(config.database_url)
    session_factory = get_sessionmaker(engine)

    # Only one scheduler process draws, so a running status at startup is a
    # crashed run.
    with session_factory.begin() as session:
        recover_abandoned_status(session)

    ledger = LedgerClient(config)
    logger.info("Paying out from %s", ledger.signer_address or "no configured signer")
    scheduler = build_scheduler(config, session_factory, ledger)
    try:
        scheduler.start()
    except (KeyboardInterrupt, SystemExit):
        logger.info("Scheduler stopped")
    finally:
        engine.dispose()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
