"""Run a single draw now, outside the weekly schedule."""

from __future__ import annotations

import logging
import os
import sys

from tombola.blockchain.api import LedgerClient
from tombola.config import DrawConfig
from tombola.db.engine import get_sessionmaker, make_engine
from tombola.draw.engine import DrawOutcome
from tombola.workflows import run_draw


def main() -> int:
    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "INFO"),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = DrawConfig.from_env()
    engine = make_engine(config.database_url)
    try:
        result = run_draw(get_sessionmaker(engine), LedgerClient(config), config)
    finally:
        engine.dispose()

    print(f"Outcome: {result.outcome.value} (round {result.round_id})")
    if result.record is not None:
        print(f"Winner: {result.record.winner}  prize: {result.record.prize_amount}")
    if result.error is not None:
        print(f"Error: {result.error}", file=sys.stderr)
    return 1 if result.outcome in (DrawOutcome.FAILED, DrawOutcome.INCONSISTENT) else 0


if __name__ == "__main__":
    raise SystemExit(main())
