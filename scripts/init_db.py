"""Create or upgrade the draw database and show what it holds."""

from __future__ import annotations

import sys
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import func, inspect, select

from tombola.db.engine import get_sessionmaker, make_engine
from tombola.models import DrawRecord, DrawStatus, PendingDrawRecord

PROJECT_ROOT = Path(__file__).resolve().parents[1]


def upgrade_db(revision: str = "head") -> None:
    cfg = Config(str(PROJECT_ROOT / "alembic.ini"))
    cfg.set_main_option("script_location", str(PROJECT_ROOT / "alembic"))
    command.upgrade(cfg, revision)


def report_state() -> None:
    """Print the tables, the draw status and the number of stored and queued draws."""
    engine = make_engine()
    try:
        tables = sorted(inspect(engine).get_table_names())
        print("Tables:", ", ".join(tables))

        with get_sessionmaker(engine).begin() as session:
            status = DrawStatus.ensure(session)
            recorded = session.scalar(select(func.count()).select_from(DrawRecord))
            queued = session.scalar(select(func.count()).select_from(PendingDrawRecord))
            print(f"Draw status: {status.status} (last draw {status.last_draw_date})")
            print(f"Draw records: {recorded}, queued for recording: {queued}")
    finally:
        engine.dispose()


def main(argv: list[str]) -> int:
    upgrade_db(argv[0] if argv else "head")
    report_state()
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
