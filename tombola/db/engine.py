import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from .utils import resolve_sqlite_url

logger = logging.getLogger(__name__)

load_dotenv()
ROOT_DIR = Path(__file__).resolve().parents[2]
DEFAULT_SQLITE_URL = resolve_sqlite_url(
    os.getenv("DB_URL", "sqlite:///./winners.db"), ROOT_DIR
)

# Seconds a SQLite writer waits for a lock held by another process, e.g. a
# manual run_draw.py while the scheduler is claiming the status row.
SQLITE_BUSY_TIMEOUT = 30


def make_engine(database_url: Optional[str] = None, echo: bool = False) -> Engine:
    """Create the engine for the draw database (``DB_URL`` by default)."""
    url = database_url or DEFAULT_SQLITE_URL
    connect_args = {}
    if url.startswith("sqlite") and ":memory:" not in url:
        connect_args["timeout"] = SQLITE_BUSY_TIMEOUT
    engine = create_engine(url, echo=echo, future=True, connect_args=connect_args)
    logger.debug("Database engine created for %s", engine.url.render_as_string(hide_password=True))
    return engine


def get_sessionmaker(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        expire_on_commit=False,  # Draw records are read after the session closes
        future=True,
    )
