from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Optional
import logging

from sqlalchemy.orm import Session, sessionmaker

from .db.utils import as_utc
from .draw.engine import DrawEngine, DrawResult
from .draw.outbox import drain_pending
from .models import DrawRecord, DrawStatus
from .models.draw import STATUS_ERROR, STATUS_RUNNING

if TYPE_CHECKING:
    import threading

    from .blockchain.api import LedgerClient
    from .config import DrawConfig

logger = logging.getLogger(__name__)


def run_draw(
    session_factory: sessionmaker,
    ledger: "LedgerClient",
    config: "DrawConfig",
    *,
    cancel: Optional["threading.Event"] = None,
) -> DrawResult:
    """Run one scheduled draw invocation.

    This is the callable the scheduler fires. A ``running`` status whose
    heartbeat is older than ``config.stale_after`` is flagged first; then
    :class:`~tombola.draw.engine.DrawEngine` runs, refusing to start while a
    live invocation still holds the ``running`` status.

    Parameters
    ----------
    session_factory : sessionmaker
        Factory producing sessions bound to the draw database.
    ledger : LedgerClient
        Ledger to draw against.
    config : DrawConfig
        Thresholds, confirmation depths and timeouts.
    cancel : Optional[threading.Event]
        Aborts the entropy wait when set.

    Returns
    -------
    DrawResult
        Outcome of the invocation. Never raises for draw failures.
    """
    logger.info("Draw triggered")
    with session_factory.begin() as session:
        recover_stale_status(session, config.stale_after)
    engine = DrawEngine(session_factory, ledger, config, cancel=cancel)
    return engine.run()


def recover_stale_status(
    session: Session,
    stale_after: timedelta,
    now: Optional[datetime] = None,
) -> bool:
    """Flag a ``running`` status left behind by a crashed process.

    A status is stale when its last heartbeat is older than ``stale_after``.
    It is moved to ``error`` for an operator to review; the draw is not
    retried automatically.

    Returns
    -------
    bool
        ``True`` if the status was changed.
    """
    now = now or datetime.now(timezone.utc)
    status = DrawStatus.ensure(session, now)
    if status.status != STATUS_RUNNING:
        return False

    last_seen = as_utc(status.heartbeat_at or status.started_at)
    if last_seen is not None and now - last_seen < stale_after:
        return False

    logger.critical(
        "Draw status stuck in 'running' since %s (phase %s); marking as error "
        "for operator review",
        last_seen.isoformat() if last_seen else "unknown",
        status.phase,
    )
    status.status = STATUS_ERROR
    status.last_error = (
        f"Stale running status from phase {status.phase!r}, last heartbeat "
        f"{last_seen.isoformat() if last_seen else 'unknown'}"
    )
    status.updated_at = now
    session.flush()
    return True


def recover_abandoned_status(session: Session, now: Optional[datetime] = None) -> bool:
    """Flag any ``running`` status as abandoned, whatever its age.

    Only valid when no other process can be drawing, e.g. when the single
    scheduler process starts: a ``running`` row then belongs to a crashed run.
    """
    return recover_stale_status(session, timedelta(0), now)


def mark_reconciled(session: Session, round_id: int) -> bool:
    """Lift the payout block for ``round_id`` after manual reconciliation.

    Returns
    -------
    bool
        ``False`` if ``round_id`` was not the blocked round.
    """
    status = DrawStatus.ensure(session)
    if status.unreconciled_round_id != round_id:
        return False
    logger.warning("Round %d marked as reconciled by an operator", round_id)
    status.unreconciled_round_id = None
    session.flush()
    return True


def drain_pending_records(
    session_factory: sessionmaker, *, current_round_id: Optional[int] = None
) -> list[DrawRecord]:
    """Write queued draw records for rounds that were paid but not recorded."""
    records = drain_pending(session_factory, current_round_id=current_round_id)
    if records:
        logger.info("Recorded %d queued draw(s)", len(records))
    return records


def get_draw_status(session: Session) -> DrawStatus:
    """Return the singleton status row, creating it on first access."""
    return DrawStatus.ensure(session)


def list_draw_records(session: Session, limit: Optional[int] = None) -> list[DrawRecord]:
    """Return draw records, most recent round first."""
    return DrawRecord.latest(session, limit=limit)


def get_draw_record(session: Session, round_id: int) -> Optional[DrawRecord]:
    return session.get(DrawRecord, round_id)
