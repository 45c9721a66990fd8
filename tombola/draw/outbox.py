"""Durable hand-off between a payout and its draw record.

A payout is written to ``pending_draw_records`` as soon as its transaction
is signed, completed with the paid amounts once confirmed, and only then
copied into ``draw_records``. If anything in between fails, the pending row
survives and the next invocation finishes the job; while it exists the round
is never paid again.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..errors import DrawRecordExistsError
from ..models import DrawRecord, PendingDrawRecord

if TYPE_CHECKING:
    from .payout import PayoutResult
    from .report import DrawReport

logger = logging.getLogger(__name__)


def write_pending(session_factory: sessionmaker, report: "DrawReport") -> PendingDrawRecord:
    """Commit the outbox row for a signed, not yet broadcast, transfer."""
    if report.bounty_tx_hash is None:
        raise ValueError("A queued payout needs its transaction hash")
    with session_factory.begin() as session:
        pending = PendingDrawRecord(
            round_id=report.round_id,
            bounty_tx_hash=report.bounty_tx_hash,
            payload=report.to_dict(),
            payout_confirmed=report.prize_amount is not None,
            new_round_started=False,
            attempts=0,
        )
        session.add(pending)
    logger.info(
        "Payout for round %d queued as %s", report.round_id, report.bounty_tx_hash
    )
    return pending


def confirm_payout(session_factory: sessionmaker, round_id: int, payout: "PayoutResult") -> None:
    """Store the confirmed amounts on the outbox row."""
    with session_factory.begin() as session:
        pending = session.get(PendingDrawRecord, round_id)
        if pending is None:
            raise LookupError(f"No pending draw record for round {round_id}")
        if pending.bounty_tx_hash != payout.tx_hash:
            raise ValueError(
                f"Round {round_id} was queued with {pending.bounty_tx_hash}, "
                f"not {payout.tx_hash}"
            )
        pending.payload = {
            **pending.payload,
            "prize_amount": str(payout.prize_amount),
            "burn_amount": str(payout.burn_amount),
        }
        pending.payout_confirmed = True


def discard_pending(session_factory: sessionmaker, round_id: int, reason: str) -> None:
    """Delete an outbox row whose transfer moved no funds."""
    with session_factory.begin() as session:
        pending = session.get(PendingDrawRecord, round_id)
        if pending is not None:
            session.delete(pending)
    logger.warning("Queued payout for round %d discarded: %s", round_id, reason)


def list_unconfirmed(session: Session) -> list[PendingDrawRecord]:
    """Outbox rows whose transfer was signed but never seen confirmed."""
    stmt = (
        select(PendingDrawRecord)
        .where(PendingDrawRecord.payout_confirmed.is_(False))
        .order_by(PendingDrawRecord.round_id)
    )
    return list(session.scalars(stmt).all())


def get_pending(session: Session, round_id: int) -> Optional[PendingDrawRecord]:
    return session.get(PendingDrawRecord, round_id)


def mark_advanced(session_factory: sessionmaker, round_id: int, tx_hash: Optional[str]) -> None:
    """Note on the outbox row that the next round has been started."""
    with session_factory.begin() as session:
        pending = session.get(PendingDrawRecord, round_id)
        if pending is None:
            raise LookupError(f"No pending draw record for round {round_id}")
        pending.new_round_started = True
        pending.new_round_tx_hash = tx_hash


def drain_one(
    session_factory: sessionmaker,
    round_id: int,
    *,
    current_round_id: Optional[int] = None,
) -> Optional[DrawRecord]:
    """Move one outbox row into ``draw_records``.

    A row whose transfer is unconfirmed stays queued. So does a row whose
    round has not been advanced yet, unless ``current_round_id`` shows the
    ledger has already moved past it.

    Returns
    -------
    Optional[DrawRecord]
        The written (or previously written, identical) record, or ``None`` if
        the row is not ready or no longer exists.

    Raises
    ------
    DrawRecordExistsError
        If a record for the round exists with a different payout transaction.
    """
    try:
        with session_factory.begin() as session:
            pending = session.get(PendingDrawRecord, round_id)
            if pending is None or not pending.payout_confirmed:
                return None
            if not pending.new_round_started:
                if current_round_id is None or round_id >= current_round_id:
                    return None
                logger.warning(
                    "Round %d was advanced without a recorded transaction; "
                    "writing its draw record without a round-advance hash",
                    round_id,
                )
                pending.new_round_started = True

            existing = session.get(DrawRecord, round_id)
            if existing is not None:
                if existing.bounty_tx_hash != pending.bounty_tx_hash:
                    raise DrawRecordExistsError(round_id)
                session.delete(pending)
                return existing

            record = DrawRecord.insert(session, pending.to_record())
            session.delete(pending)
    except (SQLAlchemyError, DrawRecordExistsError) as exc:
        _note_failure(session_factory, round_id, exc)
        raise

    logger.info("Draw record for round %d written (winner %s)", round_id, record.winner)
    return record


def drain_pending(
    session_factory: sessionmaker, *, current_round_id: Optional[int] = None
) -> list[DrawRecord]:
    """Drain every ready outbox row, oldest round first."""
    with session_factory() as session:
        round_ids = list(
            session.scalars(
                select(PendingDrawRecord.round_id).order_by(PendingDrawRecord.round_id)
            ).all()
        )

    drained: list[DrawRecord] = []
    for round_id in round_ids:
        record = drain_one(session_factory, round_id, current_round_id=current_round_id)
        if record is not None:
            drained.append(record)
    return drained


def _note_failure(session_factory: sessionmaker, round_id: int, exc: Exception) -> None:
    try:
        with session_factory.begin() as session:
            pending = session.get(PendingDrawRecord, round_id)
            if pending is not None:
                pending.attempts += 1
                pending.last_error = str(exc)[:2000]
    except SQLAlchemyError:
        logger.exception("Could not update outbox row for round %d", round_id)


__all__ = [
    "confirm_payout",
    "discard_pending",
    "drain_one",
    "drain_pending",
    "get_pending",
    "list_unconfirmed",
    "mark_advanced",
    "write_pending",
]
