"""State machine running one draw from bounty check to audit record."""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..errors import (
    DrawRecordExistsError,
    ProtocolViolationError,
    TombolaError,
    TransactionError,
)
from ..models import DRAW_STATUS_ID, DrawRecord, DrawStatus, PendingDrawRecord
from ..models.draw import STATUS_ERROR, STATUS_IDLE
from .entropy import await_confirmed_blocks
from .outbox import (
    confirm_payout,
    discard_pending,
    drain_one,
    get_pending,
    list_unconfirmed,
    mark_advanced,
    write_pending,
)
from .payout import execute_payout, find_bounty_transfers, payout_from_receipt
from .report import DrawReport
from .rounds import advance_round
from .selection import select_winner
from .tickets import fetch_tickets

if TYPE_CHECKING:
    from ..blockchain.api import LedgerClient
    from ..config import DrawConfig

logger = logging.getLogger(__name__)


class DrawOutcome(str, Enum):
    """How an invocation of :meth:`DrawEngine.run` ended."""

    ALREADY_RUNNING = "already_running"
    EMPTY_BOUNTY = "empty_bounty"
    BELOW_THRESHOLD = "below_threshold"
    NO_TICKETS = "no_tickets"
    COMPLETED = "completed"
    RESUMED = "resumed"
    FAILED = "failed"
    INCONSISTENT = "inconsistent"


@dataclass
class DrawResult:
    outcome: DrawOutcome
    round_id: Optional[int] = None
    record: Optional[DrawRecord] = None
    new_round_tx_hash: Optional[str] = None
    error: Optional[BaseException] = None


class PayoutNotRecordedError(TombolaError):
    """Funds have moved but the draw could not be persisted."""

    def __init__(self, message: str, round_id: int, context: dict[str, Any]):
        super().__init__(message)
        self.round_id = round_id
        self.context = context


class OutboxWriteError(TombolaError):
    """The payout could not be queued, so it was not sent."""


class DrawEngine:
    """Run the draw for the current round.

    One call to :meth:`run` walks through these steps, stopping early where a
    step decides there is nothing to draw:

    1. Claim the singleton status (``running``); bail out if already held.
    2. Settle signed transfers and finish any paid round still sitting in the
       outbox. Stop while an earlier paid round is unreconciled or the
       current round already shows a ``BountyTransferred`` log.
    3. Skip when the bounty wallet is empty.
    4. Skip when the round has fewer participants than required. The round
       stays open.
    5. Rebuild the ticket sequence; an empty sequence only advances the round.
    6. Wait for confirmed entropy blocks after "now" and select the winner.
    7. Queue the signed transfer, pay the winner, advance the round, write
       the record.

    :meth:`run` never raises. Failures leave ``status="error"`` with the
    message in ``last_error`` and are reported through :class:`DrawResult`.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        ledger: "LedgerClient",
        config: "DrawConfig",
        *,
        clock: Optional[Callable[[], datetime]] = None,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        self._session_factory = session_factory
        self.ledger = ledger
        self.config = config
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._cancel = cancel
        self._phase = "idle"
        self._round_id: Optional[int] = None

    def _now(self) -> datetime:
        return self._clock()

    # -------- entry point --------
    def run(self) -> DrawResult:
        self._phase = "claim"
        self._round_id = None
        try:
            with self._session_factory.begin() as session:
                claimed = DrawStatus.claim(session, self._now())
        except SQLAlchemyError as exc:
            logger.exception("Could not claim the draw status")
            return DrawResult(DrawOutcome.FAILED, error=exc)
        if not claimed:
            logger.warning("A draw is already running; ignoring this trigger")
            return DrawResult(DrawOutcome.ALREADY_RUNNING)

        try:
            result = self._draw()
        except PayoutNotRecordedError as exc:
            logger.critical(
                "INCONSISTENCY: funds moved for round %d but the draw record is "
                "missing; manual reconciliation required. %s | %s",
                exc.round_id,
                exc,
                json.dumps(exc.context, sort_keys=True, default=str),
            )
            self._set_status(STATUS_ERROR, error=str(exc), unreconciled_round_id=exc.round_id)
            return DrawResult(DrawOutcome.INCONSISTENT, round_id=exc.round_id, error=exc)
        except TombolaError as exc:
            logger.error("Draw failed during %s: %s", self._phase, exc)
            self._set_status(STATUS_ERROR, error=f"{self._phase}: {exc}")
            return DrawResult(DrawOutcome.FAILED, round_id=self._round_id, error=exc)
        except Exception as exc:
            logger.exception("Unexpected error during %s", self._phase)
            self._set_status(STATUS_ERROR, error=f"{self._phase}: {exc!r}")
            return DrawResult(DrawOutcome.FAILED, round_id=self._round_id, error=exc)

        finished_draw = result.outcome in (DrawOutcome.COMPLETED, DrawOutcome.RESUMED)
        self._set_status(
            STATUS_IDLE,
            last_draw_date=self._now() if finished_draw else None,
            reconciled_round_id=result.round_id if finished_draw else None,
        )
        logger.info("Draw finished: %s (round %s)", result.outcome.value, result.round_id)
        return result

    # -------- steps --------
    def _draw(self) -> DrawResult:
        config = self.config

        self._enter("round_lookup")
        round_id = self.ledger.current_round_id()
        self._round_id = round_id
        logger.info("Current round: %d", round_id)

        self._enter("outbox")
        self._settle_signed_payouts()
        self._drain_outbox(round_id)
        self._check_reconciled(round_id)

        with self._session_factory() as session:
            pending = get_pending(session, round_id)
            recorded = session.get(DrawRecord, round_id)
        if recorded is not None:
            raise ProtocolViolationError(
                f"Round {round_id} already has a draw record but the contract "
                "still reports it as the current round"
            )
        if pending is not None:
            logger.warning(
                "Round %d was already paid (tx %s); resuming at the round advance",
                round_id,
                pending.bounty_tx_hash,
            )
            return self._finish_paid_round(round_id, pending.payload, DrawOutcome.RESUMED)

        self._enter("payout_scan")
        transfers = find_bounty_transfers(
            self.ledger, round_id, batch_size=config.log_batch_size
        )
        if transfers:
            raise PayoutNotRecordedError(
                f"Round {round_id} was paid in {transfers[0].tx_hash} but neither a "
                "draw record nor a queued payout exists",
                round_id,
                {"transfers": [asdict(t) for t in transfers]},
            )

        self._enter("bounty_check")
        balance = self.ledger.bounty_balance()
        if balance <= 0:
            logger.info("Bounty wallet is empty; no draw for round %d", round_id)
            return DrawResult(DrawOutcome.EMPTY_BOUNTY, round_id=round_id)
        logger.info("Bounty wallet balance: %d", balance)

        self._enter("round_stats")
        stats = self.ledger.get_round_stats(round_id)
        logger.info(
            "Round %d: %d participants, %d tickets",
            round_id,
            stats.total_participants,
            stats.total_tickets,
        )
        if stats.total_participants < config.min_participants:
            logger.info(
                "Participants (%d) below the threshold of %d; draw postponed, "
                "round %d stays open",
                stats.total_participants,
                config.min_participants,
                round_id,
            )
            return DrawResult(DrawOutcome.BELOW_THRESHOLD, round_id=round_id)

        self._enter("tickets")
        tickets = fetch_tickets(self.ledger, round_id, batch_size=config.log_batch_size)
        if not tickets:
            logger.warning(
                "Round %d reports %d participants but no purchase events were "
                "found; starting a new round without a payout",
                round_id,
                stats.total_participants,
            )
            self._enter("advance_round")
            tx_hash = advance_round(self.ledger, confirmations=config.round_confirmations)
            return DrawResult(DrawOutcome.NO_TICKETS, round_id=round_id, new_round_tx_hash=tx_hash)

        reference_date = self._now()
        self._enter("entropy")
        blocks = await_confirmed_blocks(
            self.ledger,
            int(reference_date.timestamp()),
            config.entropy_blocks,
            config.confirmations,
            poll_interval=config.poll_interval,
            cancel=self._cancel,
            timeout=config.entropy_timeout,
            on_retry=self._heartbeat,
        )

        self._enter("selection")
        selection = select_winner(tickets, [block.hash for block in blocks])
        logger.info(
            "Winner of round %d: %s (ticket %d of %d, seed %s)",
            round_id,
            selection.winner,
            selection.winner_index,
            selection.ticket_count,
            selection.seed,
        )

        self._enter("payout")
        report = DrawReport.build(
            round_id=round_id,
            reference_date=reference_date,
            tickets=tickets,
            blocks=blocks,
            selection=selection,
            max_bounty=self.ledger.max_bounty_amount(),
        )

        def queue_payout(tx_hash: str) -> None:
            try:
                write_pending(self._session_factory, replace(report, bounty_tx_hash=tx_hash))
            except SQLAlchemyError as exc:
                raise OutboxWriteError(
                    f"Payout for round {round_id} not sent: the outbox write failed: {exc}"
                ) from exc

        payout = execute_payout(
            self.ledger,
            selection.winner,
            confirmations=config.confirmations,
            on_signed=queue_payout,
        )
        payload = report.with_payout(payout).to_dict()
        try:
            confirm_payout(self._session_factory, round_id, payout)
        except SQLAlchemyError as exc:
            raise PayoutNotRecordedError(
                f"Payout confirmed but its amounts could not be stored: {exc}", round_id, payload
            ) from exc

        return self._finish_paid_round(round_id, payload, DrawOutcome.COMPLETED)

    def _settle_signed_payouts(self) -> None:
        """Resolve outbox rows whose transfer was signed but never seen confirmed.

        A confirmed transfer gets its amounts stored. A transfer that reverted
        or never reached the node is discarded, since it moved no funds; any
        later transfer reuses its nonce, so the two cannot both be mined.
        Anything else stops the run with the row still queued.
        """
        with self._session_factory() as session:
            signed = [(row.round_id, row.bounty_tx_hash) for row in list_unconfirmed(session)]

        for round_id, tx_hash in signed:
            logger.warning("Checking payout %s for round %d", tx_hash, round_id)
            try:
                receipt = self.ledger.wait_for_transaction(
                    tx_hash, confirmations=self.config.confirmations
                )
            except TransactionError as exc:
                if exc.reverted:
                    discard_pending(self._session_factory, round_id, f"{tx_hash} reverted")
                    continue
                if not self.ledger.transaction_known(tx_hash):
                    discard_pending(
                        self._session_factory, round_id, f"{tx_hash} is unknown to the node"
                    )
                    continue
                raise

            payout = payout_from_receipt(receipt)
            try:
                confirm_payout(self._session_factory, round_id, payout)
            except SQLAlchemyError as exc:
                raise PayoutNotRecordedError(
                    f"Payout confirmed but its amounts could not be stored: {exc}",
                    round_id,
                    {"bounty_tx_hash": tx_hash, "prize_amount": str(payout.prize_amount)},
                ) from exc
            logger.info("Payout %s for round %d confirmed", tx_hash, round_id)

    def _drain_outbox(self, current_round_id: int) -> None:
        with self._session_factory() as session:
            queued = list(
                session.scalars(
                    select(PendingDrawRecord.round_id).order_by(PendingDrawRecord.round_id)
                ).all()
            )
        for round_id in queued:
            try:
                drain_one(self._session_factory, round_id, current_round_id=current_round_id)
            except (SQLAlchemyError, DrawRecordExistsError) as exc:
                raise PayoutNotRecordedError(
                    f"Queued draw record for round {round_id} could not be written: {exc}",
                    round_id,
                    {"current_round_id": current_round_id},
                ) from exc

    def _check_reconciled(self, round_id: int) -> None:
        """Refuse to continue while an earlier paid round has no draw record."""
        with self._session_factory.begin() as session:
            status = DrawStatus.get(session)
            flagged = status.unreconciled_round_id if status is not None else None
            if flagged is None:
                return
            if session.get(DrawRecord, flagged) is not None:
                logger.info("Round %d is recorded; payouts are allowed again", flagged)
                status.unreconciled_round_id = None
                return
            resumable = flagged == round_id and get_pending(session, flagged) is not None
        if resumable:
            return
        raise PayoutNotRecordedError(
            f"Round {flagged} is still unreconciled; no payout is made until its "
            "draw record exists or an operator marks it reconciled",
            flagged,
            {"current_round_id": round_id},
        )

    def _finish_paid_round(
        self, round_id: int, payload: dict[str, Any], outcome: DrawOutcome
    ) -> DrawResult:
        # A failure here leaves the outbox row queued with the round not
        # advanced; the next invocation resumes from this point.
        self._enter("advance_round")
        tx_hash = advance_round(self.ledger, confirmations=self.config.round_confirmations)

        try:
            mark_advanced(self._session_factory, round_id, tx_hash)
            self._enter("persist")
            record = drain_one(self._session_factory, round_id)
        except (SQLAlchemyError, DrawRecordExistsError, LookupError) as exc:
            raise PayoutNotRecordedError(
                f"Draw record for round {round_id} could not be written: {exc}",
                round_id,
                {**payload, "new_round_tx_hash": tx_hash},
            ) from exc
        if record is None:
            raise PayoutNotRecordedError(
                f"Draw record for round {round_id} was not written",
                round_id,
                {**payload, "new_round_tx_hash": tx_hash},
            )
        return DrawResult(outcome, round_id=round_id, record=record, new_round_tx_hash=tx_hash)

    # -------- status bookkeeping --------
    def _enter(self, phase: str) -> None:
        self._phase = phase
        now = self._now()
        with self._session_factory.begin() as session:
            session.execute(
                update(DrawStatus)
                .where(DrawStatus.id == DRAW_STATUS_ID)
                .values(phase=phase, heartbeat_at=now, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        logger.debug("Draw phase: %s", phase)

    def _heartbeat(self, attempt: int) -> None:
        try:
            self._enter(self._phase)
        except SQLAlchemyError as exc:
            logger.warning("Heartbeat after entropy attempt %d failed: %s", attempt, exc)

    def _set_status(
        self,
        status: str,
        *,
        error: Optional[str] = None,
        last_draw_date: Optional[datetime] = None,
        unreconciled_round_id: Optional[int] = None,
        reconciled_round_id: Optional[int] = None,
    ) -> None:
        values: dict[str, Any] = {
            "status": status,
            "heartbeat_at": self._now(),
            "updated_at": self._now(),
            "last_error": error,
        }
        if last_draw_date is not None:
            values["last_draw_date"] = last_draw_date
        if unreconciled_round_id is not None:
            values["unreconciled_round_id"] = unreconciled_round_id
        try:
            with self._session_factory.begin() as session:
                session.execute(
                    update(DrawStatus)
                    .where(DrawStatus.id == DRAW_STATUS_ID)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if reconciled_round_id is not None:
                    session.execute(
                        update(DrawStatus)
                        .where(
                            DrawStatus.id == DRAW_STATUS_ID,
                            DrawStatus.unreconciled_round_id == reconciled_round_id,
                        )
                        .values(unreconciled_round_id=None)
                        .execution_options(synchronize_session=False)
                    )
        except SQLAlchemyError:
            logger.exception("Could not record draw status %r", status)
            return
        logger.info("Draw status set to %s", status)


__all__ = ["DrawEngine", "DrawOutcome", "DrawResult", "PayoutNotRecordedError"]
