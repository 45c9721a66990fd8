"""Database models for draw bookkeeping."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Integer,
    String,
    Text,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Mapped, Session, mapped_column

from ..errors import DrawRecordExistsError
from .base import Base

DRAW_STATUS_ID = 1
"""Primary key of the singleton :class:`DrawStatus` row."""

STATUS_IDLE = "idle"
STATUS_RUNNING = "running"
STATUS_ERROR = "error"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DrawStatus(Base):
    """Process-wide draw state, stored as a single row.

    ``status`` is ``"idle"`` between draws, ``"running"`` while a draw owns
    the engine and ``"error"`` after a failed draw until the next invocation
    starts. ``heartbeat_at`` moves on every phase transition so that a run
    abandoned by a crashed process can be told apart from a slow one.
    """

    __tablename__ = "draw_status"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    """Always :data:`DRAW_STATUS_ID`."""

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=STATUS_IDLE)
    """One of ``idle``, ``running`` or ``error``."""

    phase: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    """Last step entered by the running (or last) draw."""

    last_draw_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    """When the last draw completed."""

    started_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    """When the current or last run claimed the engine."""

    heartbeat_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    """Last sign of life from a running draw."""

    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    """Message of the failure that put the status into ``error``."""

    unreconciled_round_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    """Round whose payout moved funds without a draw record. No new payout is
    made while this is set."""

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        onupdate=_utcnow,
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('idle','running','error')", name="status_enum"
        ),
    )

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return (
            f"<DrawStatus(status={self.status!r}, phase={self.phase!r}, "
            f"last_draw_date={self.last_draw_date})>"
        )

    @classmethod
    def get(cls, session: Session) -> Optional["DrawStatus"]:
        return session.get(cls, DRAW_STATUS_ID)

    @classmethod
    def ensure(cls, session: Session, now: Optional[datetime] = None) -> "DrawStatus":
        """Return the singleton row, creating it as ``idle`` on first use."""

        status = cls.get(session)
        if status is None:
            status = cls(id=DRAW_STATUS_ID, status=STATUS_IDLE, updated_at=now or _utcnow())
            session.add(status)
            session.flush()
        return status

    @classmethod
    def claim(cls, session: Session, now: Optional[datetime] = None) -> bool:
        """Atomically move the status to ``running`` unless it already is.

        Returns
        -------
        bool
            ``True`` when this caller now owns the draw, ``False`` when another
            run holds it.
        """

        now = now or _utcnow()
        cls.ensure(session, now)
        result = session.execute(
            update(cls)
            .where(cls.id == DRAW_STATUS_ID, cls.status != STATUS_RUNNING)
            .values(
                status=STATUS_RUNNING,
                phase="started",
                started_at=now,
                heartbeat_at=now,
                last_error=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        session.expire_all()
        return result.rowcount == 1


class DrawRecord(Base):
    """Audit row written once per drawn round."""

    __tablename__ = "draw_records"

    round_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    """Round identifier assigned by the ticket sale contract."""

    winner: Mapped[str] = mapped_column(String(42), nullable=False)
    """Checksummed address of the winning wallet."""

    bounty_tx_hash: Mapped[str] = mapped_column(String(66), nullable=False, unique=True)
    """Hash of the ``transferBountyToWinner`` transaction."""

    prize_amount: Mapped[str] = mapped_column(String(78), nullable=False)
    """Amount paid to the winner in token base units (decimal string)."""

    burn_amount: Mapped[str] = mapped_column(String(78), nullable=False, default="0")
    """Surplus above the bounty cap that the contract burned."""

    draw_date_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    """Reference timestamp the entropy blocks were taken after."""

    total_tickets: Mapped[int] = mapped_column(Integer, nullable=False)
    participant_count: Mapped[int] = mapped_column(Integer, nullable=False)

    new_round_started: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    new_round_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)

    seed: Mapped[str] = mapped_column(String(66), nullable=False)
    """keccak256 seed as 0x-prefixed hex."""

    winner_index: Mapped[int] = mapped_column(Integer, nullable=False)
    """Seed modulo ticket count."""

    report: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    """Full audit document (participants, block hashes, seed derivation)."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return (
            f"<DrawRecord(round_id={self.round_id}, winner={self.winner!r}, "
            f"prize_amount={self.prize_amount})>"
        )

    @classmethod
    def from_payload(
        cls,
        payload: dict[str, Any],
        *,
        new_round_started: bool,
        new_round_tx_hash: Optional[str],
    ) -> "DrawRecord":
        """Build a record from a :meth:`DrawReport.to_dict` payload."""

        return cls(
            round_id=int(payload["round_id"]),
            winner=payload["winner"],
            bounty_tx_hash=payload["bounty_tx_hash"],
            prize_amount=str(payload["prize_amount"]),
            burn_amount=str(payload["burn_amount"]),
            draw_date_utc=datetime.fromisoformat(payload["reference_date"]),
            total_tickets=int(payload["total_tickets"]),
            participant_count=int(payload["participant_count"]),
            new_round_started=new_round_started,
            new_round_tx_hash=new_round_tx_hash,
            seed=payload["seed"],
            winner_index=int(payload["winner_index"]),
            report={**payload, "new_round_tx_hash": new_round_tx_hash},
        )

    @classmethod
    def insert(cls, session: Session, record: "DrawRecord") -> "DrawRecord":
        """Add ``record``; an existing row for the round is never replaced.

        Raises
        ------
        DrawRecordExistsError
            If a record for ``record.round_id`` already exists.
        """

        if session.get(cls, record.round_id) is not None:
            raise DrawRecordExistsError(record.round_id)
        session.add(record)
        try:
            session.flush()
        except IntegrityError as exc:
            raise DrawRecordExistsError(record.round_id) from exc
        return record

    @classmethod
    def latest(cls, session: Session, limit: Optional[int] = None) -> list["DrawRecord"]:
        stmt = select(cls).order_by(cls.round_id.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(session.scalars(stmt).all())


class PendingDrawRecord(Base):
    """Outbox entry for a paid round whose :class:`DrawRecord` is not yet written.

    The row is committed once the transfer is signed, before it is broadcast.
    It is completed with the paid amounts when the transfer is confirmed, and
    deleted in the same transaction that inserts the matching
    :class:`DrawRecord`.
    """

    __tablename__ = "pending_draw_records"

    round_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    bounty_tx_hash: Mapped[str] = mapped_column(String(66), nullable=False, unique=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    payout_confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    """``False`` from signing until the transfer is confirmed with its event."""
    new_round_started: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    new_round_tx_hash: Mapped[Optional[str]] = mapped_column(String(66), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    """Number of failed drain attempts."""
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow
    )

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return (
            f"<PendingDrawRecord(round_id={self.round_id}, "
            f"new_round_started={self.new_round_started}, attempts={self.attempts})>"
        )

    def to_record(self) -> DrawRecord:
        if not self.payout_confirmed:
            raise ValueError(f"Payout for round {self.round_id} is not confirmed yet")
        return DrawRecord.from_payload(
            self.payload,
            new_round_started=self.new_round_started,
            new_round_tx_hash=self.new_round_tx_hash,
        )


__all__ = [
    "DRAW_STATUS_ID",
    "DrawRecord",
    "DrawStatus",
    "PendingDrawRecord",
    "STATUS_ERROR",
    "STATUS_IDLE",
    "STATUS_RUNNING",
]
