"""Audit document for a completed draw."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Optional, Sequence

from ..blockchain.types import ConfirmedBlock
from ..db.utils import dt_iso
from .payout import PayoutResult
from .selection import WinnerSelection
from .tickets import group_ticket_indexes


@dataclass(frozen=True)
class DrawReport:
    """Everything needed to verify a draw without querying the chain again.

    Attributes
    ----------
    round_id : int
        Round that was drawn.
    reference_date : datetime
        Time the entropy blocks had to follow.
    participants : dict[str, list[int]]
        Ticket indexes per participant, in purchase order.
    block_numbers, block_hashes : list
        Entropy blocks, in the order their hashes were concatenated.
    seed, seed_int, seed_modulo : str, int, int
        keccak256 seed, its integer value and the value modulo the ticket count.
    max_bounty : int
        Prize cap reported by the contract at draw time.
    bounty_tx_hash, prize_amount, burn_amount : Optional
        Filled in once the transfer is signed and confirmed.
    """

    round_id: int
    reference_date: datetime
    total_tickets: int
    participants: dict[str, list[int]]
    block_numbers: list[int]
    block_hashes: list[str]
    seed: str
    seed_int: int
    seed_modulo: int
    winner_index: int
    winner: str
    max_bounty: int = 0
    bounty_tx_hash: Optional[str] = None
    prize_amount: Optional[int] = None
    burn_amount: Optional[int] = None
    new_round_tx_hash: Optional[str] = None

    @property
    def participant_count(self) -> int:
        return len(self.participants)

    @classmethod
    def build(
        cls,
        *,
        round_id: int,
        reference_date: datetime,
        tickets: Sequence[str],
        blocks: Sequence[ConfirmedBlock],
        selection: WinnerSelection,
        max_bounty: int = 0,
    ) -> "DrawReport":
        return cls(
            round_id=round_id,
            reference_date=reference_date,
            total_tickets=len(tickets),
            participants=group_ticket_indexes(tickets),
            block_numbers=[block.number for block in blocks],
            block_hashes=[block.hash for block in blocks],
            seed=selection.seed,
            seed_int=selection.seed_int,
            seed_modulo=selection.seed_int % selection.ticket_count,
            winner_index=selection.winner_index,
            winner=selection.winner,
            max_bounty=max_bounty,
        )

    def with_payout(self, payout: PayoutResult) -> "DrawReport":
        return replace(
            self,
            bounty_tx_hash=payout.tx_hash,
            prize_amount=payout.prize_amount,
            burn_amount=payout.burn_amount,
        )

    def to_dict(self) -> dict[str, Any]:
        """JSON-safe form; 256-bit integers are rendered as decimal strings."""
        return {
            "round_id": self.round_id,
            "reference_date": dt_iso(self.reference_date),
            "total_tickets": self.total_tickets,
            "participant_count": self.participant_count,
            "participants": {k: list(v) for k, v in self.participants.items()},
            "block_numbers": list(self.block_numbers),
            "block_hashes": list(self.block_hashes),
            "seed": self.seed,
            "seed_int": str(self.seed_int),
            "seed_modulo": self.seed_modulo,
            "winner_index": self.winner_index,
            "winner": self.winner,
            "prize_amount": _uint_str(self.prize_amount),
            "burn_amount": _uint_str(self.burn_amount),
            "max_bounty": str(self.max_bounty),
            "bounty_tx_hash": self.bounty_tx_hash,
            "new_round_tx_hash": self.new_round_tx_hash,
        }


def _uint_str(value: Optional[int]) -> Optional[str]:
    return None if value is None else str(value)


__all__ = ["DrawReport"]
