"""Plain value objects exchanged between the ledger layer and the draw steps."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional


@dataclass(frozen=True)
class ConfirmedBlock:
    """A block used as an entropy source."""

    number: int
    hash: str
    timestamp: int


@dataclass(frozen=True)
class PurchaseEvent:
    """One ``TicketsPurchased`` log entry."""

    buyer: str
    amount: int
    round_id: int
    block_number: int
    log_index: int


@dataclass(frozen=True)
class BountyTransfer:
    """One ``BountyTransferred`` log entry, with the transaction that emitted it."""

    round_id: int
    winner: str
    prize_amount: int
    burn_amount: int
    tx_hash: str
    block_number: int


@dataclass(frozen=True)
class RoundStats:
    """Snapshot of ``getRoundStats`` for one round."""

    round_id: int
    total_participants: int
    total_tickets: int
    round_burned: int = 0
    all_time_burned: int = 0
    pool_balance: int = 0
    max_bounty: int = 0
    ticket_price: int = 0
    min_balance_to_participate: int = 0


@dataclass(frozen=True)
class ChainEvent:
    """A decoded contract event."""

    name: str
    args: Mapping[str, Any]


@dataclass(frozen=True)
class ChainReceipt:
    """Confirmed transaction with the contract events it emitted."""

    tx_hash: str
    block_number: int
    events: tuple[ChainEvent, ...] = field(default_factory=tuple)

    def find_event(self, name: str) -> Optional[ChainEvent]:
        """Return the first event called ``name``, if any."""
        for event in self.events:
            if event.name == name:
                return event
        return None
