"""
simulator.py - in-memory ticket sale chain.

Offers the same surface as :class:`~tombola.blockchain.api.LedgerClient` so
the draw steps can run offline:

 - blocks with deterministic hashes and a fixed block time
 - ``TicketsPurchased`` logs per round
 - the bounty wallet balance and its allowance towards the contract
 - ``transferBountyToWinner`` capped at ``max_bounty`` (surplus burned),
   with ``BountyTransferred`` logs and receipts looked up by hash
 - ``startNewRound``

Failures can be injected per method with :meth:`LedgerSimulator.fail_next`.
"""

from __future__ import annotations

import hashlib
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set

from ..errors import LedgerError, TransactionError
from .types import (
    BountyTransfer,
    ChainEvent,
    ChainReceipt,
    ConfirmedBlock,
    PurchaseEvent,
    RoundStats,
)

logger = logging.getLogger(__name__)

DEFAULT_GENESIS_TIMESTAMP = 1_700_000_000
DEFAULT_BLOCK_TIME = 2


@dataclass
class _Round:
    round_id: int
    stats_override: Optional[RoundStats] = None


class LedgerSimulator:
    """Deterministic fake chain for tests and dry runs."""

    def __init__(
        self,
        *,
        genesis_timestamp: int = DEFAULT_GENESIS_TIMESTAMP,
        block_time: int = DEFAULT_BLOCK_TIME,
        initial_blocks: int = 1,
        round_id: int = 1,
        bounty_balance: int = 0,
        allowance: int = 0,
        decimals: int = 18,
        max_bounty: Optional[int] = None,
        emit_bounty_event: bool = True,
        blocks_per_head_read: int = 0,
    ):
        self.block_time = block_time
        self.balance = bounty_balance
        self.allowance = allowance
        self.decimals = decimals
        self.max_bounty = max_bounty
        self.emit_bounty_event = emit_bounty_event
        # Advances the chain every time the head is read, standing in for
        # wall-clock block production.
        self.blocks_per_head_read = blocks_per_head_read

        self._genesis_timestamp = genesis_timestamp
        self._blocks: List[ConfirmedBlock] = []
        self._events: List[PurchaseEvent] = []
        self._log_counts: Dict[int, int] = defaultdict(int)
        self._round = _Round(round_id)
        self._failures: Dict[str, List[Exception]] = defaultdict(list)
        self._transfers: List[BountyTransfer] = []
        self._receipts: Dict[str, ChainReceipt] = {}
        self._reverted: Set[str] = set()

        self.head_reads = 0
        self.submitted: List[tuple] = []
        self.log_queries: List[tuple[int, int]] = []

        self.mine(max(initial_blocks, 1))

    # -------- simulation controls --------
    @property
    def head(self) -> int:
        return self._blocks[-1].number

    @property
    def round_id(self) -> int:
        return self._round.round_id

    def mine(self, count: int = 1, *, timestamp: Optional[int] = None) -> ConfirmedBlock:
        """Append ``count`` blocks and return the last one."""
        for _ in range(count):
            number = len(self._blocks)
            if not self._blocks:
                block_ts = self._genesis_timestamp
            else:
                block_ts = self._blocks[-1].timestamp + self.block_time
            if timestamp is not None:
                if number and timestamp < self._blocks[-1].timestamp:
                    raise ValueError("block timestamps must not decrease")
                block_ts = timestamp
            digest = hashlib.sha256(f"block:{number}:{block_ts}".encode()).hexdigest()
            self._blocks.append(ConfirmedBlock(number=number, hash="0x" + digest, timestamp=block_ts))
        return self._blocks[-1]

    def mine_until(self, timestamp: int) -> ConfirmedBlock:
        """Mine blocks until the head timestamp reaches ``timestamp``."""
        while self._blocks[-1].timestamp < timestamp:
            self.mine()
        return self._blocks[-1]

    def buy(self, buyer: str, amount: int = 1, *, round_id: Optional[int] = None) -> PurchaseEvent:
        """Record a purchase in a freshly mined block."""
        block = self.mine()
        return self._log_purchase(buyer, amount, round_id, block.number)

    def buy_batch(self, purchases: List[tuple[str, int]], *, round_id: Optional[int] = None) -> None:
        """Record several purchases in one new block, in the given order."""
        block = self.mine()
        for buyer, amount in purchases:
            self._log_purchase(buyer, amount, round_id, block.number)

    def _log_purchase(self, buyer: str, amount: int, round_id: Optional[int], block_number: int) -> PurchaseEvent:
        event = PurchaseEvent(
            buyer=buyer,
            amount=amount,
            round_id=self.round_id if round_id is None else round_id,
            block_number=block_number,
            log_index=self._log_counts[block_number],
        )
        self._log_counts[block_number] += 1
        self._events.append(event)
        return event

    def override_round_stats(self, **fields) -> None:
        """Report ``getRoundStats`` values that differ from the event history."""
        base = self._computed_stats(self.round_id)
        values = {**base.__dict__, **fields}
        self._round.stats_override = RoundStats(**values)

    def fail_next(self, method: str, exc: Optional[Exception] = None, times: int = 1) -> None:
        """Make the next ``times`` calls to ``method`` raise ``exc``."""
        error = exc or LedgerError(f"simulated failure in {method}")
        self._failures[method].extend([error] * times)

    def _maybe_fail(self, method: str) -> None:
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    # -------- LedgerClient surface --------
    def get_block_number(self) -> int:
        self._maybe_fail("get_block_number")
        self.head_reads += 1
        if self.blocks_per_head_read and self.head_reads > 1:
            self.mine(self.blocks_per_head_read)
        return self.head

    def get_block(self, number: int) -> Optional[ConfirmedBlock]:
        self._maybe_fail("get_block")
        if number < 0 or number >= len(self._blocks):
            return None
        return self._blocks[number]

    def get_purchase_events(self, from_block: int, to_block: int) -> List[PurchaseEvent]:
        self._maybe_fail("get_purchase_events")
        self.log_queries.append((from_block, to_block))
        return [e for e in self._events if from_block <= e.block_number <= to_block]

    def current_round_id(self) -> int:
        self._maybe_fail("current_round_id")
        return self.round_id

    def get_round_stats(self, round_id: int) -> RoundStats:
        self._maybe_fail("get_round_stats")
        if round_id == self.round_id and self._round.stats_override is not None:
            return self._round.stats_override
        return self._computed_stats(round_id)

    def _computed_stats(self, round_id: int) -> RoundStats:
        events = [e for e in self._events if e.round_id == round_id]
        return RoundStats(
            round_id=round_id,
            total_participants=len({e.buyer for e in events}),
            total_tickets=sum(e.amount for e in events),
            pool_balance=self.balance,
            max_bounty=self.max_bounty or 0,
        )

    def max_bounty_amount(self) -> int:
        self._maybe_fail("max_bounty_amount")
        return self.max_bounty or 0

    def bounty_balance(self) -> int:
        self._maybe_fail("bounty_balance")
        return self.balance

    def bounty_allowance(self) -> int:
        self._maybe_fail("bounty_allowance")
        return self.allowance

    def token_decimals(self) -> int:
        self._maybe_fail("token_decimals")
        return self.decimals

    def get_bounty_transfers(self, from_block: int, to_block: int) -> List[BountyTransfer]:
        self._maybe_fail("get_bounty_transfers")
        return [t for t in self._transfers if from_block <= t.block_number <= to_block]

    def transfer_bounty_to_winner(
        self,
        winner: str,
        *,
        confirmations: int,
        on_signed: Optional[Callable[[str], None]] = None,
    ) -> ChainReceipt:
        self._maybe_fail("transfer_bounty_to_winner")
        tx_hash = self._next_tx_hash("transferBountyToWinner")
        if on_signed is not None:
            on_signed(tx_hash)
        # Signed but never reached the node.
        self._maybe_fail("send_transaction")
        self.submitted.append(("transferBountyToWinner", winner))

        block = self.mine()
        if self.allowance < self.balance:
            self._reverted.add(tx_hash)
            raise TransactionError(
                "transferBountyToWinner reverted: allowance too low",
                tx_hash=tx_hash,
                reverted=True,
            )

        prize = self.balance if self.max_bounty is None else min(self.balance, self.max_bounty)
        burn = self.balance - prize
        self.allowance -= self.balance
        self.balance = 0

        events: tuple[ChainEvent, ...] = ()
        if self.emit_bounty_event:
            self._transfers.append(
                BountyTransfer(
                    round_id=self.round_id,
                    winner=winner,
                    prize_amount=prize,
                    burn_amount=burn,
                    tx_hash=tx_hash,
                    block_number=block.number,
                )
            )
            events = (
                ChainEvent(
                    name="BountyTransferred",
                    args={
                        "roundId": self.round_id,
                        "winner": winner,
                        "prizeAmount": prize,
                        "burnAmount": burn,
                    },
                ),
            )
        self._receipts[tx_hash] = ChainReceipt(tx_hash=tx_hash, block_number=block.number, events=events)
        # Mined, but the confirmation wait may still fail.
        self._maybe_fail("confirm_transfer")
        return self.wait_for_transaction(tx_hash, confirmations=confirmations)

    def start_new_round(self, *, confirmations: int = 1) -> ChainReceipt:
        self._maybe_fail("start_new_round")
        tx_hash = self._next_tx_hash("startNewRound")
        self.submitted.append(("startNewRound",))
        block = self.mine()
        self._round = _Round(self.round_id + 1)
        events = (ChainEvent(name="NewRoundStarted", args={"newRoundId": self.round_id}),)
        self._receipts[tx_hash] = ChainReceipt(tx_hash=tx_hash, block_number=block.number, events=events)
        return self.wait_for_transaction(tx_hash, confirmations=confirmations)

    def wait_for_transaction(self, tx_hash: str, *, confirmations: int) -> ChainReceipt:
        self._maybe_fail("wait_for_transaction")
        if tx_hash in self._reverted:
            raise TransactionError(f"Transaction {tx_hash} reverted", tx_hash=tx_hash, reverted=True)
        receipt = self._receipts.get(tx_hash)
        if receipt is None:
            raise TransactionError(f"Transaction {tx_hash} not mined", tx_hash=tx_hash)
        target = receipt.block_number + max(confirmations, 1) - 1
        if self.head < target:
            self.mine(target - self.head)
        logger.debug("Simulated %s confirmed in block %d", tx_hash, receipt.block_number)
        return receipt

    def transaction_known(self, tx_hash: str) -> bool:
        self._maybe_fail("transaction_known")
        return tx_hash in self._receipts or tx_hash in self._reverted

    def _next_tx_hash(self, description: str) -> str:
        return "0x" + hashlib.sha256(
            f"tx:{description}:{self.head}:{len(self.submitted)}".encode()
        ).hexdigest()
