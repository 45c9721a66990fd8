"""Prize transfer through the ticket sale contract."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from ..errors import InsufficientAllowanceError, ProtocolViolationError, format_units
from .tickets import DEFAULT_BATCH_SIZE

if TYPE_CHECKING:
    from ..blockchain.api import LedgerClient
    from ..blockchain.types import BountyTransfer, ChainReceipt

logger = logging.getLogger(__name__)

BOUNTY_EVENT = "BountyTransferred"


@dataclass(frozen=True)
class FundingSnapshot:
    balance: int
    allowance: int
    decimals: int

    @property
    def sufficient(self) -> bool:
        return self.allowance >= self.balance


@dataclass(frozen=True)
class PayoutResult:
    """Amounts actually moved, as reported by the contract event."""

    tx_hash: str
    prize_amount: int
    burn_amount: int


def check_funding(ledger: "LedgerClient") -> FundingSnapshot:
    """Read the bounty wallet balance, its allowance and the token decimals."""
    return FundingSnapshot(
        balance=ledger.bounty_balance(),
        allowance=ledger.bounty_allowance(),
        decimals=ledger.token_decimals(),
    )


def payout_from_receipt(receipt: "ChainReceipt") -> PayoutResult:
    """Read the paid amounts from a confirmed transfer.

    Raises
    ------
    ProtocolViolationError
        If the receipt carries no ``BountyTransferred`` event.
    """
    event = receipt.find_event(BOUNTY_EVENT)
    if event is None:
        raise ProtocolViolationError(
            f"{BOUNTY_EVENT} event not found in transaction {receipt.tx_hash}; "
            "the contract did not emit the expected event"
        )
    return PayoutResult(
        tx_hash=receipt.tx_hash,
        prize_amount=int(event.args["prizeAmount"]),
        burn_amount=int(event.args["burnAmount"]),
    )


def execute_payout(
    ledger: "LedgerClient",
    winner: str,
    *,
    confirmations: int,
    on_signed: Optional[Callable[[str], None]] = None,
) -> PayoutResult:
    """Pay the bounty to ``winner`` and return what the contract reports it paid.

    The contract caps the prize and burns any surplus, so the amounts come
    from the ``BountyTransferred`` event rather than the pre-flight balance.
    ``on_signed`` is handed the transaction hash before broadcast; if it
    raises, the transfer is not sent.

    Raises
    ------
    InsufficientAllowanceError
        If the allowance is below the balance. Nothing is submitted.
    ProtocolViolationError
        If the confirmed transaction carries no ``BountyTransferred`` event.
    LedgerError, TransactionError
        If the submission or the confirmation wait fails.
    """
    funding = check_funding(ledger)
    if not funding.sufficient:
        raise InsufficientAllowanceError(funding.allowance, funding.balance, funding.decimals)

    logger.info(
        "Transferring bounty of %s tokens to winner %s",
        format_units(funding.balance, funding.decimals),
        winner,
    )
    receipt = ledger.transfer_bounty_to_winner(
        winner, confirmations=confirmations, on_signed=on_signed
    )
    result = payout_from_receipt(receipt)
    logger.info(
        "Bounty transfer confirmed: prize=%s burn=%s tx=%s",
        format_units(result.prize_amount, funding.decimals),
        format_units(result.burn_amount, funding.decimals),
        result.tx_hash,
    )
    return result


def find_bounty_transfers(
    ledger: "LedgerClient", round_id: int, *, batch_size: int = DEFAULT_BATCH_SIZE
) -> list["BountyTransfer"]:
    """Return every ``BountyTransferred`` log for ``round_id`` from block 0 to the head."""
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")
    head = ledger.get_block_number()
    transfers: list["BountyTransfer"] = []
    from_block = 0
    while from_block <= head:
        to_block = min(from_block + batch_size - 1, head)
        transfers.extend(
            t for t in ledger.get_bounty_transfers(from_block, to_block) if t.round_id == round_id
        )
        from_block = to_block + 1
    return transfers


__all__ = [
    "FundingSnapshot",
    "PayoutResult",
    "check_funding",
    "execute_payout",
    "find_bounty_transfers",
    "payout_from_receipt",
]
