from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..blockchain.api import LedgerClient

logger = logging.getLogger(__name__)


def advance_round(ledger: "LedgerClient", *, confirmations: int = 1) -> str:
    """Start the next round on-chain and return the transaction hash."""
    logger.info("Starting new round")
    receipt = ledger.start_new_round(confirmations=confirmations)
    logger.info("New round started: tx=%s", receipt.tx_hash)
    return receipt.tx_hash


__all__ = ["advance_round"]
