"""Ledger access: the web3 client and an in-memory simulator."""

from .api import LedgerClient
from .simulator import LedgerSimulator
from .types import (
    BountyTransfer,
    ChainEvent,
    ChainReceipt,
    ConfirmedBlock,
    PurchaseEvent,
    RoundStats,
)

__all__ = [
    "BountyTransfer",
    "ChainEvent",
    "ChainReceipt",
    "ConfirmedBlock",
    "LedgerClient",
    "LedgerSimulator",
    "PurchaseEvent",
    "RoundStats",
]
