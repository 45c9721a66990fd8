"""Rebuild a round's ordered ticket sequence from purchase events."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional, Sequence

from ..errors import TicketOrderError

if TYPE_CHECKING:
    from ..blockchain.api import LedgerClient

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 50_000


def fetch_tickets(
    ledger: "LedgerClient",
    round_id: int,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> list[str]:
    """Return one buyer address per ticket of ``round_id``, in purchase order.

    The whole history from block 0 to the current head is scanned in
    windows of ``batch_size`` blocks. A purchase of ``n`` tickets contributes
    ``n`` consecutive entries. The position of an entry in the returned list
    is its ticket index, which the winner index refers to.

    Parameters
    ----------
    ledger : LedgerClient
        Ledger to read ``TicketsPurchased`` events from.
    round_id : int
        Round whose tickets are collected.
    batch_size : int
        Number of blocks requested per log query.

    Raises
    ------
    LedgerError
        If any page cannot be fetched. No partial sequence is returned.
    TicketOrderError
        If the node returns events out of ``(block, log index)`` order.
    """
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")

    head = ledger.get_block_number()
    tickets: list[str] = []
    last_position: Optional[tuple[int, int]] = None
    pages = 0

    from_block = 0
    while from_block <= head:
        to_block = min(from_block + batch_size - 1, head)
        events = ledger.get_purchase_events(from_block, to_block)
        pages += 1
        for event in events:
            position = (event.block_number, event.log_index)
            if last_position is not None and position <= last_position:
                raise TicketOrderError(
                    f"Purchase event at block {event.block_number} log "
                    f"{event.log_index} arrived after {last_position}; ticket "
                    "order cannot be trusted"
                )
            last_position = position
            if event.round_id != round_id:
                continue
            tickets.extend([event.buyer] * event.amount)
        from_block = to_block + 1

    logger.info(
        "Round %d: %d tickets found in %d log pages up to block %d",
        round_id,
        len(tickets),
        pages,
        head,
    )
    return tickets


def group_ticket_indexes(tickets: Sequence[str]) -> dict[str, list[int]]:
    """Map each participant to its ticket indexes, in first-purchase order."""
    grouped: dict[str, list[int]] = {}
    for index, address in enumerate(tickets):
        grouped.setdefault(address, []).append(index)
    return grouped


__all__ = ["DEFAULT_BATCH_SIZE", "fetch_tickets", "group_ticket_indexes"]
