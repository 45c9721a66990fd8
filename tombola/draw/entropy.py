"""Wait for confirmed blocks produced after a reference time.

The hashes of these blocks did not exist when tickets were sold, which is
what makes the seed unpredictable to buyers and to the operator.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Optional

from ..blockchain.types import ConfirmedBlock
from ..errors import EntropyTimeoutError, LedgerError

if TYPE_CHECKING:
    from ..blockchain.api import LedgerClient

logger = logging.getLogger(__name__)


def find_first_block_at_or_after(
    ledger: "LedgerClient", timestamp: int, head: int
) -> Optional[ConfirmedBlock]:
    """Binary-search ``[0, head]`` for the earliest block with ``timestamp >= timestamp``.

    Returns ``None`` when every block up to ``head`` is older.

    Raises
    ------
    LedgerError
        If a block inside the search range is missing on the node.
    """
    low, high = 0, head
    first: Optional[ConfirmedBlock] = None
    while low <= high:
        mid = (low + high) // 2
        block = ledger.get_block(mid)
        if block is None:
            raise LedgerError(f"Block {mid} is not available below head {head}")
        if block.timestamp >= timestamp:
            first = block
            high = mid - 1
        else:
            low = mid + 1
    return first


def collect_confirmed_blocks(
    ledger: "LedgerClient",
    first: ConfirmedBlock,
    n: int,
    confirmations: int,
    head: int,
) -> list[ConfirmedBlock]:
    """Take up to ``n`` consecutive blocks from ``first`` that are ``confirmations`` deep."""
    blocks: list[ConfirmedBlock] = []
    number = first.number
    while len(blocks) < n and number + confirmations <= head:
        block = first if number == first.number else ledger.get_block(number)
        if block is None:
            break
        blocks.append(block)
        number += 1
    return blocks


def await_confirmed_blocks(
    ledger: "LedgerClient",
    reference_timestamp: int,
    n: int,
    confirmations: int,
    *,
    poll_interval: float = 15.0,
    cancel: Optional[threading.Event] = None,
    timeout: Optional[float] = None,
    on_retry: Optional[Callable[[int], None]] = None,
) -> list[ConfirmedBlock]:
    """Block until ``n`` consecutive confirmed blocks exist after ``reference_timestamp``.

    Each attempt reads the head, binary-searches the first block at or after
    the reference time and collects consecutive blocks at least
    ``confirmations`` deep. If fewer than ``n`` qualify the attempt is
    discarded and repeated from scratch after ``poll_interval`` seconds.
    Ledger errors during an attempt are logged and retried the same way.

    Without ``cancel`` or ``timeout`` this waits for as long as it takes.

    Parameters
    ----------
    reference_timestamp : int
        Unix time the blocks must not predate.
    n : int
        Number of blocks to return.
    confirmations : int
        Required depth: ``block.number + confirmations <= head``.
    cancel : Optional[threading.Event]
        Setting the event aborts the wait.
    timeout : Optional[float]
        Seconds after which the wait gives up.
    on_retry : Optional[Callable[[int], None]]
        Called with the attempt number before each pause.

    Returns
    -------
    list[ConfirmedBlock]
        Exactly ``n`` blocks in ascending block order.

    Raises
    ------
    EntropyTimeoutError
        When ``cancel`` is set or ``timeout`` elapses first.
    """
    if n <= 0:
        raise ValueError("n must be positive")

    logger.info(
        "Waiting for %d blocks with %d confirmations after %s",
        n,
        confirmations,
        datetime.fromtimestamp(reference_timestamp, tz=timezone.utc).isoformat(),
    )
    deadline = time.monotonic() + timeout if timeout is not None else None
    attempt = 0
    while True:
        if cancel is not None and cancel.is_set():
            raise EntropyTimeoutError("Entropy wait cancelled")
        attempt += 1
        blocks: list[ConfirmedBlock] = []
        try:
            head = ledger.get_block_number()
            first = find_first_block_at_or_after(ledger, reference_timestamp, head)
            if first is not None:
                blocks = collect_confirmed_blocks(ledger, first, n, confirmations, head)
            logger.debug(
                "Entropy attempt %d: head=%d first=%s qualifying=%d",
                attempt,
                head,
                first.number if first is not None else None,
                len(blocks),
            )
        except LedgerError as exc:
            logger.warning("Entropy attempt %d failed: %s", attempt, exc)

        if len(blocks) >= n:
            for index, block in enumerate(blocks, start=1):
                logger.info("Entropy block #%d: %d %s", index, block.number, block.hash)
            return blocks

        if on_retry is not None:
            on_retry(attempt)
        delay = poll_interval
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise EntropyTimeoutError(
                    f"Only {len(blocks)} of {n} confirmed blocks after {timeout}s"
                )
            delay = min(delay, remaining)
        if cancel is not None:
            if cancel.wait(delay):
                raise EntropyTimeoutError("Entropy wait cancelled")
        elif delay > 0:
            time.sleep(delay)


__all__ = [
    "await_confirmed_blocks",
    "collect_confirmed_blocks",
    "find_first_block_at_or_after",
]
