"""The draw pipeline: tickets, entropy, selection, payout and orchestration."""

from .engine import DrawEngine, DrawOutcome, DrawResult, PayoutNotRecordedError
from .entropy import await_confirmed_blocks, find_first_block_at_or_after
from .payout import PayoutResult, execute_payout
from .report import DrawReport
from .rounds import advance_round
from .selection import WinnerSelection, combine_seed, select_winner, verify_selection
from .tickets import fetch_tickets, group_ticket_indexes

__all__ = [
    "DrawEngine",
    "DrawOutcome",
    "DrawReport",
    "DrawResult",
    "PayoutNotRecordedError",
    "PayoutResult",
    "WinnerSelection",
    "advance_round",
    "await_confirmed_blocks",
    "combine_seed",
    "execute_payout",
    "fetch_tickets",
    "find_first_block_at_or_after",
    "group_ticket_indexes",
    "select_winner",
    "verify_selection",
]
