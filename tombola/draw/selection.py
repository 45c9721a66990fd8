"""Seed derivation and winner selection.

Anyone holding the public block hashes and the ticket order can repeat
these computations and must arrive at the same winner.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from web3 import Web3


@dataclass(frozen=True)
class WinnerSelection:
    """Outcome of :func:`select_winner`.

    Attributes
    ----------
    winner : str
        Address holding the winning ticket.
    winner_index : int
        ``seed_int % ticket_count``.
    seed : str
        keccak256 seed as 0x-prefixed hex.
    seed_int : int
        The seed read as an unsigned big-endian integer.
    ticket_count : int
        Number of tickets the index was reduced modulo.
    """

    winner: str
    winner_index: int
    seed: str
    seed_int: int
    ticket_count: int


def _hash_bytes(block_hash: str) -> bytes:
    digits = block_hash[2:] if block_hash[:2].lower() == "0x" else block_hash
    try:
        return bytes.fromhex(digits)
    except ValueError as exc:
        raise ValueError(f"Invalid block hash: {block_hash!r}") from exc


def combine_seed(block_hashes: Sequence[str]) -> bytes:
    """keccak256 of the raw hash bytes concatenated in the given order."""
    if not block_hashes:
        raise ValueError("At least one block hash is required")
    return bytes(Web3.keccak(b"".join(_hash_bytes(h) for h in block_hashes)))


def select_winner(tickets: Sequence[str], block_hashes: Sequence[str]) -> WinnerSelection:
    """Pick the winning ticket for ``tickets`` from ``block_hashes``.

    Raises
    ------
    ValueError
        If ``tickets`` is empty or a hash is not valid hex.
    """
    if not tickets:
        raise ValueError("Cannot select a winner from an empty ticket sequence")
    seed = combine_seed(block_hashes)
    seed_int = int.from_bytes(seed, "big")
    index = seed_int % len(tickets)
    return WinnerSelection(
        winner=tickets[index],
        winner_index=index,
        seed="0x" + seed.hex(),
        seed_int=seed_int,
        ticket_count=len(tickets),
    )


def verify_selection(
    tickets: Sequence[str], block_hashes: Sequence[str], winner_index: int
) -> bool:
    """Return whether ``winner_index`` is the index the public inputs produce."""
    return select_winner(tickets, block_hashes).winner_index == winner_index


__all__ = ["WinnerSelection", "combine_seed", "select_winner", "verify_selection"]
