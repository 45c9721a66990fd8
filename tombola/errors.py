"""Exception hierarchy for the draw engine.

Failures fall into a few families that the orchestrator treats differently:

* :class:`LedgerError` is transient. The scan or entropy wait is retried, or
  the next scheduled invocation starts over.
* :class:`InsufficientAllowanceError` and :class:`ProtocolViolationError` are
  fatal for the current run and leave the round untouched.
* :class:`DrawRecordExistsError` guards the one-record-per-round rule.
"""

from __future__ import annotations

from decimal import Decimal, localcontext


class TombolaError(Exception):
    """Base class for all draw engine errors."""


class LedgerError(TombolaError):
    """An RPC call to the ledger failed or returned unusable data."""


class TicketOrderError(LedgerError):
    """Purchase events were returned out of chain order."""


class TransactionError(TombolaError):
    """A submitted transaction reverted or was not confirmed in time."""

    def __init__(
        self, message: str, tx_hash: str | None = None, *, reverted: bool = False
    ) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash
        # Mined with a failed status: no funds moved.
        self.reverted = reverted


class InsufficientAllowanceError(TombolaError):
    """The bounty wallet has not approved enough tokens for the payout."""

    def __init__(self, allowance: int, balance: int, decimals: int = 18) -> None:
        self.allowance = allowance
        self.balance = balance
        self.decimals = decimals
        super().__init__(
            "Insufficient allowance: the ticket sale contract may spend "
            f"{format_units(allowance, decimals)} tokens from the bounty wallet "
            f"but needs {format_units(balance, decimals)}. Increase the "
            "allowance on the bounty wallet."
        )


class ProtocolViolationError(TombolaError):
    """A confirmed transaction did not emit the event the contract promises."""


class EntropyTimeoutError(TombolaError):
    """Waiting for confirmed blocks was cancelled or timed out."""


class DrawRecordExistsError(TombolaError):
    """A draw record for the round has already been written."""

    def __init__(self, round_id: int) -> None:
        super().__init__(f"Draw record for round {round_id} already exists")
        self.round_id = round_id


def format_units(value: int, decimals: int) -> str:
    """Render an integer token amount with ``decimals`` fractional digits."""
    # uint256 amounts have up to 78 digits, beyond the default precision.
    with localcontext() as ctx:
        ctx.prec = 100
        amount = Decimal(value).scaleb(-max(decimals, 0)).normalize()
    return f"{amount:f}"
