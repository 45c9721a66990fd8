"""Runtime configuration for the draw engine.

All settings come from environment variables (optionally through a ``.env``
file) and are gathered into one :class:`DrawConfig` that callers pass to each
component explicitly.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from .db.utils import resolve_sqlite_url

ROOT_DIR = Path(__file__).resolve().parents[1]

DEFAULT_RPC_URL = "https://rpc.testnet.nexera.network"
DEFAULT_TICKET_SALE_ADDRESS = "0x9904D652640074949E7063a3a172c174c13c6165"
DEFAULT_TOKEN_ADDRESS = "0x6EB2C1fE4e3B48af4905A0209658810B61343438"
DEFAULT_BOUNTY_WALLET = "0x20dd4f9857A737E4b762bB8857499e22CdA70Edc"
DEFAULT_DB_URL = "sqlite:///./winners.db"


@dataclass(frozen=True)
class DrawConfig:
    """Settings shared by the ledger client, the draw steps and the scheduler.

    Attributes
    ----------
    rpc_url : str
        JSON-RPC endpoint of the chain.
    ticket_sale_address, token_address, bounty_wallet : str
        Ticket sale contract, prize token and the wallet funding the prize.
    private_key : Optional[str]
        Operator key used to sign payout and round transactions.
    log_batch_size : int
        Number of blocks per ``eth_getLogs`` page.
    poll_interval : float
        Seconds between attempts while waiting for confirmed blocks.
    confirmations : int
        Depth required for entropy blocks and for the payout transaction.
    entropy_blocks : int
        Number of block hashes combined into the seed.
    min_participants : int
        Distinct buyers required before a round is drawn.
    entropy_timeout : Optional[float]
        Upper bound on the entropy wait; ``None`` waits indefinitely.
    stale_after : timedelta
        Age after which a ``running`` status is considered abandoned.
    """

    rpc_url: str = DEFAULT_RPC_URL
    ticket_sale_address: str = DEFAULT_TICKET_SALE_ADDRESS
    token_address: str = DEFAULT_TOKEN_ADDRESS
    bounty_wallet: str = DEFAULT_BOUNTY_WALLET
    private_key: Optional[str] = None
    database_url: str = DEFAULT_DB_URL
    log_batch_size: int = 50_000
    poll_interval: float = 15.0
    confirmations: int = 3
    entropy_blocks: int = 5
    min_participants: int = 5
    round_confirmations: int = 1
    rpc_timeout: int = 45
    tx_timeout: float = 600.0
    entropy_timeout: Optional[float] = None
    stale_after: timedelta = timedelta(hours=24)
    schedule_day_of_week: str = "sun"
    schedule_hour: int = 20
    schedule_minute: int = 0

    def __post_init__(self) -> None:
        if self.log_batch_size <= 0:
            raise ValueError("log_batch_size must be positive")
        if self.entropy_blocks <= 0:
            raise ValueError("entropy_blocks must be positive")
        if self.confirmations < 0 or self.round_confirmations < 0:
            raise ValueError("confirmation depths must be non-negative")

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        *,
        require_signer: bool = True,
    ) -> "DrawConfig":
        """Build a config from ``environ`` (defaults to ``os.environ``).

        Raises
        ------
        ValueError
            If ``PRIVATE_KEY`` is missing while ``require_signer`` is set, or a
            numeric variable cannot be parsed.
        """
        if environ is None:
            load_dotenv()
            environ = os.environ

        private_key = environ.get("PRIVATE_KEY") or None
        if require_signer and not private_key:
            raise ValueError("Environment variable 'PRIVATE_KEY' is not set")

        entropy_timeout = environ.get("ENTROPY_TIMEOUT")
        return cls(
            rpc_url=environ.get("RPC_URL", DEFAULT_RPC_URL),
            ticket_sale_address=environ.get(
                "TICKET_SALE_ADDRESS", DEFAULT_TICKET_SALE_ADDRESS
            ),
            token_address=environ.get("TOKEN_ADDRESS", DEFAULT_TOKEN_ADDRESS),
            bounty_wallet=environ.get("BOUNTY_WALLET", DEFAULT_BOUNTY_WALLET),
            private_key=private_key,
            database_url=resolve_sqlite_url(
                environ.get("DB_URL", DEFAULT_DB_URL), ROOT_DIR
            ),
            log_batch_size=_int(environ, "LOG_BATCH_SIZE", 50_000),
            poll_interval=_float(environ, "POLL_INTERVAL", 15.0),
            confirmations=_int(environ, "CONFIRMATIONS", 3),
            entropy_blocks=_int(environ, "ENTROPY_BLOCKS", 5),
            min_participants=_int(environ, "MIN_PARTICIPANTS", 5),
            round_confirmations=_int(environ, "ROUND_CONFIRMATIONS", 1),
            rpc_timeout=_int(environ, "RPC_TIMEOUT", 45),
            tx_timeout=_float(environ, "TX_TIMEOUT", 600.0),
            entropy_timeout=(
                _float(environ, "ENTROPY_TIMEOUT", 0.0) if entropy_timeout else None
            ),
            stale_after=timedelta(hours=_float(environ, "STALE_AFTER_HOURS", 24.0)),
            schedule_day_of_week=environ.get("SCHEDULE_DAY_OF_WEEK", "sun"),
            schedule_hour=_int(environ, "SCHEDULE_HOUR", 20),
            schedule_minute=_int(environ, "SCHEDULE_MINUTE", 0),
        )


def _int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name!r} must be an integer") from exc


def _float(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"Environment variable {name!r} must be a number") from exc
