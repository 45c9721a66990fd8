import logging
from contextlib import contextmanager
from typing import Iterator

import requests
from web3 import Web3
from web3.exceptions import Web3Exception

from ..errors import LedgerError

logger = logging.getLogger(__name__)


def _uint(name: str) -> dict:
    return {"name": name, "type": "uint256"}


TICKET_SALE_ABI = [
    {
        "type": "function",
        "name": "currentRoundId",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [_uint("")],
    },
    {
        "type": "function",
        "name": "transferBountyToWinner",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "winner", "type": "address"}],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "startNewRound",
        "stateMutability": "nonpayable",
        "inputs": [],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "getRoundStats",
        "stateMutability": "view",
        "inputs": [_uint("_roundId")],
        "outputs": [
            {
                "name": "",
                "type": "tuple",
                "components": [
                    _uint("currentRoundId"),
                    _uint("totalParticipants"),
                    _uint("totalTickets"),
                    _uint("roundBurned"),
                    _uint("allTimeBurned"),
                    _uint("poolBalance"),
                    _uint("maxBounty"),
                    _uint("ticketPrice"),
                    _uint("minBalanceToParticipate"),
                ],
            }
        ],
    },
    {
        "type": "function",
        "name": "maxBountyAmountINKY",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [_uint("")],
    },
    {
        "type": "event",
        "name": "TicketsPurchased",
        "anonymous": False,
        "inputs": [
            {"name": "buyer", "type": "address", "indexed": True},
            {"name": "amount", "type": "uint256", "indexed": False},
            {"name": "totalCost", "type": "uint256", "indexed": False},
            {"name": "roundId", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "BountyTransferred",
        "anonymous": False,
        "inputs": [
            {"name": "roundId", "type": "uint256", "indexed": False},
            {"name": "winner", "type": "address", "indexed": True},
            {"name": "prizeAmount", "type": "uint256", "indexed": False},
            {"name": "burnAmount", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "NewRoundStarted",
        "anonymous": False,
        "inputs": [{"name": "newRoundId", "type": "uint256", "indexed": False}],
    },
]

TOKEN_ABI = [
    {
        "type": "function",
        "name": "balanceOf",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [_uint("")],
    },
    {
        "type": "function",
        "name": "decimals",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
    {
        "type": "function",
        "name": "allowance",
        "stateMutability": "view",
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "outputs": [_uint("")],
    },
]

# Events the ticket sale contract emits from signed calls.
RECEIPT_EVENTS = ("BountyTransferred", "NewRoundStarted")


def open_web3(rpc_url: str, timeout: int = 45) -> Web3:
    """Connect to ``rpc_url`` through a dedicated requests session.

    Parameters
    ----------
    rpc_url : str
        HTTP(S) JSON-RPC endpoint.
    timeout : int
        Per-request timeout in seconds.

    Returns
    -------
    Web3
        A client bound to the endpoint. No request is made here; connection
        problems surface on the first call as :class:`LedgerError`.
    """
    if not rpc_url:
        raise ValueError("rpc_url must not be empty")
    session = requests.Session()
    provider = Web3.HTTPProvider(
        rpc_url, request_kwargs={"timeout": timeout}, session=session
    )
    logger.debug("Web3 provider configured for %s", rpc_url)
    return Web3(provider)


@contextmanager
def rpc_errors(description: str) -> Iterator[None]:
    """Re-raise transport and node failures as :class:`LedgerError`."""
    try:
        yield
    except (Web3Exception, requests.RequestException) as exc:
        logger.warning("RPC call failed (%s): %s", description, exc)
        raise LedgerError(f"{description} failed: {exc}") from exc
