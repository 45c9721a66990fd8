import logging
import threading
import time
from typing import TYPE_CHECKING, Any, Callable, Optional

from eth_account import Account
from web3 import Web3
from web3.exceptions import BlockNotFound, TimeExhausted, TransactionNotFound
from web3.logs import DISCARD

from ..errors import LedgerError, TransactionError
from .types import (
    BountyTransfer,
    ChainEvent,
    ChainReceipt,
    ConfirmedBlock,
    PurchaseEvent,
    RoundStats,
)
from .utils import RECEIPT_EVENTS, TICKET_SALE_ABI, TOKEN_ABI, open_web3, rpc_errors

if TYPE_CHECKING:
    from ..config import DrawConfig

logger = logging.getLogger(__name__)


class LedgerClient:
    """Read and write access to the ticket sale contract and the prize token.

    Every RPC failure is raised as :class:`~tombola.errors.LedgerError`.
    Signed calls are serialized through a lock so that the single operator
    key never has two transactions in flight.
    """

    def __init__(
        self,
        config: "DrawConfig",
        *,
        web3: Optional[Web3] = None,
        poll_latency: float = 2.0,
    ):
        self.config = config
        self.w3 = web3 or open_web3(config.rpc_url, timeout=config.rpc_timeout)
        self.poll_latency = poll_latency

        self.ticket_sale_address = Web3.to_checksum_address(config.ticket_sale_address)
        self.bounty_wallet = Web3.to_checksum_address(config.bounty_wallet)
        self.ticket_sale = self.w3.eth.contract(
            address=self.ticket_sale_address, abi=TICKET_SALE_ABI
        )
        self.token = self.w3.eth.contract(
            address=Web3.to_checksum_address(config.token_address), abi=TOKEN_ABI
        )
        self._account = (
            Account.from_key(config.private_key) if config.private_key else None
        )
        self._signer_lock = threading.Lock()

    @property
    def signer_address(self) -> Optional[str]:
        return self._account.address if self._account is not None else None

    # -------- blocks and logs --------
    def get_block_number(self) -> int:
        with rpc_errors("eth_blockNumber"):
            return int(self.w3.eth.block_number)

    def get_block(self, number: int) -> Optional[ConfirmedBlock]:
        """Return block ``number``, or ``None`` when the node does not have it."""
        try:
            with rpc_errors(f"eth_getBlockByNumber({number})"):
                block = self.w3.eth.get_block(number)
        except LedgerError as exc:
            if isinstance(exc.__cause__, BlockNotFound):
                return None
            raise
        return ConfirmedBlock(
            number=int(block["number"]),
            hash=Web3.to_hex(block["hash"]),
            timestamp=int(block["timestamp"]),
        )

    def get_purchase_events(self, from_block: int, to_block: int) -> list[PurchaseEvent]:
        """Return ``TicketsPurchased`` logs in ``[from_block, to_block]`` as emitted."""
        with rpc_errors(f"eth_getLogs({from_block}..{to_block})"):
            logs = self.ticket_sale.events.TicketsPurchased().get_logs(
                from_block=from_block, to_block=to_block
            )
        return [
            PurchaseEvent(
                buyer=Web3.to_checksum_address(log["args"]["buyer"]),
                amount=int(log["args"]["amount"]),
                round_id=int(log["args"]["roundId"]),
                block_number=int(log["blockNumber"]),
                log_index=int(log["logIndex"]),
            )
            for log in logs
        ]

    def get_bounty_transfers(self, from_block: int, to_block: int) -> list[BountyTransfer]:
        """Return ``BountyTransferred`` logs in ``[from_block, to_block]``."""
        with rpc_errors(f"eth_getLogs BountyTransferred ({from_block}..{to_block})"):
            logs = self.ticket_sale.events.BountyTransferred().get_logs(
                from_block=from_block, to_block=to_block
            )
        return [
            BountyTransfer(
                round_id=int(log["args"]["roundId"]),
                winner=Web3.to_checksum_address(log["args"]["winner"]),
                prize_amount=int(log["args"]["prizeAmount"]),
                burn_amount=int(log["args"]["burnAmount"]),
                tx_hash=Web3.to_hex(log["transactionHash"]),
                block_number=int(log["blockNumber"]),
            )
            for log in logs
        ]

    # -------- contract reads --------
    def current_round_id(self) -> int:
        with rpc_errors("currentRoundId"):
            return int(self.ticket_sale.functions.currentRoundId().call())

    def get_round_stats(self, round_id: int) -> RoundStats:
        with rpc_errors(f"getRoundStats({round_id})"):
            stats = self.ticket_sale.functions.getRoundStats(round_id).call()
        return RoundStats(*(int(value) for value in stats))

    def max_bounty_amount(self) -> int:
        with rpc_errors("maxBountyAmountINKY"):
            return int(self.ticket_sale.functions.maxBountyAmountINKY().call())

    def bounty_balance(self) -> int:
        with rpc_errors("balanceOf(bounty wallet)"):
            return int(self.token.functions.balanceOf(self.bounty_wallet).call())

    def bounty_allowance(self) -> int:
        with rpc_errors("allowance(bounty wallet, ticket sale)"):
            return int(
                self.token.functions.allowance(
                    self.bounty_wallet, self.ticket_sale_address
                ).call()
            )

    def token_decimals(self) -> int:
        with rpc_errors("decimals"):
            return int(self.token.functions.decimals().call())

    # -------- signed calls --------
    def transfer_bounty_to_winner(
        self,
        winner: str,
        *,
        confirmations: int,
        on_signed: Optional[Callable[[str], None]] = None,
    ) -> ChainReceipt:
        """Pay the bounty to ``winner`` and wait for ``confirmations``.

        ``on_signed`` receives the transaction hash after signing and before
        broadcast. If it raises, nothing is sent.
        """
        return self._transact(
            self.ticket_sale.functions.transferBountyToWinner(
                Web3.to_checksum_address(winner)
            ),
            "transferBountyToWinner",
            confirmations,
            on_signed,
        )

    def start_new_round(self, *, confirmations: int = 1) -> ChainReceipt:
        return self._transact(
            self.ticket_sale.functions.startNewRound(), "startNewRound", confirmations
        )

    def wait_for_transaction(self, tx_hash: str, *, confirmations: int) -> ChainReceipt:
        """Wait for an already broadcast transaction and decode its events.

        Raises
        ------
        TransactionError
            If it reverted (``reverted=True``) or is not mined and confirmed
            within ``tx_timeout``.
        """
        receipt = self._wait_for_confirmations(tx_hash, confirmations)
        return ChainReceipt(
            tx_hash=tx_hash,
            block_number=int(receipt["blockNumber"]),
            events=self._decode_events(receipt),
        )

    def transaction_known(self, tx_hash: str) -> bool:
        """Whether the node has ``tx_hash``, mined or in its mempool."""
        try:
            with rpc_errors(f"eth_getTransactionByHash({tx_hash})"):
                self.w3.eth.get_transaction(tx_hash)
        except LedgerError as exc:
            if isinstance(exc.__cause__, TransactionNotFound):
                return False
            raise
        return True

    def _transact(
        self,
        function: Any,
        description: str,
        confirmations: int,
        on_signed: Optional[Callable[[str], None]] = None,
    ) -> ChainReceipt:
        sender = self.signer_address
        if sender is None:
            raise TransactionError(f"Cannot send {description}: no signer configured")

        with self._signer_lock:
            with rpc_errors(f"build {description}"):
                tx = function.build_transaction(
                    {
                        "from": sender,
                        "nonce": self.w3.eth.get_transaction_count(sender, "pending"),
                        "chainId": self.w3.eth.chain_id,
                    }
                )
            signed = self._account.sign_transaction(tx)
            tx_hash = Web3.to_hex(signed.hash)
            if on_signed is not None:
                on_signed(tx_hash)
            with rpc_errors(f"send {description}"):
                self.w3.eth.send_raw_transaction(signed.raw_transaction)
            logger.info("%s transaction sent: %s", description, tx_hash)

            receipt = self.wait_for_transaction(tx_hash, confirmations=confirmations)

        logger.info(
            "%s confirmed in block %d (%d confirmations)",
            description,
            receipt.block_number,
            confirmations,
        )
        return receipt

    def _wait_for_confirmations(self, tx_hash: str, confirmations: int):
        deadline = time.monotonic() + self.config.tx_timeout
        try:
            with rpc_errors(f"receipt {tx_hash}"):
                receipt = self.w3.eth.wait_for_transaction_receipt(
                    tx_hash,
                    timeout=self.config.tx_timeout,
                    poll_latency=self.poll_latency,
                )
        except LedgerError as exc:
            if isinstance(exc.__cause__, TimeExhausted):
                raise TransactionError(
                    f"Transaction {tx_hash} not mined within {self.config.tx_timeout}s",
                    tx_hash=tx_hash,
                ) from exc
            raise

        if receipt["status"] != 1:
            raise TransactionError(
                f"Transaction {tx_hash} reverted", tx_hash=tx_hash, reverted=True
            )

        # The mining block counts as the first confirmation.
        target = int(receipt["blockNumber"]) + max(confirmations, 1) - 1
        while self.get_block_number() < target:
            if time.monotonic() >= deadline:
                raise TransactionError(
                    f"Transaction {tx_hash} did not reach {confirmations} "
                    f"confirmations within {self.config.tx_timeout}s",
                    tx_hash=tx_hash,
                )
            time.sleep(self.poll_latency)
        return receipt

    def _decode_events(self, receipt: Any) -> tuple[ChainEvent, ...]:
        events: list[tuple[int, ChainEvent]] = []
        for name in RECEIPT_EVENTS:
            decoded = getattr(self.ticket_sale.events, name)().process_receipt(
                receipt, errors=DISCARD
            )
            for entry in decoded:
                events.append(
                    (int(entry["logIndex"]), ChainEvent(name=name, args=dict(entry["args"])))
                )
        events.sort(key=lambda item: item[0])
        return tuple(event for _, event in events)
