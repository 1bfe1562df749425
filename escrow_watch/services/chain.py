"""Escrow contract access: reads, event lookups, and signed transactions."""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from escrow_watch.errors import ErrorCode, WatchError
from escrow_watch.models.escrow import ZERO_ADDRESS, EscrowRecord, EscrowState

logger = logging.getLogger(__name__)

# Minimal DataEscrow ABI: the calls and events the daemon uses
DATA_ESCROW_ABI = [
    {
        "inputs": [{"name": "escrowId", "type": "uint256"}],
        "name": "getEscrow",
        "outputs": [
            {"name": "seller", "type": "address"},
            {"name": "buyer", "type": "address"},
            {"name": "paymentToken", "type": "address"},
            {"name": "contentHash", "type": "bytes32"},
            {"name": "keyCommitment", "type": "bytes32"},
            {"name": "amount", "type": "uint256"},
            {"name": "expiresAt", "type": "uint256"},
            {"name": "disputeWindow_", "type": "uint256"},
            {"name": "state", "type": "uint8"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "MIN_BLOCK_DELAY",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "MIN_TIME_DELAY",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "escrowId", "type": "uint256"}],
        "name": "fundEscrow",
        "outputs": [],
        "stateMutability": "payable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "escrowId", "type": "uint256"},
            {"name": "encryptedKeyCommitment", "type": "bytes32"},
        ],
        "name": "commitKeyRelease",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "escrowId", "type": "uint256"},
            {"name": "encryptedKeyForBuyer", "type": "bytes"},
            {"name": "salt", "type": "bytes32"},
        ],
        "name": "revealKey",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "escrowId", "type": "uint256"}],
        "name": "claimPayment",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "escrowId", "type": "uint256"},
            {"indexed": False, "name": "encryptedKeyCommitment", "type": "bytes32"},
            {"indexed": False, "name": "commitBlock", "type": "uint256"},
            {"indexed": False, "name": "commitTimestamp", "type": "uint256"},
        ],
        "name": "KeyCommitted",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "escrowId", "type": "uint256"},
            {"indexed": False, "name": "encryptedKeyForBuyer", "type": "bytes"},
        ],
        "name": "KeyRevealed",
        "type": "event",
    },
]

_READ_ERRORS = (OSError, TimeoutError, Web3Exception)

_CLAIM_TOO_EARLY_RE = re.compile(r"too early|dispute window|window (still )?open", re.IGNORECASE)


def _hex(value: bytes) -> str:
    return "0x" + bytes(value).hex()


@dataclass(frozen=True)
class TxResult:
    tx_hash: str
    block_number: int
    block_timestamp: int


@dataclass(frozen=True)
class RevealDelays:
    min_block_delay: int
    min_time_delay: int


@dataclass(frozen=True)
class ChainEvent:
    name: str
    escrow_id: int
    block_number: int
    block_timestamp: int
    args: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LogMatch:
    """Selects one contract event for one escrow.

    Used both as RPC filter parameters and as a predicate over decoded logs,
    so providers that ignore ``argument_filters`` still match correctly.
    """

    event: str
    escrow_id: int

    def matches(self, log: Any) -> bool:
        if log["event"] != self.event:
            return False
        return int(log["args"]["escrowId"]) == self.escrow_id

    @classmethod
    def key_committed(cls, escrow_id: int) -> "LogMatch":
        return cls("KeyCommitted", escrow_id)

    @classmethod
    def key_revealed(cls, escrow_id: int) -> "LogMatch":
        return cls("KeyRevealed", escrow_id)


class EscrowChain(Protocol):
    address: str

    async def get_escrow(self, escrow_id: int) -> EscrowRecord | None: ...

    async def get_reveal_delays(self) -> RevealDelays: ...

    async def get_block_timestamp(self, block: int | str = "latest") -> int: ...

    async def find_event(self, match: LogMatch) -> ChainEvent | None: ...

    async def fund(self, escrow_id: int, amount_wei: int) -> TxResult: ...

    async def commit_key(self, escrow_id: int, commitment: bytes) -> TxResult: ...

    async def reveal_key(self, escrow_id: int, payload: bytes, salt: bytes) -> TxResult: ...

    async def claim(self, escrow_id: int) -> TxResult: ...


class Web3EscrowChain:
    """``EscrowChain`` over JSON-RPC, signing locally with the wallet key."""

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        private_key: str,
        chain_id: int,
        *,
        timeout_seconds: int = 60,
        gas_safety_cap_wei: int = 10**16,
        log_lookback_blocks: int = 100_000,
    ) -> None:
        if not rpc_url:
            raise WatchError(ErrorCode.MISSING_RPC, "No RPC URL configured", "Set ESCROW_WATCH_BLOCKCHAIN_RPC_URL")
        if not contract_address:
            raise WatchError(
                ErrorCode.INVALID_ARGUMENT,
                "No escrow contract address configured",
                "Set ESCROW_WATCH_ESCROW_CONTRACT_ADDRESS",
            )
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        self._account = Account.from_key(private_key)
        self.address: str = self._account.address
        self.chain_id = chain_id
        self.timeout_seconds = timeout_seconds
        self.gas_safety_cap_wei = gas_safety_cap_wei
        self.log_lookback_blocks = log_lookback_blocks
        self.contract = self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(contract_address),
            abi=DATA_ESCROW_ABI,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_escrow(self, escrow_id: int) -> EscrowRecord | None:
        try:
            raw = await self.contract.functions.getEscrow(escrow_id).call()
        except ContractLogicError:
            return None
        except _READ_ERRORS as e:
            logger.error("getEscrow(%d) failed: %s", escrow_id, e)
            raise WatchError(ErrorCode.NETWORK_TIMEOUT, f"Failed to read escrow {escrow_id}") from None

        seller, buyer, token, content_hash, key_commitment, amount, expires_at, window, state = raw
        if seller == ZERO_ADDRESS:
            return None
        return EscrowRecord(
            escrow_id=escrow_id,
            seller=seller,
            buyer=buyer,
            payment_token=token,
            content_hash=_hex(content_hash),
            key_commitment=_hex(key_commitment),
            amount=int(amount),
            expires_at=int(expires_at),
            dispute_window_seconds=int(window),
            state=EscrowState(int(state)),
        )

    async def get_reveal_delays(self) -> RevealDelays:
        try:
            min_blocks = await self.contract.functions.MIN_BLOCK_DELAY().call()
            min_time = await self.contract.functions.MIN_TIME_DELAY().call()
        except _READ_ERRORS as e:
            raise WatchError(ErrorCode.NETWORK_TIMEOUT, f"Failed to read reveal delays: {e}") from None
        return RevealDelays(min_block_delay=int(min_blocks), min_time_delay=int(min_time))

    async def get_block_timestamp(self, block: int | str = "latest") -> int:
        try:
            data = await self.w3.eth.get_block(block)
        except _READ_ERRORS as e:
            raise WatchError(ErrorCode.NETWORK_TIMEOUT, f"Failed to read block {block}: {e}") from None
        return int(data["timestamp"])

    async def find_event(self, match: LogMatch) -> ChainEvent | None:
        """Most recent event selected by ``match`` within the lookback window."""
        try:
            latest = await self.w3.eth.block_number
            event = getattr(self.contract.events, match.event)()
            logs = await event.get_logs(
                argument_filters={"escrowId": match.escrow_id},
                from_block=max(0, latest - self.log_lookback_blocks),
                to_block=latest,
            )
        except _READ_ERRORS as e:
            raise WatchError(ErrorCode.NETWORK_TIMEOUT, f"Failed to query {match.event} logs: {e}") from None

        hits = [log for log in logs if match.matches(log)]
        if not hits:
            return None
        log = hits[-1]
        return ChainEvent(
            name=match.event,
            escrow_id=match.escrow_id,
            block_number=int(log["blockNumber"]),
            block_timestamp=await self.get_block_timestamp(int(log["blockNumber"])),
            args=dict(log["args"]),
        )

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def fund(self, escrow_id: int, amount_wei: int) -> TxResult:
        return await self._send(
            self.contract.functions.fundEscrow(escrow_id), ErrorCode.FUND_FAILED, value=amount_wei
        )

    async def commit_key(self, escrow_id: int, commitment: bytes) -> TxResult:
        return await self._send(
            self.contract.functions.commitKeyRelease(escrow_id, commitment), ErrorCode.COMMIT_FAILED
        )

    async def reveal_key(self, escrow_id: int, payload: bytes, salt: bytes) -> TxResult:
        return await self._send(
            self.contract.functions.revealKey(escrow_id, payload, salt), ErrorCode.REVEAL_TIMEOUT
        )

    async def claim(self, escrow_id: int) -> TxResult:
        try:
            return await self._send(
                self.contract.functions.claimPayment(escrow_id), ErrorCode.CLAIM_FAILED
            )
        except WatchError as e:
            if e.code == ErrorCode.TX_REVERTED and _CLAIM_TOO_EARLY_RE.search(e.message):
                raise WatchError(
                    ErrorCode.CLAIM_TOO_EARLY,
                    f"Claim for escrow {escrow_id} rejected: dispute window still open",
                    "Check the node clock against the chain",
                ) from None
            raise

    async def _send(self, call: Any, failure_code: ErrorCode, *, value: int = 0) -> TxResult:
        sender = self.address
        try:
            gas = await call.estimate_gas({"from": sender, "value": value})
            gas_price = await self.w3.eth.gas_price
            max_fee = gas_price * 2
            if gas * max_fee > self.gas_safety_cap_wei:
                raise WatchError(
                    ErrorCode.GAS_TOO_HIGH,
                    f"Estimated fee {gas * max_fee} wei exceeds safety cap {self.gas_safety_cap_wei} wei",
                    "Wait for lower gas prices",
                )
            tx = await call.build_transaction({
                "from": sender,
                "value": value,
                "nonce": await self.w3.eth.get_transaction_count(sender, "pending"),
                "chainId": self.chain_id,
                "gas": gas,
                "maxFeePerGas": max_fee,
                "maxPriorityFeePerGas": await self.w3.eth.max_priority_fee,
            })
            signed = self._account.sign_transaction(tx)
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except ContractLogicError as e:
            raise WatchError(ErrorCode.TX_REVERTED, f"Transaction would revert: {e}") from None
        except _READ_ERRORS as e:
            raise WatchError(failure_code, f"Transaction submission failed: {e}") from None

        logger.info("Submitted tx %s from %s", _hex(tx_hash), sender)
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.timeout_seconds)
        except TimeExhausted:
            raise WatchError(
                failure_code,
                f"Transaction {_hex(tx_hash)} not mined within {self.timeout_seconds}s",
            ) from None
        except _READ_ERRORS as e:
            raise WatchError(failure_code, f"Lost track of transaction {_hex(tx_hash)}: {e}") from None

        if receipt["status"] == 0:
            raise WatchError(ErrorCode.TX_REVERTED, f"Transaction {_hex(tx_hash)} reverted")

        block_number = int(receipt["blockNumber"])
        return TxResult(
            tx_hash=_hex(tx_hash),
            block_number=block_number,
            block_timestamp=await self.get_block_timestamp(block_number),
        )
