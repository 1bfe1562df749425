"""On-chain escrow record and lifecycle enums."""

import enum
from dataclasses import dataclass
from decimal import Decimal

WEI_PER_ETH = 10**18
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class EscrowState(enum.IntEnum):
    CREATED = 0
    FUNDED = 1
    KEY_COMMITTED = 2
    RELEASED = 3
    CLAIMED = 4
    CANCELLED = 5
    DISPUTED = 6
    EXPIRED = 7

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({EscrowState.CLAIMED, EscrowState.CANCELLED, EscrowState.EXPIRED})


class Role(str, enum.Enum):
    SELLER = "seller"
    BUYER = "buyer"


@dataclass(frozen=True)
class EscrowRecord:
    """Snapshot of ``getEscrow`` for one poll. Never mutated."""

    escrow_id: int
    seller: str
    buyer: str
    content_hash: str  # 0x-prefixed 32-byte hex
    key_commitment: str  # 0x-prefixed 32-byte hex
    amount: int  # wei
    expires_at: int
    dispute_window_seconds: int
    state: EscrowState
    payment_token: str = ZERO_ADDRESS

    @property
    def amount_eth(self) -> Decimal:
        return wei_to_eth(self.amount)

    def role_of(self, address: str) -> Role | None:
        addr = address.lower()
        if self.seller.lower() == addr:
            return Role.SELLER
        if self.buyer.lower() == addr:
            return Role.BUYER
        return None


def wei_to_eth(wei: int) -> Decimal:
    return Decimal(wei) / Decimal(WEI_PER_ETH)


def eth_to_wei(eth: Decimal) -> int:
    return int(eth * WEI_PER_ETH)


def format_eth(value: Decimal) -> str:
    """Plain decimal string, no exponent and no trailing zeros."""
    text = format(value.normalize(), "f")
    return text if text != "-0" else "0"
