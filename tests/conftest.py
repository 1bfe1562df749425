"""Test configuration and fixtures.

The daemon runs against in-memory fakes for the chain, content store,
marketplace and keychain. State files and the lock live under tmp_path, and a
fake clock makes every sleep instantaneous.
"""

import io
import json
from dataclasses import dataclass, field, replace
from decimal import Decimal
from pathlib import Path
from typing import Any

import pytest

from escrow_watch.config import Settings
from escrow_watch.errors import ErrorCode, WatchError
from escrow_watch.models.escrow import EscrowRecord, EscrowState, eth_to_wei
from escrow_watch.models.watch_state import EffectiveLimits
from escrow_watch.schemas.marketplace import ApiEscrow
from escrow_watch.services import escrow_keys
from escrow_watch.services.chain import ChainEvent, LogMatch, RevealDelays, TxResult
from escrow_watch.services.events import EventSink
from escrow_watch.services.identity import IdentitySession
from escrow_watch.services.state_store import DaemonLock, StateStore
from escrow_watch.services.watch import WatchDaemon, WatchOptions
from escrow_watch.utils.crypto import compute_key_commitment, content_hash

SELLER = "0x1111111111111111111111111111111111111111"
BUYER = "0x2222222222222222222222222222222222222222"
SIGNING_KEY = bytes(range(1, 33))

CONTENT_KEY = b"\x01" * 32
SALT = b"\x02" * 32
SWARM_REF = "ab" * 32

# 2026-01-15 12:00:00 UTC
START_TIME = 1_768_478_400.0

TEST_SCRYPT_N = 2**4


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class MemoryKeychain:
    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self.data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self.data.get(key)

    def set(self, key: str, value: str) -> None:
        self.data[key] = value

    def remove(self, key: str) -> bool:
        return self.data.pop(key, None) is not None

    def list(self) -> list[str]:
        return sorted(self.data)


class FakeClock:
    """Wall clock that only moves when someone sleeps on it."""

    def __init__(self, now: float = START_TIME) -> None:
        self.now = now
        self.sleeps: list[float] = []
        self.on_sleep: Any = None

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        if self.on_sleep is not None:
            self.on_sleep(len(self.sleeps))


class FakeChain:
    """``EscrowChain`` over a dict of records. Transactions advance the record."""

    def __init__(self, clock: FakeClock, address: str = SELLER) -> None:
        self.clock = clock
        self.address = address
        self.records: dict[int, EscrowRecord] = {}
        self.events: dict[tuple[str, int], ChainEvent] = {}
        self.delays: RevealDelays | None = RevealDelays(min_block_delay=10, min_time_delay=60)
        self.failures: dict[str, WatchError] = {}
        self.sent: list[tuple] = []
        self.reads = 0
        self._nonce = 0

    async def get_escrow(self, escrow_id: int) -> EscrowRecord | None:
        self.reads += 1
        return self.records.get(escrow_id)

    async def get_reveal_delays(self) -> RevealDelays:
        if self.delays is None:
            raise WatchError(ErrorCode.NETWORK_TIMEOUT, "Failed to read reveal delays")
        return self.delays

    async def get_block_timestamp(self, block: int | str = "latest") -> int:
        return int(self.clock())

    async def find_event(self, match: LogMatch) -> ChainEvent | None:
        return self.events.get((match.event, match.escrow_id))

    async def fund(self, escrow_id: int, amount_wei: int) -> TxResult:
        return self._transact("fund", escrow_id, EscrowState.FUNDED, amount_wei)

    async def commit_key(self, escrow_id: int, commitment: bytes) -> TxResult:
        result = self._transact("commit", escrow_id, EscrowState.KEY_COMMITTED, commitment)
        self.add_event("KeyCommitted", escrow_id, commitTimestamp=result.block_timestamp)
        return result

    async def reveal_key(self, escrow_id: int, payload: bytes, salt: bytes) -> TxResult:
        result = self._transact("reveal", escrow_id, EscrowState.RELEASED, payload, salt)
        self.add_event("KeyRevealed", escrow_id, encryptedKeyForBuyer=payload)
        return result

    async def claim(self, escrow_id: int) -> TxResult:
        return self._transact("claim", escrow_id, EscrowState.CLAIMED)

    def add_event(self, name: str, escrow_id: int, **args: Any) -> ChainEvent:
        event = ChainEvent(
            name=name,
            escrow_id=escrow_id,
            block_number=1000 + self._nonce,
            block_timestamp=int(args.get("commitTimestamp", self.clock())),
            args={"escrowId": escrow_id, **args},
        )
        self.events[(name, escrow_id)] = event
        return event

    def actions(self, name: str) -> list[tuple]:
        return [call for call in self.sent if call[0] == name]

    def _transact(self, name: str, escrow_id: int, next_state: EscrowState, *args: Any) -> TxResult:
        self.sent.append((name, escrow_id, *args))
        if name in self.failures:
            raise self.failures[name]
        self.records[escrow_id] = replace(self.records[escrow_id], state=next_state)
        self._nonce += 1
        return TxResult(
            tx_hash=f"0x{self._nonce:064x}",
            block_number=1000 + self._nonce,
            block_timestamp=int(self.clock()),
        )


class FakeStore:
    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}
        self.failure: WatchError | None = None

    async def upload(self, data: bytes) -> str:
        reference = content_hash(data)[2:]
        self.blobs[reference] = data
        return reference

    async def download(self, reference: str) -> bytes:
        if self.failure is not None:
            raise self.failure
        try:
            return self.blobs[reference.removeprefix("0x").lower()]
        except KeyError:
            raise WatchError(ErrorCode.NOT_FOUND, f"Content not found on Swarm: {reference}") from None


class FakeMarketplace:
    def __init__(self) -> None:
        self.escrows: list[ApiEscrow] = []
        self.failure: WatchError | None = None
        self.calls = 0

    async def list_escrows(self, address: str) -> list[ApiEscrow]:
        self.calls += 1
        if self.failure is not None:
            raise self.failure
        return list(self.escrows)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------

def make_record(
    escrow_id: int = 1,
    state: EscrowState = EscrowState.FUNDED,
    *,
    amount: str = "0.1",
    key: bytes = CONTENT_KEY,
    salt: bytes = SALT,
    ciphertext: bytes = b"",
    dispute_window: int = 3600,
    **overrides: Any,
) -> EscrowRecord:
    fields: dict[str, Any] = {
        "escrow_id": escrow_id,
        "seller": SELLER,
        "buyer": BUYER,
        "content_hash": content_hash(ciphertext),
        "key_commitment": compute_key_commitment(key, salt),
        "amount": eth_to_wei(Decimal(amount)),
        "expires_at": int(START_TIME) + 86400 * 7,
        "dispute_window_seconds": dispute_window,
        "state": state,
    }
    fields.update(overrides)
    return EscrowRecord(**fields)


def make_limits(
    max_value: str = "10",
    max_daily: str = "100",
    max_cumulative: str = "1000",
    max_tx_per_cycle: int = 10,
) -> EffectiveLimits:
    return EffectiveLimits(
        max_value=Decimal(max_value),
        max_daily=Decimal(max_daily),
        max_cumulative=Decimal(max_cumulative),
        max_tx_per_cycle=max_tx_per_cycle,
        source="cli",
    )


def store_seller_keys(keychain: MemoryKeychain, escrow_id: int) -> None:
    escrow_keys.store_escrow_keys(
        keychain, escrow_id, escrow_keys.EscrowKeys(encryption_key=CONTENT_KEY, salt=SALT)
    )


@dataclass
class Harness:
    """Everything a WatchDaemon needs, wired to fakes."""

    tmp_path: Path
    cfg: Settings
    clock: FakeClock
    chain: FakeChain
    store: FakeStore
    marketplace: FakeMarketplace
    keychain: MemoryKeychain
    identity: IdentitySession
    output: io.StringIO = field(default_factory=io.StringIO)

    @property
    def state_store(self) -> StateStore:
        return StateStore(self.cfg.state_path, SIGNING_KEY)

    def daemon(self, limits: EffectiveLimits | None = None, **options: Any) -> WatchDaemon:
        options.setdefault("once", True)
        options.setdefault("download_dir", self.tmp_path / "downloads")
        return WatchDaemon(
            chain=self.chain,
            store=self.store,
            marketplace=self.marketplace,
            keychain=self.keychain,
            identity=self.identity,
            state_store=self.state_store,
            lock=DaemonLock(self.cfg.lock_dir),
            limits=limits or make_limits(),
            options=WatchOptions(**options),
            events=EventSink(self.output),
            cfg=self.cfg,
            clock=self.clock,
            sleep=self.clock.sleep,
        )

    def emitted(self, kind: str | None = None) -> list[dict]:
        events = [json.loads(line) for line in self.output.getvalue().splitlines()]
        if kind is None:
            return events
        return [e for e in events if e["event"] == kind]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    return Settings(config_dir=tmp_path / "config", keystore_scrypt_n=TEST_SCRYPT_N)


@pytest.fixture
def keychain() -> MemoryKeychain:
    return MemoryKeychain()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def harness(tmp_path: Path, test_settings: Settings, clock: FakeClock, keychain: MemoryKeychain) -> Harness:
    return Harness(
        tmp_path=tmp_path,
        cfg=test_settings,
        clock=clock,
        chain=FakeChain(clock),
        store=FakeStore(),
        marketplace=FakeMarketplace(),
        keychain=keychain,
        identity=IdentitySession(keychain, scrypt_n=TEST_SCRYPT_N),
    )
