"""Unattended escrow automation loop.

One cycle: heartbeat, discovery (local ids plus the marketplace), then for
each escrow a fresh chain read, a protocol decision, spending checks and at
most one action. Escrows are handled strictly one after another so the
per-cycle cap and spending counters see every previous action.

Clock and sleep are injected; tests drive the loop without wall time.
"""

import asyncio
import logging
import os
import signal
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import TypeVar

from escrow_watch.config import APP_VERSION, PROTOCOL_VERSION, Settings, settings
from escrow_watch.errors import DecryptionFailed, ErrorCode, ExitCode, StateCorrupt, WatchError
from escrow_watch.models.escrow import ZERO_ADDRESS, EscrowRecord, EscrowState, Role, format_eth
from escrow_watch.models.watch_state import (
    EffectiveLimits,
    EscrowHandledState,
    WatchState,
    utc_iso,
)
from escrow_watch.schemas.events import (
    ClaimExecutedEvent,
    CycleEndEvent,
    CycleStartEvent,
    DownloadCompleteEvent,
    DownloadStartEvent,
    ErrorEvent,
    EscrowFoundEvent,
    EscrowFundedEvent,
    HeartbeatEvent,
    HelloEvent,
    KeyCommittedEvent,
    KeyRevealedEvent,
    ShutdownEvent,
    SpendingLimitEvent,
)
from escrow_watch.schemas.marketplace import ApiEscrow
from escrow_watch.schemas.status import WatchStatus
from escrow_watch.services import escrow_keys
from escrow_watch.services.chain import EscrowChain, LogMatch
from escrow_watch.services.events import EventSink
from escrow_watch.services.identity import IdentitySession
from escrow_watch.services.keychain import KEYCHAIN_ERRORS, Keychain
from escrow_watch.services.marketplace import MarketplaceClient
from escrow_watch.services.protocol import (
    Action,
    claim_after,
    decide,
    initial_handled_state,
    reveal_delay_seconds,
    sync_from_chain,
)
from escrow_watch.services.spending import SpendingGovernor, seconds_until_utc_midnight
from escrow_watch.services.state_store import MAX_STATE_BYTES, DaemonLock, StateStore
from escrow_watch.services.storage import ContentStore
from escrow_watch.utils.crypto import (
    KEY_LENGTH,
    compute_key_commitment,
    content_hash,
    decrypt,
    from_hex,
    verify_commitment,
)
from escrow_watch.utils.ecdh import (
    decrypt_as_recipient,
    deserialize_encrypted_key,
    encrypt_for_recipient,
    serialize_encrypted_key,
)

logger = logging.getLogger(__name__)

RETRY_AFTER_SECONDS = 60

T = TypeVar("T")


class CycleTimeout(WatchError):
    def __init__(self, seconds: int) -> None:
        super().__init__(
            ErrorCode.NETWORK_TIMEOUT,
            f"Cycle timeout exceeded ({seconds}s)",
            "Next cycle will retry pending operations",
        )


class CycleBudget:
    """Wall-clock allowance for the reads of one cycle."""

    def __init__(self, seconds: int, clock: Callable[[], float]) -> None:
        self.seconds = seconds
        self._clock = clock
        self.deadline = clock() + seconds

    def remaining(self) -> float:
        return self.deadline - self._clock()

    def check(self) -> None:
        if self.remaining() <= 0:
            raise CycleTimeout(self.seconds)

    async def run(self, aw: Awaitable[T]) -> T:
        remaining = self.remaining()
        if remaining <= 0:
            if asyncio.iscoroutine(aw):
                aw.close()
            raise CycleTimeout(self.seconds)
        try:
            return await asyncio.wait_for(aw, timeout=remaining)
        except TimeoutError:
            raise CycleTimeout(self.seconds) from None


@dataclass
class WatchOptions:
    once: bool = False
    dry_run: bool = False
    seller_only: bool = False
    buyer_only: bool = False
    auto_fund: bool = False
    interval: int = 20
    download_dir: Path = Path(".")
    escrow_ids: list[int] | None = None
    max_consecutive_api_failures: int = 10

    @property
    def mode(self) -> str:
        if self.seller_only:
            return "seller"
        if self.buyer_only:
            return "buyer"
        return "seller+buyer"


def _write_private(path: Path, data: bytes) -> None:
    tmp = path.with_name(path.name + ".tmp")
    fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    os.replace(tmp, path)


class WatchDaemon:
    def __init__(
        self,
        *,
        chain: EscrowChain,
        store: ContentStore,
        marketplace: MarketplaceClient,
        keychain: Keychain,
        identity: IdentitySession,
        state_store: StateStore,
        lock: DaemonLock,
        limits: EffectiveLimits,
        options: WatchOptions,
        events: EventSink | None = None,
        cfg: Settings = settings,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.chain = chain
        self.store = store
        self.marketplace = marketplace
        self.keychain = keychain
        self.identity = identity
        self.state_store = state_store
        self.lock = lock
        self.limits = limits
        self.options = options
        self.events = events or EventSink()
        self.cfg = cfg
        self.clock = clock
        self._sleep = sleep

        self.state: WatchState | None = None
        self.governor: SpendingGovernor | None = None
        self._stopping = False
        self._wake = asyncio.Event()
        self._api_failures = 0
        self._breaker_tripped = False
        self._api_escrows: dict[int, ApiEscrow] = {}
        self._reveal_delay: int | None = None
        self._cycle_actions = 0
        self._started = 0.0
        self._last_heartbeat = 0.0

    @property
    def address(self) -> str:
        return self.chain.address

    def now(self) -> int:
        return int(self.clock())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        """Signal-safe: checked at loop boundaries, wakes any sleep."""
        if not self._stopping:
            logger.info("Shutdown requested, finishing current step")
        self._stopping = True
        self._wake.set()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_stop)

    def _start(self) -> None:
        self.state_store.cleanup_temp()
        state = self.state_store.load_or_create()
        state.pid = os.getpid()
        state.started_at = utc_iso(self.clock())
        state.effective_limits = self.limits
        self.state = state

        self.governor = SpendingGovernor(state, self.limits, self.keychain)
        self.governor.load_backups(self.clock())

        self._started = self.clock()
        self._last_heartbeat = self._started

    async def run(self) -> ExitCode:
        """Acquire the lock, loop until told to stop, always save and unlock."""
        self.lock.acquire()
        try:
            self._start()
            self.events.emit(HelloEvent(
                protocol_version=PROTOCOL_VERSION,
                version=APP_VERSION,
                address=self.address,
                mode=self.options.mode,
            ))
            reason = await self._loop()
        finally:
            if self.state is not None:
                self._save()
            self.lock.release()

        self.events.emit(ShutdownEvent(reason=reason, state_saved=True))
        logger.info("Watch stopped (%s)", reason)
        if reason == "limit":
            return ExitCode.SPENDING_LIMIT
        if reason == "circuit_breaker":
            return ExitCode.NETWORK_ERROR
        return ExitCode.OK

    def _save(self) -> None:
        self.state_store.save(self.state)

    async def _pause(self, seconds: float) -> None:
        """Sleep that returns early when a stop is requested."""
        if self._stopping or seconds <= 0:
            return
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        waker = asyncio.ensure_future(self._wake.wait())
        try:
            await asyncio.wait({sleeper, waker}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, waker):
                task.cancel()

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    async def _loop(self) -> str:
        state = self.state
        governor = self.governor

        while not self._stopping:
            state.cycle_count += 1
            self._maybe_heartbeat()
            self.events.emit(CycleStartEvent(timestamp=utc_iso(self.clock()), cycle=state.cycle_count))

            self._cycle_actions = 0
            budget = CycleBudget(self.cfg.cycle_timeout_seconds, self.clock)
            try:
                await self._run_cycle(budget)
            except CycleTimeout as e:
                logger.warning("Cycle %d aborted: %s", state.cycle_count, e.message)
                self.events.emit(ErrorEvent(
                    code=e.code.value,
                    message=e.message,
                    retryable=True,
                    retry_after_seconds=self.options.interval,
                    suggestion=e.suggestion,
                ))

            if self._breaker_tripped:
                return "circuit_breaker"

            if governor.daily_exhausted:
                self.events.emit(SpendingLimitEvent(
                    type="daily",
                    current=format_eth(state.daily_value_processed),
                    limit=format_eth(self.limits.max_daily),
                    action="paused",
                ))
                if not self.options.once:
                    self._save()
                    wait = seconds_until_utc_midnight(self.clock())
                    logger.info("Daily limit reached, pausing %.0fs until UTC midnight", wait)
                    await self._pause(wait)
                    if not self._stopping:
                        governor.reset_daily(self.clock())

            if governor.cumulative_exhausted:
                self.events.emit(SpendingLimitEvent(
                    type="cumulative",
                    current=format_eth(state.cumulative_value_processed),
                    limit=format_eth(self.limits.max_cumulative),
                    action="shutdown",
                ))
                return "limit"

            state.last_cycle = utc_iso(self.clock())
            self.events.emit(CycleEndEvent(
                timestamp=state.last_cycle,
                actions=self._cycle_actions,
                next=None if self.options.once else utc_iso(self.clock() + self.options.interval),
            ))
            self._save()

            if self.options.once:
                return "once"
            await self._pause(self.options.interval)

        return "signal"

    def _maybe_heartbeat(self) -> None:
        now = self.clock()
        if now - self._last_heartbeat < self.cfg.heartbeat_interval_seconds:
            return
        self.events.emit(HeartbeatEvent(
            timestamp=utc_iso(now),
            uptime_seconds=int(now - self._started),
            cycle_count=self.state.cycle_count,
            escrows_managed=len(self.state.handled),
        ))
        self._last_heartbeat = now

    async def _run_cycle(self, budget: CycleBudget) -> None:
        ids = await self._discover(budget)
        for escrow_id in ids:
            if self._stopping or self._cycle_actions >= self.limits.max_tx_per_cycle:
                break
            budget.check()
            self._cycle_actions += await self._process(escrow_id, budget)

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------

    def _local_ids(self) -> set[int]:
        try:
            ids = set(escrow_keys.list_escrow_ids(self.keychain))
        except KEYCHAIN_ERRORS as e:
            logger.warning("Could not list keychain escrows: %s", e)
            ids = set()
        for key, handled in self.state.handled.items():
            if handled.needs_manual or _finished(handled):
                continue
            ids.add(int(key))
        return ids

    async def _discover(self, budget: CycleBudget) -> list[int]:
        try:
            api = await budget.run(self.marketplace.list_escrows(self.address))
        except WatchError as e:
            self._api_failures += 1
            logger.warning(
                "Escrow discovery failed (%d consecutive): %s", self._api_failures, e.message
            )
            if self._api_failures >= self.options.max_consecutive_api_failures:
                logger.error("Circuit breaker: %d consecutive API failures", self._api_failures)
                self._breaker_tripped = True
                return []
            api = []
        else:
            self._api_failures = 0

        self._api_escrows = {e.id: e for e in api}
        allow = self.options.escrow_ids
        if allow is not None:
            return sorted(set(allow))
        return sorted(self._local_ids() | set(self._api_escrows))

    # ------------------------------------------------------------------
    # Per-escrow processing
    # ------------------------------------------------------------------

    def _role_enabled(self, role: Role) -> bool:
        if role == Role.SELLER:
            return not self.options.buyer_only
        return not self.options.seller_only

    async def _process(self, escrow_id: int, budget: CycleBudget) -> int:
        known = self.state.get_handled(escrow_id)
        if known is not None and known.needs_manual:
            return 0

        try:
            record = await budget.run(self.chain.get_escrow(escrow_id))
        except CycleTimeout:
            raise
        except WatchError as e:
            self._read_failed(escrow_id, known, e)
            return 0
        if record is None:
            logger.debug("Escrow #%d not found on chain", escrow_id)
            return 0
        role = record.role_of(self.address)
        if role is None or not self._role_enabled(role):
            return 0

        handled = self.state.get_handled(escrow_id)
        if handled is None:
            handled = initial_handled_state(record, role)
            self.state.set_handled(escrow_id, handled)
            self.events.emit(EscrowFoundEvent(
                escrow_id=escrow_id,
                state=str(int(record.state)),
                role=role.value,
                amount=format_eth(record.amount_eth),
            ))
        else:
            advanced = sync_from_chain(handled, record)
            if advanced:
                logger.info("Escrow #%d already advanced on chain: %s", escrow_id, ", ".join(advanced))

        if handled.needs_manual:
            return 0

        reveal_delay = self.cfg.reveal_delay_fallback_seconds
        try:
            await self._fill_timestamps(record, handled, budget)
            if role == Role.SELLER and record.state == EscrowState.KEY_COMMITTED:
                reveal_delay = await self._get_reveal_delay(budget)
        except CycleTimeout:
            raise
        except WatchError as e:
            self._read_failed(escrow_id, handled, e)
            return 0

        decision = decide(
            record, handled, self.now(),
            reveal_delay=reveal_delay,
            auto_fund=self.options.auto_fund,
        )
        if not decision.ready:
            if decision.wait_seconds is not None:
                logger.debug("Escrow #%d: %s, %ds left", escrow_id, decision.reason, decision.wait_seconds)
            return 0

        action = decision.action
        violation = self.governor.check(record.amount_eth, action.moves_value)
        if violation is not None:
            logger.info("Escrow #%d skipped: %s limit", escrow_id, violation.kind)
            self.events.emit(SpendingLimitEvent(
                type=violation.kind,
                current=format_eth(violation.current),
                limit=format_eth(violation.limit),
                action="skipped",
                escrow_id=escrow_id,
            ))
            return 0

        if self.options.dry_run:
            logger.info("[dry-run] would %s escrow #%d", action.value, escrow_id)
            return 0

        if action != Action.DOWNLOAD:
            try:
                fresh = await budget.run(self.chain.get_escrow(escrow_id))
            except CycleTimeout:
                raise
            except WatchError as e:
                self._read_failed(escrow_id, handled, e)
                return 0
            if fresh is None or fresh.state != record.state:
                if fresh is not None:
                    sync_from_chain(handled, fresh)
                logger.info("Escrow #%d changed state before %s, skipping", escrow_id, action.value)
                return 0
            record = fresh

        try:
            return await self._execute(action, record, handled, budget)
        except CycleTimeout:
            raise
        except WatchError as e:
            self._record_failure(escrow_id, handled, e)
            return 0
        except KEYCHAIN_ERRORS as e:
            self._record_failure(escrow_id, handled, WatchError(
                ErrorCode.KEYCHAIN_UNAVAILABLE,
                f"Keychain access failed: {e}",
                "Check that the keychain is unlocked",
            ))
            return 0

    async def _fill_timestamps(
        self, record: EscrowRecord, handled: EscrowHandledState, budget: CycleBudget
    ) -> None:
        if handled.role != Role.SELLER:
            return
        escrow_id = record.escrow_id

        if record.state == EscrowState.KEY_COMMITTED and handled.commit_timestamp is None:
            event = await budget.run(self.chain.find_event(LogMatch.key_committed(escrow_id)))
            if event is not None:
                handled.commit_timestamp = int(event.args.get("commitTimestamp") or event.block_timestamp)
            else:
                # Later than the real commit, so the gate only errs on the safe side
                handled.commit_timestamp = await budget.run(self.chain.get_block_timestamp("latest"))

        if record.state == EscrowState.RELEASED and handled.claim_after is None:
            event = await budget.run(self.chain.find_event(LogMatch.key_revealed(escrow_id)))
            if event is not None:
                revealed_at = event.block_timestamp
            else:
                revealed_at = await budget.run(self.chain.get_block_timestamp("latest"))
            handled.claim_after = claim_after(revealed_at, record.dispute_window_seconds)

    async def _get_reveal_delay(self, budget: CycleBudget) -> int:
        if self._reveal_delay is None:
            try:
                delays = await budget.run(self.chain.get_reveal_delays())
            except CycleTimeout:
                raise
            except WatchError as e:
                logger.warning("Could not read reveal delays, using %ds: %s",
                               self.cfg.reveal_delay_fallback_seconds, e.message)
                self._reveal_delay = self.cfg.reveal_delay_fallback_seconds
            else:
                self._reveal_delay = reveal_delay_seconds(
                    delays.min_block_delay,
                    delays.min_time_delay,
                    self.cfg.block_time_seconds,
                    self.cfg.reveal_safety_margin_seconds,
                )
        return self._reveal_delay

    def _read_failed(self, escrow_id: int, handled: EscrowHandledState | None, err: WatchError) -> None:
        """Chain reads are retried next cycle and do not count toward ``needs_manual``."""
        if handled is not None:
            handled.last_error = err.message
        logger.warning("Escrow #%d: chain read failed: %s", escrow_id, err.message)
        self.events.emit(ErrorEvent(
            escrow_id=escrow_id,
            code=err.code.value,
            message=err.message,
            retryable=True,
            retry_after_seconds=self.options.interval,
            suggestion=err.suggestion or "Will retry next cycle",
        ))

    def _record_failure(self, escrow_id: int, handled: EscrowHandledState, err: WatchError) -> None:
        handled.last_error = err.message
        if err.retryable:
            handled.retries += 1
            if handled.retries >= self.cfg.max_retries:
                handled.needs_manual = True
            retry_after = RETRY_AFTER_SECONDS
            suggestion = err.suggestion or "Will retry next cycle"
        else:
            handled.needs_manual = True
            retry_after = None
            suggestion = err.suggestion or f"Resolve escrow #{escrow_id} manually"

        logger.warning(
            "Escrow #%d: %s %s (retries=%d, needs_manual=%s)",
            escrow_id, err.code.value, err.message, handled.retries, handled.needs_manual,
        )
        self.events.emit(ErrorEvent(
            escrow_id=escrow_id,
            code=err.code.value,
            message=err.message,
            retryable=err.retryable,
            retry_after_seconds=retry_after,
            suggestion=suggestion,
        ))

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def _execute(
        self,
        action: Action,
        record: EscrowRecord,
        handled: EscrowHandledState,
        budget: CycleBudget,
    ) -> int:
        if action == Action.COMMIT:
            await self._commit(record, handled)
        elif action == Action.REVEAL:
            await self._reveal(record, handled)
        elif action == Action.CLAIM:
            await self._claim(record, handled)
        elif action == Action.FUND:
            await self._fund(record, handled)
        elif action == Action.DOWNLOAD:
            await self._download(record, handled, budget)
            return 0
        return 1

    def _require_keys(self, escrow_id: int) -> escrow_keys.EscrowKeys:
        keys = escrow_keys.get_escrow_keys(self.keychain, escrow_id)
        if keys is None:
            raise WatchError(
                ErrorCode.MISSING_KEY,
                f"No key material stored for escrow {escrow_id}",
                "Keys are stored in the keychain when the escrow is created",
            )
        return keys

    def _buyer_pubkey(self, escrow_id: int) -> bytes | None:
        value = escrow_keys.get_buyer_pubkey(self.keychain, escrow_id)
        if not value:
            api = self._api_escrows.get(escrow_id)
            value = api.buyer_pubkey if api else None
        if not value:
            return None
        try:
            return from_hex(value)
        except ValueError:
            raise WatchError(
                ErrorCode.INVALID_PUBKEY,
                f"Buyer public key for escrow {escrow_id} is not valid hex",
            ) from None

    async def _commit(self, record: EscrowRecord, handled: EscrowHandledState) -> None:
        escrow_id = record.escrow_id
        keys = self._require_keys(escrow_id)
        if not verify_commitment(keys.encryption_key, keys.salt, record.key_commitment):
            raise WatchError(
                ErrorCode.COMMITMENT_MISMATCH,
                f"Stored key and salt do not match the on-chain commitment of escrow {escrow_id}",
            )

        buyer_pubkey = self._buyer_pubkey(escrow_id)
        ecdh = buyer_pubkey is not None
        if ecdh:
            bundle = encrypt_for_recipient(keys.encryption_key, buyer_pubkey)
            escrow_keys.store_encrypted_key(self.keychain, escrow_id, serialize_encrypted_key(bundle))

        commitment = from_hex(compute_key_commitment(keys.encryption_key, keys.salt))
        result = await self.chain.commit_key(escrow_id, commitment)

        handled.committed = True
        handled.commit_tx_hash = result.tx_hash
        handled.commit_timestamp = result.block_timestamp
        handled.has_encrypted_key = ecdh
        self.governor.count_tx()
        logger.info("Escrow #%d: key committed in %s (ecdh=%s)", escrow_id, result.tx_hash, ecdh)
        self.events.emit(KeyCommittedEvent(escrow_id=escrow_id, tx_hash=result.tx_hash, ecdh_commit=ecdh))

    async def _reveal(self, record: EscrowRecord, handled: EscrowHandledState) -> None:
        escrow_id = record.escrow_id
        keys = self._require_keys(escrow_id)
        bundle = escrow_keys.get_encrypted_key(self.keychain, escrow_id)
        ecdh = bundle is not None
        payload = bundle if ecdh else keys.encryption_key

        result = await self.chain.reveal_key(escrow_id, payload, keys.salt)

        handled.released = True
        handled.reveal_tx_hash = result.tx_hash
        handled.has_encrypted_key = ecdh
        handled.claim_after = claim_after(result.block_timestamp, record.dispute_window_seconds)
        self.governor.record(record.amount_eth)
        logger.info("Escrow #%d: key revealed in %s, claimable after %d",
                    escrow_id, result.tx_hash, handled.claim_after)
        self.events.emit(KeyRevealedEvent(escrow_id=escrow_id, tx_hash=result.tx_hash, ecdh_encrypted=ecdh))

    async def _claim(self, record: EscrowRecord, handled: EscrowHandledState) -> None:
        result = await self.chain.claim(record.escrow_id)
        handled.claimed = True
        handled.claim_tx_hash = result.tx_hash
        self.governor.count_tx()
        logger.info("Escrow #%d: payment claimed in %s", record.escrow_id, result.tx_hash)
        self.events.emit(ClaimExecutedEvent(
            escrow_id=record.escrow_id,
            amount=format_eth(record.amount_eth),
            tx_hash=result.tx_hash,
        ))

    async def _fund(self, record: EscrowRecord, handled: EscrowHandledState) -> None:
        if record.payment_token.lower() != ZERO_ADDRESS:
            raise WatchError(
                ErrorCode.INVALID_ARGUMENT,
                f"Escrow {record.escrow_id} is paid in token {record.payment_token}",
                "Token escrows must be funded manually",
            )
        result = await self.chain.fund(record.escrow_id, record.amount)
        handled.funded = True
        handled.fund_tx_hash = result.tx_hash
        self.governor.record(record.amount_eth)
        logger.info("Escrow #%d: funded in %s", record.escrow_id, result.tx_hash)
        self.events.emit(EscrowFundedEvent(
            escrow_id=record.escrow_id,
            tx_hash=result.tx_hash,
            amount=format_eth(record.amount_eth),
        ))

    async def _download(
        self, record: EscrowRecord, handled: EscrowHandledState, budget: CycleBudget
    ) -> None:
        escrow_id = record.escrow_id
        reference = escrow_keys.get_content_ref(self.keychain, escrow_id)
        if not reference:
            api = self._api_escrows.get(escrow_id)
            reference = api.encrypted_data_ref if api else None
        if not reference:
            raise WatchError(
                ErrorCode.MISSING_KEY,
                "No swarm reference found in keychain or marketplace",
            )

        self.events.emit(DownloadStartEvent(escrow_id=escrow_id, swarm_ref=reference))
        try:
            data = await budget.run(self.store.download(reference))
        except CycleTimeout:
            raise
        except WatchError as e:
            raise WatchError(ErrorCode.DOWNLOAD_FAILED, e.message, e.suggestion) from None

        if content_hash(data).lower() != record.content_hash.lower():
            raise WatchError(ErrorCode.DOWNLOAD_FAILED, "Content hash mismatch")

        key = await self._content_key(escrow_id, budget)
        plaintext = decrypt(data, key)
        path = self._write_output(escrow_id, plaintext)

        handled.downloaded = True
        handled.download_path = str(path)
        logger.info("Escrow #%d: decrypted %d bytes to %s", escrow_id, len(plaintext), path)
        self.events.emit(DownloadCompleteEvent(
            escrow_id=escrow_id,
            path=str(path),
            size=len(data),
            content_hash_verified=True,
        ))

    def _open_bundle(self, blob: bytes, escrow_id: int) -> bytes:
        try:
            bundle = deserialize_encrypted_key(blob)
        except ValueError:
            raise DecryptionFailed(f"Malformed encrypted key for escrow {escrow_id}") from None
        try:
            return decrypt_as_recipient(bundle, self.identity.private_key)
        except DecryptionFailed:
            raise DecryptionFailed(
                f"ECDH key decryption failed for escrow {escrow_id}",
                "Ensure the identity used when funding is the one unlocked",
            ) from None

    async def _content_key(self, escrow_id: int, budget: CycleBudget) -> bytes:
        """Stored ECDH bundle, then stored raw key, then the payload revealed on chain."""
        blob = escrow_keys.get_encrypted_key(self.keychain, escrow_id)
        if blob is not None:
            return self._open_bundle(blob, escrow_id)

        key = escrow_keys.get_encryption_key(self.keychain, escrow_id)
        if key:
            return key

        event = await budget.run(self.chain.find_event(LogMatch.key_revealed(escrow_id)))
        if event is None:
            raise WatchError(ErrorCode.MISSING_KEY, f"No decryption key for escrow {escrow_id}")
        payload = bytes(event.args["encryptedKeyForBuyer"])
        if len(payload) == KEY_LENGTH:
            return payload
        return self._open_bundle(payload, escrow_id)

    def _write_output(self, escrow_id: int, plaintext: bytes) -> Path:
        directory = Path(self.options.download_dir).resolve()
        path = directory / f"escrow-{escrow_id}.bin"
        try:
            directory.mkdir(parents=True, exist_ok=True)
            _write_private(path, plaintext)
        except OSError as e:
            raise WatchError(ErrorCode.DOWNLOAD_FAILED, f"Cannot write {path}: {e}") from None
        return path


def _finished(handled: EscrowHandledState) -> bool:
    if handled.role == Role.SELLER:
        return handled.claimed
    return handled.downloaded


# ----------------------------------------------------------------------
# Status
# ----------------------------------------------------------------------


def _uptime(state: WatchState, now: float) -> int | None:
    try:
        started = datetime.fromisoformat(state.started_at)
    except ValueError:
        return None
    return max(0, int(now - started.astimezone(UTC).timestamp()))


def _read_unverified(path: Path) -> WatchState | None:
    try:
        if path.stat().st_size > MAX_STATE_BYTES:
            return None
        return WatchState.model_validate_json(path.read_bytes())
    except (OSError, ValueError):
        return None


def watch_status(
    cfg: Settings = settings,
    signing_key: bytes | None = None,
    clock: Callable[[], float] = time.time,
) -> WatchStatus:
    """Snapshot of the daemon. Counters are only reported from a verified state file."""
    pid = DaemonLock(cfg.lock_dir).live_holder()
    running = pid is not None

    state = None
    verified = False
    if signing_key:
        try:
            state = StateStore(cfg.state_path, signing_key).load()
            verified = True
        except FileNotFoundError:
            pass
        except StateCorrupt as e:
            logger.warning("State file failed verification: %s", e.message)
    if state is None:
        state = _read_unverified(cfg.state_path)

    if state is None:
        return WatchStatus(running=running, pid=pid)

    handled = state.handled.values()
    return WatchStatus(
        running=running,
        pid=pid,
        uptime_seconds=_uptime(state, clock()) if running else None,
        last_cycle=state.last_cycle or None,
        cycles=state.cycle_count,
        escrows_managed=len(state.handled),
        needs_manual=sum(1 for h in handled if h.needs_manual),
        escrows_with_errors=sum(1 for h in handled if h.last_error and h.retries > 0),
        daily_value=f"{format_eth(state.daily_value_processed)} ETH" if verified else "unverified",
        daily_tx=state.daily_tx_count,
        cumulative_value=f"{format_eth(state.cumulative_value_processed)} ETH" if verified else "unverified",
        state_verified=verified,
        effective_limits=state.effective_limits if verified else None,
    )
