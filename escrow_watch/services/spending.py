"""Spending ceilings for unattended operation.

Three independent limits, all in ETH: per escrow, per UTC day, and lifetime.
The lifetime and daily counters are mirrored to the keychain so deleting the
state file cannot reset them.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal, InvalidOperation

from escrow_watch.config import Settings, WatchFileConfig, settings
from escrow_watch.errors import ErrorCode, WatchError
from escrow_watch.models.escrow import format_eth
from escrow_watch.models.watch_state import EffectiveLimits, WatchState, utc_today
from escrow_watch.services.escrow_keys import CUMULATIVE_BACKUP_NAME, DAILY_BACKUP_NAME
from escrow_watch.services.keychain import KEYCHAIN_ERRORS, Keychain

logger = logging.getLogger(__name__)

PER_ESCROW = "per_escrow"
DAILY = "daily"
CUMULATIVE = "cumulative"


@dataclass(frozen=True)
class LimitViolation:
    kind: str
    current: Decimal
    limit: Decimal


def merge_limit(*values: Decimal | None) -> Decimal:
    """Smallest of the values that are set."""
    present = [v for v in values if v is not None]
    if not present:
        raise ValueError("merge_limit needs at least one value")
    return min(present)


def resolve_limits(
    *,
    yes: bool,
    max_value: Decimal | None = None,
    max_daily: Decimal | None = None,
    max_cumulative: Decimal | None = None,
    max_tx_per_cycle: int | None = None,
    file_config: WatchFileConfig | None = None,
    cfg: Settings = settings,
) -> EffectiveLimits:
    """Combine CLI flags, ``watch.json`` and the hard caps into effective limits."""
    if yes and max_value is None:
        raise WatchError(
            ErrorCode.INVALID_ARGUMENT,
            "--max-value is required when using --yes mode",
            "Set maximum single escrow value: escrow-watch --yes --max-value 0.1",
        )
    if max_value is not None and max_value > cfg.absolute_max_value:
        raise WatchError(
            ErrorCode.SPENDING_LIMIT,
            f"--max-value {format_eth(max_value)} ETH exceeds absolute hard cap of "
            f"{format_eth(cfg.absolute_max_value)} ETH",
            f"Set --max-value to {format_eth(cfg.absolute_max_value)} or less",
        )

    fc = file_config or WatchFileConfig()
    if max_value is not None:
        source = "cli"
    elif fc.max_value is not None:
        source = "config"
    else:
        source = "default"

    tx_cap = max_tx_per_cycle or fc.max_tx_per_cycle or cfg.default_max_tx_per_cycle

    return EffectiveLimits(
        max_value=merge_limit(max_value, fc.max_value, cfg.absolute_max_value),
        max_daily=merge_limit(max_daily, fc.max_daily, cfg.absolute_max_daily),
        max_cumulative=merge_limit(max_cumulative, fc.max_cumulative, cfg.absolute_max_cumulative),
        max_tx_per_cycle=min(tx_cap, cfg.absolute_max_tx_per_cycle),
        source=source,
    )


def seconds_until_utc_midnight(now: float) -> float:
    current = datetime.fromtimestamp(now, UTC)
    midnight = datetime(current.year, current.month, current.day, tzinfo=UTC) + timedelta(days=1)
    return (midnight - current).total_seconds()


def _parse_decimal(text: str | None) -> Decimal | None:
    if not text:
        return None
    try:
        value = Decimal(text)
    except InvalidOperation:
        return None
    if not value.is_finite() or value < 0:
        return None
    return value


class SpendingGovernor:
    """Checks and records value-moving actions against the effective limits.

    Violations never raise; ``check`` returns a ``LimitViolation`` and the
    caller defers the escrow. After a cycle the daemon asks whether the
    daily budget should pause it or the lifetime budget should stop it.
    """

    def __init__(self, state: WatchState, limits: EffectiveLimits, keychain: Keychain) -> None:
        self.state = state
        self.limits = limits
        self.keychain = keychain
        self.daily_blocked = False
        self.cumulative_blocked = False

    def load_backups(self, now: float) -> None:
        """Reconcile counters with the keychain copies; the larger value wins."""
        try:
            cumulative = self.keychain.get(CUMULATIVE_BACKUP_NAME)
            daily = self.keychain.get(DAILY_BACKUP_NAME)
        except KEYCHAIN_ERRORS as e:
            raise WatchError(
                ErrorCode.KEYCHAIN_UNAVAILABLE,
                f"Cannot read spending backups from keychain: {e}",
                "Unlock the keychain before starting the daemon",
            ) from None

        backup = _parse_decimal(cumulative)
        if backup is not None and backup > self.state.cumulative_value_processed:
            logger.warning(
                "Cumulative value in state (%s) is below keychain backup (%s), using backup",
                self.state.cumulative_value_processed, backup,
            )
            self.state.cumulative_value_processed = backup

        if daily and ":" in daily:
            date, _, value = daily.partition(":")
            parsed = _parse_decimal(value)
            if date == self.state.daily_date and parsed is not None:
                self.state.daily_value_processed = max(self.state.daily_value_processed, parsed)

        self.roll_day(now)

    def roll_day(self, now: float) -> bool:
        """Reset daily counters when the UTC date has changed."""
        today = utc_today(now)
        if self.state.daily_date == today:
            return False
        self.reset_daily(now)
        return True

    def reset_daily(self, now: float) -> None:
        self.state.daily_date = utc_today(now)
        self.state.daily_value_processed = Decimal("0")
        self.state.daily_tx_count = 0
        self.daily_blocked = False
        self._mirror()

    def check(self, amount: Decimal, moves_value: bool) -> LimitViolation | None:
        if amount > self.limits.max_value:
            return LimitViolation(PER_ESCROW, amount, self.limits.max_value)

        daily = self.state.daily_value_processed
        if not moves_value:
            if daily >= self.limits.max_daily:
                return LimitViolation(DAILY, daily, self.limits.max_daily)
            return None

        if daily + amount > self.limits.max_daily:
            self.daily_blocked = True
            return LimitViolation(DAILY, daily, self.limits.max_daily)

        cumulative = self.state.cumulative_value_processed
        if cumulative + amount > self.limits.max_cumulative:
            self.cumulative_blocked = True
            return LimitViolation(CUMULATIVE, cumulative, self.limits.max_cumulative)
        return None

    def record(self, amount: Decimal) -> None:
        self.state.daily_value_processed += amount
        self.state.cumulative_value_processed += amount
        self.state.daily_tx_count += 1
        self._mirror()

    def count_tx(self) -> None:
        self.state.daily_tx_count += 1

    @property
    def daily_exhausted(self) -> bool:
        return self.daily_blocked or self.state.daily_value_processed >= self.limits.max_daily

    @property
    def cumulative_exhausted(self) -> bool:
        return (
            self.cumulative_blocked
            or self.state.cumulative_value_processed >= self.limits.max_cumulative
        )

    def _mirror(self) -> None:
        try:
            self.keychain.set(CUMULATIVE_BACKUP_NAME, format_eth(self.state.cumulative_value_processed))
            self.keychain.set(
                DAILY_BACKUP_NAME,
                f"{self.state.daily_date}:{format_eth(self.state.daily_value_processed)}",
            )
        except KEYCHAIN_ERRORS as e:
            logger.error("Failed to mirror spending counters to keychain: %s", e)
