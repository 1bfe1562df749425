"""Tests for spending limits and the keychain-backed counters."""

import subprocess
from decimal import Decimal
from unittest.mock import patch

import pytest

from escrow_watch.config import Settings, WatchFileConfig
from escrow_watch.errors import ErrorCode, WatchError
from escrow_watch.models.watch_state import WatchState
from escrow_watch.services.keychain import SecretToolKeychain
from escrow_watch.services.spending import (
    CUMULATIVE,
    DAILY,
    PER_ESCROW,
    SpendingGovernor,
    merge_limit,
    resolve_limits,
    seconds_until_utc_midnight,
)
from tests.conftest import START_TIME, MemoryKeychain, make_limits


def _governor(keychain=None, **limits) -> SpendingGovernor:
    state = WatchState()
    governor = SpendingGovernor(state, make_limits(**limits), keychain or MemoryKeychain())
    governor.roll_day(START_TIME)
    return governor


# ---------------------------------------------------------------------------
# resolve_limits
# ---------------------------------------------------------------------------

def test_yes_requires_max_value() -> None:
    with pytest.raises(WatchError) as exc_info:
        resolve_limits(yes=True, cfg=Settings())
    assert exc_info.value.code == ErrorCode.INVALID_ARGUMENT
    assert "--max-value" in exc_info.value.message


def test_max_value_above_hard_cap_refused() -> None:
    with pytest.raises(WatchError) as exc_info:
        resolve_limits(yes=True, max_value=Decimal("11"), cfg=Settings())
    assert exc_info.value.code == ErrorCode.SPENDING_LIMIT


def test_defaults_are_absolute_caps() -> None:
    limits = resolve_limits(yes=False, cfg=Settings())
    assert limits.max_value == Decimal("10")
    assert limits.max_daily == Decimal("100")
    assert limits.max_cumulative == Decimal("1000")
    assert limits.max_tx_per_cycle == 10
    assert limits.source == "default"


def test_smallest_limit_wins() -> None:
    file_config = WatchFileConfig(max_value=Decimal("0.5"), max_daily=Decimal("2"), max_tx_per_cycle=3)
    limits = resolve_limits(
        yes=True,
        max_value=Decimal("1"),
        max_daily=Decimal("5"),
        file_config=file_config,
        cfg=Settings(),
    )
    assert limits.max_value == Decimal("0.5")
    assert limits.max_daily == Decimal("2")
    assert limits.max_tx_per_cycle == 3
    assert limits.source == "cli"


def test_config_source_and_tx_cap_clamped() -> None:
    limits = resolve_limits(
        yes=False,
        max_tx_per_cycle=500,
        file_config=WatchFileConfig(max_value=Decimal("1")),
        cfg=Settings(),
    )
    assert limits.source == "config"
    assert limits.max_tx_per_cycle == 50


def test_merge_limit() -> None:
    assert merge_limit(None, Decimal("3"), Decimal("2")) == Decimal("2")
    with pytest.raises(ValueError):
        merge_limit(None, None)


def test_seconds_until_utc_midnight() -> None:
    assert seconds_until_utc_midnight(START_TIME) == 43200
    assert seconds_until_utc_midnight(START_TIME + 43199) == 1


# ---------------------------------------------------------------------------
# SpendingGovernor
# ---------------------------------------------------------------------------

def test_per_escrow_limit() -> None:
    governor = _governor(max_value="1")
    violation = governor.check(Decimal("1.5"), moves_value=False)
    assert violation.kind == PER_ESCROW
    assert governor.check(Decimal("1"), moves_value=True) is None


def test_daily_limit_never_exceeded() -> None:
    governor = _governor(max_daily="1")
    governor.record(Decimal("0.6"))

    violation = governor.check(Decimal("0.5"), moves_value=True)

    assert violation.kind == DAILY
    assert violation.current == Decimal("0.6")
    assert governor.daily_exhausted
    # Non-value actions still run until the daily budget is fully used
    assert governor.check(Decimal("0.5"), moves_value=False) is None


def test_cumulative_limit() -> None:
    governor = _governor(max_cumulative="1")
    governor.state.cumulative_value_processed = Decimal("0.8")

    violation = governor.check(Decimal("0.3"), moves_value=True)

    assert violation.kind == CUMULATIVE
    assert governor.cumulative_exhausted


def test_record_mirrors_to_keychain() -> None:
    keychain = MemoryKeychain()
    governor = _governor(keychain)

    governor.record(Decimal("0.25"))

    assert governor.state.daily_tx_count == 1
    assert keychain.get("WATCH_CUMULATIVE") == "0.25"
    assert keychain.get("WATCH_DAILY") == "2026-01-15:0.25"


def test_load_backups_larger_value_wins() -> None:
    keychain = MemoryKeychain({"WATCH_CUMULATIVE": "7.5", "WATCH_DAILY": "2026-01-15:2"})
    state = WatchState(daily_date="2026-01-15", cumulative_value_processed=Decimal("3"))
    governor = SpendingGovernor(state, make_limits(), keychain)

    governor.load_backups(START_TIME)

    assert state.cumulative_value_processed == Decimal("7.5")
    assert state.daily_value_processed == Decimal("2")


def test_load_backups_ignores_stale_daily_and_garbage() -> None:
    keychain = MemoryKeychain({"WATCH_CUMULATIVE": "not a number", "WATCH_DAILY": "2026-01-14:9"})
    state = WatchState(daily_date="2026-01-15", cumulative_value_processed=Decimal("3"))

    SpendingGovernor(state, make_limits(), keychain).load_backups(START_TIME)

    assert state.cumulative_value_processed == Decimal("3")
    assert state.daily_value_processed == Decimal("0")


def test_roll_day_resets_daily_counters_only() -> None:
    governor = _governor()
    governor.record(Decimal("1"))

    assert governor.roll_day(START_TIME) is False
    assert governor.roll_day(START_TIME + 86400) is True

    assert governor.state.daily_value_processed == 0
    assert governor.state.daily_tx_count == 0
    assert governor.state.cumulative_value_processed == Decimal("1")
    assert governor.state.daily_date == "2026-01-16"


def test_mirror_failure_is_logged_not_raised(caplog) -> None:
    class BrokenKeychain(MemoryKeychain):
        def set(self, key, value):
            raise RuntimeError("secret-tool store failed")

    governor = _governor(BrokenKeychain())
    governor.record(Decimal("1"))

    assert governor.state.cumulative_value_processed == Decimal("1")
    assert "Failed to mirror" in caplog.text


def test_mirror_survives_hung_secret_tool(caplog) -> None:
    with patch(
        "escrow_watch.services.keychain.subprocess.run",
        side_effect=subprocess.TimeoutExpired(cmd="secret-tool", timeout=5),
    ):
        governor = _governor(SecretToolKeychain())
        governor.record(Decimal("1"))

    assert governor.state.cumulative_value_processed == Decimal("1")
    assert "timed out" in caplog.text


def test_load_backups_unreadable_keychain_refuses_to_start() -> None:
    class LockedKeychain(MemoryKeychain):
        def get(self, key):
            raise RuntimeError("secret-tool lookup timed out after 5s")

    governor = SpendingGovernor(WatchState(), make_limits(), LockedKeychain())

    with pytest.raises(WatchError) as exc_info:
        governor.load_backups(START_TIME)
    assert exc_info.value.code == ErrorCode.KEYCHAIN_UNAVAILABLE
