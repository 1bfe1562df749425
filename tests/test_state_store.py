"""Tests for HMAC-protected state persistence and the daemon lock."""

import json
import os
from decimal import Decimal

import pytest

from escrow_watch.errors import DaemonLocked, ErrorCode, StateCorrupt
from escrow_watch.models.escrow import Role
from escrow_watch.models.watch_state import EscrowHandledState, WatchState
from escrow_watch.services.state_store import (
    MAX_STATE_BYTES,
    DaemonLock,
    StateStore,
    compute_state_hmac,
    pid_alive,
    reset_state,
)
from tests.conftest import SIGNING_KEY

DEAD_PID = 2_000_000_000


@pytest.fixture
def store(tmp_path) -> StateStore:
    return StateStore(tmp_path / "config" / "watch-state.json", SIGNING_KEY)


def _sample_state() -> WatchState:
    state = WatchState(cycle_count=3, cumulative_value_processed=Decimal("1.25"))
    state.set_handled(7, EscrowHandledState(role=Role.SELLER, committed=True, commit_timestamp=123))
    return state


def test_save_and_load(store) -> None:
    store.save(_sample_state())

    loaded = store.load()

    assert loaded.cycle_count == 3
    assert loaded.cumulative_value_processed == Decimal("1.25")
    assert loaded.get_handled(7).commit_timestamp == 123
    assert loaded.hmac


def test_saved_files_are_private(store) -> None:
    store.save(_sample_state())

    assert store.path.stat().st_mode & 0o777 == 0o600
    assert store.path.parent.stat().st_mode & 0o777 == 0o700
    assert not store.tmp_path.exists()


def test_edited_state_fails_closed(store) -> None:
    store.save(_sample_state())
    data = json.loads(store.path.read_text())
    data["cumulative_value_processed"] = "0"
    store.path.write_text(json.dumps(data))

    with pytest.raises(StateCorrupt) as exc_info:
        store.load()
    assert exc_info.value.code == ErrorCode.STATE_CORRUPT
    assert exc_info.value.suggestion == "Run: escrow-watch --reset-state"


def test_state_from_other_wallet_rejected(store) -> None:
    store.save(_sample_state())

    with pytest.raises(StateCorrupt):
        StateStore(store.path, b"\x09" * 32).load()


def test_oversized_state_rejected_before_parsing(store) -> None:
    store.path.parent.mkdir(parents=True)
    store.path.write_bytes(b" " * (MAX_STATE_BYTES + 1))

    with pytest.raises(StateCorrupt, match="too large"):
        store.load()


def test_invalid_json_rejected(store) -> None:
    store.path.parent.mkdir(parents=True)
    store.path.write_text("{not json")

    with pytest.raises(StateCorrupt, match="not valid JSON"):
        store.load()


def test_valid_hmac_with_bad_schema_rejected(store) -> None:
    data = {"version": 1, "cycle_count": "many"}
    data["hmac"] = compute_state_hmac(data, SIGNING_KEY)
    store.path.parent.mkdir(parents=True)
    store.path.write_text(json.dumps(data))

    with pytest.raises(StateCorrupt, match="invalid schema"):
        store.load()


def test_hmac_ignores_key_order() -> None:
    a = {"b": 1, "a": 2, "hmac": "x"}
    b = {"a": 2, "b": 1}
    assert compute_state_hmac(a, SIGNING_KEY) == compute_state_hmac(b, SIGNING_KEY)


def test_load_or_create_starts_fresh(store) -> None:
    state = store.load_or_create()
    assert state.cycle_count == 0
    assert state.handled == {}


def test_cleanup_temp(store) -> None:
    store.path.parent.mkdir(parents=True)
    store.tmp_path.write_text("partial")

    store.cleanup_temp()
    store.cleanup_temp()

    assert not store.tmp_path.exists()


# ---------------------------------------------------------------------------
# DaemonLock
# ---------------------------------------------------------------------------

def test_pid_alive() -> None:
    assert pid_alive(os.getpid())
    assert not pid_alive(0)
    assert not pid_alive(DEAD_PID)


def test_lock_acquire_and_release(tmp_path) -> None:
    lock = DaemonLock(tmp_path / "watch.lock")

    lock.acquire()
    try:
        assert lock.read_pid() == os.getpid()
        assert lock.live_holder() == os.getpid()
        with pytest.raises(DaemonLocked, match="Another watch instance"):
            DaemonLock(tmp_path / "watch.lock").acquire()
    finally:
        lock.release()

    assert not (tmp_path / "watch.lock").exists()


def test_stale_lock_is_cleared(tmp_path) -> None:
    lock_dir = tmp_path / "watch.lock"
    lock_dir.mkdir()
    (lock_dir / "pid").write_text(str(DEAD_PID))

    lock = DaemonLock(lock_dir)
    lock.acquire()

    assert lock.read_pid() == os.getpid()
    lock.release()


def test_lock_without_pid_file_is_stale(tmp_path) -> None:
    lock_dir = tmp_path / "watch.lock"
    lock_dir.mkdir()

    DaemonLock(lock_dir).acquire()

    assert (lock_dir / "pid").read_text() == str(os.getpid())


def test_release_only_when_held(tmp_path) -> None:
    lock_dir = tmp_path / "watch.lock"
    owner = DaemonLock(lock_dir)
    owner.acquire()

    DaemonLock(lock_dir).release()

    assert lock_dir.exists()
    owner.release()


def test_reset_state_refuses_while_running(tmp_path, store) -> None:
    store.save(_sample_state())
    lock = DaemonLock(tmp_path / "watch.lock")

    lock.acquire()
    try:
        with pytest.raises(DaemonLocked, match="Cannot reset"):
            reset_state(store.path, lock.lock_dir)
    finally:
        lock.release()
    assert store.path.exists()


def test_reset_state_deletes_state_and_stale_lock(tmp_path, store) -> None:
    store.save(_sample_state())
    lock_dir = tmp_path / "watch.lock"
    lock_dir.mkdir()
    (lock_dir / "pid").write_text(str(DEAD_PID))

    reset_state(store.path, lock_dir)

    assert not store.path.exists()
    assert not lock_dir.exists()
