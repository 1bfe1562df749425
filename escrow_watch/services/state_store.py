"""Integrity-protected persistence of daemon state and single-instance locking.

The state file carries ``hmac = HMAC-SHA256(k, canonical_json(state - hmac))``
with ``k = sha256(prefix || signing key)``, so a file written under a
different wallet, or edited by hand, fails closed on load. Writes go to a
temp file and are renamed over the canonical path.

The lock is a directory: ``mkdir`` is atomic, so exactly one process can
create it. The owner's PID lives inside; a lock whose owner no longer
exists is cleared once and retried.
"""

import hashlib
import hmac
import json
import logging
import os
from pathlib import Path

from pydantic import ValidationError

from escrow_watch.errors import DaemonLocked, StateCorrupt
from escrow_watch.models.watch_state import WatchState

logger = logging.getLogger(__name__)

STATE_HMAC_PREFIX = b"escrow-watch-state-hmac:"
MAX_STATE_BYTES = 100 * 1024


def derive_hmac_key(signing_key: bytes) -> bytes:
    return hashlib.sha256(STATE_HMAC_PREFIX + bytes(signing_key)).digest()


def canonical_json(data: dict) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(",", ":")).encode()


def compute_state_hmac(data: dict, signing_key: bytes) -> str:
    """Tag a JSON-mode state dict. Any ``hmac`` key is excluded."""
    body = {k: v for k, v in data.items() if k != "hmac"}
    return hmac.new(derive_hmac_key(signing_key), canonical_json(body), hashlib.sha256).hexdigest()


def _write_private(path: Path, data: bytes) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)


class StateStore:
    def __init__(self, path: Path, signing_key: bytes) -> None:
        self.path = path
        self.tmp_path = path.with_name(path.name + ".tmp")
        self._signing_key = bytes(signing_key)

    def load(self) -> WatchState:
        """Load and verify. Raises FileNotFoundError or StateCorrupt."""
        size = self.path.stat().st_size
        if size > MAX_STATE_BYTES:
            raise StateCorrupt(f"State file too large ({size} bytes)")

        try:
            data = json.loads(self.path.read_bytes())
        except ValueError:
            raise StateCorrupt("State file is not valid JSON") from None
        if not isinstance(data, dict):
            raise StateCorrupt("State file is not a JSON object")

        saved = data.get("hmac")
        expected = compute_state_hmac(data, self._signing_key)
        if not isinstance(saved, str) or not hmac.compare_digest(saved, expected):
            raise StateCorrupt()

        try:
            return WatchState.model_validate(data)
        except ValidationError as e:
            raise StateCorrupt(f"State file has an invalid schema: {e.error_count()} errors") from None

    def load_or_create(self) -> WatchState:
        try:
            return self.load()
        except FileNotFoundError:
            logger.info("No watch state at %s, starting fresh", self.path)
            return WatchState()

    def save(self, state: WatchState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        data = state.model_dump(mode="json", exclude={"hmac"})
        data["hmac"] = compute_state_hmac(data, self._signing_key)
        state.hmac = data["hmac"]

        _write_private(self.tmp_path, json.dumps(data, indent=2).encode())
        os.replace(self.tmp_path, self.path)

    def cleanup_temp(self) -> None:
        """Remove a temp file left behind by a crashed write."""
        try:
            self.tmp_path.unlink()
            logger.info("Removed stale temp state file %s", self.tmp_path)
        except FileNotFoundError:
            pass

    def delete(self) -> None:
        for p in (self.path, self.tmp_path):
            try:
                p.unlink()
            except FileNotFoundError:
                pass


def pid_alive(pid: int) -> bool:
    """Signal-0 liveness check."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but belongs to someone else
        return True
    return True


class DaemonLock:
    def __init__(self, lock_dir: Path) -> None:
        self.lock_dir = lock_dir
        self.pid_path = lock_dir / "pid"
        self._held = False

    def read_pid(self) -> int | None:
        try:
            return int(self.pid_path.read_text().strip())
        except (FileNotFoundError, NotADirectoryError, ValueError):
            return None

    def live_holder(self) -> int | None:
        """PID of a running owner, or None if the lock is free or stale."""
        pid = self.read_pid()
        if pid is not None and pid_alive(pid):
            return pid
        return None

    def _clear(self) -> None:
        try:
            self.pid_path.unlink()
        except FileNotFoundError:
            pass
        try:
            self.lock_dir.rmdir()
        except FileNotFoundError:
            pass

    def acquire(self) -> None:
        self.lock_dir.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        try:
            os.mkdir(self.lock_dir, 0o700)
        except FileExistsError:
            pid = self.live_holder()
            if pid is not None:
                raise DaemonLocked(
                    f"Another watch instance is running (PID {pid})",
                    "Stop it first, or run: escrow-watch --reset-state",
                ) from None
            logger.warning("Clearing stale watch lock at %s", self.lock_dir)
            self._clear()
            try:
                os.mkdir(self.lock_dir, 0o700)
            except FileExistsError:
                raise DaemonLocked(
                    "Another instance acquired the lock during cleanup",
                    "Try again or check running instances",
                ) from None

        _write_private(self.pid_path, str(os.getpid()).encode())
        self._held = True

    def release(self) -> None:
        if not self._held:
            return
        self._clear()
        self._held = False


def reset_state(state_path: Path, lock_dir: Path) -> None:
    """Delete persisted state and the lock. Refuses while a daemon is running."""
    lock = DaemonLock(lock_dir)
    pid = lock.live_holder()
    if pid is not None:
        raise DaemonLocked(
            f"Cannot reset state while daemon is running (PID {pid})",
            f"Stop the daemon first: kill {pid}",
        )
    StateStore(state_path, b"").delete()
    lock._clear()
