"""Pluggable keychain for secrets the daemon reads and writes by name.

Supports:
- file: owner-only JSON file under the config directory (default)
- secret_tool: freedesktop Secret Service via the ``secret-tool`` CLI

Configure via ESCROW_WATCH_KEYCHAIN_BACKEND.
"""

import json
import logging
import os
import re
import subprocess
from pathlib import Path
from typing import Protocol

from escrow_watch.config import Settings

logger = logging.getLogger(__name__)

APP = "escrow-watch"
SECRET_TOOL_TIMEOUT = 5  # seconds

# What any backend raises when the store is unreachable or locked
KEYCHAIN_ERRORS = (OSError, RuntimeError)


class Keychain(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> bool: ...

    def list(self) -> list[str]: ...


class FileKeychain:
    """Secrets in a single 0600 JSON object. Last writer wins."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def _read(self) -> dict[str, str]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except ValueError:
            logger.error("Keychain file %s is not valid JSON", self.path)
            raise
        return {str(k): str(v) for k, v in data.items()}

    def _write(self, data: dict[str, str]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True, mode=0o700)
        tmp = self.path.with_name(self.path.name + ".tmp")
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
        os.replace(tmp, self.path)

    def get(self, key: str) -> str | None:
        return self._read().get(key)

    def set(self, key: str, value: str) -> None:
        data = self._read()
        data[key] = value
        self._write(data)

    def remove(self, key: str) -> bool:
        data = self._read()
        if key not in data:
            return False
        del data[key]
        self._write(data)
        return True

    def list(self) -> list[str]:
        return sorted(self._read())


class SecretToolKeychain:
    """libsecret backend (GNOME Keyring, KWallet) through ``secret-tool``."""

    _KEY_RE = re.compile(r"attribute\.key = (\S+)")

    def _run(self, args: list[str], stdin: str | None = None) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                ["secret-tool", *args],
                input=stdin,
                capture_output=True,
                text=True,
                timeout=SECRET_TOOL_TIMEOUT,
                check=False,
            )
        except FileNotFoundError:
            raise RuntimeError("secret-tool is not installed (package libsecret-tools)") from None
        except subprocess.TimeoutExpired:
            raise RuntimeError(f"secret-tool {args[0]} timed out after {SECRET_TOOL_TIMEOUT}s") from None

    def get(self, key: str) -> str | None:
        result = self._run(["lookup", "application", APP, "key", key])
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def set(self, key: str, value: str) -> None:
        result = self._run(
            ["store", f"--label={APP}: {key}", "application", APP, "key", key],
            stdin=value,
        )
        if result.returncode != 0:
            raise RuntimeError(f"secret-tool store failed for '{key}': {result.stderr.strip()}")

    def remove(self, key: str) -> bool:
        return self._run(["clear", "application", APP, "key", key]).returncode == 0

    def list(self) -> list[str]:
        result = self._run(["search", "--all", "application", APP])
        if result.returncode != 0:
            return []
        # secret-tool prints attributes on stderr on some versions
        output = result.stdout + result.stderr
        return sorted(set(self._KEY_RE.findall(output)))


def get_keychain(cfg: Settings) -> Keychain:
    """Build the keychain backend named in settings."""
    backend = cfg.keychain_backend
    if backend == "file":
        return FileKeychain(cfg.keychain_path)
    if backend == "secret_tool":
        return SecretToolKeychain()
    raise ValueError(
        f"Unknown keychain backend: '{backend}'. Valid options: file, secret_tool"
    )
