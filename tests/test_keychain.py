"""Tests for the pluggable keychain backends."""

import subprocess
from unittest.mock import patch

import pytest

from escrow_watch.config import Settings
from escrow_watch.services.keychain import FileKeychain, SecretToolKeychain, get_keychain


def test_file_keychain_set_get_remove(tmp_path) -> None:
    kc = FileKeychain(tmp_path / "config" / "keychain.json")

    assert kc.get("WALLET_PRIVATE_KEY") is None
    kc.set("WALLET_PRIVATE_KEY", "0xabc")
    kc.set("ESCROW_1_KEY", "0x01")

    assert kc.get("WALLET_PRIVATE_KEY") == "0xabc"
    assert kc.list() == ["ESCROW_1_KEY", "WALLET_PRIVATE_KEY"]
    assert kc.remove("ESCROW_1_KEY") is True
    assert kc.remove("ESCROW_1_KEY") is False
    assert kc.list() == ["WALLET_PRIVATE_KEY"]


def test_file_keychain_is_private(tmp_path) -> None:
    path = tmp_path / "keychain.json"
    FileKeychain(path).set("A", "b")
    assert path.stat().st_mode & 0o777 == 0o600


def test_file_keychain_rejects_corrupt_file(tmp_path) -> None:
    path = tmp_path / "keychain.json"
    path.write_text("not json")
    with pytest.raises(ValueError):
        FileKeychain(path).get("A")


def _completed(returncode=0, stdout="", stderr="") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


def test_secret_tool_lookup() -> None:
    with patch("escrow_watch.services.keychain.subprocess.run", return_value=_completed(stdout="0xabc\n")) as run:
        assert SecretToolKeychain().get("WALLET_PRIVATE_KEY") == "0xabc"

    args = run.call_args.args[0]
    assert args[:2] == ["secret-tool", "lookup"]
    assert args[-2:] == ["key", "WALLET_PRIVATE_KEY"]


def test_secret_tool_missing_entry() -> None:
    with patch("escrow_watch.services.keychain.subprocess.run", return_value=_completed(returncode=1)):
        assert SecretToolKeychain().get("NOPE") is None


def test_secret_tool_store_passes_value_on_stdin() -> None:
    with patch("escrow_watch.services.keychain.subprocess.run", return_value=_completed()) as run:
        SecretToolKeychain().set("WATCH_CUMULATIVE", "1.5")
    assert run.call_args.kwargs["input"] == "1.5"


def test_secret_tool_store_failure_raises() -> None:
    with patch(
        "escrow_watch.services.keychain.subprocess.run",
        return_value=_completed(returncode=1, stderr="locked"),
    ):
        with pytest.raises(RuntimeError, match="locked"):
            SecretToolKeychain().set("A", "b")


def test_secret_tool_list_parses_attributes() -> None:
    output = (
        "[/org/freedesktop/secrets/collection/login/1]\n"
        "attribute.application = escrow-watch\n"
        "attribute.key = ESCROW_2_KEY\n"
        "[/org/freedesktop/secrets/collection/login/2]\n"
        "attribute.key = ESCROW_2_SALT\n"
    )
    with patch("escrow_watch.services.keychain.subprocess.run", return_value=_completed(stderr=output)):
        assert SecretToolKeychain().list() == ["ESCROW_2_KEY", "ESCROW_2_SALT"]


def test_get_keychain_backends(tmp_path) -> None:
    assert isinstance(get_keychain(Settings(config_dir=tmp_path)), FileKeychain)
    assert isinstance(get_keychain(Settings(keychain_backend="secret_tool")), SecretToolKeychain)
    with pytest.raises(ValueError, match="Unknown keychain backend"):
        get_keychain(Settings(keychain_backend="magic"))


@pytest.mark.parametrize("error,message", [
    (subprocess.TimeoutExpired(cmd="secret-tool", timeout=5), "timed out"),
    (FileNotFoundError("secret-tool"), "not installed"),
])
def test_secret_tool_failures_raise_runtime_error(error: Exception, message: str) -> None:
    with patch("escrow_watch.services.keychain.subprocess.run", side_effect=error):
        with pytest.raises(RuntimeError, match=message):
            SecretToolKeychain().get("WATCH_CUMULATIVE")
        with pytest.raises(RuntimeError, match=message):
            SecretToolKeychain().set("WATCH_CUMULATIVE", "1")
