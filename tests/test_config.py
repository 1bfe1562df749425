"""Unit tests for escrow_watch/config.py."""

import json
import os
from decimal import Decimal

from escrow_watch.config import MAX_CONFIG_FILE_BYTES, Settings, WatchFileConfig, load_watch_config
from escrow_watch.services.spending import resolve_limits


def test_resolved_rpc_url_sepolia() -> None:
    s = Settings(blockchain_network="base_sepolia", blockchain_rpc_url="")
    assert "sepolia.base.org" in s.resolved_rpc_url


def test_resolved_rpc_url_mainnet() -> None:
    s = Settings(blockchain_network="base_mainnet", blockchain_rpc_url="")
    assert "mainnet.base.org" in s.resolved_rpc_url


def test_resolved_rpc_url_custom_override() -> None:
    s = Settings(blockchain_rpc_url="https://custom.rpc.example.com")
    assert s.resolved_rpc_url == "https://custom.rpc.example.com"


def test_chain_id() -> None:
    assert Settings(blockchain_network="base_sepolia").chain_id == 84532
    assert Settings(blockchain_network="base_mainnet").chain_id == 8453


def test_paths_live_under_config_dir(tmp_path) -> None:
    s = Settings(config_dir=tmp_path)
    assert s.state_path == tmp_path / "watch-state.json"
    assert s.lock_dir == tmp_path / "watch.lock"
    assert s.watch_config_path == tmp_path / "watch.json"


def test_env_prefix(monkeypatch) -> None:
    monkeypatch.setenv("ESCROW_WATCH_MAX_RETRIES", "9")
    monkeypatch.setenv("ESCROW_WATCH_ABSOLUTE_MAX_VALUE", "2.5")
    s = Settings()
    assert s.max_retries == 9
    assert s.absolute_max_value == Decimal("2.5")


def test_default_caps() -> None:
    s = Settings()
    assert s.absolute_max_value == Decimal("10")
    assert s.absolute_max_daily == Decimal("100")
    assert s.absolute_max_cumulative == Decimal("1000")
    assert s.cycle_timeout_seconds == 120


# ---------------------------------------------------------------------------
# watch.json
# ---------------------------------------------------------------------------

def _write_config(path, data, mode=0o600) -> None:
    path.write_text(json.dumps(data))
    os.chmod(path, mode)


def test_file_config_accepts_camel_case(tmp_path) -> None:
    path = tmp_path / "watch.json"
    _write_config(path, {
        "interval": 30,
        "maxValue": "0.5",
        "maxTxPerCycle": 4,
        "downloadDir": "/data",
        "seller": False,
        "escrowIds": [1, 2],
        "unknownKey": True,
    })

    fc = load_watch_config(path)

    assert fc.interval == 30
    assert fc.max_value == Decimal("0.5")
    assert fc.max_tx_per_cycle == 4
    assert fc.download_dir == "/data"
    assert fc.seller is False
    assert fc.escrow_ids == [1, 2]


def test_missing_config_is_none(tmp_path) -> None:
    assert load_watch_config(tmp_path / "watch.json") is None


def test_loose_permissions_ignored(tmp_path, caplog) -> None:
    path = tmp_path / "watch.json"
    _write_config(path, {"interval": 30}, mode=0o644)

    assert load_watch_config(path) is None
    assert "chmod 600" in caplog.text


def test_symlink_ignored(tmp_path) -> None:
    real = tmp_path / "real.json"
    _write_config(real, {"interval": 30})
    link = tmp_path / "watch.json"
    link.symlink_to(real)

    assert load_watch_config(link) is None


def test_oversized_config_ignored(tmp_path) -> None:
    path = tmp_path / "watch.json"
    _write_config(path, {"downloadDir": "x" * MAX_CONFIG_FILE_BYTES})

    assert load_watch_config(path) is None


def test_invalid_json_ignored(tmp_path) -> None:
    path = tmp_path / "watch.json"
    path.write_text("{interval: 30")
    os.chmod(path, 0o600)

    assert load_watch_config(path) is None


def test_bad_values_dropped() -> None:
    fc = WatchFileConfig.model_validate({"interval": 2, "maxTxPerCycle": 0, "maxDaily": 1.5})
    assert fc.interval is None
    assert fc.max_tx_per_cycle is None
    assert fc.max_daily == Decimal("1.5")


def test_non_positive_limits_dropped(caplog) -> None:
    fc = WatchFileConfig.model_validate({
        "maxValue": 0,
        "maxDaily": "-5",
        "maxCumulative": "lots",
    })
    assert fc.max_value is None
    assert fc.max_daily is None
    assert fc.max_cumulative is None
    assert "max_value must be a positive ETH amount" in caplog.text


def test_non_positive_limit_does_not_override_cli(test_settings) -> None:
    fc = WatchFileConfig.model_validate({"maxValue": "0", "maxDaily": "2"})
    limits = resolve_limits(max_value=Decimal("1"), yes=False, file_config=fc, cfg=test_settings)
    assert limits.max_value == Decimal("1")
    assert limits.max_daily == Decimal("2")
