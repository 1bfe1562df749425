import json
import logging
import os
import stat
from decimal import Decimal, InvalidOperation
from pathlib import Path

from pydantic import BaseModel, ConfigDict, ValidationError, ValidationInfo, field_validator
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

APP_VERSION = "0.1.0"
PROTOCOL_VERSION = 1

MAX_CONFIG_FILE_BYTES = 10 * 1024
MIN_INTERVAL_SECONDS = 5


class Settings(BaseSettings):
    env: str = "development"
    config_dir: Path = Path.home() / ".config" / "escrow-watch"

    # Blockchain
    blockchain_network: str = "base_sepolia"  # "base_sepolia" or "base_mainnet"
    blockchain_rpc_url: str = ""  # Auto-set from network if empty
    escrow_contract_address: str = ""
    wallet_private_key: str = ""  # Fallback when the keychain has no WALLET_PRIVATE_KEY
    chain_timeout_seconds: int = 60
    gas_safety_cap_wei: int = 10**16  # 0.01 ETH
    log_lookback_blocks: int = 100_000
    block_time_seconds: int = 2  # Base L2

    # Commit -> reveal gate
    reveal_safety_margin_seconds: int = 10
    reveal_delay_fallback_seconds: int = 70  # 60s MIN_TIME_DELAY + margin

    # Marketplace API
    marketplace_api_url: str = "http://localhost:8000"
    marketplace_page_size: int = 50
    marketplace_max_escrows: int = 500

    # Content storage (Swarm Bee node)
    bee_api_url: str = "https://api.gateway.ethswarm.org"
    bee_postage_batch_id: str = ""
    max_download_bytes: int = 50 * 1024 * 1024
    http_timeout_seconds: float = 60.0

    # Keychain
    keychain_backend: str = "file"  # "file" or "secret_tool"

    # Daemon loop
    default_interval_seconds: int = 20
    cycle_timeout_seconds: int = 120
    heartbeat_interval_seconds: int = 60
    max_retries: int = 5
    default_max_tx_per_cycle: int = 10
    default_max_consecutive_api_failures: int = 10

    # Hard spending caps (ETH). Effective limits never exceed these.
    absolute_max_value: Decimal = Decimal("10")
    absolute_max_daily: Decimal = Decimal("100")
    absolute_max_cumulative: Decimal = Decimal("1000")
    absolute_max_tx_per_cycle: int = 50

    # Identity keystore
    keystore_scrypt_n: int = 2**18

    model_config = {"env_prefix": "ESCROW_WATCH_", "env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def resolved_rpc_url(self) -> str:
        if self.blockchain_rpc_url:
            return self.blockchain_rpc_url
        return {
            "base_sepolia": "https://sepolia.base.org",
            "base_mainnet": "https://mainnet.base.org",
        }[self.blockchain_network]

    @property
    def chain_id(self) -> int:
        return {"base_sepolia": 84532, "base_mainnet": 8453}[self.blockchain_network]

    @property
    def explorer_url(self) -> str:
        return {
            "base_sepolia": "https://sepolia.basescan.org",
            "base_mainnet": "https://basescan.org",
        }[self.blockchain_network]

    @property
    def state_path(self) -> Path:
        return self.config_dir / "watch-state.json"

    @property
    def lock_dir(self) -> Path:
        return self.config_dir / "watch.lock"

    @property
    def watch_config_path(self) -> Path:
        return self.config_dir / "watch.json"

    @property
    def keychain_path(self) -> Path:
        return self.config_dir / "keychain.json"


settings = Settings()


class WatchFileConfig(BaseModel):
    """Optional ``watch.json`` overrides. CLI flags take precedence."""

    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)

    interval: int | None = None
    max_value: Decimal | None = None
    max_daily: Decimal | None = None
    max_cumulative: Decimal | None = None
    max_tx_per_cycle: int | None = None
    max_consecutive_api_failures: int | None = None
    download_dir: str | None = None
    seller: bool | None = None
    buyer: bool | None = None
    escrow_ids: list[int] | None = None

    @field_validator("interval", mode="before")
    @classmethod
    def validate_interval(cls, v: object) -> int | None:
        if v is None:
            return None
        if isinstance(v, bool) or not isinstance(v, int) or v < MIN_INTERVAL_SECONDS:
            logger.warning("Config interval must be >= %d seconds, ignoring", MIN_INTERVAL_SECONDS)
            return None
        return v

    @field_validator("max_tx_per_cycle", "max_consecutive_api_failures", mode="before")
    @classmethod
    def validate_positive(cls, v: object) -> int | None:
        if v is None or isinstance(v, bool) or not isinstance(v, int) or v < 1:
            return None
        return v

    @field_validator("max_value", "max_daily", "max_cumulative", mode="before")
    @classmethod
    def validate_limit(cls, v: object, info: ValidationInfo) -> Decimal | None:
        if v is None:
            return None
        # Floats would lose precision; limits are decimal strings or ints.
        if isinstance(v, bool) or not isinstance(v, (str, int, float)):
            value = None
        else:
            try:
                value = Decimal(str(v))
            except InvalidOperation:
                value = None
        if value is None or not value.is_finite() or value <= 0:
            logger.warning("Config %s must be a positive ETH amount, ignoring", info.field_name)
            return None
        return value


def load_watch_config(path: Path) -> WatchFileConfig | None:
    """Load ``watch.json`` if it exists and is safe to trust.

    Symlinks, group/world-accessible files, files over 10 KiB, and
    unparseable content are ignored with a warning.
    """
    try:
        st = os.lstat(path)
    except FileNotFoundError:
        return None

    if stat.S_ISLNK(st.st_mode):
        logger.warning("Ignoring symlinked config at %s", path)
        return None
    if st.st_mode & 0o077:
        logger.warning("Config file %s has loose permissions. Run: chmod 600 %s", path, path)
        return None
    if st.st_size > MAX_CONFIG_FILE_BYTES:
        logger.warning("Config file %s exceeds %d bytes, ignoring", path, MAX_CONFIG_FILE_BYTES)
        return None

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        return WatchFileConfig.model_validate(raw)
    except (OSError, ValueError, ValidationError) as e:
        logger.warning("Ignoring unreadable config %s: %s", path, e)
        return None
