"""``escrow-watch`` command line entry point.

Human-readable logs go to stderr; the NDJSON event stream goes to stdout.
"""

import argparse
import asyncio
import json
import logging
import re
import sys
from decimal import Decimal, InvalidOperation
from pathlib import Path

from escrow_watch.config import (
    APP_VERSION,
    MIN_INTERVAL_SECONDS,
    Settings,
    WatchFileConfig,
    load_watch_config,
    settings,
)
from escrow_watch.errors import ErrorCode, ExitCode, WatchError
from escrow_watch.services.chain import Web3EscrowChain
from escrow_watch.services.escrow_keys import SIGNING_KEY_NAME
from escrow_watch.services.identity import IdentitySession
from escrow_watch.services.keychain import Keychain, get_keychain
from escrow_watch.services.marketplace import MarketplaceClient
from escrow_watch.services.spending import resolve_limits
from escrow_watch.services.state_store import DaemonLock, StateStore, reset_state
from escrow_watch.services.storage import SwarmStore
from escrow_watch.services.watch import WatchDaemon, WatchOptions, watch_status
from escrow_watch.utils.crypto import from_hex, to_hex
from escrow_watch.utils.ecdh import address_to_hex, public_key_to_address

logger = logging.getLogger(__name__)

_IDENTITY_NAME_RE = re.compile(r"[A-Za-z0-9_-]{1,64}")


class _Parser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        self.print_usage(sys.stderr)
        self.exit(ExitCode.INVALID_ARGUMENT, f"{self.prog}: error: {message}\n")


def _eth_amount(value: str) -> Decimal:
    try:
        amount = Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"invalid ETH amount: {value!r}") from None
    if not amount.is_finite() or amount <= 0:
        raise argparse.ArgumentTypeError(f"amount must be positive: {value!r}")
    return amount


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer: {value!r}") from None
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1: {value!r}")
    return number


def _escrow_ids(value: str) -> list[int]:
    try:
        ids = [int(part) for part in value.split(",") if part.strip()]
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid escrow id list: {value!r}") from None
    if not ids or any(i < 0 for i in ids):
        raise argparse.ArgumentTypeError(f"invalid escrow id list: {value!r}")
    return ids


def _identity_name(value: str) -> str:
    if not _IDENTITY_NAME_RE.fullmatch(value):
        raise argparse.ArgumentTypeError(f"identity name must be 1-64 of [A-Za-z0-9_-]: {value!r}")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = _Parser(
        prog="escrow-watch",
        description="Drive commit-reveal data escrows to completion unattended",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {APP_VERSION}")

    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    mode.add_argument("--status", action="store_true", help="Print daemon status as JSON and exit")
    mode.add_argument("--reset-state", action="store_true", help="Delete persisted state and the lock")
    mode.add_argument("--init-identity", type=_identity_name, metavar="NAME",
                      help="Create the ECDH identity (passphrase on stdin) and exit")

    parser.add_argument("--yes", action="store_true", help="Non-interactive mode (requires --max-value)")
    parser.add_argument("--dry-run", action="store_true", help="Decide but never submit transactions")

    roles = parser.add_mutually_exclusive_group()
    roles.add_argument("--seller-only", action="store_true", help="Only act on escrows we sell")
    roles.add_argument("--buyer-only", action="store_true", help="Only act on escrows we buy")

    parser.add_argument("--interval", type=_positive_int,
                        help=f"Seconds between cycles (minimum {MIN_INTERVAL_SECONDS})")
    parser.add_argument("--download-dir", type=Path, help="Where decrypted files are written")
    parser.add_argument("--escrow-ids", type=_escrow_ids, help="Comma-separated allowlist of escrow ids")
    parser.add_argument("--max-value", type=_eth_amount, help="Per-escrow ceiling in ETH")
    parser.add_argument("--max-daily", type=_eth_amount, help="Daily ceiling in ETH (UTC day)")
    parser.add_argument("--max-cumulative", type=_eth_amount, help="Lifetime ceiling in ETH")
    parser.add_argument("--max-tx-per-cycle", type=_positive_int, help="Actions per cycle")
    parser.add_argument("--auto-fund", action="store_true", help="Fund Created escrows where we are the buyer")
    parser.add_argument("--password-stdin", action="store_true",
                        help="Read the identity passphrase from stdin to unlock it for ECDH decryption")

    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("--quiet", "-q", action="store_true", help="Only log errors")
    verbosity.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser


def configure_logging(quiet: bool = False, verbose: bool = False) -> None:
    level = logging.ERROR if quiet else logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )
    # web3 and httpx are chatty at DEBUG
    for noisy in ("web3", "httpx", "httpcore", "urllib3"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))


def _signing_key(keychain: Keychain, cfg: Settings) -> str | None:
    return keychain.get(SIGNING_KEY_NAME) or cfg.wallet_private_key or None


def _key_bytes(key: str) -> bytes:
    try:
        raw = from_hex(key)
    except ValueError:
        raw = b""
    if len(raw) != 32:
        raise WatchError(ErrorCode.MISSING_KEY, "Wallet key is not a 32-byte hex string")
    return raw


def _require_signing_key(keychain: Keychain, cfg: Settings) -> str:
    key = _signing_key(keychain, cfg)
    if not key:
        raise WatchError(
            ErrorCode.MISSING_KEY,
            "No wallet key configured",
            f"Store it in the keychain as {SIGNING_KEY_NAME} or set ESCROW_WATCH_WALLET_PRIVATE_KEY",
        )
    _key_bytes(key)
    return key


def build_options(args: argparse.Namespace, file_config: WatchFileConfig | None, cfg: Settings) -> WatchOptions:
    fc = file_config or WatchFileConfig()
    seller_only = args.seller_only or (not args.buyer_only and fc.buyer is False)
    buyer_only = args.buyer_only or (not args.seller_only and fc.seller is False)
    if seller_only and buyer_only:
        raise WatchError(ErrorCode.INVALID_ARGUMENT, "Config disables both seller and buyer roles")

    interval = args.interval or fc.interval or cfg.default_interval_seconds
    return WatchOptions(
        once=args.once,
        dry_run=args.dry_run,
        seller_only=seller_only,
        buyer_only=buyer_only,
        auto_fund=args.auto_fund,
        interval=max(interval, MIN_INTERVAL_SECONDS),
        download_dir=args.download_dir or Path(fc.download_dir or "."),
        escrow_ids=args.escrow_ids or fc.escrow_ids,
        max_consecutive_api_failures=(
            fc.max_consecutive_api_failures or cfg.default_max_consecutive_api_failures
        ),
    )


async def run_daemon(args: argparse.Namespace, cfg: Settings = settings) -> ExitCode:
    file_config = load_watch_config(cfg.watch_config_path)
    limits = resolve_limits(
        yes=args.yes,
        max_value=args.max_value,
        max_daily=args.max_daily,
        max_cumulative=args.max_cumulative,
        max_tx_per_cycle=args.max_tx_per_cycle,
        file_config=file_config,
        cfg=cfg,
    )
    options = build_options(args, file_config, cfg)

    keychain = get_keychain(cfg)
    private_key = _require_signing_key(keychain, cfg)

    identity = IdentitySession(keychain, scrypt_n=cfg.keystore_scrypt_n)
    if args.password_stdin and identity.active_name():
        identity.unlock(sys.stdin.readline().rstrip("\r\n"))

    try:
        daemon = WatchDaemon(
            chain=Web3EscrowChain(
                cfg.resolved_rpc_url,
                cfg.escrow_contract_address,
                private_key,
                cfg.chain_id,
                timeout_seconds=cfg.chain_timeout_seconds,
                gas_safety_cap_wei=cfg.gas_safety_cap_wei,
                log_lookback_blocks=cfg.log_lookback_blocks,
            ),
            store=SwarmStore(
                cfg.bee_api_url,
                postage_batch_id=cfg.bee_postage_batch_id,
                max_download_bytes=cfg.max_download_bytes,
                timeout=cfg.http_timeout_seconds,
            ),
            marketplace=MarketplaceClient(
                cfg.marketplace_api_url,
                page_size=cfg.marketplace_page_size,
                max_escrows=cfg.marketplace_max_escrows,
                timeout=cfg.http_timeout_seconds,
            ),
            keychain=keychain,
            identity=identity,
            state_store=StateStore(cfg.state_path, _key_bytes(private_key)),
            lock=DaemonLock(cfg.lock_dir),
            limits=limits,
            options=options,
            cfg=cfg,
        )
        daemon.install_signal_handlers()
        return await daemon.run()
    finally:
        identity.lock()


def show_status(cfg: Settings = settings) -> ExitCode:
    keychain = get_keychain(cfg)
    key = _signing_key(keychain, cfg)
    status = watch_status(cfg, _key_bytes(key) if key else None)
    print(json.dumps(status.model_dump(mode="json", by_alias=True), indent=2))
    return ExitCode.OK


def do_reset(cfg: Settings = settings) -> ExitCode:
    reset_state(cfg.state_path, cfg.lock_dir)
    print(json.dumps({"success": True, "message": "Watch state reset"}))
    return ExitCode.OK


def init_identity(name: str, password: str, cfg: Settings = settings) -> ExitCode:
    """Create the key-exchange identity buyers publish and ``--password-stdin`` unlocks."""
    session = IdentitySession(get_keychain(cfg), scrypt_n=cfg.keystore_scrypt_n)
    public_key = session.create(name, password)
    print(json.dumps({
        "success": True,
        "name": name,
        "publicKey": to_hex(public_key),
        "address": address_to_hex(public_key_to_address(public_key)),
    }))
    return ExitCode.OK


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(quiet=args.quiet, verbose=args.verbose)

    try:
        if args.status:
            return int(show_status())
        if args.reset_state:
            return int(do_reset())
        if args.init_identity:
            return int(init_identity(args.init_identity, sys.stdin.readline().rstrip("\r\n")))
        return int(asyncio.run(run_daemon(args)))
    except WatchError as e:
        logger.debug("Exiting on %s", e.code.value, exc_info=True)
        print(e.to_human(), file=sys.stderr)
        return int(e.exit_code)


if __name__ == "__main__":
    sys.exit(main())
