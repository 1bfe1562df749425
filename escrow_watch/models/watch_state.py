"""Persisted daemon state: per-escrow progress plus spending counters."""

import os
from datetime import UTC, datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field

from escrow_watch.models.escrow import Role

STATE_VERSION = 1


def utc_today(now: float | None = None) -> str:
    ts = datetime.now(UTC) if now is None else datetime.fromtimestamp(now, UTC)
    return ts.date().isoformat()


def utc_iso(now: float | None = None) -> str:
    ts = datetime.now(UTC) if now is None else datetime.fromtimestamp(now, UTC)
    return ts.isoformat()


class EscrowHandledState(BaseModel):
    """What the daemon has already done for one escrow.

    Flags only move forward. ``needs_manual`` freezes all automation for the
    escrow until an operator resets state.
    """

    role: Role
    funded: bool = False
    fund_tx_hash: str | None = None
    committed: bool = False
    commit_tx_hash: str | None = None
    commit_timestamp: int | None = None
    has_encrypted_key: bool = False
    released: bool = False
    reveal_tx_hash: str | None = None
    claimed: bool = False
    claim_tx_hash: str | None = None
    claim_after: int | None = None
    downloaded: bool = False
    download_path: str | None = None
    retries: int = 0
    needs_manual: bool = False
    last_error: str | None = None


class EffectiveLimits(BaseModel):
    max_value: Decimal
    max_daily: Decimal
    max_cumulative: Decimal
    max_tx_per_cycle: int
    source: Literal["cli", "config", "default"]


class WatchState(BaseModel):
    version: int = STATE_VERSION
    hmac: str = ""
    pid: int = Field(default_factory=os.getpid)
    started_at: str = Field(default_factory=utc_iso)
    last_cycle: str = ""
    cycle_count: int = 0
    daily_date: str = Field(default_factory=utc_today)
    daily_value_processed: Decimal = Decimal("0")
    daily_tx_count: int = 0
    cumulative_value_processed: Decimal = Decimal("0")
    handled: dict[str, EscrowHandledState] = Field(default_factory=dict)
    effective_limits: EffectiveLimits | None = None

    def get_handled(self, escrow_id: int) -> EscrowHandledState | None:
        return self.handled.get(str(escrow_id))

    def set_handled(self, escrow_id: int, handled: EscrowHandledState) -> None:
        self.handled[str(escrow_id)] = handled
