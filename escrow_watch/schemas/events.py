"""Pydantic v2 schemas for the NDJSON event stream."""

from typing import Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class WatchEvent(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    event: str


class HelloEvent(WatchEvent):
    event: Literal["hello"] = "hello"
    protocol_version: int
    version: str
    address: str
    mode: str


class HeartbeatEvent(WatchEvent):
    event: Literal["heartbeat"] = "heartbeat"
    timestamp: str
    uptime_seconds: int
    cycle_count: int
    escrows_managed: int


class CycleStartEvent(WatchEvent):
    event: Literal["cycle_start"] = "cycle_start"
    timestamp: str
    cycle: int


class EscrowFoundEvent(WatchEvent):
    event: Literal["escrow_found"] = "escrow_found"
    escrow_id: int
    state: str
    role: str
    amount: str


class EscrowFundedEvent(WatchEvent):
    event: Literal["escrow_funded"] = "escrow_funded"
    escrow_id: int
    tx_hash: str
    amount: str


class KeyCommittedEvent(WatchEvent):
    event: Literal["key_committed"] = "key_committed"
    escrow_id: int
    tx_hash: str
    ecdh_commit: bool


class KeyRevealedEvent(WatchEvent):
    event: Literal["key_revealed"] = "key_revealed"
    escrow_id: int
    tx_hash: str
    ecdh_encrypted: bool


class DownloadStartEvent(WatchEvent):
    event: Literal["download_start"] = "download_start"
    escrow_id: int
    swarm_ref: str


class DownloadCompleteEvent(WatchEvent):
    event: Literal["download_complete"] = "download_complete"
    escrow_id: int
    path: str
    size: int
    content_hash_verified: bool = True


class ClaimExecutedEvent(WatchEvent):
    event: Literal["claim_executed"] = "claim_executed"
    escrow_id: int
    amount: str
    tx_hash: str


class ErrorEvent(WatchEvent):
    event: Literal["error"] = "error"
    escrow_id: int | None = None
    code: str
    message: str
    retryable: bool
    retry_after_seconds: int | None = None
    suggestion: str | None = None


class SpendingLimitEvent(WatchEvent):
    event: Literal["spending_limit"] = "spending_limit"
    type: Literal["per_escrow", "daily", "cumulative"]
    current: str
    limit: str
    action: Literal["paused", "skipped", "shutdown"]
    escrow_id: int | None = None


class CycleEndEvent(WatchEvent):
    event: Literal["cycle_end"] = "cycle_end"
    timestamp: str
    actions: int
    next: str | None = None


class ShutdownEvent(WatchEvent):
    event: Literal["shutdown"] = "shutdown"
    reason: Literal["signal", "once", "limit", "circuit_breaker"]
    state_saved: bool = True
    detail: str | None = None
