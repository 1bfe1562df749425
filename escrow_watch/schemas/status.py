"""Pydantic v2 schema for ``escrow-watch --status`` output."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from escrow_watch.models.watch_state import EffectiveLimits


class WatchStatus(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    running: bool
    pid: int | None = None
    uptime_seconds: int | None = None
    last_cycle: str | None = None
    cycles: int = 0
    escrows_managed: int = 0
    needs_manual: int = 0
    escrows_with_errors: int = 0
    daily_value: str = "unverified"
    daily_tx: int = 0
    cumulative_value: str = "unverified"
    state_verified: bool = False
    effective_limits: EffectiveLimits | None = None
