"""Commit-reveal decision engine.

Pure functions over an on-chain ``EscrowRecord`` and the daemon's
``EscrowHandledState``. Nothing here performs I/O; routine conditions such
as "reveal gate not open yet" come back as a ``Decision`` rather than an
exception.

Decision table (role x on-chain state):

    Created       seller: -          buyer: fund (only with auto-fund)
    Funded        seller: commit     buyer: -
    KeyCommitted  seller: reveal     buyer: -     (after the reveal gate)
    Released      seller: claim      buyer: download + decrypt
                  (after claim_after)
    terminal      nothing
"""

import enum
from dataclasses import dataclass

from escrow_watch.models.escrow import EscrowRecord, EscrowState, Role
from escrow_watch.models.watch_state import EscrowHandledState

DEFAULT_REVEAL_DELAY_SECONDS = 70

_COMMITTED_STATES = frozenset({
    EscrowState.KEY_COMMITTED,
    EscrowState.RELEASED,
    EscrowState.CLAIMED,
    EscrowState.DISPUTED,
})
_RELEASED_STATES = frozenset({
    EscrowState.RELEASED,
    EscrowState.CLAIMED,
    EscrowState.DISPUTED,
})


class Action(str, enum.Enum):
    FUND = "fund"
    COMMIT = "commit"
    REVEAL = "reveal"
    CLAIM = "claim"
    DOWNLOAD = "download"

    @property
    def moves_value(self) -> bool:
        """Actions whose amount counts against the spending ceilings."""
        return self in (Action.REVEAL, Action.FUND)


@dataclass(frozen=True)
class Decision:
    action: Action | None = None
    reason: str = ""
    wait_seconds: int | None = None

    @property
    def ready(self) -> bool:
        return self.action is not None

    @classmethod
    def act(cls, action: Action) -> "Decision":
        return cls(action=action, reason=action.value)

    @classmethod
    def wait(cls, reason: str, seconds: int | None = None) -> "Decision":
        return cls(reason=reason, wait_seconds=seconds)

    @classmethod
    def idle(cls, reason: str) -> "Decision":
        return cls(reason=reason)


def reveal_delay_seconds(
    min_block_delay: int,
    min_time_delay: int,
    block_time_seconds: int,
    safety_margin_seconds: int,
) -> int:
    """Seconds to wait after the commit block before a reveal can succeed."""
    return max(min_block_delay * block_time_seconds, min_time_delay) + safety_margin_seconds


def claim_after(reveal_timestamp: int, dispute_window_seconds: int) -> int:
    """Claim threshold, anchored on the reveal block's timestamp."""
    return reveal_timestamp + dispute_window_seconds


def initial_handled_state(record: EscrowRecord, role: Role) -> EscrowHandledState:
    """Local state for an escrow seen for the first time."""
    return EscrowHandledState(
        role=role,
        funded=record.state != EscrowState.CREATED,
        committed=record.state in _COMMITTED_STATES,
        released=record.state in _RELEASED_STATES,
        claimed=record.state == EscrowState.CLAIMED,
    )


def sync_from_chain(handled: EscrowHandledState, record: EscrowRecord) -> list[str]:
    """Advance local flags the chain shows as already done. Never moves one back.

    Returns the names of the flags that changed.
    """
    advanced = []
    chain_view = initial_handled_state(record, handled.role)
    for flag in ("funded", "committed", "released", "claimed"):
        if getattr(chain_view, flag) and not getattr(handled, flag):
            setattr(handled, flag, True)
            advanced.append(flag)
    return advanced


def decide(
    record: EscrowRecord,
    handled: EscrowHandledState,
    now: int,
    *,
    reveal_delay: int = DEFAULT_REVEAL_DELAY_SECONDS,
    auto_fund: bool = False,
) -> Decision:
    if handled.needs_manual:
        return Decision.idle("needs manual intervention")
    if record.state.is_terminal:
        return Decision.idle(f"terminal state {record.state.name}")
    if record.state == EscrowState.DISPUTED:
        return Decision.idle("disputed")

    if handled.role == Role.SELLER:
        return _decide_seller(record, handled, now, reveal_delay)
    return _decide_buyer(record, handled, auto_fund)


def _decide_seller(
    record: EscrowRecord,
    handled: EscrowHandledState,
    now: int,
    reveal_delay: int,
) -> Decision:
    if record.state == EscrowState.FUNDED and not handled.committed:
        return Decision.act(Action.COMMIT)

    if record.state == EscrowState.KEY_COMMITTED and not handled.released:
        if handled.commit_timestamp is None:
            return Decision.wait("commit timestamp unknown")
        remaining = handled.commit_timestamp + reveal_delay - now
        if remaining > 0:
            return Decision.wait("reveal gate closed", remaining)
        return Decision.act(Action.REVEAL)

    if record.state == EscrowState.RELEASED and not handled.claimed:
        if handled.claim_after is None:
            return Decision.wait("reveal timestamp unknown")
        remaining = handled.claim_after - now
        if remaining > 0:
            return Decision.wait("dispute window open", remaining)
        return Decision.act(Action.CLAIM)

    return Decision.idle("nothing to do")


def _decide_buyer(record: EscrowRecord, handled: EscrowHandledState, auto_fund: bool) -> Decision:
    if record.state == EscrowState.CREATED and not handled.funded:
        if not auto_fund:
            return Decision.idle("awaiting manual funding")
        return Decision.act(Action.FUND)

    if record.state == EscrowState.RELEASED and not handled.downloaded:
        return Decision.act(Action.DOWNLOAD)

    return Decision.idle("nothing to do")
