"""Core data models for the raffle state machine."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import IntEnum
from typing import Any, Dict, List, Optional, Tuple


class RaffleState(IntEnum):
    """Round states, numbered as the on-chain Raffle contract reports them."""

    OPEN = 0
    CALCULATING = 1


@dataclass(frozen=True)
class RaffleConfig:
    """Immutable parameters of a raffle instance."""

    entrance_fee: int
    interval: int
    gas_lane: str
    subscription_id: int
    callback_gas_limit: int
    request_confirmations: int = 3
    num_words: int = 1


@dataclass(frozen=True)
class RandomnessRequestParams:
    """Seed parameters submitted to the randomness oracle."""

    key_hash: str
    subscription_id: int
    request_confirmations: int
    callback_gas_limit: int
    num_words: int


@dataclass(frozen=True)
class Entry:
    participant: str
    stake: int


@dataclass
class PendingRequest:
    """Outstanding randomness request and the round snapshot it was issued against."""

    request_id: int
    round_id: int
    entries: Tuple[Entry, ...]
    amount: int
    requested_at: int
    random_words: Optional[List[int]] = None
    winner_index: Optional[int] = None
    winner: Optional[str] = None
    settling: bool = False

    @property
    def players(self) -> List[str]:
        return [entry.participant for entry in self.entries]

    @property
    def awaiting_payout(self) -> bool:
        """True once the callback was processed but the payout has not gone through."""
        return self.winner is not None and not self.settling


@dataclass(frozen=True)
class UpkeepCheck:
    """Result of `check_upkeep`, with the individual conditions for diagnostics."""

    upkeep_needed: bool
    reason: str
    is_open: bool
    time_passed: bool
    has_players: bool
    has_balance: bool

    def as_dict(self) -> Dict[str, Any]:
        return {
            "upkeepNeeded": self.upkeep_needed,
            "reason": self.reason,
            "isOpen": self.is_open,
            "timePassed": self.time_passed,
            "hasPlayers": self.has_players,
            "hasBalance": self.has_balance,
        }


@dataclass
class RoundSnapshot:
    """Historical record of a settled or refunded round."""

    round_id: int
    participant_count: int
    total_pot: int
    winner: Optional[str]
    request_id: Optional[int]
    finished_at: int
    final_state: str
    refund_reason: Optional[str] = None


@dataclass
class LiveFeedItem:
    """Entry pushed to the activity feed."""

    event_type: str
    message: str
    details: Dict[str, Any]
    event_time: int

    def get_item_id(self) -> str:
        round_id = self.details.get("roundId", 0)
        return f"{round_id}-{self.event_time}-{self.event_type}"


@dataclass
class KeeperStatus:
    """Operational metrics for the keeper loop."""

    is_running: bool = False
    last_check: Optional[datetime] = None
    last_upkeep: Optional[datetime] = None
    last_request_id: Optional[int] = None
    consecutive_oracle_failures: int = 0
    consecutive_payout_failures: int = 0
    callbacks_processed: int = 0
    rounds_cancelled: int = 0
    last_error: Optional[str] = None

    def record_check(self) -> None:
        self.last_check = datetime.utcnow()

    def record_upkeep(self, request_id: int) -> None:
        self.last_upkeep = datetime.utcnow()
        self.last_request_id = request_id
        self.consecutive_oracle_failures = 0
