"""Core data models for the raffle backend."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import IntEnum
from typing import Dict, List, Optional, Tuple


FULL_POOL_TO_WINNER = "full_pool_to_winner"


class RoundState(IntEnum):
    """Raffle round states; the values match the on-chain enum ordering."""

    OPEN = 0
    CALCULATING = 1


@dataclass(frozen=True)
class DrawRequestParams:
    """Parameters forwarded to the randomness coordinator with every draw request."""

    gas_lane: str
    subscription_id: int
    request_confirmations: int = 3
    callback_gas_limit: int = 500_000
    num_words: int = 1


@dataclass(frozen=True)
class RaffleConfig:
    """Immutable raffle settings, fixed at construction."""

    entrance_fee: int
    interval: int
    request: DrawRequestParams
    randomness_client_id: str
    raffle_address: str
    payout_policy: str = FULL_POOL_TO_WINNER

    def __post_init__(self) -> None:
        if self.entrance_fee <= 0:
            raise ValueError("entrance_fee must be positive")
        if self.interval < 0:
            raise ValueError("interval must not be negative")
        if self.request.num_words < 1:
            raise ValueError("num_words must be at least 1")
        if self.payout_policy != FULL_POOL_TO_WINNER:
            raise ValueError(f"Unsupported payout policy: {self.payout_policy}")


@dataclass(frozen=True)
class WinnerRecord:
    """Most recent winner, kept until the next round overwrites it."""

    winner: str
    amount: int
    request_id: int
    timestamp: int


@dataclass
class RaffleState:
    """Mutable state owned by a single `Raffle` instance.

    .snapshot() / .restore(snap) let the owner stage several writes and put
    everything back if a later step fails.
    """

    raffle_state: RoundState
    last_timestamp: int
    players: List[str] = field(default_factory=list)
    recent_winner: Optional[WinnerRecord] = None

    @dataclass(frozen=True)
    class Snapshot:
        raffle_state: RoundState
        last_timestamp: int
        players: Tuple[str, ...]
        recent_winner: Optional[WinnerRecord]

    def snapshot(self) -> "RaffleState.Snapshot":
        return RaffleState.Snapshot(
            raffle_state=self.raffle_state,
            last_timestamp=self.last_timestamp,
            players=tuple(self.players),
            recent_winner=self.recent_winner,
        )

    def restore(self, snap: "RaffleState.Snapshot") -> None:
        if not isinstance(snap, RaffleState.Snapshot):
            raise TypeError("invalid snapshot object")
        self.raffle_state = snap.raffle_state
        self.last_timestamp = snap.last_timestamp
        self.players = list(snap.players)
        self.recent_winner = snap.recent_winner


@dataclass
class LiveFeedItem:
    """Entry pushed to the activity feed for every raffle notification."""

    event_type: str
    message: str
    details: Dict[str, int | str]
    event_time: int

    def get_item_id(self) -> str:
        return f"{self.event_time}-{self.event_type}-{self.details.get('requestId', 0)}"


@dataclass
class OperatorStatus:
    """Operational metrics for the upkeep loop."""

    is_running: bool = False
    last_check: Optional[datetime] = None
    last_perform: Optional[datetime] = None
    last_request_id: Optional[int] = None
    consecutive_failures: int = 0
    total_draws_requested: int = 0

    def record_check(self) -> None:
        self.last_check = datetime.now(timezone.utc)

    def record_perform(self, request_id: int) -> None:
        self.last_perform = datetime.now(timezone.utc)
        self.last_request_id = request_id
        self.total_draws_requested += 1
        self.consecutive_failures = 0

    def increment_failures(self) -> None:
        self.consecutive_failures += 1
