"""
Raffle Engine - the round state machine

Participants enter with a fixed stake while the round is OPEN. Once the
interval has passed and the pool is non-empty, `perform_upkeep` closes the
round (CALCULATING) and asks the randomness coordinator for a value. The
coordinator later calls back with random words; the winner is recorded, the
round is reset to OPEN and the pool is paid out, all as one transaction.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from threading import RLock
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from raffle.blockchain.funds import FundTransfer
from raffle.blockchain.vrf import RandomnessClient, RandomnessConsumer
from raffle.lottery.errors import (
    InsufficientStake,
    NoDrawPending,
    PayoutPending,
    RoundNotOpen,
    TransferFailed,
    UpkeepNotNeeded,
)
from raffle.lottery.event_manager import (
    ENTERED_RAFFLE,
    REQUESTED_DRAW,
    WINNER_PICKED,
    MemoryStore,
)
from raffle.lottery.models import RaffleConfig, RaffleState, RoundState, WinnerRecord
from raffle.utils.logger import get_logger

logger = get_logger(__name__)

Clock = Callable[[], float]


class Raffle(RandomnessConsumer):
    """Single-round raffle state machine.

    Every public operation runs under one re-entrant lock. The lock is
    re-entrant so that a payout recipient calling back into the raffle sees
    the already reset OPEN round. Notifications raised inside a transaction
    are held back until the outermost transaction commits and are dropped
    if it rolls back.
    """

    def __init__(
        self,
        config: RaffleConfig,
        randomness: RandomnessClient,
        funds: FundTransfer,
        store: Optional[MemoryStore] = None,
        clock: Clock = time.time,
    ) -> None:
        super().__init__(config.randomness_client_id)
        if randomness.client_id != config.randomness_client_id:
            raise ValueError(
                f"Randomness client {randomness.client_id} does not match configured "
                f"coordinator {config.randomness_client_id}"
            )
        if funds.holder != config.raffle_address:
            raise ValueError(f"Fund holder {funds.holder} is not the raffle address {config.raffle_address}")

        self.config = config
        self._randomness = randomness
        self._funds = funds
        self._store = store if store is not None else MemoryStore()
        self._clock = clock
        self._lock = RLock()
        self._depth = 0
        self._outbox: List[Tuple[str, Dict[str, Any], int]] = []
        self._state = RaffleState(raffle_state=RoundState.OPEN, last_timestamp=self._now())

        logger.info(
            "Raffle %s initialised: entrance fee %s, interval %ss",
            config.raffle_address, config.entrance_fee, config.interval,
        )

    @property
    def consumer_id(self) -> str:
        return self.config.raffle_address

    @property
    def store(self) -> MemoryStore:
        return self._store

    @property
    def funds(self) -> FundTransfer:
        return self._funds

    def _now(self) -> int:
        return int(self._clock())

    @contextmanager
    def _transaction(self) -> Iterator[RaffleState]:
        """Stage writes to the raffle state; restore everything if the block raises."""
        snap = self._state.snapshot()
        queued = len(self._outbox)
        self._depth += 1
        try:
            yield self._state
        except BaseException:
            self._state.restore(snap)
            del self._outbox[queued:]
            raise
        finally:
            self._depth -= 1
        if self._depth == 0:
            outbox, self._outbox = self._outbox, []
            for event_type, details, event_time in outbox:
                self._store.publish(event_type, details, event_time=event_time)

    def _notify(self, event_type: str, details: Dict[str, Any], event_time: int) -> None:
        # Only called inside _transaction; published on the outermost commit
        self._outbox.append((event_type, details, event_time))

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------
    def enter_raffle(self, participant: str, stake: int) -> None:
        with self._lock:
            if stake < self.config.entrance_fee:
                raise InsufficientStake(stake, self.config.entrance_fee)
            if self._state.raffle_state != RoundState.OPEN:
                raise RoundNotOpen(self._state.raffle_state)

            with self._transaction() as state:
                state.players.append(participant)
                self._funds.accept_stake(participant, stake)
                logger.info("%s entered the raffle with %s (%d players)", participant, stake, len(state.players))
                self._notify(ENTERED_RAFFLE, {"player": participant, "stake": stake}, self._now())

    # ------------------------------------------------------------------
    # Eligibility and draw trigger
    # ------------------------------------------------------------------
    def check_upkeep(self, check_data: bytes = b"") -> Tuple[bool, bytes]:
        with self._lock:
            time_has_passed = self._now() - self._state.last_timestamp >= self.config.interval
            is_open = self._state.raffle_state == RoundState.OPEN
            has_balance = self._funds.pooled_balance() > 0
            has_players = len(self._state.players) > 0
            return time_has_passed and is_open and has_balance and has_players, b""

    def perform_upkeep(self, perform_data: bytes = b"") -> int:
        with self._lock:
            upkeep_needed, _ = self.check_upkeep()
            if not upkeep_needed:
                raise UpkeepNotNeeded(
                    self._funds.pooled_balance(),
                    len(self._state.players),
                    self._state.raffle_state,
                )

            with self._transaction() as state:
                # Admissions close before the coordinator is contacted
                state.raffle_state = RoundState.CALCULATING
                request_id = self._randomness.request_draw(self.config.request, self)
                logger.info("Draw requested for %d players: request %s", len(state.players), request_id)
                self._notify(REQUESTED_DRAW, {"requestId": request_id}, self._now())
            return request_id

    # ------------------------------------------------------------------
    # Fulfillment
    # ------------------------------------------------------------------
    def fulfill_random_words(self, request_id: int, random_words: Sequence[int]) -> None:
        with self._lock:
            if self._state.raffle_state != RoundState.CALCULATING:
                raise NoDrawPending(request_id, self._state.raffle_state)
            if not random_words:
                raise ValueError("At least one random word is required")

            players = list(self._state.players)
            winner_index = random_words[0] % len(players)
            winner = players[winner_index]
            amount = self._funds.pooled_balance()
            now = self._now()

            with self._transaction() as state:
                state.recent_winner = WinnerRecord(
                    winner=winner, amount=amount, request_id=request_id, timestamp=now,
                )
                state.last_timestamp = now
                state.players = []
                state.raffle_state = RoundState.OPEN
                self._notify(WINNER_PICKED, {"winner": winner, "amount": amount, "requestId": request_id}, now)
                try:
                    paid = self._funds.transfer(winner, amount)
                except PayoutPending as exc:
                    # Already broadcast; rolling back would let a retry pay the pool twice
                    logger.warning("Request %s payout to %s awaits confirmation (%s)", request_id, winner, exc.tx_hash)
                    paid = True
                if not paid:
                    raise TransferFailed(winner, amount)

            logger.info("Request %s picked %s (index %d of %d), paid %s",
                        request_id, winner, winner_index, len(players), amount)

    # ------------------------------------------------------------------
    # Read-only accessors
    # ------------------------------------------------------------------
    def get_entrance_fee(self) -> int:
        return self.config.entrance_fee

    def get_interval(self) -> int:
        return self.config.interval

    def get_num_words(self) -> int:
        return self.config.request.num_words

    def get_request_confirmations(self) -> int:
        return self.config.request.request_confirmations

    def get_raffle_state(self) -> RoundState:
        with self._lock:
            return self._state.raffle_state

    def get_number_of_players(self) -> int:
        with self._lock:
            return len(self._state.players)

    def get_player(self, index: int) -> str:
        with self._lock:
            if index < 0 or index >= len(self._state.players):
                raise IndexError(f"No player at index {index}")
            return self._state.players[index]

    def get_players(self) -> List[str]:
        with self._lock:
            return list(self._state.players)

    def get_last_timestamp(self) -> int:
        with self._lock:
            return self._state.last_timestamp

    def get_winner_record(self) -> Optional[WinnerRecord]:
        with self._lock:
            return self._state.recent_winner

    def get_recent_winner(self) -> Optional[str]:
        record = self.get_winner_record()
        return record.winner if record else None

    def get_balance(self) -> int:
        return self._funds.pooled_balance()

    def get_status(self) -> dict:
        """Serialisable view of the current round."""
        with self._lock:
            now = self._now()
            record = self._state.recent_winner
            upkeep_needed, _ = self.check_upkeep()
            return {
                "raffleAddress": self.config.raffle_address,
                "state": self._state.raffle_state.value,
                "stateLabel": self._state.raffle_state.name,
                "entranceFee": self.config.entrance_fee,
                "interval": self.config.interval,
                "lastTimestamp": self._state.last_timestamp,
                "secondsUntilEligible": max(0, self._state.last_timestamp + self.config.interval - now),
                "numberOfPlayers": len(self._state.players),
                "balance": self._funds.pooled_balance(),
                "upkeepNeeded": upkeep_needed,
                "recentWinner": record.winner if record else None,
                "recentPayout": record.amount if record else None,
            }
