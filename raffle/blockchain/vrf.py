"""Randomness client interface and an in-process VRF coordinator.

The raffle only ever talks to `RandomnessClient.request_draw`; results come
back later through `RandomnessConsumer.on_fulfilled`. The coordinator owns
the correlation state: which request ids are outstanding, for which
consumer, and on which subscription.
"""

from __future__ import annotations

import asyncio
import secrets
import time
from abc import ABC, abstractmethod
from concurrent.futures import Future
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, List, Optional, Sequence, Set

from raffle.lottery.errors import (
    ConsumerNotRegistered,
    DuplicateOrUnknownRequest,
    InsufficientSubscriptionBalance,
    InvalidSubscription,
    OnlyCoordinatorCanFulfill,
)
from raffle.lottery.models import DrawRequestParams
from raffle.utils.logger import get_logger

logger = get_logger(__name__)

LOCAL_COORDINATOR_ID = "local-vrf-coordinator"


class RandomnessConsumer(ABC):
    """Receives random words from exactly one authorised coordinator."""

    def __init__(self, coordinator_id: str) -> None:
        self._coordinator_id = coordinator_id

    @property
    @abstractmethod
    def consumer_id(self) -> str:
        """Identity the coordinator registers on a subscription."""

    def on_fulfilled(self, request_id: int, random_words: Sequence[int], *, caller: str) -> None:
        if caller != self._coordinator_id:
            raise OnlyCoordinatorCanFulfill(caller, self._coordinator_id)
        self.fulfill_random_words(request_id, random_words)

    @abstractmethod
    def fulfill_random_words(self, request_id: int, random_words: Sequence[int]) -> None:
        ...


class RandomnessClient(ABC):
    """Accepts draw requests and later delivers one result per request."""

    client_id: str

    @abstractmethod
    def request_draw(self, params: DrawRequestParams, consumer: RandomnessConsumer) -> int:
        """Register a request and return its correlation id without blocking."""


@dataclass
class Subscription:
    subscription_id: int
    owner: str
    balance: int = 0
    consumers: Set[str] = field(default_factory=set)


@dataclass
class DrawRequest:
    request_id: int
    subscription_id: int
    consumer: RandomnessConsumer
    num_words: int
    requested_at: int

    def to_dict(self) -> dict:
        return {
            "requestId": self.request_id,
            "subscriptionId": self.subscription_id,
            "consumer": self.consumer.consumer_id,
            "numWords": self.num_words,
            "requestedAt": self.requested_at,
        }


class LocalVRFCoordinator(RandomnessClient):
    """In-process coordinator modelled on a VRF coordinator mock.

    Fulfillment is explicit (`fulfill_random_words`) unless an
    `auto_fulfill_delay` is given, in which case it is scheduled on the
    attached event loop (or the running one) and delivered from a worker
    thread, since the consumer may block on its fund transfer. A request
    stays pending until its consumer accepts the result, so a failed
    fulfillment can be retried with the same id.
    """

    def __init__(
        self,
        client_id: str = LOCAL_COORDINATOR_ID,
        *,
        base_fee: int = 0,
        auto_fulfill_delay: Optional[float] = None,
    ) -> None:
        self.client_id = client_id
        self.base_fee = base_fee
        self.auto_fulfill_delay = auto_fulfill_delay
        self._lock = Lock()
        self._subscriptions: Dict[int, Subscription] = {}
        self._requests: Dict[int, DrawRequest] = {}
        self._in_flight: Set[int] = set()
        self._next_subscription_id = 1
        self._next_request_id = 1
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._scheduled: Set[Future] = set()

    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Event loop used for auto-fulfillment when requests arrive from other threads."""
        self._loop = loop

    # ------------------------------------------------------------------
    # Subscription management
    # ------------------------------------------------------------------
    def create_subscription(self, owner: str = "") -> int:
        with self._lock:
            sub_id = self._next_subscription_id
            self._next_subscription_id += 1
            self._subscriptions[sub_id] = Subscription(subscription_id=sub_id, owner=owner)
        logger.info("Created VRF subscription %s for %s", sub_id, owner or "anonymous")
        return sub_id

    def fund_subscription(self, subscription_id: int, amount: int) -> int:
        if amount <= 0:
            raise ValueError("Funding amount must be positive")
        with self._lock:
            sub = self._get_subscription(subscription_id)
            sub.balance += amount
            balance = sub.balance
        logger.info("Funded subscription %s with %s (balance %s)", subscription_id, amount, balance)
        return balance

    def add_consumer(self, subscription_id: int, consumer_id: str) -> None:
        with self._lock:
            self._get_subscription(subscription_id).consumers.add(consumer_id)
        logger.info("Added consumer %s to subscription %s", consumer_id, subscription_id)

    def remove_consumer(self, subscription_id: int, consumer_id: str) -> None:
        with self._lock:
            sub = self._get_subscription(subscription_id)
            if consumer_id not in sub.consumers:
                raise ConsumerNotRegistered(subscription_id, consumer_id)
            sub.consumers.discard(consumer_id)
        logger.info("Removed consumer %s from subscription %s", consumer_id, subscription_id)

    def get_subscription(self, subscription_id: int) -> Subscription:
        with self._lock:
            return self._get_subscription(subscription_id)

    def _get_subscription(self, subscription_id: int) -> Subscription:
        sub = self._subscriptions.get(subscription_id)
        if sub is None:
            raise InvalidSubscription(subscription_id)
        return sub

    # ------------------------------------------------------------------
    # Request / fulfillment
    # ------------------------------------------------------------------
    def request_draw(self, params: DrawRequestParams, consumer: RandomnessConsumer) -> int:
        with self._lock:
            sub = self._get_subscription(params.subscription_id)
            if consumer.consumer_id not in sub.consumers:
                raise ConsumerNotRegistered(params.subscription_id, consumer.consumer_id)
            request_id = self._next_request_id
            self._next_request_id += 1
            self._requests[request_id] = DrawRequest(
                request_id=request_id,
                subscription_id=params.subscription_id,
                consumer=consumer,
                num_words=params.num_words,
                requested_at=int(time.time()),
            )
        logger.info(
            "Random words requested: id=%s sub=%s consumer=%s words=%s",
            request_id, params.subscription_id, consumer.consumer_id, params.num_words,
        )
        if self.auto_fulfill_delay is not None:
            self._schedule_fulfillment(request_id)
        return request_id

    def fulfill_random_words(self, request_id: int, random_words: Optional[Sequence[int]] = None) -> List[int]:
        """Deliver random words for an outstanding request.

        Raises DuplicateOrUnknownRequest for an id that was never issued or
        has already been fulfilled. Whatever the consumer raises propagates
        and leaves the request pending.
        """
        with self._lock:
            request = self._requests.get(request_id)
            if request is None or request_id in self._in_flight:
                raise DuplicateOrUnknownRequest(request_id)
            sub = self._get_subscription(request.subscription_id)
            if sub.balance < self.base_fee:
                raise InsufficientSubscriptionBalance(sub.subscription_id, sub.balance, self.base_fee)
            self._in_flight.add(request_id)

        words = list(random_words) if random_words is not None else [
            secrets.randbits(256) for _ in range(request.num_words)
        ]
        try:
            request.consumer.on_fulfilled(request_id, words, caller=self.client_id)
        except Exception:
            with self._lock:
                self._in_flight.discard(request_id)
            logger.warning("Consumer rejected fulfillment of request %s; request stays pending", request_id)
            raise

        with self._lock:
            self._in_flight.discard(request_id)
            del self._requests[request_id]
            sub.balance -= self.base_fee
        logger.info("Fulfilled request %s with %d word(s)", request_id, len(words))
        return words

    def pending_requests(self) -> List[DrawRequest]:
        with self._lock:
            return [self._requests[rid] for rid in sorted(self._requests)]

    def is_pending(self, request_id: int) -> bool:
        with self._lock:
            return request_id in self._requests

    def _schedule_fulfillment(self, request_id: int) -> None:
        loop = self._loop
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.warning("No event loop; request %s must be fulfilled manually", request_id)
                return
        future = asyncio.run_coroutine_threadsafe(self._auto_fulfill(request_id), loop)
        self._scheduled.add(future)
        future.add_done_callback(self._scheduled.discard)

    async def _auto_fulfill(self, request_id: int) -> None:
        await asyncio.sleep(self.auto_fulfill_delay)
        try:
            await asyncio.to_thread(self.fulfill_random_words, request_id)
        except Exception as exc:
            logger.error("Automatic fulfillment of request %s failed: %s", request_id, exc)
