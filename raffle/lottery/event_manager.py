"""In-memory notification store for the raffle backend."""

from __future__ import annotations

from collections import defaultdict, deque
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

from raffle.lottery.models import LiveFeedItem
from raffle.utils.common import shorten_eth_address
from raffle.utils.logger import get_logger

logger = get_logger(__name__)

Listener = Callable[[Optional[dict]], None]

# Notifications published by the raffle itself
ENTERED_RAFFLE = "EnteredRaffle"
REQUESTED_DRAW = "RequestedDraw"
WINNER_PICKED = "WinnerPicked"

# Aggregate update fired after any raffle notification
RAFFLE_UPDATE = "raffle_update"


class MemoryStore:
    """Volatile storage for raffle notifications and the live feed.

    Listeners are plain callables; one that raises is logged and skipped so
    that observers can never fail a raffle operation.
    """

    def __init__(self, *, feed_capacity: int = 100) -> None:
        self._lock = Lock()
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._live_feed: deque[LiveFeedItem] = deque(maxlen=feed_capacity)

    # ------------------------------------------------------------------
    # Listener management
    # ------------------------------------------------------------------
    def add_listener(self, event_type: str, callback: Listener) -> None:
        with self._lock:
            self._listeners[event_type].append(callback)
        logger.debug(f"[MemoryStore] Adding listener for event_type={event_type}, callback={callback}")

    def remove_listener(self, event_type: str, callback: Listener) -> None:
        with self._lock:
            if callback in self._listeners.get(event_type, []):
                self._listeners[event_type].remove(callback)

    def _emit(self, event_type: str, payload: dict | None) -> None:
        with self._lock:
            listeners = list(self._listeners.get(event_type, []))
        for callback in listeners:
            try:
                callback(payload)
            except Exception as exc:
                logger.error("Listener for %s failed: %s", event_type, exc)

    # ------------------------------------------------------------------
    # Raffle notifications
    # ------------------------------------------------------------------
    def publish(self, event_type: str, details: Dict[str, Any], *, event_time: int) -> LiveFeedItem:
        """Record a raffle notification, append it to the feed and notify listeners."""
        item = LiveFeedItem(
            event_type=event_type,
            message=self._generate_event_message(event_type, details),
            details=dict(details),
            event_time=event_time,
        )
        with self._lock:
            self._live_feed.append(item)
        logger.info("[MemoryStore] %s: %s", event_type, item.message)

        payload = self._serialize_feed_item(item)
        self._emit(event_type, payload)
        self._emit(RAFFLE_UPDATE, payload)
        return item

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    def get_live_feed(self, limit: Optional[int] = None) -> List[LiveFeedItem]:
        with self._lock:
            items = list(self._live_feed)
        if limit is not None:
            return items[-limit:]
        return items

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _serialize_feed_item(self, item: LiveFeedItem) -> dict:
        return {
            "id": item.get_item_id(),
            "type": item.event_type,
            "message": item.message,
            "details": item.details,
            "timestamp": item.event_time,
        }

    def _generate_event_message(self, event_type: str, args: dict | None) -> str:
        """Short text summary for the live activity feed."""
        a = args or {}
        if event_type == ENTERED_RAFFLE:
            player = shorten_eth_address(str(a.get("player", ""))) or "a player"
            return f"{player} entered the raffle"
        if event_type == REQUESTED_DRAW:
            return f"Draw requested (request {a.get('requestId')})"
        if event_type == WINNER_PICKED:
            winner = shorten_eth_address(str(a.get("winner", ""))) or "unknown"
            return f"Winner picked: {winner} receives {a.get('amount')}"
        return event_type
