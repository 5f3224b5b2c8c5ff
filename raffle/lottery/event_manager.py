"""In-memory observability sink for raffle notifications."""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

from raffle.lottery.models import LiveFeedItem, RoundSnapshot
from raffle.utils.common import shorten_eth_address
from raffle.utils.logger import get_logger

logger = get_logger(__name__)

ENTERED = "Entered"
REQUESTED_RANDOMNESS = "RequestedRandomness"
WINNER_PICKED = "WinnerPicked"
RAFFLE_REFUNDED = "RaffleRefunded"
PAYOUT_FAILED = "PayoutFailed"
ROUND_UPDATE = "round_update"

FEED_EVENTS = (ENTERED, REQUESTED_RANDOMNESS, WINNER_PICKED, RAFFLE_REFUNDED, PAYOUT_FAILED)

Listener = Callable[[Optional[dict]], None]


class EventManager:
    """Fans notifications out to listeners and keeps a live feed and round history.

    Delivery is best-effort: a failing listener is logged and never affects the
    emitter or the other listeners.
    """

    def __init__(self, *, feed_capacity: int = 100, history_capacity: int = 20) -> None:
        self._lock = Lock()
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._feed_capacity = feed_capacity
        self._history_capacity = history_capacity
        self._live_feed: deque[LiveFeedItem] = deque(maxlen=feed_capacity)
        self._history: deque[RoundSnapshot] = deque(maxlen=history_capacity)

    # ------------------------------------------------------------------
    # Listener management
    # ------------------------------------------------------------------
    def add_listener(self, event_type: str, callback: Listener) -> None:
        with self._lock:
            self._listeners[event_type].append(callback)
        logger.debug(f"[EventManager] Adding listener for event_type={event_type}, callback={callback}")

    def remove_listener(self, event_type: str, callback: Listener) -> bool:
        with self._lock:
            listeners = self._listeners.get(event_type, [])
            if callback in listeners:
                listeners.remove(callback)
                return True
        return False

    def once(self, event_type: str, callback: Listener) -> Listener:
        """Register a listener that fires for the next `event_type` only."""
        fired = Lock()

        def _wrapper(payload: Optional[dict]) -> None:
            if not fired.acquire(blocking=False):
                return
            self.remove_listener(event_type, _wrapper)
            callback(payload)

        self.add_listener(event_type, _wrapper)
        return _wrapper

    async def wait_for(self, event_type: str, timeout: Optional[float] = None) -> Optional[dict]:
        """Resolve with the payload of the next `event_type` emitted from any thread."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        def _resolve(payload: Optional[dict]) -> None:
            if not future.done():
                future.set_result(payload)

        wrapper = self.once(event_type, lambda payload: loop.call_soon_threadsafe(_resolve, payload))
        try:
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            self.remove_listener(event_type, wrapper)

    def emit(self, event_type: str, payload: Optional[dict]) -> None:
        if event_type in FEED_EVENTS and payload is not None:
            self._append_feed(event_type, payload)
            if event_type in (WINNER_PICKED, RAFFLE_REFUNDED):
                self._append_history(event_type, payload)

        with self._lock:
            listeners = list(self._listeners.get(event_type, []))
        for callback in listeners:
            try:
                logger.debug("Emitting %s event to listener", event_type)
                callback(payload)
            except Exception as exc:
                logger.error("Listener for %s failed: %s", event_type, exc)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------
    def get_round_history(self, limit: Optional[int] = None) -> List[RoundSnapshot]:
        with self._lock:
            items = list(self._history)
        if limit is not None:
            return items[-limit:]
        return items

    def get_live_feed(self, limit: Optional[int] = None) -> List[LiveFeedItem]:
        with self._lock:
            items = list(self._live_feed)
        if limit is not None:
            return items[-limit:]
        return items

    def set_feed_capacity(self, capacity: int) -> None:
        """Resize the live feed capacity (max entries)."""
        with self._lock:
            if capacity == self._feed_capacity:
                return
            self._live_feed = deque(list(self._live_feed)[-capacity:], maxlen=capacity)
            self._feed_capacity = capacity
        logger.info(f"[EventManager] live feed capacity set to {capacity}")

    def set_history_capacity(self, capacity: int) -> None:
        """Resize the round history capacity (max snapshots)."""
        with self._lock:
            if capacity == self._history_capacity:
                return
            self._history = deque(list(self._history)[-capacity:], maxlen=capacity)
            self._history_capacity = capacity
        logger.info(f"[EventManager] history capacity set to {capacity}")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _append_feed(self, event_type: str, payload: dict) -> None:
        item = LiveFeedItem(
            event_type=event_type,
            message=self._generate_event_message(event_type, payload),
            details=dict(payload),
            event_time=int(payload.get("timestamp", 0)),
        )
        with self._lock:
            self._live_feed.append(item)
        logger.info("[EventManager] appended live feed item %s: %s", item.event_type, item.message)

    def _append_history(self, event_type: str, payload: dict) -> None:
        if event_type == WINNER_PICKED:
            snapshot = RoundSnapshot(
                round_id=int(payload.get("roundId", 0)),
                participant_count=int(payload.get("participantCount", 0)),
                total_pot=int(payload.get("amount", 0)),
                winner=payload.get("winner"),
                request_id=payload.get("requestId"),
                finished_at=int(payload.get("timestamp", 0)),
                final_state="WINNER_PICKED",
            )
        else:
            snapshot = RoundSnapshot(
                round_id=int(payload.get("roundId", 0)),
                participant_count=int(payload.get("participantCount", 0)),
                total_pot=int(payload.get("totalRefunded", 0)),
                winner=None,
                request_id=payload.get("requestId"),
                finished_at=int(payload.get("timestamp", 0)),
                final_state="REFUNDED",
                refund_reason=payload.get("reason"),
            )
        with self._lock:
            self._history.append(snapshot)
        logger.info(f"[EventManager] Added history snapshot: {snapshot}")

    @staticmethod
    def _generate_event_message(event_type: str, args: dict) -> str:
        """Short human-readable summary for the live feed."""
        rid = args.get("roundId")
        if event_type == ENTERED:
            player = shorten_eth_address(args.get("player", "")) or "a player"
            stake = args.get("stake")
            amt_str = f" with {int(stake) / 1e18:.4f} ETH" if stake is not None else ""
            return f"{player} entered round {rid}{amt_str}"
        if event_type == REQUESTED_RANDOMNESS:
            return f"Round {rid} closed, randomness requested (request {args.get('requestId')})"
        if event_type == WINNER_PICKED:
            winner = shorten_eth_address(args.get("winner", "")) or "unknown"
            return f"Round {rid} winner: {winner}"
        if event_type == RAFFLE_REFUNDED:
            reason = args.get("reason")
            return f"Round {rid} refunded: {reason}" if reason else f"Round {rid} refunded"
        if event_type == PAYOUT_FAILED:
            return f"Round {rid} payout to {shorten_eth_address(args.get('winner', ''))} failed"
        return f"{event_type} for round {rid}" if rid is not None else event_type
