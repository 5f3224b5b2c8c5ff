"""
Keeper operator for the raffle.

Plays the external upkeep trigger: polls `check_upkeep`, calls
`perform_upkeep` when it is needed, and processes randomness callbacks from an
inbox one at a time in arrival order. It also retries failed payouts and,
when `keeper.stuck_timeout` is set, cancels and refunds rounds whose
randomness request was never answered.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Sequence, Tuple

from raffle.lottery.clock import SystemClock
from raffle.lottery.engine import RaffleEngine
from raffle.lottery.errors import (
    OracleUnavailable,
    PayoutFailed,
    PayoutNotPending,
    RaffleError,
    UnknownRequest,
    UpkeepNotNeeded,
)
from raffle.lottery.models import KeeperStatus, RaffleState
from raffle.utils.config import as_bool
from raffle.utils.logger import get_logger

logger = get_logger(__name__)


class RandomnessInbox:
    """Callback target handed to the oracle in place of the engine.

    Callbacks may arrive from any thread; they are queued on the operator's
    event loop and never processed concurrently.
    """

    def __init__(self, engine: RaffleEngine) -> None:
        self._engine = engine
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue[Tuple[int, List[int]]]] = None

    @property
    def address(self) -> str:
        return self._engine.address

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._queue = asyncio.Queue()

    @property
    def is_bound(self) -> bool:
        return self._queue is not None

    @property
    def queue(self) -> "asyncio.Queue[Tuple[int, List[int]]]":
        if self._queue is None:
            raise RuntimeError("Randomness inbox is not bound to an event loop")
        return self._queue

    def fulfill_random_words(self, request_id: int, random_words: Sequence[int]) -> None:
        if self._loop is None or self._queue is None:
            raise RuntimeError("Randomness inbox is not bound to an event loop")
        item = (int(request_id), [int(word) for word in random_words])
        self._loop.call_soon_threadsafe(self._queue.put_nowait, item)
        logger.debug("Queued randomness callback for request %s", request_id)


class KeeperOperator:
    """Automated upkeep trigger and settlement driver."""

    def __init__(self, engine: RaffleEngine, config: Dict[str, Any], oracle=None, clock=None) -> None:
        self._engine = engine
        self._oracle = oracle
        self._clock = clock or SystemClock()
        self._inbox = RandomnessInbox(engine)
        self.status = KeeperStatus()

        keeper_cfg = config.get("keeper", {})
        self._check_interval = float(keeper_cfg.get("check_interval", 10))
        self._payout_retry_interval = int(keeper_cfg.get("payout_retry_interval", 30))
        self._max_payout_retries = int(keeper_cfg.get("max_payout_retries", 5))
        self._stuck_timeout = int(keeper_cfg.get("stuck_timeout", 0))
        self._callback_wait_timeout = float(keeper_cfg.get("callback_wait_timeout", 60))
        self._auto_fulfill = as_bool(config.get("oracle", {}).get("auto_fulfill", False)) and oracle is not None

        self._last_payout_attempt: Optional[int] = None
        self._tasks: List[asyncio.Task] = []
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def inbox(self) -> RandomnessInbox:
        return self._inbox

    async def initialize(self) -> None:
        """Bind the inbox to the running loop and route oracle callbacks through it."""
        self._inbox.bind(asyncio.get_running_loop())
        self._engine.consumer = self._inbox
        logger.info(
            "Keeper initialized: check every %ss, stuck timeout %s, auto fulfill %s",
            self._check_interval,
            f"{self._stuck_timeout}s" if self._stuck_timeout > 0 else "disabled",
            self._auto_fulfill,
        )

    async def start(self) -> None:
        if self.status.is_running:
            logger.warning("Keeper already running")
            return
        if not self._inbox.is_bound:
            await self.initialize()
        self._stop_event = asyncio.Event()
        self.status.is_running = True
        loop = asyncio.get_running_loop()
        self._tasks = [
            loop.create_task(self._upkeep_loop(), name="raffle-keeper-upkeep"),
            loop.create_task(self._inbox_loop(), name="raffle-keeper-inbox"),
        ]
        logger.info("Keeper started")

    async def stop(self) -> None:
        if not self.status.is_running:
            return
        logger.info("Stopping keeper")
        self.status.is_running = False
        if self._stop_event:
            self._stop_event.set()
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Keeper stopped")

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------
    async def _upkeep_loop(self) -> None:
        while self.status.is_running:
            try:
                await self.run_once()
            except Exception as exc:
                self.status.last_error = str(exc)
                logger.error(f"Error in keeper loop: {exc}")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._check_interval)
                break
            except asyncio.TimeoutError:
                continue

    async def _inbox_loop(self) -> None:
        queue = self._inbox.queue
        while self.status.is_running:
            request_id, words = await queue.get()
            try:
                await self._process_callback(request_id, words)
            except Exception as exc:
                self.status.last_error = str(exc)
                logger.error(f"Error processing callback for request {request_id}: {exc}")
            finally:
                queue.task_done()

    # ------------------------------------------------------------------
    # Single steps (also used directly by tests and the simulator)
    # ------------------------------------------------------------------
    async def run_once(self) -> Optional[int]:
        """One keeper pass; returns the request id if upkeep was performed."""
        self.status.record_check()
        request_id = None

        check = self._engine.check_upkeep()
        if check.upkeep_needed:
            request_id = await self._perform_upkeep()
        else:
            logger.debug("Upkeep not needed: %s", check.reason)

        await self._retry_payout_if_due()
        await self._cancel_if_stuck()
        return request_id

    async def drain_inbox(self) -> int:
        """Process every queued callback; returns how many were taken off the queue."""
        queue = self._inbox.queue
        handled = 0
        while not queue.empty():
            request_id, words = queue.get_nowait()
            try:
                await self._process_callback(request_id, words)
            finally:
                queue.task_done()
            handled += 1
        return handled

    async def _perform_upkeep(self) -> Optional[int]:
        try:
            request_id = await asyncio.to_thread(self._engine.perform_upkeep)
        except UpkeepNotNeeded as exc:
            # Conditions changed between the probe and the call
            logger.info("Upkeep skipped: %s", exc.reason)
            return None
        except OracleUnavailable as exc:
            self.status.consecutive_oracle_failures += 1
            self.status.last_error = str(exc)
            logger.error(
                f"Oracle unavailable ({self.status.consecutive_oracle_failures} in a row), will retry: {exc}"
            )
            return None

        self.status.record_upkeep(request_id)
        logger.info(f"Upkeep performed, randomness request {request_id}")

        if self._auto_fulfill:
            # Development chains: answer our own request through the mock coordinator
            await asyncio.to_thread(self._oracle.fulfill_random_words, request_id, self._inbox)
        return request_id

    async def _process_callback(self, request_id: int, words: List[int]) -> None:
        """Settle one callback. Rejected callbacks are logged and dropped, never raised."""
        # The oracle may answer before perform_upkeep has registered the request
        if not await asyncio.to_thread(self._engine.wait_for_submission, self._callback_wait_timeout):
            logger.warning(
                "Request submission still in flight after %ss; delivering callback %s anyway",
                self._callback_wait_timeout,
                request_id,
            )
        try:
            winner = await asyncio.to_thread(self._engine.fulfill_random_words, request_id, words)
        except UnknownRequest:
            logger.warning("Dropping callback for unknown request %s", request_id)
            return
        except PayoutFailed as exc:
            self.status.callbacks_processed += 1
            self._last_payout_attempt = self._clock.now()
            self.status.consecutive_payout_failures += 1
            self.status.last_error = str(exc)
            logger.error(f"Payout failed for request {request_id}; will retry: {exc}")
            return
        except (ValueError, RaffleError) as exc:
            self.status.last_error = str(exc)
            logger.error(f"Rejected callback for request {request_id}: {exc}")
            return

        self.status.callbacks_processed += 1
        self.status.consecutive_payout_failures = 0
        logger.info(f"Request {request_id} settled, winner {winner}")

    async def _retry_payout_if_due(self) -> None:
        pending = self._engine.get_pending_request()
        if pending is None or not pending.awaiting_payout:
            return
        if self.status.consecutive_payout_failures >= self._max_payout_retries:
            logger.error(
                "Payout for request %s failed %s times; waiting for operator intervention",
                pending.request_id,
                self.status.consecutive_payout_failures,
            )
            return
        now = self._clock.now()
        if self._last_payout_attempt is not None and now - self._last_payout_attempt < self._payout_retry_interval:
            return

        self._last_payout_attempt = now
        try:
            winner = await asyncio.to_thread(self._engine.retry_payout)
        except PayoutFailed as exc:
            self.status.consecutive_payout_failures += 1
            self.status.last_error = str(exc)
            logger.error(f"Payout retry {self.status.consecutive_payout_failures} failed: {exc}")
        except PayoutNotPending:
            return
        else:
            self.status.consecutive_payout_failures = 0
            logger.info(f"Payout retry succeeded, winner {winner}")

    async def _cancel_if_stuck(self) -> None:
        if self._stuck_timeout <= 0:
            return
        if self._engine.get_raffle_state() != RaffleState.CALCULATING:
            return
        pending = self._engine.get_pending_request()
        if pending is not None:
            if pending.random_words is not None:
                # Callback arrived; payout retries own this round
                return
            if self._clock.now() - pending.requested_at < self._stuck_timeout:
                return

        logger.warning("Round %s stuck in CALCULATING; refunding entries", self._engine.get_round_id())
        try:
            await asyncio.to_thread(self._engine.cancel_round, "randomness request timed out")
        except (PayoutFailed, PayoutNotPending) as exc:
            self.status.last_error = str(exc)
            logger.error(f"Stuck round cancellation incomplete: {exc}")
            return
        self.status.rounds_cancelled += 1

    def get_status(self) -> Dict[str, Any]:
        return {
            "status": "running" if self.status.is_running else "stopped",
            "lastCheck": self.status.last_check.isoformat() if self.status.last_check else None,
            "lastUpkeep": self.status.last_upkeep.isoformat() if self.status.last_upkeep else None,
            "lastRequestId": self.status.last_request_id,
            "consecutiveOracleFailures": self.status.consecutive_oracle_failures,
            "consecutivePayoutFailures": self.status.consecutive_payout_failures,
            "callbacksProcessed": self.status.callbacks_processed,
            "roundsCancelled": self.status.rounds_cancelled,
            "lastError": self.status.last_error,
            "autoFulfill": self._auto_fulfill,
            "stuckTimeout": self._stuck_timeout,
        }
