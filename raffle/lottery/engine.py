"""
Raffle Engine - the round state machine

Owns the round (state, entries, balance, timestamps), evaluates upkeep,
issues randomness requests through the oracle client and settles rounds when
the oracle calls back. Every mutation runs under one round lock; the lock is
never held across oracle or custodian calls.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from typing import Any, Dict, List, Optional, Sequence

from raffle.lottery.clock import SystemClock, interval_elapsed
from raffle.lottery.errors import (
    OracleUnavailable,
    PayoutFailed,
    PayoutNotPending,
    RaffleError,
    RoundNotOpen,
    UpkeepNotNeeded,
)
from raffle.lottery.event_manager import (
    ENTERED,
    PAYOUT_FAILED,
    RAFFLE_REFUNDED,
    REQUESTED_RANDOMNESS,
    ROUND_UPDATE,
    WINNER_PICKED,
    EventManager,
)
from raffle.lottery.ledger import EntryLedger
from raffle.lottery.models import (
    PendingRequest,
    RaffleConfig,
    RaffleState,
    RandomnessRequestParams,
    UpkeepCheck,
)
from raffle.lottery.request_tracker import RequestTracker
from raffle.utils.logger import get_logger

logger = get_logger(__name__)


def pick_winner_index(random_word: int, player_count: int) -> int:
    """Reduce a random word to an index into the player snapshot."""
    if player_count <= 0:
        raise RaffleError("Cannot pick a winner from an empty player list")
    if random_word < 0:
        raise ValueError("Random words are unsigned integers")
    return random_word % player_count


class RaffleEngine:
    """Lottery state machine driven by upkeep calls and oracle callbacks."""

    def __init__(
        self,
        config: RaffleConfig,
        oracle,
        custodian,
        events: Optional[EventManager] = None,
        clock=None,
        address: str = "raffle",
    ):
        if config.interval < 0:
            raise ValueError("Interval cannot be negative")
        if config.num_words < 1:
            raise ValueError("At least one random word is required")

        self.config = config
        self.address = address
        self._oracle = oracle
        self._custodian = custodian
        self._events = events or EventManager()
        self._clock = clock or SystemClock()

        # Callback target handed to the oracle; the keeper swaps in its inbox
        self.consumer = self

        self._lock = threading.Lock()
        # Signalled whenever a randomness submission finishes, registered or rolled back
        self._submission_done = threading.Condition(self._lock)
        self._ledger = EntryLedger(config.entrance_fee)
        self._tracker = RequestTracker()
        self._state = RaffleState.OPEN
        self._last_timestamp = self._clock.now()
        self._round_id = 1
        self._recent_winner: Optional[str] = None
        self._submitting = False
        self._refunding = False

        logger.info(
            f"Raffle {address} initialized: entrance fee {config.entrance_fee} wei, interval {config.interval}s"
        )

    @property
    def events(self) -> EventManager:
        return self._events

    # =============== ENTRY ===============

    def enter(self, participant: str, stake: int) -> int:
        """Record an entry and return its index in the player list."""
        if not participant:
            raise ValueError("Participant is required")
        with self._lock:
            self._ledger.validate_stake(stake)
            if self._state != RaffleState.OPEN:
                raise RoundNotOpen(self._state)
            index = self._ledger.add(participant, stake)
            round_id = self._round_id

        logger.info(f"Player {participant} entered round {round_id} with {stake} wei")
        self._events.emit(ENTERED, {
            "player": participant,
            "roundId": round_id,
            "stake": int(stake),
            "index": index,
            "timestamp": self._clock.now(),
        })
        return index

    # =============== UPKEEP ===============

    def check_upkeep(self) -> UpkeepCheck:
        """Read-only probe of the four upkeep conditions."""
        with self._lock:
            return self._evaluate_upkeep(self._clock.now())

    def perform_upkeep(self) -> int:
        """Close the round and request randomness; returns the request id."""
        with self._lock:
            check = self._evaluate_upkeep(self._clock.now())
            if not check.upkeep_needed:
                raise UpkeepNotNeeded(
                    self._ledger.balance,
                    self._ledger.get_number_of_players(),
                    self._state,
                    check.reason,
                )
            # CALCULATING keeps every other mutator out while the oracle is called
            self._state = RaffleState.CALCULATING
            self._submitting = True
            entries = self._ledger.snapshot()
            amount = self._ledger.balance
            round_id = self._round_id

        self._events.emit(ROUND_UPDATE, self.get_status())

        try:
            request_id = int(self._oracle.request_random_words(self._request_params(), self.consumer))
        except Exception as exc:
            with self._lock:
                self._state = RaffleState.OPEN
                self._submitting = False
                self._submission_done.notify_all()
            logger.error(f"Randomness request for round {round_id} failed, round reopened: {exc}")
            self._events.emit(ROUND_UPDATE, self.get_status())
            if isinstance(exc, OracleUnavailable):
                raise
            raise OracleUnavailable(str(exc)) from exc

        requested_at = self._clock.now()
        with self._lock:
            self._tracker.register(PendingRequest(
                request_id=request_id,
                round_id=round_id,
                entries=entries,
                amount=amount,
                requested_at=requested_at,
            ))
            self._submitting = False
            self._submission_done.notify_all()

        logger.info(f"Requested randomness for round {round_id}: request {request_id}")
        self._events.emit(REQUESTED_RANDOMNESS, {
            "requestId": request_id,
            "roundId": round_id,
            "participantCount": len(entries),
            "amount": amount,
            "timestamp": requested_at,
        })
        return request_id

    def wait_for_submission(self, timeout: Optional[float] = None) -> bool:
        """Block until no randomness request is being submitted.

        A callback delivered from another thread while `perform_upkeep` is
        still waiting on the oracle must wait here, or it would find no
        registered request. Returns False if `timeout` expired first. Never
        call this from inside the oracle's `request_random_words`.
        """
        with self._submission_done:
            return self._submission_done.wait_for(lambda: not self._submitting, timeout)

    # =============== SETTLEMENT ===============

    def fulfill_random_words(self, request_id: int, random_words: Sequence[int]) -> str:
        """Oracle callback: pick the winner, pay out and reset the round."""
        if not random_words:
            raise ValueError("Oracle delivered no random words")
        with self._lock:
            pending = self._tracker.claim(int(request_id))
            winner_index = pick_winner_index(int(random_words[0]), len(pending.entries))
            pending.random_words = [int(word) for word in random_words]
            pending.winner_index = winner_index
            pending.winner = pending.entries[winner_index].participant
            pending.settling = True

        logger.info(
            f"Request {request_id}: random word mod {len(pending.entries)} = {winner_index}, winner {pending.winner}"
        )
        return self._pay_winner(pending)

    def retry_payout(self) -> str:
        """Retry a failed payout against the winner already chosen for the pending request."""
        with self._lock:
            pending = self._tracker.pending
            if pending is None or not pending.awaiting_payout:
                raise PayoutNotPending("No failed payout is waiting for a retry")
            pending.settling = True

        logger.info(f"Retrying payout of {pending.amount} wei to {pending.winner} for request {pending.request_id}")
        return self._pay_winner(pending)

    def _pay_winner(self, pending: PendingRequest) -> str:
        winner = pending.winner
        detail = ""
        try:
            paid = bool(self._custodian.transfer(winner, pending.amount))
        except Exception as exc:
            paid = False
            detail = str(exc)

        if not paid:
            with self._lock:
                pending.settling = False
            logger.error(f"Payout of {pending.amount} wei to {winner} failed; round {pending.round_id} stays CALCULATING")
            self._events.emit(PAYOUT_FAILED, {
                "requestId": pending.request_id,
                "roundId": pending.round_id,
                "winner": winner,
                "amount": pending.amount,
                "timestamp": self._clock.now(),
            })
            raise PayoutFailed(winner, pending.amount, detail)

        now = self._clock.now()
        with self._lock:
            self._tracker.consume(pending.request_id)
            self._recent_winner = winner
            self._reset_round(now)

        logger.info(f"Round {pending.round_id} settled: {winner} won {pending.amount} wei")
        self._events.emit(WINNER_PICKED, {
            "winner": winner,
            "winnerIndex": pending.winner_index,
            "requestId": pending.request_id,
            "roundId": pending.round_id,
            "amount": pending.amount,
            "participantCount": len(pending.entries),
            "timestamp": now,
        })
        self._events.emit(ROUND_UPDATE, self.get_status())
        return winner

    # =============== OPERATIONAL RECOVERY ===============

    def cancel_round(self, reason: str = "cancelled by operator") -> int:
        """Refund every entry of a round stuck in CALCULATING and reopen it.

        The pending request is dropped first, so a late oracle callback is
        rejected. Returns the amount refunded by this call.
        """
        with self._lock:
            if self._state != RaffleState.CALCULATING:
                raise PayoutNotPending(f"Round {self._round_id} is {self._state.name}; nothing to cancel")
            if self._submitting or self._refunding:
                raise PayoutNotPending(f"Round {self._round_id} has an operation in flight")
            pending = self._tracker.pending
            if pending is not None and pending.settling:
                raise PayoutNotPending(f"Payout for request {pending.request_id} is in flight")
            self._tracker.discard()
            self._refunding = True
            entries = self._ledger.snapshot()
            round_id = self._round_id

        logger.warning(f"Cancelling round {round_id} ({reason}); refunding {len(entries)} entries")
        failed = []
        for entry in entries:
            try:
                refunded = bool(self._custodian.transfer(entry.participant, entry.stake))
            except Exception as exc:
                logger.error(f"Refund of {entry.stake} wei to {entry.participant} raised: {exc}")
                refunded = False
            if not refunded:
                failed.append(entry)

        now = self._clock.now()
        with self._lock:
            self._refunding = False
            if failed:
                self._ledger.retain(failed)
            else:
                self._reset_round(now)

        refunded_total = sum(entry.stake for entry in entries) - sum(entry.stake for entry in failed)
        if failed:
            outstanding = sum(entry.stake for entry in failed)
            logger.error(f"Round {round_id}: {len(failed)} refunds failed, {outstanding} wei outstanding")
            raise PayoutFailed(failed[0].participant, outstanding, f"{len(failed)} refunds outstanding")

        self._events.emit(RAFFLE_REFUNDED, {
            "roundId": round_id,
            "requestId": pending.request_id if pending else None,
            "participantCount": len(entries),
            "totalRefunded": refunded_total,
            "reason": reason,
            "timestamp": now,
        })
        self._events.emit(ROUND_UPDATE, self.get_status())
        return refunded_total

    # =============== INTERNALS ===============

    def _evaluate_upkeep(self, now: int) -> UpkeepCheck:
        is_open = self._state == RaffleState.OPEN
        time_passed = interval_elapsed(now, self._last_timestamp, self.config.interval)
        has_players = self._ledger.get_number_of_players() > 0
        has_balance = self._ledger.balance > 0

        failing = [
            label
            for label, ok in (
                ("raffle not open", is_open),
                ("interval not elapsed", time_passed),
                ("no players", has_players),
                ("no balance", has_balance),
            )
            if not ok
        ]
        return UpkeepCheck(
            upkeep_needed=not failing,
            reason=", ".join(failing) if failing else "ok",
            is_open=is_open,
            time_passed=time_passed,
            has_players=has_players,
            has_balance=has_balance,
        )

    def _reset_round(self, now: int) -> None:
        self._ledger.clear()
        self._state = RaffleState.OPEN
        self._last_timestamp = now
        self._round_id += 1

    def _request_params(self) -> RandomnessRequestParams:
        return RandomnessRequestParams(
            key_hash=self.config.gas_lane,
            subscription_id=self.config.subscription_id,
            request_confirmations=self.config.request_confirmations,
            callback_gas_limit=self.config.callback_gas_limit,
            num_words=self.config.num_words,
        )

    # =============== STATUS AND INFORMATION METHODS ===============

    def get_entrance_fee(self) -> int:
        return self.config.entrance_fee

    def get_interval(self) -> int:
        return self.config.interval

    def get_subscription_id(self) -> int:
        return self.config.subscription_id

    def get_num_words(self) -> int:
        return self.config.num_words

    def get_request_confirmations(self) -> int:
        return self.config.request_confirmations

    def get_raffle_state(self) -> RaffleState:
        with self._lock:
            return self._state

    def get_player(self, index: int) -> str:
        with self._lock:
            return self._ledger.get_player(index)

    def get_players(self) -> List[str]:
        with self._lock:
            return self._ledger.get_players()

    def get_number_of_players(self) -> int:
        with self._lock:
            return self._ledger.get_number_of_players()

    def get_stakes_by_player(self) -> Dict[str, int]:
        with self._lock:
            return self._ledger.get_stakes_by_player()

    def get_balance(self) -> int:
        with self._lock:
            return self._ledger.balance

    def get_recent_winner(self) -> Optional[str]:
        with self._lock:
            return self._recent_winner

    def get_latest_timestamp(self) -> int:
        with self._lock:
            return self._last_timestamp

    def get_round_id(self) -> int:
        with self._lock:
            return self._round_id

    def get_pending_request(self) -> Optional[PendingRequest]:
        """Copy of the outstanding request, if any."""
        with self._lock:
            pending = self._tracker.pending
            return replace(pending) if pending else None

    def get_status(self) -> Dict[str, Any]:
        now = self._clock.now()
        with self._lock:
            pending = self._tracker.pending
            return {
                "address": self.address,
                "roundId": self._round_id,
                "state": self._state.value,
                "stateLabel": self._state.name,
                "entranceFeeWei": self.config.entrance_fee,
                "interval": self.config.interval,
                "numberOfPlayers": self._ledger.get_number_of_players(),
                "balanceWei": self._ledger.balance,
                "lastTimestamp": self._last_timestamp,
                "timeUntilUpkeep": max(0, self._last_timestamp + self.config.interval - now),
                "recentWinner": self._recent_winner,
                "pendingRequestId": pending.request_id if pending else None,
                "awaitingPayout": bool(pending and pending.awaiting_payout),
                "requestedAt": pending.requested_at if pending else None,
            }
