"""Errors raised by the raffle state machine and its collaborators."""

from __future__ import annotations

from typing import Optional


class RaffleError(Exception):
    """Base class for raffle errors."""


class InsufficientStake(RaffleError):
    def __init__(self, stake: int, entrance_fee: int) -> None:
        super().__init__(f"Stake {stake} wei is below the entrance fee of {entrance_fee} wei")
        self.stake = stake
        self.entrance_fee = entrance_fee


class RoundNotOpen(RaffleError):
    def __init__(self, state) -> None:
        super().__init__(f"Raffle is not open (state={state.name})")
        self.state = state


class UpkeepNotNeeded(RaffleError):
    """Carries the same diagnostics as the contract's Raffle__UpkeepNotNeeded revert."""

    def __init__(self, balance: int, num_players: int, state, reason: str) -> None:
        super().__init__(
            f"Upkeep not needed: {reason} (balance={balance}, players={num_players}, state={state.name})"
        )
        self.balance = balance
        self.num_players = num_players
        self.state = state
        self.reason = reason


class UnknownRequest(RaffleError):
    def __init__(self, request_id: Optional[int]) -> None:
        super().__init__(f"nonexistent request: {request_id}")
        self.request_id = request_id


class PayoutFailed(RaffleError):
    def __init__(self, recipient: str, amount: int, detail: str = "") -> None:
        message = f"Transfer of {amount} wei to {recipient} failed"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.recipient = recipient
        self.amount = amount


class PayoutNotPending(RaffleError):
    """Raised when a payout retry or cancellation has nothing to act on."""


class OracleUnavailable(RaffleError):
    """The randomness oracle rejected or could not accept a request."""
