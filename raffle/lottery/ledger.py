"""
Entry Ledger - participants and stakes of the open round
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Tuple

from raffle.lottery.errors import InsufficientStake
from raffle.lottery.models import Entry


class EntryLedger:
    """Ordered record of entries for the current round.

    Not thread-safe on its own; the engine serialises access under its round lock.
    """

    def __init__(self, entrance_fee: int):
        if entrance_fee < 0:
            raise ValueError("Entrance fee cannot be negative")
        self._entrance_fee = int(entrance_fee)
        self._entries: List[Entry] = []
        self._balance = 0

    @property
    def entrance_fee(self) -> int:
        return self._entrance_fee

    @property
    def balance(self) -> int:
        return self._balance

    def validate_stake(self, stake: int) -> None:
        """Reject stakes below the entrance fee; nothing is ever partially accepted."""
        if stake < self._entrance_fee:
            raise InsufficientStake(stake, self._entrance_fee)

    def add(self, participant: str, stake: int) -> int:
        """Append an entry and return the participant's index in the player list."""
        self.validate_stake(stake)
        self._entries.append(Entry(participant=participant, stake=int(stake)))
        self._balance += int(stake)
        return len(self._entries) - 1

    def snapshot(self) -> Tuple[Entry, ...]:
        return tuple(self._entries)

    def retain(self, entries: Iterable[Entry]) -> None:
        """Replace the entries, e.g. with the ones whose refund did not go through."""
        self._entries = list(entries)
        self._balance = sum(entry.stake for entry in self._entries)

    def clear(self) -> None:
        self._entries = []
        self._balance = 0

    def get_player(self, index: int) -> str:
        if index < 0 or index >= len(self._entries):
            raise IndexError(f"No player at index {index}")
        return self._entries[index].participant

    def get_players(self) -> List[str]:
        return [entry.participant for entry in self._entries]

    def get_number_of_players(self) -> int:
        return len(self._entries)

    def get_stakes_by_player(self) -> Dict[str, int]:
        totals: Dict[str, int] = {}
        for entry in self._entries:
            totals[entry.participant] = totals.get(entry.participant, 0) + entry.stake
        return totals

    def get_entry_count(self, participant: str) -> int:
        return sum(1 for entry in self._entries if entry.participant == participant)
