"""Tracks the single outstanding randomness request."""

from __future__ import annotations

from typing import Optional

from raffle.lottery.errors import UnknownRequest
from raffle.lottery.models import PendingRequest


class RequestTracker:
    """Holds at most one PendingRequest.

    Lookups for ids that were never issued, already fulfilled or discarded all
    fail the same way, so a replayed callback cannot be told apart from a
    forged one. Access is serialised by the engine's round lock.
    """

    def __init__(self) -> None:
        self._pending: Optional[PendingRequest] = None

    @property
    def pending(self) -> Optional[PendingRequest]:
        return self._pending

    def has_pending(self) -> bool:
        return self._pending is not None

    def register(self, request: PendingRequest) -> None:
        if self._pending is not None:
            raise RuntimeError(
                f"Request {self._pending.request_id} is still outstanding; cannot register {request.request_id}"
            )
        self._pending = request

    def claim(self, request_id: int) -> PendingRequest:
        """Return the pending request for a callback that has not been processed yet."""
        pending = self._pending
        if pending is None or pending.request_id != request_id or pending.random_words is not None:
            raise UnknownRequest(request_id)
        return pending

    def consume(self, request_id: int) -> PendingRequest:
        pending = self._pending
        if pending is None or pending.request_id != request_id:
            raise UnknownRequest(request_id)
        self._pending = None
        return pending

    def discard(self) -> Optional[PendingRequest]:
        pending, self._pending = self._pending, None
        return pending
