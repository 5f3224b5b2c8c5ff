"""Randomness oracle clients.

An oracle client accepts `request_random_words(params, consumer)` and returns
a request id; later it calls `consumer.fulfill_random_words(request_id, words)`
exactly once for that id. `consumer` must expose an `address` attribute.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Set

from web3 import Web3

from raffle.lottery.errors import OracleUnavailable, UnknownRequest
from raffle.lottery.models import RandomnessRequestParams
from raffle.utils.logger import get_logger

logger = get_logger(__name__)

MAX_NUM_WORDS = 500


@dataclass
class Subscription:
    subscription_id: int
    balance: int = 0
    consumers: Set[str] = field(default_factory=set)


@dataclass
class RandomWordsRequest:
    request_id: int
    subscription_id: int
    consumer: Any
    params: RandomnessRequestParams


@dataclass
class RandomWordsFulfilled:
    """Outcome of delivering a callback, like the coordinator's event of the same name."""

    request_id: int
    random_words: List[int]
    payment: int
    success: bool
    error: Optional[str] = None


def derive_random_words(request_id: int, num_words: int) -> List[int]:
    """keccak256(abi.encode(requestId, i)) for each word, as the mock coordinator computes them."""
    return [
        int.from_bytes(Web3.solidity_keccak(["uint256", "uint256"], [request_id, index]), "big")
        for index in range(num_words)
    ]


class VRFCoordinatorMock:
    """In-process stand-in for Chainlink's VRFCoordinatorV2Mock.

    Subscriptions must exist and list the consumer before it may request
    randomness. Request ids start at 1. Fulfillment is explicit: call
    `fulfill_random_words` (or the override variant) with the request id.
    """

    def __init__(self, base_fee: int = Web3.to_wei("0.25", "ether"), gas_price_link: int = 10**9):
        self.base_fee = int(base_fee)
        self.gas_price_link = int(gas_price_link)
        self._lock = threading.Lock()
        self._subscriptions: Dict[int, Subscription] = {}
        self._requests: Dict[int, RandomWordsRequest] = {}
        self._next_subscription_id = 1
        self._next_request_id = 1

    # ------------------------------------------------------------------
    # Subscription management
    # ------------------------------------------------------------------
    def create_subscription(self) -> int:
        with self._lock:
            subscription_id = self._next_subscription_id
            self._next_subscription_id += 1
            self._subscriptions[subscription_id] = Subscription(subscription_id)
        logger.info("Created VRF subscription %s", subscription_id)
        return subscription_id

    def fund_subscription(self, subscription_id: int, amount: int) -> int:
        with self._lock:
            subscription = self._get_subscription(subscription_id)
            subscription.balance += int(amount)
            return subscription.balance

    def add_consumer(self, subscription_id: int, consumer_address: str) -> None:
        with self._lock:
            self._get_subscription(subscription_id).consumers.add(consumer_address)
        logger.info("Added consumer %s to subscription %s", consumer_address, subscription_id)

    def remove_consumer(self, subscription_id: int, consumer_address: str) -> None:
        with self._lock:
            self._get_subscription(subscription_id).consumers.discard(consumer_address)

    def get_subscription(self, subscription_id: int) -> Subscription:
        with self._lock:
            subscription = self._get_subscription(subscription_id)
            return Subscription(subscription.subscription_id, subscription.balance, set(subscription.consumers))

    def _get_subscription(self, subscription_id: int) -> Subscription:
        subscription = self._subscriptions.get(int(subscription_id))
        if subscription is None:
            raise OracleUnavailable(f"InvalidSubscription: {subscription_id}")
        return subscription

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------
    def request_random_words(self, params: RandomnessRequestParams, consumer: Any) -> int:
        with self._lock:
            subscription = self._get_subscription(params.subscription_id)
            if consumer.address not in subscription.consumers:
                raise OracleUnavailable(f"InvalidConsumer: {consumer.address}")
            if not 1 <= params.num_words <= MAX_NUM_WORDS:
                raise OracleUnavailable(f"NumWordsTooBig: {params.num_words}")
            request_id = self._next_request_id
            self._next_request_id += 1
            self._requests[request_id] = RandomWordsRequest(
                request_id=request_id,
                subscription_id=subscription.subscription_id,
                consumer=consumer,
                params=params,
            )
        logger.info("RandomWordsRequested: request %s for %s", request_id, consumer.address)
        return request_id

    def pending_request_ids(self) -> List[int]:
        with self._lock:
            return sorted(self._requests)

    def fulfill_random_words(self, request_id: int, consumer: Any = None) -> RandomWordsFulfilled:
        with self._lock:
            request = self._requests.get(int(request_id))
            num_words = request.params.num_words if request else 0
        if request is None:
            raise UnknownRequest(request_id)
        return self.fulfill_random_words_with_override(
            request_id, consumer, derive_random_words(int(request_id), num_words)
        )

    def fulfill_random_words_with_override(
        self, request_id: int, consumer: Any, words: Sequence[int]
    ) -> RandomWordsFulfilled:
        """Deliver the callback with caller-chosen words.

        The request is consumed even if the consumer's callback raises; the
        failure is reported through the returned `success` flag.
        """
        with self._lock:
            request = self._requests.get(int(request_id))
            if request is None:
                raise UnknownRequest(request_id)
            if len(words) != request.params.num_words:
                raise ValueError(f"InvalidRandomWords: expected {request.params.num_words}, got {len(words)}")
            subscription = self._get_subscription(request.subscription_id)
            if subscription.balance < self.base_fee:
                raise OracleUnavailable(f"InsufficientBalance on subscription {subscription.subscription_id}")
            subscription.balance -= self.base_fee
            del self._requests[int(request_id)]

        target = consumer if consumer is not None else request.consumer
        result = RandomWordsFulfilled(
            request_id=int(request_id),
            random_words=[int(word) for word in words],
            payment=self.base_fee,
            success=True,
        )
        try:
            target.fulfill_random_words(int(request_id), result.random_words)
        except Exception as exc:
            logger.warning("Consumer callback for request %s failed: %s", request_id, exc)
            result.success = False
            result.error = str(exc)
        logger.info("RandomWordsFulfilled: request %s success=%s", request_id, result.success)
        return result
