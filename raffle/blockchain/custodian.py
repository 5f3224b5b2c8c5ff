"""Fund custodians.

A custodian exposes `transfer(to, amount) -> bool`; a transfer either moves
exactly `amount` wei to `to` or changes nothing.
"""

from __future__ import annotations

import threading
import time
from decimal import Decimal
from typing import Any, Dict, Optional, Set

from eth_account import Account
from web3 import Web3

from raffle.utils.logger import get_logger

logger = get_logger(__name__)


class InMemoryCustodian:
    """Holds the raffle's funds in a reserve and tracks account balances in memory."""

    def __init__(self, balances: Optional[Dict[str, int]] = None, reserve: int = 0):
        self._lock = threading.Lock()
        self._balances: Dict[str, int] = dict(balances or {})
        self._reserve = int(reserve)
        self._rejecting: Set[str] = set()

    @property
    def reserve(self) -> int:
        with self._lock:
            return self._reserve

    def balance_of(self, account: str) -> int:
        with self._lock:
            return self._balances.get(account, 0)

    def credit(self, account: str, amount: int) -> None:
        """Mint test funds to an account."""
        with self._lock:
            self._balances[account] = self._balances.get(account, 0) + int(amount)

    def collect(self, account: str, amount: int) -> None:
        """Move a stake from an account into the reserve, as a payable call would."""
        amount = int(amount)
        with self._lock:
            balance = self._balances.get(account, 0)
            if balance < amount:
                raise ValueError(f"{account} has {balance} wei, cannot pay {amount} wei")
            self._balances[account] = balance - amount
            self._reserve += amount

    def reject_transfers_to(self, account: str, rejecting: bool = True) -> None:
        """Make transfers to `account` fail, like a recipient contract that reverts."""
        with self._lock:
            if rejecting:
                self._rejecting.add(account)
            else:
                self._rejecting.discard(account)

    def transfer(self, to: str, amount: int) -> bool:
        amount = int(amount)
        with self._lock:
            if to in self._rejecting:
                logger.warning("Recipient %s rejected %s wei", to, amount)
                return False
            if self._reserve < amount:
                logger.warning("Reserve of %s wei cannot cover %s wei to %s", self._reserve, amount, to)
                return False
            self._reserve -= amount
            self._balances[to] = self._balances.get(to, 0) + amount
        logger.info("Transferred %s wei to %s", amount, to)
        return True


class Web3Custodian:
    """Pays out native value from the operator wallet with signed transactions."""

    def __init__(self, config: Dict[str, Any], w3: Optional[Web3] = None):
        blockchain_cfg = config.get("blockchain", {})
        self.rpc_url: str = blockchain_cfg.get("rpc_url") or "http://127.0.0.1:8545"
        try:
            self.rpc_timeout: float = float(blockchain_cfg.get("rpc_timeout", 10.0))
        except (TypeError, ValueError):
            self.rpc_timeout = 10.0
        self.chain_id: int = int(blockchain_cfg.get("chain_id", 31337))
        self.block_confirmations: int = int(blockchain_cfg.get("block_confirmations", 1))
        self.tx_timeout: int = int(blockchain_cfg.get("tx_timeout_seconds", 180))

        private_key = blockchain_cfg.get("operator_private_key")
        if not private_key:
            raise ValueError("blockchain.operator_private_key is required for on-chain payouts")
        self.account = Account.from_key(private_key)
        logger.info("Operator account loaded: %s", self.account.address)

        self._gas_price_override: Optional[int] = None
        gas_price_setting = blockchain_cfg.get("gas_price")
        if gas_price_setting:
            self._gas_price_override = Web3.to_wei(Decimal(str(gas_price_setting)), "gwei")
        self._gas_multiplier = float(blockchain_cfg.get("gas_multiplier", 1.15))

        self._w3 = w3 or Web3(Web3.HTTPProvider(self.rpc_url, request_kwargs={"timeout": self.rpc_timeout}))
        # One payout at a time keeps nonces sequential
        self._send_lock = threading.Lock()

    def balance_of(self, account: str) -> int:
        return int(self._w3.eth.get_balance(Web3.to_checksum_address(account)))

    def transfer(self, to: str, amount: int) -> bool:
        try:
            with self._send_lock:
                receipt = self._send_value(Web3.to_checksum_address(to), int(amount))
        except Exception as exc:
            logger.error("Payout of %s wei to %s failed: %s", amount, to, exc)
            return False

        if int(receipt["status"]) != 1:
            logger.error("Payout transaction %s reverted", receipt["transactionHash"].hex())
            return False
        logger.info("Paid %s wei to %s in tx %s", amount, to, receipt["transactionHash"].hex())
        return True

    def _send_value(self, to: str, amount: int):
        w3 = self._w3
        txn = {
            "from": self.account.address,
            "to": to,
            "value": amount,
            "gasPrice": self._gas_price_override or w3.eth.gas_price,
            "nonce": w3.eth.get_transaction_count(self.account.address),
            "chainId": self.chain_id,
        }
        txn["gas"] = int(w3.eth.estimate_gas(txn) * self._gas_multiplier)
        signed = self.account.sign_transaction(txn)
        raw = getattr(signed, "raw_transaction", None) or getattr(signed, "rawTransaction")
        tx_hash = w3.eth.send_raw_transaction(raw)
        logger.info("Sent payout transaction %s", tx_hash.hex())
        receipt = w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.tx_timeout)
        self._wait_for_confirmations(int(receipt["blockNumber"]))
        return receipt

    def _wait_for_confirmations(self, block_number: int) -> None:
        if self.block_confirmations <= 1:
            return
        target = block_number + self.block_confirmations - 1
        deadline_polls = self.tx_timeout
        while self._w3.eth.block_number < target and deadline_polls > 0:
            deadline_polls -= 1
            time.sleep(1.0)
        if self._w3.eth.block_number < target:
            raise TimeoutError(f"Block {block_number} did not reach {self.block_confirmations} confirmations")
