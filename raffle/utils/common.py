"""Common utility functions for the raffle backend."""

from decimal import Decimal
from typing import Union

from web3 import Web3


def shorten_eth_address(address: str) -> str:
    """Shorten an Ethereum address for display: '0x123456...abcd'.
    Returns the first 6 and last 4 characters, separated by '...'.
    Handles addresses with or without '0x' prefix.
    """
    if not address:
        return ""
    addr = address.lower()
    if addr.startswith("0x"):
        addr = addr[2:]
    if len(addr) < 10:
        return f"0x{addr}"
    return f"0x{addr[:6]}...{addr[-4:]}"


def eth_to_wei(amount: Union[str, int, float, Decimal]) -> int:
    """Convert an ETH amount (as configured by humans) to wei."""
    return int(Web3.to_wei(Decimal(str(amount)), "ether"))


def wei_to_eth(amount_wei: int) -> Decimal:
    return Web3.from_wei(int(amount_wei), "ether")
