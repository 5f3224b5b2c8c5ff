"""Network parameters, development chains and named accounts."""

from __future__ import annotations

import os
from typing import Any, Dict, List, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3

# Hardhat's well-known development mnemonic
DEFAULT_MNEMONIC = "test test test test test test test test test test test junk"

DEVELOPMENT_CHAINS = ["hardhat", "localhost"]

NETWORKS: Dict[str, Dict[str, Any]] = {
    "hardhat": {
        "chain_id": 31337,
        "block_confirmations": 1,
    },
    "localhost": {
        "chain_id": 31337,
        "block_confirmations": 1,
        "rpc_url": "http://127.0.0.1:8545",
    },
    "goerli": {
        "chain_id": 5,
        "block_confirmations": 6,
        "rpc_url_env": "GOERLI_RPC_URL",
    },
}

# Raffle defaults per chain id
NETWORK_CONFIG: Dict[int, Dict[str, Any]] = {
    31337: {
        "name": "hardhat",
        "entrance_fee": Web3.to_wei("0.01", "ether"),
        "gas_lane": "0xd89b2bf150e3b9e13446986e571fb9cab24b13cea0a43ea20a6049a85cc807cc",
        "callback_gas_limit": 500000,
        "interval": 30,
    },
    5: {
        "name": "goerli",
        "vrf_coordinator": "0x2bce784e69d2ff36c71edcb9f88358db0dfb55b4",
        "entrance_fee": Web3.to_wei("0.01", "ether"),
        "gas_lane": "0x79d3d8832d904592c0bf9818b621522c988bb8b0c05cdc3b15aea1b6e8db0c15",
        "subscription_id": 0,
        "callback_gas_limit": 500000,
        "interval": 30,
    },
}

NAMED_ACCOUNTS: Dict[str, int] = {
    "deployer": 0,
    "player": 1,
}


def get_network(name: str) -> Dict[str, Any]:
    """Return the network settings with the RPC URL resolved from the environment."""
    try:
        network = dict(NETWORKS[name])
    except KeyError:
        raise ValueError(f"Unknown network '{name}'; expected one of {sorted(NETWORKS)}") from None
    env_key = network.pop("rpc_url_env", None)
    if env_key:
        network["rpc_url"] = os.getenv(env_key)
    network["name"] = name
    return network


def get_network_config(chain_id: int) -> Dict[str, Any]:
    try:
        return dict(NETWORK_CONFIG[int(chain_id)])
    except KeyError:
        raise ValueError(f"No raffle defaults for chain id {chain_id}") from None


def is_development_chain(name: str) -> bool:
    return name in DEVELOPMENT_CHAINS


def derive_account(index: int, mnemonic: Optional[str] = None) -> LocalAccount:
    Account.enable_unaudited_hdwallet_features()
    return Account.from_mnemonic(mnemonic or DEFAULT_MNEMONIC, account_path=f"m/44'/60'/0'/0/{index}")


def get_named_accounts(mnemonic: Optional[str] = None) -> Dict[str, LocalAccount]:
    """Accounts by role name, e.g. {'deployer': ..., 'player': ...}."""
    return {name: derive_account(index, mnemonic) for name, index in NAMED_ACCOUNTS.items()}


def get_signers(count: int, mnemonic: Optional[str] = None) -> List[LocalAccount]:
    """First `count` accounts of the mnemonic, in index order."""
    return [derive_account(index, mnemonic) for index in range(count)]
