"""Command line entry point: serve the raffle, simulate rounds, inspect networks and accounts."""

from __future__ import annotations

import argparse
import asyncio
import json
from typing import Any, Dict, List, Optional

from web3 import Web3

from raffle.blockchain.networks import NETWORKS, get_named_accounts, get_network_config, get_signers
from raffle.lottery.clock import ManualClock
from raffle.lottery.event_manager import WINNER_PICKED
from raffle.main import build_components, main as serve_main
from raffle.utils.common import eth_to_wei
from raffle.utils.config import load_config
from raffle.utils.logger import get_logger, set_log_level

logger = get_logger(__name__)


def cmd_serve(args: argparse.Namespace) -> int:
    serve_main(args.config)
    return 0


async def simulate(config: Dict[str, Any], players: int, rounds: int, random_word: Optional[int] = None) -> List[Dict[str, Any]]:
    """Run full rounds against the mock coordinator on a manual clock."""
    config = dict(config)
    config["network"] = {**config.get("network", {}), "name": "hardhat"}
    config["blockchain"] = {**config.get("blockchain", {}), "operator_private_key": None}
    config["oracle"] = {**config.get("oracle", {}), "auto_fulfill": random_word is None}

    clock = ManualClock()
    components = build_components(config, clock=clock)
    engine, custodian, operator = components.engine, components.custodian, components.operator
    await operator.initialize()

    signers = [account.address for account in get_signers(players, config.get("accounts", {}).get("mnemonic"))]
    fee = engine.get_entrance_fee()
    for address in signers:
        custodian.credit(address, Web3.to_wei(10, "ether"))

    results = []
    for _ in range(rounds):
        starting = {address: custodian.balance_of(address) for address in signers}
        for address in signers:
            custodian.collect(address, fee)
            engine.enter(address, fee)
        clock.increase_time(engine.get_interval() + 1)

        picked: Dict[str, Any] = {}
        components.events.once(WINNER_PICKED, lambda payload: picked.update(payload or {}))

        request_id = await operator.run_once()
        if random_word is not None:
            components.oracle.fulfill_random_words_with_override(request_id, operator.inbox, [random_word] * engine.get_num_words())
            await asyncio.sleep(0)
        await operator.drain_inbox()

        winner = picked.get("winner")
        results.append({
            "round_id": picked.get("roundId"),
            "request_id": request_id,
            "winner": winner,
            "winner_index": picked.get("winnerIndex"),
            "pot_wei": picked.get("amount"),
            "winner_gain_wei": custodian.balance_of(winner) - starting[winner] if winner else None,
            "state_after": engine.get_raffle_state().name,
            "players_after": engine.get_number_of_players(),
        })
        logger.info(f"Simulated round {picked.get('roundId')}: request {request_id}, winner {winner}")
    return results


def cmd_simulate(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    if args.entrance_fee is not None:
        config["raffle"]["entrance_fee"] = args.entrance_fee
    results = asyncio.run(simulate(config, args.players, args.rounds, args.random_word))

    print("========================================")
    print("🎲 RAFFLE SIMULATION")
    print("========================================")
    for result in results:
        print(f"Round {result['round_id']}: request {result['request_id']}")
        print(f"  Winner        : {result['winner']} (index {result['winner_index']})")
        print(f"  Pot           : {Web3.from_wei(result['pot_wei'] or 0, 'ether')} ETH")
        print(f"  State after   : {result['state_after']}, players {result['players_after']}")
    if args.out:
        with open(args.out, "w", encoding="utf-8") as f:
            json.dump(results, f, indent=2)
        print(f"🧾 Wrote results: {args.out}")
    return 0


def cmd_accounts(args: argparse.Namespace) -> int:
    for name, account in get_named_accounts(args.mnemonic).items():
        print(f"{name:10s}: {account.address}")
    return 0


def cmd_networks(args: argparse.Namespace) -> int:
    for name, network in NETWORKS.items():
        try:
            defaults = get_network_config(network["chain_id"])
        except ValueError:
            defaults = {}
        fee = defaults.get("entrance_fee")
        print(f"{name:10s} chain {network['chain_id']:<6} confirmations {network['block_confirmations']}"
              f"  entrance fee {Web3.from_wei(fee, 'ether') if fee else '-'} ETH"
              f"  interval {defaults.get('interval', '-')}s")
    return 0


def _eth_amount(value: str) -> str:
    try:
        eth_to_wei(value)
    except (ArithmeticError, ValueError):
        raise argparse.ArgumentTypeError(f"invalid ETH amount: {value}")
    return value


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="raffle", description="Raffle lifecycle service.")
    p.add_argument("--config", default=None, help="Path to a JSON config file (default: config/raffle.conf).")
    p.add_argument("--log-level", default=None, choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Override LOG_LEVEL.")

    sub = p.add_subparsers(dest="cmd", required=True)

    s = sub.add_parser("serve", help="Run the keeper and the web server.")
    s.set_defaults(func=cmd_serve)

    sim = sub.add_parser("simulate", help="Play rounds against the mock VRF coordinator.")
    sim.add_argument("--players", type=int, default=4, help="Entrants per round.")
    sim.add_argument("--rounds", type=int, default=1, help="Number of rounds to settle.")
    sim.add_argument("--random-word", type=int, default=None, help="Fixed random word instead of the mock's keccak words.")
    sim.add_argument("--entrance-fee", type=_eth_amount, default=None, help="Entrance fee in ETH.")
    sim.add_argument("--out", default=None, help="Write results as JSON.")
    sim.set_defaults(func=cmd_simulate)

    a = sub.add_parser("accounts", help="Show the named accounts.")
    a.add_argument("--mnemonic", default=None, help="Mnemonic (default: hardhat test mnemonic).")
    a.set_defaults(func=cmd_accounts)

    n = sub.add_parser("networks", help="Show configured networks.")
    n.set_defaults(func=cmd_networks)

    return p


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    if args.log_level:
        set_log_level(args.log_level)
    raise SystemExit(args.func(args))
