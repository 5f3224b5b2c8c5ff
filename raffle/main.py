#!/usr/bin/env python3
"""
Raffle Service Application

Main entry point: wires the raffle engine to its randomness oracle, fund
custodian, keeper operator and the FastAPI web server.
"""

import asyncio
import signal
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from web3 import Web3

from raffle.blockchain.custodian import InMemoryCustodian, Web3Custodian
from raffle.blockchain.networks import get_network, get_network_config, is_development_chain
from raffle.blockchain.vrf import VRFCoordinatorMock
from raffle.lottery.clock import SystemClock
from raffle.lottery.engine import RaffleEngine
from raffle.lottery.errors import OracleUnavailable
from raffle.lottery.event_manager import EventManager
from raffle.lottery.models import RaffleConfig
from raffle.lottery.operator import KeeperOperator
from raffle.utils.common import eth_to_wei
from raffle.utils.config import get_config_value, load_config
from raffle.utils.logger import get_logger

logger = get_logger(__name__)

# LINK funded into the development subscription (0.25 LINK per fulfillment)
DEFAULT_SUBSCRIPTION_FUND = 1000


@dataclass
class RaffleComponents:
    network: Dict[str, Any]
    engine: RaffleEngine
    oracle: Any
    custodian: Any
    events: EventManager
    operator: KeeperOperator


def build_raffle_config(config: Dict[str, Any], chain_id: int) -> RaffleConfig:
    """Merge configured raffle/oracle settings over the chain's defaults."""
    defaults = get_network_config(chain_id)

    entrance_fee = get_config_value(config, "raffle.entrance_fee")
    entrance_fee_wei = eth_to_wei(entrance_fee) if entrance_fee is not None else int(defaults["entrance_fee"])

    return RaffleConfig(
        entrance_fee=entrance_fee_wei,
        interval=int(get_config_value(config, "raffle.interval", defaults["interval"])),
        gas_lane=str(get_config_value(config, "oracle.gas_lane", defaults["gas_lane"])),
        subscription_id=int(get_config_value(config, "oracle.subscription_id", defaults.get("subscription_id", 0))),
        callback_gas_limit=int(get_config_value(config, "oracle.callback_gas_limit", defaults["callback_gas_limit"])),
        request_confirmations=int(get_config_value(config, "oracle.request_confirmations", 3)),
        num_words=int(get_config_value(config, "oracle.num_words", 1)),
    )


def _ensure_subscription(oracle: VRFCoordinatorMock, subscription_id: int, config: Dict[str, Any]) -> int:
    """Reuse the configured subscription if the mock holds it, otherwise create and fund one."""
    try:
        oracle.get_subscription(subscription_id)
    except OracleUnavailable:
        subscription_id = oracle.create_subscription()
        fund = get_config_value(config, "oracle.subscription_fund", DEFAULT_SUBSCRIPTION_FUND)
        oracle.fund_subscription(subscription_id, Web3.to_wei(fund, "ether"))
        logger.info(f"Created and funded VRF subscription {subscription_id} with {fund} LINK")
    return subscription_id


def build_components(
    config: Dict[str, Any],
    clock=None,
    oracle=None,
    custodian=None,
    events: Optional[EventManager] = None,
) -> RaffleComponents:
    """Assemble engine, collaborators and keeper for the configured network."""
    network = get_network(get_config_value(config, "network.name", "hardhat"))
    development = is_development_chain(network["name"])
    clock = clock or SystemClock()
    events = events or EventManager()
    raffle_config = build_raffle_config(config, network["chain_id"])

    if oracle is None:
        if not development:
            raise ValueError(
                f"Network {network['name']} needs an oracle client; only development chains get the mock coordinator"
            )
        oracle = VRFCoordinatorMock()
    if isinstance(oracle, VRFCoordinatorMock):
        subscription_id = _ensure_subscription(oracle, raffle_config.subscription_id, config)
        raffle_config = replace(raffle_config, subscription_id=subscription_id)

    if custodian is None:
        if get_config_value(config, "blockchain.operator_private_key"):
            blockchain_cfg = dict(config.get("blockchain", {}))
            blockchain_cfg.setdefault("chain_id", network["chain_id"])
            blockchain_cfg.setdefault("block_confirmations", network["block_confirmations"])
            if network.get("rpc_url") and not blockchain_cfg.get("rpc_url"):
                blockchain_cfg["rpc_url"] = network["rpc_url"]
            custodian = Web3Custodian({**config, "blockchain": blockchain_cfg})
        else:
            custodian = InMemoryCustodian()

    engine = RaffleEngine(raffle_config, oracle, custodian, events=events, clock=clock)
    if isinstance(oracle, VRFCoordinatorMock):
        oracle.add_consumer(raffle_config.subscription_id, engine.address)

    operator = KeeperOperator(engine, config, oracle=oracle, clock=clock)
    return RaffleComponents(
        network=network,
        engine=engine,
        oracle=oracle,
        custodian=custodian,
        events=events,
        operator=operator,
    )


class RaffleApp:
    """Raffle service application.

    Responsible for initializing and orchestrating the raffle engine, the
    keeper operator and the FastAPI web server, and for graceful shutdown.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config or load_config()
        self.components: Optional[RaffleComponents] = None
        self.web_server = None
        self.running = True

        self._setup_signal_handlers()
        logger.info("🎲 Raffle application initialized")

    def _setup_signal_handlers(self):
        def _handler(signum, frame):
            logger.info(f"📡 Received signal {signum}, initiating graceful shutdown...")
            self.running = False

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)

    def _display_config_summary(self):
        """Display key configuration options for diagnostics."""
        engine = self.components.engine
        network = self.components.network
        logger.info("=" * 60)
        logger.info("📋 CONFIGURATION SUMMARY")
        logger.info("=" * 60)
        logger.info(f"🔗 Network: {network['name']} (chain id {network['chain_id']})")
        logger.info(f"🎟️  Entrance Fee: {Web3.from_wei(engine.get_entrance_fee(), 'ether')} ETH")
        logger.info(f"⏱️  Interval: {engine.get_interval()}s")
        logger.info(f"🎲 Subscription: {engine.get_subscription_id()}")
        logger.info(f"💰 Custodian: {type(self.components.custodian).__name__}")
        server_config = self.config.get('server', {})
        logger.info(f"🌍 Server: {server_config.get('host', '0.0.0.0')}:{server_config.get('port', 6080)}")
        logger.info("=" * 60)

    async def initialize(self):
        from raffle.web_server import RaffleWebServer

        logger.info("🚀 Initializing raffle application")
        self.components = build_components(self.config)
        self._display_config_summary()

        await self.components.operator.initialize()
        self.web_server = RaffleWebServer(self.config, self.components)
        logger.info("🎉 Application initialization completed")

    async def start(self):
        """Start services and run until a shutdown signal is received."""
        try:
            await self.initialize()

            logger.info("🤖 Starting keeper...")
            await self.components.operator.start()

            server_host = self.config.get('server', {}).get('host', '0.0.0.0')
            server_port = int(self.config.get('server', {}).get('port', 6080))
            logger.info(f"🌍 Starting web server on {server_host}:{server_port}...")
            server_task = asyncio.create_task(self.web_server.start(host=server_host, port=server_port))
            await asyncio.sleep(0.2)
            if server_task.done() and server_task.exception():
                raise server_task.exception()

            while self.running and not server_task.done():
                await asyncio.sleep(1)

            logger.info("🛑 Shutdown signal received, stopping application...")
        finally:
            await self.stop()

    async def stop(self):
        if self.web_server:
            await self.web_server.stop()
        if self.components:
            await self.components.operator.stop()
        logger.info("👋 Raffle application stopped")


def main(config_file: Optional[str] = None) -> None:
    # Load environment variables from .env in the project root or cwd
    load_dotenv(Path(__file__).parent.parent / '.env')
    load_dotenv()

    app = RaffleApp(load_config(config_file))
    asyncio.run(app.start())


if __name__ == "__main__":
    main()
