import pytest
from web3 import Web3

from raffle.blockchain.custodian import InMemoryCustodian
from raffle.blockchain.networks import get_signers
from raffle.blockchain.vrf import VRFCoordinatorMock
from raffle.lottery.clock import ManualClock
from raffle.lottery.engine import RaffleEngine
from raffle.lottery.event_manager import EventManager
from raffle.lottery.models import RaffleConfig

ENTRANCE_FEE = Web3.to_wei("0.01", "ether")
INTERVAL = 30
GAS_LANE = "0xd89b2bf150e3b9e13446986e571fb9cab24b13cea0a43ea20a6049a85cc807cc"


@pytest.fixture(scope="session")
def accounts():
    return [account.address for account in get_signers(5)]


@pytest.fixture
def deployer(accounts):
    return accounts[0]


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def events():
    return EventManager()


@pytest.fixture
def coordinator():
    mock = VRFCoordinatorMock()
    subscription_id = mock.create_subscription()
    mock.fund_subscription(subscription_id, Web3.to_wei(30, "ether"))
    return mock


@pytest.fixture
def custodian(accounts):
    custodian = InMemoryCustodian()
    for address in accounts:
        custodian.credit(address, Web3.to_wei(100, "ether"))
    return custodian


@pytest.fixture
def raffle_config():
    return RaffleConfig(
        entrance_fee=ENTRANCE_FEE,
        interval=INTERVAL,
        gas_lane=GAS_LANE,
        subscription_id=1,
        callback_gas_limit=500000,
    )


@pytest.fixture
def raffle(raffle_config, coordinator, custodian, events, clock):
    engine = RaffleEngine(raffle_config, coordinator, custodian, events=events, clock=clock)
    coordinator.add_consumer(raffle_config.subscription_id, engine.address)
    return engine


@pytest.fixture
def enter(raffle, custodian):
    """Pay the stake into the custodian and enter, like a payable call."""

    def _enter(player, stake=ENTRANCE_FEE):
        custodian.collect(player, stake)
        return raffle.enter(player, stake)

    return _enter


@pytest.fixture
def ready_for_upkeep(raffle, enter, deployer, clock):
    """One entrant and the interval passed."""
    enter(deployer)
    clock.increase_time(INTERVAL + 1)
    return raffle
