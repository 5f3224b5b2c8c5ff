import pytest
from web3 import Web3

from raffle.blockchain.custodian import InMemoryCustodian, Web3Custodian
from raffle.blockchain.networks import derive_account

ALICE = "0xaaa"
BOB = "0xbbb"


def test_collect_and_transfer_move_funds_through_the_reserve():
    custodian = InMemoryCustodian({ALICE: 100})

    custodian.collect(ALICE, 60)
    assert custodian.transfer(BOB, 50)

    assert custodian.balance_of(ALICE) == 40
    assert custodian.balance_of(BOB) == 50
    assert custodian.reserve == 10


def test_collect_more_than_balance():
    custodian = InMemoryCustodian({ALICE: 5})

    with pytest.raises(ValueError):
        custodian.collect(ALICE, 6)
    assert custodian.balance_of(ALICE) == 5


def test_failed_transfers_change_nothing():
    custodian = InMemoryCustodian(reserve=100)
    custodian.reject_transfers_to(BOB)

    assert not custodian.transfer(BOB, 10)
    assert not custodian.transfer(ALICE, 101)
    assert custodian.reserve == 100
    assert custodian.balance_of(BOB) == 0

    custodian.reject_transfers_to(BOB, False)
    assert custodian.transfer(BOB, 10)


def test_web3_custodian_requires_operator_key():
    with pytest.raises(ValueError):
        Web3Custodian({"blockchain": {}})


def test_web3_custodian_reports_unreachable_node_as_failed_transfer():
    operator = derive_account(0)
    custodian = Web3Custodian({
        "blockchain": {
            "rpc_url": "http://127.0.0.1:1",
            "rpc_timeout": 1,
            "operator_private_key": operator.key,
        }
    })

    assert custodian.account.address == operator.address
    assert custodian.transfer(derive_account(1).address, Web3.to_wei(1, "ether")) is False
