import threading
from dataclasses import replace

import pytest
from web3 import Web3

from raffle.blockchain.vrf import derive_random_words
from raffle.lottery.engine import RaffleEngine, pick_winner_index
from raffle.lottery.errors import (
    InsufficientStake,
    OracleUnavailable,
    PayoutFailed,
    PayoutNotPending,
    RaffleError,
    RoundNotOpen,
    UnknownRequest,
    UpkeepNotNeeded,
)
from raffle.lottery.event_manager import (
    ENTERED,
    RAFFLE_REFUNDED,
    REQUESTED_RANDOMNESS,
    WINNER_PICKED,
)
from raffle.lottery.models import RaffleState

from .conftest import ENTRANCE_FEE, INTERVAL


class TestConstructor:
    def test_initializes_the_raffle_correctly(self, raffle, clock):
        assert raffle.get_raffle_state() == RaffleState.OPEN
        assert int(raffle.get_raffle_state()) == 0
        assert raffle.get_interval() == INTERVAL
        assert raffle.get_entrance_fee() == ENTRANCE_FEE
        assert raffle.get_latest_timestamp() == clock.now()
        assert raffle.get_number_of_players() == 0
        assert raffle.get_recent_winner() is None
        assert raffle.get_round_id() == 1
        assert raffle.get_num_words() == 1
        assert raffle.get_request_confirmations() == 3

    def test_rejects_invalid_parameters(self, raffle_config, coordinator, custodian):
        with pytest.raises(ValueError):
            RaffleEngine(replace(raffle_config, interval=-1), coordinator, custodian)
        with pytest.raises(ValueError):
            RaffleEngine(replace(raffle_config, num_words=0), coordinator, custodian)


class TestEnter:
    def test_reverts_when_you_dont_pay_enough(self, raffle, deployer):
        with pytest.raises(InsufficientStake):
            raffle.enter(deployer, 0)

    def test_half_the_fee_is_rejected_without_side_effects(self, raffle, deployer):
        with pytest.raises(InsufficientStake) as excinfo:
            raffle.enter(deployer, Web3.to_wei("0.005", "ether"))

        assert excinfo.value.entrance_fee == ENTRANCE_FEE
        assert raffle.get_number_of_players() == 0
        assert raffle.get_balance() == 0

    def test_records_players_when_they_enter(self, raffle, enter, deployer):
        index = enter(deployer)

        assert index == 0
        assert raffle.get_player(0) == deployer

    def test_unknown_player_index_raises(self, raffle):
        with pytest.raises(IndexError):
            raffle.get_player(0)

    def test_emits_event_on_enter(self, raffle, enter, deployer, events):
        seen = []
        events.once(ENTERED, seen.append)

        enter(deployer)

        assert len(seen) == 1
        assert seen[0]["player"] == deployer
        assert seen[0]["roundId"] == 1
        assert seen[0]["stake"] == ENTRANCE_FEE

    def test_players_and_balance_track_every_entry(self, raffle, enter, accounts):
        stakes = [ENTRANCE_FEE, ENTRANCE_FEE * 2, ENTRANCE_FEE, ENTRANCE_FEE * 3]
        players = [accounts[0], accounts[1], accounts[0], accounts[2]]
        for player, stake in zip(players, stakes):
            enter(player, stake)

        assert raffle.get_players() == players
        assert raffle.get_number_of_players() == 4
        assert raffle.get_balance() == sum(stakes)
        assert raffle.get_stakes_by_player()[accounts[0]] == ENTRANCE_FEE * 2

    def test_doesnt_allow_entrance_when_raffle_is_calculating(self, ready_for_upkeep, accounts):
        raffle = ready_for_upkeep
        raffle.perform_upkeep()

        with pytest.raises(RoundNotOpen):
            raffle.enter(accounts[1], ENTRANCE_FEE)
        assert raffle.get_number_of_players() == 1

    def test_stake_is_checked_before_state(self, ready_for_upkeep, accounts):
        raffle = ready_for_upkeep
        raffle.perform_upkeep()

        with pytest.raises(InsufficientStake):
            raffle.enter(accounts[1], 1)


class TestCheckUpkeep:
    def test_returns_false_if_people_havent_sent_any_eth(self, raffle, clock):
        clock.increase_time(INTERVAL + 1)

        check = raffle.check_upkeep()

        assert not check.upkeep_needed
        assert not check.has_players
        assert not check.has_balance

    def test_returns_false_if_raffle_isnt_open(self, ready_for_upkeep):
        raffle = ready_for_upkeep
        raffle.perform_upkeep()

        check = raffle.check_upkeep()

        assert raffle.get_raffle_state() == RaffleState.CALCULATING
        assert check.upkeep_needed is False
        assert "raffle not open" in check.reason

    def test_returns_false_if_enough_time_hasnt_passed(self, raffle, enter, deployer, clock):
        enter(deployer)
        clock.increase_time(INTERVAL - 5)

        check = raffle.check_upkeep()

        assert not check.upkeep_needed
        assert check.reason == "interval not elapsed"

    def test_returns_true_if_enough_time_has_passed_has_players_eth_and_is_open(self, ready_for_upkeep):
        check = ready_for_upkeep.check_upkeep()

        assert check.upkeep_needed
        assert check.reason == "ok"

    def test_interval_boundary_is_inclusive(self, raffle, enter, deployer, clock):
        enter(deployer)
        clock.increase_time(INTERVAL)

        assert raffle.check_upkeep().upkeep_needed

    @pytest.mark.parametrize("with_player", [True, False])
    @pytest.mark.parametrize("time_passed", [True, False])
    def test_needed_only_when_every_condition_holds(self, raffle, enter, deployer, clock, with_player, time_passed):
        if with_player:
            enter(deployer)
        clock.increase_time(INTERVAL + 1 if time_passed else 1)

        check = raffle.check_upkeep()

        assert check.upkeep_needed == (with_player and time_passed)
        assert check.is_open
        assert check.time_passed == time_passed
        assert check.has_players == with_player

    def test_has_no_side_effects(self, ready_for_upkeep, coordinator):
        raffle = ready_for_upkeep
        for _ in range(3):
            assert raffle.check_upkeep().upkeep_needed

        assert raffle.get_raffle_state() == RaffleState.OPEN
        assert coordinator.pending_request_ids() == []


class TestPerformUpkeep:
    def test_it_can_only_run_if_checkupkeep_is_true(self, ready_for_upkeep):
        assert ready_for_upkeep.perform_upkeep()

    def test_reverts_when_checkupkeep_is_false(self, raffle):
        with pytest.raises(UpkeepNotNeeded) as excinfo:
            raffle.perform_upkeep()

        assert excinfo.value.balance == 0
        assert excinfo.value.num_players == 0
        assert excinfo.value.state == RaffleState.OPEN

    def test_reverts_before_the_interval(self, raffle, enter, deployer):
        enter(deployer)

        with pytest.raises(UpkeepNotNeeded):
            raffle.perform_upkeep()
        assert raffle.get_raffle_state() == RaffleState.OPEN

    def test_updates_the_raffle_state_emits_an_event_and_calls_the_vrf_coordinator(
        self, ready_for_upkeep, events, coordinator
    ):
        raffle = ready_for_upkeep
        seen = []
        events.add_listener(REQUESTED_RANDOMNESS, seen.append)

        request_id = raffle.perform_upkeep()

        assert request_id > 0
        assert raffle.get_raffle_state() == RaffleState.CALCULATING
        assert seen[0]["requestId"] == request_id
        assert coordinator.pending_request_ids() == [request_id]

    def test_pending_request_captures_the_player_snapshot(self, ready_for_upkeep, deployer):
        request_id = ready_for_upkeep.perform_upkeep()

        pending = ready_for_upkeep.get_pending_request()

        assert pending.request_id == request_id
        assert pending.players == [deployer]
        assert pending.amount == ENTRANCE_FEE
        assert pending.round_id == 1

    def test_second_upkeep_is_rejected_while_calculating(self, ready_for_upkeep, coordinator):
        ready_for_upkeep.perform_upkeep()

        with pytest.raises(UpkeepNotNeeded):
            ready_for_upkeep.perform_upkeep()
        assert len(coordinator.pending_request_ids()) == 1

    def test_rejected_request_reopens_the_round(self, ready_for_upkeep, coordinator, raffle_config):
        raffle = ready_for_upkeep
        coordinator.remove_consumer(raffle_config.subscription_id, raffle.address)

        with pytest.raises(OracleUnavailable):
            raffle.perform_upkeep()

        assert raffle.get_raffle_state() == RaffleState.OPEN
        assert raffle.get_pending_request() is None
        assert raffle.check_upkeep().upkeep_needed

        coordinator.add_consumer(raffle_config.subscription_id, raffle.address)
        assert raffle.perform_upkeep() > 0

    def test_transport_errors_surface_as_oracle_unavailable(self, raffle_config, custodian, clock, accounts):
        class BrokenOracle:
            def request_random_words(self, params, consumer):
                raise ConnectionError("coordinator unreachable")

        raffle = RaffleEngine(raffle_config, BrokenOracle(), custodian, clock=clock)
        raffle.enter(accounts[0], ENTRANCE_FEE)
        clock.increase_time(INTERVAL + 1)

        with pytest.raises(OracleUnavailable, match="coordinator unreachable"):
            raffle.perform_upkeep()
        assert raffle.get_raffle_state() == RaffleState.OPEN


class TestFulfillRandomWords:
    def test_can_only_be_called_after_perform_upkeep(self, ready_for_upkeep, coordinator):
        raffle = ready_for_upkeep
        with pytest.raises(UnknownRequest, match="nonexistent request"):
            coordinator.fulfill_random_words(0, raffle)
        with pytest.raises(UnknownRequest, match="nonexistent request"):
            coordinator.fulfill_random_words(1, raffle)

    def test_unknown_request_is_rejected_without_mutation(self, ready_for_upkeep):
        raffle = ready_for_upkeep
        request_id = raffle.perform_upkeep()

        with pytest.raises(UnknownRequest):
            raffle.fulfill_random_words(999, [1])

        assert raffle.get_raffle_state() == RaffleState.CALCULATING
        assert raffle.get_pending_request().request_id == request_id
        assert raffle.get_number_of_players() == 1

    def test_no_request_pending(self, raffle):
        with pytest.raises(UnknownRequest):
            raffle.fulfill_random_words(999, [1])

    def test_empty_words_are_rejected(self, ready_for_upkeep):
        request_id = ready_for_upkeep.perform_upkeep()

        with pytest.raises(ValueError):
            ready_for_upkeep.fulfill_random_words(request_id, [])

    def test_picks_a_winner_resets_the_lottery_and_sends_money(
        self, raffle, enter, accounts, custodian, coordinator, events, clock
    ):
        for account in accounts[:4]:
            enter(account)
        clock.increase_time(INTERVAL + 1)
        starting_timestamp = raffle.get_latest_timestamp()

        picked = []
        events.once(WINNER_PICKED, picked.append)

        request_id = raffle.perform_upkeep()
        expected_winner = accounts[derive_random_words(request_id, 1)[0] % 4]
        winner_starting_balance = custodian.balance_of(expected_winner)
        clock.increase_time(12)

        result = coordinator.fulfill_random_words(request_id, raffle)

        assert result.success
        assert len(picked) == 1
        assert picked[0]["winner"] == expected_winner
        assert raffle.get_recent_winner() == expected_winner
        assert raffle.get_number_of_players() == 0
        assert raffle.get_raffle_state() == RaffleState.OPEN
        assert raffle.get_latest_timestamp() > starting_timestamp
        assert custodian.balance_of(expected_winner) == winner_starting_balance + ENTRANCE_FEE * 4

    def test_random_value_two_of_four_picks_index_two(self, raffle, enter, accounts, custodian, coordinator, clock):
        for account in accounts[:4]:
            enter(account)
        clock.increase_time(INTERVAL + 1)
        request_id = raffle.perform_upkeep()
        before = custodian.balance_of(accounts[2])

        coordinator.fulfill_random_words_with_override(request_id, raffle, [2])

        assert raffle.get_recent_winner() == accounts[2]
        assert custodian.balance_of(accounts[2]) - before == Web3.to_wei("0.04", "ether")
        assert raffle.get_players() == []
        assert raffle.get_balance() == 0

    def test_settled_request_cannot_be_replayed(self, ready_for_upkeep, deployer):
        raffle = ready_for_upkeep
        request_id = raffle.perform_upkeep()
        raffle.fulfill_random_words(request_id, [5])

        with pytest.raises(UnknownRequest):
            raffle.fulfill_random_words(request_id, [5])
        assert raffle.get_raffle_state() == RaffleState.OPEN

    def test_next_round_uses_a_new_round_id(self, ready_for_upkeep, enter, accounts, clock, events):
        raffle = ready_for_upkeep
        request_id = raffle.perform_upkeep()
        raffle.fulfill_random_words(request_id, [0])

        seen = []
        events.once(ENTERED, seen.append)
        enter(accounts[1])

        assert raffle.get_round_id() == 2
        assert seen[0]["roundId"] == 2
        assert not raffle.check_upkeep().upkeep_needed
        clock.increase_time(INTERVAL)
        assert raffle.perform_upkeep() == request_id + 1

    def test_settlement_is_recorded_in_history(self, ready_for_upkeep, events, deployer):
        raffle = ready_for_upkeep
        request_id = raffle.perform_upkeep()
        raffle.fulfill_random_words(request_id, [3])

        history = events.get_round_history()

        assert len(history) == 1
        assert history[0].final_state == "WINNER_PICKED"
        assert history[0].winner == deployer
        assert history[0].total_pot == ENTRANCE_FEE
        assert history[0].request_id == request_id


@pytest.mark.parametrize("value", [0, 1, 2, 3, 4, 7, 10**30 + 3, 2**256 - 1])
def test_winner_index_is_value_mod_player_count(value):
    index = pick_winner_index(value, 4)

    assert index == value % 4
    assert 0 <= index < 4


def test_winner_index_requires_players():
    with pytest.raises(RaffleError):
        pick_winner_index(3, 0)


class TestPayoutFailure:
    def test_failed_payout_keeps_the_round_calculating(self, ready_for_upkeep, custodian, deployer):
        raffle = ready_for_upkeep
        request_id = raffle.perform_upkeep()
        custodian.reject_transfers_to(deployer)

        with pytest.raises(PayoutFailed) as excinfo:
            raffle.fulfill_random_words(request_id, [0])

        assert excinfo.value.recipient == deployer
        assert excinfo.value.amount == ENTRANCE_FEE
        assert raffle.get_raffle_state() == RaffleState.CALCULATING
        assert raffle.get_players() == [deployer]
        assert raffle.get_balance() == ENTRANCE_FEE
        pending = raffle.get_pending_request()
        assert pending.awaiting_payout
        assert pending.winner == deployer

    def test_processed_callback_cannot_pick_another_winner(self, raffle, enter, accounts, custodian, clock):
        enter(accounts[0])
        enter(accounts[1])
        clock.increase_time(INTERVAL + 1)
        request_id = raffle.perform_upkeep()
        custodian.reject_transfers_to(accounts[0])

        with pytest.raises(PayoutFailed):
            raffle.fulfill_random_words(request_id, [0])
        with pytest.raises(UnknownRequest):
            raffle.fulfill_random_words(request_id, [1])

        assert raffle.get_pending_request().winner == accounts[0]

    def test_retry_pays_the_same_winner(self, ready_for_upkeep, custodian, deployer):
        raffle = ready_for_upkeep
        request_id = raffle.perform_upkeep()
        custodian.reject_transfers_to(deployer)
        with pytest.raises(PayoutFailed):
            raffle.fulfill_random_words(request_id, [0])
        before = custodian.balance_of(deployer)

        custodian.reject_transfers_to(deployer, False)
        winner = raffle.retry_payout()

        assert winner == deployer
        assert custodian.balance_of(deployer) == before + ENTRANCE_FEE
        assert raffle.get_raffle_state() == RaffleState.OPEN
        assert raffle.get_pending_request() is None

    def test_retry_without_failed_payout(self, raffle, ready_for_upkeep):
        with pytest.raises(PayoutNotPending):
            raffle.retry_payout()
        ready_for_upkeep.perform_upkeep()
        with pytest.raises(PayoutNotPending):
            raffle.retry_payout()

    def test_custodian_exception_counts_as_failed_payout(self, raffle_config, coordinator, clock, accounts):
        class ExplodingCustodian:
            def transfer(self, to, amount):
                raise RuntimeError("node down")

        raffle = RaffleEngine(raffle_config, coordinator, ExplodingCustodian(), clock=clock)
        coordinator.add_consumer(raffle_config.subscription_id, raffle.address)
        raffle.enter(accounts[0], ENTRANCE_FEE)
        clock.increase_time(INTERVAL + 1)
        request_id = raffle.perform_upkeep()

        with pytest.raises(PayoutFailed, match="node down"):
            raffle.fulfill_random_words(request_id, [0])
        assert raffle.get_raffle_state() == RaffleState.CALCULATING

    def test_coordinator_reports_failed_callback(self, ready_for_upkeep, coordinator, custodian, deployer):
        raffle = ready_for_upkeep
        request_id = raffle.perform_upkeep()
        custodian.reject_transfers_to(deployer)

        result = coordinator.fulfill_random_words(request_id, raffle)

        assert not result.success
        assert "failed" in result.error
        assert coordinator.pending_request_ids() == []
        assert raffle.get_pending_request().awaiting_payout


class TestCancelRound:
    def test_cannot_cancel_an_open_round(self, raffle):
        with pytest.raises(PayoutNotPending):
            raffle.cancel_round()

    def test_refunds_every_entry_and_reopens(self, raffle, enter, accounts, custodian, clock, events, coordinator):
        starting = {account: custodian.balance_of(account) for account in accounts[:3]}
        for account in accounts[:3]:
            enter(account)
        enter(accounts[0])
        clock.increase_time(INTERVAL + 1)
        request_id = raffle.perform_upkeep()
        refunded_events = []
        events.once(RAFFLE_REFUNDED, refunded_events.append)

        refunded = raffle.cancel_round("oracle timeout")

        assert refunded == ENTRANCE_FEE * 4
        for account in accounts[:3]:
            assert custodian.balance_of(account) == starting[account]
        assert raffle.get_raffle_state() == RaffleState.OPEN
        assert raffle.get_number_of_players() == 0
        assert raffle.get_round_id() == 2
        assert raffle.get_recent_winner() is None
        assert refunded_events[0]["reason"] == "oracle timeout"
        assert events.get_round_history()[-1].final_state == "REFUNDED"

        # the oracle answering late must not settle anything
        result = coordinator.fulfill_random_words(request_id, raffle)
        assert not result.success
        assert raffle.get_raffle_state() == RaffleState.OPEN

    def test_partial_refund_keeps_unpaid_entries(self, raffle, enter, accounts, custodian, clock):
        for account in accounts[:3]:
            enter(account)
        clock.increase_time(INTERVAL + 1)
        raffle.perform_upkeep()
        custodian.reject_transfers_to(accounts[1])

        with pytest.raises(PayoutFailed):
            raffle.cancel_round()

        assert raffle.get_raffle_state() == RaffleState.CALCULATING
        assert raffle.get_players() == [accounts[1]]
        assert raffle.get_balance() == ENTRANCE_FEE

        custodian.reject_transfers_to(accounts[1], False)
        assert raffle.cancel_round() == ENTRANCE_FEE
        assert raffle.get_raffle_state() == RaffleState.OPEN


class TestConcurrency:
    def test_concurrent_entries_are_all_recorded(self, raffle, accounts):
        def worker(player):
            for _ in range(50):
                raffle.enter(player, ENTRANCE_FEE)

        threads = [threading.Thread(target=worker, args=(accounts[i % len(accounts)],)) for i in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert raffle.get_number_of_players() == 400
        assert raffle.get_balance() == ENTRANCE_FEE * 400

    def test_only_one_concurrent_upkeep_succeeds(self, ready_for_upkeep, coordinator):
        raffle = ready_for_upkeep
        outcomes = []
        barrier = threading.Barrier(6)

        def worker():
            barrier.wait()
            try:
                outcomes.append(raffle.perform_upkeep())
            except UpkeepNotNeeded:
                outcomes.append(None)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len([o for o in outcomes if o is not None]) == 1
        assert len(coordinator.pending_request_ids()) == 1

    def test_round_lock_is_released_during_oracle_call(self, raffle_config, custodian, clock, accounts):
        observed = {}

        class ProbingOracle:
            def request_random_words(self, params, consumer):
                observed["check"] = consumer.check_upkeep()
                with pytest.raises(RoundNotOpen):
                    consumer.enter(accounts[1], ENTRANCE_FEE)
                return 7

        raffle = RaffleEngine(raffle_config, ProbingOracle(), custodian, clock=clock)
        raffle.enter(accounts[0], ENTRANCE_FEE)
        clock.increase_time(INTERVAL + 1)

        assert raffle.perform_upkeep() == 7
        assert not observed["check"].upkeep_needed
        assert not observed["check"].is_open

    def test_round_lock_is_released_during_payout(self, raffle_config, coordinator, clock, accounts):
        observed = {}

        class ProbingCustodian:
            def transfer(self, to, amount):
                observed["status"] = raffle.get_status()
                with pytest.raises(UnknownRequest):
                    raffle.fulfill_random_words(observed["status"]["pendingRequestId"], [1])
                with pytest.raises(PayoutNotPending):
                    raffle.cancel_round()
                return True

        raffle = RaffleEngine(raffle_config, coordinator, ProbingCustodian(), clock=clock)
        coordinator.add_consumer(raffle_config.subscription_id, raffle.address)
        raffle.enter(accounts[0], ENTRANCE_FEE)
        clock.increase_time(INTERVAL + 1)
        request_id = raffle.perform_upkeep()

        assert raffle.fulfill_random_words(request_id, [0]) == accounts[0]
        assert observed["status"]["stateLabel"] == "CALCULATING"

    def test_wait_for_submission_blocks_until_the_request_is_registered(
        self, raffle_config, custodian, clock, accounts
    ):
        started = threading.Event()
        release = threading.Event()

        class SlowOracle:
            def request_random_words(self, params, consumer):
                started.set()
                release.wait(5)
                return 3

        raffle = RaffleEngine(raffle_config, SlowOracle(), custodian, clock=clock)
        assert raffle.wait_for_submission(timeout=0)
        raffle.enter(accounts[0], ENTRANCE_FEE)
        clock.increase_time(INTERVAL + 1)

        worker = threading.Thread(target=raffle.perform_upkeep)
        worker.start()
        assert started.wait(5)

        assert raffle.wait_for_submission(timeout=0.05) is False
        release.set()
        assert raffle.wait_for_submission(timeout=5)
        assert raffle.get_pending_request().request_id == 3
        worker.join()

    def test_wait_for_submission_returns_after_rollback(self, raffle_config, custodian, clock, accounts):
        started = threading.Event()
        release = threading.Event()

        class FailingOracle:
            def request_random_words(self, params, consumer):
                started.set()
                release.wait(5)
                raise ConnectionError("coordinator unreachable")

        raffle = RaffleEngine(raffle_config, FailingOracle(), custodian, clock=clock)
        raffle.enter(accounts[0], ENTRANCE_FEE)
        clock.increase_time(INTERVAL + 1)
        errors = []

        def worker():
            try:
                raffle.perform_upkeep()
            except OracleUnavailable as exc:
                errors.append(exc)

        thread = threading.Thread(target=worker)
        thread.start()
        assert started.wait(5)
        release.set()

        assert raffle.wait_for_submission(timeout=5)
        thread.join()
        assert len(errors) == 1
        assert raffle.get_raffle_state() == RaffleState.OPEN
