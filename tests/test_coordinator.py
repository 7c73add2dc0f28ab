"""
Integration tests for the cross-chain coordinator over simulated chains.
"""

import sqlite3
import threading
from unittest.mock import Mock, patch

import pytest

from launchpad_sync import price_engine
from launchpad_sync.blockchain import SimulatedChainClient
from launchpad_sync.constants import CURVE_SUPPLY, WAD, ZERO_ADDRESS
from launchpad_sync.errors import (
    AlreadyMigrated, CurvePaused, StaleSequence, StateError, UnauthorizedCaller, ValidationError
)
from launchpad_sync.events import QueueEventSource
from launchpad_sync.models import (
    CurveMigrationTriggered, CurvePauseChanged, DeploymentRecord, DeploymentStatus, MigrationStatus
)
from launchpad_sync.utils import deployment_salt

from conftest import (
    ALL_CHAINS, ORIGIN, RELAY, STRANGER, TARGETS, FlakyChainClient,
    purchase, sale, token_created, wait_for
)


@pytest.fixture
def created(coordinator, created_event):
    assert coordinator.handle_event(created_event)
    return coordinator


def deploy_calls(client):
    return [c for c in client.calls if c[0] == "deploy_token"]


class BrokenChainClient(SimulatedChainClient):
    """Chain whose node rejects every price sync with a plain ValueError"""

    def sync_price(self, *args, **kwargs):
        raise ValueError("insufficient funds for gas * price + value")


class TestTokenCreated:

    def test_deploys_to_every_target_but_not_the_origin(self, coordinator, created_event, clients, db):
        results = coordinator.on_token_created(created_event)

        assert set(results) == set(TARGETS)
        for chain_id in TARGETS:
            assert results[chain_id].status == DeploymentStatus.DEPLOYED
            assert created_event.launch_id in clients[chain_id].deployments
        assert clients[ORIGIN].calls == []

        assert db.get_launch(created_event.launch_id).target_chain_ids == frozenset(TARGETS)
        assert [s.chain_id for s in db.list_curve_states(created_event.launch_id)] == sorted(ALL_CHAINS)
        assert db.get_migration(created_event.launch_id).status == MigrationStatus.ACTIVE

    def test_redelivery_does_not_redeploy(self, created, created_event, clients):
        assert created.handle_event(created_event)
        for chain_id in TARGETS:
            assert len(deploy_calls(clients[chain_id])) == 1
        stats = created.get_stats()
        assert stats["launches_created"] == 1
        assert stats["deployments"] == len(TARGETS)

    def test_concurrent_deliveries_deploy_exactly_once(self, coordinator, created_event, clients):
        barrier = threading.Barrier(6)

        def deliver():
            barrier.wait()
            coordinator.handle_event(created_event)

        threads = [threading.Thread(target=deliver) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        for chain_id in TARGETS:
            assert len(deploy_calls(clients[chain_id])) == 1

    def test_unauthorized_caller_is_rejected_and_reported(self, make_coordinator, launch_id, db):
        notifier = Mock()
        coordinator = make_coordinator(notifier=notifier)

        assert not coordinator.handle_event(token_created(launch_id, caller=STRANGER))
        assert db.get_launch(launch_id) is None
        assert coordinator.get_stats()["unauthorized"] == 1
        notifier.notify_unauthorized.assert_called_once_with(STRANGER, "TokenCreated", ORIGIN)

    @pytest.mark.parametrize("overrides", [
        {"name": "   "},
        {"symbol": ""},
        {"creator": ZERO_ADDRESS},
        {"creator_fee_bps": 5_000},
        {"target_chain_ids": (0,)},
        {"launch_id": "0x1234"},
    ])
    def test_invalid_creations_are_rejected(self, coordinator, launch_id, db, overrides):
        fields = dict(overrides)
        event = token_created(fields.pop("launch_id", launch_id), **fields)
        assert not coordinator.handle_event(event)
        assert coordinator.get_stats()["rejected"] == 1
        assert db.list_launches() == []

    def test_unsupported_event_is_rejected(self, coordinator):
        assert not coordinator.handle_event(object())


class TestTrades:

    def test_purchase_syncs_the_unified_price(self, created, launch_id, clients, db):
        result = created.on_trade(purchase(launch_id, seq=1))

        origin = db.get_curve_state(launch_id, ORIGIN)
        assert origin.total_supply == result.tokens_out
        assert origin.last_update_seq == 1

        price, total_supply = created.unified_price(launch_id)
        states = db.list_curve_states(launch_id)
        assert price == sum(s.virtual_eth for s in states) * WAD // sum(s.virtual_tokens for s in states)
        assert total_supply == result.tokens_out

        for chain_id in TARGETS:
            assert clients[chain_id].prices[launch_id] == (1, price, total_supply)
            assert created.sync_ledger.get(launch_id, chain_id).last_applied_seq == 1
        assert "sync_price" not in [c[0] for c in clients[ORIGIN].calls]

    def test_trade_on_a_target_syncs_the_others(self, created, launch_id, clients):
        created.on_trade(purchase(launch_id, seq=1, chain_id=TARGETS[0]))
        assert launch_id not in clients[TARGETS[0]].prices
        assert launch_id in clients[TARGETS[1]].prices
        assert created.sync_ledger.get(launch_id, ORIGIN).last_applied_seq == 1

    def test_sync_sequence_grows_per_launch(self, created, launch_id, clients):
        created.on_trade(purchase(launch_id, seq=1))
        bought = created.on_trade(purchase(launch_id, seq=2))
        created.on_trade(sale(launch_id, seq=3, tokens_in=bought.tokens_out))
        assert clients[TARGETS[0]].prices[launch_id][0] == 3

    def test_duplicate_delivery_is_discarded(self, created, launch_id, db):
        event = purchase(launch_id, seq=1)
        assert created.handle_event(event)
        supply = db.get_curve_state(launch_id, ORIGIN).total_supply

        assert not created.handle_event(event)
        assert db.get_curve_state(launch_id, ORIGIN).total_supply == supply
        assert created.get_stats()["stale_events"] == 1
        with pytest.raises(StaleSequence):
            created.on_trade(event)

    def test_trade_for_unknown_launch(self, coordinator, launch_id):
        with pytest.raises(ValidationError):
            coordinator.on_trade(purchase(launch_id, seq=1))

    def test_trade_on_a_foreign_chain(self, created, launch_id):
        with pytest.raises(ValidationError):
            created.on_trade(purchase(launch_id, seq=1, chain_id=1))

    def test_slippage_rejection_leaves_state_alone(self, created, launch_id, db):
        before = db.get_curve_state(launch_id, ORIGIN)
        event = purchase(launch_id, seq=1, eth_in=WAD, max_slippage_bps=100)
        assert not created.handle_event(event)
        assert db.get_curve_state(launch_id, ORIGIN) == before

    def test_sequences_past_the_signed_range(self, created, launch_id, db):
        assert created.handle_event(purchase(launch_id, seq=2 ** 63))
        assert db.get_curve_state(launch_id, ORIGIN).last_update_seq == 2 ** 63
        with pytest.raises(StaleSequence):
            created.on_trade(purchase(launch_id, seq=2 ** 63 - 1))

        assert not created.handle_event(purchase(launch_id, seq=2 ** 64))
        assert created.get_stats()["rejected"] == 1
        assert db.get_curve_state(launch_id, ORIGIN).last_update_seq == 2 ** 63

    def test_paused_curve_rejects_trades(self, created, launch_id, db):
        pause = CurvePauseChanged(launch_id, paused=True, seq=1, chain_id=ORIGIN, caller=RELAY)
        assert created.handle_event(pause)
        assert db.get_curve_state(launch_id, ORIGIN).paused

        with pytest.raises(CurvePaused):
            created.on_trade(purchase(launch_id, seq=2))
        # Other chains keep trading
        created.on_trade(purchase(launch_id, seq=1, chain_id=TARGETS[0]))

        resume = CurvePauseChanged(launch_id, paused=False, seq=3, chain_id=ORIGIN, caller=RELAY)
        assert created.handle_event(resume)
        created.on_trade(purchase(launch_id, seq=4))


class TestInboundSync:

    def test_newer_seq_applies_and_stale_is_dropped(self, created, launch_id):
        chain_id = TARGETS[0]
        assert created.apply_price_sync(RELAY, launch_id, chain_id, 100, 10, seq=7)
        assert not created.apply_price_sync(RELAY, launch_id, chain_id, 50, 5, seq=5)

        cursor = created.sync_ledger.get(launch_id, chain_id)
        assert cursor.last_applied_seq == 7
        assert cursor.last_price == 100

    def test_unauthorized_sync(self, created, launch_id):
        with pytest.raises(UnauthorizedCaller):
            created.apply_price_sync(STRANGER, launch_id, TARGETS[0], 100, 10, seq=1)


class TestDeadLetters:

    def test_failed_sync_is_dead_lettered_and_redispatched(self, make_coordinator, allow_list,
                                                            clients, created_event, launch_id, db):
        flaky = FlakyChainClient(TARGETS[1], allow_list, down=False)
        clients[TARGETS[1]] = flaky
        coordinator = make_coordinator(clients=clients)
        coordinator.handle_event(created_event)

        flaky.down = True
        assert coordinator.handle_event(purchase(launch_id, seq=1))
        assert launch_id in clients[TARGETS[0]].prices

        [entry] = db.list_dead_letters()
        assert entry["kind"] == "sync"
        assert entry["chain_id"] == TARGETS[1]
        assert entry["attempts"] == 3
        assert entry["payload"]["seq"] == 1

        flaky.down = False
        assert coordinator.redispatch(entry["id"])
        assert flaky.prices[launch_id][0] == 1
        assert db.list_dead_letters() == []

        with pytest.raises(StateError):
            coordinator.redispatch(entry["id"])

    def test_failed_deploy_sticks_until_redispatch(self, make_coordinator, allow_list,
                                                   clients, created_event, launch_id, db):
        flaky = FlakyChainClient(TARGETS[1], allow_list, down=True)
        clients[TARGETS[1]] = flaky
        coordinator = make_coordinator(clients=clients)

        results = coordinator.on_token_created(created_event)
        assert results[TARGETS[1]] is None
        assert results[TARGETS[0]].status == DeploymentStatus.DEPLOYED
        assert db.get_deployment(launch_id, TARGETS[1]).status == DeploymentStatus.FAILED
        [entry] = db.list_dead_letters()
        assert entry["kind"] == "deploy"

        # Redelivery neither retries the failed leg nor syncs to it
        coordinator.handle_event(created_event)
        coordinator.on_trade(purchase(launch_id, seq=1))
        assert flaky.attempts == 3

        flaky.down = False
        record = coordinator.redispatch(entry["id"])
        assert record.status == DeploymentStatus.DEPLOYED
        assert launch_id in flaky.deployments
        assert db.get_dead_letter(entry["id"])["resolved"]

    def test_unexpected_deploy_error_is_dead_lettered(self, coordinator, created_event, launch_id,
                                                      clients, db):
        with patch.object(clients[TARGETS[1]], "deploy_token", side_effect=ValueError("nonce too low")):
            results = coordinator.on_token_created(created_event)
        assert results[TARGETS[1]] is None
        assert db.get_deployment(launch_id, TARGETS[1]).status == DeploymentStatus.FAILED
        [entry] = db.list_dead_letters()
        assert entry["kind"] == "deploy"
        assert "nonce too low" in entry["error"]

        assert coordinator.redispatch(entry["id"]).status == DeploymentStatus.DEPLOYED
        assert launch_id in clients[TARGETS[1]].deployments

    def test_abandoned_deploy_claim_recovers_on_redelivery(self, coordinator, created_event,
                                                           launch_id, clients, db):
        # A claim whose outcome was never recorded
        db.claim_deployment(DeploymentRecord(
            launch_id, TARGETS[0], deployment_salt(launch_id, TARGETS[0]), claimed_at=1_700_000_000
        ))

        results = coordinator.on_token_created(created_event)
        assert results[TARGETS[0]].status == DeploymentStatus.DEPLOYED
        assert len(deploy_calls(clients[TARGETS[0]])) == 1
        assert db.list_dead_letters() == []

    def test_unknown_dead_letter(self, coordinator):
        with pytest.raises(ValidationError):
            coordinator.redispatch(42)


class TestMigration:

    def test_filling_buy_migrates_once_on_its_chain(self, make_coordinator, fast_config,
                                                    created_event, launch_id, clients, db):
        coordinator = make_coordinator(config=fast_config)
        coordinator.handle_event(created_event)

        assert coordinator.handle_event(purchase(launch_id, seq=1, eth_in=100 * WAD))

        assert db.get_curve_state(launch_id, ORIGIN).total_supply == CURVE_SUPPLY
        record = db.get_migration(launch_id)
        assert record.status == MigrationStatus.MIGRATED
        assert record.chain_id == ORIGIN
        assert record.pair_address == clients[ORIGIN].migrated[launch_id]
        for chain_id in TARGETS:
            assert launch_id not in clients[chain_id].migrated

        # Every chain stops trading once the launch has migrated
        assert coordinator.handle_event(purchase(launch_id, seq=2))
        assert coordinator.handle_event(purchase(launch_id, seq=1, chain_id=TARGETS[0]))
        assert db.get_curve_state(launch_id, TARGETS[0]).total_supply == 0
        stats = coordinator.get_stats()
        assert stats["migrations"] == 1
        assert stats["state_collisions"] == 2

        with pytest.raises(AlreadyMigrated):
            coordinator.retry_migration(launch_id)

    def test_failed_dex_call_is_retried_later(self, make_coordinator, fast_config, allow_list,
                                              clients, created_event, launch_id, db):
        flaky = FlakyChainClient(ORIGIN, allow_list, down=True)
        clients[ORIGIN] = flaky
        coordinator = make_coordinator(config=fast_config, clients=clients)
        coordinator.handle_event(created_event)

        assert coordinator.handle_event(purchase(launch_id, seq=1, eth_in=100 * WAD))
        assert db.get_migration(launch_id).status == MigrationStatus.MIGRATION_TRIGGERED
        assert flaky.attempts == 3
        [entry] = db.list_dead_letters()
        assert entry["kind"] == "migrate"

        flaky.down = False
        redelivered = CurveMigrationTriggered(launch_id, chain_id=ORIGIN, caller=RELAY)
        assert coordinator.handle_event(redelivered)
        assert db.get_migration(launch_id).status == MigrationStatus.MIGRATED

        # The dead letter resolves without another DEX call
        assert coordinator.redispatch(entry["id"]).status == MigrationStatus.MIGRATED
        assert flaky.attempts == 4

    def test_failed_save_does_not_trigger_the_migration(self, make_coordinator, fast_config,
                                                        created_event, launch_id, clients, db):
        coordinator = make_coordinator(config=fast_config)
        coordinator.handle_event(created_event)
        filling = purchase(launch_id, seq=1, eth_in=100 * WAD)

        with patch.object(db, "save_curve_state", side_effect=sqlite3.OperationalError("disk I/O error")):
            with pytest.raises(sqlite3.OperationalError):
                coordinator.on_trade(filling)
        assert coordinator._machine(launch_id).status == MigrationStatus.ACTIVE
        assert db.get_migration(launch_id).status == MigrationStatus.ACTIVE
        assert launch_id not in clients[ORIGIN].migrated

        assert coordinator.handle_event(filling)
        assert db.get_migration(launch_id).status == MigrationStatus.MIGRATED

    def test_migration_of_an_active_launch(self, created, launch_id):
        with pytest.raises(StateError):
            created.retry_migration(launch_id)


class TestRun:

    def test_consumes_events_from_sources(self, coordinator, created_event, launch_id, clients):
        source = QueueEventSource(ORIGIN)
        source.publish(created_event)
        source.publish(purchase(launch_id, seq=1))

        coordinator.run([source])
        assert wait_for(lambda: coordinator.get_stats()["events_processed"] == 2)
        coordinator.stop(timeout=2)

        stats = coordinator.get_stats()
        assert stats["launches"] == 1
        assert stats["trades"] == 1
        assert stats["open_dead_letters"] == 0
        assert launch_id in clients[TARGETS[0]].prices

    def test_unified_price_matches_engine(self, created, launch_id, db):
        created.on_trade(purchase(launch_id, seq=1))
        assert created.unified_price(launch_id) == price_engine.unified_price(
            db.list_curve_states(launch_id)
        )

    def test_worker_survives_unexpected_client_errors(self, make_coordinator, allow_list, clients,
                                                      created_event, launch_id, db):
        clients[TARGETS[0]] = BrokenChainClient(TARGETS[0], allow_list)
        coordinator = make_coordinator(clients=clients)
        source = QueueEventSource(ORIGIN)
        for event in (created_event, purchase(launch_id, seq=1), purchase(launch_id, seq=2)):
            source.publish(event)

        [worker] = coordinator.run([source])
        assert wait_for(lambda: coordinator.get_stats()["events_processed"] == 3)
        assert worker.is_alive()

        stats = coordinator.get_stats()
        assert stats["trades"] == 2
        entries = db.list_dead_letters()
        assert [e["kind"] for e in entries] == ["sync", "sync"]
        assert "insufficient funds" in entries[0]["error"]
        # The healthy target still received both syncs
        assert clients[TARGETS[1]].prices[launch_id][0] == 2

    def test_unexpected_handler_error_does_not_stop_the_worker(self, coordinator, created_event,
                                                                launch_id):
        source = QueueEventSource(ORIGIN)
        source.publish(created_event)
        source.publish(purchase(launch_id, seq=1))
        coordinator._handlers[type(created_event)] = Mock(side_effect=RuntimeError("boom"))

        coordinator.run([source])
        assert wait_for(lambda: coordinator.get_stats()["unexpected_errors"] == 1)
        assert wait_for(lambda: coordinator.get_stats()["rejected"] == 1)
        assert all(w.is_alive() for w in coordinator._workers)
