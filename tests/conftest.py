"""
Pytest configuration and shared fixtures for launchpad sync tests.

Provides an in-memory database, simulated destination chains that share one
allow-list, and a coordinator factory with zero-delay retries.
"""

import copy
import time

import pytest

from launchpad_sync.blockchain import AllowList, RetryPolicy, SimulatedChainClient
from launchpad_sync.constants import DEFAULT_CONFIG, WAD
from launchpad_sync.coordinator import CrossChainCoordinator
from launchpad_sync.database import LaunchDatabase
from launchpad_sync.errors import NetworkError
from launchpad_sync.models import CurveState, TokenCreated, TokenPurchase, TokenSale
from launchpad_sync.utils import compute_launch_id

ADMIN = "0x1111111111111111111111111111111111111111"
RELAY = "0x2222222222222222222222222222222222222222"
CREATOR = "0x3333333333333333333333333333333333333333"
STRANGER = "0x4444444444444444444444444444444444444444"
TRADER = "0x5555555555555555555555555555555555555555"

ORIGIN = 11155111
TARGETS = (84532, 421614)
ALL_CHAINS = (ORIGIN,) + TARGETS

# Reserves that let a 100 ETH buy fill the curve
FAST_VIRTUAL_ETH = 30 * WAD
FAST_VIRTUAL_TOKENS = 1_073_000_000 * WAD


class FlakyChainClient(SimulatedChainClient):
    """Simulated chain whose calls fail with NetworkError while `down` is set"""

    def __init__(self, chain_id, allow_list=None, down=True):
        super().__init__(chain_id, allow_list)
        self.down = down
        self.attempts = 0

    def _fail_if_down(self):
        self.attempts += 1
        if self.down:
            raise NetworkError(f"chain {self.chain_id} unreachable", self.chain_id)

    def deploy_token(self, *args, **kwargs):
        self._fail_if_down()
        return super().deploy_token(*args, **kwargs)

    def sync_price(self, *args, **kwargs):
        self._fail_if_down()
        return super().sync_price(*args, **kwargs)

    def migrate_to_dex(self, *args, **kwargs):
        self._fail_if_down()
        return super().migrate_to_dex(*args, **kwargs)


@pytest.fixture
def db():
    database = LaunchDatabase(":memory:")
    yield database
    database.close()


@pytest.fixture
def allow_list():
    return AllowList(admins=[ADMIN], allowed=[RELAY])


@pytest.fixture
def clients(allow_list):
    return {chain_id: SimulatedChainClient(chain_id, allow_list) for chain_id in ALL_CHAINS}


@pytest.fixture
def retry_policy():
    return RetryPolicy(max_attempts=3, base_delay=0, timeout=0)


@pytest.fixture
def config():
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    cfg["db_path"] = ":memory:"
    cfg["relay_identity"] = RELAY
    cfg["admin_identities"] = [ADMIN]
    cfg["allowed_callers"] = [RELAY]
    cfg["coordinator"]["poll_interval"] = 0.05
    return cfg


@pytest.fixture
def fast_config(config):
    """Curve reserves that migrate after roughly 88 ETH of buys"""
    config["curve"]["initial_virtual_eth"] = str(FAST_VIRTUAL_ETH)
    config["curve"]["initial_virtual_tokens"] = str(FAST_VIRTUAL_TOKENS)
    return config


@pytest.fixture
def make_coordinator(config, db, clients, allow_list, retry_policy):
    """Factory building coordinators that are stopped at teardown"""
    created = []

    def factory(**overrides):
        kwargs = {
            "config": config,
            "db": db,
            "clients": clients,
            "allow_list": allow_list,
            "retry_policy": retry_policy,
        }
        kwargs.update(overrides)
        coordinator = CrossChainCoordinator(**kwargs)
        created.append(coordinator)
        return coordinator

    yield factory
    for coordinator in created:
        coordinator.stop(timeout=2)


@pytest.fixture
def coordinator(make_coordinator):
    return make_coordinator()


@pytest.fixture
def launch_id():
    return compute_launch_id(CREATOR, 1, 1_700_000_000)


@pytest.fixture
def created_event(launch_id):
    return token_created(launch_id)


@pytest.fixture
def fresh_state(launch_id):
    return CurveState.initial(launch_id, ORIGIN, creator_fee_bps=100)


def token_created(launch_id, **overrides):
    fields = dict(
        launch_id=launch_id,
        name="Moon Cat",
        symbol="MCAT",
        creator=CREATOR,
        origin_chain_id=ORIGIN,
        target_chain_ids=TARGETS,
        chain_id=ORIGIN,
        caller=RELAY,
    )
    fields.update(overrides)
    return TokenCreated(**fields)


def purchase(launch_id, seq, eth_in=WAD // 100, chain_id=ORIGIN, **overrides):
    fields = dict(
        launch_id=launch_id, buyer=TRADER, eth_in=eth_in, seq=seq, chain_id=chain_id, caller=RELAY
    )
    fields.update(overrides)
    return TokenPurchase(**fields)


def sale(launch_id, seq, tokens_in, chain_id=ORIGIN, **overrides):
    fields = dict(
        launch_id=launch_id, seller=TRADER, tokens_in=tokens_in, seq=seq, chain_id=chain_id, caller=RELAY
    )
    fields.update(overrides)
    return TokenSale(**fields)


def wait_for(predicate, timeout=5.0, interval=0.01):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
