#!/usr/bin/env python3
"""
Blockchain Interaction Module for Multichain Launchpad Sync
Destination-chain collaborators: deploy, price sync and DEX migration calls

    ChainClient          interface the coordinator fans out to
    Web3ChainClient      adapter over the destination contracts
    SimulatedChainClient in-memory destination with the same callback rules
    LiquidityMigrator    migration collaborator of the state machine
    AllowList            caller-identity check for inbound callbacks

Every call carries the caller identity explicitly. Transport failures surface
as NetworkError, the only error call_with_retry retries.

Version: 1.0.0
"""

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass

import requests
from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted

from .constants import (
    DESTINATION_DEPLOYER_ABI, DESTINATION_MIGRATOR_ABI, DESTINATION_PRICE_SYNC_ABI, ZERO_ADDRESS
)
from .errors import (
    AlreadyDeployed, AlreadyMigrated, ChainTimeout, NetworkError,
    UnauthorizedCaller, ValidationError
)
from .models import DeploymentResult, MigrationResult
from .utils import chain_name, launch_id_bytes, normalize_address

logger = logging.getLogger(__name__)


class ChainClient(ABC):
    """Calls into one destination chain"""

    chain_id = 0

    @abstractmethod
    def deploy_token(self, caller, launch_id, name, symbol, creator, origin_token,
                     origin_chain_id, salt):
        """Deploy token + curve; returns DeploymentResult, raises AlreadyDeployed"""

    @abstractmethod
    def sync_price(self, caller, launch_id, new_price, total_supply, seq):
        """Push the unified price; the destination drops stale seq silently"""

    @abstractmethod
    def migrate_to_dex(self, caller, launch_id):
        """Move curve liquidity to a DEX pool; returns MigrationResult, raises AlreadyMigrated"""


class LiquidityMigrator(ABC):
    """Performs the external DEX migration of a launch"""

    @abstractmethod
    def migrate(self, launch_id, chain_id, liquidity_eth, liquidity_tokens):
        """Returns a MigrationResult"""


class ChainClientMigrator(LiquidityMigrator):
    """Routes migrations to migrate_to_dex on the chain where they were triggered"""

    def __init__(self, clients, caller):
        self.clients = clients
        self.caller = caller

    def migrate(self, launch_id, chain_id, liquidity_eth, liquidity_tokens):
        client = self.clients.get(chain_id)
        if client is None:
            return MigrationResult(success=False, error=f"no client for chain {chain_id}")
        logger.info(
            "Migrating %s on %s with %s wei and %s tokens",
            launch_id, chain_name(chain_id), liquidity_eth, liquidity_tokens
        )
        return client.migrate_to_dex(self.caller, launch_id)


class AllowList:
    """Caller identities allowed to drive callbacks; managed by admins only"""

    def __init__(self, admins=(), allowed=()):
        self._lock = threading.Lock()
        self._admins = {normalize_address(a, "admin") for a in admins}
        self._allowed = {normalize_address(a, "caller") for a in allowed}

    def authorize(self, admin, caller, allowed=True):
        if not self.is_admin(admin):
            raise UnauthorizedCaller(admin)
        caller = normalize_address(caller, "caller")
        with self._lock:
            if allowed:
                self._allowed.add(caller)
            else:
                self._allowed.discard(caller)
        logger.info("Caller %s %s by %s", caller, "allowed" if allowed else "revoked", admin)

    def is_admin(self, identity):
        try:
            identity = normalize_address(identity)
        except ValidationError:
            return False
        return identity in self._admins

    def is_allowed(self, caller):
        try:
            caller = normalize_address(caller)
        except ValidationError:
            return False
        with self._lock:
            return caller in self._allowed

    def require(self, caller):
        if not self.is_allowed(caller):
            raise UnauthorizedCaller(caller)

    def __len__(self):
        with self._lock:
            return len(self._allowed)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.4
    timeout: float = 30.0

    @classmethod
    def from_config(cls, config):
        retry = config.get("retry", {})
        return cls(
            max_attempts=int(retry.get("max_attempts", 3)),
            base_delay=float(retry.get("base_delay", 0.4)),
            timeout=float(retry.get("timeout", 30)),
        )

    @property
    def budget(self):
        """Longest a call_with_retry run can take, in seconds"""
        delays = sum(self.base_delay * (2 ** attempt) for attempt in range(self.max_attempts - 1))
        return self.max_attempts * self.timeout + delays


def call_with_retry(fn, policy, description="chain call", executor=None, sleep=time.sleep):
    """Run fn, retrying NetworkError with exponential backoff.

    With an executor the call is bounded by policy.timeout and a timeout
    counts as a ChainTimeout. The last NetworkError is re-raised with an
    `attempts` attribute once the policy is exhausted.
    """
    last_exc = None
    for attempt in range(policy.max_attempts):
        try:
            if executor is not None and policy.timeout:
                future = executor.submit(fn)
                try:
                    return future.result(timeout=policy.timeout)
                except FuturesTimeout:
                    future.cancel()
                    raise ChainTimeout(f"{description} timed out after {policy.timeout}s")
            return fn()
        except NetworkError as e:
            last_exc = e
            if attempt + 1 < policy.max_attempts:
                delay = policy.base_delay * (2 ** attempt)
                logger.warning(
                    "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                    description, attempt + 1, policy.max_attempts, e, delay
                )
                sleep(delay)
    last_exc.attempts = policy.max_attempts
    raise last_exc


# JSON-RPC "limit exceeded" and HTTP Too Many Requests
RATE_LIMIT_CODES = (-32005, 429)


def is_rate_limited(error):
    response = getattr(error, "response", None)
    if response is not None and getattr(response, "status_code", None) == 429:
        return True
    payload = error.args[0] if error.args else None
    if isinstance(payload, dict) and payload.get("code") in RATE_LIMIT_CODES:
        return True
    message = str(error).lower()
    return "rate limit" in message or "too many requests" in message


class Web3ChainClient(ChainClient):
    """Destination contracts on one EVM chain, called from the relay account"""

    def __init__(self, chain_config, timeout=30, rpm_limit=90, w3=None, rate_limit_backoff=5.0):
        self.chain_id = int(chain_config["chain_id"])
        self.name = chain_config.get("name") or chain_name(self.chain_id)
        self.timeout = timeout
        self.rate_limit_backoff = rate_limit_backoff

        # Connect to blockchain
        self.w3 = w3 or Web3(Web3.HTTPProvider(
            chain_config["rpc_url"], request_kwargs={"timeout": timeout}
        ))

        self.deployer = self._contract(chain_config.get("deployer"), DESTINATION_DEPLOYER_ABI)
        self.price_sync = self._contract(chain_config.get("price_sync"), DESTINATION_PRICE_SYNC_ABI)
        self.migrator = self._contract(chain_config.get("migrator"), DESTINATION_MIGRATOR_ABI)

        # Global RPC rate limiter (calls/minute)
        self._rpm_limit = rpm_limit
        self._rpc_call_times = deque()
        self._rpc_lock = threading.Lock()

    def _contract(self, address, abi):
        if not address:
            return None
        return self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    def _throttle_rpc(self):
        """Simple token-bucket-like limiter to keep under rpm limit."""
        if self._rpm_limit <= 0:
            return
        with self._rpc_lock:
            now = time.time()
            window = 60.0
            # drop old
            while self._rpc_call_times and (now - self._rpc_call_times[0]) > window:
                self._rpc_call_times.popleft()
            if len(self._rpc_call_times) >= self._rpm_limit:
                sleep_for = window - (now - self._rpc_call_times[0]) + 0.05
                if sleep_for > 0:
                    time.sleep(sleep_for)
            # record
            self._rpc_call_times.append(time.time())

    def _rl_call(self, fn, *args, **kwargs):
        """Throttled call. A rate-limit reply gets one backoff; a second one is a NetworkError."""
        for attempt in range(2):
            self._throttle_rpc()
            try:
                return fn(*args, **kwargs)
            except (ValueError, requests.exceptions.HTTPError) as e:
                if not is_rate_limited(e):
                    raise
                if attempt:
                    raise NetworkError(f"{self.name} is still rate limiting: {e}", self.chain_id) from e
                logger.debug("Rate limited on %s, waiting %.1fs", self.name, self.rate_limit_backoff)
                time.sleep(self.rate_limit_backoff)

    def _require(self, contract, role):
        if contract is None:
            raise ValidationError(f"No {role} contract configured for {self.name}")
        return contract

    def _send(self, fn, caller, launch_id):
        """Simulate, transact and wait for the receipt; returns the simulated return value"""
        tx = {"from": Web3.to_checksum_address(caller)}
        try:
            result = self._rl_call(fn.call, tx)
            tx_hash = self._rl_call(fn.transact, tx)
            receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.timeout)
        except ContractLogicError as e:
            raise self._map_revert(e, caller, launch_id) from e
        except TimeExhausted as e:
            raise ChainTimeout(f"{self.name}: receipt not received in {self.timeout}s", self.chain_id) from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(f"{self.name} unreachable: {e}", self.chain_id) from e

        if receipt.get("status") != 1:
            raise NetworkError(f"{self.name}: transaction {Web3.to_hex(tx_hash)} reverted", self.chain_id)
        return result

    def _map_revert(self, error, caller, launch_id):
        message = str(error)
        if "AlreadyDeployed" in message:
            return AlreadyDeployed(launch_id, self.chain_id)
        if "AlreadyMigrated" in message:
            return AlreadyMigrated(launch_id)
        if "Unauthorized" in message:
            return UnauthorizedCaller(caller)
        return ValidationError(f"{self.name} reverted: {message}")

    def deploy_token(self, caller, launch_id, name, symbol, creator, origin_token,
                     origin_chain_id, salt):
        deployer = self._require(self.deployer, "deployer")
        fn = deployer.functions.deployToken(
            launch_id_bytes(launch_id),
            name,
            symbol,
            Web3.to_checksum_address(creator),
            Web3.to_checksum_address(origin_token or ZERO_ADDRESS),
            int(origin_chain_id),
            launch_id_bytes(salt)
        )
        token_address, curve_address = self._send(fn, caller, launch_id)
        return DeploymentResult(token_address=token_address, curve_address=curve_address)

    def sync_price(self, caller, launch_id, new_price, total_supply, seq):
        price_sync = self._require(self.price_sync, "price sync")
        fn = price_sync.functions.syncPrice(
            launch_id_bytes(launch_id), int(new_price), int(total_supply), int(seq)
        )
        self._send(fn, caller, launch_id)
        return True

    def migrate_to_dex(self, caller, launch_id):
        migrator = self._require(self.migrator, "migrator")
        fn = migrator.functions.migrateToDEX(launch_id_bytes(launch_id))
        pair_address = self._send(fn, caller, launch_id)
        return MigrationResult(success=True, pair_address=pair_address)


class SimulatedChainClient(ChainClient):
    """In-memory destination chain honouring the callback contract.

    deploy is idempotent per launch (AlreadyDeployed), stale price syncs are
    dropped, migration is terminal (AlreadyMigrated), and every call checks
    the allow-list when one is given.
    """

    def __init__(self, chain_id, allow_list=None, name=None):
        self.chain_id = int(chain_id)
        self.name = name or chain_name(self.chain_id)
        self.allow_list = allow_list
        self._lock = threading.Lock()
        self.deployments = {}
        self.prices = {}
        self.migrated = {}
        self.calls = []

    def _check_caller(self, caller):
        if self.allow_list is not None:
            self.allow_list.require(caller)

    @staticmethod
    def _derive_address(seed):
        digest = Web3.keccak(text=seed).hex()
        return Web3.to_checksum_address("0x" + digest[-40:])

    def deploy_token(self, caller, launch_id, name, symbol, creator, origin_token,
                     origin_chain_id, salt):
        self._check_caller(caller)
        with self._lock:
            self.calls.append(("deploy_token", launch_id))
            existing = self.deployments.get(launch_id)
            if existing is not None:
                raise AlreadyDeployed(
                    launch_id, self.chain_id, existing.token_address, existing.curve_address
                )
            result = DeploymentResult(
                token_address=self._derive_address(f"{salt}:token"),
                curve_address=self._derive_address(f"{salt}:curve"),
            )
            self.deployments[launch_id] = result
            return result

    def sync_price(self, caller, launch_id, new_price, total_supply, seq):
        self._check_caller(caller)
        with self._lock:
            self.calls.append(("sync_price", launch_id, seq))
            last_seq = self.prices.get(launch_id, (0, 0, 0))[0]
            if seq <= last_seq:
                return False
            self.prices[launch_id] = (seq, new_price, total_supply)
            return True

    def migrate_to_dex(self, caller, launch_id):
        self._check_caller(caller)
        with self._lock:
            self.calls.append(("migrate_to_dex", launch_id))
            if launch_id in self.migrated:
                raise AlreadyMigrated(launch_id)
            pair_address = self._derive_address(f"{launch_id}:{self.chain_id}:pair")
            self.migrated[launch_id] = pair_address
            return MigrationResult(success=True, pair_address=pair_address)
