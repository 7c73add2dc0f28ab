#!/usr/bin/env python3
"""
Cross-Chain Coordinator Module for Multichain Launchpad Sync
Keeps every launch consistent across its chains over an unreliable,
unordered, at-least-once event transport

    TokenCreated      register launch, init curves, deploy to every target chain
    TokenPurchase     apply on the local curve, then migrate or sync the unified price
    TokenSale         same as a purchase; sells never trigger migration
    CurveMigrationTriggered  retry the DEX migration of a triggered launch
    CurvePauseChanged pause or resume one chain-local curve

Each (launch_id, chain_id) curve has a single writer. Fan-out legs run
concurrently; a leg that exhausts its retries is dead-lettered and the
others carry on.

Version: 1.0.0
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed

from . import price_engine
from .blockchain import AllowList, ChainClientMigrator, RetryPolicy, call_with_retry
from .constants import (
    BPS, DEFAULT_CREATOR_FEE_BPS, DEFAULT_PLATFORM_FEE_BPS, INITIAL_VIRTUAL_ETH,
    INITIAL_VIRTUAL_TOKENS, MAX_CREATOR_FEE_BPS, ZERO_ADDRESS
)
from .errors import (
    AlreadyMigrated, AuthorizationError, ConsistencyError, CurveArithmeticError,
    LaunchpadError, MigrationInProgress, NetworkError, SlippageExceeded, StaleSequence,
    StateError, ValidationError
)
from .migration import MigrationStateMachine
from .models import (
    CurveMigrationTriggered, CurvePauseChanged, CurveState, DeploymentStatus, Launch,
    MigrationRecord, MigrationStatus, TokenCreated, TokenPurchase, TokenSale
)
from .notifications import NotificationManager
from .registry import DeploymentRegistry, LaunchRegistry, SyncLedger
from .utils import (
    KeyedLocks, chain_name, check_u64, is_zero_address, launch_id_bytes, normalize_address,
    short_id
)

logger = logging.getLogger(__name__)


class CrossChainCoordinator:
    """Consumes launch events from every chain and drives the fan-out calls"""

    def __init__(self, config, db, clients, allow_list=None, notifier=None,
                 retry_policy=None, executor=None, clock=time.time):
        self.config = config
        self.db = db
        self.clients = dict(clients)
        self.allow_list = allow_list or AllowList(
            config.get("admin_identities", []), config.get("allowed_callers", [])
        )
        self.notifier = notifier or NotificationManager(config)
        self.retry_policy = retry_policy or RetryPolicy.from_config(config)
        self._clock = clock

        fees = config.get("fees", {})
        self.platform_fee_bps = int(fees.get("platform_fee_bps", DEFAULT_PLATFORM_FEE_BPS))
        self.default_creator_fee_bps = int(fees.get("default_creator_fee_bps", DEFAULT_CREATOR_FEE_BPS))
        self.max_creator_fee_bps = int(fees.get("max_creator_fee_bps", MAX_CREATOR_FEE_BPS))

        curve = config.get("curve", {})
        self.initial_virtual_eth = int(curve.get("initial_virtual_eth", INITIAL_VIRTUAL_ETH))
        self.initial_virtual_tokens = int(curve.get("initial_virtual_tokens", INITIAL_VIRTUAL_TOKENS))
        self.max_slippage_bps = config.get("trading", {}).get("max_slippage_bps")

        # Identity the destination allow-lists expect on our outbound calls
        self.relay_identity = config.get("relay_identity") or ZERO_ADDRESS

        self.launches = LaunchRegistry(db)
        # A deployment claim outliving a full retry run was abandoned by its claimer
        self.deployments = DeploymentRegistry(db, clock, pending_timeout=self.retry_policy.budget)
        self.sync_ledger = SyncLedger(db, clock)

        self._curve_locks = KeyedLocks()
        self._launch_locks = KeyedLocks()
        self._machines = {}
        self._machines_lock = threading.Lock()

        max_workers = int(config.get("coordinator", {}).get("max_workers", 8))
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="fanout")
        # Separate pool bounds each chain call, so a busy fan-out pool cannot starve it
        self._call_executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="chaincall")

        self._handlers = {
            TokenCreated: self.on_token_created,
            TokenPurchase: self.on_trade,
            TokenSale: self.on_trade,
            CurveMigrationTriggered: self.on_migration_triggered,
            CurvePauseChanged: self.on_pause_changed,
        }

        self.stats = {
            "events_received": 0,
            "events_processed": 0,
            "launches_created": 0,
            "deployments": 0,
            "trades": 0,
            "syncs_sent": 0,
            "syncs_stale": 0,
            "migrations": 0,
            "dead_letters": 0,
            "unauthorized": 0,
            "rejected": 0,
            "state_collisions": 0,
            "stale_events": 0,
            "arithmetic_errors": 0,
            "network_errors": 0,
            "unexpected_errors": 0,
        }
        self._stats_lock = threading.Lock()

        self._stop_event = threading.Event()
        self._workers = []
        self._sources = []

    # ═══════════════════════════════════════════════════════════════════
    # EVENT ENTRY POINT
    # ═══════════════════════════════════════════════════════════════════

    def handle_event(self, event):
        """Process one delivered event. Returns True when it was applied or was a harmless no-op."""
        name = type(event).__name__
        launch_id = getattr(event, "launch_id", "")
        self._bump("events_received")
        handler = self._handlers.get(type(event))
        try:
            if handler is None:
                raise ValidationError(f"Unsupported event type {name}")
            handler(event)
        except AuthorizationError as e:
            logger.warning(
                "Rejected %s from %s on %s: %s", name, event.caller, chain_name(event.chain_id), e
            )
            self._bump("unauthorized")
            self.notifier.notify_unauthorized(event.caller, name, event.chain_id)
            return False
        except ConsistencyError as e:
            logger.debug("Discarded %s: %s", name, e)
            self._bump("stale_events")
            return False
        except StateError as e:
            logger.info("%s for %s was a no-op: %s", name, short_id(launch_id), e)
            self._bump("state_collisions")
            return True
        except (ValidationError, SlippageExceeded) as e:
            logger.info("Rejected %s for %s: %s", name, short_id(launch_id), e)
            self._bump("rejected")
            return False
        except CurveArithmeticError as e:
            logger.error("Arithmetic failure on %s for %s: %s", name, launch_id, e)
            self._bump("arithmetic_errors")
            return False
        except NetworkError as e:
            logger.error("Network failure on %s for %s: %s", name, short_id(launch_id), e)
            self._bump("network_errors")
            return False

        self._bump("events_processed")
        return True

    def _authorize(self, event):
        self.allow_list.require(event.caller)

    # ═══════════════════════════════════════════════════════════════════
    # CREATION FAN-OUT
    # ═══════════════════════════════════════════════════════════════════

    def on_token_created(self, event):
        """Register the launch and deploy it to each target chain.

        Returns {chain_id: DeploymentRecord or None}; None marks a
        dead-lettered leg.
        """
        self._authorize(event)
        launch, creator_fee_bps = self._validate_creation(event)

        with self._launch_locks(launch.launch_id):
            stored, created = self.launches.register(launch)
            for chain_id in sorted(stored.all_chain_ids):
                self.db.insert_curve_state(CurveState.initial(
                    stored.launch_id, chain_id, creator_fee_bps,
                    self.initial_virtual_eth, self.initial_virtual_tokens
                ))
            if self.db.get_migration(stored.launch_id) is None:
                self.db.save_migration(MigrationRecord(launch_id=stored.launch_id))

        if created:
            self._bump("launches_created")
            logger.info(
                "Launch %s (%s) created on %s, targets: %s",
                short_id(stored.launch_id), stored.symbol, chain_name(stored.origin_chain_id),
                ", ".join(chain_name(c) for c in sorted(stored.target_chain_ids)) or "none"
            )

        targets = sorted(stored.target_chain_ids - {stored.origin_chain_id})
        return self._fan_out({
            chain_id: (lambda c=chain_id: self._deploy_leg(stored, c)) for chain_id in targets
        })

    def _validate_creation(self, event):
        launch_id_bytes(event.launch_id)
        if not event.name or not event.name.strip():
            raise ValidationError("token name must not be empty")
        if not event.symbol or not event.symbol.strip():
            raise ValidationError("token symbol must not be empty")
        if is_zero_address(event.creator):
            raise ValidationError("creator must not be the zero address")
        creator = normalize_address(event.creator, "creator")
        if event.origin_chain_id <= 0:
            raise ValidationError(f"invalid origin chain id {event.origin_chain_id}")
        targets = set()
        for chain_id in event.target_chain_ids:
            if int(chain_id) <= 0:
                raise ValidationError(f"invalid target chain id {chain_id}")
            targets.add(int(chain_id))

        creator_fee_bps = event.creator_fee_bps
        if creator_fee_bps is None:
            creator_fee_bps = self.default_creator_fee_bps
        if creator_fee_bps < 0 or creator_fee_bps > self.max_creator_fee_bps:
            raise ValidationError(
                f"creator fee {creator_fee_bps} bps outside 0-{self.max_creator_fee_bps}"
            )
        if creator_fee_bps + self.platform_fee_bps >= BPS:
            raise ValidationError("combined fees must stay below 100%")

        origin_token = ""
        if not is_zero_address(event.origin_token):
            origin_token = normalize_address(event.origin_token, "origin token")

        launch = Launch(
            launch_id=event.launch_id,
            creator=creator,
            name=event.name.strip(),
            symbol=event.symbol.strip(),
            origin_chain_id=int(event.origin_chain_id),
            target_chain_ids=frozenset(targets),
            origin_token=origin_token,
            created_at=int(self._clock()),
        )
        return launch, creator_fee_bps

    def _deploy(self, launch, chain_id, redispatch=False):
        def deploy_fn(salt):
            client = self._client(chain_id)
            return call_with_retry(
                lambda: client.deploy_token(
                    self.relay_identity, launch.launch_id, launch.name, launch.symbol,
                    launch.creator, launch.origin_token, launch.origin_chain_id, salt
                ),
                self.retry_policy,
                f"deploy {short_id(launch.launch_id)} on {chain_name(chain_id)}",
                executor=self._call_executor if self.retry_policy.timeout else None,
            )

        existing = self.deployments.get(launch.launch_id, chain_id)
        if redispatch and existing is not None:
            record = self.deployments.redispatch(launch.launch_id, chain_id, deploy_fn)
        else:
            record = self.deployments.try_deploy(launch.launch_id, chain_id, deploy_fn)
        if record.status == DeploymentStatus.DEPLOYED and (
                existing is None or existing.status != DeploymentStatus.DEPLOYED):
            self._bump("deployments")
        return record

    def _deploy_leg(self, launch, chain_id):
        try:
            return self._deploy(launch, chain_id)
        except LaunchpadError as e:
            self._dead_letter("deploy", launch.launch_id, chain_id, {}, e)
            return None
        except Exception as e:
            logger.exception("Deploy of %s on %s raised", short_id(launch.launch_id), chain_name(chain_id))
            self._dead_letter("deploy", launch.launch_id, chain_id, {}, e)
            return None

    # ═══════════════════════════════════════════════════════════════════
    # TRADES AND PRICE PROPAGATION
    # ═══════════════════════════════════════════════════════════════════

    def on_trade(self, event):
        """Apply a purchase or sale on its chain-local curve, then propagate.

        Duplicate or out-of-order deliveries (seq not above the curve's
        last_update_seq) raise StaleSequence without touching state.
        """
        self._authorize(event)
        launch = self._require_launch(event.launch_id)
        chain_id = event.chain_id
        if chain_id not in launch.all_chain_ids:
            raise ValidationError(f"Launch {short_id(launch.launch_id)} has no curve on chain {chain_id}")
        check_u64(event.seq)
        machine = self._machine(launch.launch_id)
        def persist(result, triggered_record):
            self.db.save_curve_state(result.state.evolve(last_update_seq=event.seq))
            if triggered_record is not None:
                self.db.save_migration(triggered_record)

        with self._curve_locks((launch.launch_id, chain_id)):
            # Checks
            state = self.db.get_curve_state(launch.launch_id, chain_id)
            if state is None:
                raise ValidationError(f"No curve state for {short_id(launch.launch_id)} on chain {chain_id}")
            if event.seq <= state.last_update_seq:
                raise StaleSequence(event.seq, state.last_update_seq)

            # Effects, persisted before the lifecycle moves
            if isinstance(event, TokenPurchase):
                result = machine.buy(
                    state, event.eth_in, event.min_tokens_out, self._slippage(event), persist
                )
            else:
                result = machine.sell(
                    state, event.tokens_in, event.min_eth_out, self._slippage(event), persist
                )
            triggered = isinstance(event, TokenPurchase) and result.migration_triggered
            self._bump("trades")
            if triggered:
                logger.info(
                    "Curve of %s filled on %s; trading stopped on all chains",
                    short_id(launch.launch_id), chain_name(chain_id)
                )

            # Interactions
            if triggered:
                self._migration_leg(machine)
            else:
                self._propagate_price(launch, chain_id)
        return result

    def _slippage(self, event):
        if event.max_slippage_bps is not None:
            return event.max_slippage_bps
        return self.max_slippage_bps

    def _propagate_price(self, launch, source_chain_id):
        with self._launch_locks(launch.launch_id):
            price, total_supply = self.unified_price(launch.launch_id)
            seq = self.db.next_sync_seq(launch.launch_id)

        targets = [
            c for c in sorted(launch.all_chain_ids - {source_chain_id})
            if self._is_live(launch, c)
        ]
        logger.debug(
            "Unified price of %s is %s (seq %d), syncing %d chain(s)",
            short_id(launch.launch_id), price, seq, len(targets)
        )
        return self._fan_out({
            chain_id: (lambda c=chain_id: self._sync_leg(launch.launch_id, c, price, total_supply, seq))
            for chain_id in targets
        })

    def _is_live(self, launch, chain_id):
        """Origin curves always exist; target curves only once deployed"""
        if chain_id == launch.origin_chain_id:
            return True
        record = self.deployments.get(launch.launch_id, chain_id)
        return record is not None and record.status == DeploymentStatus.DEPLOYED

    def _sync(self, launch_id, chain_id, price, total_supply, seq):
        """Push one price sync. Returns False when seq was already superseded."""
        if not self.sync_ledger.is_fresh(launch_id, chain_id, seq):
            self._bump("syncs_stale")
            return False
        client = self._client(chain_id)
        call_with_retry(
            lambda: client.sync_price(self.relay_identity, launch_id, price, total_supply, seq),
            self.retry_policy,
            f"sync {short_id(launch_id)} seq {seq} on {chain_name(chain_id)}",
            executor=self._call_executor if self.retry_policy.timeout else None,
        )
        applied = self.sync_ledger.try_advance(launch_id, chain_id, seq, price, total_supply)
        if applied:
            self._bump("syncs_sent")
        else:
            self._bump("syncs_stale")
        return applied

    def _sync_leg(self, launch_id, chain_id, price, total_supply, seq):
        try:
            return self._sync(launch_id, chain_id, price, total_supply, seq)
        except LaunchpadError as e:
            payload = {"price": str(price), "total_supply": str(total_supply), "seq": seq}
            self._dead_letter("sync", launch_id, chain_id, payload, e)
            return False
        except Exception as e:
            logger.exception("Sync of %s on %s raised", short_id(launch_id), chain_name(chain_id))
            payload = {"price": str(price), "total_supply": str(total_supply), "seq": seq}
            self._dead_letter("sync", launch_id, chain_id, payload, e)
            return False

    def apply_price_sync(self, caller, launch_id, chain_id, price, total_supply, seq):
        """Inbound syncPrice callback.

        Returns True when applied. A stale or duplicate seq returns False
        and changes nothing; it is not an error.
        """
        self.allow_list.require(caller)
        self._require_launch(launch_id)
        check_u64(seq)
        if price < 0 or total_supply < 0:
            raise ValidationError("price and total supply must not be negative")
        applied = self.sync_ledger.try_advance(launch_id, chain_id, seq, price, total_supply)
        if not applied:
            self._bump("syncs_stale")
        return applied

    def unified_price(self, launch_id):
        """(price, total_supply) over all chain-local curves of a launch"""
        return price_engine.unified_price(self.db.list_curve_states(launch_id))

    # ═══════════════════════════════════════════════════════════════════
    # MIGRATION
    # ═══════════════════════════════════════════════════════════════════

    def on_migration_triggered(self, event):
        """Redelivery of a migration trigger retries the DEX call only"""
        self._authorize(event)
        return self.retry_migration(event.launch_id)

    def retry_migration(self, launch_id):
        self._require_launch(launch_id)
        machine = self._machine(launch_id)
        if machine.status == MigrationStatus.MIGRATED:
            raise AlreadyMigrated(launch_id)
        if machine.status == MigrationStatus.ACTIVE:
            raise StateError(f"Migration of {launch_id} has not been triggered")
        return self._migration_leg(machine)

    def _migrate(self, machine):
        migrator = ChainClientMigrator(self.clients, self.relay_identity)
        record = call_with_retry(
            lambda: machine.complete(migrator),
            self.retry_policy,
            f"migrate {short_id(machine.launch_id)} to DEX",
        )
        self.db.save_migration(record)
        self._bump("migrations")
        self.notifier.notify_migration(record)
        return record

    def _migration_leg(self, machine):
        try:
            return self._migrate(machine)
        except MigrationInProgress as e:
            logger.info("%s", e)
            return None
        except NetworkError as e:
            payload = {"liquidity_eth": str(machine.record.liquidity_eth)}
            self._dead_letter("migrate", machine.launch_id, machine.record.chain_id, payload, e)
            return None
        except Exception as e:
            logger.exception("DEX migration of %s raised", short_id(machine.launch_id))
            payload = {"liquidity_eth": str(machine.record.liquidity_eth)}
            self._dead_letter("migrate", machine.launch_id, machine.record.chain_id, payload, e)
            return None

    def _machine(self, launch_id):
        with self._machines_lock:
            machine = self._machines.get(launch_id)
            if machine is None:
                record = self.db.get_migration(launch_id) or MigrationRecord(launch_id=launch_id)
                machine = MigrationStateMachine(record, self.platform_fee_bps, clock=self._clock)
                self._machines[launch_id] = machine
            return machine

    # ═══════════════════════════════════════════════════════════════════
    # PAUSE
    # ═══════════════════════════════════════════════════════════════════

    def on_pause_changed(self, event):
        self._authorize(event)
        self._require_launch(event.launch_id)
        check_u64(event.seq)
        machine = self._machine(event.launch_id)
        with self._curve_locks((event.launch_id, event.chain_id)):
            state = self.db.get_curve_state(event.launch_id, event.chain_id)
            if state is None:
                raise ValidationError(f"No curve state for {short_id(event.launch_id)} on chain {event.chain_id}")
            if event.seq <= state.last_update_seq:
                raise StaleSequence(event.seq, state.last_update_seq)
            state = machine.pause(state) if event.paused else machine.unpause(state)
            state = state.evolve(last_update_seq=event.seq)
            self.db.save_curve_state(state)
        logger.info(
            "Curve of %s on %s %s",
            short_id(event.launch_id), chain_name(event.chain_id), "paused" if event.paused else "resumed"
        )
        return state

    # ═══════════════════════════════════════════════════════════════════
    # DEAD LETTERS
    # ═══════════════════════════════════════════════════════════════════

    def _dead_letter(self, kind, launch_id, chain_id, payload, error):
        attempts = getattr(error, "attempts", 1)
        dead_letter_id = self.db.record_dead_letter(kind, launch_id, chain_id, payload, error, attempts)
        logger.error(
            "%s leg of %s on %s dead-lettered after %d attempt(s): %s",
            kind.title(), short_id(launch_id), chain_name(chain_id), attempts, error
        )
        self._bump("dead_letters")
        self.notifier.notify_dead_letter(kind, launch_id, chain_id, error, attempts, dead_letter_id)
        return dead_letter_id

    def redispatch(self, dead_letter_id):
        """Manually re-run a dead-lettered leg. Errors propagate; success resolves the entry."""
        entry = self.db.get_dead_letter(dead_letter_id)
        if entry is None:
            raise ValidationError(f"No dead letter with id {dead_letter_id}")
        if entry["resolved"]:
            raise StateError(f"Dead letter {dead_letter_id} is already resolved")

        launch = self._require_launch(entry["launch_id"])
        chain_id = entry["chain_id"]
        kind = entry["kind"]
        logger.info("Redispatching %s leg of %s on %s", kind, short_id(launch.launch_id), chain_name(chain_id))

        if kind == "deploy":
            record = self._deploy(launch, chain_id, redispatch=True)
            if record.status != DeploymentStatus.DEPLOYED:
                raise StateError(f"Deployment is {record.status.value}, not deployed")
            result = record
        elif kind == "sync":
            payload = entry["payload"]
            result = self._sync(
                launch.launch_id, chain_id, int(payload["price"]),
                int(payload["total_supply"]), int(payload["seq"])
            )
        elif kind == "migrate":
            machine = self._machine(launch.launch_id)
            if machine.status == MigrationStatus.MIGRATED:
                result = machine.record
            else:
                result = self._migrate(machine)
        else:
            raise ValidationError(f"Unknown dead letter kind {kind}")

        self.db.resolve_dead_letter(dead_letter_id)
        return result

    # ═══════════════════════════════════════════════════════════════════
    # HELPERS
    # ═══════════════════════════════════════════════════════════════════

    def _fan_out(self, legs):
        """Run {chain_id: callable} concurrently and collect {chain_id: result}"""
        if not legs:
            return {}
        futures = {self._executor.submit(fn): chain_id for chain_id, fn in legs.items()}
        results = {}
        for fut in as_completed(futures):
            results[futures[fut]] = fut.result()
        return results

    def _client(self, chain_id):
        client = self.clients.get(chain_id)
        if client is None:
            raise ValidationError(f"No chain client configured for {chain_name(chain_id)}")
        return client

    def _require_launch(self, launch_id):
        launch = self.launches.get(launch_id)
        if launch is None:
            raise ValidationError(f"Unknown launch {launch_id}")
        return launch

    def _bump(self, key, amount=1):
        with self._stats_lock:
            self.stats[key] = self.stats.get(key, 0) + amount

    def get_stats(self):
        with self._stats_lock:
            stats = dict(self.stats)
        stats["open_dead_letters"] = len(self.db.list_dead_letters())
        stats["launches"] = len(self.launches.all())
        return stats

    # ═══════════════════════════════════════════════════════════════════
    # WORKERS
    # ═══════════════════════════════════════════════════════════════════

    def run(self, sources, stop_event=None):
        """Start one consumer thread per event source and return immediately"""
        if stop_event is not None:
            self._stop_event = stop_event
        poll_interval = float(self.config.get("coordinator", {}).get("poll_interval", 5))
        for source in sources:
            worker = threading.Thread(
                target=self._consume,
                args=(source, poll_interval),
                name=f"events-{source.chain_id}",
                daemon=True
            )
            worker.start()
            self._workers.append(worker)
            self._sources.append(source)
        logger.info("Coordinator running with %d event source(s)", len(self._workers))
        return self._workers

    def _consume(self, source, poll_interval):
        name = chain_name(source.chain_id)
        while not self._stop_event.is_set():
            try:
                events = source.poll(timeout=poll_interval)
            except Exception as e:
                logger.warning("Polling %s failed: %s", name, e)
                self._stop_event.wait(poll_interval)
                continue
            for event in events:
                if self._stop_event.is_set():
                    break
                try:
                    self.handle_event(event)
                except Exception:
                    logger.exception("Unexpected error handling %s from %s", type(event).__name__, name)
                    self._bump("unexpected_errors")

    def wait(self, timeout=None):
        for worker in self._workers:
            worker.join(timeout)

    def stop(self, timeout=10):
        """Signal workers, join them and release the pools"""
        self._stop_event.set()
        self.wait(timeout)
        for source in self._sources:
            source.close()
        self._workers = []
        self._sources = []
        if self._owns_executor:
            self._executor.shutdown(wait=True)
        self._call_executor.shutdown(wait=True)
        logger.info("Coordinator stopped")
