#!/usr/bin/env python3
"""
Migration State Machine Module for Multichain Launchpad Sync
Active -> MigrationTriggered -> Migrated lifecycle of one launch

The transition out of Active is driven only by a buy that fills the curve
supply. Trading stops at that instant; the external DEX migration runs
afterwards and may be retried until it succeeds, after which the record is
terminal.

Version: 1.0.0
"""

import logging
import threading
import time

from . import price_engine
from .constants import DEFAULT_PLATFORM_FEE_BPS, LIQUIDITY_SUPPLY
from .errors import AlreadyMigrated, CurveMigrated, MigrationInProgress, NetworkError, StateError
from .models import MigrationRecord, MigrationStatus

logger = logging.getLogger(__name__)


class MigrationStateMachine:
    """Gates trades on the migration status of a launch and drives the migration"""

    def __init__(self, record, platform_fee_bps=DEFAULT_PLATFORM_FEE_BPS, clock=time.time):
        self._record = record
        self.platform_fee_bps = platform_fee_bps
        self._clock = clock
        self._lock = threading.RLock()
        self._in_flight = False

    @classmethod
    def for_launch(cls, launch_id, **kwargs):
        return cls(MigrationRecord(launch_id=launch_id), **kwargs)

    @property
    def record(self):
        return self._record

    @property
    def status(self):
        return self._record.status

    @property
    def launch_id(self):
        return self._record.launch_id

    def ensure_tradeable(self, chain_id=None):
        if self._record.status != MigrationStatus.ACTIVE:
            raise CurveMigrated(self.launch_id, chain_id)

    def buy(self, state, eth_in, min_tokens_out=0, max_slippage_bps=None, persist=None):
        """Apply a buy on a chain-local curve; trigger migration when the supply fills.

        persist(result, triggered_record) is called before the lifecycle moves,
        with triggered_record None unless this buy fills the curve. If it
        raises, the machine keeps its previous record.
        """
        with self._lock:
            self.ensure_tradeable(state.chain_id)
            result = price_engine.apply_buy(
                state, eth_in, min_tokens_out, max_slippage_bps, self.platform_fee_bps
            )
            triggered = self._triggered_record(result.state) if result.migration_triggered else None
            if persist is not None:
                persist(result, triggered)
            if triggered is not None:
                self._record = triggered
                logger.info(
                    "Migration triggered for %s on chain %s at price %s",
                    self.launch_id, state.chain_id, triggered.final_price
                )
            return result

    def sell(self, state, tokens_in, min_eth_out=0, max_slippage_bps=None, persist=None):
        """Apply a sell. Sells never move the lifecycle."""
        with self._lock:
            self.ensure_tradeable(state.chain_id)
            result = price_engine.apply_sell(
                state, tokens_in, min_eth_out, max_slippage_bps, self.platform_fee_bps
            )
            if persist is not None:
                persist(result, None)
            return result

    def _triggered_record(self, state):
        return self._record.evolve(
            status=MigrationStatus.MIGRATION_TRIGGERED,
            chain_id=state.chain_id,
            final_price=price_engine.current_price(state),
            liquidity_eth=state.virtual_eth,
            liquidity_tokens=LIQUIDITY_SUPPLY,
        )

    def complete(self, migrator):
        """Run the external DEX migration once and mark the record terminal.

        A failed MigrationResult raises NetworkError and leaves the record in
        MIGRATION_TRIGGERED so only the DEX call is retried.
        """
        with self._lock:
            if self._record.status == MigrationStatus.MIGRATED:
                raise AlreadyMigrated(self.launch_id)
            if self._record.status == MigrationStatus.ACTIVE:
                raise StateError(f"Migration of {self.launch_id} has not been triggered")
            if self._in_flight:
                raise MigrationInProgress(f"Migration of {self.launch_id} is already running")
            self._in_flight = True
            record = self._record

        try:
            result = migrator.migrate(
                record.launch_id, record.chain_id, record.liquidity_eth, record.liquidity_tokens
            )
        except AlreadyMigrated:
            # Destination finished it on an earlier attempt whose reply was lost
            result = None
        finally:
            with self._lock:
                self._in_flight = False

        if result is not None and not result.success:
            raise NetworkError(
                f"DEX migration of {record.launch_id} failed: {result.error}", record.chain_id
            )

        with self._lock:
            self._record = self._record.evolve(
                status=MigrationStatus.MIGRATED,
                pair_address=result.pair_address if result is not None else self._record.pair_address,
                migrated_at=int(self._clock()),
            )
            logger.info("Launch %s migrated to DEX on chain %s", self.launch_id, record.chain_id)
            return self._record

    def pause(self, state):
        return state.evolve(paused=True)

    def unpause(self, state):
        return state.evolve(paused=False)
