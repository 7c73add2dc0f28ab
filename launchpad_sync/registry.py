#!/usr/bin/env python3
"""
Registry Module for Multichain Launchpad Sync
Idempotent keyed stores over the launch database

    LaunchRegistry      launch_id -> Launch
    DeploymentRegistry  (launch_id, chain_id) -> DeploymentRecord, at most one per key
    SyncLedger          (launch_id, chain_id) -> SyncCursor high-water mark

Version: 1.0.0
"""

import logging
import time

from .errors import AlreadyDeployed, StateError
from .models import DeploymentRecord, DeploymentStatus
from .utils import KeyedLocks, deployment_salt

logger = logging.getLogger(__name__)


class LaunchRegistry:
    """Launches keyed by their content-derived id"""

    def __init__(self, db):
        self.db = db

    def register(self, launch):
        """Store a launch once. Returns (stored_launch, created)."""
        created = self.db.insert_launch(launch)
        if not created:
            logger.debug("Launch %s already registered", launch.launch_id)
        return self.db.get_launch(launch.launch_id), created

    def get(self, launch_id):
        return self.db.get_launch(launch_id)

    def all(self):
        return self.db.list_launches()


class DeploymentRegistry:
    """At-most-one deployment per (launch_id, chain_id), even under duplicate triggers"""

    def __init__(self, db, clock=time.time, pending_timeout=None):
        self.db = db
        self._locks = KeyedLocks()
        self._clock = clock
        # Seconds after which a PENDING claim counts as abandoned; None keeps it forever
        self.pending_timeout = pending_timeout

    def get(self, launch_id, chain_id):
        return self.db.get_deployment(launch_id, chain_id)

    def list_for_launch(self, launch_id):
        return self.db.list_deployments(launch_id)

    def find_by_curve(self, chain_id, curve_address):
        return self.db.find_deployment_by_curve(chain_id, curve_address)

    def try_deploy(self, launch_id, chain_id, deploy_fn):
        """Deploy a launch to a chain unless a record already exists.

        deploy_fn(salt) performs the chain call and returns a DeploymentResult.
        An existing DEPLOYED record, or a PENDING one still within
        pending_timeout, is returned unchanged and deploy_fn is not called.
        A PENDING claim older than that was abandoned mid-call and is taken
        over; the destination deploy is idempotent by salt. A failure marks
        the record FAILED and re-raises; only redispatch() re-arms it.
        """
        key = (launch_id, chain_id)
        with self._locks(key):
            salt = deployment_salt(launch_id, chain_id)
            now = int(self._clock())
            claim = DeploymentRecord(launch_id=launch_id, chain_id=chain_id, salt=salt, claimed_at=now)
            if not self.db.claim_deployment(claim):
                if self._take_over_stale(launch_id, chain_id, now):
                    return self._dispatch(self.db.get_deployment(launch_id, chain_id), deploy_fn)
                existing = self.db.get_deployment(launch_id, chain_id)
                logger.debug(
                    "Deployment of %s on chain %s already %s",
                    launch_id, chain_id, existing.status.value
                )
                return existing
            return self._dispatch(claim, deploy_fn)

    def redispatch(self, launch_id, chain_id, deploy_fn):
        """Manually re-run a FAILED or abandoned PENDING deployment"""
        key = (launch_id, chain_id)
        with self._locks(key):
            now = int(self._clock())
            rearmed = (self.db.rearm_failed_deployment(launch_id, chain_id, now)
                       or self._take_over_stale(launch_id, chain_id, now))
            if not rearmed:
                existing = self.db.get_deployment(launch_id, chain_id)
                if existing is None:
                    raise StateError(f"No deployment of {launch_id} on chain {chain_id} to redispatch")
                return existing
            claim = self.db.get_deployment(launch_id, chain_id)
            return self._dispatch(claim, deploy_fn)

    def _take_over_stale(self, launch_id, chain_id, now):
        if self.pending_timeout is None:
            return False
        taken = self.db.rearm_stale_deployment(launch_id, chain_id, now - self.pending_timeout, now)
        if taken:
            logger.warning(
                "Deployment of %s on chain %s was left pending; claiming it again", launch_id, chain_id
            )
        return taken

    def _dispatch(self, claim, deploy_fn):
        try:
            result = deploy_fn(claim.salt)
        except AlreadyDeployed as e:
            # Destination already holds the token; adopt its addresses
            record = DeploymentRecord(
                launch_id=claim.launch_id,
                chain_id=claim.chain_id,
                salt=claim.salt,
                status=DeploymentStatus.DEPLOYED,
                token_address=e.token_address or "",
                curve_address=e.curve_address or "",
                deployed_at=int(self._clock()),
                claimed_at=claim.claimed_at,
            )
            self.db.update_deployment(record)
            return record
        except Exception as e:
            failed = DeploymentRecord(
                launch_id=claim.launch_id,
                chain_id=claim.chain_id,
                salt=claim.salt,
                status=DeploymentStatus.FAILED,
                error=str(e),
                claimed_at=claim.claimed_at,
            )
            self.db.update_deployment(failed)
            raise

        record = DeploymentRecord(
            launch_id=claim.launch_id,
            chain_id=claim.chain_id,
            salt=claim.salt,
            status=DeploymentStatus.DEPLOYED,
            token_address=result.token_address,
            curve_address=result.curve_address,
            deployed_at=int(self._clock()),
            claimed_at=claim.claimed_at,
        )
        self.db.update_deployment(record)
        logger.info(
            "Deployed %s on chain %s: token %s, curve %s",
            claim.launch_id, claim.chain_id, record.token_address, record.curve_address
        )
        return record

    def batch_register(self, entries):
        """Bulk pre-load known chain/curve pairs.

        entries: iterable of DeploymentRecord, or dicts with launch_id,
        chain_id, token_address and curve_address. Keys that already exist
        are left untouched. Returns the number of records inserted.
        """
        records = []
        for entry in entries:
            if isinstance(entry, DeploymentRecord):
                records.append(entry)
                continue
            launch_id = entry["launch_id"]
            chain_id = int(entry["chain_id"])
            records.append(DeploymentRecord(
                launch_id=launch_id,
                chain_id=chain_id,
                salt=entry.get("salt") or deployment_salt(launch_id, chain_id),
                status=DeploymentStatus.DEPLOYED,
                token_address=entry.get("token_address", ""),
                curve_address=entry.get("curve_address", ""),
                deployed_at=entry.get("deployed_at") or int(self._clock()),
            ))
        inserted = self.db.insert_deployments(records)
        logger.info("Batch registered %d of %d deployments", inserted, len(records))
        return inserted


class SyncLedger:
    """Sequence gate for price syncs: apply only strictly newer updates"""

    def __init__(self, db, clock=time.time):
        self.db = db
        self._clock = clock

    def get(self, launch_id, chain_id):
        return self.db.get_sync_cursor(launch_id, chain_id)

    def is_fresh(self, launch_id, chain_id, seq):
        return seq > self.db.get_sync_cursor(launch_id, chain_id).last_applied_seq

    def try_advance(self, launch_id, chain_id, seq, price=0, total_supply=0):
        """Record seq as applied. Returns False, changing nothing, for stale or duplicate seq."""
        advanced = self.db.advance_sync_cursor(
            launch_id, chain_id, seq, price, total_supply, int(self._clock())
        )
        if not advanced:
            logger.debug("Dropped stale sync seq %s for %s on chain %s", seq, launch_id, chain_id)
        return advanced
