#!/usr/bin/env python3
"""
Launch Database Module for Multichain Launchpad Sync
Persists launches, curve states, migrations, deployments, sync cursors and
dead-lettered fan-out legs

u128 quantities and u64 sequence numbers are stored as TEXT, which SQLite
INTEGER (signed 64-bit) cannot hold in full.

Version: 1.0.0
"""

import json
import logging
import sqlite3
import threading
import time

from .constants import DB_FILE
from .models import (
    CurveState, DeploymentRecord, DeploymentStatus, Launch,
    MigrationRecord, MigrationStatus, SyncCursor
)
from .utils import check_u64

logger = logging.getLogger(__name__)


def seq_text(seq):
    """u64 sequence as fixed-width text; string order matches numeric order"""
    return format(check_u64(seq), "020d")


class LaunchDatabase:
    """SQLite store shared by all coordinator workers"""

    def __init__(self, db_path=DB_FILE):
        self.db_path = db_path
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row  # Enable column access by name
        self.create_tables()

    def create_tables(self):
        """Create database tables"""
        with self._lock:
            self.conn.execute('''
                CREATE TABLE IF NOT EXISTS launches (
                    launch_id TEXT PRIMARY KEY,
                    creator TEXT NOT NULL,
                    name TEXT NOT NULL,
                    symbol TEXT NOT NULL,
                    origin_chain_id INTEGER NOT NULL,
                    target_chain_ids TEXT NOT NULL,   -- JSON list
                    origin_token TEXT NOT NULL DEFAULT '',
                    created_at INTEGER NOT NULL,
                    sync_seq INTEGER NOT NULL DEFAULT 0
                )
            ''')

            self.conn.execute('''
                CREATE TABLE IF NOT EXISTS curve_states (
                    launch_id TEXT NOT NULL,
                    chain_id INTEGER NOT NULL,
                    virtual_eth TEXT NOT NULL,
                    virtual_tokens TEXT NOT NULL,
                    total_supply TEXT NOT NULL,
                    creator_fee_bps INTEGER NOT NULL,
                    last_update_seq TEXT NOT NULL DEFAULT '00000000000000000000',  -- u64, zero padded
                    paused BOOLEAN NOT NULL DEFAULT 0,
                    updated_at REAL,
                    PRIMARY KEY (launch_id, chain_id)
                )
            ''')

            self.conn.execute('''
                CREATE TABLE IF NOT EXISTS migrations (
                    launch_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    chain_id INTEGER,
                    final_price TEXT NOT NULL DEFAULT '0',
                    liquidity_eth TEXT NOT NULL DEFAULT '0',
                    liquidity_tokens TEXT NOT NULL DEFAULT '0',
                    pair_address TEXT NOT NULL DEFAULT '',
                    migrated_at INTEGER
                )
            ''')

            self.conn.execute('''
                CREATE TABLE IF NOT EXISTS deployments (
                    launch_id TEXT NOT NULL,
                    chain_id INTEGER NOT NULL,
                    salt TEXT NOT NULL,
                    status TEXT NOT NULL,
                    token_address TEXT NOT NULL DEFAULT '',
                    curve_address TEXT NOT NULL DEFAULT '',
                    deployed_at INTEGER,
                    error TEXT NOT NULL DEFAULT '',
                    claimed_at INTEGER,
                    PRIMARY KEY (launch_id, chain_id)
                )
            ''')

            # Databases from before claim timestamps
            try:
                self.conn.execute('ALTER TABLE deployments ADD COLUMN claimed_at INTEGER')
            except sqlite3.OperationalError:
                pass  # column exists

            self.conn.execute('''
                CREATE TABLE IF NOT EXISTS sync_cursors (
                    launch_id TEXT NOT NULL,
                    chain_id INTEGER NOT NULL,
                    last_applied_seq TEXT NOT NULL DEFAULT '00000000000000000000',  -- u64, zero padded
                    last_applied_timestamp INTEGER,
                    last_price TEXT NOT NULL DEFAULT '0',
                    last_total_supply TEXT NOT NULL DEFAULT '0',
                    PRIMARY KEY (launch_id, chain_id)
                )
            ''')

            # Fan-out legs that exhausted their retries
            self.conn.execute('''
                CREATE TABLE IF NOT EXISTS dead_letters (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at REAL NOT NULL,
                    kind TEXT NOT NULL,          -- deploy, sync, migrate
                    launch_id TEXT NOT NULL,
                    chain_id INTEGER NOT NULL,
                    payload TEXT NOT NULL,       -- JSON
                    error TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    resolved BOOLEAN NOT NULL DEFAULT 0,
                    resolved_at REAL
                )
            ''')

            self.conn.commit()

    # ═══════════════════════════════════════════════════════════════════
    # LAUNCHES
    # ═══════════════════════════════════════════════════════════════════

    def insert_launch(self, launch):
        """Insert a launch if absent. Returns True when a row was created."""
        with self._lock:
            cursor = self.conn.execute('''
                INSERT OR IGNORE INTO launches
                    (launch_id, creator, name, symbol, origin_chain_id, target_chain_ids, origin_token, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                launch.launch_id,
                launch.creator,
                launch.name,
                launch.symbol,
                launch.origin_chain_id,
                json.dumps(sorted(launch.target_chain_ids)),
                launch.origin_token,
                launch.created_at
            ))
            self.conn.commit()
            return cursor.rowcount == 1

    def get_launch(self, launch_id):
        with self._lock:
            row = self.conn.execute(
                'SELECT * FROM launches WHERE launch_id = ?', (launch_id,)
            ).fetchone()
        return self._row_to_launch(row) if row else None

    def list_launches(self):
        with self._lock:
            rows = self.conn.execute('SELECT * FROM launches ORDER BY created_at').fetchall()
        return [self._row_to_launch(row) for row in rows]

    def next_sync_seq(self, launch_id):
        """Allocate the next price-sync sequence number of a launch"""
        with self._lock:
            self.conn.execute(
                'UPDATE launches SET sync_seq = sync_seq + 1 WHERE launch_id = ?', (launch_id,)
            )
            row = self.conn.execute(
                'SELECT sync_seq FROM launches WHERE launch_id = ?', (launch_id,)
            ).fetchone()
            self.conn.commit()
        if row is None:
            raise KeyError(launch_id)
        return row['sync_seq']

    def _row_to_launch(self, row):
        data = dict(row)
        data['target_chain_ids'] = json.loads(row['target_chain_ids'])
        return Launch.from_dict(data)

    # ═══════════════════════════════════════════════════════════════════
    # CURVE STATES
    # ═══════════════════════════════════════════════════════════════════

    def save_curve_state(self, state):
        with self._lock:
            self.conn.execute('''
                INSERT OR REPLACE INTO curve_states
                    (launch_id, chain_id, virtual_eth, virtual_tokens, total_supply,
                     creator_fee_bps, last_update_seq, paused, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                state.launch_id,
                state.chain_id,
                str(state.virtual_eth),
                str(state.virtual_tokens),
                str(state.total_supply),
                state.creator_fee_bps,
                seq_text(state.last_update_seq),
                int(state.paused),
                time.time()
            ))
            self.conn.commit()

    def insert_curve_state(self, state):
        """Insert a curve state only if none exists for its key"""
        with self._lock:
            cursor = self.conn.execute('''
                INSERT OR IGNORE INTO curve_states
                    (launch_id, chain_id, virtual_eth, virtual_tokens, total_supply,
                     creator_fee_bps, last_update_seq, paused, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                state.launch_id,
                state.chain_id,
                str(state.virtual_eth),
                str(state.virtual_tokens),
                str(state.total_supply),
                state.creator_fee_bps,
                seq_text(state.last_update_seq),
                int(state.paused),
                time.time()
            ))
            self.conn.commit()
            return cursor.rowcount == 1

    def get_curve_state(self, launch_id, chain_id):
        with self._lock:
            row = self.conn.execute('''
                SELECT * FROM curve_states WHERE launch_id = ? AND chain_id = ?
            ''', (launch_id, chain_id)).fetchone()
        return self._row_to_curve_state(row) if row else None

    def list_curve_states(self, launch_id):
        with self._lock:
            rows = self.conn.execute('''
                SELECT * FROM curve_states WHERE launch_id = ? ORDER BY chain_id
            ''', (launch_id,)).fetchall()
        return [self._row_to_curve_state(row) for row in rows]

    def _row_to_curve_state(self, row):
        return CurveState(
            launch_id=row['launch_id'],
            chain_id=row['chain_id'],
            virtual_eth=int(row['virtual_eth']),
            virtual_tokens=int(row['virtual_tokens']),
            total_supply=int(row['total_supply']),
            creator_fee_bps=row['creator_fee_bps'],
            last_update_seq=int(row['last_update_seq']),
            paused=bool(row['paused'])
        )

    # ═══════════════════════════════════════════════════════════════════
    # MIGRATIONS
    # ═══════════════════════════════════════════════════════════════════

    def save_migration(self, record):
        """Persist a migration record. A MIGRATED row is never overwritten."""
        with self._lock:
            self.conn.execute('''
                INSERT INTO migrations
                    (launch_id, status, chain_id, final_price, liquidity_eth,
                     liquidity_tokens, pair_address, migrated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(launch_id) DO UPDATE SET
                    status = excluded.status,
                    chain_id = excluded.chain_id,
                    final_price = excluded.final_price,
                    liquidity_eth = excluded.liquidity_eth,
                    liquidity_tokens = excluded.liquidity_tokens,
                    pair_address = excluded.pair_address,
                    migrated_at = excluded.migrated_at
                WHERE migrations.status != ?
            ''', (
                record.launch_id,
                record.status.value,
                record.chain_id,
                str(record.final_price),
                str(record.liquidity_eth),
                str(record.liquidity_tokens),
                record.pair_address,
                record.migrated_at,
                MigrationStatus.MIGRATED.value
            ))
            self.conn.commit()

    def get_migration(self, launch_id):
        with self._lock:
            row = self.conn.execute(
                'SELECT * FROM migrations WHERE launch_id = ?', (launch_id,)
            ).fetchone()
        if row is None:
            return None
        return MigrationRecord(
            launch_id=row['launch_id'],
            status=MigrationStatus(row['status']),
            chain_id=row['chain_id'],
            final_price=int(row['final_price']),
            liquidity_eth=int(row['liquidity_eth']),
            liquidity_tokens=int(row['liquidity_tokens']),
            pair_address=row['pair_address'],
            migrated_at=row['migrated_at']
        )

    # ═══════════════════════════════════════════════════════════════════
    # DEPLOYMENTS
    # ═══════════════════════════════════════════════════════════════════

    def claim_deployment(self, record):
        """Compare-and-set claim of a deployment key. True when this caller won."""
        with self._lock:
            cursor = self.conn.execute('''
                INSERT OR IGNORE INTO deployments
                    (launch_id, chain_id, salt, status, token_address, curve_address, deployed_at, error, claimed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ''', (
                record.launch_id,
                record.chain_id,
                record.salt,
                record.status.value,
                record.token_address,
                record.curve_address,
                record.deployed_at,
                record.error,
                record.claimed_at
            ))
            self.conn.commit()
            return cursor.rowcount == 1

    def insert_deployments(self, records):
        """Bulk insert with per-key idempotency. Returns the number of new rows."""
        inserted = 0
        with self._lock:
            for record in records:
                cursor = self.conn.execute('''
                    INSERT OR IGNORE INTO deployments
                        (launch_id, chain_id, salt, status, token_address, curve_address, deployed_at, error, claimed_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''', (
                    record.launch_id,
                    record.chain_id,
                    record.salt,
                    record.status.value,
                    record.token_address,
                    record.curve_address,
                    record.deployed_at,
                    record.error,
                    record.claimed_at
                ))
                inserted += cursor.rowcount
            self.conn.commit()
        return inserted

    def update_deployment(self, record):
        with self._lock:
            self.conn.execute('''
                UPDATE deployments
                SET status = ?, token_address = ?, curve_address = ?, deployed_at = ?, error = ?
                WHERE launch_id = ? AND chain_id = ?
            ''', (
                record.status.value,
                record.token_address,
                record.curve_address,
                record.deployed_at,
                record.error,
                record.launch_id,
                record.chain_id
            ))
            self.conn.commit()

    def rearm_failed_deployment(self, launch_id, chain_id, now=None):
        """Move a FAILED deployment back to PENDING. True when the row was failed."""
        with self._lock:
            cursor = self.conn.execute('''
                UPDATE deployments SET status = ?, error = '', claimed_at = ?
                WHERE launch_id = ? AND chain_id = ? AND status = ?
            ''', (
                DeploymentStatus.PENDING.value, now, launch_id, chain_id, DeploymentStatus.FAILED.value
            ))
            self.conn.commit()
            return cursor.rowcount == 1

    def rearm_stale_deployment(self, launch_id, chain_id, claimed_before, now):
        """Re-claim a PENDING deployment whose claim is older than claimed_before.

        Covers a claimer that stopped between claiming and recording the
        outcome. True when this caller took the claim over.
        """
        with self._lock:
            cursor = self.conn.execute('''
                UPDATE deployments SET claimed_at = ?, error = ''
                WHERE launch_id = ? AND chain_id = ? AND status = ?
                  AND (claimed_at IS NULL OR claimed_at < ?)
            ''', (
                now, launch_id, chain_id, DeploymentStatus.PENDING.value, claimed_before
            ))
            self.conn.commit()
            return cursor.rowcount == 1

    def get_deployment(self, launch_id, chain_id):
        with self._lock:
            row = self.conn.execute('''
                SELECT * FROM deployments WHERE launch_id = ? AND chain_id = ?
            ''', (launch_id, chain_id)).fetchone()
        return self._row_to_deployment(row) if row else None

    def find_deployment_by_curve(self, chain_id, curve_address):
        with self._lock:
            row = self.conn.execute('''
                SELECT * FROM deployments WHERE chain_id = ? AND lower(curve_address) = lower(?)
            ''', (chain_id, curve_address)).fetchone()
        return self._row_to_deployment(row) if row else None

    def list_deployments(self, launch_id=None):
        query = 'SELECT * FROM deployments'
        params = []
        if launch_id:
            query += ' WHERE launch_id = ?'
            params.append(launch_id)
        query += ' ORDER BY launch_id, chain_id'
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_deployment(row) for row in rows]

    def _row_to_deployment(self, row):
        return DeploymentRecord(
            launch_id=row['launch_id'],
            chain_id=row['chain_id'],
            salt=row['salt'],
            status=DeploymentStatus(row['status']),
            token_address=row['token_address'],
            curve_address=row['curve_address'],
            deployed_at=row['deployed_at'],
            error=row['error'],
            claimed_at=row['claimed_at']
        )

    # ═══════════════════════════════════════════════════════════════════
    # SYNC CURSORS
    # ═══════════════════════════════════════════════════════════════════

    def advance_sync_cursor(self, launch_id, chain_id, seq, price=0, total_supply=0, timestamp=None):
        """Move the cursor forward only if seq is newer. True when it moved."""
        seq_value = seq_text(seq)
        timestamp = int(timestamp if timestamp is not None else time.time())
        with self._lock:
            self.conn.execute('''
                INSERT OR IGNORE INTO sync_cursors (launch_id, chain_id, last_applied_seq)
                VALUES (?, ?, ?)
            ''', (launch_id, chain_id, seq_text(0)))
            cursor = self.conn.execute('''
                UPDATE sync_cursors
                SET last_applied_seq = ?, last_applied_timestamp = ?, last_price = ?, last_total_supply = ?
                WHERE launch_id = ? AND chain_id = ? AND last_applied_seq < ?
            ''', (seq_value, timestamp, str(price), str(total_supply), launch_id, chain_id, seq_value))
            self.conn.commit()
            return cursor.rowcount == 1

    def get_sync_cursor(self, launch_id, chain_id):
        with self._lock:
            row = self.conn.execute('''
                SELECT * FROM sync_cursors WHERE launch_id = ? AND chain_id = ?
            ''', (launch_id, chain_id)).fetchone()
        if row is None:
            return SyncCursor(launch_id=launch_id, chain_id=chain_id)
        return SyncCursor(
            launch_id=row['launch_id'],
            chain_id=row['chain_id'],
            last_applied_seq=int(row['last_applied_seq']),
            last_applied_timestamp=row['last_applied_timestamp'],
            last_price=int(row['last_price']),
            last_total_supply=int(row['last_total_supply'])
        )

    # ═══════════════════════════════════════════════════════════════════
    # DEAD LETTERS
    # ═══════════════════════════════════════════════════════════════════

    def record_dead_letter(self, kind, launch_id, chain_id, payload, error, attempts=0):
        with self._lock:
            cursor = self.conn.execute('''
                INSERT INTO dead_letters (created_at, kind, launch_id, chain_id, payload, error, attempts)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            ''', (time.time(), kind, launch_id, chain_id, json.dumps(payload), str(error), attempts))
            self.conn.commit()
            return cursor.lastrowid

    def get_dead_letter(self, dead_letter_id):
        with self._lock:
            row = self.conn.execute(
                'SELECT * FROM dead_letters WHERE id = ?', (dead_letter_id,)
            ).fetchone()
        return self._row_to_dead_letter(row) if row else None

    def list_dead_letters(self, include_resolved=False):
        query = 'SELECT * FROM dead_letters'
        if not include_resolved:
            query += ' WHERE resolved = 0'
        query += ' ORDER BY id'
        with self._lock:
            rows = self.conn.execute(query).fetchall()
        return [self._row_to_dead_letter(row) for row in rows]

    def resolve_dead_letter(self, dead_letter_id):
        with self._lock:
            self.conn.execute('''
                UPDATE dead_letters SET resolved = 1, resolved_at = ? WHERE id = ?
            ''', (time.time(), dead_letter_id))
            self.conn.commit()

    def _row_to_dead_letter(self, row):
        entry = dict(row)
        entry['payload'] = json.loads(entry['payload'])
        entry['resolved'] = bool(entry['resolved'])
        return entry

    def close(self):
        """Close database connection"""
        with self._lock:
            self.conn.close()
