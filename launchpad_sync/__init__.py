#!/usr/bin/env python3
"""
Multichain Launchpad Sync Package
Bonding-curve token launches kept consistent across several EVM chains

Package Structure:
├── __init__.py              # This file - package initialization
├── main.py                  # CLI entry point
├── config.py                # Configuration management
├── constants.py             # Supply/fee constants, defaults, ABIs
├── errors.py                # Error taxonomy
├── models.py                # Launch, curve, migration, deployment records and events
├── utils.py                 # Integer math, hashing, keyed locks, formatting
├── price_engine.py          # Bonding-curve math
├── migration.py             # Active -> MigrationTriggered -> Migrated
├── database.py              # SQLite persistence
├── registry.py              # Launch/deployment registries and the sync ledger
├── blockchain.py            # Destination chain clients, retry, allow-list
├── events.py                # Event sources
├── coordinator.py           # Cross-chain coordinator
├── notifications.py         # Operator alerts
└── display.py               # Rich status tables

Version: 1.0.0
"""

from .blockchain import (
    AllowList, ChainClient, ChainClientMigrator, LiquidityMigrator, RetryPolicy,
    SimulatedChainClient, Web3ChainClient, call_with_retry
)
from .config import load_config, save_config, update_config_with_defaults, validate_config
from .constants import VERSION, DEFAULT_CONFIG, CURVE_SUPPLY, TOTAL_SUPPLY, LIQUIDITY_SUPPLY
from .coordinator import CrossChainCoordinator
from .database import LaunchDatabase
from .errors import *
from .events import EventSource, QueueEventSource, Web3EventSource
from .migration import MigrationStateMachine
from .models import *
from .notifications import NotificationManager
from .registry import DeploymentRegistry, LaunchRegistry, SyncLedger
from . import price_engine

# Package metadata
__version__ = VERSION
__description__ = "Cross-chain bonding curve launchpad coordinator"

__all__ = [
    'AllowList',
    'ChainClient',
    'ChainClientMigrator',
    'CrossChainCoordinator',
    'DeploymentRegistry',
    'EventSource',
    'LaunchDatabase',
    'LaunchRegistry',
    'LiquidityMigrator',
    'MigrationStateMachine',
    'NotificationManager',
    'QueueEventSource',
    'RetryPolicy',
    'SimulatedChainClient',
    'SyncLedger',
    'Web3ChainClient',
    'Web3EventSource',
    'call_with_retry',
    'load_config',
    'price_engine',
    'save_config',
    'update_config_with_defaults',
    'validate_config',
    'VERSION',
    'DEFAULT_CONFIG',
]
