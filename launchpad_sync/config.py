#!/usr/bin/env python3
"""
Configuration Management Module for Multichain Launchpad Sync
Handles loading, saving and validation of the coordinator configuration

Version: 1.0.0
"""

import copy
import json
import logging
import os

from web3 import Web3

from .constants import BPS, CONFIG_FILE, CURVE_SUPPLY, DEFAULT_CONFIG
from .utils import validate_chain_configs

logger = logging.getLogger(__name__)


def load_config(path=CONFIG_FILE):
    """Load configuration from JSON file, create default if doesn't exist"""
    if not os.path.exists(path):
        logger.info("Configuration file not found. Creating default config...")
        save_config(DEFAULT_CONFIG, path)
        logger.info("Created %s. Please edit the configuration file and restart.", path)
        return None

    try:
        with open(path, 'r') as f:
            config = json.load(f)
    except json.JSONDecodeError as e:
        logger.error("Error reading config file %s: %s", path, e)
        return None

    # Update config with any missing default values
    if update_config_with_defaults(config):
        save_config(config, path)
        logger.info("Updated configuration with new settings")

    return config


def save_config(config, path=CONFIG_FILE):
    """Save configuration to JSON file"""
    with open(path, 'w') as f:
        json.dump(config, f, indent=4)


def update_config_with_defaults(config):
    """Update configuration with any missing default values"""
    updated = False

    def update_nested_dict(target, source):
        nonlocal updated
        for key, value in source.items():
            if key not in target:
                target[key] = copy.deepcopy(value)
                updated = True
            elif isinstance(value, dict) and isinstance(target[key], dict):
                update_nested_dict(target[key], value)

    update_nested_dict(config, DEFAULT_CONFIG)
    return updated


def validate_config(config, require_chains=True):
    """Validate configuration and return True if valid"""
    valid = True

    chains = config.get("chains") or []
    if require_chains and not chains:
        logger.error("No chains configured. Add entries to 'chains' with 'chain_id' and 'rpc_url'")
        return False
    if chains:
        valid_chains = validate_chain_configs(chains)
        if len(valid_chains) != len(chains):
            logger.error("Some chain entries are invalid or duplicated")
            valid = False
        config["chains"] = valid_chains

    relay = config.get("relay_identity")
    if relay and not Web3.is_address(relay):
        logger.error("relay_identity is not a valid address: %s", relay)
        valid = False
    for field in ("admin_identities", "allowed_callers"):
        for address in config.get(field, []):
            if not Web3.is_address(address):
                logger.error("%s contains an invalid address: %s", field, address)
                valid = False

    fees = config.get("fees", {})
    platform = fees.get("platform_fee_bps", 0)
    max_creator = fees.get("max_creator_fee_bps", 0)
    default_creator = fees.get("default_creator_fee_bps", 0)
    if platform < 0 or max_creator < 0 or default_creator < 0:
        logger.error("Fee settings must not be negative")
        valid = False
    if default_creator > max_creator:
        logger.error("default_creator_fee_bps exceeds max_creator_fee_bps")
        valid = False
    if platform + max_creator >= BPS:
        logger.error("Platform and creator fees together must stay below 100%")
        valid = False

    curve = config.get("curve", {})
    try:
        if int(curve.get("initial_virtual_eth", 0)) <= 0 or int(curve.get("initial_virtual_tokens", 0)) <= 0:
            logger.error("Initial virtual reserves must be positive")
            valid = False
        elif int(curve.get("initial_virtual_tokens")) <= CURVE_SUPPLY:
            logger.warning(
                "initial_virtual_tokens does not exceed the curve supply; curves will never fill or migrate"
            )
    except (TypeError, ValueError):
        logger.error("Initial virtual reserves must be integers")
        valid = False

    retry = config.get("retry", {})
    if retry.get("max_attempts", 0) < 1 or retry.get("base_delay", 0) < 0 or retry.get("timeout", 0) < 0:
        logger.error("Retry settings need max_attempts >= 1 and non-negative delay and timeout")
        valid = False

    return valid
