#!/usr/bin/env python3
"""
Utility Functions Module for Multichain Launchpad Sync
Integer math helpers, identity hashing, per-key locking and formatting

Version: 1.0.0
"""

import logging
import threading

from web3 import Web3

from .constants import BPS, MAX_UINT64, MAX_UINT128, WAD, ZERO_ADDRESS, SUPPORTED_CHAINS, RELAY_CHAINS
from .errors import CurveArithmeticError, ValidationError

logger = logging.getLogger(__name__)


def ceil_div(numerator, denominator):
    """Integer division rounded up. Raises CurveArithmeticError on a zero denominator."""
    if denominator == 0:
        raise CurveArithmeticError("division by zero")
    return -(-numerator // denominator)


def bps_of(amount, bps):
    """Floor of amount * bps / 10 000"""
    return amount * bps // BPS


def check_u128(value, what="value"):
    """Reject values that do not fit a u128 reserve slot"""
    if value < 0:
        raise CurveArithmeticError(f"{what} underflow: {value}")
    if value > MAX_UINT128:
        raise CurveArithmeticError(f"{what} overflows u128")
    return value


def check_u64(value, what="sequence"):
    """Reject sequence numbers outside u64"""
    if not isinstance(value, int) or value < 0 or value > MAX_UINT64:
        raise ValidationError(f"{what} {value} is not a u64")
    return value


def normalize_address(address, field="address"):
    """Checksum an address, raising ValidationError for malformed input"""
    if not address or not isinstance(address, str):
        raise ValidationError(f"{field} is required")
    if not Web3.is_address(address):
        raise ValidationError(f"{field} is not a valid address: {address}")
    return Web3.to_checksum_address(address)


def is_zero_address(address):
    return not address or address.lower() == ZERO_ADDRESS


def compute_launch_id(creator, nonce, timestamp):
    """Stable launch identity: keccak(creator, nonce, timestamp)"""
    creator = normalize_address(creator, "creator")
    digest = Web3.solidity_keccak(
        ["address", "uint256", "uint256"],
        [creator, int(nonce), int(timestamp)]
    )
    return Web3.to_hex(digest)


def deployment_salt(launch_id, chain_id):
    """Deterministic CREATE2 salt: keccak(launchId, chainId), no wall-clock input"""
    digest = Web3.solidity_keccak(
        ["bytes32", "uint256"],
        [launch_id_bytes(launch_id), int(chain_id)]
    )
    return Web3.to_hex(digest)


def launch_id_bytes(launch_id):
    """Convert a 0x-prefixed launch id into its 32 raw bytes"""
    try:
        raw = Web3.to_bytes(hexstr=launch_id)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"launch id is not hex: {launch_id}") from e
    if len(raw) != 32:
        raise ValidationError(f"launch id must be 32 bytes, got {len(raw)}")
    return raw


class KeyedLocks:
    """One lock per key, created on first use.

    Gives every (launch_id, chain_id) shard its own single writer while
    unrelated keys proceed in parallel.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    def get(self, key):
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    def __call__(self, key):
        return self.get(key)

    def __len__(self):
        with self._guard:
            return len(self._locks)


def chain_name(chain_id):
    """Human-readable chain name for logs and tables"""
    meta = SUPPORTED_CHAINS.get(chain_id) or RELAY_CHAINS.get(chain_id)
    if meta:
        return meta["name"]
    return f"chain {chain_id}"


def short_id(value, head=6, tail=4):
    """Shorten a hex id or address for display"""
    if not value:
        return "-"
    if len(value) <= head + tail + 3:
        return value
    return f"{value[:head]}…{value[-tail:]}"


def format_eth(wei, symbol="ETH"):
    """Format a wei amount based on magnitude"""
    amount = wei / WAD
    if amount == 0:
        return f"0 {symbol}"
    elif amount >= 1000:
        return f"{amount:,.2f} {symbol}"
    elif amount >= 1:
        return f"{amount:.4f} {symbol}"
    elif amount >= 0.000001:
        return f"{amount:.8f} {symbol}"
    else:
        return f"{wei} wei"


def format_token_amount(base_units, symbol=""):
    """Format token base units nicely"""
    amount = base_units / WAD
    suffix = f" {symbol}" if symbol else ""
    if amount >= 1_000_000:
        return f"{amount / 1_000_000:,.2f}M{suffix}"
    elif amount > 1000:
        return f"{amount:,.2f}{suffix}"
    elif amount > 1:
        return f"{amount:.4f}{suffix}"
    else:
        return f"{amount:.8f}{suffix}"


def format_price(price_wad):
    """Format a WAD-scaled ETH-per-token price"""
    if price_wad == 0:
        return "0 ETH"
    price = price_wad / WAD
    if price >= 1:
        return f"{price:.4f} ETH"
    elif price >= 0.000001:
        return f"{price:.8f} ETH"
    else:
        return f"{price:.2e} ETH"


def format_bps(bps):
    return f"{bps / 100:.2f}%"


def validate_chain_config(chain):
    """Validate a single chain configuration"""
    try:
        chain_id = int(chain.get("chain_id", 0))
    except (TypeError, ValueError):
        return False
    if chain_id <= 0:
        return False
    if not chain.get("rpc_url"):
        return False
    chain["chain_id"] = chain_id
    if not chain.get("name"):
        chain["name"] = chain_name(chain_id)
    for field in ("emitter", "deployer", "price_sync", "migrator"):
        address = chain.get(field)
        if address and not Web3.is_address(address):
            logger.warning("Chain %s has an invalid %s address: %s", chain_id, field, address)
            return False
    return True


def validate_chain_configs(chains):
    """Validate all chain configurations and return valid ones"""
    valid_chains = []
    seen = set()
    for chain in chains:
        if not validate_chain_config(chain):
            logger.warning("Skipping incomplete chain config: %s", chain)
            continue
        if chain["chain_id"] in seen:
            logger.warning("Skipping duplicate chain id %s", chain["chain_id"])
            continue
        seen.add(chain["chain_id"])
        valid_chains.append(chain)
    return valid_chains
