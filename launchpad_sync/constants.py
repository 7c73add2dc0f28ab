#!/usr/bin/env python3
"""
Constants Module for Multichain Launchpad Sync
Contains supply and fee constants, default configuration, the chain catalog
and the ABIs of the emitter and destination contracts

Version: 1.0.0
"""

# Version and metadata
VERSION = "1.0.0"
CONFIG_FILE = "launchpad_config.json"
DB_FILE = "launchpad_sync.db"

# Fixed point and supply (18-decimal base units)
WAD = 10 ** 18
TOTAL_SUPPLY = 1_000_000_000 * WAD
CURVE_SUPPLY = 800_000_000 * WAD          # sold through the bonding curve
LIQUIDITY_SUPPLY = TOTAL_SUPPLY - CURVE_SUPPLY  # reserved for the DEX pool

# Initial virtual reserves of a fresh curve
INITIAL_VIRTUAL_ETH = 1 * WAD
INITIAL_VIRTUAL_TOKENS = 800_000_000 * WAD

# Fees
BPS = 10_000
DEFAULT_PLATFORM_FEE_BPS = 100   # 1%
DEFAULT_CREATOR_FEE_BPS = 100    # 1%
MAX_CREATOR_FEE_BPS = 1_000

# Integer bounds
MAX_UINT64 = 2 ** 64 - 1
MAX_UINT128 = 2 ** 128 - 1
MAX_UINT256 = 2 ** 256 - 1

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Chains a launch may target, plus the relay networks that carry callbacks
SUPPORTED_CHAINS = {
    11155111: {"name": "Ethereum Sepolia", "short_name": "ETH", "native": "ETH"},
    80002: {"name": "Polygon Amoy", "short_name": "MATIC", "native": "MATIC"},
    97: {"name": "BSC Testnet", "short_name": "BNB", "native": "tBNB"},
    421614: {"name": "Arbitrum Sepolia", "short_name": "ARB", "native": "ETH"},
    84532: {"name": "Base Sepolia", "short_name": "BASE", "native": "ETH"},
    50312: {"name": "Somnia Shannon Testnet", "short_name": "STT", "native": "STT"},
}

RELAY_CHAINS = {
    1597: {"name": "Reactive Mainnet", "short_name": "REACT", "native": "REACT"},
    5318007: {"name": "Reactive Lasna", "short_name": "REACT", "native": "REACT"},
}

# Default configuration
DEFAULT_CONFIG = {
    "version": VERSION,
    "db_path": DB_FILE,
    "relay_identity": "",
    "admin_identities": [],
    "allowed_callers": [],
    "fees": {
        "platform_fee_bps": DEFAULT_PLATFORM_FEE_BPS,
        "default_creator_fee_bps": DEFAULT_CREATOR_FEE_BPS,
        "max_creator_fee_bps": MAX_CREATOR_FEE_BPS
    },
    "curve": {
        "initial_virtual_eth": str(INITIAL_VIRTUAL_ETH),
        "initial_virtual_tokens": str(INITIAL_VIRTUAL_TOKENS)
    },
    "trading": {
        "max_slippage_bps": None  # None disables the realized-slippage check
    },
    "retry": {
        "max_attempts": 3,
        "base_delay": 0.4,   # seconds, doubled per attempt
        "timeout": 30        # seconds per chain call
    },
    "coordinator": {
        "max_workers": 8,
        "poll_interval": 5
    },
    "chains": [],
    "logging": {
        "level": "INFO",
        "rich": True
    },
    "notifications": {
        "enabled": False,
        "type": "telegram",  # telegram, discord, pushover
        "cooldowns": {
            "dead_letter": 5 * 60,
            "unauthorized": 15 * 60,
            "migration": 0
        },
        "telegram": {
            "bot_token": "",
            "chat_id": ""
        },
        "discord": {
            "webhook_url": ""
        },
        "pushover": {
            "user_key": "",
            "api_token": ""
        }
    }
}

# Event contract of the origin/per-chain emitter
EMITTER_ABI = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "launchId", "type": "bytes32"},
            {"indexed": False, "name": "name", "type": "string"},
            {"indexed": False, "name": "symbol", "type": "string"},
            {"indexed": True, "name": "creator", "type": "address"},
            {"indexed": False, "name": "originChainId", "type": "uint256"},
            {"indexed": False, "name": "targetChainIds", "type": "uint256[]"},
            {"indexed": False, "name": "originToken", "type": "address"},
            {"indexed": False, "name": "creatorFeeBps", "type": "uint32"}
        ],
        "name": "TokenCreated",
        "type": "event"
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "launchId", "type": "bytes32"},
            {"indexed": True, "name": "buyer", "type": "address"},
            {"indexed": False, "name": "ethIn", "type": "uint256"},
            {"indexed": False, "name": "tokensOut", "type": "uint256"},
            {"indexed": False, "name": "price", "type": "uint256"},
            {"indexed": False, "name": "seq", "type": "uint64"}
        ],
        "name": "TokenPurchase",
        "type": "event"
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "launchId", "type": "bytes32"},
            {"indexed": True, "name": "seller", "type": "address"},
            {"indexed": False, "name": "tokensIn", "type": "uint256"},
            {"indexed": False, "name": "ethOut", "type": "uint256"},
            {"indexed": False, "name": "price", "type": "uint256"},
            {"indexed": False, "name": "seq", "type": "uint64"}
        ],
        "name": "TokenSale",
        "type": "event"
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "launchId", "type": "bytes32"},
            {"indexed": False, "name": "finalPrice", "type": "uint256"},
            {"indexed": False, "name": "liquidityEth", "type": "uint256"},
            {"indexed": False, "name": "liquidityTokens", "type": "uint256"}
        ],
        "name": "CurveMigrationTriggered",
        "type": "event"
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "launchId", "type": "bytes32"},
            {"indexed": False, "name": "paused", "type": "bool"},
            {"indexed": False, "name": "seq", "type": "uint64"}
        ],
        "name": "CurvePauseChanged",
        "type": "event"
    }
]

# Destination contracts called on behalf of the coordinator
DESTINATION_DEPLOYER_ABI = [
    {
        "inputs": [
            {"name": "launchId", "type": "bytes32"},
            {"name": "name", "type": "string"},
            {"name": "symbol", "type": "string"},
            {"name": "creator", "type": "address"},
            {"name": "originToken", "type": "address"},
            {"name": "originChainId", "type": "uint256"},
            {"name": "salt", "type": "bytes32"}
        ],
        "name": "deployToken",
        "outputs": [
            {"name": "token", "type": "address"},
            {"name": "bondingCurve", "type": "address"}
        ],
        "stateMutability": "nonpayable",
        "type": "function"
    }
]

DESTINATION_PRICE_SYNC_ABI = [
    {
        "inputs": [
            {"name": "launchId", "type": "bytes32"},
            {"name": "newPrice", "type": "uint256"},
            {"name": "totalSupply", "type": "uint256"},
            {"name": "seq", "type": "uint64"}
        ],
        "name": "syncPrice",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function"
    }
]

DESTINATION_MIGRATOR_ABI = [
    {
        "inputs": [{"name": "launchId", "type": "bytes32"}],
        "name": "migrateToDEX",
        "outputs": [{"name": "liquidityPair", "type": "address"}],
        "stateMutability": "nonpayable",
        "type": "function"
    }
]
