"""
Multichain Launchpad Sync - Data Types

Launch identity, per-chain curve reserves, migration/deployment/sync records,
trade results, and the events consumed from chain emitters.

All records are keyed by launch_id (and chain_id where per-chain); none holds
a reference to a mutable peer.
"""

from dataclasses import dataclass, field, asdict, replace
from enum import Enum
from typing import Optional, FrozenSet
import time

from .constants import INITIAL_VIRTUAL_ETH, INITIAL_VIRTUAL_TOKENS, DEFAULT_CREATOR_FEE_BPS
from .utils import compute_launch_id


class MigrationStatus(Enum):
    """Curve lifecycle: ACTIVE -> MIGRATION_TRIGGERED -> MIGRATED"""
    ACTIVE = "active"
    MIGRATION_TRIGGERED = "migration_triggered"
    MIGRATED = "migrated"


class DeploymentStatus(Enum):
    PENDING = "pending"
    DEPLOYED = "deployed"
    FAILED = "failed"


@dataclass(frozen=True)
class Launch:
    """
    Launch - identity of one token across all chains.

    Created once from a TokenCreated event and immutable thereafter.
    """
    launch_id: str
    creator: str
    name: str
    symbol: str
    origin_chain_id: int
    target_chain_ids: FrozenSet[int] = frozenset()
    origin_token: str = ""
    created_at: int = field(default_factory=lambda: int(time.time()))

    @classmethod
    def create(cls, creator: str, name: str, symbol: str, origin_chain_id: int,
               target_chain_ids, nonce: int, timestamp: int, origin_token: str = "") -> "Launch":
        """Build a launch whose id is derived from creator, nonce and timestamp."""
        return cls(
            launch_id=compute_launch_id(creator, nonce, timestamp),
            creator=creator,
            name=name,
            symbol=symbol,
            origin_chain_id=int(origin_chain_id),
            target_chain_ids=frozenset(int(c) for c in target_chain_ids),
            origin_token=origin_token,
            created_at=int(timestamp),
        )

    @property
    def all_chain_ids(self) -> FrozenSet[int]:
        return self.target_chain_ids | {self.origin_chain_id}

    def to_dict(self) -> dict:
        data = asdict(self)
        data["target_chain_ids"] = sorted(self.target_chain_ids)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Launch":
        return cls(
            launch_id=data["launch_id"],
            creator=data["creator"],
            name=data["name"],
            symbol=data["symbol"],
            origin_chain_id=int(data["origin_chain_id"]),
            target_chain_ids=frozenset(int(c) for c in data.get("target_chain_ids", [])),
            origin_token=data.get("origin_token", ""),
            created_at=int(data.get("created_at", 0)),
        )


@dataclass(frozen=True)
class CurveState:
    """Reserve and supply record of one curve, keyed by (launch_id, chain_id)."""
    launch_id: str
    chain_id: int
    virtual_eth: int
    virtual_tokens: int
    total_supply: int = 0
    creator_fee_bps: int = DEFAULT_CREATOR_FEE_BPS
    last_update_seq: int = 0
    paused: bool = False

    @classmethod
    def initial(cls, launch_id: str, chain_id: int,
                creator_fee_bps: int = DEFAULT_CREATOR_FEE_BPS,
                virtual_eth: int = INITIAL_VIRTUAL_ETH,
                virtual_tokens: int = INITIAL_VIRTUAL_TOKENS) -> "CurveState":
        return cls(
            launch_id=launch_id,
            chain_id=int(chain_id),
            virtual_eth=int(virtual_eth),
            virtual_tokens=int(virtual_tokens),
            creator_fee_bps=int(creator_fee_bps),
        )

    @property
    def key(self):
        return (self.launch_id, self.chain_id)

    def evolve(self, **changes) -> "CurveState":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class MigrationRecord:
    """One-way migration status of a launch. MIGRATED is terminal."""
    launch_id: str
    status: MigrationStatus = MigrationStatus.ACTIVE
    chain_id: Optional[int] = None
    final_price: int = 0
    liquidity_eth: int = 0
    liquidity_tokens: int = 0
    pair_address: str = ""
    migrated_at: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.status == MigrationStatus.MIGRATED

    def evolve(self, **changes) -> "MigrationRecord":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass(frozen=True)
class DeploymentRecord:
    """Result of deploying a launch to one destination chain."""
    launch_id: str
    chain_id: int
    salt: str
    status: DeploymentStatus = DeploymentStatus.PENDING
    token_address: str = ""
    curve_address: str = ""
    deployed_at: Optional[int] = None
    error: str = ""
    claimed_at: Optional[int] = None

    @property
    def key(self):
        return (self.launch_id, self.chain_id)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data


@dataclass(frozen=True)
class SyncCursor:
    """High-water mark of price syncs applied to one (launch, chain)."""
    launch_id: str
    chain_id: int
    last_applied_seq: int = 0
    last_applied_timestamp: Optional[int] = None
    last_price: int = 0
    last_total_supply: int = 0


@dataclass(frozen=True)
class FeeSplit:
    platform_fee: int = 0
    creator_fee: int = 0

    @property
    def total(self) -> int:
        return self.platform_fee + self.creator_fee


@dataclass(frozen=True)
class BuyResult:
    state: CurveState
    tokens_out: int
    eth_for_curve: int
    fees: FeeSplit
    eth_refund: int = 0
    migration_triggered: bool = False


@dataclass(frozen=True)
class SellResult:
    state: CurveState
    eth_out: int
    gross_eth_out: int
    fee: int


@dataclass(frozen=True)
class DeploymentResult:
    token_address: str
    curve_address: str


@dataclass(frozen=True)
class MigrationResult:
    """Outcome of the external DEX migration. success=False is retryable."""
    success: bool
    pair_address: str = ""
    error: str = ""


# ═══════════════════════════════════════════════════════════════════════
# EVENTS
# ═══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class TokenCreated:
    launch_id: str
    name: str
    symbol: str
    creator: str
    origin_chain_id: int
    target_chain_ids: tuple = ()
    origin_token: str = ""
    creator_fee_bps: Optional[int] = None
    seq: int = 0
    chain_id: int = 0
    caller: str = ""


@dataclass(frozen=True)
class TokenPurchase:
    launch_id: str
    buyer: str
    eth_in: int
    tokens_out: int = 0
    price: int = 0
    seq: int = 0
    chain_id: int = 0
    caller: str = ""
    min_tokens_out: int = 0
    max_slippage_bps: Optional[int] = None


@dataclass(frozen=True)
class TokenSale:
    launch_id: str
    seller: str
    tokens_in: int
    eth_out: int = 0
    price: int = 0
    seq: int = 0
    chain_id: int = 0
    caller: str = ""
    min_eth_out: int = 0
    max_slippage_bps: Optional[int] = None


@dataclass(frozen=True)
class CurveMigrationTriggered:
    launch_id: str
    final_price: int = 0
    liquidity_eth: int = 0
    liquidity_tokens: int = 0
    seq: int = 0
    chain_id: int = 0
    caller: str = ""


@dataclass(frozen=True)
class CurvePauseChanged:
    launch_id: str
    paused: bool
    seq: int = 0
    chain_id: int = 0
    caller: str = ""
