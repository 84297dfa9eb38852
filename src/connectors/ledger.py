"""Ledger adapter interface and the read models it returns.

The settlement contract itself (markets, pools, vault custody, payouts)
lives elsewhere; the engine only reads its state and, for auto-execute
agents, submits positions signed by the agent's delegate key.

Amounts are USDC floats on the read side. Stakes are sent to the ledger in
base units (6 decimals).
"""

from __future__ import annotations

import abc
from enum import Enum, IntEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator

USDC_DECIMALS = 6
PRICE_PRECISION = 1_000_000

# Asset-type bitmask (matches the contract constants)
ASSET_COMMODITY = 1
ASSET_ETF = 2
ASSET_FX = 4
ASSET_ALL = ASSET_COMMODITY | ASSET_ETF | ASSET_FX


class MarketStatus(IntEnum):
    OPEN = 0
    RESOLVING = 1
    SETTLED = 2
    CANCELLED = 3


class PositionStatus(IntEnum):
    ACTIVE = 0
    SETTLED = 1
    CANCELLED = 2
    REFUNDED = 3


class Personality(str, Enum):
    CONSERVATIVE = "conservative"
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"
    CONTRARIAN = "contrarian"


PERSONALITY_FROM_INDEX: dict[int, Personality] = {
    0: Personality.CONSERVATIVE,
    1: Personality.BALANCED,
    2: Personality.AGGRESSIVE,
    3: Personality.CONTRARIAN,
}


def to_base_units(amount: float) -> int:
    """USDC float -> integer base units."""
    return int(round(amount * 10 ** USDC_DECIMALS))


def from_base_units(units: int) -> float:
    return units / 10 ** USDC_DECIMALS


# ── Read models ──────────────────────────────────────────────────────

class AgentProfile(BaseModel):
    """Owner guardrails + vault balance for one agent, as read from the ledger."""
    agent_id: int
    owner: str = ""
    delegate: str = ""
    name: str = ""
    personality: Personality = Personality.BALANCED
    max_stake_per_market: float = 0.0
    max_total_exposure: float = 0.0
    current_exposure: float = 0.0
    allowed_asset_types: int = ASSET_ALL
    confidence_threshold: int = Field(default=60, ge=0, le=100)
    auto_execute: bool = False
    is_active: bool = True
    balance: float = 0.0

    @field_validator("personality", mode="before")
    @classmethod
    def _parse_personality(cls, v: Any) -> Any:
        # The contract stores the personality as a uint8 index
        if isinstance(v, int) and not isinstance(v, bool):
            if v not in PERSONALITY_FROM_INDEX:
                raise ValueError(f"unknown personality index {v}")
            return PERSONALITY_FROM_INDEX[v]
        if isinstance(v, str):
            return v.lower()
        return v

    @property
    def display_name(self) -> str:
        return self.name or f"Agent #{self.agent_id}"

    @property
    def mode(self) -> str:
        return "auto" if self.auto_execute else "manual"


class MarketView(BaseModel):
    market_id: int
    status: MarketStatus = MarketStatus.OPEN
    data_source_id: int
    target_price: float
    condition_above: bool = True
    resolution_time: float  # unix seconds
    yes_pool: float = 0.0
    no_pool: float = 0.0

    def is_open_at(self, now: float) -> bool:
        return self.status == MarketStatus.OPEN and self.resolution_time > now


class PositionView(BaseModel):
    position_id: int
    market_id: int
    status: PositionStatus = PositionStatus.ACTIVE


# ── Adapter ──────────────────────────────────────────────────────────

class LedgerAdapter(abc.ABC):
    """Async view of the settlement ledger."""

    @abc.abstractmethod
    async def market_count(self) -> int:
        ...

    @abc.abstractmethod
    async def get_market(self, market_id: int) -> MarketView:
        ...

    @abc.abstractmethod
    async def get_agent(self, agent_id: int) -> AgentProfile:
        ...

    @abc.abstractmethod
    async def get_agent_position_ids(self, agent_id: int) -> list[int]:
        ...

    @abc.abstractmethod
    async def get_position(self, position_id: int) -> PositionView:
        ...

    @abc.abstractmethod
    async def get_owner_agent_ids(self, owner: str) -> list[int]:
        ...

    @abc.abstractmethod
    async def submit_position_for_agent(
        self,
        account: Any,
        agent_id: int,
        market_id: int,
        encrypted_direction: str,
        stake_units: int,
    ) -> str:
        """Sign with ``account`` (the delegate key) and submit.

        Returns the transaction hash. Failures must raise; callers never retry.
        """
        ...

    async def close(self) -> None:
        pass

    async def active_position_markets(self, agent_id: int) -> set[int]:
        """Markets in which ``agent_id`` currently holds an ACTIVE position."""
        markets: set[int] = set()
        for pos_id in await self.get_agent_position_ids(agent_id):
            pos = await self.get_position(pos_id)
            if pos.status == PositionStatus.ACTIVE:
                markets.add(pos.market_id)
        return markets
