"""Eligibility gate — owner guardrails applied before any recommendation.

Checks, in order:
  1. Market open and not past resolution
  2. Known data source
  3. Asset type allowed by the agent's mask
  4. Live price available
  5. No ACTIVE position (or in-process reservation) in this market
  6. Confidence at or above the agent's threshold

The first five are market-level and can be evaluated before analysis;
the confidence check needs an ``AnalysisResult``. Any single violation
means no recommendation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Collection

from src.connectors.data_sources import DataSource, get_data_source
from src.connectors.ledger import AgentProfile, MarketView

MARKET_CLOSED = "market_closed"
UNKNOWN_SOURCE = "unknown_source"
ASSET_NOT_ALLOWED = "asset_not_allowed"
NO_PRICE = "no_price"
HAS_POSITION = "has_active_position"
BELOW_THRESHOLD = "below_threshold"


@dataclass
class EligibilityResult:
    allowed: bool
    violations: list[str] = field(default_factory=list)
    source: DataSource | None = None
    price: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "violations": self.violations,
            "symbol": self.source.symbol if self.source else None,
            "price": self.price,
        }


def check_market(
    profile: AgentProfile,
    market: MarketView,
    prices: dict[int, float],
    held_markets: Collection[int],
    now: float,
) -> EligibilityResult:
    """Market-level checks (1-5). Stops at the first violation."""
    if market.market_id in held_markets:
        return EligibilityResult(False, [HAS_POSITION])
    if not market.is_open_at(now):
        return EligibilityResult(False, [MARKET_CLOSED])

    source = get_data_source(market.data_source_id)
    if source is None:
        return EligibilityResult(False, [UNKNOWN_SOURCE])
    if not (source.asset_type & profile.allowed_asset_types):
        return EligibilityResult(False, [ASSET_NOT_ALLOWED], source=source)

    price = prices.get(source.id)
    if not price:
        return EligibilityResult(False, [NO_PRICE], source=source)

    return EligibilityResult(True, source=source, price=price)


def check_confidence(profile: AgentProfile, confidence: int) -> bool:
    return confidence >= profile.confidence_threshold


def check_eligibility(
    profile: AgentProfile,
    market: MarketView,
    prices: dict[int, float],
    held_markets: Collection[int],
    now: float,
    confidence: int | None = None,
) -> EligibilityResult:
    """Full gate. ``confidence=None`` runs only the market-level checks."""
    result = check_market(profile, market, prices, held_markets, now)
    if result.allowed and confidence is not None and not check_confidence(profile, confidence):
        result.allowed = False
        result.violations.append(BELOW_THRESHOLD)
    return result
