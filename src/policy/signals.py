"""Signal analyzer — scores one market for one agent personality.

Signals:
  - price distance: how far the live price sits from the market target (%)
  - momentum: recent move in the source's rolling price history (-100..100)
  - time urgency: how much of the trailing-day window toward resolution
    has elapsed (0..100)
  - pool imbalance: YES vs NO pool skew (-100..100)

The direction heuristic follows the market condition (above/below target),
contrarian agents lean against a lopsided pool, and confidence is a
weighted sum clamped to 0..100.

``analyze_market`` is pure: no clock reads, no randomness. Callers pass
``now`` explicitly so identical inputs always produce identical output.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, asdict
from typing import Any, Sequence

from src.connectors.ledger import AgentProfile, Personality

SECONDS_PER_DAY = 86_400
MOMENTUM_MIN_SAMPLES = 3
MOMENTUM_WINDOW = 5


@dataclass(frozen=True)
class PersonalityParams:
    confidence_boost: float
    stake_multiplier: float
    momentum_weight: float
    distance_weight: float
    contrarian_flip: bool


PERSONALITY_PARAMS: dict[Personality, PersonalityParams] = {
    Personality.CONSERVATIVE: PersonalityParams(-15, 0.25, 0.6, 0.4, False),
    Personality.BALANCED: PersonalityParams(0, 0.5, 0.5, 0.5, False),
    Personality.AGGRESSIVE: PersonalityParams(15, 0.8, 0.3, 0.7, False),
    Personality.CONTRARIAN: PersonalityParams(5, 0.4, 0.7, 0.3, True),
}


@dataclass(frozen=True)
class SignalBreakdown:
    """Display-rounded signal vector."""
    price_distance: float  # 2dp
    momentum: int
    time_urgency: int
    pool_imbalance: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AnalysisResult:
    signals: SignalBreakdown
    confidence: int
    direction: bool  # True = YES

    @property
    def direction_label(self) -> str:
        return "YES" if self.direction else "NO"


def round_half_up(x: float, ndigits: int = 0) -> float:
    """Round halves toward +inf (2.5 -> 3, -2.5 -> -2), unlike round()."""
    factor = 10 ** ndigits
    return math.floor(x * factor + 0.5) / factor


def _clamp(x: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, x))


def compute_momentum(history: Sequence[float]) -> float:
    if len(history) < MOMENTUM_MIN_SAMPLES:
        return 0.0
    recent = list(history)[-MOMENTUM_WINDOW:]
    oldest, newest = recent[0], recent[-1]
    if oldest == 0:
        return 0.0
    return _clamp((newest - oldest) / oldest * 100 * 10, -100.0, 100.0)


def compute_time_urgency(resolution_time: float, now: float) -> float:
    time_left = resolution_time - now
    total = max(resolution_time - (now - SECONDS_PER_DAY), 1)
    return _clamp((1 - time_left / total) * 100, 0.0, 100.0)


def compute_pool_imbalance(yes_pool: float, no_pool: float) -> float:
    total = yes_pool + no_pool
    return (yes_pool - no_pool) / total * 100 if total > 0 else 0.0


def _distance_contribution(abs_distance: float) -> float:
    if abs_distance > 20:
        return 35
    if abs_distance > 5:
        return 25
    if abs_distance > 2:
        return 15
    if abs_distance > 0.5:
        return 8
    return -5


def analyze_market(
    personality: Personality,
    current_price: float,
    target_price: float,
    condition_above: bool,
    resolution_time: float,
    yes_pool: float,
    no_pool: float,
    price_history: Sequence[float],
    now: float,
) -> AnalysisResult:
    """Score one market. Deterministic in all arguments."""
    if target_price <= 0:
        raise ValueError(f"target_price must be positive, got {target_price}")
    params = PERSONALITY_PARAMS[Personality(personality)]

    price_distance = (current_price - target_price) / target_price * 100
    momentum = compute_momentum(price_history)
    time_urgency = compute_time_urgency(resolution_time, now)
    pool_imbalance = compute_pool_imbalance(yes_pool, no_pool)

    if condition_above:
        suggest_yes = price_distance > 0 or momentum > 20
    else:
        suggest_yes = price_distance < 0 or momentum < -20

    if params.contrarian_flip:
        if pool_imbalance > 30:
            suggest_yes = False
        elif pool_imbalance < -30:
            suggest_yes = True
        else:
            suggest_yes = not suggest_yes

    confidence = 50.0
    confidence += _distance_contribution(abs(price_distance)) * params.distance_weight
    aligned_momentum = momentum if suggest_yes else -momentum
    confidence += (aligned_momentum / 100) * 30 * params.momentum_weight
    if time_urgency > 50:
        confidence += 5
    if time_urgency > 70 and aligned_momentum > 0:
        confidence += 10
    if time_urgency > 90 and aligned_momentum < 0:
        confidence -= 10
    if params.contrarian_flip and abs(pool_imbalance) > 40:
        confidence += 10
    confidence += params.confidence_boost

    signals = SignalBreakdown(
        price_distance=round_half_up(price_distance, 2),
        momentum=int(round_half_up(momentum)),
        time_urgency=int(round_half_up(time_urgency)),
        pool_imbalance=int(round_half_up(pool_imbalance)),
    )
    return AnalysisResult(
        signals=signals,
        confidence=int(_clamp(round_half_up(confidence), 0, 100)),
        direction=suggest_yes,
    )


def suggested_stake(profile: AgentProfile) -> float:
    """Personality-scaled fraction of the per-market stake cap (USDC, 2dp)."""
    params = PERSONALITY_PARAMS[profile.personality]
    return round_half_up(profile.max_stake_per_market * params.stake_multiplier, 2)


def build_reasoning(
    symbol: str,
    signals: SignalBreakdown,
    personality: Personality,
    direction: bool,
) -> str:
    """One-line human explanation attached to each recommendation."""
    parts: list[str] = []
    dist = signals.price_distance
    if abs(dist) > 3:
        parts.append(f"Price is {abs(dist):.1f}% {'above' if dist > 0 else 'below'} target")
    else:
        parts.append(f"Price is near target ({dist:.1f}% away)")

    if abs(signals.momentum) > 20:
        parts.append(
            f"Strong {'upward' if signals.momentum > 0 else 'downward'} momentum detected"
        )
    if signals.time_urgency > 70:
        parts.append("Market nearing resolution")
    if personality == Personality.CONTRARIAN and abs(signals.pool_imbalance) > 30:
        side = "YES" if signals.pool_imbalance > 0 else "NO"
        parts.append(f"Pool heavily {side}-sided, contrarian opportunity")

    return f"{'YES' if direction else 'NO'} on {symbol}. {'. '.join(parts)}."
