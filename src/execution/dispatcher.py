"""Execution dispatcher — turns a qualifying signal into an action.

Manual agents:
  A ``pending`` recommendation goes into the in-memory book and waits for
  the owner to approve (after they sign the position themselves) or reject.

Auto-execute agents:
  Stake is capped to the vault balance, the direction is encrypted, and the
  position is signed by the agent's delegate key and submitted. A failed
  attempt is audited as an error and never retried; the recommendation is
  closed as ``executed`` so it does not sit in the pending queue.

Markets the agent has just entered are reserved in-process until the
market stops being open, which covers the gap before the ledger reports
the new position.
"""

from __future__ import annotations

import asyncio
import itertools
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Literal

from src.config import EngineConfig
from src.connectors.data_sources import DataSource
from src.connectors.direction_cipher import DirectionCipher
from src.connectors.ledger import AgentProfile, LedgerAdapter, MarketView, to_base_units
from src.execution.key_vault import KeyVault
from src.policy.signals import AnalysisResult, SignalBreakdown, build_reasoning, suggested_stake
from src.storage.agent_stats import AgentStatsStore
from src.storage.audit import ActivityLog, AuditLog
from src.observability.logger import get_logger
from src.observability.metrics import metrics

log = get_logger(__name__)

RecommendationStatus = Literal["pending", "approved", "rejected", "executed"]


@dataclass
class Recommendation:
    id: str
    agent_id: int
    market_id: int
    direction: bool
    confidence: int
    suggested_stake: float  # USDC
    signals: SignalBreakdown
    status: RecommendationStatus = "pending"
    tx_hash: str | None = None
    reasoning: str = ""
    symbol: str = ""
    current_price: float = 0.0
    target_price: float = 0.0
    mode: str = "manual"
    created_at: float = field(default_factory=time.time)

    @property
    def direction_label(self) -> str:
        return "YES" if self.direction else "NO"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "market_id": self.market_id,
            "direction": self.direction_label,
            "confidence": self.confidence,
            "suggested_stake": self.suggested_stake,
            "status": self.status,
            "tx_hash": self.tx_hash,
            "reasoning": self.reasoning,
            "symbol": self.symbol,
            "current_price": self.current_price,
            "target_price": self.target_price,
            "mode": self.mode,
            "created_at": self.created_at,
            "signals": self.signals.to_dict(),
        }


class ExecutionDispatcher:
    """Routes recommendations to the owner (manual) or the ledger (auto)."""

    def __init__(
        self,
        ledger: LedgerAdapter,
        cipher: DirectionCipher,
        vault: KeyVault,
        audit: AuditLog,
        activity: ActivityLog,
        stats: AgentStatsStore,
        config: EngineConfig | None = None,
    ):
        self._ledger = ledger
        self._cipher = cipher
        self._vault = vault
        self._audit = audit
        self._activity = activity
        self._stats = stats
        self._config = config or EngineConfig()
        self._book: list[Recommendation] = []
        self._reserved: dict[int, set[int]] = defaultdict(set)
        self._seq = itertools.count(1)

    # ── Recommendation book ──────────────────────────────────────────

    def recommendations(
        self,
        agent_id: int | None = None,
        status: RecommendationStatus | None = None,
    ) -> list[Recommendation]:
        """Newest first."""
        return [
            r for r in self._book
            if (agent_id is None or r.agent_id == agent_id)
            and (status is None or r.status == status)
        ]

    def get(self, rec_id: str) -> Recommendation | None:
        for rec in self._book:
            if rec.id == rec_id:
                return rec
        return None

    def has_pending(self, agent_id: int) -> bool:
        return any(r.agent_id == agent_id and r.status == "pending" for r in self._book)

    def _add(self, rec: Recommendation) -> None:
        self._book.insert(0, rec)
        cap = self._config.max_recommendations_kept
        if len(self._book) <= cap:
            return
        # Evict the oldest settled entries; pending ones wait for the owner
        overflow = len(self._book) - cap
        kept: list[Recommendation] = []
        for r in reversed(self._book):
            if overflow and r.status != "pending":
                overflow -= 1
                continue
            kept.append(r)
        self._book = kept[::-1]

    # ── Reservations ─────────────────────────────────────────────────

    def reserved_markets(self, agent_id: int) -> set[int]:
        return set(self._reserved.get(agent_id, ()))

    def reserve(self, agent_id: int, market_id: int) -> None:
        self._reserved[agent_id].add(market_id)

    def release(self, agent_id: int, market_id: int) -> None:
        self._reserved.get(agent_id, set()).discard(market_id)

    # ── Dispatch ─────────────────────────────────────────────────────

    async def dispatch(
        self,
        profile: AgentProfile,
        market: MarketView,
        source: DataSource,
        current_price: float,
        analysis: AnalysisResult,
        now: float | None = None,
    ) -> Recommendation | None:
        """Act on a signal that already cleared the eligibility gate.

        Returns the recommendation, or None if an auto agent has nothing
        left to stake.
        """
        now = time.time() if now is None else now
        agent_id = profile.agent_id
        dir_label = analysis.direction_label
        stake = suggested_stake(profile)

        self._activity.add(
            agent_id, profile.display_name,
            f"Signal generated: {dir_label} on {source.symbol} | Stake: {stake} USDC | "
            f"Confidence: {analysis.confidence}% | Mode: {profile.mode}",
            "recommendation",
        )

        if profile.auto_execute:
            stake = round(min(stake, profile.balance), 6)
            if stake <= 0:
                self._activity.add(
                    agent_id, profile.display_name,
                    f"Signal {dir_label} on {source.symbol} but vault is empty "
                    f"({profile.balance} USDC). Fund the agent vault to enable execution.",
                    "warning",
                )
                log.warning("dispatch.no_stake", agent_id=agent_id, market_id=market.market_id)
                return None

        rec_id = f"{agent_id}-{market.market_id}-{int(now * 1000)}"
        if self.get(rec_id) is not None:
            rec_id = f"{rec_id}-{next(self._seq)}"
        rec = Recommendation(
            id=rec_id,
            agent_id=agent_id,
            market_id=market.market_id,
            direction=analysis.direction,
            confidence=analysis.confidence,
            suggested_stake=stake,
            signals=analysis.signals,
            reasoning=build_reasoning(
                source.symbol, analysis.signals, profile.personality, analysis.direction,
            ),
            symbol=source.symbol,
            current_price=current_price,
            target_price=market.target_price,
            mode=profile.mode,
            created_at=now,
        )
        self._add(rec)
        metrics.incr("dispatch.recommendations", agent_id=agent_id)

        await self._audit.record(
            agent_id, "recommendation",
            f"{dir_label} on {source.symbol} (Market #{market.market_id}) - "
            f"{stake} USDC @ {analysis.confidence}% confidence",
            details=rec.reasoning,
            metadata={
                "confidence": analysis.confidence,
                "stake": stake,
                "symbol": source.symbol,
                "marketId": market.market_id,
                "direction": analysis.direction,
                "currentPrice": current_price,
                "targetPrice": market.target_price,
                "priceDistance": analysis.signals.price_distance,
                "momentum": analysis.signals.momentum,
                "timeUrgency": analysis.signals.time_urgency,
                "poolImbalance": analysis.signals.pool_imbalance,
                "mode": profile.mode,
            },
        )

        if profile.auto_execute:
            # A stop() mid-submission must not lose the outcome's audit record
            await asyncio.shield(self._auto_execute(profile, rec))
        return rec

    async def _auto_execute(self, profile: AgentProfile, rec: Recommendation) -> None:
        agent_id = profile.agent_id
        self._activity.add(
            agent_id, profile.display_name,
            f"Auto-executing: {rec.direction_label} on Market #{rec.market_id} "
            f"({rec.symbol}) for {rec.suggested_stake} USDC via delegate wallet...",
            "execution",
        )
        try:
            encrypted = await self._cipher.encrypt_direction(rec.direction)
            tx_hash = await self._vault.sign_and_submit(
                self._ledger, agent_id, rec.market_id, encrypted,
                to_base_units(rec.suggested_stake),
            )
        except Exception as e:
            rec.status = "executed"
            metrics.incr("dispatch.failed", agent_id=agent_id)
            log.error("dispatch.auto_execute_failed", agent_id=agent_id,
                      market_id=rec.market_id, error=str(e))
            self._activity.add(
                agent_id, profile.display_name,
                f"Auto-execute failed for {rec.symbol} Market #{rec.market_id}: {e}",
                "error",
            )
            await self._audit.record(
                agent_id, "error",
                f"Auto-execute failed on {rec.symbol} (Market #{rec.market_id}): {e}",
                metadata={
                    "symbol": rec.symbol,
                    "marketId": rec.market_id,
                    "direction": rec.direction,
                    "stake": rec.suggested_stake,
                    "confidence": rec.confidence,
                },
            )
            return

        rec.status = "executed"
        rec.tx_hash = tx_hash
        self.reserve(agent_id, rec.market_id)
        metrics.incr("dispatch.executed", agent_id=agent_id)
        self._activity.add(
            agent_id, profile.display_name,
            f"Executed: {rec.direction_label} on {rec.symbol} @ {rec.suggested_stake} USDC "
            f"| tx: {tx_hash[:14]}...",
            "execution",
        )
        await self._audit.record(
            agent_id, "executed",
            f"{rec.direction_label} position on {rec.symbol} (Market #{rec.market_id}) - "
            f"{rec.suggested_stake} USDC",
            metadata={
                "txHash": tx_hash,
                "symbol": rec.symbol,
                "marketId": rec.market_id,
                "direction": rec.direction,
                "stake": rec.suggested_stake,
                "confidence": rec.confidence,
                "mode": "auto",
            },
        )

    # ── Owner decisions ──────────────────────────────────────────────

    def _pending(self, rec_id: str) -> Recommendation:
        rec = self.get(rec_id)
        if rec is None:
            raise ValueError(f"Unknown recommendation {rec_id!r}")
        if rec.status != "pending":
            raise ValueError(f"Recommendation {rec_id!r} is already {rec.status}")
        return rec

    async def approve(self, rec_id: str, tx_hash: str | None = None) -> Recommendation:
        """Close a pending manual recommendation the owner has submitted."""
        rec = self._pending(rec_id)
        rec.status = "executed"
        rec.tx_hash = tx_hash
        self.reserve(rec.agent_id, rec.market_id)
        metrics.incr("dispatch.approved", agent_id=rec.agent_id)

        await self._stats.record_approved(rec.agent_id, rec.suggested_stake)
        metadata: dict[str, Any] = {
            "marketId": rec.market_id,
            "direction": rec.direction,
            "stake": rec.suggested_stake,
            "confidence": rec.confidence,
            "mode": "manual",
        }
        if tx_hash:
            metadata["txHash"] = tx_hash
        await self._audit.record(
            rec.agent_id, "executed",
            f"{rec.direction_label} on Market #{rec.market_id} - {rec.suggested_stake} USDC "
            f"@ {rec.confidence}% confidence (manual approve)",
            metadata=metadata,
        )
        log.info("dispatch.approved", rec_id=rec_id, agent_id=rec.agent_id)
        return rec

    async def reject(self, rec_id: str) -> Recommendation:
        rec = self._pending(rec_id)
        rec.status = "rejected"
        metrics.incr("dispatch.rejected", agent_id=rec.agent_id)

        await self._stats.record_rejected(rec.agent_id)
        await self._audit.record(
            rec.agent_id, "rejected",
            f"{rec.direction_label} on Market #{rec.market_id} rejected - "
            f"{rec.suggested_stake} USDC @ {rec.confidence}% confidence",
            metadata={
                "marketId": rec.market_id,
                "direction": rec.direction,
                "stake": rec.suggested_stake,
                "confidence": rec.confidence,
            },
        )
        log.info("dispatch.rejected", rec_id=rec_id, agent_id=rec.agent_id)
        return rec
