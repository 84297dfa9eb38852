"""Per-agent decision loop — the scheduler behind every running agent.

Each running agent owns one asyncio task that scans immediately on start
and then every ``scan_interval_secs`` (default 30s). One cycle:
  1. Re-read the agent profile (guardrails + vault balance) from the ledger
  2. Skip if inactive, or if a manual agent still has a pending recommendation
  3. Halt an auto-execute agent whose vault is empty
  4. Read the market count and fetch all oracle prices
  5. Update the rolling per-source price history
  6. Snapshot ACTIVE positions to avoid doubling up
  7. Gate, analyze and dispatch each market (at most 10 signals per cycle)
  8. Persist stats and audit the scan

At most one cycle per agent is ever in flight. Errors inside a market are
logged and the scan moves on; errors anywhere else end the cycle, are
audited, and the loop carries on at the next tick. Agents never share
failure.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from src.config import EngineConfig
from src.connectors.direction_cipher import DirectionCipher
from src.connectors.ledger import AgentProfile, LedgerAdapter
from src.connectors.price_oracle import PriceOracle, PriceResult
from src.execution.dispatcher import ExecutionDispatcher, Recommendation
from src.execution.key_vault import KeyVault
from src.policy.guardrails import check_confidence, check_market
from src.policy.signals import analyze_market
from src.storage.agent_stats import AgentStatsStore
from src.storage.audit import ActivityLog, AuditLog
from src.observability.logger import bind_agent_context, get_logger
from src.observability.metrics import metrics

log = get_logger(__name__)

T = TypeVar("T")


@dataclass
class CycleResult:
    """Summary of one scan cycle for one agent."""
    cycle_id: int
    agent_id: int
    started_at: float
    ended_at: float = 0.0
    duration_secs: float = 0.0
    markets_checked: int = 0
    prices: int = 0
    signals: int = 0
    executed: int = 0
    errors: list[str] = field(default_factory=list)
    status: str = "pending"  # completed | skipped | halted | error | cancelled
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class AgentRuntimeState:
    agent_id: int
    profile: AgentProfile
    running: bool = False
    task: asyncio.Task[None] | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    price_history: dict[int, deque[float]] = field(default_factory=dict)
    cycle_count: int = 0
    last_result: CycleResult | None = None

    def history_for(self, source_id: int) -> list[float]:
        return list(self.price_history.get(source_id, ()))


class DecisionEngine:
    """Schedules and runs scan cycles for any number of agents."""

    def __init__(
        self,
        ledger: LedgerAdapter,
        oracle: PriceOracle,
        cipher: DirectionCipher,
        vault: KeyVault,
        audit: AuditLog,
        activity: ActivityLog,
        stats: AgentStatsStore,
        config: EngineConfig | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._ledger = ledger
        self._oracle = oracle
        self._audit = audit
        self._activity = activity
        self._stats = stats
        self._config = config or EngineConfig()
        self._clock = clock
        self._states: dict[int, AgentRuntimeState] = {}
        self.dispatcher = ExecutionDispatcher(
            ledger, cipher, vault, audit, activity, stats, self._config,
        )

    # ── Views ────────────────────────────────────────────────────────

    @property
    def running_agents(self) -> set[int]:
        return {aid for aid, s in self._states.items() if s.running}

    def is_running(self, agent_id: int) -> bool:
        state = self._states.get(agent_id)
        return bool(state and state.running)

    def state(self, agent_id: int) -> AgentRuntimeState | None:
        return self._states.get(agent_id)

    def recommendations(self, agent_id: int | None = None) -> list[Recommendation]:
        return self.dispatcher.recommendations(agent_id)

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self, agent_id: int, profile: AgentProfile) -> None:
        """Start (or restart) the loop for ``agent_id``."""
        if profile.agent_id != agent_id:
            raise ValueError(f"profile is for agent {profile.agent_id}, not {agent_id}")

        state = self._states.get(agent_id)
        if state is None:
            state = AgentRuntimeState(agent_id=agent_id, profile=profile)
            self._states[agent_id] = state
        else:
            await self._cancel_task(state)
            state.profile = profile

        state.running = True
        log.info("engine.agent_starting", agent_id=agent_id, mode=profile.mode,
                 personality=profile.personality.value)
        await self._audit.record(agent_id, "started", f'Agent "{profile.display_name}" started')
        self._activity.add(
            agent_id, profile.display_name,
            f"Started [{profile.personality.value}/{profile.mode}]",
        )
        metrics.gauge("engine.running_agents", len(self.running_agents))
        state.task = asyncio.create_task(self._run_agent(state), name=f"agent-{agent_id}")

    async def stop(self, agent_id: int) -> bool:
        """Stop a running agent. Returns False (and audits nothing) if it was not running."""
        state = self._states.get(agent_id)
        if state is None or not state.running:
            return False
        state.running = False
        await self._cancel_task(state)

        name = state.profile.display_name
        log.info("engine.agent_stopped", agent_id=agent_id, cycles=state.cycle_count)
        await self._audit.record(agent_id, "stopped", f'Agent "{name}" stopped')
        self._activity.add(agent_id, name, "Stopped")
        metrics.gauge("engine.running_agents", len(self.running_agents))
        return True

    async def close(self) -> None:
        for agent_id in sorted(self.running_agents):
            await self.stop(agent_id)

    async def scan_now(self, agent_id: int) -> CycleResult:
        """Out-of-band scan for a running agent. Honors single-flight."""
        state = self._states.get(agent_id)
        if state is None or not state.running:
            raise LookupError(f"Agent {agent_id} is not running")
        return await self._scan_single_flight(state)

    async def approve(self, rec_id: str, tx_hash: str | None = None) -> Recommendation:
        return await self.dispatcher.approve(rec_id, tx_hash)

    async def reject(self, rec_id: str) -> Recommendation:
        return await self.dispatcher.reject(rec_id)

    @staticmethod
    async def _cancel_task(state: AgentRuntimeState) -> None:
        task, state.task = state.task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _run_agent(self, state: AgentRuntimeState) -> None:
        bind_agent_context(state.agent_id)
        interval = self._config.scan_interval_secs
        try:
            while state.running:
                result = await self._scan_single_flight(state)
                if result.status == "halted" or not state.running:
                    break
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            log.debug("engine.agent_task_cancelled", agent_id=state.agent_id)
            raise
        log.info("engine.agent_loop_exit", agent_id=state.agent_id)

    # ── Cycle ────────────────────────────────────────────────────────

    async def _scan_single_flight(self, state: AgentRuntimeState) -> CycleResult:
        if state.lock.locked():
            log.debug("engine.cycle_in_flight", agent_id=state.agent_id)
            return CycleResult(
                cycle_id=state.cycle_count,
                agent_id=state.agent_id,
                started_at=self._clock(),
                status="skipped",
                reason="cycle_in_flight",
            )
        async with state.lock:
            return await self._run_cycle(state)

    async def _run_cycle(self, state: AgentRuntimeState) -> CycleResult:
        state.cycle_count += 1
        cycle = CycleResult(
            cycle_id=state.cycle_count,
            agent_id=state.agent_id,
            started_at=self._clock(),
        )
        log.info("engine.cycle_start", agent_id=state.agent_id, cycle_id=cycle.cycle_id)
        metrics.incr("engine.scans", agent_id=state.agent_id)

        try:
            with metrics.timer("engine.cycle_secs"):
                await self._scan(state, cycle)
        except asyncio.CancelledError:
            cycle.status = "cancelled"
            self._finish_cycle(state, cycle)
            raise
        except Exception as e:
            msg = str(e) or type(e).__name__
            cycle.status = "error"
            cycle.errors.append(msg)
            metrics.incr("engine.cycle_errors", agent_id=state.agent_id)
            log.error("engine.cycle_error", agent_id=state.agent_id, error=msg)
            self._activity.add(state.agent_id, state.profile.display_name, f"Error: {msg}", "error")
            await self._audit.record(state.agent_id, "error", f"Scan failed: {msg}")

        self._finish_cycle(state, cycle)
        return cycle

    def _finish_cycle(self, state: AgentRuntimeState, cycle: CycleResult) -> None:
        cycle.ended_at = self._clock()
        cycle.duration_secs = round(cycle.ended_at - cycle.started_at, 2)
        state.last_result = cycle
        log.info(
            "engine.cycle_complete",
            agent_id=state.agent_id,
            cycle_id=cycle.cycle_id,
            status=cycle.status,
            markets=cycle.markets_checked,
            prices=cycle.prices,
            signals=cycle.signals,
            executed=cycle.executed,
            errors=len(cycle.errors),
            duration=cycle.duration_secs,
        )

    async def _read(self, aw: Awaitable[T]) -> T:
        """Ledger/oracle read bounded by ``read_timeout_secs``."""
        return await asyncio.wait_for(aw, timeout=self._config.read_timeout_secs)

    async def _scan(self, state: AgentRuntimeState, cycle: CycleResult) -> None:
        agent_id = state.agent_id
        profile = await self._read(self._ledger.get_agent(agent_id))
        state.profile = profile
        name = profile.display_name

        if not profile.is_active:
            cycle.status, cycle.reason = "skipped", "inactive"
            self._activity.add(agent_id, name, "Agent is inactive on the ledger, skipping scan.")
            return

        if not profile.auto_execute and self.dispatcher.has_pending(agent_id):
            cycle.status, cycle.reason = "skipped", "pending_recommendation"
            self._activity.add(
                agent_id, name,
                "Waiting for pending recommendation to be approved or rejected, skipping scan.",
            )
            log.info("engine.pending_backpressure", agent_id=agent_id)
            return

        if profile.auto_execute and profile.balance <= 0:
            await self._halt(state, profile)
            cycle.status, cycle.reason = "halted", "vault_empty"
            return

        self._activity.add(
            agent_id, name,
            f"Scanning markets [{profile.personality.value}] | Vault: {profile.balance} USDC...",
            "scan",
        )

        count = await self._read(self._ledger.market_count())
        cycle.markets_checked = count
        if count == 0:
            self._activity.add(agent_id, name, "No markets on-chain yet.")
            await self._audit.record(agent_id, "scan", "Scan complete: 0 markets")
            cycle.status = "completed"
            return

        prices = await self._read(self._oracle.fetch_all_prices())
        self._update_history(state, prices)
        live = {p.source_id: p.price for p in prices if p.success}
        cycle.prices = len(live)

        held = await self._held_markets(state, profile)
        now = self._clock()
        recs: list[Recommendation] = []

        for market_id in range(count):
            if len(recs) >= self._config.max_recommendations_per_cycle:
                break
            try:
                rec = await self._process_market(state, profile, market_id, live, held, now)
            except Exception as e:
                msg = str(e) or type(e).__name__
                cycle.errors.append(f"market {market_id}: {msg}")
                log.warning("engine.market_error", agent_id=agent_id, market_id=market_id,
                            error=msg)
                self._activity.add(agent_id, name, f"Error reading market #{market_id}: {msg}",
                                   "error")
                continue
            if rec is None:
                continue
            recs.append(rec)
            held.add(market_id)
            if rec.tx_hash:
                # Later stakes this cycle only see what is left in the vault
                profile = profile.model_copy(
                    update={"balance": max(profile.balance - rec.suggested_stake, 0.0)},
                )

        executed = [r for r in recs if r.tx_hash]
        cycle.signals = len(recs)
        cycle.executed = len(executed)

        await self._stats.record_scan(
            agent_id,
            [r.confidence for r in recs],
            executed=len(executed),
            staked=sum(r.suggested_stake for r in executed),
        )
        await self._audit.record(
            agent_id, "scan",
            f"Scan complete: {count} markets, {cycle.prices} prices, {len(recs)} signals",
        )
        self._activity.add(
            agent_id, name,
            f"Scan complete. {count} markets checked, {len(recs)} new signals.",
            "scan",
        )
        cycle.status = "completed"

    async def _halt(self, state: AgentRuntimeState, profile: AgentProfile) -> None:
        state.running = False
        log.warning("engine.vault_empty_halt", agent_id=state.agent_id)
        metrics.incr("engine.halts", agent_id=state.agent_id)
        metrics.gauge("engine.running_agents", len(self.running_agents))
        self._activity.add(
            state.agent_id, profile.display_name,
            "Vault balance is 0 USDC. Stopping agent. Fund the agent vault to resume.",
            "warning",
        )
        await self._audit.record(
            state.agent_id, "stopped", "Agent stopped: vault empty. Fund to resume.",
        )

    def _update_history(self, state: AgentRuntimeState, prices: list[PriceResult]) -> None:
        size = self._config.price_history_size
        for p in prices:
            if not p.success:
                continue
            hist = state.price_history.get(p.source_id)
            if hist is None:
                hist = state.price_history[p.source_id] = deque(maxlen=size)
            hist.append(p.price)

    async def _held_markets(self, state: AgentRuntimeState, profile: AgentProfile) -> set[int]:
        """ACTIVE positions plus in-process reservations. Snapshot failures are tolerated."""
        held = self.dispatcher.reserved_markets(state.agent_id)
        try:
            active = await self._read(self._ledger.active_position_markets(state.agent_id))
        except Exception as e:
            log.warning("engine.position_snapshot_failed", agent_id=state.agent_id, error=str(e))
            return held
        if active:
            self._activity.add(
                state.agent_id, profile.display_name,
                f"Agent has active positions in {len(active)} market(s): "
                f"[{', '.join(str(m) for m in sorted(active))}]",
            )
        return held | active

    async def _process_market(
        self,
        state: AgentRuntimeState,
        profile: AgentProfile,
        market_id: int,
        live: dict[int, float],
        held: set[int],
        now: float,
    ) -> Recommendation | None:
        market = await self._read(self._ledger.get_market(market_id))
        if not market.is_open_at(now):
            self.dispatcher.release(state.agent_id, market_id)

        gate = check_market(profile, market, live, held, now)
        if not gate.allowed or gate.source is None or gate.price is None:
            log.debug("engine.market_skipped", agent_id=state.agent_id, market_id=market_id,
                      reason=gate.violations[0] if gate.violations else "")
            return None

        source, price = gate.source, gate.price
        analysis = analyze_market(
            profile.personality,
            current_price=price,
            target_price=market.target_price,
            condition_above=market.condition_above,
            resolution_time=market.resolution_time,
            yes_pool=market.yes_pool,
            no_pool=market.no_pool,
            price_history=state.history_for(source.id),
            now=now,
        )
        s = analysis.signals
        dist = f"{'+' if s.price_distance > 0 else ''}{s.price_distance}%"
        self._activity.add(
            state.agent_id, profile.display_name,
            f"Market #{market_id} ({source.symbol}): ${price:.2f} vs target "
            f"${market.target_price:.2f} ({'ABOVE' if market.condition_above else 'BELOW'}) "
            f"| Dist: {dist} | Mom: {s.momentum} | Urg: {s.time_urgency}% "
            f"| Conf: {analysis.confidence}% [threshold: {profile.confidence_threshold}%]",
        )

        if not check_confidence(profile, analysis.confidence):
            log.info("engine.below_threshold", agent_id=state.agent_id, market_id=market_id,
                     confidence=analysis.confidence, threshold=profile.confidence_threshold)
            self._activity.add(
                state.agent_id, profile.display_name,
                f"Market #{market_id} ({source.symbol}): Confidence {analysis.confidence}% "
                f"below threshold {profile.confidence_threshold}%, skipping.",
            )
            return None

        return await self.dispatcher.dispatch(profile, market, source, price, analysis, now)
