"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path
from typing import Any, AsyncIterator, Callable

import pytest
import pytest_asyncio

# Ensure src is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from src.config import EngineConfig, StorageConfig  # noqa: E402
from src.connectors.direction_cipher import DirectionCipher  # noqa: E402
from src.connectors.ledger import (  # noqa: E402
    AgentProfile,
    LedgerAdapter,
    MarketView,
    PositionStatus,
    PositionView,
)
from src.connectors.price_oracle import PriceResult  # noqa: E402
from src.engine.loop import DecisionEngine  # noqa: E402
from src.execution.key_vault import KeyVault  # noqa: E402
from src.observability.metrics import metrics  # noqa: E402
from src.storage.agent_stats import AgentStatsStore  # noqa: E402
from src.storage.audit import ActivityLog, AuditLog  # noqa: E402
from src.storage.database import MemoryBackend  # noqa: E402
from src.storage.encrypted_store import EncryptedStore  # noqa: E402

NOW = 1_700_000_000.0
DAY = 86_400.0


# ─── fakes ──────────────────────────────────────────────────────────────

class FakeLedger(LedgerAdapter):
    """In-memory ledger. Submissions create ACTIVE positions unless told not to."""

    def __init__(
        self,
        agents: list[AgentProfile] | None = None,
        markets: list[MarketView] | None = None,
    ):
        self.agents: dict[int, AgentProfile] = {a.agent_id: a for a in agents or []}
        self.markets: list[MarketView] = list(markets or [])
        self.positions: dict[int, PositionView] = {}
        self.agent_positions: dict[int, list[int]] = {}
        self.submissions: list[dict[str, Any]] = []
        self.record_positions = True
        self.fail_submit: Exception | None = None
        self.fail_markets: set[int] = set()
        self.fail_agent_reads = 0
        self.fail_position_reads = False
        self.agent_gate: asyncio.Event | None = None
        self.submit_gate: asyncio.Event | None = None
        self.submit_started = asyncio.Event()

    def add_position(self, agent_id: int, market_id: int,
                     status: PositionStatus = PositionStatus.ACTIVE) -> int:
        pos_id = len(self.positions)
        self.positions[pos_id] = PositionView(position_id=pos_id, market_id=market_id, status=status)
        self.agent_positions.setdefault(agent_id, []).append(pos_id)
        return pos_id

    async def market_count(self) -> int:
        return len(self.markets)

    async def get_market(self, market_id: int) -> MarketView:
        if market_id in self.fail_markets:
            raise RuntimeError("rpc unavailable")
        return self.markets[market_id]

    async def get_agent(self, agent_id: int) -> AgentProfile:
        if self.agent_gate is not None:
            await self.agent_gate.wait()
        if self.fail_agent_reads:
            self.fail_agent_reads -= 1
            raise RuntimeError("ledger read failed")
        return self.agents[agent_id].model_copy()

    async def get_agent_position_ids(self, agent_id: int) -> list[int]:
        if self.fail_position_reads:
            raise RuntimeError("positions unavailable")
        return list(self.agent_positions.get(agent_id, []))

    async def get_position(self, position_id: int) -> PositionView:
        return self.positions[position_id]

    async def get_owner_agent_ids(self, owner: str) -> list[int]:
        return [a.agent_id for a in self.agents.values() if a.owner == owner]

    async def submit_position_for_agent(
        self,
        account: Any,
        agent_id: int,
        market_id: int,
        encrypted_direction: str,
        stake_units: int,
    ) -> str:
        self.submit_started.set()
        if self.submit_gate is not None:
            await self.submit_gate.wait()
        if self.fail_submit is not None:
            raise self.fail_submit
        self.submissions.append({
            "signer": account.address,
            "agent_id": agent_id,
            "market_id": market_id,
            "encrypted_direction": encrypted_direction,
            "stake_units": stake_units,
        })
        if self.record_positions:
            self.add_position(agent_id, market_id)
        return "0x" + f"{len(self.submissions):064x}"


class FakeCipher(DirectionCipher):
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.payloads: list[str] = []

    async def encrypt_message(self, payload_hex: str) -> str:
        if self.fail:
            raise ConnectionError("threshold network unreachable")
        self.payloads.append(payload_hex)
        return "e1" + payload_hex[2:]


class FakeOracle:
    """Fixed prices keyed by data-source id."""

    def __init__(self, prices: dict[int, float] | None = None):
        self.prices = dict(prices or {})
        self.calls = 0

    async def fetch_all_prices(self) -> list[PriceResult]:
        self.calls += 1
        return [
            PriceResult(source_id=sid, price=p, timestamp=NOW, success=True)
            for sid, p in self.prices.items()
        ]

    async def close(self) -> None:
        pass


# ─── builders ───────────────────────────────────────────────────────────

def make_profile(agent_id: int = 1, **overrides: Any) -> AgentProfile:
    defaults: dict[str, Any] = dict(
        agent_id=agent_id,
        owner="0xowner",
        name=f"Agent {agent_id}",
        personality="balanced",
        max_stake_per_market=10.0,
        max_total_exposure=100.0,
        confidence_threshold=60,
        auto_execute=False,
        is_active=True,
        balance=50.0,
    )
    defaults.update(overrides)
    return AgentProfile(**defaults)


def make_market(market_id: int = 0, **overrides: Any) -> MarketView:
    # Defaults: WTI/USD, target 100, well before resolution
    defaults: dict[str, Any] = dict(
        market_id=market_id,
        data_source_id=2,
        target_price=100.0,
        condition_above=True,
        resolution_time=NOW + 10 * DAY,
        yes_pool=0.0,
        no_pool=0.0,
    )
    defaults.update(overrides)
    return MarketView(**defaults)


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


# ─── fixtures ───────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def _reset_metrics() -> None:
    metrics.reset()


@pytest.fixture
def storage_config() -> StorageConfig:
    # Low iteration count keeps key derivation fast in tests
    return StorageConfig(kdf_iterations=1_000)


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest_asyncio.fixture
async def store(backend: MemoryBackend, storage_config: StorageConfig) -> AsyncIterator[EncryptedStore]:
    s = EncryptedStore(backend, storage_config, secret="test-secret")
    await s.init()
    yield s
    await s.close()


class Harness:
    """An engine wired to fakes, plus handles on every collaborator."""

    def __init__(self, store: EncryptedStore, ledger: FakeLedger, oracle: Any,
                 cipher: FakeCipher, config: EngineConfig):
        self.store = store
        self.ledger = ledger
        self.oracle = oracle
        self.cipher = cipher
        self.vault = KeyVault(store)
        self.audit = AuditLog(store)
        self.activity = ActivityLog()
        self.stats = AgentStatsStore(store)
        self.engine = DecisionEngine(
            ledger, oracle, cipher, self.vault, self.audit, self.activity, self.stats,
            config, clock=lambda: NOW,
        )

    def actions(self, agent_id: int | None = None) -> list[str]:
        """Audit actions, oldest first."""
        return [e.action for e in reversed(self.audit.entries(agent_id=agent_id))]

    def activity_messages(self, agent_id: int | None = None) -> list[str]:
        return [e.message for e in self.activity.entries(agent_id=agent_id)]


@pytest_asyncio.fixture
async def make_harness(store: EncryptedStore) -> AsyncIterator[Callable[..., Harness]]:
    created: list[Harness] = []

    def _make(
        agents: list[AgentProfile] | None = None,
        markets: list[MarketView] | None = None,
        prices: dict[int, float] | None = None,
        cipher: FakeCipher | None = None,
        oracle: Any = None,
        **engine_overrides: Any,
    ) -> Harness:
        config = EngineConfig(**{"scan_interval_secs": 3600.0, **engine_overrides})
        h = Harness(
            store,
            FakeLedger(agents, markets),
            oracle or FakeOracle({2: 110.0} if prices is None else prices),
            cipher or FakeCipher(),
            config,
        )
        created.append(h)
        return h

    yield _make

    for h in created:
        await h.engine.close()
