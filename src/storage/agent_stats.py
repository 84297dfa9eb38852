"""Per-agent lifetime counters persisted in the encrypted store.

All agents share one key, so every change goes through the store's
serialized read-modify-write.
"""

from __future__ import annotations

from typing import Any

from src.storage.encrypted_store import EncryptedStore
from src.storage.models import AgentStats
from src.observability.logger import get_logger

log = get_logger(__name__)

STATS_KEY = "agent_local_data"


def _decode(raw: Any) -> dict[str, dict[str, Any]]:
    # Older data was a list of [agent_id, {"stats": {...}, ...}] pairs.
    if isinstance(raw, list):
        out: dict[str, dict[str, Any]] = {}
        for item in raw:
            if isinstance(item, (list, tuple)) and len(item) == 2:
                agent_id, data = item
                stats = data.get("stats", data) if isinstance(data, dict) else {}
                out[str(agent_id)] = stats
        return out
    if isinstance(raw, dict):
        return {str(k): v for k, v in raw.items()}
    return {}


class AgentStatsStore:
    def __init__(self, store: EncryptedStore):
        self._store = store
        self._cache: dict[int, AgentStats] = {}

    async def load(self) -> None:
        raw = _decode(await self._store.get_item(STATS_KEY))
        self._cache = {int(k): AgentStats.model_validate(v) for k, v in raw.items()}

    def get(self, agent_id: int) -> AgentStats:
        return self._cache.get(agent_id, AgentStats()).model_copy()

    async def _apply(self, agent_id: int, mutate) -> AgentStats:
        result: dict[str, AgentStats] = {}

        def _update(current: Any) -> dict[str, Any]:
            data = _decode(current)
            stats = AgentStats.model_validate(data.get(str(agent_id), {}))
            mutate(stats)
            data[str(agent_id)] = stats.model_dump()
            result["stats"] = stats
            return data

        await self._store.update(STATS_KEY, _update, default={})
        self._cache[agent_id] = result["stats"]
        return result["stats"]

    async def record_scan(
        self,
        agent_id: int,
        confidences: list[int],
        executed: int = 0,
        staked: float = 0.0,
    ) -> AgentStats:
        """One completed scan producing ``confidences`` new signals."""

        def _mutate(stats: AgentStats) -> None:
            prev_count = stats.total_recommendations
            new_count = prev_count + len(confidences)
            stats.total_scans += 1
            if confidences:
                batch_avg = sum(confidences) / len(confidences)
                stats.avg_confidence = round(
                    (stats.avg_confidence * prev_count + batch_avg * len(confidences))
                    / new_count
                )
            stats.total_recommendations = new_count
            stats.total_executed += executed
            stats.total_staked = round(stats.total_staked + staked, 6)

        return await self._apply(agent_id, _mutate)

    async def record_approved(self, agent_id: int, stake: float) -> AgentStats:
        def _mutate(stats: AgentStats) -> None:
            stats.total_approved += 1
            stats.total_executed += 1
            stats.total_staked = round(stats.total_staked + stake, 6)

        return await self._apply(agent_id, _mutate)

    async def record_rejected(self, agent_id: int) -> AgentStats:
        def _mutate(stats: AgentStats) -> None:
            stats.total_rejected += 1

        return await self._apply(agent_id, _mutate)
