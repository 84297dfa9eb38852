"""Audit trail and activity feed for agent actions.

AuditLog is the durable record: every start/stop, scan, recommendation,
execution, rejection and error lands here, newest first, capped to the most
recent ``max_entries`` (oldest silently evicted). The whole list is stored
under a single encrypted key and rewritten on each record.

ActivityLog mirrors the same stream at finer granularity into an
in-memory ring buffer for low-latency feedback. It is never persisted.
"""

from __future__ import annotations

import time
import uuid
from collections import deque
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Literal

from pydantic import ValidationError

from src.storage.encrypted_store import EncryptedStore
from src.storage.models import AuditAction, AuditEntry, MetadataValue
from src.observability.logger import get_logger

log = get_logger(__name__)

AUDIT_KEY = "audit_trail"

ActivityType = Literal["info", "scan", "recommendation", "execution", "error", "warning"]


class AuditLog:
    """Append-only, size-capped, persisted audit trail."""

    def __init__(
        self,
        store: EncryptedStore,
        max_entries: int = 500,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._clock = clock
        self._max_entries = max_entries
        self._entries: list[AuditEntry] = []
        self._last_ts = 0.0

    async def load(self) -> int:
        """Restore the persisted trail. Returns the number of entries loaded."""
        raw = await self._store.get_item(AUDIT_KEY)
        entries: list[AuditEntry] = []
        for item in raw or []:
            try:
                entries.append(AuditEntry.model_validate(item))
            except ValidationError as e:
                log.warning("audit.bad_entry_skipped", error=str(e))
        self._entries = entries[: self._max_entries]
        if self._entries:
            self._last_ts = max(self._last_ts, self._entries[0].timestamp)
        log.info("audit.loaded", entries=len(self._entries))
        return len(self._entries)

    async def record(
        self,
        agent_id: int,
        action: AuditAction,
        summary: str,
        details: str | None = None,
        metadata: dict[str, MetadataValue] | None = None,
    ) -> AuditEntry:
        """Prepend an entry, truncate, persist. Persistence failures are logged only."""
        # Wall clocks can step backwards; the trail must not.
        ts = max(self._clock(), self._last_ts)
        self._last_ts = ts

        entry = AuditEntry(
            id=uuid.uuid4().hex[:16],
            agent_id=agent_id,
            timestamp=ts,
            action=action,
            summary=summary,
            details=details,
            metadata=metadata,
        )
        self._entries.insert(0, entry)
        del self._entries[self._max_entries:]

        log.debug("audit.recorded", agent_id=agent_id, action=action, summary=summary)
        await self._persist()
        return entry

    async def _persist(self) -> None:
        async with self._store.lock(AUDIT_KEY):
            # Snapshot taken under the lock: whichever writer goes last
            # writes the newest state.
            snapshot = [e.model_dump() for e in self._entries]
            ok = await self._store.set_item(AUDIT_KEY, snapshot)
        if not ok:
            log.warning("audit.persist_failed", entries=len(snapshot))

    def entries(
        self,
        agent_id: int | None = None,
        action: AuditAction | None = None,
        limit: int | None = None,
    ) -> list[AuditEntry]:
        """Newest-first view with optional filters."""
        results = self._entries
        if agent_id is not None:
            results = [e for e in results if e.agent_id == agent_id]
        if action is not None:
            results = [e for e in results if e.action == action]
        if limit is not None:
            results = results[:limit]
        return list(results)

    def __len__(self) -> int:
        return len(self._entries)

    def verify_all(self) -> tuple[int, int]:
        """Verify integrity of all entries. Returns (valid, invalid)."""
        valid = sum(1 for e in self._entries if e.verify_integrity())
        return valid, len(self._entries) - valid

    def summary(self) -> dict[str, Any]:
        if not self._entries:
            return {"total_entries": 0}
        by_action: dict[str, int] = {}
        for e in self._entries:
            by_action[e.action] = by_action.get(e.action, 0) + 1
        return {
            "total_entries": len(self._entries),
            "by_action": by_action,
            "newest": self._entries[0].timestamp,
            "oldest": self._entries[-1].timestamp,
        }


@dataclass
class ActivityEntry:
    timestamp: float
    agent_id: int
    agent_name: str
    message: str
    type: ActivityType = "info"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ActivityLog:
    """In-memory ring buffer of recent engine activity, newest first."""
    max_entries: int = 200
    _entries: deque[ActivityEntry] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._entries = deque(maxlen=self.max_entries)

    def add(
        self,
        agent_id: int,
        agent_name: str,
        message: str,
        type: ActivityType = "info",
    ) -> ActivityEntry:
        entry = ActivityEntry(
            timestamp=time.time(),
            agent_id=agent_id,
            agent_name=agent_name,
            message=message,
            type=type,
        )
        self._entries.appendleft(entry)
        return entry

    def entries(self, agent_id: int | None = None, limit: int | None = None) -> list[ActivityEntry]:
        results = [e for e in self._entries if agent_id is None or e.agent_id == agent_id]
        return results[:limit] if limit is not None else results

    def __len__(self) -> int:
        return len(self._entries)

    def clear(self) -> None:
        self._entries.clear()
