"""Tests for the audit trail, activity feed and per-agent stats."""

from __future__ import annotations

import pytest

from src.config import StorageConfig
from src.storage.agent_stats import STATS_KEY, AgentStatsStore
from src.storage.audit import AUDIT_KEY, ActivityLog, AuditLog
from src.storage.database import MemoryBackend
from src.storage.encrypted_store import EncryptedStore
from src.storage.models import AuditEntry


async def _reopen(backend: MemoryBackend, cfg: StorageConfig) -> EncryptedStore:
    store = EncryptedStore(backend, cfg, secret="test-secret")
    await store.init()
    return store


# ─── audit trail ────────────────────────────────────────────────────────

class TestAuditLog:
    @pytest.mark.asyncio
    async def test_newest_first(self, store: EncryptedStore) -> None:
        audit = AuditLog(store)
        await audit.record(1, "started", 'Agent "A" started')
        await audit.record(1, "scan", "Scan complete: 0 markets")
        assert [e.action for e in audit.entries()] == ["scan", "started"]

    @pytest.mark.asyncio
    async def test_capped_at_500(self, store: EncryptedStore) -> None:
        audit = AuditLog(store)
        for i in range(505):
            await audit.record(1, "scan", f"scan {i}")
        assert len(audit) == 500
        entries = audit.entries()
        assert entries[0].summary == "scan 504"
        assert entries[-1].summary == "scan 5"
        assert len(await store.get_item(AUDIT_KEY)) == 500

    @pytest.mark.asyncio
    async def test_order_stable_across_reload(self, store: EncryptedStore, backend: MemoryBackend,
                                              storage_config: StorageConfig) -> None:
        audit = AuditLog(store)
        for action in ("started", "scan", "recommendation", "executed", "stopped"):
            await audit.record(7, action, action)
        before = [e.id for e in audit.entries()]

        reloaded = AuditLog(await _reopen(backend, storage_config))
        assert await reloaded.load() == 5
        assert [e.id for e in reloaded.entries()] == before
        timestamps = [e.timestamp for e in reloaded.entries()]
        assert timestamps == sorted(timestamps, reverse=True)

    @pytest.mark.asyncio
    async def test_timestamps_monotonic_when_clock_steps_back(self, store: EncryptedStore) -> None:
        clock = iter([1000.0, 900.0, 1100.0])
        audit = AuditLog(store, clock=lambda: next(clock))
        for i in range(3):
            await audit.record(1, "scan", str(i))
        assert [e.timestamp for e in reversed(audit.entries())] == [1000.0, 1000.0, 1100.0]

    @pytest.mark.asyncio
    async def test_checksums_verify_after_reload(self, store: EncryptedStore,
                                                 backend: MemoryBackend,
                                                 storage_config: StorageConfig) -> None:
        audit = AuditLog(store)
        await audit.record(1, "recommendation", "YES on TLT", details="why",
                           metadata={"confidence": 70, "direction": True, "symbol": "TLT"})
        reloaded = AuditLog(await _reopen(backend, storage_config))
        await reloaded.load()
        assert reloaded.verify_all() == (1, 0)
        assert reloaded.entries()[0].metadata == {"confidence": 70, "direction": True, "symbol": "TLT"}

    def test_tampered_entry_fails_verification(self) -> None:
        entry = AuditEntry(id="x", agent_id=1, timestamp=1.0, action="scan", summary="ok")
        assert entry.verify_integrity()
        entry.summary = "edited"
        assert not entry.verify_integrity()

    def test_accepts_camel_case_keys(self) -> None:
        entry = AuditEntry.model_validate(
            {"id": "x", "agentId": 3, "timestamp": 1.0, "action": "funded", "summary": "ok"}
        )
        assert entry.agent_id == 3

    @pytest.mark.asyncio
    async def test_filters(self, store: EncryptedStore) -> None:
        audit = AuditLog(store)
        await audit.record(1, "scan", "a")
        await audit.record(2, "scan", "b")
        await audit.record(1, "error", "c")
        assert [e.summary for e in audit.entries(agent_id=1)] == ["c", "a"]
        assert [e.summary for e in audit.entries(action="scan")] == ["b", "a"]
        assert len(audit.entries(limit=1)) == 1
        assert audit.summary()["by_action"] == {"scan": 2, "error": 1}

    @pytest.mark.asyncio
    async def test_bad_persisted_entries_skipped(self, store: EncryptedStore) -> None:
        good = AuditEntry(id="g", agent_id=1, timestamp=1.0, action="scan", summary="ok")
        await store.set_item(AUDIT_KEY, [{"id": "bad"}, good.model_dump()])
        audit = AuditLog(store)
        assert await audit.load() == 1

    @pytest.mark.asyncio
    async def test_persist_failure_keeps_memory(self, store: EncryptedStore,
                                                backend: MemoryBackend,
                                                monkeypatch: pytest.MonkeyPatch) -> None:
        async def boom(key: str, data: bytes) -> None:
            raise OSError("read-only")

        monkeypatch.setattr(backend, "set", boom)
        audit = AuditLog(store)
        entry = await audit.record(1, "error", "Scan failed: x")
        assert audit.entries() == [entry]


# ─── activity feed ──────────────────────────────────────────────────────

class TestActivityLog:
    def test_ring_buffer(self) -> None:
        feed = ActivityLog(max_entries=200)
        for i in range(250):
            feed.add(1, "A", f"msg {i}")
        assert len(feed) == 200
        assert feed.entries()[0].message == "msg 249"
        assert feed.entries()[-1].message == "msg 50"

    def test_filter_and_limit(self) -> None:
        feed = ActivityLog()
        feed.add(1, "A", "one", "scan")
        feed.add(2, "B", "two", "error")
        assert [e.message for e in feed.entries(agent_id=2)] == ["two"]
        assert feed.entries(limit=1)[0].to_dict()["type"] == "error"


# ─── stats ──────────────────────────────────────────────────────────────

class TestAgentStats:
    @pytest.mark.asyncio
    async def test_weighted_average_confidence(self, store: EncryptedStore) -> None:
        stats = AgentStatsStore(store)
        await stats.record_scan(1, [60, 70])
        s = await stats.record_scan(1, [80])
        assert s.total_scans == 2
        assert s.total_recommendations == 3
        assert s.avg_confidence == 70

    @pytest.mark.asyncio
    async def test_empty_scan_keeps_average(self, store: EncryptedStore) -> None:
        stats = AgentStatsStore(store)
        await stats.record_scan(1, [64])
        s = await stats.record_scan(1, [])
        assert s.avg_confidence == 64
        assert s.total_scans == 2

    @pytest.mark.asyncio
    async def test_approve_reject_and_reload(self, store: EncryptedStore) -> None:
        stats = AgentStatsStore(store)
        await stats.record_scan(1, [70], executed=1, staked=5.0)
        await stats.record_approved(1, 2.5)
        await stats.record_rejected(1)
        await stats.record_rejected(2)

        reloaded = AgentStatsStore(store)
        await reloaded.load()
        s = reloaded.get(1)
        assert (s.total_executed, s.total_approved, s.total_rejected) == (2, 1, 1)
        assert s.total_staked == pytest.approx(7.5)
        assert reloaded.get(2).total_rejected == 1
        assert reloaded.get(99).total_scans == 0

    @pytest.mark.asyncio
    async def test_reads_legacy_pair_list(self, store: EncryptedStore) -> None:
        await store.set_item(STATS_KEY, [
            [4, {"stats": {"totalScans": 9, "avgConfidence": 66}, "color": "#fff"}],
        ])
        stats = AgentStatsStore(store)
        await stats.load()
        assert stats.get(4).total_scans == 9
        s = await stats.record_scan(4, [])
        assert s.total_scans == 10
        assert s.avg_confidence == 66
