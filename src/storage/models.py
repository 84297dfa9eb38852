"""Storage models — Pydantic models for records kept in the encrypted store."""

from __future__ import annotations

import hashlib
import json
import time
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

AuditAction = Literal[
    "created",
    "funded",
    "withdrawn",
    "started",
    "stopped",
    "scan",
    "recommendation",
    "approved",
    "rejected",
    "executed",
    "config_updated",
    "error",
]

MetadataValue = Union[str, int, float, bool]


class AuditEntry(BaseModel):
    """One immutable audit record. Lists of these are stored newest first."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    agent_id: int
    timestamp: float
    action: AuditAction
    summary: str
    details: str | None = None
    metadata: dict[str, MetadataValue] | None = None
    checksum: str = ""

    def model_post_init(self, __context: Any) -> None:
        if not self.checksum:
            self.checksum = self.compute_checksum()

    def compute_checksum(self) -> str:
        """SHA-256 prefix over the entry content."""
        content = json.dumps({
            "id": self.id,
            "agent_id": self.agent_id,
            "timestamp": self.timestamp,
            "action": self.action,
            "summary": self.summary,
            "details": self.details,
            "metadata": self.metadata,
        }, sort_keys=True, default=str)
        return hashlib.sha256(content.encode()).hexdigest()[:16]

    def verify_integrity(self) -> bool:
        return self.checksum == self.compute_checksum()


class DelegateWallet(BaseModel):
    """Delegate signing key for one agent. Holds a raw private key."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    agent_id: int
    private_key: str
    address: str
    created_at: float = Field(default_factory=time.time)

    @field_validator("created_at")
    @classmethod
    def _seconds(cls, v: float) -> float:
        # Older wallets stored epoch milliseconds
        return v / 1000 if v > 1e12 else v

    def __repr__(self) -> str:
        return f"DelegateWallet(agent_id={self.agent_id}, address={self.address!r})"

    __str__ = __repr__


class AgentStats(BaseModel):
    """Lifetime counters for one agent, kept across restarts."""
    # Accept the camelCase keys written by older releases
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    total_scans: int = 0
    total_recommendations: int = 0
    total_executed: int = 0
    total_approved: int = 0
    total_rejected: int = 0
    avg_confidence: int = 0
    total_staked: float = 0.0
