"""Shared configuration loader and Pydantic settings.

Supports:
  - YAML file loading with env var overrides
  - Subsystem configs: engine, storage, oracle, audit, observability
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


_PROJECT_ROOT = Path(__file__).resolve().parent.parent

# Used only when the operator never sets a secret. Logged loudly.
_INSECURE_FALLBACK_SECRET = "agent_engine_default_insecure_key_change_me"


class EngineConfig(BaseModel):
    """Per-agent decision loop configuration."""
    scan_interval_secs: float = 30.0
    max_recommendations_per_cycle: int = 10
    price_history_size: int = 20
    max_recommendations_kept: int = 100
    read_timeout_secs: float = 10.0


class StorageConfig(BaseModel):
    sqlite_path: str = "data/agent_store.db"
    secret_env_var: str = "AGENT_STORE_SECRET"
    kdf_iterations: int = 100_000
    # Legacy plaintext keys moved into the encrypted store by migrate_legacy()
    legacy_keys: list[str] = Field(default_factory=lambda: [
        "agent_wallets", "agent_local_data", "audit_trail",
    ])


class OracleConfig(BaseModel):
    """DIA price oracle settings."""
    base_url: str = "https://api.diadata.org/v1/rwa"
    timeout_secs: float = 4.0
    # Overall budget per quote, rate-limit wait and retries included. Keep it
    # under engine.read_timeout_secs so late sources fall back to simulated.
    deadline_secs: float = 6.0
    max_attempts: int = 2
    retry_wait_secs: float = 0.25
    simulated_jitter_pct: float = 0.005
    rate_limit_per_sec: float = 10.0
    rate_limit_burst: int = 25


class AuditConfig(BaseModel):
    max_entries: int = 500
    activity_max_entries: int = 200


class ObservabilityConfig(BaseModel):
    log_level: str = "INFO"
    log_format: str = "json"
    log_file: str = ""


class AppConfig(BaseModel):
    engine: EngineConfig = Field(default_factory=EngineConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    oracle: OracleConfig = Field(default_factory=OracleConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


def load_config(path: str | Path | None = None) -> AppConfig:
    """Load config from YAML file, falling back to defaults."""
    if path is None:
        path = _PROJECT_ROOT / "config.yaml"
    path = Path(path)
    if path.exists():
        with open(path) as f:
            raw: dict[str, Any] = yaml.safe_load(f) or {}
        return AppConfig(**raw)
    return AppConfig()


def get_storage_secret(config: StorageConfig) -> tuple[str, bool]:
    """Return (secret, is_fallback) for the encrypted store key derivation."""
    secret = os.environ.get(config.secret_env_var, "")
    if not secret:
        return _INSECURE_FALLBACK_SECRET, True
    return secret, False
