"""Encrypted key/value store.

Every value is JSON-serialized, UTF-8 encoded and sealed with AES-256-GCM
before it reaches the backend. Stored layout is ``nonce (12 bytes) ||
ciphertext+tag``.

The AES key is derived from an operator secret with PBKDF2-HMAC-SHA256
(fixed salt, 100k iterations by default). Derivation happens once per store
instance and the key only lives in memory.

Writers to the same logical key must go through ``update()`` (or hold
``lock(key)``) so read-modify-write cycles from different agents do not
clobber each other. Different keys never contend.
"""

from __future__ import annotations

import asyncio
import json
import os
import time
from collections import defaultdict
from typing import Any, Awaitable, Callable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from src.config import StorageConfig, get_storage_secret
from src.storage.database import StorageBackend
from src.observability.logger import get_logger

log = get_logger(__name__)

# Not secret; only has to stay stable so existing data stays readable.
KDF_SALT = bytes([
    0xBE, 0x11, 0xEF, 0xAA, 0x72, 0x6B, 0x65, 0x74,
    0x73, 0x61, 0x6C, 0x74, 0x32, 0x30, 0x32, 0x36,
])
NONCE_SIZE = 12
MIGRATION_FLAG = "migrated_to_encrypted_store"


def derive_key(secret: str, iterations: int, salt: bytes = KDF_SALT) -> bytes:
    """PBKDF2-HMAC-SHA256 -> 32-byte AES key."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(secret.encode("utf-8"))


class EncryptedStore:
    """Async encrypted key/value store over a pluggable backend."""

    def __init__(
        self,
        backend: StorageBackend,
        config: StorageConfig | None = None,
        secret: str | None = None,
    ):
        self._backend = backend
        self._config = config or StorageConfig()
        self._secret = secret
        self._aead: AESGCM | None = None
        self._key_lock = asyncio.Lock()
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._initialized = False

    # ── Lifecycle ────────────────────────────────────────────────────

    async def init(self) -> None:
        """Connect the backend and derive the key."""
        if self._initialized:
            return
        await self._backend.connect()
        await self._ensure_key()
        self._initialized = True
        log.info("store.initialized", backend=type(self._backend).__name__)

    async def close(self) -> None:
        await self._backend.close()
        self._aead = None
        self._initialized = False

    @property
    def backend(self) -> StorageBackend:
        return self._backend

    async def _ensure_key(self) -> AESGCM:
        if self._aead is not None:
            return self._aead
        async with self._key_lock:
            if self._aead is None:
                secret = self._secret
                if secret is None:
                    secret, is_fallback = get_storage_secret(self._config)
                    if is_fallback:
                        log.warning(
                            "store.insecure_fallback_secret",
                            env_var=self._config.secret_env_var,
                        )
                # PBKDF2 at 100k rounds blocks for a while; run it off the loop
                key = await asyncio.to_thread(
                    derive_key, secret, self._config.kdf_iterations,
                )
                self._aead = AESGCM(key)
        return self._aead

    # ── Crypto ───────────────────────────────────────────────────────

    async def _seal(self, value: Any) -> bytes:
        aead = await self._ensure_key()
        plaintext = json.dumps(value, separators=(",", ":")).encode("utf-8")
        nonce = os.urandom(NONCE_SIZE)
        return nonce + aead.encrypt(nonce, plaintext, None)

    async def _open(self, blob: bytes) -> Any:
        aead = await self._ensure_key()
        if len(blob) <= NONCE_SIZE:
            raise ValueError("ciphertext too short")
        nonce, ciphertext = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
        plaintext = aead.decrypt(nonce, ciphertext, None)
        return json.loads(plaintext.decode("utf-8"))

    # ── Public API ───────────────────────────────────────────────────

    async def set_item(self, key: str, value: Any) -> bool:
        """Encrypt and store ``value``. Returns False if persisting failed."""
        try:
            blob = await self._seal(value)
            await self._backend.set(key, blob)
            log.debug("store.set", key=key, size=len(blob))
            return True
        except Exception as e:
            log.error("store.set_failed", key=key, error=str(e))
            return False

    async def get_item(self, key: str) -> Any | None:
        """Decrypt and return the value for ``key``; None if absent or unreadable."""
        try:
            blob = await self._backend.get(key)
        except Exception as e:
            log.error("store.read_failed", key=key, error=str(e))
            return None
        if blob is None:
            return None
        try:
            return await self._open(blob)
        except (InvalidTag, ValueError, UnicodeDecodeError) as e:
            log.error("store.decrypt_failed", key=key, error=type(e).__name__)
            return None

    async def remove_item(self, key: str) -> bool:
        try:
            await self._backend.remove(key)
            return True
        except Exception as e:
            log.error("store.remove_failed", key=key, error=str(e))
            return False

    async def list_keys(self) -> list[str]:
        try:
            return await self._backend.list_keys()
        except Exception as e:
            log.error("store.list_keys_failed", error=str(e))
            return []

    # ── Per-key serialization ────────────────────────────────────────

    def lock(self, key: str) -> asyncio.Lock:
        """The lock guarding read-modify-write cycles on ``key``."""
        return self._locks[key]

    async def update(
        self,
        key: str,
        fn: Callable[[Any], Any] | Callable[[Any], Awaitable[Any]],
        default: Any = None,
    ) -> Any:
        """Serialized read-modify-write of one key.

        ``fn`` receives the current value (or ``default``) and returns the new
        value, which is persisted and returned.
        """
        async with self.lock(key):
            current = await self.get_item(key)
            if current is None:
                current = default
            new_value = fn(current)
            if asyncio.iscoroutine(new_value):
                new_value = await new_value
            await self.set_item(key, new_value)
            return new_value

    # ── Legacy migration ─────────────────────────────────────────────

    async def migrate_legacy(self, keys: list[str] | None = None) -> int:
        """Move legacy plaintext values into the encrypted store, once.

        Returns the number of keys migrated (0 if the flag was already set).
        """
        if await self._backend.get_flag(MIGRATION_FLAG):
            return 0

        migrated = 0
        for key in keys if keys is not None else self._config.legacy_keys:
            try:
                raw = await self._backend.get_legacy(key)
                if raw is None:
                    continue
                parsed = json.loads(raw)
                async with self.lock(key):
                    if not await self.set_item(key, parsed):
                        continue
                await self._backend.remove_legacy(key)
                migrated += 1
                log.info("store.migrated_key", key=key)
            except Exception as e:
                log.error("store.migrate_failed", key=key, error=str(e))

        await self._backend.set_flag(MIGRATION_FLAG, str(int(time.time() * 1000)))
        if migrated:
            log.info("store.migration_complete", migrated=migrated)
        return migrated
