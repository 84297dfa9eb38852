"""Delegate key vault.

Each agent gets an ephemeral secp256k1 keypair whose address the owner
registers on the ledger as the agent's delegate. Auto-execute agents sign
their own position submissions with it, so the owner never has to.

All wallets live in one list under a single encrypted store key. The list
is loaded lazily, once, and every mutation rewrites it under that key's lock.
"""

from __future__ import annotations

import asyncio
from typing import Any

from eth_account import Account
from eth_account.signers.local import LocalAccount
from pydantic import ValidationError

from src.connectors.ledger import LedgerAdapter
from src.storage.encrypted_store import EncryptedStore
from src.storage.models import DelegateWallet
from src.observability.logger import get_logger
from src.observability.metrics import metrics

log = get_logger(__name__)

WALLET_KEY = "agent_wallets"


class KeyVault:
    def __init__(self, store: EncryptedStore):
        self._store = store
        self._wallets: list[DelegateWallet] | None = None
        self._load_lock = asyncio.Lock()

    async def _ensure_loaded(self) -> list[DelegateWallet]:
        if self._wallets is not None:
            return self._wallets
        async with self._load_lock:
            if self._wallets is None:
                wallets: list[DelegateWallet] = []
                for item in await self._store.get_item(WALLET_KEY) or []:
                    try:
                        wallets.append(DelegateWallet.model_validate(item))
                    except ValidationError as e:
                        log.warning("vault.bad_wallet_skipped", error=str(e))
                self._wallets = wallets
                log.debug("vault.loaded", wallets=len(wallets))
        return self._wallets

    async def _persist(self) -> bool:
        async with self._store.lock(WALLET_KEY):
            snapshot = [w.model_dump() for w in self._wallets or []]
            ok = await self._store.set_item(WALLET_KEY, snapshot)
        if not ok:
            log.warning("vault.persist_failed", wallets=len(snapshot))
        return ok

    async def _find(self, agent_id: int) -> DelegateWallet | None:
        for w in await self._ensure_loaded():
            if w.agent_id == agent_id:
                return w
        return None

    # ── Public API ───────────────────────────────────────────────────

    async def create(self, agent_id: int) -> str:
        """Generate a fresh keypair for ``agent_id`` and return its address.

        Any previous wallet for the same agent is replaced.
        """
        account = Account.create()
        wallet = DelegateWallet(
            agent_id=agent_id,
            private_key="0x" + bytes(account.key).hex(),
            address=account.address,
        )
        wallets = await self._ensure_loaded()
        replaced = any(w.agent_id == agent_id for w in wallets)
        self._wallets = [w for w in wallets if w.agent_id != agent_id] + [wallet]
        await self._persist()
        log.info("vault.wallet_created", agent_id=agent_id, address=wallet.address,
                 replaced=replaced)
        return wallet.address

    async def get(self, agent_id: int) -> LocalAccount | None:
        wallet = await self._find(agent_id)
        return Account.from_key(wallet.private_key) if wallet else None

    async def has(self, agent_id: int) -> bool:
        return await self._find(agent_id) is not None

    async def address(self, agent_id: int) -> str | None:
        wallet = await self._find(agent_id)
        return wallet.address if wallet else None

    async def export_private_key(self, agent_id: int) -> str | None:
        wallet = await self._find(agent_id)
        if wallet is None:
            return None
        log.warning("vault.private_key_exported", agent_id=agent_id)
        return wallet.private_key

    async def delete(self, agent_id: int) -> bool:
        wallets = await self._ensure_loaded()
        remaining = [w for w in wallets if w.agent_id != agent_id]
        if len(remaining) == len(wallets):
            return False
        self._wallets = remaining
        await self._persist()
        log.info("vault.wallet_deleted", agent_id=agent_id)
        return True

    async def list_wallets(self) -> list[dict[str, Any]]:
        """Agent id, address and creation time of every wallet. No keys."""
        return [
            {"agent_id": w.agent_id, "address": w.address, "created_at": w.created_at}
            for w in await self._ensure_loaded()
        ]

    async def sign_and_submit(
        self,
        ledger: LedgerAdapter,
        agent_id: int,
        market_id: int,
        encrypted_direction: str,
        stake_units: int,
    ) -> str:
        """Submit a position signed by the agent's delegate key; returns the tx hash."""
        account = await self.get(agent_id)
        if account is None:
            raise LookupError(f"No delegate wallet for agent {agent_id}")
        tx_hash = await ledger.submit_position_for_agent(
            account, agent_id, market_id, encrypted_direction, stake_units,
        )
        metrics.incr("vault.submissions", agent_id=agent_id)
        log.info("vault.position_submitted", agent_id=agent_id, market_id=market_id,
                 tx_hash=tx_hash)
        return tx_hash
