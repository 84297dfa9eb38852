"""Tests for the delegate key vault."""

from __future__ import annotations

import asyncio

import pytest
from eth_account import Account

from src.config import StorageConfig
from src.execution.key_vault import WALLET_KEY, KeyVault
from src.storage.database import MemoryBackend
from src.storage.encrypted_store import EncryptedStore

from conftest import FakeLedger


class TestKeyVault:
    @pytest.mark.asyncio
    async def test_create_and_get(self, store: EncryptedStore) -> None:
        vault = KeyVault(store)
        address = await vault.create(1)
        assert address.startswith("0x") and len(address) == 42

        account = await vault.get(1)
        assert account is not None
        assert account.address == address
        assert await vault.has(1)
        assert await vault.address(1) == address

    @pytest.mark.asyncio
    async def test_exported_key_controls_address(self, store: EncryptedStore) -> None:
        vault = KeyVault(store)
        address = await vault.create(5)
        key = await vault.export_private_key(5)
        assert key is not None and key.startswith("0x") and len(key) == 66
        assert Account.from_key(key).address == address

    @pytest.mark.asyncio
    async def test_one_wallet_per_agent(self, store: EncryptedStore) -> None:
        vault = KeyVault(store)
        first = await vault.create(1)
        second = await vault.create(1)
        await vault.create(2)

        assert first != second
        wallets = await vault.list_wallets()
        assert sorted(w["agent_id"] for w in wallets) == [1, 2]
        assert await vault.address(1) == second

    @pytest.mark.asyncio
    async def test_persisted_across_instances(self, store: EncryptedStore, backend: MemoryBackend,
                                              storage_config: StorageConfig) -> None:
        address = await KeyVault(store).create(3)

        reopened = EncryptedStore(backend, storage_config, secret="test-secret")
        await reopened.init()
        assert await KeyVault(reopened).address(3) == address

    @pytest.mark.asyncio
    async def test_list_hides_keys(self, store: EncryptedStore) -> None:
        vault = KeyVault(store)
        await vault.create(1)
        (entry,) = await vault.list_wallets()
        assert set(entry) == {"agent_id", "address", "created_at"}

    @pytest.mark.asyncio
    async def test_delete(self, store: EncryptedStore) -> None:
        vault = KeyVault(store)
        await vault.create(1)
        assert await vault.delete(1)
        assert not await vault.delete(1)
        assert await vault.get(1) is None
        assert await vault.export_private_key(1) is None
        assert await store.get_item(WALLET_KEY) == []

    @pytest.mark.asyncio
    async def test_concurrent_first_access_loads_once(self, store: EncryptedStore,
                                                      monkeypatch: pytest.MonkeyPatch) -> None:
        await KeyVault(store).create(1)
        reads = 0
        original = store.get_item

        async def counting_get(key: str):
            nonlocal reads
            reads += 1
            await asyncio.sleep(0)
            return await original(key)

        monkeypatch.setattr(store, "get_item", counting_get)
        vault = KeyVault(store)
        results = await asyncio.gather(*(vault.has(1) for _ in range(10)))
        assert all(results)
        assert reads == 1

    @pytest.mark.asyncio
    async def test_reads_legacy_camel_case_wallets(self, store: EncryptedStore) -> None:
        acct = Account.create()
        await store.set_item(WALLET_KEY, [{
            "agentId": 9,
            "privateKey": "0x" + bytes(acct.key).hex(),
            "address": acct.address,
            "createdAt": 1_700_000_000_000,
        }])
        vault = KeyVault(store)
        assert await vault.address(9) == acct.address
        (entry,) = await vault.list_wallets()
        assert entry["created_at"] == 1_700_000_000

    @pytest.mark.asyncio
    async def test_sign_and_submit(self, store: EncryptedStore) -> None:
        vault = KeyVault(store)
        address = await vault.create(1)
        ledger = FakeLedger()

        tx = await vault.sign_and_submit(ledger, 1, 4, "0xe1", 2_500_000)
        assert tx.startswith("0x")
        (sub,) = ledger.submissions
        assert sub["signer"] == address
        assert (sub["market_id"], sub["stake_units"]) == (4, 2_500_000)

    @pytest.mark.asyncio
    async def test_sign_and_submit_without_wallet(self, store: EncryptedStore) -> None:
        with pytest.raises(LookupError):
            await KeyVault(store).sign_and_submit(FakeLedger(), 1, 0, "0xe1", 1)

    @pytest.mark.asyncio
    async def test_repr_hides_private_key(self, store: EncryptedStore) -> None:
        from src.storage.models import DelegateWallet

        vault = KeyVault(store)
        await vault.create(1)
        key = await vault.export_private_key(1)
        wallet = DelegateWallet(agent_id=1, private_key=key, address="0xa")
        assert key not in repr(wallet)
        assert key not in str(wallet)
