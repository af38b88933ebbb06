from __future__ import annotations

import asyncio

import pytest

from ledgersync.polling.invalidation import (
    INVALIDATION_MAP,
    MUTATION_TYPES,
    InvalidationExecutor,
    QueryKeys,
)
from ledgersync.polling.mutation_registry import MutationPollStore
from ledgersync.runtime.errors import SyncError
from ledgersync.runtime.sync_config import SyncConfig

ADDR = "0xabc"
KEY = "evm:0xabc"


class _FakeClient:
    def __init__(self) -> None:
        self.invalidated = []
        self.refetched = []

    async def invalidate_queries(self, key) -> None:
        self.invalidated.append(tuple(key))

    async def refetch_queries(self, key) -> None:
        self.refetched.append(tuple(key))


def _executor(deferred_ms: int = 3_000):
    store = MutationPollStore(SyncConfig(deferred_refetch_ms=deferred_ms), clock=lambda: 1_000_000)
    client = _FakeClient()
    return InvalidationExecutor(store=store, client=client), store, client


def test_every_mutation_type_is_mapped_and_invalidates_history() -> None:
    assert set(MUTATION_TYPES) == set(INVALIDATION_MAP)
    for mutation_type, cfg in INVALIDATION_MAP.items():
        assert QueryKeys.contract_history(ADDR) in cfg.keys(ADDR), mutation_type


def test_query_keys_shape() -> None:
    assert QueryKeys.contract_roles(ADDR) == ("contractRoles", ADDR)
    assert QueryKeys.current_block("sepolia") == ("currentBlock", "sepolia")
    assert QueryKeys.expiration_metadata(ADDR, "admin", None) == ("expirationMetadata", ADDR, "admin", None)


@pytest.mark.asyncio
async def test_role_mutation_invalidates_roles_and_records_preview() -> None:
    ex, store, client = _executor()
    await ex.execute("grantRole", KEY, ADDR, {"roleId": "MINTER", "account": "0x1"})

    assert client.invalidated == [
        ("contractRoles", ADDR),
        ("contractRolesEnriched", ADDR),
        ("contract-history", ADDR),
    ]
    assert client.refetched == []
    assert ex.pending_deferred == 0

    preview = store.preview(KEY)
    assert preview is not None
    assert preview.type == "grantRole"
    assert preview.args == {"roleId": "MINTER", "account": "0x1"}


@pytest.mark.asyncio
async def test_ownership_mutation_awaits_refetch() -> None:
    ex, store, client = _executor()
    await ex.execute("acceptOwnership", KEY, ADDR)

    assert ("contractOwnership", ADDR) in client.invalidated
    assert ("contractRoles", ADDR) in client.invalidated
    assert client.refetched == [("contractOwnership", ADDR)]
    assert store.is_awaiting_update(KEY) is True
    assert store.preview(KEY) is None


@pytest.mark.asyncio
async def test_admin_delay_change_runs_deferred_pass() -> None:
    ex, _store, client = _executor(deferred_ms=10)
    await ex.execute("changeAdminDelay", KEY, ADDR)

    assert client.refetched == [("contractAdminInfo", ADDR)]
    assert ex.pending_deferred == 1
    first_pass = list(client.invalidated)

    await asyncio.sleep(0.1)
    assert ex.pending_deferred == 0
    assert client.invalidated == first_pass + first_pass


@pytest.mark.asyncio
async def test_cancel_pending_drops_deferred_pass() -> None:
    ex, _store, client = _executor(deferred_ms=20)
    await ex.execute("rollbackAdminDelay", KEY, ADDR)
    n = len(client.invalidated)

    ex.cancel_pending()
    assert ex.pending_deferred == 0
    await asyncio.sleep(0.06)
    assert len(client.invalidated) == n


@pytest.mark.asyncio
async def test_unknown_mutation_type_is_rejected() -> None:
    ex, store, client = _executor()
    with pytest.raises(SyncError) as ei:
        await ex.execute("mintTokens", KEY, ADDR)
    assert ei.value.code == "unknown_mutation_type"
    assert client.invalidated == []
    assert store.is_awaiting_update(KEY) is False
