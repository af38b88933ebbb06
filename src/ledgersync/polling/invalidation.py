from __future__ import annotations

"""Mutation -> stale query mapping and the post-success invalidation pass.

Rules:
  - Every mutation invalidates the contract history (prefix key).
  - Mutations that change role membership invalidate basic and enriched roles.
  - Ownership/admin mutations force-refetch their primary key before the
    mutation counts as done.
  - Admin delay changes (and cancelling an admin transfer) schedule a second
    invalidation pass, since RPC nodes often serve the old value for a few
    seconds after the receipt.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple

from ledgersync.ledger.adapters import QueryClient, QueryKey
from ledgersync.ledger.types import MutationPreview
from ledgersync.polling.mutation_registry import MutationPollStore
from ledgersync.runtime.errors import SyncError
from ledgersync.runtime.sync_logging import log_event

log = logging.getLogger("ledgersync.invalidation")

MUTATION_TYPES = (
    "grantRole",
    "revokeRole",
    "renounceRole",
    "transferOwnership",
    "acceptOwnership",
    "renounceOwnership",
    "transferAdmin",
    "acceptAdmin",
    "cancelAdmin",
    "changeAdminDelay",
    "rollbackAdminDelay",
)


class QueryKeys:
    """Cache keys shared by every read and every invalidation."""

    @staticmethod
    def contract_roles(address: str) -> Tuple[str, ...]:
        return ("contractRoles", address)

    @staticmethod
    def contract_roles_enriched(address: str) -> Tuple[str, ...]:
        return ("contractRolesEnriched", address)

    @staticmethod
    def contract_ownership(address: str) -> Tuple[str, ...]:
        return ("contractOwnership", address)

    @staticmethod
    def contract_admin_info(address: str) -> Tuple[str, ...]:
        return ("contractAdminInfo", address)

    @staticmethod
    def contract_capabilities(address: str) -> Tuple[str, ...]:
        return ("contractCapabilities", address)

    @staticmethod
    def contract_history(address: str) -> Tuple[str, ...]:
        # Prefix key: history queries append their filter params.
        return ("contract-history", address)

    @staticmethod
    def current_block(network_id: Optional[str]) -> Tuple[Optional[str], ...]:
        return ("currentBlock", network_id)

    @staticmethod
    def expiration_metadata(address: str, transfer_type: str, network_id: Optional[str]) -> Tuple[Optional[str], ...]:
        return ("expirationMetadata", address, transfer_type, network_id)


KeyFactory = Callable[[str], List[QueryKey]]


@dataclass(frozen=True)
class InvalidationConfig:
    keys: KeyFactory
    await_refetch: Optional[KeyFactory] = None
    deferred_refetch: bool = False


def _roles_and_history(addr: str) -> List[QueryKey]:
    return [
        QueryKeys.contract_roles(addr),
        QueryKeys.contract_roles_enriched(addr),
        QueryKeys.contract_history(addr),
    ]


def _ownership_and_history(addr: str) -> List[QueryKey]:
    return [QueryKeys.contract_ownership(addr), QueryKeys.contract_history(addr)]


def _ownership_roles_and_history(addr: str) -> List[QueryKey]:
    return [QueryKeys.contract_ownership(addr)] + _roles_and_history(addr)


def _admin_and_history(addr: str) -> List[QueryKey]:
    return [QueryKeys.contract_admin_info(addr), QueryKeys.contract_history(addr)]


def _admin_roles_and_history(addr: str) -> List[QueryKey]:
    return [QueryKeys.contract_admin_info(addr)] + _roles_and_history(addr)


def _ownership_only(addr: str) -> List[QueryKey]:
    return [QueryKeys.contract_ownership(addr)]


def _admin_only(addr: str) -> List[QueryKey]:
    return [QueryKeys.contract_admin_info(addr)]


INVALIDATION_MAP: Dict[str, InvalidationConfig] = {
    "grantRole": InvalidationConfig(keys=_roles_and_history),
    "revokeRole": InvalidationConfig(keys=_roles_and_history),
    "renounceRole": InvalidationConfig(keys=_roles_and_history),
    "transferOwnership": InvalidationConfig(keys=_ownership_and_history, await_refetch=_ownership_only),
    "acceptOwnership": InvalidationConfig(keys=_ownership_roles_and_history, await_refetch=_ownership_only),
    "renounceOwnership": InvalidationConfig(keys=_ownership_roles_and_history, await_refetch=_ownership_only),
    "transferAdmin": InvalidationConfig(keys=_admin_and_history, await_refetch=_admin_only),
    "acceptAdmin": InvalidationConfig(keys=_admin_roles_and_history, await_refetch=_admin_only),
    "cancelAdmin": InvalidationConfig(keys=_admin_and_history, await_refetch=_admin_only, deferred_refetch=True),
    "changeAdminDelay": InvalidationConfig(keys=_admin_and_history, await_refetch=_admin_only, deferred_refetch=True),
    "rollbackAdminDelay": InvalidationConfig(keys=_admin_and_history, await_refetch=_admin_only, deferred_refetch=True),
}


@dataclass
class InvalidationExecutor:
    """Runs the post-success invalidation pass for one session's query cache."""

    store: MutationPollStore
    client: QueryClient
    _deferred: Set[asyncio.TimerHandle] = field(default_factory=set)
    _tasks: Set[asyncio.Task] = field(default_factory=set)

    async def execute(
        self,
        mutation_type: str,
        key: str,
        address: str,
        preview_args: Optional[Mapping[str, Any]] = None,
    ) -> None:
        cfg = INVALIDATION_MAP.get(mutation_type)
        if cfg is None:
            raise SyncError("unknown_mutation_type", "no invalidation config", {"mutation_type": mutation_type})

        preview = None
        if preview_args is not None:
            preview = MutationPreview(type=mutation_type, args=dict(preview_args))
        self.store.record_mutation(key, preview)

        stale = cfg.keys(address)
        for qk in stale:
            await self.client.invalidate_queries(qk)

        if cfg.await_refetch is not None:
            for qk in cfg.await_refetch(address):
                await self.client.refetch_queries(qk)

        if cfg.deferred_refetch:
            self._schedule_deferred(stale)

        log_event(
            log,
            "invalidation_executed",
            mutation_type=mutation_type,
            entity=key,
            keys=[list(k) for k in stale],
            deferred=cfg.deferred_refetch,
        )

    def _schedule_deferred(self, stale: List[QueryKey]) -> None:
        loop = asyncio.get_running_loop()
        delay_s = int(self.store.cfg.deferred_refetch_ms) / 1000.0
        handle: Optional[asyncio.TimerHandle] = None

        def _fire() -> None:
            self._deferred.discard(handle)  # type: ignore[arg-type]
            task = loop.create_task(self._deferred_pass(stale))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        handle = loop.call_later(delay_s, _fire)
        self._deferred.add(handle)

    async def _deferred_pass(self, stale: List[QueryKey]) -> None:
        for qk in stale:
            try:
                await self.client.invalidate_queries(qk)
            except Exception as e:
                log_event(log, "invalidation_deferred_failed", level=logging.WARNING, key=list(qk), error=str(e))

    @property
    def pending_deferred(self) -> int:
        return len(self._deferred)

    def cancel_pending(self) -> None:
        for handle in list(self._deferred):
            handle.cancel()
        self._deferred.clear()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
