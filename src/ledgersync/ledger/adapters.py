from __future__ import annotations

"""Collaborator surfaces consumed by the sync engine.

The engine never implements these; hosts pass in objects that satisfy them
(wallet + chain adapter layer, query cache, selection state).
"""

from typing import Any, Hashable, Optional, Protocol, Sequence, runtime_checkable

from ledgersync.ledger.types import OperationResult

QueryKey = Sequence[Hashable]


@runtime_checkable
class MutationHandle(Protocol):
    """A write mechanism (one contract call wired to a wallet)."""

    status: str
    is_pending: bool

    async def mutate_async(self, args: Any) -> OperationResult: ...

    def reset(self) -> None: ...


@runtime_checkable
class LedgerAdapter(Protocol):
    """Per-network binding that knows how to read a specific ledger."""

    network_id: str
    supports_network_switch: bool

    async def get_current_block(self) -> int: ...


@runtime_checkable
class QueryClient(Protocol):
    """Read cache keyed by query keys; prefix matching is the client's concern."""

    async def invalidate_queries(self, key: QueryKey) -> None: ...

    async def refetch_queries(self, key: QueryKey) -> None: ...


@runtime_checkable
class WalletState(Protocol):
    """Wallet-side state: which network's adapter should be loaded."""

    def set_active_network_id(self, network_id: Optional[str]) -> None: ...


@runtime_checkable
class ChainSwitcher(Protocol):
    """Requests an in-place chain switch from the connected wallet."""

    async def switch_network(self, adapter: LedgerAdapter, target_network_id: str) -> None: ...
