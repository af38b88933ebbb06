from __future__ import annotations

"""Pydantic models for the ledger reads and write results the engine inspects.

Keep this module small: the engine only looks at the fields that drive
polling decisions. Everything else the read layer returns is kept as extra
data (forward compatible).

Field names are snake_case; camelCase keys (as produced by JSON-RPC/indexer
payloads) are accepted as aliases.
"""

from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _LedgerModel(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True, alias_generator=to_camel)


class MutationPreview(_LedgerModel):
    """What a just-submitted write is expected to change, for ghost/shimmer rows."""

    type: str = Field(..., description="Mutation type, e.g. grantRole")
    args: Dict[str, Any] = Field(default_factory=dict, description="Mutation arguments, e.g. roleId/account")


class PendingDelay(_LedgerModel):
    new_delay: Optional[int] = Field(default=None, description="Delay (seconds) that will take effect")
    effect_at: Optional[int] = Field(default=None, description="UNIX timestamp (seconds) when it takes effect")


class DelayInfo(_LedgerModel):
    current_delay: Optional[int] = None
    pending_delay: Optional[PendingDelay] = None


class PendingTransfer(_LedgerModel):
    pending_owner: Optional[str] = None
    pending_admin: Optional[str] = None
    # Block number for block-based contracts, UNIX seconds when the contract
    # carries delay info (timestamp-based admin rules).
    expiration_block: Optional[int] = None
    initiated_at: Optional[int] = None


TransferState = Literal["owned", "active", "pending", "expired", "renounced"]


class AdminInfo(_LedgerModel):
    admin: Optional[str] = None
    state: Optional[TransferState] = None
    pending_transfer: Optional[PendingTransfer] = None
    delay_info: Optional[DelayInfo] = None


class OwnershipInfo(_LedgerModel):
    owner: Optional[str] = None
    state: Optional[TransferState] = None
    pending_transfer: Optional[PendingTransfer] = None


class OperationResult(_LedgerModel):
    """Result of a submitted write (transaction hash or relayer id)."""

    id: str
