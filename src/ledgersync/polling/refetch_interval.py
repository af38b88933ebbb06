from __future__ import annotations

"""Refetch-interval resolvers for cached ledger reads.

Each read query asks its resolver, once per fetch cycle, how long to wait
before the next fetch. Layers, highest priority first:

  1. Post-mutation polling (MutationPollStore.decide): keeps polling until the
     data object changes after a write, or the poll window runs out.
  2. Known future events: a pending admin delay change (effect_at) or a
     pending admin transfer whose expiration is a timestamp. Polling speeds up
     as the effect time approaches.
  3. Nothing pending: no polling.
"""

import logging
import time
from typing import Any, Callable, Mapping, Optional

from pydantic import ValidationError

from ledgersync.ledger.types import AdminInfo
from ledgersync.polling.mutation_registry import MutationPollStore, PollDecision

log = logging.getLogger("ledgersync.refetch_interval")

# Effect time already passed: poll fast until the read reflects it.
OVERDUE_POLL_MS = 5_000
# Effect within NEAR_WINDOW_S seconds.
NEAR_POLL_MS = 15_000
NEAR_WINDOW_S = 120
FAR_POLL_MS = 60_000


def _now_s() -> float:
    return time.time()


def countdown_interval(effect_at_s: float, now_s: Optional[float] = None) -> int:
    """Poll delay (ms) for an event scheduled at UNIX time `effect_at_s`."""
    now = _now_s() if now_s is None else float(now_s)
    seconds_left = float(effect_at_s) - now
    if seconds_left <= 0:
        return OVERDUE_POLL_MS
    if seconds_left <= NEAR_WINDOW_S:
        return NEAR_POLL_MS
    return FAR_POLL_MS


def _as_admin_info(data: Any) -> Optional[AdminInfo]:
    if data is None:
        return None
    if isinstance(data, AdminInfo):
        return data
    if isinstance(data, Mapping):
        try:
            return AdminInfo.model_validate(dict(data))
        except ValidationError:
            log.debug("admin info payload did not validate; treating as no pending change", exc_info=True)
            return None
    return None


def admin_countdown_interval(data: Any, now_s: Optional[float] = None) -> PollDecision:
    """Domain layers only (2 and 3) for an admin info read."""
    info = _as_admin_info(data)
    if info is None:
        return False

    delay_info = info.delay_info
    pending_delay = delay_info.pending_delay if delay_info is not None else None
    if pending_delay is not None and pending_delay.effect_at:
        return countdown_interval(pending_delay.effect_at, now_s)

    # delay_info only exists on timestamp-based admin rules; without it the
    # expiration is a block number and is not schedulable here.
    if info.pending_transfer is not None and info.state == "pending" and delay_info is not None:
        expiration_ts = info.pending_transfer.expiration_block
        if expiration_ts:
            return countdown_interval(expiration_ts, now_s)

    return False


def compute_admin_refetch_interval(
    store: MutationPollStore,
    data: Any,
    key: str,
    data_updated_at: int,
    *,
    now_s: Optional[float] = None,
) -> PollDecision:
    """Layered refetch interval for the admin info query of entity `key`."""
    mutation_poll = store.decide(key, "admin", data, data_updated_at)
    if mutation_poll is not False:
        return mutation_poll
    return admin_countdown_interval(data, now_s)


def post_mutation_only(store: MutationPollStore, query_name: str) -> Callable[[Any, str, int], PollDecision]:
    """Resolver for reads with no domain countdown (roles, ownership, history)."""

    def _compute(data: Any, key: str, data_updated_at: int) -> PollDecision:
        return store.decide(key, query_name, data, data_updated_at)

    return _compute


def admin_resolver(store: MutationPollStore) -> Callable[[Any, str, int], PollDecision]:
    """Resolver for the admin info query: post-mutation polling, then the countdown."""

    def _compute(data: Any, key: str, data_updated_at: int) -> PollDecision:
        return compute_admin_refetch_interval(store, data, key, data_updated_at)

    return _compute
