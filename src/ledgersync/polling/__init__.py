"""
ledgersync polling package

Read-side reconciliation after writes:
  - mutation_registry: per-entity "a write just happened" store + poll decision
  - refetch_interval: layered refetch resolvers (post-mutation, countdowns)
  - block_time: rolling block time estimate + session calibrator
  - poll_interval: block-time-aware poll cadence
  - invalidation: mutation -> stale query keys, post-success invalidation pass
  - query_loop: one cached read driven by its refetch interval hook

Callers should route every write through invalidation and every read through
a resolver from refetch_interval, so both sides share one MutationPollStore.
"""

from __future__ import annotations

__all__ = [
    "mutation_registry",
    "refetch_interval",
    "block_time",
    "poll_interval",
    "invalidation",
    "query_loop",
]
