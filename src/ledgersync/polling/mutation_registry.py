from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Literal, Optional, Union

from ledgersync.ledger.types import MutationPreview
from ledgersync.runtime.metrics import inc_counter, set_gauge
from ledgersync.runtime.sync_config import SyncConfig, sync_config_from_env
from ledgersync.runtime.sync_logging import log_event

log = logging.getLogger("ledgersync.mutation_registry")

# A refetch decision: next poll delay in ms, or False to stop polling.
PollDecision = Union[int, Literal[False]]
Listener = Callable[[], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


def entity_key(ecosystem: str, address: str) -> str:
    """Scope of a mutation's staleness window: one contract on one ecosystem."""
    return f"{str(ecosystem).strip().lower()}:{str(address).strip()}"


@dataclass
class MutationPollState:
    timestamp: int
    preview: Optional[MutationPreview] = None
    # query name -> the data object observed on the first post-mutation fetch
    snapshots: Dict[str, Any] = field(default_factory=dict)


class MutationPollStore:
    """Per-entity record of "a write just happened".

    After a write, ledger RPC nodes may keep serving the old state for an
    unknown time. The store lets every read query of the entity keep polling
    until one of them observes a new data object, or until the poll window
    runs out.

    All state changes for one entity key are serialized under that key's
    lock; listeners are notified outside of it.
    """

    def __init__(
        self,
        cfg: Optional[SyncConfig] = None,
        *,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.cfg = cfg or sync_config_from_env()
        self._clock = clock
        self._states: Dict[str, MutationPollState] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._listeners: List[Listener] = []

    # ------------------------------------------------------------------
    # Locking / notification
    # ------------------------------------------------------------------

    def _key_lock(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lk = self._locks.get(key)
            if lk is None:
                lk = threading.Lock()
                self._locks[key] = lk
            return lk

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns the matching unsubscribe."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def _notify(self) -> None:
        set_gauge("mutation_poll_active", len(self._states))
        for listener in list(self._listeners):
            try:
                listener()
            except Exception:
                log.exception("mutation poll listener failed")

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def record_mutation(self, key: str, preview: Optional[MutationPreview] = None) -> None:
        """Mark that a write for `key` just completed.

        Calls within the dedup window of the first one are ignored entirely,
        preview included. Later calls restart the window; a call without a
        preview keeps the preview and snapshots already collected.
        """
        now = self._clock()
        with self._key_lock(key):
            existing = self._states.get(key)
            if existing is not None and now - existing.timestamp < int(self.cfg.dedup_window_ms):
                return

            self._states[key] = MutationPollState(
                timestamp=now,
                preview=preview if preview is not None else (existing.preview if existing else None),
                snapshots=existing.snapshots if existing is not None else {},
            )

        inc_counter("mutation_recorded")
        log_event(
            log,
            "mutation_recorded",
            entity=key,
            preview_type=(preview.type if preview is not None else None),
            restarted=existing is not None,
        )
        self._notify()

    # ------------------------------------------------------------------
    # Refetch decision
    # ------------------------------------------------------------------

    def decide(self, key: str, query_name: str, current_data: Any, data_updated_at: int) -> PollDecision:
        """Next poll delay for one query of `key`, or False to stop.

        The first fetch that lands after the write only records a snapshot:
        it may have raced the write. Polling stops for the whole entity once
        any query sees a different data object than its snapshot.
        """
        now = self._clock()
        interval = int(self.cfg.post_mutation_poll_interval_ms)
        event: Optional[str] = None

        with self._key_lock(key):
            state = self._states.get(key)
            if state is None:
                return False

            if now - state.timestamp > int(self.cfg.poll_window_ms):
                del self._states[key]
                event = "mutation_poll_expired"
            elif int(data_updated_at) <= state.timestamp:
                return interval
            elif query_name not in state.snapshots:
                state.snapshots[query_name] = current_data
                return interval
            elif current_data is state.snapshots[query_name]:
                return interval
            else:
                del self._states[key]
                event = "mutation_poll_settled"

        inc_counter(event)
        log_event(log, event, entity=key, query=query_name, age_ms=now - state.timestamp)
        self._notify()
        return False

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, key: str) -> Optional[MutationPollState]:
        return self._states.get(key)

    def preview(self, key: str) -> Optional[MutationPreview]:
        state = self._states.get(key)
        return state.preview if state is not None else None

    def is_awaiting_update(self, key: str) -> bool:
        return key in self._states

    def active_keys(self) -> List[str]:
        return sorted(self._states.keys())

    def clear(self) -> None:
        with self._locks_guard:
            self._states.clear()
        self._notify()
