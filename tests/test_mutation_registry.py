from __future__ import annotations

import threading

from ledgersync.ledger.types import MutationPreview
from ledgersync.polling.mutation_registry import MutationPollStore, entity_key
from ledgersync.runtime import metrics
from ledgersync.runtime.sync_config import SyncConfig


class _Clock:
    def __init__(self, t: int = 1_000_000) -> None:
        self.t = t

    def __call__(self) -> int:
        return self.t


KEY = "evm:0xabc"


def _store(clock: _Clock) -> MutationPollStore:
    return MutationPollStore(SyncConfig(), clock=clock)


def test_entity_key_normalizes_ecosystem() -> None:
    assert entity_key("EVM", " 0xAbC ") == "evm:0xAbC"


def test_decide_without_mutation_stops_polling() -> None:
    store = _store(_Clock())
    assert store.decide(KEY, "roles", {"a": 1}, 5) is False
    assert store.is_awaiting_update(KEY) is False


def test_record_within_dedup_window_keeps_first_preview() -> None:
    clock = _Clock()
    store = _store(clock)
    first = MutationPreview(type="grantRole", args={"roleId": "r1"})
    second = MutationPreview(type="revokeRole", args={"roleId": "r2"})

    store.record_mutation(KEY, first)
    t0 = clock.t

    clock.t = t0 + 500
    store.record_mutation(KEY, second)
    assert store.preview(KEY) is first
    assert store.get(KEY).timestamp == t0

    clock.t = t0 + 1_001
    store.record_mutation(KEY, second)
    assert store.preview(KEY) is second
    assert store.get(KEY).timestamp == t0 + 1_001


def test_record_without_preview_keeps_existing_preview_and_snapshots() -> None:
    clock = _Clock()
    store = _store(clock)
    preview = MutationPreview(type="grantRole", args={"account": "0x1"})
    data = {"roles": []}

    store.record_mutation(KEY, preview)
    clock.t += 10
    assert store.decide(KEY, "roles", data, clock.t) == 5_000

    clock.t += 2_000
    store.record_mutation(KEY)
    assert store.preview(KEY) is preview
    assert store.get(KEY).snapshots["roles"] is data


def test_first_fetch_after_write_is_only_a_snapshot() -> None:
    """The first post-write read may have raced the write; it must not end polling."""
    clock = _Clock()
    store = _store(clock)
    store.record_mutation(KEY)
    t0 = clock.t

    stale = {"roles": ["admin"]}
    # Data fetched before (or at) the write keeps polling without a snapshot.
    assert store.decide(KEY, "roles", stale, t0) == 5_000
    assert "roles" not in store.get(KEY).snapshots

    clock.t = t0 + 100
    assert store.decide(KEY, "roles", stale, t0 + 100) == 5_000
    assert store.get(KEY).snapshots["roles"] is stale

    # Same object: the node is still serving the old state.
    clock.t = t0 + 5_100
    assert store.decide(KEY, "roles", stale, t0 + 5_100) == 5_000
    assert store.is_awaiting_update(KEY) is True


def test_new_data_object_clears_whole_entity() -> None:
    clock = _Clock()
    store = _store(clock)
    metrics.reset()
    store.record_mutation(KEY)
    t0 = clock.t

    before = {"roles": ["admin"]}
    owner = {"owner": "0x1"}
    clock.t = t0 + 100
    assert store.decide(KEY, "roles", before, clock.t) == 5_000
    assert store.decide(KEY, "ownership", owner, clock.t) == 5_000

    # An equal-but-new object counts as new data.
    clock.t = t0 + 5_100
    assert store.decide(KEY, "roles", {"roles": ["admin"]}, clock.t) is False
    assert store.is_awaiting_update(KEY) is False

    # Other queries of the entity stop too.
    assert store.decide(KEY, "ownership", owner, clock.t) is False
    assert metrics.snapshot()["counters"]["mutation_poll_settled"] == 1


def test_window_expiry_stops_regardless_of_data() -> None:
    clock = _Clock()
    store = _store(clock)
    metrics.reset()
    store.record_mutation(KEY)
    t0 = clock.t

    clock.t = t0 + 100
    data = {"x": 1}
    assert store.decide(KEY, "roles", data, clock.t) == 5_000

    clock.t = t0 + 30_001
    assert store.decide(KEY, "roles", data, clock.t) is False
    assert store.get(KEY) is None
    assert metrics.snapshot()["counters"]["mutation_poll_expired"] == 1


def test_entities_are_independent() -> None:
    clock = _Clock()
    store = _store(clock)
    other = "stellar:CABC"
    store.record_mutation(KEY)
    store.record_mutation(other)

    clock.t += 100
    a = {"v": 1}
    assert store.decide(KEY, "roles", a, clock.t) == 5_000
    clock.t += 100
    assert store.decide(KEY, "roles", {"v": 2}, clock.t) is False

    assert store.active_keys() == [other]


def test_listeners_and_active_gauge() -> None:
    clock = _Clock()
    store = _store(clock)
    metrics.reset()
    calls = []
    unsubscribe = store.subscribe(lambda: calls.append(store.active_keys()))

    store.record_mutation(KEY)
    assert calls == [[KEY]]
    assert metrics.snapshot()["gauges"]["mutation_poll_active"] == 1

    # Deduplicated record is a no-op: no notification.
    store.record_mutation(KEY)
    assert len(calls) == 1

    unsubscribe()
    store.clear()
    assert len(calls) == 1
    assert metrics.snapshot()["gauges"]["mutation_poll_active"] == 0


def test_failing_listener_does_not_break_recording() -> None:
    store = _store(_Clock())

    def _boom() -> None:
        raise RuntimeError("listener failed")

    store.subscribe(_boom)
    store.record_mutation(KEY)
    assert store.is_awaiting_update(KEY) is True


def _run_together(n: int, fn) -> list:
    barrier = threading.Barrier(n)
    results = [None] * n

    def _worker(i: int) -> None:
        barrier.wait()
        results[i] = fn(i)

    threads = [threading.Thread(target=_worker, args=(i,)) for i in range(n)]
    for th in threads:
        th.start()
    for th in threads:
        th.join(timeout=5)
    assert not any(th.is_alive() for th in threads)
    return results


def test_concurrent_records_on_one_key_keep_a_single_entry() -> None:
    metrics.reset()
    clock = _Clock()
    store = _store(clock)
    previews = [MutationPreview(type="grantRole", args={"i": i}) for i in range(16)]

    _run_together(16, lambda i: store.record_mutation(KEY, previews[i]))

    assert metrics.snapshot()["counters"]["mutation_recorded"] == 1
    assert store.active_keys() == [KEY]
    assert store.preview(KEY) in previews
    assert store.get(KEY).timestamp == clock.t


def test_concurrent_decides_settle_exactly_once() -> None:
    metrics.reset()
    clock = _Clock()
    store = _store(clock)
    store.record_mutation(KEY)
    assert store.decide(KEY, "roles", {"roles": []}, clock.t + 1) == 5_000

    results = _run_together(16, lambda i: store.decide(KEY, "roles", {"roles": [i]}, clock.t + 1))

    assert results == [False] * 16
    assert metrics.snapshot()["counters"]["mutation_poll_settled"] == 1
    assert store.is_awaiting_update(KEY) is False
    assert store.active_keys() == []
