from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from ledgersync.polling.mutation_registry import PollDecision
from ledgersync.runtime.errors import DataError, wrap_error
from ledgersync.runtime.sync_logging import log_event

log = logging.getLogger("ledgersync.query_loop")

Fetcher = Callable[[], Awaitable[Any]]


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class QueryState:
    data: Any = None
    data_updated_at: int = 0
    error: Optional[DataError] = None
    fetch_count: int = 0


IntervalFn = Callable[[QueryState], PollDecision]


class QueryPoller:
    """Hosts one cached read and its per-cycle refetch interval hook.

    After every fetch the interval function picks the next delay; False parks
    the loop until `invalidate()`. A fetched payload equal to the previous one
    keeps the previous object, so identity checks downstream only trip on
    genuinely new data. Fetch failures are kept on the state (previous data
    stays) and never stop the loop.
    """

    def __init__(
        self,
        name: str,
        fetch: Fetcher,
        interval_fn: IntervalFn,
        *,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.name = str(name)
        self._fetch = fetch
        self._interval_fn = interval_fn
        self._clock = clock
        self.state = QueryState()
        self._wake = asyncio.Event()
        self._stopped = False
        self._task: Optional[asyncio.Task] = None
        self.next_interval: PollDecision = False

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def fetch_once(self) -> QueryState:
        st = self.state
        try:
            fresh = await self._fetch()
        except Exception as e:
            st.error = wrap_error(e, self.name)
            log_event(
                log,
                "query_fetch_failed",
                level=logging.WARNING,
                query=self.name,
                category=st.error.category.value,
                error=st.error.message,
            )
        else:
            if st.fetch_count == 0 or fresh != st.data:
                st.data = fresh
            st.error = None
            st.data_updated_at = self._clock()
        st.fetch_count += 1
        return st

    def _decide(self) -> PollDecision:
        try:
            return self._interval_fn(self.state)
        except Exception:
            log.exception("refetch interval hook failed for %s; polling stopped", self.name)
            return False

    async def _run(self) -> None:
        while not self._stopped:
            self._wake.clear()
            await self.fetch_once()
            self.next_interval = self._decide()
            if self.next_interval is False:
                await self._wake.wait()
                continue
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=int(self.next_interval) / 1000.0)
            except asyncio.TimeoutError:
                continue

    def start(self) -> None:
        if self.is_running:
            return
        self._stopped = False
        self._task = asyncio.create_task(self._run(), name=f"query-poller:{self.name}")

    def invalidate(self) -> None:
        """Refetch now and resume polling if it was parked."""
        self._wake.set()

    async def stop(self) -> None:
        self._stopped = True
        self._wake.set()
        task = self._task
        self._task = None
        if task is not None:
            # Drops an in-flight fetch; no state update lands after stop.
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
