from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Literal, Optional

from ledgersync.ledger.adapters import LedgerAdapter
from ledgersync.polling.poll_interval import compute_block_poll_interval
from ledgersync.runtime.sync_config import SyncConfig, sync_config_from_env
from ledgersync.runtime.sync_logging import log_event

log = logging.getLogger("ledgersync.block_time")

Confidence = Literal["low", "medium", "high"]

LOW_CONFIDENCE_THRESHOLD = 5
MEDIUM_CONFIDENCE_THRESHOLD = 10


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True, slots=True)
class BlockSample:
    block: int
    timestamp_ms: int


@dataclass(frozen=True, slots=True)
class BlockTimeEstimate:
    avg_block_time_ms: Optional[float]
    sample_count: int
    is_calibrating: bool
    confidence: Confidence


def format_ms_to_readable_time(ms: float) -> str:
    seconds = int(ms // 1000)
    minutes = seconds // 60
    hours = minutes // 60
    days = hours // 24

    if days > 0:
        remaining_hours = hours % 24
        if remaining_hours > 0 and days < 7:
            return f"~{days}d {remaining_hours}h"
        return f"~{days} day{'s' if days > 1 else ''}"

    if hours > 0:
        remaining_minutes = minutes % 60
        if remaining_minutes > 0:
            return f"~{hours}h {remaining_minutes}m"
        return f"~{hours} hour{'s' if hours > 1 else ''}"

    if minutes > 0:
        return f"~{minutes} minute{'s' if minutes > 1 else ''}"

    return "< 1 minute"


class BlockTimeEstimator:
    """Rolling average of observed block/ledger production time.

    Samples live in a ring buffer of `max_samples`. The average is the mean of
    consecutive deltas, weighted by blocks advanced, which telescopes to
    (t_last - t_first) / (b_last - b_first). Samples that do not advance the
    block number are dropped.
    """

    def __init__(self, *, min_samples: int = 3, max_samples: int = 20) -> None:
        if min_samples < 2:
            raise ValueError(f"min_samples must be >= 2; got: {min_samples}")
        if max_samples < min_samples:
            raise ValueError(f"max_samples must be >= min_samples; got: {max_samples} < {min_samples}")
        self.min_samples = int(min_samples)
        self.max_samples = int(max_samples)
        self._samples: Deque[BlockSample] = deque(maxlen=self.max_samples)

    @classmethod
    def from_config(cls, cfg: SyncConfig) -> "BlockTimeEstimator":
        return cls(min_samples=cfg.block_time_min_samples, max_samples=cfg.block_time_max_samples)

    def add_sample(self, block_number: int, timestamp_ms: int) -> bool:
        """Record one observation; returns False when it was dropped."""
        b = int(block_number)
        ts = int(timestamp_ms)
        if self._samples:
            last = self._samples[-1]
            if b <= last.block or ts <= last.timestamp_ms:
                return False
        self._samples.append(BlockSample(block=b, timestamp_ms=ts))
        return True

    @property
    def sample_count(self) -> int:
        return len(self._samples)

    @property
    def is_full(self) -> bool:
        return len(self._samples) >= self.max_samples

    def _average(self) -> Optional[float]:
        if len(self._samples) < max(2, self.min_samples):
            return None
        first = self._samples[0]
        last = self._samples[-1]
        blocks = last.block - first.block
        elapsed = last.timestamp_ms - first.timestamp_ms
        if blocks <= 0 or elapsed <= 0:
            return None
        return elapsed / blocks

    def estimate(self) -> BlockTimeEstimate:
        n = len(self._samples)
        if n < LOW_CONFIDENCE_THRESHOLD:
            confidence: Confidence = "low"
        elif n < MEDIUM_CONFIDENCE_THRESHOLD:
            confidence = "medium"
        else:
            confidence = "high"
        return BlockTimeEstimate(
            avg_block_time_ms=self._average(),
            sample_count=n,
            is_calibrating=n < self.min_samples,
            confidence=confidence,
        )

    def get_estimated_ms(self, blocks: int) -> Optional[float]:
        avg = self._average()
        if avg is None or blocks <= 0:
            return None
        return blocks * avg

    def format_blocks_to_time(self, blocks: int) -> Optional[str]:
        ms = self.get_estimated_ms(blocks)
        if ms is None:
            return None
        return format_ms_to_readable_time(ms)

    def clear(self) -> None:
        self._samples.clear()


@dataclass(frozen=True, slots=True)
class BlockExpirationEstimate:
    blocks_remaining: int
    time_estimate: Optional[str]


def calculate_block_expiration(
    expiration_block: int,
    current_block: Optional[int],
    format_blocks_to_time: Callable[[int], Optional[str]],
) -> Optional[BlockExpirationEstimate]:
    """Blocks (and estimated time) left before `expiration_block`; None if unknown or expired."""
    if current_block is None:
        return None
    if current_block >= expiration_block:
        return None
    remaining = int(expiration_block) - int(current_block)
    return BlockExpirationEstimate(blocks_remaining=remaining, time_estimate=format_blocks_to_time(remaining))


class BlockTimeCalibrator:
    """Session-wide block time calibration driven by contract selection.

    Polling only runs while an adapter is set (a contract is selected) and
    stops once the sample window is full. The first block seen after start is
    a reference point only: its observation time is not a block boundary.
    """

    def __init__(
        self,
        cfg: Optional[SyncConfig] = None,
        *,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.cfg = cfg or sync_config_from_env()
        self.estimator = BlockTimeEstimator.from_config(self.cfg)
        self._clock = clock
        self._adapter: Optional[LedgerAdapter] = None
        self._prev_block: Optional[int] = None
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def adapter(self) -> Optional[LedgerAdapter]:
        return self._adapter

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def estimate(self) -> BlockTimeEstimate:
        return self.estimator.estimate()

    def poll_interval_ms(self) -> int:
        """Chain-agnostic block poll cadence derived from the current estimate."""
        return compute_block_poll_interval(self.estimator.estimate().avg_block_time_ms, self.cfg)

    def observe(self, block_number: int) -> bool:
        """Feed one current-block reading; returns True when a sample was recorded."""
        b = int(block_number)
        prev = self._prev_block
        self._prev_block = b
        if prev is None or b == prev:
            return False
        recorded = self.estimator.add_sample(b, self._clock())
        if recorded:
            est = self.estimator.estimate()
            log_event(
                log,
                "block_time_sample",
                level=logging.DEBUG,
                block=b,
                sample_count=est.sample_count,
                avg_block_time_ms=est.avg_block_time_ms,
            )
        return recorded

    async def set_adapter(self, adapter: Optional[LedgerAdapter]) -> None:
        """Start calibrating against `adapter`, or stop when None.

        Switching to an adapter on another network discards the samples taken
        on the previous one.
        """
        if adapter is self._adapter:
            return
        await self.stop()
        previous = self._adapter
        self._adapter = adapter
        self._prev_block = None
        if previous is not None and (adapter is None or adapter.network_id != previous.network_id):
            self.estimator.clear()
        if adapter is not None:
            self.start()

    def start(self) -> None:
        if self._adapter is None or self.is_running:
            return
        self._stop = asyncio.Event()
        self._task = asyncio.create_task(self._poll_loop(), name="block-time-calibrator")
        log_event(log, "block_time_calibration_started", network_id=self._adapter.network_id)

    async def stop(self) -> None:
        self._stop.set()
        task = self._task
        self._task = None
        if task is not None:
            # A hung block read must not hold the stop.
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _poll_loop(self) -> None:
        adapter = self._adapter
        if adapter is None:
            return
        wait_s = int(self.cfg.block_time_poll_interval_ms) / 1000.0
        while not self._stop.is_set():
            if self.estimator.is_full:
                log_event(
                    log,
                    "block_time_calibrated",
                    network_id=adapter.network_id,
                    avg_block_time_ms=self.estimator.estimate().avg_block_time_ms,
                )
                return
            try:
                self.observe(await adapter.get_current_block())
            except Exception as e:
                log_event(
                    log,
                    "block_time_poll_failed",
                    level=logging.WARNING,
                    network_id=adapter.network_id,
                    error=str(e),
                )
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=wait_s)
            except asyncio.TimeoutError:
                continue
