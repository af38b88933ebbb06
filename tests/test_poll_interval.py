from __future__ import annotations

import pytest

from ledgersync.polling.poll_interval import compute_block_poll_interval
from ledgersync.runtime.sync_config import SyncConfig


@pytest.mark.parametrize(
    "avg_ms, expected",
    [
        (None, 10_000),
        (12_000, 15_000),
        (5_000, 6_250),
        (4_000, 5_000),
        (1_000, 5_000),
        (24_000, 30_000),
        (100_000, 30_000),
    ],
)
def test_block_poll_interval_scales_and_clamps(avg_ms, expected) -> None:
    assert compute_block_poll_interval(avg_ms) == expected


def test_rounds_half_up() -> None:
    # 4802 * 1.25 = 6002.5
    assert compute_block_poll_interval(4_802) == 6_003


def test_custom_bounds() -> None:
    cfg = SyncConfig(default_block_poll_ms=8_000, min_block_poll_ms=2_000, max_block_poll_ms=8_000, block_poll_multiplier=2.0)
    assert compute_block_poll_interval(None, cfg) == 8_000
    assert compute_block_poll_interval(500, cfg) == 2_000
    assert compute_block_poll_interval(3_000, cfg) == 6_000
    assert compute_block_poll_interval(6_000, cfg) == 8_000
