from __future__ import annotations

import math
from typing import Optional

from ledgersync.runtime.sync_config import SyncConfig, default_sync_config


def compute_block_poll_interval(avg_block_time_ms: Optional[float], cfg: Optional[SyncConfig] = None) -> int:
    """Poll roughly once per block, whatever the chain.

    ~12 s blocks poll every ~15 s, ~5 s ledgers every ~6 s, and slow chains are
    capped so countdowns stay responsive. While block time is still
    calibrating (None) a fixed default is used.
    """
    c = cfg or default_sync_config()
    if avg_block_time_ms is None:
        return int(c.default_block_poll_ms)
    scaled = math.floor(float(avg_block_time_ms) * float(c.block_poll_multiplier) + 0.5)
    return min(int(c.max_block_poll_ms), max(int(c.min_block_poll_ms), scaled))
