from __future__ import annotations

import json
import logging
import os
import time
from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from ledgersync.runtime.sync_config import SyncConfig

Json = Dict[str, Any]


def _now_ms() -> int:
    return int(time.time() * 1000)


def configure_structured_logging(level_name: str | None = None, *, cfg: Optional[SyncConfig] = None) -> None:
    """Configure stdlib logging for JSONL output (stdout).

    - Level from the argument, else cfg.log_level, else LEDGERSYNC_LOG_LEVEL
      (default INFO).
    - Safe to call multiple times.
    """
    cfg_level = cfg.log_level if cfg is not None else None
    raw = level_name or cfg_level or os.environ.get("LEDGERSYNC_LOG_LEVEL") or "INFO"
    level = getattr(logging, raw.strip().upper(), logging.INFO)

    root = logging.getLogger("ledgersync")
    if getattr(root, "_ledgersync_configured", False):  # type: ignore[attr-defined]
        root.setLevel(level)
        for h in root.handlers:
            h.setLevel(level)
        return

    handler = logging.StreamHandler()
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    root.handlers = [handler]
    root.setLevel(level)
    root.propagate = False
    setattr(root, "_ledgersync_configured", True)  # type: ignore[attr-defined]


def log_event(logger: logging.Logger, event: str, *, level: int = logging.INFO, **fields: Any) -> None:
    """Emit a single JSONL log event.

    Values that are not JSON serializable fall back to a key=value line.
    """
    if not logger.isEnabledFor(level):
        return
    payload: Json = {"ts_ms": _now_ms(), "event": str(event)}
    payload.update(fields)
    try:
        logger.log(level, json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))
    except (TypeError, ValueError):
        parts = [f"event={event}"] + [f"{k}={fields.get(k)!r}" for k in sorted(fields.keys())]
        logger.log(level, " ".join(parts))
