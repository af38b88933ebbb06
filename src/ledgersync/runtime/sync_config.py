# src/ledgersync/runtime/sync_config.py
from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from ledgersync.env import load_dotenv_if_present

Json = Dict[str, Any]


def _as_int(v: Any, default: int) -> int:
    try:
        return int(v)
    except (TypeError, ValueError):
        return int(default)


def _as_float(v: Any, default: float) -> float:
    try:
        return float(v)
    except (TypeError, ValueError):
        return float(default)


def _as_str(v: Any, default: str) -> str:
    if v is None:
        return str(default)
    s = str(v)
    return s if s.strip() else str(default)


@dataclass(frozen=True, slots=True)
class SyncConfig:
    # Post-mutation polling
    poll_window_ms: int = 30_000
    post_mutation_poll_interval_ms: int = 5_000
    dedup_window_ms: int = 1_000
    deferred_refetch_ms: int = 3_000

    # Transaction dialogs
    auto_close_delay_ms: int = 1_500

    # Block time calibration
    block_time_poll_interval_ms: int = 10_000
    block_time_min_samples: int = 3
    block_time_max_samples: int = 20

    # Chain-agnostic block polling
    default_block_poll_ms: int = 10_000
    min_block_poll_ms: int = 5_000
    max_block_poll_ms: int = 30_000
    block_poll_multiplier: float = 1.25

    log_level: str = "INFO"


_ENV_PREFIX = "LEDGERSYNC_"


def default_sync_config() -> SyncConfig:
    return SyncConfig()


def validate_sync_config(cfg: SyncConfig) -> None:
    """Fail-fast validation so a typo cannot produce a busy-polling or never-polling engine."""

    if int(cfg.post_mutation_poll_interval_ms) < 250:
        raise ValueError(f"post_mutation_poll_interval_ms must be >= 250; got: {cfg.post_mutation_poll_interval_ms}")

    if int(cfg.poll_window_ms) < int(cfg.post_mutation_poll_interval_ms):
        raise ValueError(
            "poll_window_ms must be >= post_mutation_poll_interval_ms; "
            f"got: {cfg.poll_window_ms} < {cfg.post_mutation_poll_interval_ms}"
        )

    if int(cfg.dedup_window_ms) < 0:
        raise ValueError(f"dedup_window_ms must be >= 0; got: {cfg.dedup_window_ms}")

    if int(cfg.deferred_refetch_ms) < 0:
        raise ValueError(f"deferred_refetch_ms must be >= 0; got: {cfg.deferred_refetch_ms}")

    if int(cfg.auto_close_delay_ms) < 0:
        raise ValueError(f"auto_close_delay_ms must be >= 0; got: {cfg.auto_close_delay_ms}")

    if int(cfg.block_time_poll_interval_ms) < 250:
        raise ValueError(f"block_time_poll_interval_ms must be >= 250; got: {cfg.block_time_poll_interval_ms}")

    if int(cfg.block_time_min_samples) < 2:
        raise ValueError(f"block_time_min_samples must be >= 2; got: {cfg.block_time_min_samples}")

    if int(cfg.block_time_max_samples) < int(cfg.block_time_min_samples):
        raise ValueError(
            "block_time_max_samples must be >= block_time_min_samples; "
            f"got: {cfg.block_time_max_samples} < {cfg.block_time_min_samples}"
        )

    if int(cfg.min_block_poll_ms) <= 0 or int(cfg.max_block_poll_ms) < int(cfg.min_block_poll_ms):
        raise ValueError(
            f"block poll bounds must satisfy 0 < min <= max; got: [{cfg.min_block_poll_ms}, {cfg.max_block_poll_ms}]"
        )

    if not (int(cfg.min_block_poll_ms) <= int(cfg.default_block_poll_ms) <= int(cfg.max_block_poll_ms)):
        raise ValueError(f"default_block_poll_ms must lie within the block poll bounds; got: {cfg.default_block_poll_ms}")

    if float(cfg.block_poll_multiplier) <= 0:
        raise ValueError(f"block_poll_multiplier must be > 0; got: {cfg.block_poll_multiplier}")


def _coerce(raw: Json, base: SyncConfig) -> SyncConfig:
    updates: Json = {}
    for f in fields(SyncConfig):
        if f.name not in raw:
            continue
        current = getattr(base, f.name)
        v = raw[f.name]
        if isinstance(current, int):
            updates[f.name] = _as_int(v, current)
        elif isinstance(current, float):
            updates[f.name] = _as_float(v, current)
        else:
            updates[f.name] = _as_str(v, current)
    return replace(base, **updates)


def read_sync_config_file(path: str, *, base: Optional[SyncConfig] = None) -> SyncConfig:
    p = Path(path)
    raw = yaml.safe_load(p.read_text(encoding="utf-8"))
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError("sync config must be a YAML mapping")

    section = raw.get("ledgersync", raw)
    if not isinstance(section, dict):
        raise ValueError("sync config 'ledgersync' section must be a mapping")

    cfg = _coerce(section, base or default_sync_config())
    validate_sync_config(cfg)
    return cfg


def sync_config_from_env(base: Optional[SyncConfig] = None) -> SyncConfig:
    """Apply LEDGERSYNC_<FIELD> overrides (e.g. LEDGERSYNC_POLL_WINDOW_MS) on top of base."""
    raw: Json = {}
    for f in fields(SyncConfig):
        v = os.environ.get(_ENV_PREFIX + f.name.upper())
        if v is not None and v.strip():
            raw[f.name] = v.strip()
    cfg = _coerce(raw, base or default_sync_config())
    validate_sync_config(cfg)
    return cfg


def load_sync_config(*, config_path: Optional[str] = None) -> SyncConfig:
    """Defaults, then the YAML file (if any), then environment overrides.

    A .env file is loaded first (once per process); it never overrides
    variables already set.
    """
    load_dotenv_if_present()
    p = config_path or os.environ.get("LEDGERSYNC_CONFIG_PATH")
    base = read_sync_config_file(p) if p else default_sync_config()
    return sync_config_from_env(base)
