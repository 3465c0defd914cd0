from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, ValidationError

from filebundle.core.concurrency import RetryPolicy
from filebundle.core.exception import SpecError
from filebundle.core.spec import SettingsFileSpec


class Settings(BaseModel):
    # Defaults are static. Use load_settings(env=...) to read from an env snapshot.
    state_root: str = "~/.filebundle"
    device_id: Optional[str] = None

    log_level: str = "INFO"
    # Observability
    # - log_format: "text" (default) or "json". When json, filebundle events emit a single
    #   JSON object per line, suitable for log aggregation.
    log_format: str = "text"
    # Optional metrics sink module (exposes METRICS: MetricsSink)
    metrics_module: Optional[str] = None

    # Time zone written to timezone.txt when a bundle directory is first used.
    timezone: str = "UTC"

    # Background flush: one tick per interval, sync up every Nth tick,
    # save excluded files + file data cache every Mth flush.
    flush_interval_seconds: float = 60.0
    flush_frequency: int = 5
    full_flush_frequency: int = 12

    # Optimistic sync loops and lock contention
    sync_max_attempts: int = 5
    lock_retry_delay_seconds: float = 1.5
    shared_lock_attempts: int = 5

    file_cache_ttl_seconds: float = 10.0

    # Device locks older than this are not reported as conflicts (0 = no limit).
    device_lock_max_age_hours: float = 168.0

    @property
    def state_path(self) -> Path:
        return Path(self.state_root).expanduser()

    def sync_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(max_attempts=self.sync_max_attempts)

    def lock_retry_policy(self, *, shared: bool = False) -> RetryPolicy:
        # shared (team) directories see more contention than personal ones
        attempts = self.shared_lock_attempts if shared else 1
        return RetryPolicy(max_attempts=attempts, backoff_seconds=self.lock_retry_delay_seconds)

    @classmethod
    def from_env(cls, env: dict[str, str], overrides: dict | None = None) -> "Settings":
        """Build Settings from an explicit env snapshot (does not read os.environ)."""
        def g(key: str, default: str | None = None) -> str | None:
            return env.get(key, default)  # type: ignore[return-value]

        data = {
            "state_root": g("FILEBUNDLE_STATE_ROOT", "~/.filebundle"),
            "device_id": g("FILEBUNDLE_DEVICE_ID") or None,
            "log_level": g("FILEBUNDLE_LOG_LEVEL", "INFO"),
            "log_format": g("FILEBUNDLE_LOG_FORMAT", "text"),
            "metrics_module": g("FILEBUNDLE_METRICS_MODULE") or None,
            "timezone": g("FILEBUNDLE_TIMEZONE", "UTC"),
            "flush_interval_seconds": g("FILEBUNDLE_FLUSH_INTERVAL_SECONDS", "60"),
            "flush_frequency": g("FILEBUNDLE_FLUSH_FREQUENCY", "5"),
            "full_flush_frequency": g("FILEBUNDLE_FULL_FLUSH_FREQUENCY", "12"),
            "sync_max_attempts": g("FILEBUNDLE_SYNC_MAX_ATTEMPTS", "5"),
            "lock_retry_delay_seconds": g("FILEBUNDLE_LOCK_RETRY_DELAY_SECONDS", "1.5"),
            "shared_lock_attempts": g("FILEBUNDLE_SHARED_LOCK_ATTEMPTS", "5"),
            "file_cache_ttl_seconds": g("FILEBUNDLE_FILE_CACHE_TTL_SECONDS", "10"),
            "device_lock_max_age_hours": g("FILEBUNDLE_DEVICE_LOCK_MAX_AGE_HOURS", "168"),
        }
        if overrides:
            data.update(overrides)
        return cls(**data)


def _load_settings_file(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise SpecError(f"Settings file must be a YAML mapping: {path}")
    try:
        spec = SettingsFileSpec.model_validate(raw)
    except ValidationError as exc:
        raise SpecError(f"Invalid settings file {path}: {exc}") from exc
    return spec.model_dump(exclude_none=True)


def load_settings(overrides: dict | None = None, *, env: dict[str, str] | None = None) -> Settings:
    """Load settings from (1) env snapshot, (2) optional YAML settings file, (3) explicit overrides.

    If env is not provided, we build a snapshot from os.environ.
    """
    env2 = {k: str(v) for k, v in os.environ.items()} if env is None else env
    s = Settings.from_env(env2)
    cfg = env2.get("FILEBUNDLE_CONFIG_FILE")
    if cfg:
        s = s.model_copy(update=_load_settings_file(cfg))
    if overrides:
        s = s.model_copy(update=overrides)
    return s
