from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from importlib import import_module
from typing import Any, Optional

from filebundle.core.runtime.settings import Settings

log = logging.getLogger("filebundle.core.observability")


class MetricsSink:
    """Optional metrics sink.

    Users can provide a module via FILEBUNDLE_METRICS_MODULE exposing METRICS: MetricsSink.
    This is intentionally tiny: it gives production users a stable hook point without
    forcing a dependency on any metrics stack.
    """

    def on_sync_up(self, *, directory: str, changed: bool, attempts: int, duration_ms: int) -> None:  # pragma: no cover
        return None

    def on_sync_down(self, *, directory: str, changed: bool, attempts: int, duration_ms: int) -> None:  # pragma: no cover
        return None

    def on_flush(self, *, directory: str, ok: bool, background: bool) -> None:  # pragma: no cover
        return None


def load_metrics_sink(settings: Settings) -> MetricsSink:
    mod = settings.metrics_module
    if not mod:
        return MetricsSink()
    m = import_module(mod)
    sink = getattr(m, "METRICS", None)
    if sink is None:
        raise AttributeError(f"{mod} must expose METRICS")
    return sink


def _now_ms() -> int:
    return int(time.time() * 1000)


def _dur_ms(t0: float, t1: float) -> int:
    return int((t1 - t0) * 1000)


def log_event(logger: logging.Logger, *, settings: Settings, level: int, event: str, **fields: Any) -> None:
    """Emit an event log.

    - text format: one-liner `event key=value ...`
    - json format: one JSON object per line
    """
    if not logger.isEnabledFor(level):
        return
    if settings.log_format.lower() == "json":
        payload = {"ts_ms": _now_ms(), "event": event, **fields}
        logger.log(level, json.dumps(payload, ensure_ascii=False, default=str))
        return

    # text
    parts = [event]
    for k, v in fields.items():
        parts.append(f"{k}={v}")
    logger.log(level, " ".join(parts))


def ensure_logging(settings: Settings) -> None:
    fmt = "%(asctime)s - (%(threadName)-10s) - %(name)s - %(levelname)s - %(message)s"
    if (settings.log_format or "text").lower() == "json":
        # JSON payload already includes timestamp; keep formatter minimal.
        fmt = "%(message)s"
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=fmt,
    )


@dataclass
class SyncSummary:
    operation: str
    directory: str
    changed: bool
    attempts: int
    duration_ms: int

    def as_dict(self) -> dict:
        return {
            "operation": self.operation,
            "directory": self.directory,
            "changed": self.changed,
            "attempts": self.attempts,
            "duration_ms": self.duration_ms,
        }


class SyncObserver:
    """Times sync loops for one directory and forwards results to the metrics sink."""

    def __init__(self, *, settings: Settings, logger: logging.Logger, directory: str, metrics: Optional[MetricsSink] = None):
        self.settings = settings
        self.logger = logger
        self.directory = directory
        self.metrics = metrics if metrics is not None else load_metrics_sink(settings)
        self._t0: dict[str, float] = {}

    def start(self, operation: str) -> None:
        self._t0[operation] = time.perf_counter()

    def end(self, operation: str, *, changed: bool, attempts: int) -> SyncSummary:
        t0 = self._t0.pop(operation, None)
        dur = _dur_ms(t0, time.perf_counter()) if t0 is not None else 0
        summary = SyncSummary(operation=operation, directory=self.directory, changed=changed, attempts=attempts, duration_ms=dur)
        log_event(self.logger, settings=self.settings, level=logging.INFO, event=operation, **summary.as_dict())
        try:
            if operation == "sync_up":
                self.metrics.on_sync_up(directory=self.directory, changed=changed, attempts=attempts, duration_ms=dur)
            elif operation == "sync_down":
                self.metrics.on_sync_down(directory=self.directory, changed=changed, attempts=attempts, duration_ms=dur)
        except Exception:
            # Metrics must never break a sync.
            log.warning("SyncObserver.%s metrics hook failed", operation, exc_info=True)
        return summary

    def flushed(self, *, ok: bool, background: bool) -> None:
        try:
            self.metrics.on_flush(directory=self.directory, ok=ok, background=background)
        except Exception:
            log.warning("SyncObserver.flushed metrics hook failed", exc_info=True)
