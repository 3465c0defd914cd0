from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from filebundle.core.device import get_device_id
from filebundle.core.device_locks import DeviceLockManager
from filebundle.core.observability import MetricsSink, ensure_logging, load_metrics_sink
from filebundle.core.runtime.settings import Settings, load_settings
from filebundle.core.strategy import strategy_for_kind
from filebundle.core.working import WorkingDirectory

WORKING_SUBDIR = "working"


@dataclass
class Session:
    """Process-wide context: settings, device identity, metrics and device locks.

    ``device_locks`` holds one manager per resolved target directory.
    """

    settings: Settings
    device_id: str
    metrics: MetricsSink
    device_locks: Dict[str, DeviceLockManager] = field(default_factory=dict)
    working: Dict[str, WorkingDirectory] = field(default_factory=dict)
    log: logging.Logger = field(default_factory=lambda: logging.getLogger("filebundle.core.session"))

    @classmethod
    def create(cls, settings: Optional[Settings] = None, *, env: Optional[Dict[str, str]] = None) -> "Session":
        s = settings or load_settings(env=env)
        ensure_logging(s)
        return cls(settings=s, device_id=get_device_id(s), metrics=load_metrics_sink(s))

    @property
    def working_parent(self) -> Path:
        return self.settings.state_path / WORKING_SUBDIR

    def open_working_directory(
        self,
        target: Path,
        kind: str = "dashboard",
        working_parent: Optional[Path] = None,
        **kwargs: Any,
    ) -> WorkingDirectory:
        """Create (but do not prepare) a working copy of a bundled target directory."""
        target = Path(target)
        key = str(target.expanduser().resolve())
        if key in self.working:
            return self.working[key]

        locks = self.device_locks.get(key)
        if locks is None:
            locks = DeviceLockManager.for_working_directory(target, self.device_id, self.settings)
            if locks is not None:
                self.device_locks[key] = locks

        wd = WorkingDirectory(
            target,
            strategy_for_kind(kind),
            self.settings,
            working_parent=working_parent or self.working_parent,
            device_id=self.device_id,
            device_locks=locks,
            metrics=self.metrics,
            **kwargs,
        )
        self.working[key] = wd
        self.log.debug("opened working directory %s for %s", wd.working_dir, target)
        return wd

    def close(self) -> None:
        for wd in list(self.working.values()):
            wd.dispose()
        self.working.clear()

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
