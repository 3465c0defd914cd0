from __future__ import annotations

import getpass
import logging
import socket
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, List, Optional

from filebundle.core.exception import SpecError
from filebundle.core.fileutil import atomic_output, cancel_delete_on_exit, delete_on_exit
from filebundle.core.runtime.settings import Settings

log = logging.getLogger("filebundle.core.device_locks")

LOCK_SUBDIR = "locks"
LOCK_FILE_PREFIX = "device-lock-"
LOCK_FILE_SUFFIX = ".xml"
LOCK_TAG = "device-lock"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _current_user() -> Optional[str]:
    try:
        return getpass.getuser()
    except (OSError, KeyError):
        return None


@dataclass
class DeviceLock:
    """An advisory marker saying a device has a target directory open."""

    device_id: str
    owner: Optional[str] = None
    username: Optional[str] = None
    host: Optional[str] = None
    opened: Optional[datetime] = None
    path: Optional[Path] = field(default=None, compare=False)

    def to_xml(self) -> bytes:
        el = ET.Element(LOCK_TAG)
        for attr in ("owner", "username", "host"):
            value = getattr(self, attr)
            if value is not None:
                el.set(attr, value)
        if self.opened is not None:
            el.set("opened", self.opened.isoformat())
        return ET.tostring(el, encoding="utf-8", xml_declaration=True)

    @classmethod
    def read(cls, path: Path, device_id: str) -> "DeviceLock":
        try:
            root = ET.parse(path).getroot()
        except ET.ParseError as e:
            raise SpecError(f"Unparsable device lock {path}: {e}") from e
        if root.tag != LOCK_TAG:
            raise SpecError(f"{path} is not a device lock (root <{root.tag}>)")
        opened = None
        raw = root.get("opened")
        if raw:
            try:
                opened = datetime.fromisoformat(raw)
            except ValueError as e:
                raise SpecError(f"Invalid opened timestamp in {path}: {raw!r}") from e
            if opened.tzinfo is None:
                opened = opened.replace(tzinfo=timezone.utc)
        return cls(
            device_id=device_id,
            owner=root.get("owner"),
            username=root.get("username"),
            host=root.get("host"),
            opened=opened,
            path=path,
        )

    def sort_key(self) -> tuple:
        # newest first, undated last
        if self.opened is None:
            return (1, 0.0)
        return (0, -self.opened.timestamp())

    def as_dict(self) -> dict:
        return {
            "device_id": self.device_id,
            "owner": self.owner,
            "username": self.username,
            "host": self.host,
            "opened": self.opened.isoformat() if self.opened else None,
        }


class DeviceLockManager:
    """Reads and writes the per-device lock files of one target directory.

    One instance belongs to a Session; this device's own lock file is
    removed on release and, failing that, at interpreter exit.
    """

    def __init__(
        self,
        lock_dir: Path,
        device_id: str,
        settings: Optional[Settings] = None,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self.lock_dir = Path(lock_dir)
        self.device_id = device_id
        self.settings = settings or Settings()
        self._clock = clock
        self.self_lock_file = self.lock_dir / f"{LOCK_FILE_PREFIX}{device_id}{LOCK_FILE_SUFFIX}"
        self.self_lock: Optional[DeviceLock] = None

    @classmethod
    def for_working_directory(
        cls, working_directory, device_id: str, settings: Optional[Settings] = None
    ) -> Optional["DeviceLockManager"]:
        """Create a manager for a local target directory, or None if there is none."""
        target = getattr(working_directory, "target_dir", working_directory)
        if target is None:
            return None
        target = Path(target)
        if not target.is_dir():
            return None
        lock_dir = target / LOCK_SUBDIR
        try:
            lock_dir.mkdir(exist_ok=True)
        except OSError:
            log.warning("Could not create device lock directory %s", lock_dir, exc_info=True)
            return None
        return cls(lock_dir, device_id, settings)

    def write_lock_file(self, owner: Optional[str]) -> DeviceLock:
        lock = DeviceLock(
            device_id=self.device_id,
            owner=owner,
            username=_current_user(),
            host=socket.gethostname(),
            opened=self._clock(),
            path=self.self_lock_file,
        )
        self.self_lock = lock
        delete_on_exit(self.self_lock_file)
        try:
            with atomic_output(self.self_lock_file) as f:
                f.write(lock.to_xml())
        except OSError:
            log.warning("Could not write device lock file %s", self.self_lock_file, exc_info=True)
        return lock

    def release(self) -> None:
        self.self_lock = None
        try:
            self.self_lock_file.unlink()
        except FileNotFoundError:
            pass
        cancel_delete_on_exit(self.self_lock_file)

    def _is_fresh(self, lock: DeviceLock) -> bool:
        max_age = float(self.settings.device_lock_max_age_hours or 0)
        if max_age <= 0 or lock.opened is None:
            return True
        return self._clock() - lock.opened <= timedelta(hours=max_age)

    def get_conflicting_locks(self) -> List[DeviceLock]:
        """Other devices' lock files within the freshness window, newest first."""
        out: List[DeviceLock] = []
        if not self.lock_dir.is_dir():
            return out
        for p in self.lock_dir.iterdir():
            fn = p.name
            if not (fn.startswith(LOCK_FILE_PREFIX) and fn.endswith(LOCK_FILE_SUFFIX)):
                continue
            if fn.lower() == self.self_lock_file.name.lower():
                continue
            device_id = fn[len(LOCK_FILE_PREFIX) : -len(LOCK_FILE_SUFFIX)]
            try:
                lock = DeviceLock.read(p, device_id)
            except (SpecError, OSError):
                log.debug("Could not read device lock file %s", fn, exc_info=True)
                continue
            if self._is_fresh(lock):
                out.append(lock)
        return sorted(out, key=DeviceLock.sort_key)

    def ignore(self, lock: Optional[DeviceLock]) -> None:
        """Delete another device's lock file after the user dismissed the conflict."""
        if lock is None or lock.path is None:
            return
        log.error("Deleting / ignoring device lock %s", lock.path)
        try:
            lock.path.unlink()
        except FileNotFoundError:
            pass
