from __future__ import annotations

import logging
import os
import threading
import time
import xml.etree.ElementTree as ET
from contextlib import contextmanager
from dataclasses import dataclass, replace
from pathlib import Path
from typing import BinaryIO, Callable, Dict, Iterator, List, Optional

from pydantic import ValidationError

from filebundle.core.fileutil import atomic_output, sha256_file
from filebundle.core.spec import FileEntrySpec
from filebundle.core.strategy import DirectoryStrategy

log = logging.getLogger("filebundle.core.collection")

# Subdirectories a target/working directory uses for its own bookkeeping.
RESERVED_DIRS = frozenset({"metadata", "bundles", "heads", "locks", "backup"})
RESERVED_FILES = frozenset({"lock.txt"})
_TEMP_SUFFIXES = (".tmp", ".lock")


@dataclass(frozen=True)
class _CacheEntry:
    last_modified: int
    size: int
    checksum: Optional[str]
    checked_at: Optional[float] = None


def _mtime_ms(st: os.stat_result) -> int:
    return st.st_mtime_ns // 1_000_000


class FileResourceCollection:
    """The live working directory, observed through mtimes and checksums.

    Checksums come from a file data cache: a file is rehashed only when its
    mtime or size changed, and a stat result is trusted for
    ``cache_ttl_seconds`` before the file is looked at again.
    """

    def __init__(
        self,
        directory: Path,
        strategy: DirectoryStrategy,
        *,
        cache_ttl_seconds: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.directory = Path(directory)
        self.strategy = strategy
        self.cache_ttl_seconds = float(cache_ttl_seconds)
        self._clock = clock
        self._cache: Dict[str, _CacheEntry] = {}
        self._lock = threading.RLock()

    def __repr__(self) -> str:
        return f"FileResourceCollection({str(self.directory)!r})"

    # -- listing -----------------------------------------------------------

    def validate(self) -> None:
        if not self.directory.is_dir():
            raise FileNotFoundError(f"Directory does not exist: {self.directory}")

    def is_dataset_name(self, name: str) -> bool:
        top = name.split("/", 1)[0]
        if "/" in name and top in RESERVED_DIRS:
            return False
        if name in RESERVED_FILES or name.endswith(_TEMP_SUFFIXES):
            return False
        return self.strategy.accepts(name)

    def list_resource_names(self) -> List[str]:
        out: List[str] = []
        if not self.directory.is_dir():
            return out
        for root, dirs, files in os.walk(self.directory):
            rel_root = Path(root).relative_to(self.directory)
            if rel_root == Path("."):
                dirs[:] = [d for d in dirs if d not in RESERVED_DIRS]
            for fn in files:
                name = (rel_root / fn).as_posix() if rel_root != Path(".") else fn
                if self.is_dataset_name(name):
                    out.append(name)
        return sorted(out)

    def path_for(self, name: str) -> Path:
        return self.directory.joinpath(*name.split("/"))

    # -- metadata ----------------------------------------------------------

    def _entry(self, name: str) -> Optional[_CacheEntry]:
        with self._lock:
            now = self._clock()
            cached = self._cache.get(name)
            if cached is not None and cached.checked_at is not None:
                if now - cached.checked_at < self.cache_ttl_seconds:
                    return cached

            path = self.path_for(name)
            try:
                st = path.stat()
            except FileNotFoundError:
                self._cache.pop(name, None)
                return None
            mtime, size = _mtime_ms(st), int(st.st_size)

            if cached is not None and cached.last_modified == mtime and cached.size == size and cached.checksum:
                entry = replace(cached, checked_at=now)
            else:
                try:
                    checksum: Optional[str] = sha256_file(path)
                except OSError:
                    log.debug("could not checksum %s", path, exc_info=True)
                    checksum = None
                entry = _CacheEntry(last_modified=mtime, size=size, checksum=checksum, checked_at=now)
            self._cache[name] = entry
            return entry

    def get_last_modified(self, name: str) -> int:
        e = self._entry(name)
        return e.last_modified if e else 0

    def get_checksum(self, name: str) -> Optional[str]:
        e = self._entry(name)
        return e.checksum if e else None

    def recheck_all_file_timestamps(self) -> None:
        """Stop trusting cached stat results; the next lookup stats every file."""
        with self._lock:
            self._cache = {k: replace(v, checked_at=None) for k, v in self._cache.items()}

    # -- content -----------------------------------------------------------

    def open_input(self, name: str) -> BinaryIO:
        return open(self.path_for(name), "rb")

    @contextmanager
    def open_output(self, name: str, last_modified: int) -> Iterator[BinaryIO]:
        path = self.path_for(name)
        with atomic_output(path) as f:
            yield f
        if last_modified and last_modified > 0:
            ns = int(last_modified) * 1_000_000
            os.utime(path, ns=(ns, ns))
        with self._lock:
            self._cache.pop(name, None)

    def delete_resource(self, name: str) -> None:
        path = self.path_for(name)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        with self._lock:
            self._cache.pop(name, None)

    # -- file data cache ---------------------------------------------------

    def load_file_data_cache(self, path: Path) -> None:
        """Load cached (mtime, size, checksum) entries; unreadable caches are ignored."""
        p = Path(path)
        if not p.exists():
            return
        try:
            root = ET.parse(p).getroot()
        except (ET.ParseError, OSError):
            log.debug("ignoring unreadable file data cache %s", p, exc_info=True)
            return

        loaded: Dict[str, _CacheEntry] = {}
        for el in root.iter("file"):
            try:
                spec = FileEntrySpec(
                    name=el.get("name", ""),
                    last_modified=el.get("lastModified", "0"),
                    checksum=el.get("checksum") or None,
                    size=el.get("size", "0"),
                )
            except ValidationError:
                log.debug("skipping invalid file data cache entry %r", el.attrib)
                continue
            if spec.name:
                loaded[spec.name] = _CacheEntry(
                    last_modified=spec.last_modified, size=int(spec.size or 0), checksum=spec.checksum
                )
        with self._lock:
            for name, entry in loaded.items():
                self._cache.setdefault(name, entry)

    def save_file_data_cache(self, path: Path) -> None:
        root = ET.Element("fileDataCache")
        with self._lock:
            items = sorted(self._cache.items())
        for name, e in items:
            attrs = {"name": name, "lastModified": str(e.last_modified), "size": str(e.size)}
            if e.checksum:
                attrs["checksum"] = e.checksum
            ET.SubElement(root, "file", attrs)
        data = ET.tostring(root, encoding="utf-8", xml_declaration=True)
        with atomic_output(Path(path)) as f:
            f.write(data)
