from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Pattern, Tuple
from urllib.parse import quote, unquote

from filebundle.core.bundle_id import BundleID
from filebundle.core.concurrency import RetryPolicy
from filebundle.core.exception import SpecError
from filebundle.core.fileutil import atomic_output
from filebundle.core.locking import DEFAULT_FILE_LOCK_RETRY, exclusive_file_lock
from filebundle.core.runtime.properties import read_properties, write_properties

log = logging.getLogger("filebundle.core.heads")


def _parse_token(ref: str, token: Optional[str], where: object) -> Optional[BundleID]:
    if not token:
        return None
    try:
        return BundleID.parse(token)
    except SpecError:
        log.warning("ignoring invalid head %s=%r in %s", ref, token, where)
        return None


class HeadRefs(ABC):
    """Named pointers to the latest bundle of each ref.

    Reads take no lock (last writer wins). Every mutation happens under the
    backend's exclusive lock, and ``compare_and_set`` is the primitive that
    publishing relies on: it only moves a head that still points where the
    caller last saw it.
    """

    def get_head(self, ref: str) -> Optional[BundleID]:
        return self.get_heads().get(ref)

    @abstractmethod
    def get_heads(self) -> Dict[str, BundleID]:
        ...

    def set_head(self, ref: str, bundle_id: BundleID) -> None:
        self._update(ref, lambda current: True, bundle_id)

    def compare_and_set(self, ref: str, expected: Optional[BundleID], new: BundleID) -> bool:
        """Point ``ref`` at ``new`` iff it currently points at ``expected``."""
        return self._update(ref, lambda current: current == expected, new)

    def delete_head(self, ref: str) -> None:
        self._update(ref, lambda current: True, None)

    @abstractmethod
    def _update(self, ref: str, check, new: Optional[BundleID]) -> bool:
        """Under the write lock: if ``check(current)`` holds, store ``new``."""


class HeadRefsPropertiesFileLocking(HeadRefs):
    """All refs in one ``ref=token`` file, writers serialized by ``<file>.lock``."""

    def __init__(self, path: Path, retry: RetryPolicy = DEFAULT_FILE_LOCK_RETRY):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self.retry = retry

    def __repr__(self) -> str:
        return f"HeadRefsPropertiesFileLocking({str(self.path)!r})"

    def get_heads(self) -> Dict[str, BundleID]:
        out: Dict[str, BundleID] = {}
        for ref, token in read_properties(self.path).items():
            bid = _parse_token(ref, token, self.path)
            if bid is not None:
                out[ref] = bid
        return out

    def _update(self, ref: str, check, new: Optional[BundleID]) -> bool:
        with exclusive_file_lock(self.lock_path, self.retry):
            props = read_properties(self.path)
            current = _parse_token(ref, props.get(ref), self.path)
            if not check(current):
                return False
            if new is None:
                if ref not in props:
                    return True
                props.pop(ref)
            else:
                props[ref] = new.token
            write_properties(self.path, props)
            return True


class HeadRefsPegFiles(HeadRefs):
    """One small file per ref: ``<directory>/<qualifier>-<quoted ref>.txt``."""

    def __init__(self, directory: Path, qualifier: str, retry: RetryPolicy = DEFAULT_FILE_LOCK_RETRY):
        self.directory = Path(directory)
        self.qualifier = qualifier
        self.retry = retry

    def __repr__(self) -> str:
        return f"HeadRefsPegFiles({str(self.directory)!r}, {self.qualifier!r})"

    def _file_for(self, ref: str) -> Path:
        return self.directory / f"{self.qualifier}-{quote(ref, safe='')}.txt"

    def _read(self, path: Path, ref: str) -> Optional[BundleID]:
        try:
            token = path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return _parse_token(ref, token, path)

    def get_head(self, ref: str) -> Optional[BundleID]:
        return self._read(self._file_for(ref), ref)

    def get_heads(self) -> Dict[str, BundleID]:
        out: Dict[str, BundleID] = {}
        if not self.directory.is_dir():
            return out
        prefix = f"{self.qualifier}-"
        for p in self.directory.glob(f"{prefix}*.txt"):
            ref = unquote(p.name[len(prefix) : -len(".txt")])
            bid = self._read(p, ref)
            if bid is not None:
                out[ref] = bid
        return out

    def _update(self, ref: str, check, new: Optional[BundleID]) -> bool:
        path = self._file_for(ref)
        with exclusive_file_lock(path.with_name(path.name + ".lock"), self.retry):
            if not check(self._read(path, ref)):
                return False
            if new is None:
                try:
                    path.unlink()
                except FileNotFoundError:
                    pass
            else:
                with atomic_output(path) as f:
                    f.write(new.token.encode("utf-8"))
            return True


class HeadRefsMerger(HeadRefs):
    """Routes refs to backends by regex (full match); the rest go to the default."""

    def __init__(self) -> None:
        self._patterned: List[Tuple[Pattern[str], HeadRefs]] = []
        self._default: Optional[HeadRefs] = None

    def add_patterned_refs(self, pattern: str, refs: HeadRefs) -> "HeadRefsMerger":
        self._patterned.append((re.compile(pattern), refs))
        return self

    def add_default_refs(self, refs: HeadRefs) -> "HeadRefsMerger":
        self._default = refs
        return self

    def backend_for(self, ref: str) -> HeadRefs:
        for rx, refs in self._patterned:
            if rx.fullmatch(ref):
                return refs
        if self._default is None:
            raise KeyError(f"No head ref backend accepts {ref!r}")
        return self._default

    def get_head(self, ref: str) -> Optional[BundleID]:
        return self.backend_for(ref).get_head(ref)

    def get_heads(self) -> Dict[str, BundleID]:
        out: Dict[str, BundleID] = {}
        backends = [refs for _, refs in self._patterned]
        if self._default is not None:
            backends.append(self._default)
        for refs in backends:
            for ref, bid in refs.get_heads().items():
                if self.backend_for(ref) is refs:
                    out[ref] = bid
        return out

    def set_head(self, ref: str, bundle_id: BundleID) -> None:
        self.backend_for(ref).set_head(ref, bundle_id)

    def compare_and_set(self, ref: str, expected: Optional[BundleID], new: BundleID) -> bool:
        return self.backend_for(ref).compare_and_set(ref, expected, new)

    def delete_head(self, ref: str) -> None:
        self.backend_for(ref).delete_head(ref)

    def _update(self, ref: str, check, new: Optional[BundleID]) -> bool:
        return self.backend_for(ref)._update(ref, check, new)
