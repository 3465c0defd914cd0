from __future__ import annotations

import atexit
import hashlib
import logging
import os
import shutil
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Iterator, Set

log = logging.getLogger("filebundle.core.fileutil")

_CHUNK = 64 * 1024


@contextmanager
def atomic_output(path: Path) -> Iterator[BinaryIO]:
    """Write ``path`` via ``<path>.tmp`` + ``os.replace``.

    A partially written file is never visible under its final name; on error
    the temp file is removed and the previous content (if any) survives.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    try:
        with open(tmp, "wb") as f:
            yield f
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    except BaseException:
        try:
            tmp.unlink()
        except FileNotFoundError:
            pass
        raise


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK), b""):
            h.update(chunk)
    return h.hexdigest()


def copy_stream(src: BinaryIO, dst: BinaryIO) -> None:
    shutil.copyfileobj(src, dst, _CHUNK)


def rm_rf(p: Path) -> None:
    if not p.exists() and not p.is_symlink():
        return
    if p.is_symlink() or p.is_file():
        p.unlink()
        return
    shutil.rmtree(p)


def make_writable(p: Path) -> None:
    mode = p.stat().st_mode
    os.chmod(p, mode | 0o200)


def make_read_only(p: Path) -> None:
    mode = p.stat().st_mode
    os.chmod(p, mode & ~0o222)


_DELETE_ON_EXIT: Set[Path] = set()
_DELETE_ON_EXIT_LOCK = threading.Lock()
_registered = False


def _delete_pending() -> None:
    with _DELETE_ON_EXIT_LOCK:
        pending = sorted(_DELETE_ON_EXIT, key=lambda p: len(p.parts), reverse=True)
        _DELETE_ON_EXIT.clear()
    for p in pending:
        try:
            rm_rf(p)
        except OSError:
            log.debug("could not delete %s at exit", p, exc_info=True)


def delete_on_exit(p: Path) -> None:
    """Schedule ``p`` for deletion when the interpreter exits."""
    global _registered
    with _DELETE_ON_EXIT_LOCK:
        _DELETE_ON_EXIT.add(Path(p))
        if not _registered:
            atexit.register(_delete_pending)
            _registered = True


def cancel_delete_on_exit(p: Path) -> None:
    with _DELETE_ON_EXIT_LOCK:
        _DELETE_ON_EXIT.discard(Path(p))


def pending_deletes() -> Set[Path]:
    with _DELETE_ON_EXIT_LOCK:
        return set(_DELETE_ON_EXIT)
