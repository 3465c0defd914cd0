from __future__ import annotations

import logging
import os
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import IO, Iterator, Optional

from filebundle.core.concurrency import RetryPolicy
from filebundle.core.exception import AlreadyLockedError, LockFailureError

log = logging.getLogger("filebundle.core.locking")

if sys.platform == "win32":
    import msvcrt

    def _try_lock(f: IO[bytes]) -> None:
        f.seek(0)
        msvcrt.locking(f.fileno(), msvcrt.LK_NBLCK, 1)

    def _unlock(f: IO[bytes]) -> None:
        f.seek(0)
        msvcrt.locking(f.fileno(), msvcrt.LK_UNLCK, 1)

else:
    import fcntl

    def _try_lock(f: IO[bytes]) -> None:
        fcntl.flock(f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)

    def _unlock(f: IO[bytes]) -> None:
        fcntl.flock(f.fileno(), fcntl.LOCK_UN)


# Head-ref writes are short; wait up to ~5s for another writer to finish.
DEFAULT_FILE_LOCK_RETRY = RetryPolicy(max_attempts=50, backoff_seconds=0.1)


def _open_locked(path: Path, retry: RetryPolicy) -> IO[bytes]:
    path.parent.mkdir(parents=True, exist_ok=True)
    last: Optional[OSError] = None
    for _ in retry.attempts():
        f = open(path, "a+b")
        try:
            _try_lock(f)
            return f
        except OSError as e:
            f.close()
            last = e
    raise LockFailureError(f"Could not lock {path}") from last


@contextmanager
def exclusive_file_lock(path: Path, retry: RetryPolicy = DEFAULT_FILE_LOCK_RETRY) -> Iterator[None]:
    """Hold an exclusive OS lock on ``path`` for the duration of the block.

    This is the only cross-process ordering primitive: every writer of a
    shared document takes it, re-reads, modifies and writes-then-renames.
    """
    f = _open_locked(Path(path), retry)
    try:
        yield
    finally:
        try:
            _unlock(f)
        finally:
            f.close()


class DirectoryLock:
    """Exclusive write lock on a target directory (``<target>/lock.txt``).

    The OS lock is held for as long as this object owns the directory; the
    owner description is recorded in the file so a competing process can
    report who holds it.
    """

    FILENAME = "lock.txt"

    def __init__(self, target_dir: Path):
        self.path = Path(target_dir) / self.FILENAME
        self.owner: Optional[str] = None
        self._f: Optional[IO[bytes]] = None
        self._ino: Optional[int] = None

    def read_owner(self) -> Optional[str]:
        try:
            text = self.path.read_text(encoding="utf-8").strip()
        except OSError:
            return None
        return text or None

    def acquire(self, owner: str, retry: Optional[RetryPolicy] = None) -> None:
        if self._f is not None:
            return
        retry = retry or RetryPolicy(max_attempts=1)
        try:
            f = _open_locked(self.path, retry)
        except LockFailureError as e:
            holder = self.read_owner()
            raise AlreadyLockedError(
                f"{self.path.parent} is locked by {holder or 'another process'}", owner=holder
            ) from e

        f.seek(0)
        f.truncate()
        f.write(str(owner).encode("utf-8"))
        f.flush()
        os.fsync(f.fileno())
        self._f = f
        self._ino = os.fstat(f.fileno()).st_ino
        self.owner = owner
        log.debug("acquired directory lock %s owner=%s", self.path, owner)

    def is_held(self) -> bool:
        """True while this object still owns the lock file it locked."""
        if self._f is None:
            return False
        try:
            st = self.path.stat()
        except FileNotFoundError:
            return False
        return st.st_ino == self._ino

    def release(self) -> None:
        f, self._f = self._f, None
        self._ino = None
        if f is None:
            return
        try:
            f.seek(0)
            f.truncate()
            _unlock(f)
        finally:
            f.close()
        log.debug("released directory lock %s owner=%s", self.path, self.owner)
        self.owner = None
