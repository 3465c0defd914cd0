from __future__ import annotations

import enum
import hashlib
import logging
import threading
import zipfile
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from filebundle.core.bundles import BundleStore
from filebundle.core.client import SyncClient
from filebundle.core.collection import FileResourceCollection
from filebundle.core.concurrency import FlushWorker, RetryPolicy
from filebundle.core.device import get_device_id
from filebundle.core.device_locks import DeviceLockManager
from filebundle.core.exception import FileBundleError, LockFailureError, SyncError
from filebundle.core.fileutil import atomic_output
from filebundle.core.heads import HeadRefs, HeadRefsMerger, HeadRefsPegFiles, HeadRefsPropertiesFileLocking
from filebundle.core.locking import DirectoryLock
from filebundle.core.observability import MetricsSink, SyncObserver
from filebundle.core.runtime.settings import Settings
from filebundle.core.strategy import DirectoryStrategy

log = logging.getLogger("filebundle.core.working")

METADATA_DIR = "metadata"
BUNDLES_SUBDIR = "bundles"
HEADS_SUBDIR = "heads"
BACKUP_SUBDIR = "backup"
HEADS_FILE = "heads.txt"
FILE_DATA_CACHE = "fileDataCache.xml"
PEG_QUALIFIER = "PDASH"

# Sent to the lock message handler when the write lock was taken away.
LOCK_LOST = "lock_lost"

LockMessageHandler = Callable[[str], None]


class DirectoryState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    PREPARED = "prepared"
    LOCKED = "locked"


def working_dir_for(target_dir: Path, working_parent: Path) -> Path:
    """Private working copy location for ``target_dir`` under ``working_parent``."""
    target = Path(target_dir).expanduser().resolve()
    digest = hashlib.sha1(str(target).encode("utf-8")).hexdigest()[:10]
    return Path(working_parent) / f"{target.name or 'root'}-{digest}"


class WorkingDirectory:
    """A live, flat-file copy of a bundled target directory.

    Lifecycle: ``prepare()`` (repair + sync down) -> ``acquire_write_lock()``
    -> edit files -> ``flush_data()`` -> ``release_write_lock()``. While the
    write lock is held and background flushing is enabled, a FlushWorker
    publishes changes periodically. Foreground and background syncs never
    overlap.
    """

    def __init__(
        self,
        target_dir: Path,
        strategy: DirectoryStrategy,
        settings: Optional[Settings] = None,
        *,
        working_parent: Optional[Path] = None,
        device_id: Optional[str] = None,
        device_locks: Optional[DeviceLockManager] = None,
        enforce_locks: bool = True,
        enable_background_flush: Optional[bool] = None,
        metrics: Optional[MetricsSink] = None,
    ):
        self.settings = settings or Settings()
        self.target_dir = Path(target_dir)
        self.working_dir = self.target_dir if working_parent is None else working_dir_for(self.target_dir, working_parent)
        self.strategy = strategy
        self.device_id = device_id or get_device_id(self.settings)
        self.device_locks = device_locks
        self.enforce_locks = enforce_locks
        self.enable_background_flush = strategy.background_flush if enable_background_flush is None else enable_background_flush

        self.collection = FileResourceCollection(
            self.working_dir, strategy, cache_ttl_seconds=self.settings.file_cache_ttl_seconds
        )
        self.collection.load_file_data_cache(self.file_data_cache_path)

        self.sync_retry: RetryPolicy = self.settings.sync_retry_policy()
        self.lock_retry: RetryPolicy = self.settings.lock_retry_policy(shared=strategy.shared)

        self.client: Optional[SyncClient] = None
        self.state = DirectoryState.UNINITIALIZED
        self.observer = SyncObserver(
            settings=self.settings, logger=log, directory=str(self.target_dir), metrics=metrics
        )

        self._sync_lock = threading.RLock()
        self._dir_lock = DirectoryLock(self.target_dir)
        self._lock_handler: Optional[LockMessageHandler] = None
        self._lock_owner: Optional[str] = None
        self._worker: Optional[FlushWorker] = None

    def __repr__(self) -> str:
        return f"WorkingDirectory({str(self.target_dir)!r}, state={self.state.value})"

    def __enter__(self) -> "WorkingDirectory":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.dispose()

    # -- layout ------------------------------------------------------------

    @property
    def metadata_dir(self) -> Path:
        return self.working_dir / METADATA_DIR

    @property
    def file_data_cache_path(self) -> Path:
        return self.metadata_dir / FILE_DATA_CACHE

    @property
    def bundle_dir(self) -> Path:
        return self.target_dir / BUNDLES_SUBDIR

    @property
    def heads_dir(self) -> Path:
        return self.target_dir / HEADS_SUBDIR

    def get_directory(self) -> Path:
        return self.working_dir

    # -- prepare / update --------------------------------------------------

    def _make_client(self) -> SyncClient:
        # locally checked out heads live with the working copy
        working_heads = HeadRefsPropertiesFileLocking(self.metadata_dir / HEADS_FILE)

        published: HeadRefs = HeadRefsPropertiesFileLocking(self.heads_dir / HEADS_FILE)
        if self.strategy.peg_pattern:
            published = (
                HeadRefsMerger()
                .add_patterned_refs(self.strategy.peg_pattern, HeadRefsPegFiles(self.heads_dir, PEG_QUALIFIER))
                .add_default_refs(published)
            )

        store = BundleStore(self.bundle_dir, self.device_id, self.settings)
        return SyncClient(self.strategy, self.collection, working_heads, store, published, self.settings)

    def _require_client(self) -> SyncClient:
        if self.client is None:
            raise RuntimeError(f"{self!r} has not been prepared")
        return self.client

    def prepare(self) -> None:
        self.target_dir.mkdir(parents=True, exist_ok=True)
        self.working_dir.mkdir(parents=True, exist_ok=True)
        self.collection.validate()

        if self.client is None:
            self.client = self._make_client()

        self._repair_corrupt_files()
        self.update()
        if self.state == DirectoryState.UNINITIALIZED:
            self.state = DirectoryState.PREPARED

    def _repair_corrupt_files(self) -> None:
        client = self._require_client()
        with self._sync_lock:
            suspects = [
                n
                for n in self.collection.list_resource_names()
                if self.strategy.is_possibly_corrupt(n, self.collection.path_for(n))
            ]
            if suspects:
                log.warning("restoring possibly corrupt files: %s", ", ".join(suspects))
                client.restore_files(suspects)
            for bid in client.repair_corrupt_bundles():
                log.warning("repaired damaged bundle %s from the working copy", bid)

    def update(self) -> None:
        """Sync down until no published head moves, within the retry policy."""
        client = self._require_client()
        with self._sync_lock:
            self.collection.recheck_all_file_timestamps()
            before = client.working_heads.get_heads()
            self.observer.start("sync_down")
            for attempt in self.sync_retry.attempts():
                if not client.sync_down():
                    changed = client.working_heads.get_heads() != before
                    self.observer.end("sync_down", changed=changed, attempts=attempt)
                    return
        raise SyncError(f"Unable to sync down {self.target_dir}")

    # -- flush -------------------------------------------------------------

    def flush_data(self) -> bool:
        """Publish local changes. False means they are not yet durably published."""
        self.assert_write_lock()
        client = self._require_client()
        with self._sync_lock:
            self.collection.recheck_all_file_timestamps()
            before = client.working_heads.get_heads()
            self.observer.start("sync_up")
            for attempt in self.sync_retry.attempts():
                try:
                    if client.sync_up():
                        continue
                except FileBundleError as e:
                    # unreadable bundle on the published side
                    log.warning("attempt %d to publish %s failed: %s", attempt, self.target_dir, e)
                    continue
                if self._worker is not None:
                    self._worker.reset_flush_frequency()
                try:
                    client.save_default_excluded_files()
                except OSError:
                    log.debug("Unable to save default excluded files", exc_info=True)
                self.collection.save_file_data_cache(self.file_data_cache_path)
                changed = client.working_heads.get_heads() != before
                self.observer.end("sync_up", changed=changed, attempts=attempt)
                self.observer.flushed(ok=True, background=False)
                return True
        self.observer.flushed(ok=False, background=False)
        log.warning("could not publish changes to %s after %d attempts", self.target_dir, self.sync_retry.max_attempts)
        return False

    def _background_flush(self) -> None:
        self.assert_write_lock()
        with self._sync_lock:
            raced = self._require_client().sync_up()
        self.observer.flushed(ok=not raced, background=True)

    def _background_full_flush(self) -> None:
        self.assert_write_lock()
        with self._sync_lock:
            self._require_client().save_default_excluded_files()
            self.collection.save_file_data_cache(self.file_data_cache_path)

    def _on_background_error(self, e: BaseException) -> None:
        if isinstance(e, LockFailureError):
            log.debug("background flush skipped: %s", e)
        elif isinstance(e, OSError):
            # transient; a later tick retries
            log.debug("background flush of %s failed", self.target_dir, exc_info=e)
        else:
            log.warning(
                "Unexpected exception encountered when publishing working files to %s",
                self.target_dir,
                exc_info=e,
            )

    # -- write lock --------------------------------------------------------

    def acquire_write_lock(self, handler: Optional[LockMessageHandler] = None, owner: Optional[str] = None) -> None:
        if self.state == DirectoryState.LOCKED:
            return
        owner = owner or self.device_id
        if self.enforce_locks:
            self.target_dir.mkdir(parents=True, exist_ok=True)
            self._dir_lock.acquire(owner, retry=self.lock_retry)
        self._lock_handler = handler
        self._lock_owner = owner
        self.state = DirectoryState.LOCKED
        if self.device_locks is not None:
            self.device_locks.write_lock_file(owner)
        if self.enable_background_flush:
            self._worker = FlushWorker(
                name=f"FlushWorker({self.target_dir.name})",
                flush=self._background_flush,
                full_flush=self._background_full_flush,
                on_error=self._on_background_error,
                interval=self.settings.flush_interval_seconds,
                flush_frequency=self.settings.flush_frequency,
                full_flush_frequency=self.settings.full_flush_frequency,
            ).start()

    def assert_write_lock(self) -> None:
        if self.state != DirectoryState.LOCKED:
            raise LockFailureError(f"Write lock on {self.target_dir} is not held")
        if self.enforce_locks and not self._dir_lock.is_held():
            handler = self._lock_handler
            if handler is not None:
                try:
                    handler(LOCK_LOST)
                except Exception:
                    log.warning("lock message handler failed", exc_info=True)
            raise LockFailureError(f"Write lock on {self.target_dir} was lost")

    def release_write_lock(self) -> None:
        # stop the worker first so no flush starts after the lock is gone
        worker, self._worker = self._worker, None
        if worker is not None:
            worker.shut_down()
        if self.state != DirectoryState.LOCKED:
            return
        if self.enforce_locks:
            self._dir_lock.release()
        if self.device_locks is not None:
            self.device_locks.release()
        self._lock_handler = None
        self._lock_owner = None
        self.state = DirectoryState.PREPARED if self.client is not None else DirectoryState.UNINITIALIZED

    def dispose(self) -> None:
        self.release_write_lock()

    # -- backup ------------------------------------------------------------

    def do_backup(self, qualifier: str) -> Path:
        """ZIP the dataset files into ``<working>/backup/backup-<stamp>-<qualifier>.zip``."""
        backup_dir = self.working_dir / BACKUP_SUBDIR
        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        dest = backup_dir / f"backup-{stamp}-{qualifier}.zip"
        n = 1
        while dest.exists():
            n += 1
            dest = backup_dir / f"backup-{stamp}-{qualifier}-{n}.zip"

        with self._sync_lock:
            names = self.collection.list_resource_names()
            with atomic_output(dest) as raw:
                with zipfile.ZipFile(raw, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                    for name in names:
                        zf.write(self.collection.path_for(name), arcname=name)
        log.info("backed up %d files of %s to %s", len(names), self.working_dir, dest)
        return dest
