from __future__ import annotations

import threading
import time
import zipfile
from pathlib import Path

import pytest

from filebundle.core.concurrency import RESET, TICK, FlushWorker
from filebundle.core.device_locks import DeviceLockManager
from filebundle.core.exception import AlreadyLockedError, BundleNotFoundError, LockFailureError, SyncError
from filebundle.core.strategy import DASHBOARD
from filebundle.core.working import LOCK_LOST, DirectoryState, WorkingDirectory, working_dir_for


def _wd(target: Path, parent: Path, settings, device: str = "dev-a", **kw) -> WorkingDirectory:
    kw.setdefault("enable_background_flush", False)
    return WorkingDirectory(target, DASHBOARD, settings, working_parent=parent, device_id=device, **kw)


def _publish(wd: WorkingDirectory, files: dict, write) -> None:
    wd.prepare()
    wd.acquire_write_lock(owner="tester")
    for name, text in files.items():
        write(wd.working_dir / name, text)
    assert wd.flush_data() is True
    wd.release_write_lock()


def test_working_dir_location_is_stable_per_target(tmp_path: Path):
    a = working_dir_for(tmp_path / "data" / "alice", tmp_path / "work")
    assert a == working_dir_for(tmp_path / "data" / "alice", tmp_path / "work")
    assert a.parent == tmp_path / "work"
    assert a.name.startswith("alice-")
    assert a != working_dir_for(tmp_path / "other" / "alice", tmp_path / "work")


def test_flush_then_prepare_elsewhere(tmp_path: Path, settings, write):
    target = tmp_path / "target"
    with _wd(target, tmp_path / "work-a", settings) as a:
        _publish(a, {"state": "s1", "a.txt": "alpha", "x.dat": "data"}, write)
        assert (a.working_dir / "metadata" / "fileDataCache.xml").is_file()
        assert (a.working_dir / "metadata" / "heads.txt").is_file()

    assert sorted(p.name for p in (target / "heads").iterdir() if p.suffix == ".txt") == ["heads.txt"]

    with _wd(target, tmp_path / "work-b", settings, device="dev-b") as b:
        b.prepare()
        assert b.state == DirectoryState.PREPARED
        assert (b.working_dir / "state").read_text(encoding="utf-8") == "s1"
        assert (b.working_dir / "x.dat").read_text(encoding="utf-8") == "data"


def test_flush_requires_write_lock(tmp_path: Path, settings):
    wd = _wd(tmp_path / "target", tmp_path / "work", settings)
    wd.prepare()
    with pytest.raises(LockFailureError):
        wd.flush_data()


def test_write_lock_is_exclusive(tmp_path: Path, settings):
    target = tmp_path / "target"
    a = _wd(target, tmp_path / "work-a", settings)
    b = _wd(target, tmp_path / "work-b", settings, device="dev-b")
    a.prepare()
    b.prepare()

    a.acquire_write_lock(owner="alice")
    assert a.state == DirectoryState.LOCKED
    with pytest.raises(AlreadyLockedError) as ei:
        b.acquire_write_lock(owner="bob")
    assert ei.value.owner == "alice"

    a.release_write_lock()
    assert a.state == DirectoryState.PREPARED
    b.acquire_write_lock(owner="bob")
    b.dispose()


def test_lost_lock_notifies_handler(tmp_path: Path, settings, write):
    target = tmp_path / "target"
    wd = _wd(target, tmp_path / "work", settings)
    wd.prepare()
    messages = []
    wd.acquire_write_lock(messages.append, owner="alice")

    (target / "lock.txt").unlink()
    write(wd.working_dir / "a.txt", "not published")

    with pytest.raises(LockFailureError):
        wd.flush_data()
    assert messages == [LOCK_LOST]
    assert wd.client.published_heads.get_heads() == {}
    wd.dispose()


def test_unlocked_directory_skips_lock_file(tmp_path: Path, settings, write):
    target = tmp_path / "target"
    wd = _wd(target, tmp_path / "work", settings, enforce_locks=False)
    _publish(wd, {"a.txt": "x"}, write)
    assert not (target / "lock.txt").exists()


def test_update_gives_up_after_retry_bound(tmp_path: Path, settings, monkeypatch):
    wd = _wd(tmp_path / "target", tmp_path / "work", settings.model_copy(update={"sync_max_attempts": 3}))
    wd.prepare()
    calls = []

    def restless() -> bool:
        calls.append(1)
        return True

    monkeypatch.setattr(wd.client, "sync_down", restless)
    with pytest.raises(SyncError):
        wd.update()
    assert len(calls) == 3


def test_flush_reports_failure_when_heads_keep_moving(tmp_path: Path, settings, monkeypatch):
    wd = _wd(tmp_path / "target", tmp_path / "work", settings)
    wd.prepare()
    wd.acquire_write_lock()
    monkeypatch.setattr(wd.client, "sync_up", lambda: True)
    assert wd.flush_data() is False
    wd.dispose()


def test_flush_treats_unreadable_peer_bundle_as_failed_attempt(tmp_path: Path, settings, monkeypatch):
    wd = _wd(tmp_path / "target", tmp_path / "work", settings.model_copy(update={"sync_max_attempts": 2}))
    wd.prepare()
    wd.acquire_write_lock()
    calls = []

    def missing_zip() -> bool:
        calls.append(1)
        raise BundleNotFoundError("Missing ZIP for bundle")

    monkeypatch.setattr(wd.client, "sync_up", missing_zip)
    assert wd.flush_data() is False
    assert len(calls) == 2
    wd.dispose()


def test_prepare_repairs_zero_length_bundle(tmp_path: Path, settings, write):
    target = tmp_path / "target"
    a = _wd(target, tmp_path / "work-a", settings)
    _publish(a, {"state": "s1", "a.txt": "alpha"}, write)
    head = a.client.published_heads.get_head("main")
    a.client.store.zip_path(head).write_bytes(b"")

    again = _wd(target, tmp_path / "work-a", settings)
    again.prepare()
    assert not again.client.store.is_bundle_corrupt(head)

    b = _wd(target, tmp_path / "work-b", settings, device="dev-b")
    b.prepare()
    assert (b.working_dir / "a.txt").read_text(encoding="utf-8") == "alpha"
    assert (b.working_dir / "state").read_text(encoding="utf-8") == "s1"


def test_prepare_restores_zero_length_working_files(tmp_path: Path, settings, write):
    target = tmp_path / "target"
    a = _wd(target, tmp_path / "work", settings)
    _publish(a, {"state": "s1", "x.dat": "data", "a.txt": "alpha"}, write)

    (a.working_dir / "state").write_bytes(b"")
    (a.working_dir / "x.dat").write_bytes(b"")

    again = _wd(target, tmp_path / "work", settings)
    again.prepare()
    assert (again.working_dir / "state").read_text(encoding="utf-8") == "s1"
    assert (again.working_dir / "x.dat").read_text(encoding="utf-8") == "data"


def test_do_backup_zips_dataset_files(tmp_path: Path, settings, write):
    wd = _wd(tmp_path / "target", tmp_path / "work", settings)
    wd.prepare()
    write(wd.working_dir / "a.txt", "alpha")
    write(wd.working_dir / "cms" / "page.xml", "<p/>")

    first = wd.do_backup("manual")
    second = wd.do_backup("manual")

    assert first != second
    assert first.parent == wd.working_dir / "backup"
    with zipfile.ZipFile(first) as zf:
        assert sorted(zf.namelist()) == ["a.txt", "cms/page.xml"]


def test_device_lock_written_while_locked(tmp_path: Path, settings):
    target = tmp_path / "target"
    target.mkdir()
    locks = DeviceLockManager.for_working_directory(target, "dev-a", settings)
    wd = _wd(target, tmp_path / "work", settings, device_locks=locks)
    wd.prepare()

    wd.acquire_write_lock(owner="alice")
    lock_file = target / "locks" / "device-lock-dev-a.xml"
    assert lock_file.is_file()
    assert 'owner="alice"' in lock_file.read_text(encoding="utf-8")

    wd.release_write_lock()
    assert not lock_file.exists()


def test_background_flush_publishes(tmp_path: Path, settings, write):
    fast = settings.model_copy(update={"flush_interval_seconds": 0.02, "flush_frequency": 1, "full_flush_frequency": 1})
    wd = _wd(tmp_path / "target", tmp_path / "work", fast, enable_background_flush=True)
    wd.prepare()
    wd.acquire_write_lock()
    worker = wd._worker
    assert worker is not None and worker.is_running
    write(wd.working_dir / "a.txt", "background")

    deadline = time.monotonic() + 10
    while time.monotonic() < deadline and wd.client.published_heads.get_head("main") is None:
        time.sleep(0.02)

    wd.release_write_lock()
    assert not worker.is_running
    assert wd.client.published_heads.get_head("main") is not None


def test_flush_worker_countdowns():
    calls = []
    errors = []

    def flush():
        calls.append("flush")
        if len(calls) == 4:
            raise OSError("share went away")

    worker = FlushWorker(
        name="t",
        flush=flush,
        full_flush=lambda: calls.append("full"),
        on_error=errors.append,
        flush_frequency=2,
        full_flush_frequency=2,
    )

    for _ in range(4):
        worker.process(TICK)
    assert calls == ["flush", "flush", "full"]

    worker.process(TICK)
    worker.process(RESET)
    worker.process(TICK)
    assert calls == ["flush", "flush", "full"]

    worker.process(TICK)
    assert calls == ["flush", "flush", "full", "flush"]
    assert len(errors) == 1 and isinstance(errors[0], OSError)

    worker.process("bogus")


def test_flush_worker_ticks_until_shut_down():
    flushed = threading.Event()
    calls = []

    def flush():
        calls.append("flush")
        flushed.set()

    worker = FlushWorker(
        name="ticker",
        flush=flush,
        full_flush=lambda: None,
        on_error=lambda e: None,
        interval=0.02,
        flush_frequency=1,
    ).start()
    assert flushed.wait(10)
    worker.shut_down()
    assert not worker.is_running

    settled = len(calls)
    time.sleep(0.1)
    assert len(calls) == settled
