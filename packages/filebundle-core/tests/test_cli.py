from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from filebundle.core.cli import main
from filebundle.core.device_locks import DeviceLockManager
from filebundle.core.locking import DirectoryLock


@pytest.fixture()
def env(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("FILEBUNDLE_STATE_ROOT", str(tmp_path / "state"))
    monkeypatch.setenv("FILEBUNDLE_DEVICE_ID", "cli-dev")
    monkeypatch.setenv("FILEBUNDLE_LOCK_RETRY_DELAY_SECONDS", "0")
    monkeypatch.setenv("FILEBUNDLE_FILE_CACHE_TTL_SECONDS", "0")
    monkeypatch.delenv("FILEBUNDLE_CONFIG_FILE", raising=False)
    monkeypatch.delenv("FILEBUNDLE_METRICS_MODULE", raising=False)
    monkeypatch.delenv("FILEBUNDLE_LOG_FORMAT", raising=False)
    return tmp_path


def _run_json(capsys, *argv: str):
    rc = main(list(argv) + ["--json"])
    return rc, json.loads(capsys.readouterr().out.strip().splitlines()[-1])


def _bundled(root: Path, write) -> Path:
    d = root / "dash"
    write(d / "state", "s1")
    write(d / "a.txt", "alpha")
    write(d / "x.dat", "data")
    assert main(["migrate", "bundle", str(d), "--kind", "dashboard"]) == 0
    return d


def test_migrate_then_doctor(env: Path, write, capsys):
    d = env / "dash"
    write(d / "state", "s1")

    rc, out = _run_json(capsys, "migrate", "bundle", str(d), "--kind", "dashboard")
    assert rc == 0 and out["changed"] is True

    assert main(["migrate", "bundle", str(d), "--kind", "dashboard"]) == 0
    assert capsys.readouterr().out.startswith("UNCHANGED")

    rc, report = _run_json(capsys, "doctor", str(d))
    assert rc == 0
    assert report["ok"] is True
    assert report["bundle_mode"] == "local"
    assert sorted(report["heads"]) == ["main"]
    assert report["problems"] == []


def test_doctor_reports_flat_directory(env: Path, capsys):
    (env / "flat").mkdir()
    assert main(["doctor", str(env / "flat")]) == 2
    out = capsys.readouterr().out
    assert out.startswith("FAIL")
    assert "not_bundled" in out


def test_sync_down_edit_sync_up(env: Path, write, capsys):
    d = _bundled(env, write)
    capsys.readouterr()

    rc, out = _run_json(capsys, "sync", "down", str(d))
    assert rc == 0
    work = Path(out["working_dir"])
    assert work.parent == env / "state" / "working"
    assert sorted(out["heads"]) == ["data", "main"]
    assert (work / "a.txt").read_text(encoding="utf-8") == "alpha"

    write(work / "a.txt", "alpha, edited")
    rc, out = _run_json(capsys, "sync", "up", str(d), "--owner", "tester")
    assert rc == 0 and out["ok"] is True

    other = env / "elsewhere"
    rc, out = _run_json(capsys, "sync", "down", str(d), "--working-parent", str(other))
    assert rc == 0
    assert (Path(out["working_dir"]) / "a.txt").read_text(encoding="utf-8") == "alpha, edited"


def test_sync_up_reports_lock_holder(env: Path, write, capsys):
    d = _bundled(env, write)
    capsys.readouterr()

    held = DirectoryLock(d)
    held.acquire("alice")
    try:
        rc, out = _run_json(capsys, "sync", "up", str(d))
    finally:
        held.release()
    assert rc == 2
    assert out["ok"] is False
    assert out["locked_by"] == "alice"


def test_locks_list_and_ignore(env: Path, write, capsys):
    d = _bundled(env, write)
    capsys.readouterr()
    DeviceLockManager(d / "locks", "dev-b", clock=lambda: datetime.now(timezone.utc)).write_lock_file("bob")

    rc, out = _run_json(capsys, "locks", "list", str(d))
    assert rc == 0
    assert [(lk["device_id"], lk["owner"]) for lk in out["device_locks"]] == [("dev-b", "bob")]

    rc, out = _run_json(capsys, "locks", "ignore", str(d), "--device", "dev-b")
    assert rc == 0 and out["deleted"] is True
    assert not (d / "locks" / "device-lock-dev-b.xml").exists()

    rc, out = _run_json(capsys, "locks", "ignore", str(d), "--device", "dev-b")
    assert rc == 2 and out["deleted"] is False
