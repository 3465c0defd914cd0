from __future__ import annotations

import stat
from pathlib import Path

import pytest

from filebundle.core.concurrency import RetryPolicy
from filebundle.core.exception import AlreadyLockedError, MigrationError
from filebundle.core.fileutil import cancel_delete_on_exit, pending_deletes
from filebundle.core.locking import DirectoryLock
from filebundle.core.migrate import backup_prefix, get_bundle_mode, is_bundled_dir, migrate, unmigrate
from filebundle.core.registry.migrators import get_bundle_mode_spec, list_bundle_modes
from filebundle.core.runtime.properties import read_properties
from filebundle.core.runtime.settings import Settings
from filebundle.core.working import WorkingDirectory

DASHBOARD_FILES = {
    "state": "state data",
    "global.dat": "global",
    "x.dat": "hours",
    "pspdash.ini": "userPref=1",
    "log.txt": "log lines",
    "cms/page.xml": "<page/>",
}


def _make_dir(root: Path, files: dict, write) -> Path:
    for name, text in files.items():
        write(root / name, text)
    return root


def _read_only(p: Path) -> bool:
    return not (p.stat().st_mode & stat.S_IWUSR)


def test_local_mode_is_registered():
    assert "local" in list_bundle_modes()
    spec = get_bundle_mode_spec("local")
    assert spec.min_versions["pspdash"] == "2.6.4"
    with pytest.raises(MigrationError):
        get_bundle_mode_spec("cloud")


def test_bundle_dashboard_directory(tmp_path: Path, settings, write):
    d = _make_dir(tmp_path / "dash", DASHBOARD_FILES, write)

    assert migrate(d, "dashboard", settings=settings) is True

    # legacy files replaced by stubs
    assert not (d / "state").exists()
    assert not (d / "cms").exists()
    assert not (d / "log.txt").exists()
    assert read_properties(d / "pspdash.ini") == {
        "requiresDashboardVersion": "pspdash version 2.6.4",
        "bundleMode": "local",
    }
    assert (d / "global.dat").read_text(encoding="utf-8").startswith("#include <bundle-support.txt>")
    assert _read_only(d / "pspdash.ini") and _read_only(d / "global.dat")

    assert (d / "bundles").is_dir() and (d / "heads").is_dir()
    assert not (d / "metadata").exists()
    assert list((d / "backup").glob("backup-*-before_bundle_migration.zip"))
    assert get_bundle_mode(d).name == "local"
    assert is_bundled_dir(d)

    assert migrate(d, "dashboard", settings=settings) is False


def test_bundled_files_include_default_excluded(tmp_path: Path, settings, write):
    d = _make_dir(tmp_path / "dash", DASHBOARD_FILES, write)
    migrate(d, "dashboard", settings=settings)

    wd = WorkingDirectory(d, _dashboard(), settings, working_parent=tmp_path / "work", device_id="dev-b")
    wd.prepare()
    for name, text in DASHBOARD_FILES.items():
        assert (wd.working_dir / name).read_text(encoding="utf-8") == text


def _dashboard():
    from filebundle.core.strategy import DASHBOARD

    return DASHBOARD


def test_unbundle_restores_flat_files(tmp_path: Path, settings, write):
    d = _make_dir(tmp_path / "dash", DASHBOARD_FILES, write)
    migrate(d, "dashboard", settings=settings)

    assert unmigrate(d, "dashboard", settings=settings) is True

    for name, text in DASHBOARD_FILES.items():
        assert (d / name).read_text(encoding="utf-8") == text
    assert not _read_only(d / "pspdash.ini")
    assert not (d / "bundles").exists() and not (d / "heads").exists()
    moved = sorted(p.name for p in (d / "backup").iterdir() if p.is_dir())
    assert len(moved) == 2
    assert moved[0].startswith("backup-") and moved[0].endswith("-bundles")
    assert moved[1].endswith("-heads")
    assert get_bundle_mode(d) is None

    assert unmigrate(d, "dashboard", settings=settings) is False


def test_unbundle_removes_stubs_the_dataset_did_not_have(tmp_path: Path, settings, write):
    d = _make_dir(tmp_path / "dash", {"state": "s", "a.txt": "alpha"}, write)
    migrate(d, "dashboard", settings=settings)
    assert (d / "pspdash.ini").exists() and (d / "global.dat").exists()

    unmigrate(d, "dashboard", settings=settings)
    assert not (d / "pspdash.ini").exists()
    assert not (d / "global.dat").exists()
    assert (d / "a.txt").read_text(encoding="utf-8") == "alpha"


def test_wbs_migration_cascades_into_disseminate(tmp_path: Path, settings, write):
    d = _make_dir(
        tmp_path / "team",
        {"wbs.xml": "<wbs/>", "team.pdash": "pdash", "disseminate/out.xml": "<out/>"},
        write,
    )

    assert migrate(d, "wbs", settings=settings) is True

    assert read_properties(d / "user-settings.ini") == {"wbsEditorVersionRequirement": "6.1.3", "bundleMode": "local"}
    assert (d / "heads" / "PDASH-team%2Cpdash.txt").is_file()
    assert not (d / "wbs.xml").exists()

    diss = d / "disseminate"
    assert not (diss / "out.xml").exists()
    assert get_bundle_mode(diss).name == "local"
    assert not (diss / "lock.txt").exists()

    assert unmigrate(d, "wbs", settings=settings) is True
    assert (d / "wbs.xml").read_text(encoding="utf-8") == "<wbs/>"
    assert (d / "team.pdash").read_text(encoding="utf-8") == "pdash"
    assert (diss / "out.xml").read_text(encoding="utf-8") == "<out/>"
    assert get_bundle_mode(diss) is None


def test_failed_flush_leaves_legacy_files(tmp_path: Path, settings, write, monkeypatch):
    d = _make_dir(tmp_path / "dash", DASHBOARD_FILES, write)
    monkeypatch.setattr(WorkingDirectory, "flush_data", lambda self: False)

    with pytest.raises(MigrationError):
        migrate(d, "dashboard", settings=settings)

    for name, text in DASHBOARD_FILES.items():
        assert (d / name).read_text(encoding="utf-8") == text
    assert not _read_only(d / "pspdash.ini")
    # the lock was released even though the migration failed
    assert (d / "lock.txt").read_text(encoding="utf-8") == ""


def test_unknown_mode_is_rejected(tmp_path: Path, settings, write):
    d = _make_dir(tmp_path / "dash", {"state": "s"}, write)
    with pytest.raises(MigrationError):
        migrate(d, "dashboard", mode="cloud", settings=settings)
    assert (d / "state").exists()


def test_backup_prefix():
    assert backup_prefix(Path("/x/backup-20260101-120000-before_bundle_migration.zip")) == "backup-20260101-120000-"


def test_locked_directory_is_not_migrated(tmp_path: Path, settings, write, monkeypatch):
    d = _make_dir(tmp_path / "dash", DASHBOARD_FILES, write)
    holder = DirectoryLock(d)
    holder.acquire("alice")
    slept = []
    monkeypatch.setattr(
        Settings,
        "lock_retry_policy",
        lambda self, shared=False: RetryPolicy(max_attempts=3, backoff_seconds=1.5, sleep=slept.append),
    )

    try:
        with pytest.raises(AlreadyLockedError) as ei:
            migrate(d, "dashboard", settings=settings)
    finally:
        holder.release()

    assert ei.value.owner == "alice"
    assert slept == [1.5, 1.5]
    for name, text in DASHBOARD_FILES.items():
        assert (d / name).read_text(encoding="utf-8") == text
    assert not _read_only(d / "pspdash.ini")
    assert get_bundle_mode(d) is None
    assert not list(d.glob("backup/*.zip"))


def test_undeletable_legacy_file_is_deleted_at_exit(tmp_path: Path, settings, write, monkeypatch):
    d = _make_dir(tmp_path / "dash", DASHBOARD_FILES, write)
    real_unlink = Path.unlink

    def unlink(self, missing_ok=False):
        if self.name == "x.dat":
            raise PermissionError(13, "file in use", str(self))
        return real_unlink(self, missing_ok=missing_ok)

    monkeypatch.setattr(Path, "unlink", unlink)
    try:
        assert migrate(d, "dashboard", settings=settings) is True
        assert d / "x.dat" in pending_deletes()
    finally:
        cancel_delete_on_exit(d / "x.dat")

    assert (d / "x.dat").exists()
    assert not (d / "state").exists()
    assert get_bundle_mode(d).name == "local"
