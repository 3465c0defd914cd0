from __future__ import annotations

import enum
import logging
import os
from pathlib import Path
from typing import Optional, Protocol

from filebundle.core.collection import FileResourceCollection
from filebundle.core.exception import MigrationError
from filebundle.core.fileutil import atomic_output, delete_on_exit, make_read_only, make_writable, rm_rf
from filebundle.core.observability import log_event
from filebundle.core.registry.migrators import REGISTRY, register_migrator
from filebundle.core.runtime.properties import read_properties
from filebundle.core.runtime.settings import Settings, load_settings
from filebundle.core.spec import BundleModeSpec
from filebundle.core.strategy import DASHBOARD, TEAM_DATA, DirectoryStrategy
from filebundle.core.working import BACKUP_SUBDIR, BUNDLES_SUBDIR, HEADS_SUBDIR, WorkingDirectory

log = logging.getLogger("filebundle.core.migrate")

BUNDLE_MODE_PROP = "bundleMode"
DASHBOARD_STUB = "pspdash.ini"
DASHBOARD_PLACEHOLDER = "global.dat"
WBS_STUB = "user-settings.ini"
DISSEMINATE_SUBDIR = "disseminate"
_PLACEHOLDER_MARKER = "#include <bundle-support.txt>"


class MigrationDirection(str, enum.Enum):
    BUNDLE = "bundle"
    UNBUNDLE = "unbundle"


class DirKind(str, enum.Enum):
    DASHBOARD = "dashboard"
    WBS = "wbs"
    DISSEMINATE = "disseminate"

    @property
    def strategy(self) -> DirectoryStrategy:
        return DASHBOARD if self is DirKind.DASHBOARD else TEAM_DATA

    def write_compatibility_files(self, migration: "FileBundleMigration") -> None:
        if self is DirKind.DASHBOARD:
            migration.write_dashboard_compatibility_files()
        elif self is DirKind.WBS:
            migration.write_wbs_compatibility_files()

    def post_migrate(self, migration: "FileBundleMigration") -> None:
        if self is not DirKind.WBS:
            return
        # the nested disseminate directory follows its parent; the parent
        # already holds the lock, so the cascade does not take it again
        diss = migration.directory / DISSEMINATE_SUBDIR
        if diss.is_dir():
            FileBundleMigration(
                diss,
                DirKind.DISSEMINATE,
                migration.direction,
                migration.bundle_mode,
                migration.settings,
                enforce_locks=False,
            ).run()


class Migrator(Protocol):
    def bundle(self) -> None: ...

    def unbundle(self) -> None: ...

    def dispose(self) -> None: ...


@register_migrator("local", min_versions={"pspdash": "2.6.4", "teamToolsB": "6.1.3"})
class LocalMigrator:
    """Moves a directory in and out of bundles stored beside it.

    The target directory itself is the working copy; background flushing is
    off, and with ``enforce_locks=False`` no directory lock is taken.
    """

    def __init__(
        self,
        *,
        target: Path,
        strategy: DirectoryStrategy,
        settings: Settings,
        enforce_locks: bool = True,
        device_id: Optional[str] = None,
    ):
        self.enforce_locks = enforce_locks
        self.working = WorkingDirectory(
            target,
            strategy,
            settings,
            device_id=device_id,
            enforce_locks=enforce_locks,
            enable_background_flush=False,
        )

    def _lock(self) -> None:
        self.working.acquire_write_lock(owner=type(self).__name__)

    def bundle(self) -> None:
        self.working.prepare()
        self._lock()
        self.working.do_backup("before_bundle_migration")
        if not self.working.flush_data():
            raise MigrationError(f"Could not store the files of {self.working.target_dir} in bundles")
        # flush_data() tolerates a failed save of excluded files; migration must not
        if self.working.client is not None and self.working.client.save_default_excluded_files():
            raise MigrationError(f"Could not store excluded files of {self.working.target_dir}")
        rm_rf(self.working.metadata_dir)

    def unbundle(self) -> None:
        self._lock()
        backup = self.working.do_backup("before_bundle_unmigration")
        self.working.prepare()
        self._backup_bundle_dirs(backup, BUNDLES_SUBDIR, HEADS_SUBDIR)
        rm_rf(self.working.metadata_dir)

    def _backup_bundle_dirs(self, backup_file: Path, *subdirs: str) -> None:
        backup_dir = self.working.working_dir / BACKUP_SUBDIR
        prefix = backup_prefix(backup_file)
        for name in subdirs:
            src = self.working.target_dir / name
            if src.exists():
                os.replace(src, backup_dir / f"{prefix}{name}")

    def dispose(self) -> None:
        self.working.dispose()


def backup_prefix(backup_file: Path) -> str:
    """``backup-20260101-120000-`` for ``.../backup-20260101-120000-qualifier.zip``."""
    name = Path(backup_file).name
    return name[: name.rfind("-") + 1]


class FileBundleMigration:
    """One migration of one directory in one direction."""

    def __init__(
        self,
        directory: Path,
        kind: DirKind,
        direction: MigrationDirection,
        bundle_mode: BundleModeSpec,
        settings: Settings,
        *,
        enforce_locks: bool = True,
    ):
        self.directory = Path(directory)
        self.kind = kind
        self.strategy = kind.strategy
        self.direction = direction
        self.bundle_mode = bundle_mode
        self.settings = settings
        self.enforce_locks = enforce_locks

    def run(self) -> None:
        migrator: Migrator = REGISTRY.create(
            self.bundle_mode.name,
            target=self.directory,
            strategy=self.strategy,
            settings=self.settings,
            enforce_locks=self.enforce_locks,
        )
        log_event(
            log,
            settings=self.settings,
            level=logging.INFO,
            event="migration_start",
            directory=self.directory,
            kind=self.kind.value,
            direction=self.direction.value,
            mode=self.bundle_mode.name,
        )
        try:
            if self.direction is MigrationDirection.BUNDLE:
                migrator.bundle()
                self.cleanup_legacy_files()
                self.kind.write_compatibility_files(self)
            else:
                self.make_target_files_writable()
                migrator.unbundle()
                self.remove_leftover_stubs()
            self.kind.post_migrate(self)
        finally:
            migrator.dispose()
        log_event(
            log,
            settings=self.settings,
            level=logging.INFO,
            event="migration_end",
            directory=self.directory,
            kind=self.kind.value,
            direction=self.direction.value,
        )

    def _dataset_names(self) -> list[str]:
        return FileResourceCollection(self.directory, self.strategy).list_resource_names()

    def cleanup_legacy_files(self) -> None:
        emptied = set()
        for name in self._dataset_names():
            path = self.directory.joinpath(*name.split("/"))
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError:
                log.warning("could not delete %s; scheduling it for deletion at exit", path)
                delete_on_exit(path)
            parent = path.parent
            while parent != self.directory:
                emptied.add(parent)
                parent = parent.parent
        # subdirectories the loop above emptied, deepest first
        for sub in sorted(emptied, key=lambda p: len(p.parts), reverse=True):
            try:
                sub.rmdir()
            except OSError:
                log.debug("could not remove directory %s", sub, exc_info=True)

    def make_target_files_writable(self) -> None:
        for name in self._dataset_names():
            path = self.directory.joinpath(*name.split("/"))
            try:
                make_writable(path)
            except OSError:
                log.debug("could not make %s writable", path, exc_info=True)

    def remove_leftover_stubs(self) -> None:
        """Delete stubs that the restored dataset did not replace with real files."""
        for name in (DASHBOARD_STUB, WBS_STUB):
            path = self.directory / name
            if BUNDLE_MODE_PROP in read_properties(path):
                make_writable(path)
                path.unlink()
        placeholder = self.directory / DASHBOARD_PLACEHOLDER
        if placeholder.is_file() and placeholder.read_text(encoding="utf-8").startswith(_PLACEHOLDER_MARKER):
            make_writable(placeholder)
            placeholder.unlink()

    def _req_version(self, package_id: str) -> str:
        return self.bundle_mode.min_versions.get(package_id, "")

    def _write_stub(self, filename: str, *lines: str) -> None:
        path = self.directory / filename
        if path.exists():
            make_writable(path)
        with atomic_output(path) as f:
            f.write(("\n".join(lines) + "\n").encode("utf-8"))
        make_read_only(path)

    def write_dashboard_compatibility_files(self) -> None:
        # refuse older clients via a minimum version requirement
        version = self._req_version("pspdash")
        self._write_stub(
            DASHBOARD_STUB,
            f"requiresDashboardVersion=pspdash version {version}",
            f"{BUNDLE_MODE_PROP}={self.bundle_mode.name}",
        )
        # marker so launchers still recognize the directory as a dataset
        self._write_stub(
            DASHBOARD_PLACEHOLDER,
            _PLACEHOLDER_MARKER,
            f"= This dataset requires functionality added in dashboard version {version}",
        )

    def write_wbs_compatibility_files(self) -> None:
        self._write_stub(
            WBS_STUB,
            f"wbsEditorVersionRequirement={self._req_version('teamToolsB')}",
            f"{BUNDLE_MODE_PROP}={self.bundle_mode.name}",
        )


def get_bundle_mode(directory: Path) -> Optional[BundleModeSpec]:
    """The bundle mode recorded in a directory's compatibility stub, if any."""
    d = Path(directory)
    for stub in (DASHBOARD_STUB, WBS_STUB):
        mode = read_properties(d / stub).get(BUNDLE_MODE_PROP)
        if mode:
            return REGISTRY.get(mode)
    if (d / BUNDLES_SUBDIR).is_dir() and (d / HEADS_SUBDIR).is_dir():
        return REGISTRY.get("local")
    return None


def is_bundled_dir(directory: Path) -> bool:
    return get_bundle_mode(directory) is not None


def migrate(
    directory: Path,
    kind: DirKind | str,
    mode: str = "local",
    settings: Optional[Settings] = None,
) -> bool:
    """Convert a flat directory to bundles. Returns False if it already was bundled."""
    if is_bundled_dir(directory):
        return False
    FileBundleMigration(
        Path(directory),
        DirKind(kind),
        MigrationDirection.BUNDLE,
        REGISTRY.get(mode),
        settings or load_settings(),
    ).run()
    return True


def unmigrate(directory: Path, kind: DirKind | str, settings: Optional[Settings] = None) -> bool:
    """Convert a bundled directory back to flat files. Returns False if it was not bundled."""
    bundle_mode = get_bundle_mode(directory)
    if bundle_mode is None:
        return False
    FileBundleMigration(
        Path(directory),
        DirKind(kind),
        MigrationDirection.UNBUNDLE,
        bundle_mode,
        settings or load_settings(),
    ).run()
    return True
