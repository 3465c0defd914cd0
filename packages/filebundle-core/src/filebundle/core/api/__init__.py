"""Public, stable API surface for filebundle.

If you're embedding bundled directories in your own application or adding a
bundle mode, import from **`filebundle.core.api`**.

Everything outside this package is considered internal and may change without
notice, even in minor releases.
"""

from __future__ import annotations

# Identity
from filebundle.core.bundle_id import BundleID, BundleTimeFormat
# Storage
from filebundle.core.bundles import BundleStore, BundleView, ExtractResult
from filebundle.core.client import SyncClient
from filebundle.core.concurrency import RetryPolicy
from filebundle.core.collection import FileResourceCollection
# Diagnostics
from filebundle.core.diagnostics import inspect_directory
# Device locks
from filebundle.core.device_locks import DeviceLock, DeviceLockManager
# Common exceptions
from filebundle.core.exception import (
    AlreadyLockedError,
    BundleNotFoundError,
    CorruptBundleError,
    FileBundleError,
    LockFailureError,
    MigrationError,
    SpecError,
    SyncError,
)
from filebundle.core.heads import HeadRefs, HeadRefsMerger, HeadRefsPegFiles, HeadRefsPropertiesFileLocking
from filebundle.core.listing import BundleManifest, ResourceCollectionDiff, ResourceListing
# Migration + bundle-mode registry
from filebundle.core.migrate import (
    DirKind,
    LocalMigrator,
    Migrator,
    get_bundle_mode,
    is_bundled_dir,
    migrate,
    unmigrate,
)
from filebundle.core.observability import MetricsSink
from filebundle.core.registry.migrators import get_bundle_mode_spec, list_bundle_modes, register_migrator
# Settings + session
from filebundle.core.runtime.settings import Settings, load_settings
from filebundle.core.session import Session
# Specs (Pydantic models)
from filebundle.core.spec import BundleManifestSpec, BundleModeSpec, FileEntrySpec
from filebundle.core.strategy import DASHBOARD, TEAM_DATA, DirectoryStrategy, strategy_for_kind
from filebundle.core.working import WorkingDirectory

__all__ = [
    # identity
    "BundleID",
    "BundleTimeFormat",
    # listings
    "ResourceListing",
    "ResourceCollectionDiff",
    "BundleManifest",
    # storage
    "BundleStore",
    "BundleView",
    "ExtractResult",
    "FileResourceCollection",
    "HeadRefs",
    "HeadRefsPropertiesFileLocking",
    "HeadRefsPegFiles",
    "HeadRefsMerger",
    # sync
    "SyncClient",
    "WorkingDirectory",
    "DirectoryStrategy",
    "DASHBOARD",
    "TEAM_DATA",
    "strategy_for_kind",
    # session + settings
    "Session",
    "Settings",
    "load_settings",
    "RetryPolicy",
    "MetricsSink",
    # device locks
    "DeviceLock",
    "DeviceLockManager",
    # migration
    "DirKind",
    "Migrator",
    "LocalMigrator",
    "migrate",
    "unmigrate",
    "get_bundle_mode",
    "is_bundled_dir",
    "register_migrator",
    "get_bundle_mode_spec",
    "list_bundle_modes",
    # specs
    "FileEntrySpec",
    "BundleManifestSpec",
    "BundleModeSpec",
    # diagnostics
    "inspect_directory",
    # exceptions
    "SpecError",
    "FileBundleError",
    "BundleNotFoundError",
    "CorruptBundleError",
    "SyncError",
    "LockFailureError",
    "AlreadyLockedError",
    "MigrationError",
]
