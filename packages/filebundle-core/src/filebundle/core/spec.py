from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional

from pydantic import BaseModel, Field
from pydantic.config import ConfigDict

# ---------------------------------------------------------------------------
# Bundle manifests
# ---------------------------------------------------------------------------


class FileEntrySpec(BaseModel):
    """One file recorded in a bundle manifest or in the file data cache."""

    model_config = ConfigDict(extra="forbid")

    name: str
    last_modified: int
    checksum: Optional[str] = None
    size: Optional[int] = None


class BundleManifestSpec(BaseModel):
    """<bundleDir>/<token>.json schema.

    Manifests are immutable once written: the file listing is the complete
    content of the bundle's partition, parents form the history DAG.
    """

    model_config = ConfigDict(extra="forbid")

    version: int = 1
    bundle_id: str
    files: List[FileEntrySpec] = Field(default_factory=list)
    parents: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Migration
# ---------------------------------------------------------------------------


class BundleModeSpec(BaseModel):
    """A bundle storage mode and the minimum client versions it requires."""

    model_config = ConfigDict(extra="forbid")

    name: str
    min_versions: Dict[str, str] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Settings file
# ---------------------------------------------------------------------------


class SettingsFileSpec(BaseModel):
    """Optional YAML settings file (FILEBUNDLE_CONFIG_FILE).

    Only keys here are supported; unknown keys are treated as typos.
    """

    model_config = ConfigDict(extra="forbid")

    state_root: Optional[str] = None
    device_id: Optional[str] = None
    log_level: Optional[str] = None
    log_format: Optional[str] = None
    metrics_module: Optional[str] = None
    timezone: Optional[str] = None
    flush_interval_seconds: Optional[float] = None
    flush_frequency: Optional[int] = None
    full_flush_frequency: Optional[int] = None
    sync_max_attempts: Optional[int] = None
    lock_retry_delay_seconds: Optional[float] = None
    shared_lock_attempts: Optional[int] = None
    file_cache_ttl_seconds: Optional[float] = None
    device_lock_max_age_hours: Optional[float] = None


# ---------------------------------------------------------------------------
# Directory strategies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PartitionRuleSpec:
    """Maps files matching ``pattern`` (regex, full match) to a bundle name.

    ``bundle`` may contain ``{stem}`` / ``{name}`` placeholders so that each
    matching file gets a bundle of its own.
    """

    pattern: str
    bundle: str


__all__ = [
    # manifests
    "FileEntrySpec",
    "BundleManifestSpec",
    # migration
    "BundleModeSpec",
    # settings
    "SettingsFileSpec",
    # strategies
    "PartitionRuleSpec",
]
