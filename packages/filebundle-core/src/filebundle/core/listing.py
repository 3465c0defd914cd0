from __future__ import annotations

from dataclasses import dataclass, field
from typing import BinaryIO, ContextManager, Dict, Iterable, List, Optional, Protocol, Tuple, runtime_checkable

from filebundle.core.bundle_id import BundleID
from filebundle.core.spec import BundleManifestSpec, FileEntrySpec


@runtime_checkable
class ResourceCollectionInfo(Protocol):
    """Names plus (last modified, checksum) for each resource."""

    def list_resource_names(self) -> List[str]: ...

    def get_last_modified(self, name: str) -> int: ...

    def get_checksum(self, name: str) -> Optional[str]: ...


@runtime_checkable
class ReadableResourceCollection(ResourceCollectionInfo, Protocol):
    def open_input(self, name: str) -> BinaryIO: ...


@runtime_checkable
class ResourceCollection(ReadableResourceCollection, Protocol):
    def open_output(self, name: str, last_modified: int) -> ContextManager[BinaryIO]: ...

    def delete_resource(self, name: str) -> None: ...


@dataclass(frozen=True)
class FileInfo:
    last_modified: int
    checksum: Optional[str] = None


class ResourceListing:
    """Mapping of relative path -> FileInfo.

    Missing names report a last-modified time of 0 and no checksum, the same
    way a live collection reports a deleted file.
    """

    def __init__(self, entries: Optional[Dict[str, FileInfo]] = None):
        self._entries: Dict[str, FileInfo] = dict(entries or {})

    @classmethod
    def from_collection(cls, info: ResourceCollectionInfo, names: Optional[Iterable[str]] = None) -> "ResourceListing":
        out = cls()
        for name in (info.list_resource_names() if names is None else names):
            mtime = info.get_last_modified(name)
            cksum = info.get_checksum(name)
            if mtime > 0 and cksum is not None:
                out.add_resource(name, mtime, cksum)
        return out

    def add_resource(self, name: str, last_modified: int, checksum: Optional[str]) -> None:
        self._entries[name] = FileInfo(int(last_modified), checksum)

    def remove_resource(self, name: str) -> None:
        self._entries.pop(name, None)

    def list_resource_names(self) -> List[str]:
        return sorted(self._entries)

    def get_last_modified(self, name: str) -> int:
        e = self._entries.get(name)
        return e.last_modified if e else 0

    def get_checksum(self, name: str) -> Optional[str]:
        e = self._entries.get(name)
        return e.checksum if e else None

    def get(self, name: str) -> Optional[FileInfo]:
        return self._entries.get(name)

    def items(self) -> List[Tuple[str, FileInfo]]:
        return sorted(self._entries.items())

    def subset(self, names: Iterable[str]) -> "ResourceListing":
        return ResourceListing({n: self._entries[n] for n in names if n in self._entries})

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ResourceListing):
            return NotImplemented
        return self._entries == other._entries

    def __repr__(self) -> str:
        return f"ResourceListing({len(self._entries)} files)"


def _differs(a: ResourceCollectionInfo, b: ResourceCollectionInfo, name: str) -> bool:
    ca, cb = a.get_checksum(name), b.get_checksum(name)
    if ca is not None and cb is not None:
        return ca != cb
    return a.get_last_modified(name) != b.get_last_modified(name)


class ResourceCollectionDiff:
    """Three-way comparison of two collections.

    ``only_in_a``, ``only_in_b``, ``differing`` and ``unchanged`` partition the
    union of both name sets; each list is sorted.
    """

    def __init__(self, a: ResourceCollectionInfo, b: ResourceCollectionInfo):
        self.a = a
        self.b = b
        names_a = set(a.list_resource_names())
        names_b = set(b.list_resource_names())
        self.only_in_a: List[str] = sorted(names_a - names_b)
        self.only_in_b: List[str] = sorted(names_b - names_a)
        self.differing: List[str] = []
        self.unchanged: List[str] = []
        for name in sorted(names_a & names_b):
            if _differs(a, b, name):
                self.differing.append(name)
            else:
                self.unchanged.append(name)

    def no_differences(self) -> bool:
        return not (self.only_in_a or self.only_in_b or self.differing)

    def changed_names(self) -> List[str]:
        """Every name that is added, removed or modified going from a to b."""
        return sorted(set(self.only_in_a) | set(self.only_in_b) | set(self.differing))

    def __repr__(self) -> str:
        return (
            f"ResourceCollectionDiff(only_in_a={self.only_in_a}, only_in_b={self.only_in_b}, "
            f"differing={self.differing}, unchanged={len(self.unchanged)})"
        )


@dataclass(frozen=True)
class BundleManifest:
    """Metadata for one stored bundle: its files and its parent bundles."""

    bundle_id: BundleID
    files: ResourceListing
    parents: Tuple[BundleID, ...] = field(default_factory=tuple)

    def to_spec(self) -> BundleManifestSpec:
        return BundleManifestSpec(
            bundle_id=self.bundle_id.token,
            files=[
                FileEntrySpec(name=name, last_modified=info.last_modified, checksum=info.checksum)
                for name, info in self.files.items()
            ],
            parents=[p.token for p in self.parents],
        )

    @classmethod
    def from_spec(cls, spec: BundleManifestSpec) -> "BundleManifest":
        files = ResourceListing()
        for e in spec.files:
            files.add_resource(e.name, e.last_modified, e.checksum)
        return cls(
            bundle_id=BundleID.parse(spec.bundle_id),
            files=files,
            parents=tuple(BundleID.parse(p) for p in spec.parents),
        )
