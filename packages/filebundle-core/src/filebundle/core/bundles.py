from __future__ import annotations

import hashlib
import io
import json
import logging
import os
import threading
import time
import zipfile
import zlib
from pathlib import Path
from typing import BinaryIO, Dict, Iterable, List, Optional, Sequence

from pydantic import ValidationError

from filebundle.core.bundle_id import BundleID, BundleTimeFormat
from filebundle.core.exception import BundleNotFoundError, CorruptBundleError, FileBundleError, SpecError
from filebundle.core.fileutil import atomic_output, copy_stream
from filebundle.core.listing import (
    BundleManifest,
    ReadableResourceCollection,
    ResourceCollection,
    ResourceCollectionDiff,
    ResourceCollectionInfo,
    ResourceListing,
)
from filebundle.core.observability import log_event
from filebundle.core.runtime.settings import Settings
from filebundle.core.spec import BundleManifestSpec

log = logging.getLogger("filebundle.core.bundles")

TIMEZONE_FILE = "timezone.txt"

# Already-compressed formats are stored as-is.
_STORED_SUFFIXES = (".pdash", ".zip")
_CHUNK = 64 * 1024
_ZIP_READ_ERRORS = (zipfile.BadZipFile, zlib.error, EOFError)


def _zip_date_time(last_modified_ms: int) -> tuple:
    t = time.localtime(max(0, int(last_modified_ms)) / 1000.0)
    if t.tm_year < 1980:
        return (1980, 1, 1, 0, 0, 0)
    return tuple(t[:6])


def _is_compressed_file(name: str) -> bool:
    return name.lower().endswith(_STORED_SUFFIXES)


class ExtractResult(ResourceCollectionDiff):
    """Diff between the old and new listings plus what was actually applied."""

    def __init__(self, old: ResourceCollectionInfo, new: ResourceCollectionInfo):
        super().__init__(old, new)
        self.extracted: List[str] = []
        self.deleted: List[str] = []


class BundleStore:
    """Append-only directory of bundles: ``<token>.zip`` + ``<token>.json``.

    A bundle exists once its manifest exists. ZIPs are written under a
    temporary name and renamed into place, then the manifest is written, so
    a reader never sees a manifest pointing at a partial ZIP. Manifests are
    immutable, which makes caching them safe.
    """

    def __init__(self, bundle_dir: Path, device_id: str, settings: Optional[Settings] = None):
        self.bundle_dir = Path(bundle_dir)
        self.device_id = device_id
        self.settings = settings or Settings()
        self._manifests: Dict[str, BundleManifest] = {}
        self._lock = threading.Lock()
        self._time_format: Optional[BundleTimeFormat] = None

    def __repr__(self) -> str:
        return f"BundleStore({str(self.bundle_dir)!r})"

    # -- layout ------------------------------------------------------------

    @property
    def time_format(self) -> BundleTimeFormat:
        if self._time_format is None:
            self._time_format = BundleTimeFormat(self._dir_time_zone())
        return self._time_format

    def _dir_time_zone(self) -> str:
        tz_file = self.bundle_dir / TIMEZONE_FILE
        try:
            tz = tz_file.read_text(encoding="utf-8").strip()
        except OSError:
            tz = ""
        if not tz:
            tz = self.settings.timezone or "UTC"
            with atomic_output(tz_file) as f:
                f.write(tz.encode("utf-8"))
        return tz

    def zip_path(self, bundle_id: BundleID) -> Path:
        return self.bundle_dir / f"{bundle_id.token}.zip"

    def manifest_path(self, bundle_id: BundleID) -> Path:
        return self.bundle_dir / f"{bundle_id.token}.json"

    # -- manifests ---------------------------------------------------------

    def has_bundle(self, bundle_id: BundleID) -> bool:
        return bundle_id.token in self._manifests or self.manifest_path(bundle_id).is_file()

    def get_manifest(self, bundle_id: BundleID) -> BundleManifest:
        with self._lock:
            cached = self._manifests.get(bundle_id.token)
        if cached is not None:
            return cached

        path = self.manifest_path(bundle_id)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise BundleNotFoundError(f"No manifest for bundle {bundle_id}: {path}") from e
        try:
            spec = BundleManifestSpec.model_validate(json.loads(raw))
            manifest = BundleManifest.from_spec(spec)
        except (ValueError, ValidationError, SpecError) as e:
            raise CorruptBundleError(f"Unreadable manifest {path}: {e}", token=bundle_id.token) from e

        with self._lock:
            self._manifests[bundle_id.token] = manifest
        return manifest

    def _write_manifest(self, manifest: BundleManifest) -> None:
        data = manifest.to_spec().model_dump_json(indent=2).encode("utf-8")
        with atomic_output(self.manifest_path(manifest.bundle_id)) as f:
            f.write(data)
        with self._lock:
            self._manifests[manifest.bundle_id.token] = manifest

    def list_bundle_ids(self) -> List[BundleID]:
        out: List[BundleID] = []
        if not self.bundle_dir.is_dir():
            return out
        for p in self.bundle_dir.glob("*.json"):
            try:
                out.append(BundleID.parse(p.stem))
            except SpecError:
                log.debug("ignoring non-bundle file %s", p)
        return sorted(out)

    # -- storing -----------------------------------------------------------

    def _new_id(self, name: str, timestamp: Optional[int]) -> BundleID:
        ts = int(timestamp) if timestamp and timestamp > 0 else int(time.time() * 1000)
        bid = self.time_format.make_id(ts, self.device_id, name)
        # two bundles of the same name in the same millisecond
        while self.has_bundle(bid):
            ts += 1
            bid = self.time_format.make_id(ts, self.device_id, name)
        return bid

    def _write_zip(self, dest: Path, source: ReadableResourceCollection, filenames: Iterable[str]) -> ResourceListing:
        """Write the readable subset of ``filenames`` to ``dest`` via a temp file.

        Returns the listing of what was written; when nothing could be
        written no file is left behind.
        """
        listing = ResourceListing()
        tmp = dest.with_name(dest.name + ".tmp")
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            with open(tmp, "wb") as raw:
                with zipfile.ZipFile(raw, "w", compression=zipfile.ZIP_DEFLATED) as zf:
                    for name in sorted(set(filenames)):
                        mtime = source.get_last_modified(name)
                        if mtime <= 0 or source.get_checksum(name) is None:
                            # deleted since it was listed
                            continue
                        try:
                            src = source.open_input(name)
                        except FileBundleError:
                            raise
                        except FileNotFoundError:
                            # working copy file removed since it was listed
                            continue
                        zi = zipfile.ZipInfo(name, date_time=_zip_date_time(mtime))
                        zi.compress_type = zipfile.ZIP_STORED if _is_compressed_file(name) else zipfile.ZIP_DEFLATED
                        h = hashlib.sha256()
                        with src, zf.open(zi, "w", force_zip64=True) as dst:
                            for chunk in iter(lambda: src.read(_CHUNK), b""):
                                h.update(chunk)
                                dst.write(chunk)
                        listing.add_resource(name, mtime, h.hexdigest())
                raw.flush()
                os.fsync(raw.fileno())
            if len(listing):
                os.replace(tmp, dest)
            else:
                tmp.unlink()
        except BaseException:
            try:
                tmp.unlink()
            except FileNotFoundError:
                pass
            raise
        return listing

    def store_bundle(
        self,
        name: str,
        source: ReadableResourceCollection,
        filenames: Sequence[str],
        parents: Sequence[BundleID] = (),
        timestamp: Optional[int] = None,
    ) -> BundleID:
        """Snapshot ``filenames`` from ``source`` into a new immutable bundle."""
        bundle_id = self._new_id(name, timestamp)
        listing = self._write_zip(self.zip_path(bundle_id), source, filenames) if filenames else ResourceListing()
        manifest = BundleManifest(bundle_id=bundle_id, files=listing, parents=tuple(parents))
        self._write_manifest(manifest)
        log_event(
            log,
            settings=self.settings,
            level=logging.DEBUG,
            event="bundle_stored",
            bundle=bundle_id.token,
            files=len(listing),
            parents=",".join(p.token for p in parents) or "-",
        )
        return bundle_id

    # -- extracting --------------------------------------------------------

    def extract_bundle(
        self,
        bundle_id: BundleID,
        target: ResourceCollection,
        old_bundle_id: Optional[BundleID] = None,
        overwrite: bool = True,
        delete: bool = False,
    ) -> ExtractResult:
        """Materialize ``bundle_id`` into ``target``, diffed against ``old_bundle_id``.

        overwrite=True re-extracts every file in the new manifest; otherwise
        only new and differing files are extracted. delete=True removes
        files that only the old manifest lists.
        """
        old_files = self.get_manifest(old_bundle_id).files if old_bundle_id is not None else ResourceListing()
        return self.extract_listing(bundle_id, target, old_files, overwrite=overwrite, delete=delete)

    def extract_listing(
        self,
        bundle_id: BundleID,
        target: ResourceCollection,
        old_files: ResourceCollectionInfo,
        *,
        overwrite: bool = False,
        delete: bool = False,
    ) -> ExtractResult:
        new_files = self.get_manifest(bundle_id).files
        result = ExtractResult(old_files, new_files)
        wanted = new_files.list_resource_names() if overwrite else result.only_in_b + result.differing
        result.extracted = self.extract_files(bundle_id, target, wanted)
        if delete:
            for name in result.only_in_a:
                if target.get_last_modified(name) <= 0:
                    continue
                target.delete_resource(name)
                result.deleted.append(name)
        log_event(
            log,
            settings=self.settings,
            level=logging.DEBUG,
            event="bundle_extracted",
            bundle=bundle_id.token,
            extracted=len(result.extracted),
            deleted=len(result.deleted),
        )
        return result

    def extract_files(self, bundle_id: BundleID, target: ResourceCollection, filenames: Iterable[str]) -> List[str]:
        """Extract the named files; files already identical in ``target`` are skipped.

        Entries the manifest does not list are ignored. A requested file the
        ZIP cannot deliver raises CorruptBundleError.
        """
        files = self.get_manifest(bundle_id).files
        todo = {n for n in filenames if n in files and target.get_checksum(n) != files.get_checksum(n)}
        if not todo:
            return []

        path = self.zip_path(bundle_id)
        if not path.is_file():
            raise BundleNotFoundError(f"Missing ZIP for bundle {bundle_id}: {path}")

        done: List[str] = []
        try:
            with zipfile.ZipFile(path) as zf:
                for info in zf.infolist():
                    name = info.filename
                    if name not in todo:
                        continue
                    with zf.open(info) as src, target.open_output(name, files.get_last_modified(name)) as dst:
                        copy_stream(src, dst)
                    done.append(name)
        except _ZIP_READ_ERRORS as e:
            raise CorruptBundleError(f"Corrupt bundle ZIP {path}: {e}", token=bundle_id.token) from e

        missing = todo.difference(done)
        if missing:
            raise CorruptBundleError(
                f"Bundle {bundle_id} is missing entries: {', '.join(sorted(missing))}", token=bundle_id.token
            )
        return sorted(done)

    # -- corruption --------------------------------------------------------

    def is_bundle_corrupt(self, bundle_id: BundleID) -> bool:
        try:
            files = self.get_manifest(bundle_id).files
        except CorruptBundleError:
            return True
        if not len(files):
            return False
        path = self.zip_path(bundle_id)
        try:
            if path.stat().st_size == 0:
                return True
            with zipfile.ZipFile(path) as zf:
                names = set(zf.namelist())
        except (OSError, *_ZIP_READ_ERRORS):
            return True
        return not set(files.list_resource_names()).issubset(names)

    def repair_bundle(self, bundle_id: BundleID, source: ReadableResourceCollection) -> bool:
        """Rewrite a damaged ZIP from ``source`` if it holds identical files.

        Returns False (and leaves the bundle alone) when any file in
        ``source`` no longer matches the manifest.
        """
        files = self.get_manifest(bundle_id).files
        for name in files.list_resource_names():
            if source.get_checksum(name) != files.get_checksum(name):
                return False

        rewritten = self._write_zip(self.zip_path(bundle_id), _PinnedSource(source, files), files.list_resource_names())
        if rewritten != files:
            raise CorruptBundleError(f"Could not rewrite bundle {bundle_id}", token=bundle_id.token)
        log_event(log, settings=self.settings, level=logging.INFO, event="bundle_repaired", bundle=bundle_id.token)
        return True


class _PinnedSource:
    """Presents a collection's bytes with the timestamps a manifest recorded."""

    def __init__(self, source: ReadableResourceCollection, files: ResourceListing):
        self._source = source
        self._files = files

    def list_resource_names(self) -> List[str]:
        return self._files.list_resource_names()

    def get_last_modified(self, name: str) -> int:
        return self._files.get_last_modified(name)

    def get_checksum(self, name: str) -> Optional[str]:
        return self._source.get_checksum(name)

    def open_input(self, name: str) -> BinaryIO:
        return self._source.open_input(name)


class BundleView:
    """Read-only collection over the files of one stored bundle."""

    def __init__(self, store: BundleStore, bundle_id: BundleID):
        self.store = store
        self.bundle_id = bundle_id
        self.files = store.get_manifest(bundle_id).files

    def list_resource_names(self) -> List[str]:
        return self.files.list_resource_names()

    def get_last_modified(self, name: str) -> int:
        return self.files.get_last_modified(name)

    def get_checksum(self, name: str) -> Optional[str]:
        return self.files.get_checksum(name)

    def open_input(self, name: str) -> BinaryIO:
        if name not in self.files:
            raise FileNotFoundError(f"{name} is not part of bundle {self.bundle_id}")
        path = self.store.zip_path(self.bundle_id)
        try:
            with zipfile.ZipFile(path) as zf:
                return io.BytesIO(zf.read(name))
        except FileNotFoundError as e:
            raise BundleNotFoundError(f"Missing ZIP for bundle {self.bundle_id}: {path}") from e
        except (KeyError, *_ZIP_READ_ERRORS) as e:
            raise CorruptBundleError(f"Cannot read {name} from {path}: {e}", token=self.bundle_id.token) from e
