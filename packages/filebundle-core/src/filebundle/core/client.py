from __future__ import annotations

import logging
from collections import deque
from typing import BinaryIO, Dict, Iterable, Iterator, List, Optional, Set

from filebundle.core.bundle_id import BundleID
from filebundle.core.bundles import BundleStore, BundleView
from filebundle.core.collection import FileResourceCollection
from filebundle.core.exception import CorruptBundleError, FileBundleError
from filebundle.core.heads import HeadRefs
from filebundle.core.listing import (
    ReadableResourceCollection,
    ResourceCollectionDiff,
    ResourceListing,
)
from filebundle.core.observability import log_event
from filebundle.core.runtime.settings import Settings
from filebundle.core.strategy import DirectoryStrategy

log = logging.getLogger("filebundle.core.client")


class _OverlaySource:
    """Reads ``primary_names`` from the working copy and everything else from a bundle."""

    def __init__(
        self,
        primary: ReadableResourceCollection,
        primary_names: Iterable[str],
        fallback: Optional[ReadableResourceCollection],
    ):
        self._primary = primary
        self._primary_names: Set[str] = set(primary_names)
        self._fallback = fallback

    def _pick(self, name: str) -> Optional[ReadableResourceCollection]:
        return self._primary if name in self._primary_names else self._fallback

    def list_resource_names(self) -> List[str]:
        names = set(self._primary_names)
        if self._fallback is not None:
            names.update(self._fallback.list_resource_names())
        return sorted(names)

    def get_last_modified(self, name: str) -> int:
        src = self._pick(name)
        return src.get_last_modified(name) if src is not None else 0

    def get_checksum(self, name: str) -> Optional[str]:
        src = self._pick(name)
        return src.get_checksum(name) if src is not None else None

    def open_input(self, name: str) -> BinaryIO:
        src = self._pick(name)
        if src is None:
            raise FileNotFoundError(name)
        return src.open_input(name)


class SyncClient:
    """Publishes the working copy as bundles and pulls bundles published by others.

    Every partition of the dataset (see DirectoryStrategy.partition) is one
    ref. ``working_heads`` records which bundle of each ref the working copy
    reflects; ``published_heads`` is the shared view. Publishing never
    overwrites a head it did not see: it is a compare-and-set, and a moved
    head is answered with a merge bundle whose parents are both heads.
    """

    def __init__(
        self,
        strategy: DirectoryStrategy,
        collection: FileResourceCollection,
        working_heads: HeadRefs,
        store: BundleStore,
        published_heads: HeadRefs,
        settings: Optional[Settings] = None,
    ):
        self.strategy = strategy
        self.collection = collection
        self.working_heads = working_heads
        self.store = store
        self.published_heads = published_heads
        self.settings = settings or store.settings

    # -- helpers -----------------------------------------------------------

    def _files_of(self, bundle_id: Optional[BundleID]) -> ResourceListing:
        if bundle_id is None:
            return ResourceListing()
        try:
            return self.store.get_manifest(bundle_id).files
        except FileBundleError:
            log.warning("cannot read manifest of %s; treating it as empty", bundle_id, exc_info=True)
            return ResourceListing()

    def _ancestry(self, bundle_id: BundleID) -> Iterator[BundleID]:
        """``bundle_id`` and its ancestors, nearest first."""
        seen: Set[str] = set()
        todo = deque([bundle_id])
        while todo:
            bid = todo.popleft()
            if bid.token in seen:
                continue
            seen.add(bid.token)
            yield bid
            try:
                todo.extend(self.store.get_manifest(bid).parents)
            except FileBundleError:
                continue

    def _recover_files(self, bundle_id: BundleID, names: Iterable[str]) -> List[str]:
        """Extract each file from the nearest bundle holding the same bytes.

        Returns the names that could not be recovered.
        """
        wanted = self._files_of(bundle_id)
        lost: List[str] = []
        for name in names:
            checksum = wanted.get_checksum(name)
            if checksum is None or self.collection.get_checksum(name) == checksum:
                continue
            for candidate in self._ancestry(bundle_id):
                if self._files_of(candidate).get_checksum(name) != checksum:
                    continue
                try:
                    self.store.extract_files(candidate, self.collection, [name])
                except FileBundleError:
                    continue
                if candidate != bundle_id:
                    log.info("recovered %s from ancestor bundle %s", name, candidate)
                break
            else:
                lost.append(name)
        return lost

    # -- sync down ---------------------------------------------------------

    def _extract(self, ref: str, new_id: BundleID, old_id: Optional[BundleID]) -> bool:
        try:
            manifest = self.store.get_manifest(new_id)
        except CorruptBundleError:
            log.error("manifest of %s (ref %s) is unreadable; leaving working files untouched", new_id, ref, exc_info=True)
            return False

        old_files = self._files_of(old_id)
        try:
            self.store.extract_listing(new_id, self.collection, old_files, overwrite=False, delete=True)
            return True
        except FileBundleError as e:
            if not self.store.has_bundle(new_id):
                raise
            log.warning("bundle %s is damaged (%s); recovering files from ancestors", new_id, e)

        diff = ResourceCollectionDiff(old_files, manifest.files)
        lost = self._recover_files(new_id, diff.only_in_b + diff.differing)
        for name in diff.only_in_a:
            self.collection.delete_resource(name)
        if lost:
            # the working head stays put so these files are not published as deleted
            log.error("could not recover %s from bundle %s; working copies left untouched", ", ".join(lost), new_id)
            return False
        return True

    def sync_down(self) -> bool:
        """Bring every ref whose published head moved into the working copy.

        Returns True when a published head changed while this pass ran, so
        the caller should call again.
        """
        published = self.published_heads.get_heads()
        working = self.working_heads.get_heads()
        for ref, pub_id in sorted(published.items()):
            work_id = working.get(ref)
            if work_id == pub_id:
                continue
            if self._extract(ref, pub_id, work_id):
                self.working_heads.set_head(ref, pub_id)
                log_event(
                    log,
                    settings=self.settings,
                    level=logging.DEBUG,
                    event="ref_pulled",
                    ref=ref,
                    bundle=pub_id.token,
                    previous=work_id.token if work_id else "-",
                )
        return self.published_heads.get_heads() != published

    # -- sync up -----------------------------------------------------------

    def sync_up(self) -> bool:
        """Publish every partition that changed since the working head.

        Returns False when everything was published (or nothing changed);
        True when a head moved underneath us and the caller should call
        again.
        """
        return self._sync_up(include_excluded=False)

    def save_default_excluded_files(self) -> bool:
        """Like sync_up, but also publish files excluded by default (e.g. logs)."""
        return self._sync_up(include_excluded=True)

    def _sync_up(self, *, include_excluded: bool) -> bool:
        working = self.working_heads.get_heads()
        published = self.published_heads.get_heads()
        live = ResourceListing.from_collection(self.collection)

        refs: Dict[str, List[str]] = self.strategy.partition(live.list_resource_names())
        for ref in working:
            refs.setdefault(ref, [])

        raced = False
        for ref in sorted(refs):
            if self._sync_up_ref(ref, refs[ref], live, working.get(ref), published.get(ref), include_excluded):
                raced = True
        return raced

    def _sync_up_ref(
        self,
        ref: str,
        live_names: List[str],
        live: ResourceListing,
        base_id: Optional[BundleID],
        pub_id: Optional[BundleID],
        include_excluded: bool,
    ) -> bool:
        base_files = self._files_of(base_id)

        def held_back(name: str) -> bool:
            return not include_excluded and self.strategy.is_default_excluded(name)

        local_names = [n for n in live_names if not held_back(n)]
        kept_names = [n for n in base_files.list_resource_names() if held_back(n)]
        desired = live.subset(local_names)
        for name in kept_names:
            info = base_files.get(name)
            desired.add_resource(name, info.last_modified, info.checksum)

        diff = ResourceCollectionDiff(base_files, desired)
        if diff.no_differences():
            return False
        changed = set(diff.changed_names())

        base_view = BundleView(self.store, base_id) if base_id is not None else None

        if pub_id == base_id or pub_id is None:
            source = _OverlaySource(self.collection, local_names, base_view)
            new_id = self.store.store_bundle(
                ref, source, desired.list_resource_names(), parents=[base_id] if base_id else []
            )
            if self.published_heads.compare_and_set(ref, pub_id, new_id):
                self.working_heads.set_head(ref, new_id)
                log_event(
                    log,
                    settings=self.settings,
                    level=logging.INFO,
                    event="bundle_published",
                    ref=ref,
                    bundle=new_id.token,
                    changed=len(changed),
                )
                return False
            log.info("head of %s moved while publishing; %s left unreferenced", ref, new_id)
            return True

        # The published head moved since our base: merge.
        pub_files = self._files_of(pub_id)
        merged_names = sorted(
            {n for n in pub_files.list_resource_names() if n not in changed}
            | {n for n in changed if n in desired}
        )
        local_changed = [n for n in changed if n in desired]
        source = _OverlaySource(self.collection, local_changed, BundleView(self.store, pub_id))
        parents = [pub_id] + ([base_id] if base_id else [])
        merge_id = self.store.store_bundle(ref, source, merged_names, parents=parents)
        if not self.published_heads.compare_and_set(ref, pub_id, merge_id):
            log.info("head of %s moved while merging; %s left unreferenced", ref, merge_id)
            return True

        # Apply the peer's side of the merge to the working copy. Held-back
        # files keep their live content.
        current = desired.subset(n for n in desired.list_resource_names() if not held_back(n))
        merged_files = self.store.get_manifest(merge_id).files
        for name, info in merged_files.items():
            if held_back(name):
                current.add_resource(name, info.last_modified, info.checksum)
        self.store.extract_listing(merge_id, self.collection, current, overwrite=False, delete=True)
        self.working_heads.set_head(ref, merge_id)
        log_event(
            log,
            settings=self.settings,
            level=logging.INFO,
            event="bundle_merged",
            ref=ref,
            bundle=merge_id.token,
            parents=",".join(p.token for p in parents),
            changed=len(changed),
        )
        return True

    # -- corruption --------------------------------------------------------

    def restore_files(self, filenames: Iterable[str]) -> List[str]:
        """Re-extract files from the bundles of the working heads.

        Returns the names that could not be restored.
        """
        working = self.working_heads.get_heads()
        lost: List[str] = []
        for ref, names in self.strategy.partition(filenames).items():
            bid = working.get(ref)
            if bid is None:
                continue
            files = self._files_of(bid)
            lost.extend(self._recover_files(bid, [n for n in names if n in files]))
        if lost:
            log.error("could not restore %s", ", ".join(sorted(lost)))
        return sorted(lost)

    def repair_corrupt_bundles(self) -> List[BundleID]:
        """Rewrite damaged head bundles from matching working copies."""
        repaired: List[BundleID] = []
        for ref, bid in sorted(self.working_heads.get_heads().items()):
            if not self.store.is_bundle_corrupt(bid):
                continue
            try:
                if self.store.repair_bundle(bid, self.collection):
                    repaired.append(bid)
                else:
                    log.warning("bundle %s (ref %s) is damaged and the working copy no longer matches it", bid, ref)
            except CorruptBundleError:
                log.warning("bundle %s (ref %s) cannot be repaired", bid, ref, exc_info=True)
        return repaired
