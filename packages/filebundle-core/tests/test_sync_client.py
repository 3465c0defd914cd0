from __future__ import annotations

import logging
from pathlib import Path

import pytest

from filebundle.core.bundles import BundleStore, BundleView
from filebundle.core.client import SyncClient
from filebundle.core.collection import FileResourceCollection
from filebundle.core.exception import BundleNotFoundError
from filebundle.core.heads import HeadRefsPropertiesFileLocking
from filebundle.core.strategy import DASHBOARD


def _client(target: Path, work: Path, settings, device: str) -> SyncClient:
    work.mkdir(parents=True, exist_ok=True)
    store = BundleStore(target / "bundles", device, settings)
    return SyncClient(
        DASHBOARD,
        FileResourceCollection(work, DASHBOARD, cache_ttl_seconds=0),
        HeadRefsPropertiesFileLocking(work / "metadata" / "heads.txt"),
        store,
        HeadRefsPropertiesFileLocking(target / "heads" / "heads.txt"),
        settings,
    )


def _read(p: Path) -> str:
    return p.read_text(encoding="utf-8")


def test_publish_then_update_another_working_copy(tmp_path: Path, settings, write):
    target = tmp_path / "target"
    wa, wb = tmp_path / "a", tmp_path / "b"
    a = _client(target, wa, settings, "dev-a")
    b = _client(target, wb, settings, "dev-b")

    write(wa / "a.txt", "1")
    write(wa / "b.txt", "2")
    assert a.sync_up() is False
    b1 = a.published_heads.get_head("main")
    assert b1 is not None
    assert a.working_heads.get_head("main") == b1

    assert b.sync_down() is False
    assert _read(wb / "a.txt") == "1" and _read(wb / "b.txt") == "2"
    assert b.working_heads.get_head("main") == b1

    write(wa / "a.txt", "3")
    (wa / "b.txt").unlink()
    assert a.sync_up() is False
    b2 = a.published_heads.get_head("main")
    assert b2 != b1
    assert a.store.get_manifest(b2).parents == (b1,)

    b.sync_down()
    assert _read(wb / "a.txt") == "3"
    assert not (wb / "b.txt").exists()
    assert b.working_heads.get_head("main") == b2


def test_nothing_changed_publishes_nothing(tmp_path: Path, settings, write):
    a = _client(tmp_path / "target", tmp_path / "a", settings, "dev-a")
    write(tmp_path / "a" / "a.txt", "1")
    a.sync_up()
    before = a.store.list_bundle_ids()

    assert a.sync_up() is False
    assert a.store.list_bundle_ids() == before


def test_each_partition_is_its_own_ref(tmp_path: Path, settings, write):
    a = _client(tmp_path / "target", tmp_path / "a", settings, "dev-a")
    write(tmp_path / "a" / "a.txt", "1")
    write(tmp_path / "a" / "x.dat", "data")
    a.sync_up()
    heads = a.published_heads.get_heads()
    assert sorted(heads) == ["data", "main"]

    write(tmp_path / "a" / "x.dat", "data-2")
    a.sync_up()
    after = a.published_heads.get_heads()
    assert after["main"] == heads["main"]
    assert after["data"] != heads["data"]


def test_heads_grow_a_parent_chain(tmp_path: Path, settings, write):
    a = _client(tmp_path / "target", tmp_path / "a", settings, "dev-a")
    n = 4
    for i in range(n):
        write(tmp_path / "a" / "a.txt", f"v{i}")
        assert a.sync_up() is False

    chain = []
    bid = a.published_heads.get_head("main")
    while bid is not None:
        chain.append(bid)
        parents = a.store.get_manifest(bid).parents
        bid = parents[0] if parents else None
    assert len(chain) >= n
    assert chain == sorted(chain, reverse=True)


def test_concurrent_publish_is_merged_not_lost(tmp_path: Path, settings, write):
    target = tmp_path / "target"
    wa, wb = tmp_path / "a", tmp_path / "b"
    a = _client(target, wa, settings, "dev-a")
    b = _client(target, wb, settings, "dev-b")

    write(wa / "a.txt", "1")
    write(wa / "b.txt", "2")
    a.sync_up()
    b1 = a.published_heads.get_head("main")
    b.sync_down()

    # both devices edit from B1; A wins the race
    write(wa / "a.txt", "from-a")
    write(wb / "c.txt", "from-b")
    a.sync_up()
    a1 = a.published_heads.get_head("main")

    assert b.sync_up() is True
    merge = b.published_heads.get_head("main")
    manifest = b.store.get_manifest(merge)
    assert manifest.parents == (a1, b1)
    assert manifest.files.list_resource_names() == ["a.txt", "b.txt", "c.txt"]

    # B's working copy picked up A's edit; a second pass has nothing to do
    assert _read(wb / "a.txt") == "from-a"
    assert b.working_heads.get_head("main") == merge
    assert b.sync_up() is False

    a.sync_down()
    assert _read(wa / "c.txt") == "from-b"


def test_merge_with_missing_peer_zip_fails_without_publishing(tmp_path: Path, settings, write):
    target = tmp_path / "target"
    wa, wb = tmp_path / "a", tmp_path / "b"
    a = _client(target, wa, settings, "dev-a")
    b = _client(target, wb, settings, "dev-b")

    write(wa / "a.txt", "1")
    write(wa / "b.txt", "2")
    a.sync_up()
    b1 = a.published_heads.get_head("main")
    b.sync_down()

    write(wa / "a.txt", "from-a")
    a.sync_up()
    a1 = a.published_heads.get_head("main")
    # manifest arrived, ZIP not yet
    a.store.zip_path(a1).unlink()
    bundles_before = b.store.list_bundle_ids()

    write(wb / "b.txt", "from-b")
    with pytest.raises(BundleNotFoundError):
        b.sync_up()

    assert b.published_heads.get_head("main") == a1
    assert b.working_heads.get_head("main") == b1
    assert b.store.list_bundle_ids() == bundles_before
    assert not list((target / "bundles").glob("*.tmp"))
    assert _read(wb / "a.txt") == "1"
    assert _read(wb / "b.txt") == "from-b"


def test_conflicting_edit_keeps_local_version_and_peer_stays_reachable(tmp_path: Path, settings, write):
    target = tmp_path / "target"
    wa, wb = tmp_path / "a", tmp_path / "b"
    a = _client(target, wa, settings, "dev-a")
    b = _client(target, wb, settings, "dev-b")

    write(wa / "a.txt", "base")
    a.sync_up()
    b.sync_down()

    write(wa / "a.txt", "A wrote this")
    write(wb / "a.txt", "B wrote this")
    a.sync_up()
    a1 = a.published_heads.get_head("main")
    b.sync_up()

    merge = b.published_heads.get_head("main")
    assert a1 in b.store.get_manifest(merge).parents
    assert _read(wb / "a.txt") == "B wrote this"
    with BundleView(b.store, a1).open_input("a.txt") as f:
        assert f.read() == b"A wrote this"


def test_default_excluded_files_wait_for_an_explicit_save(tmp_path: Path, settings, write):
    wa = tmp_path / "a"
    a = _client(tmp_path / "target", wa, settings, "dev-a")
    write(wa / "a.txt", "1")
    write(wa / "log.txt", "noise")

    a.sync_up()
    head = a.published_heads.get_head("main")
    assert a.store.get_manifest(head).files.list_resource_names() == ["a.txt"]

    write(wa / "log.txt", "more noise")
    assert a.sync_up() is False
    assert a.published_heads.get_head("main") == head

    assert a.save_default_excluded_files() is False
    saved = a.published_heads.get_head("main")
    assert a.store.get_manifest(saved).files.list_resource_names() == ["a.txt", "log.txt"]

    # a later regular publish keeps the saved log
    write(wa / "a.txt", "2")
    write(wa / "log.txt", "unsaved noise")
    a.sync_up()
    files = a.store.get_manifest(a.published_heads.get_head("main")).files
    assert files.get_checksum("log.txt") == a.store.get_manifest(saved).files.get_checksum("log.txt")


def test_damaged_bundle_falls_back_to_ancestors(tmp_path: Path, settings, write, caplog: pytest.LogCaptureFixture):
    target = tmp_path / "target"
    wa, wc = tmp_path / "a", tmp_path / "c"
    a = _client(target, wa, settings, "dev-a")
    c = _client(target, wc, settings, "dev-c")

    write(wa / "a.txt", "1")
    write(wa / "b.txt", "2")
    a.sync_up()
    write(wa / "b.txt", "3")
    a.sync_up()
    b2 = a.published_heads.get_head("main")
    a.store.zip_path(b2).write_bytes(b"")

    caplog.set_level(logging.WARNING, logger="filebundle.core.client")
    c.sync_down()

    # a.txt is unchanged since B1 and comes from there; b.txt only exists in B2
    assert _read(wc / "a.txt") == "1"
    assert not (wc / "b.txt").exists()
    assert c.working_heads.get_head("main") is None
    assert any(r.levelno == logging.ERROR for r in caplog.records)

    # the writer still has the bytes and repairs the bundle
    assert a.repair_corrupt_bundles() == [b2]
    c.sync_down()
    assert _read(wc / "b.txt") == "3"
    assert c.working_heads.get_head("main") == b2


def test_restore_files_from_working_head(tmp_path: Path, settings, write):
    wa = tmp_path / "a"
    a = _client(tmp_path / "target", wa, settings, "dev-a")
    write(wa / "state", "important")
    write(wa / "x.dat", "data")
    a.sync_up()

    (wa / "state").write_bytes(b"")
    (wa / "x.dat").unlink()

    assert a.restore_files(["state", "x.dat", "never-published.txt"]) == []
    assert _read(wa / "state") == "important"
    assert _read(wa / "x.dat") == "data"


def test_unknown_head_listing_is_not_shared(tmp_path: Path, settings):
    a = _client(tmp_path / "target", tmp_path / "a", settings, "dev-a")
    scratch = a._files_of(None)
    scratch.add_resource("stray.txt", 1, "0" * 64)
    assert len(a._files_of(None)) == 0
