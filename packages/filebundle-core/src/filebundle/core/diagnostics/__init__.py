from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from filebundle.core.bundles import BundleStore
from filebundle.core.device import get_device_id
from filebundle.core.device_locks import LOCK_SUBDIR, DeviceLockManager
from filebundle.core.heads import HeadRefsMerger, HeadRefsPegFiles, HeadRefsPropertiesFileLocking
from filebundle.core.migrate import get_bundle_mode
from filebundle.core.runtime.settings import Settings
from filebundle.core.strategy import TEAM_DATA
from filebundle.core.working import BUNDLES_SUBDIR, HEADS_FILE, HEADS_SUBDIR, PEG_QUALIFIER

log = logging.getLogger("filebundle.core.diagnostics")


def _published_heads(target: Path) -> HeadRefsMerger:
    heads_dir = target / HEADS_SUBDIR
    # peg files only ever hold team-data refs, so reading them for any kind is harmless
    return (
        HeadRefsMerger()
        .add_patterned_refs(TEAM_DATA.peg_pattern, HeadRefsPegFiles(heads_dir, PEG_QUALIFIER))
        .add_default_refs(HeadRefsPropertiesFileLocking(heads_dir / HEADS_FILE))
    )


def inspect_directory(target: str | Path, *, settings: Optional[Settings] = None) -> Dict[str, Any]:
    """Read-only health report for a target directory.

    Reports the bundle mode, the published head of every ref, head bundles
    whose manifest or ZIP is damaged, and other devices' fresh device locks.
    ``ok`` is False when the directory is not bundled or a head is damaged.
    """
    settings = settings or Settings()
    target = Path(target)
    problems: List[Dict[str, str]] = []

    mode = get_bundle_mode(target) if target.is_dir() else None
    if mode is None:
        problems.append({"code": "not_bundled", "msg": f"{target} does not hold bundled data"})

    heads = _published_heads(target).get_heads() if mode is not None else {}
    store = BundleStore(target / BUNDLES_SUBDIR, get_device_id(settings), settings)
    corrupt: List[str] = []
    for ref, bid in sorted(heads.items()):
        if not store.has_bundle(bid):
            problems.append({"code": "missing_bundle", "msg": f"head {ref} points at missing bundle {bid.token}"})
            corrupt.append(bid.token)
        elif store.is_bundle_corrupt(bid):
            problems.append({"code": "corrupt_bundle", "msg": f"head {ref} points at damaged bundle {bid.token}"})
            corrupt.append(bid.token)

    locks: List[Dict[str, Any]] = []
    if (target / LOCK_SUBDIR).is_dir():
        mgr = DeviceLockManager(target / LOCK_SUBDIR, get_device_id(settings), settings)
        locks = [lk.as_dict() for lk in mgr.get_conflicting_locks()]

    report = {
        "ok": not problems,
        "target": str(target),
        "bundle_mode": mode.name if mode is not None else None,
        "heads": {ref: bid.token for ref, bid in sorted(heads.items())},
        "corrupt_bundles": corrupt,
        "device_locks": locks,
        "problems": problems,
    }
    log.debug("inspected %s: ok=%s", target, report["ok"])
    return report
